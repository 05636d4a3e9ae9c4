"""
Deterministic scoring helpers and the pair feedback loop.

Exploration noise is derived from keccak256 over (seed, key...) instead of a
process-global RNG, so every ranking decision can be reproduced from the
configured seed.
"""

import logging
from typing import Iterable, Optional

from web3 import Web3

from .state import MarketState, clamp_score, split_pair_key

logger = logging.getLogger(__name__)


def exploration_factor(seed: int, *key: object, low: float = 0.9, high: float = 1.1) -> float:
    """
    Bounded pseudo-random factor in [low, high] that depends only on seed and key.

    >>> exploration_factor(7, "quickswap", "a-b") == exploration_factor(7, "quickswap", "a-b")
    True
    """
    material = ":".join(str(part) for part in (seed,) + key)
    digest = Web3.keccak(text=material)
    fraction = int.from_bytes(digest[:8], "big") / 2 ** 64
    return low + (high - low) * fraction


def opportunity_score(profit_pct: float, success_rate: float, exploration: float = 1.0) -> float:
    """
    Confidence score in [0, 1] for a candidate strategy.

    Profit saturates at 1% (0.6 weight), historical pair success contributes
    0.4, and the product is scaled by a bounded exploration term.
    """
    profit_term = max(0.0, min(1.0, profit_pct / 1.0))
    base = 0.6 * profit_term + 0.4 * max(0.0, min(1.0, success_rate))
    return max(0.0, min(1.0, base * exploration))


class ScoringFeedback:
    """
    Turns detection and execution outcomes into pair scores.

    Update rule, clamped to [0.1, 1.0]:
      - success with realized profit: score*0.8 + 0.2*min(1, profit/reference)
      - success without profit data: score*0.9 + 0.1
      - failure: score*0.95

    Each pair update is mirrored additively into both tokens' weights
    (half of the score change) when a token catalog is attached. Execution
    outcomes are also counted against the DEXes the strategy routed through,
    which moves their rank in the quote aggregator.
    """

    def __init__(
        self,
        state: MarketState,
        catalog=None,
        reference_profit: float = 100.0,
    ) -> None:
        self.state = state
        self.catalog = catalog
        self.reference_profit = reference_profit

    def get_score(self, pair: str) -> float:
        return self.state.feedback_score(pair)

    def on_detection(self, pair: str, profitable: bool) -> float:
        """Detection feedback: a profitable sighting counts as success without profit data."""
        return self._update(pair, profitable, None)

    def on_execution(
        self,
        pair: str,
        success: bool,
        realized_profit: Optional[float] = None,
        dexes: Iterable[str] = (),
    ) -> float:
        for dex in dict.fromkeys(dexes):
            self.state.record_dex_attempt(dex, success)
        return self._update(pair, success, realized_profit)

    def _update(self, pair: str, success: bool, profit: Optional[float]) -> float:
        old = self.state.feedback_score(pair)

        if success and profit is not None:
            new = old * 0.8 + 0.2 * max(0.0, min(1.0, profit / self.reference_profit))
        elif success:
            new = old * 0.9 + 0.1
        else:
            new = old * 0.95

        new = self.state.set_feedback_score(pair, clamp_score(new))

        if self.catalog is not None and new != old:
            delta = (new - old) / 2
            for token in split_pair_key(pair):
                self.catalog.adjust_weight(token, delta)

        logger.debug(f"Pair score {pair}: {old:.4f} -> {new:.4f} (success={success}, profit={profit})")
        return new
