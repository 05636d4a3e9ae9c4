#!/usr/bin/env python3
"""
Strategy Builder

Turns the best evaluated cycle into an executable flash-loan strategy:
two leg paths, a slippage-protected minimum output, a USD profit check and
a bytes32 identifier the receiver contract echoes back in its event.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from web3 import Web3

from .evaluator import EvaluatedCycle
from .scoring import exploration_factor, opportunity_score
from .state import MarketState, pair_key
from .tokens import TokenCatalog

logger = logging.getLogger(__name__)

# Strategy hashes are unique per pair, dex sequence and this many seconds
HASH_TIME_BUCKET = 60


@dataclass
class Strategy:
    """Flash-loan arbitrage plan derived from one cycle"""
    pair: str
    base_token: str
    quote_token: str
    leg1: List[str]
    leg2: List[str]
    dexes: List[str]
    flash_loan_amount: int
    min_amount_out: int
    estimated_profit: int
    profit_percentage: float
    profit_usd: float
    strategy_hash: bytes
    confidence: float
    cycle: tuple = ()
    created_at: float = field(default_factory=time.time)

    @property
    def hops(self) -> int:
        return (len(self.leg1) - 1) + (len(self.leg2) - 1)

    @property
    def hash_hex(self) -> str:
        return Web3.to_hex(self.strategy_hash)


def split_legs(cycle: Sequence[str]):
    """Split at the midpoint token; both legs share it."""
    mid = len(cycle) // 2
    return list(cycle[:mid + 1]), list(cycle[mid:])


def min_amount_out(amount: int, profit_percentage: float, slippage_bps: int) -> int:
    """amount * (1 + pct/100) * (1 - bps/10000) in integer arithmetic."""
    pct_bps = int(round(profit_percentage * 100))
    return amount * (10000 + pct_bps) * (10000 - slippage_bps) // (10000 * 10000)


def strategy_hash(pair: str, dexes: Sequence[str], bucket: int) -> bytes:
    return bytes(Web3.solidity_keccak(
        ["string", "string", "uint256"],
        [pair, ",".join(dexes), bucket],
    ))


class StrategyBuilder:
    """
    Picks the best profitable cycle and sizes it.

    Candidates are ranked by profit percentage, ties broken by the pair's
    liquidity score; the first one whose profit clears ``min_profit_usd``
    becomes the strategy.
    """

    def __init__(
        self,
        catalog: TokenCatalog,
        price_oracle,
        state: MarketState,
        min_profit_usd: float = 10.0,
        slippage_bps: int = 100,
        seed: int = 0,
        clock=time.time,
    ) -> None:
        self.catalog = catalog
        self.price_oracle = price_oracle
        self.state = state
        self.min_profit_usd = min_profit_usd
        self.slippage_bps = slippage_bps
        self.seed = seed
        self._clock = clock

        self.built = 0
        self.rejected_below_usd = 0

    def rank(self, evaluated: Sequence[EvaluatedCycle]) -> List[EvaluatedCycle]:
        return sorted(
            (e for e in evaluated if e.profitable and e.final_amount > e.initial_amount),
            key=lambda e: (
                e.profit_percentage,
                self.state.pair_score(e.cycle[0], e.cycle[1]),
            ),
            reverse=True,
        )

    async def build(self, evaluated: Sequence[EvaluatedCycle]) -> Optional[Strategy]:
        """Best strategy clearing the USD threshold, or None."""
        for candidate in self.rank(evaluated):
            base = candidate.cycle[0]
            token = self.catalog.get(base)
            decimals = token.decimals if token else 18
            profit_usd = await self.price_oracle.to_usd(base, candidate.profit, decimals)

            if profit_usd < self.min_profit_usd:
                self.rejected_below_usd += 1
                logger.debug(
                    f"Skipping {self._describe(candidate.cycle)}: "
                    f"${profit_usd:.2f} < ${self.min_profit_usd:.2f}"
                )
                continue

            strategy = self._assemble(candidate, profit_usd)
            self.built += 1
            logger.info(
                f"Strategy {strategy.hash_hex[:10]} {self._describe(candidate.cycle)} "
                f"+{candidate.profit_percentage:.2f}% (${profit_usd:.2f}), "
                f"confidence {strategy.confidence:.2f}"
            )
            return strategy

        return None

    def _assemble(self, candidate: EvaluatedCycle, profit_usd: float) -> Strategy:
        cycle = candidate.cycle
        pair = pair_key(cycle[0], cycle[1])
        leg1, leg2 = split_legs(cycle)
        dexes = candidate.dexes
        now = self._clock()
        bucket = int(now // HASH_TIME_BUCKET)

        confidence = opportunity_score(
            candidate.profit_percentage,
            self.state.feedback_score(pair),
            exploration_factor(self.seed, "strategy", pair, bucket),
        )

        return Strategy(
            pair=pair,
            base_token=cycle[0],
            quote_token=cycle[1],
            leg1=leg1,
            leg2=leg2,
            dexes=dexes,
            flash_loan_amount=candidate.initial_amount,
            min_amount_out=min_amount_out(
                candidate.initial_amount, candidate.profit_percentage, self.slippage_bps,
            ),
            estimated_profit=candidate.final_amount - candidate.initial_amount,
            profit_percentage=candidate.profit_percentage,
            profit_usd=profit_usd,
            strategy_hash=strategy_hash(pair, dexes, bucket),
            confidence=confidence,
            cycle=cycle,
            created_at=now,
        )

    def _describe(self, cycle: Sequence[str]) -> str:
        return " -> ".join(self.catalog.symbol(a) for a in cycle)
