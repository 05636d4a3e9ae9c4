"""
Shared market state for one arbitrage process.

Everything the detection pipeline learns while it runs lives here: pair
liquidity scores and supporting DEX sets, per-DEX success counters, the quote
cache and the pair feedback scores. Components receive the same MarketState
instance instead of keeping their own module-level maps.

All mutations go through methods guarded by one lock, so the object stays
consistent whether it is driven from a single event loop or from threads.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set, Tuple

from .dex import Quote

SCORE_MIN = 0.1
SCORE_MAX = 1.0
DEFAULT_SCORE = 0.5

QuoteKey = Tuple[str, str, int]


def clamp_score(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, value))


def pair_key(token_a: str, token_b: str) -> str:
    """Canonical unordered pair id: sorted lower-case addresses joined by '-'."""
    a, b = sorted((token_a.lower(), token_b.lower()))
    return f"{a}-{b}"


def split_pair_key(key: str) -> Tuple[str, str]:
    a, b = key.split("-", 1)
    return a, b


@dataclass
class PairState:
    """Liquidity knowledge about one unordered token pair"""
    score: float = DEFAULT_SCORE
    dexes: Set[str] = field(default_factory=set)


@dataclass
class DexStats:
    """Quote attempt counters for one adapter"""
    attempts: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        if self.attempts == 0:
            return DEFAULT_SCORE
        return clamp_score(self.successes / self.attempts)


class MarketState:
    """
    Explicitly owned mutable state shared by the pipeline components.

    Quote cache entries are invalidated on lookup and swept once per
    detection pass. Negative results (no adapter could quote) are cached as
    well, so an identical request inside the TTL never reaches the adapters.
    """

    def __init__(
        self,
        quote_ttl: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quote_ttl = quote_ttl
        self._clock = clock
        self._lock = threading.RLock()

        self._pairs: Dict[str, PairState] = {}
        self._dex_stats: Dict[str, DexStats] = {}
        self._quote_cache: Dict[QuoteKey, Tuple[float, Optional[Quote]]] = {}
        self._feedback: Dict[str, float] = {}

        self.cache_hits = 0
        self.cache_misses = 0

    def now(self) -> float:
        return self._clock()

    # ============================================
    # Pair liquidity
    # ============================================

    def ensure_pair(self, token_a: str, token_b: str) -> PairState:
        key = pair_key(token_a, token_b)
        with self._lock:
            pair = self._pairs.get(key)
            if pair is None:
                pair = PairState()
                self._pairs[key] = pair
            return pair

    def record_pair_success(self, token_a: str, token_b: str, dex: str) -> float:
        """Dex served the pair: add it to the set, move the score toward 1."""
        with self._lock:
            pair = self.ensure_pair(token_a, token_b)
            pair.dexes.add(dex)
            pair.score = clamp_score(pair.score * 0.95 + 0.05)
            return pair.score

    def add_pair_dex(self, token_a: str, token_b: str, dex: str) -> None:
        with self._lock:
            self.ensure_pair(token_a, token_b).dexes.add(dex)

    def record_pair_failure(self, token_a: str, token_b: str, dex: str) -> float:
        """Dex could not serve the pair: drop it from the set, decay the score."""
        with self._lock:
            pair = self.ensure_pair(token_a, token_b)
            pair.dexes.discard(dex)
            pair.score = clamp_score(pair.score * 0.95)
            return pair.score

    def pair_score(self, token_a: str, token_b: str) -> float:
        """Liquidity score of a known pair, 0.0 when the pair was never quoted."""
        with self._lock:
            pair = self._pairs.get(pair_key(token_a, token_b))
            return pair.score if pair else 0.0

    def pair_dexes(self, token_a: str, token_b: str) -> Set[str]:
        with self._lock:
            pair = self._pairs.get(pair_key(token_a, token_b))
            return set(pair.dexes) if pair else set()

    def known_pairs(self) -> Dict[str, PairState]:
        with self._lock:
            return {k: PairState(v.score, set(v.dexes)) for k, v in self._pairs.items()}

    # ============================================
    # DEX counters
    # ============================================

    def record_dex_attempt(self, dex: str, success: bool) -> None:
        with self._lock:
            stats = self._dex_stats.setdefault(dex, DexStats())
            stats.attempts += 1
            if success:
                stats.successes += 1

    def dex_stats(self, dex: str) -> DexStats:
        with self._lock:
            stats = self._dex_stats.get(dex, DexStats())
            return DexStats(stats.attempts, stats.successes)

    def dex_success_rate(self, dex: str) -> float:
        return self.dex_stats(dex).success_rate

    def all_dex_stats(self) -> Dict[str, DexStats]:
        with self._lock:
            return {k: DexStats(v.attempts, v.successes) for k, v in self._dex_stats.items()}

    # ============================================
    # Quote cache
    # ============================================

    def get_cached_quote(self, key: QuoteKey) -> Tuple[bool, Optional[Quote]]:
        """Return (hit, quote). Expired entries are dropped on lookup."""
        with self._lock:
            entry = self._quote_cache.get(key)
            if entry is not None:
                stored_at, quote = entry
                if self._clock() - stored_at < self.quote_ttl:
                    self.cache_hits += 1
                    return True, quote
                del self._quote_cache[key]
            self.cache_misses += 1
            return False, None

    def cache_quote(self, key: QuoteKey, quote: Optional[Quote]) -> None:
        with self._lock:
            self._quote_cache[key] = (self._clock(), quote)

    def sweep_expired_quotes(self) -> int:
        """Drop every expired cache entry, return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, (stored_at, _) in self._quote_cache.items()
                if now - stored_at >= self.quote_ttl
            ]
            for key in expired:
                del self._quote_cache[key]
            return len(expired)

    # ============================================
    # Feedback scores
    # ============================================

    def feedback_score(self, key: str) -> float:
        with self._lock:
            return self._feedback.get(key, DEFAULT_SCORE)

    def set_feedback_score(self, key: str, value: float) -> float:
        with self._lock:
            self._feedback[key] = clamp_score(value)
            return self._feedback[key]

