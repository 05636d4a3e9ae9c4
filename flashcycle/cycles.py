#!/usr/bin/env python3
"""
Cycle Generator - beam search over liquid token pairs

A cycle of length L is a path of L tokens whose first and last entries are
the same token, e.g. (USDC, WETH, USDC) has L=3 and two hops.

🔍 Search per length L:
1. Seeds: stablecoins and majors by weight (fallback: first 10 tokens)
2. Extend every beam with each unused token that has liquidity to the last
   token: score = (prev + pairScore * weight) * jitter, jitter in [0.95, 1.05]
3. Closing step returns to the first token only if that pair is liquid
4. Keep the best 25 * L beams per step; stop early when the beam empties

🎲 Exploration: a fixed fraction of the result is replaced by random-walk
cycles. All randomness is seeded, so a given seed, epoch and liquidity
snapshot always yield the same cycles.
"""

import logging
import random
import time
from typing import Dict, List, Optional, Sequence, Tuple

from .scoring import exploration_factor
from .tokens import Token, TokenCatalog

logger = logging.getLogger(__name__)

Cycle = Tuple[str, ...]

# Beam width multiplier per cycle length
BEAM_WIDTH_FACTOR = 25

# Restart budget for one exploration walk
MAX_WALK_ATTEMPTS = 50

# Probability that an exploration walk starts from a stablecoin
STABLE_START_BIAS = 0.7


def is_valid_cycle(cycle: Sequence[str], lengths: Optional[Sequence[int]] = None) -> bool:
    """first == last, length >= 3 (and in ``lengths``), no repeated intermediate token"""
    if len(cycle) < 3 or cycle[0] != cycle[-1]:
        return False
    if lengths is not None and len(cycle) not in lengths:
        return False
    body = cycle[:-1]
    return len(set(body)) == len(body)


class CycleGenerator:
    """
    Candidate cycle discovery driven by token weights and pair liquidity.

    ``aggregator`` only needs ``has_liquidity(a, b)`` and
    ``pair_liquidity_score(a, b)``.
    """

    def __init__(
        self,
        catalog: TokenCatalog,
        aggregator,
        seed: int = 0,
        exploration_ratio: float = 0.1,
        max_cycles: int = 3000,
        max_cycles_per_length: int = 1000,
        cache_ttl: float = 30.0,
        clock=time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.aggregator = aggregator
        self.seed = seed
        self.exploration_ratio = exploration_ratio
        self.max_cycles = max_cycles
        self.max_cycles_per_length = max_cycles_per_length
        self.cache_ttl = cache_ttl
        self._clock = clock

        self._cache: Dict[Tuple, Tuple[float, List[Cycle]]] = {}
        self._epoch = 0

        # Stats
        self.total_generated = 0
        self.generations = 0
        self.cache_hits = 0
        self.exploration_cycles = 0
        self.last_counts: Dict[int, int] = {}

    # ============================================
    # Public API
    # ============================================

    def generate(self, tokens: List[Token], lengths: Sequence[int]) -> List[Cycle]:
        """Generate candidate cycles for every requested length."""
        lengths = sorted(set(int(l) for l in lengths))
        key = (tuple(sorted(t.address for t in tokens)), tuple(lengths))

        now = self._clock()
        self._cache = {k: v for k, v in self._cache.items() if now - v[0] < self.cache_ttl}

        cached = self._cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            return list(cached[1])

        self._epoch += 1
        started = time.time()

        cycles: List[Cycle] = []
        self.last_counts = {}
        for length in lengths:
            if len(cycles) >= self.max_cycles:
                break
            found = self._beam_search(tokens, length)
            found = found[:min(self.max_cycles_per_length, self.max_cycles - len(cycles))]
            self.last_counts[length] = len(found)
            cycles.extend(found)

        cycles = self._apply_exploration(cycles, tokens, lengths)

        self.generations += 1
        self.total_generated += len(cycles)
        self._cache[key] = (self._clock(), list(cycles))

        logger.info(
            f"Generated {len(cycles)} cycles {self.last_counts} "
            f"in {(time.time() - started) * 1000:.0f}ms"
        )
        return cycles

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_statistics(self) -> Dict[str, float]:
        requests = self.generations + self.cache_hits
        return {
            "total_cycles_generated": self.total_generated,
            "generations": self.generations,
            "cache_hits": self.cache_hits,
            "cache_hit_rate": self.cache_hits / requests if requests else 0.0,
            "exploration_cycles": self.exploration_cycles,
        }

    # ============================================
    # Beam search
    # ============================================

    def _jitter(self, length: int, path: Cycle, candidate: str) -> float:
        return exploration_factor(
            self.seed, "beam", self._epoch, length, ",".join(path), candidate,
            low=0.95, high=1.05,
        )

    def _beam_search(self, tokens: List[Token], length: int) -> List[Cycle]:
        has_liquidity = self.aggregator.has_liquidity
        pair_score = self.aggregator.pair_liquidity_score
        width = BEAM_WIDTH_FACTOR * length

        beams: List[Tuple[Cycle, float]] = [
            ((t.address,), t.weight) for t in self.catalog.seed_tokens(tokens)
        ]

        for step in range(1, length):
            closing = step == length - 1
            candidates: List[Tuple[Cycle, float]] = []

            for path, score in beams:
                last = path[-1]
                if closing:
                    first = path[0]
                    if has_liquidity(last, first):
                        candidates.append((path + (first,), score + pair_score(last, first)))
                    continue

                for token in tokens:
                    if token.address in path or not has_liquidity(last, token.address):
                        continue
                    extended = (score + pair_score(last, token.address) * token.weight)
                    extended *= self._jitter(length, path, token.address)
                    candidates.append((path + (token.address,), extended))

            candidates.sort(key=lambda c: c[1], reverse=True)
            beams = candidates[:width]
            if not beams:
                logger.debug(f"Beam emptied at step {step} for length {length}")
                return []

        return [path for path, _ in beams if len(path) == length]

    # ============================================
    # Exploration
    # ============================================

    def _apply_exploration(
        self,
        cycles: List[Cycle],
        tokens: List[Token],
        lengths: Sequence[int],
    ) -> List[Cycle]:
        count = int(len(cycles) * self.exploration_ratio)
        if count <= 0:
            return cycles

        rng = random.Random(f"{self.seed}:{self._epoch}")
        walks: List[Cycle] = []
        for _ in range(count):
            walk = self._random_walk(rng, tokens, rng.choice(list(lengths)))
            if walk is not None and walk not in walks:
                walks.append(walk)

        self.exploration_cycles += len(walks)
        # walks displace the lowest-ranked beam cycles, output stays duplicate-free
        chosen = set(walks)
        kept = [c for c in cycles if c not in chosen][:len(cycles) - len(walks)]
        return kept + walks

    def _random_walk(self, rng: random.Random, tokens: List[Token], length: int) -> Optional[Cycle]:
        has_liquidity = self.aggregator.has_liquidity
        stables = [t for t in tokens if self.catalog.is_stablecoin(t.address)]

        for _ in range(MAX_WALK_ATTEMPTS):
            if stables and rng.random() < STABLE_START_BIAS:
                first = rng.choice(stables).address
            else:
                first = rng.choice(tokens).address

            path: List[str] = [first]
            while len(path) < length - 1:
                options = [
                    t.address for t in tokens
                    if t.address not in path and has_liquidity(path[-1], t.address)
                ]
                if not options:
                    break
                path.append(rng.choice(options))

            if len(path) == length - 1 and has_liquidity(path[-1], first):
                return tuple(path) + (first,)

        return None
