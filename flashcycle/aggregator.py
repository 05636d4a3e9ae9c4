#!/usr/bin/env python3
"""
DEX Quote Aggregator

Fans a hop out to every registered adapter concurrently and keeps the
maximum output. One adapter failing (revert, timeout, RPC error) never
cancels the others.

Bookkeeping per quote:
- adapter attempt/success counters
- pair liquidity score: success -> score*0.95 + 0.05, failure -> score*0.95
- pair DEX set: add on success, remove on failure

Results are cached per (tokenIn, tokenOut, amountIn) for a short TTL; a hit
never touches the adapters. Identical requests that arrive while the first
one is still querying share its result.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .dex import DexAdapter, Quote, QuoteUnavailable
from .scoring import exploration_factor
from .state import MarketState, QuoteKey

logger = logging.getLogger(__name__)

# Bonus multiplier for an adapter that already served the pair
SERVED_PAIR_BONUS = 0.3

# Gas model for a multi-hop route
BASE_ROUTE_GAS = 120_000
GAS_PER_HOP = 60_000
GAS_PER_DEX_SWITCH = 20_000
EXTRA_GAS_BY_KIND = {"v3": 25_000, "curve": 30_000}


class DEXQuoteAggregator:
    """
    Best-quote lookup across DEX adapters with adaptive ranking.

    Usage:
        aggregator = DEXQuoteAggregator(adapters, state)
        quote = await aggregator.best_quote(usdc, weth, 1_000 * 10**6)
    """

    def __init__(
        self,
        adapters: Sequence[DexAdapter],
        state: MarketState,
        seed: int = 0,
        adapter_timeout: Optional[float] = 10.0,
    ) -> None:
        self.adapters = list(adapters)
        self.state = state
        self.seed = seed
        self.adapter_timeout = adapter_timeout
        self._adapters_by_name = {a.name: a for a in self.adapters}
        self._epoch = 0
        self._quotes_requested = 0
        self._in_flight: Dict[QuoteKey, "asyncio.Future[Optional[Quote]]"] = {}

    def next_epoch(self) -> None:
        """Advance the exploration epoch and sweep stale quotes (once per detection pass)."""
        self._epoch += 1
        swept = self.state.sweep_expired_quotes()
        if swept:
            logger.debug(f"Swept {swept} expired quotes")

    # ============================================
    # Public contract
    # ============================================

    async def best_quote(self, token_in: str, token_out: str, amount_in: int) -> Optional[Quote]:
        """
        Best output across all adapters for one hop, or None if nobody quoted.

        Never raises for adapter failures.
        """
        token_in, token_out = token_in.lower(), token_out.lower()
        key = (token_in, token_out, int(amount_in))
        self._quotes_requested += 1

        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        hit, cached = self.state.get_cached_quote(key)
        if hit:
            return cached

        task = asyncio.ensure_future(self._fetch(key))
        self._in_flight[key] = task
        task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        return await asyncio.shield(task)

    async def _fetch(self, key: QuoteKey) -> Optional[Quote]:
        token_in, token_out, amount_in = key
        self.state.ensure_pair(token_in, token_out)
        ordered = self.order_adapters(token_in, token_out)

        results = await asyncio.gather(
            *(self._query(adapter, token_in, token_out, amount_in) for adapter in ordered),
            return_exceptions=True,
        )

        best: Optional[Quote] = None
        for adapter, result in zip(ordered, results):
            if isinstance(result, Quote):
                if best is None or result.amount_out > best.amount_out:
                    best = result
            elif not isinstance(result, QuoteUnavailable):
                # unexpected adapter bug, still isolated from the pass
                logger.warning(f"{adapter.name} quote error: {result!r}")

        if best is not None:
            # only the selected adapter is credited
            self.state.record_dex_attempt(best.dex, True)
            self.state.record_pair_success(token_in, token_out, best.dex)
        for adapter, result in zip(ordered, results):
            if best is not None and adapter.name == best.dex:
                continue
            if isinstance(result, Quote):
                # quoted but lost: counts as an attempt, the venue still has liquidity
                self.state.record_dex_attempt(adapter.name, False)
                self.state.add_pair_dex(token_in, token_out, adapter.name)
                continue
            self.state.record_dex_attempt(adapter.name, False)
            self.state.record_pair_failure(token_in, token_out, adapter.name)

        self.state.cache_quote(key, best)
        return best

    def pair_liquidity_score(self, token_a: str, token_b: str) -> float:
        return self.state.pair_score(token_a, token_b)

    def has_liquidity(self, token_a: str, token_b: str) -> bool:
        return bool(self.state.pair_dexes(token_a, token_b))

    # ============================================
    # Ranking
    # ============================================

    def adapter_priority(self, adapter: DexAdapter, token_in: str, token_out: str) -> float:
        """successRate * (1 + 0.3 if served pair) * exploration in [0.9, 1.1]"""
        score = self.state.dex_success_rate(adapter.name)
        if adapter.name in self.state.pair_dexes(token_in, token_out):
            score *= 1 + SERVED_PAIR_BONUS
        return score * exploration_factor(
            self.seed, "dex", self._epoch, adapter.name, token_in, token_out,
        )

    def order_adapters(self, token_in: str, token_out: str) -> List[DexAdapter]:
        return sorted(
            self.adapters,
            key=lambda a: self.adapter_priority(a, token_in, token_out),
            reverse=True,
        )

    async def _query(self, adapter: DexAdapter, token_in: str, token_out: str, amount_in: int) -> Quote:
        try:
            if self.adapter_timeout:
                return await asyncio.wait_for(
                    adapter.quote(token_in, token_out, amount_in),
                    timeout=self.adapter_timeout,
                )
            return await adapter.quote(token_in, token_out, amount_in)
        except asyncio.TimeoutError as e:
            raise QuoteUnavailable(f"{adapter.name}: timed out") from e

    # ============================================
    # Supplementary helpers
    # ============================================

    async def warm_up(
        self,
        pairs: Iterable[Tuple[str, str]],
        probe_amount_for: Any,
        concurrency: int = 10,
    ) -> int:
        """
        Probe pairs in both directions to seed liquidity knowledge.

        ``probe_amount_for(token_address) -> int`` gives the input amount.
        Returns the number of pairs with at least one supporting DEX.
        """
        semaphore = asyncio.Semaphore(concurrency)
        pairs = list(pairs)

        async def probe(a: str, b: str) -> None:
            async with semaphore:
                await self.best_quote(a, b, probe_amount_for(a))
                await self.best_quote(b, a, probe_amount_for(b))

        started = time.time()
        await asyncio.gather(*(probe(a, b) for a, b in pairs))
        liquid = sum(1 for a, b in pairs if self.has_liquidity(a, b))
        logger.info(
            f"Liquidity warm-up: {liquid}/{len(pairs)} pairs liquid "
            f"({time.time() - started:.1f}s)"
        )
        return liquid

    def estimate_gas_cost(self, path: Sequence[str], dexes: Optional[Sequence[str]] = None) -> int:
        """
        Gas units for executing ``path`` hop by hop.

        120k base + 60k per hop + 20k per DEX switch, plus 25k per
        concentrated-liquidity hop and 30k per stableswap hop.
        """
        hops = max(0, len(path) - 1)
        gas = BASE_ROUTE_GAS + GAS_PER_HOP * hops

        if dexes:
            for previous, current in zip(dexes, dexes[1:]):
                if previous != current:
                    gas += GAS_PER_DEX_SWITCH
            for name in dexes:
                adapter = self._adapters_by_name.get(name)
                if adapter is not None:
                    gas += EXTRA_GAS_BY_KIND.get(adapter.kind, 0)

        return gas

    def get_statistics(self) -> Dict[str, Any]:
        hits, misses = self.state.cache_hits, self.state.cache_misses
        lookups = hits + misses
        pairs = self.state.known_pairs()
        return {
            "quotes_requested": self._quotes_requested,
            "cache_hits": hits,
            "cache_misses": misses,
            "cache_hit_rate": hits / lookups if lookups else 0.0,
            "known_pairs": len(pairs),
            "liquid_pairs": sum(1 for p in pairs.values() if p.dexes),
            "dex_success_rates": {
                name: stats.success_rate for name, stats in self.state.all_dex_stats().items()
            },
        }
