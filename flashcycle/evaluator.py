#!/usr/bin/env python3
"""
Profit Evaluator

Walks every candidate cycle hop by hop through the quote aggregator at a
ladder of test notionals and keeps the cycles that come back with more of
the start token than they left with.

Per cycle:
1. For each test amount (ascending, scaled by the start token's decimals)
2. Chain best_quote() over every hop; a hop nobody can price breaks the
   cycle at that amount
3. The first amount with a positive profit is the result
4. profit % = profit * 10000 // initial / 100, profitable iff >= minimum
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .dex import Quote
from .state import pair_key
from .tokens import TokenCatalog

logger = logging.getLogger(__name__)

DEFAULT_TEST_AMOUNTS = (10, 100, 1000, 5000)
FIXED_BATCH_SIZE = 20


class CycleBroken(Exception):
    """A hop of the cycle has no quote at the tested amount"""

    def __init__(self, hop: int, token_in: str, token_out: str):
        super().__init__(f"hop {hop} {token_in} -> {token_out} has no quote")
        self.hop = hop
        self.token_in = token_in
        self.token_out = token_out


@dataclass
class EvaluatedCycle:
    """A cycle with the hop quotes used to price it"""
    cycle: tuple
    quotes: List[Quote]
    initial_amount: int
    final_amount: int
    profit: int
    profit_percentage: float
    profitable: bool = False

    @property
    def dexes(self) -> List[str]:
        return [q.dex for q in self.quotes]

    @property
    def pair(self) -> str:
        return pair_key(self.cycle[0], self.cycle[1])


def profit_percentage(profit: int, initial: int) -> float:
    """Profit in percent, resolved to whole basis points."""
    if initial <= 0:
        return 0.0
    return (profit * 10000 // initial) / 100


@dataclass
class EvaluationStats:
    """Counters for one evaluate() call"""
    evaluated: int = 0
    broken: int = 0
    unprofitable: int = 0
    profitable: int = 0
    elapsed: float = 0.0
    stopped_early: bool = False


class ProfitEvaluator:
    """
    Batched concurrent cycle pricing.

    Usage:
        evaluator = ProfitEvaluator(aggregator, catalog)
        results = await evaluator.evaluate(cycles)
    """

    def __init__(
        self,
        aggregator,
        catalog: TokenCatalog,
        test_amounts: Sequence[float] = DEFAULT_TEST_AMOUNTS,
        min_profit_percentage: float = 0.05,
        max_profitable: int = 50,
        adaptive_batch_size: bool = True,
        progress_interval: int = 50,
    ) -> None:
        self.aggregator = aggregator
        self.catalog = catalog
        self.test_amounts = sorted(test_amounts)
        self.min_profit_percentage = min_profit_percentage
        self.max_profitable = max_profitable
        self.adaptive_batch_size = adaptive_batch_size
        self.progress_interval = progress_interval

        self.last_stats = EvaluationStats()
        # pair key -> profitable, for every cycle priced in the last pass
        self.last_outcomes: Dict[str, bool] = {}

    def batch_size(self, total: int) -> int:
        if not self.adaptive_batch_size:
            return FIXED_BATCH_SIZE
        return min(max(10, total // 20), 50)

    def amounts_for(self, token_address: str) -> List[int]:
        token = self.catalog.get(token_address)
        if token is None:
            return [int(round(a * 10 ** 18)) for a in self.test_amounts]
        return [token.units(a) for a in self.test_amounts]

    # ============================================
    # Single cycle
    # ============================================

    async def simulate(self, cycle: Sequence[str], amount: int) -> List[Quote]:
        """Chain best quotes through the cycle; raises CycleBroken on a gap."""
        quotes: List[Quote] = []
        current = amount
        for hop, (token_in, token_out) in enumerate(zip(cycle, cycle[1:])):
            quote = await self.aggregator.best_quote(token_in, token_out, current)
            if quote is None or quote.amount_out <= 0:
                raise CycleBroken(hop, token_in, token_out)
            quotes.append(quote)
            current = quote.amount_out
        return quotes

    async def evaluate_cycle(self, cycle: Sequence[str]) -> Optional[EvaluatedCycle]:
        """
        Price one cycle across the test amounts.

        Returns the result at the first amount with a positive profit, or
        None when the cycle is broken or loses money at every amount.
        """
        cycle = tuple(cycle)
        broken = 0
        amounts = self.amounts_for(cycle[0])

        for amount in amounts:
            try:
                quotes = await self.simulate(cycle, amount)
            except CycleBroken as e:
                logger.debug(f"Cycle broken at {amount}: {e}")
                broken += 1
                continue

            final = quotes[-1].amount_out
            profit = final - amount
            if profit <= 0:
                continue

            pct = profit_percentage(profit, amount)
            return EvaluatedCycle(
                cycle=cycle,
                quotes=quotes,
                initial_amount=amount,
                final_amount=final,
                profit=profit,
                profit_percentage=pct,
                profitable=pct >= self.min_profit_percentage,
            )

        if broken == len(amounts):
            raise CycleBroken(-1, cycle[0], cycle[-1])
        return None

    # ============================================
    # Batch
    # ============================================

    async def evaluate(self, cycles: Sequence[Sequence[str]]) -> List[EvaluatedCycle]:
        """
        Evaluate cycles in concurrent batches and return the profitable ones.

        Stops after the batch in which the profitable count reaches
        ``max_profitable``. Never raises for a single bad cycle.
        """
        stats = EvaluationStats()
        outcomes: Dict[str, bool] = {}
        profitable: List[EvaluatedCycle] = []
        started = time.time()
        size = self.batch_size(len(cycles))
        next_progress = self.progress_interval

        for start in range(0, len(cycles), size):
            batch = cycles[start:start + size]
            results = await asyncio.gather(
                *(self.evaluate_cycle(c) for c in batch),
                return_exceptions=True,
            )

            for cycle, result in zip(batch, results):
                stats.evaluated += 1
                key = pair_key(cycle[0], cycle[1])
                if isinstance(result, CycleBroken):
                    stats.broken += 1
                    continue
                if isinstance(result, Exception):
                    logger.warning(f"Cycle evaluation failed: {result!r}")
                    stats.broken += 1
                    continue
                if result is not None and result.profitable:
                    profitable.append(result)
                    stats.profitable += 1
                    outcomes[key] = True
                else:
                    stats.unprofitable += 1
                    outcomes.setdefault(key, False)

            if stats.evaluated >= next_progress:
                logger.info(
                    f"Progress: {stats.evaluated}/{len(cycles)} cycles, "
                    f"{stats.profitable} profitable"
                )
                next_progress += self.progress_interval

            if len(profitable) >= self.max_profitable:
                stats.stopped_early = True
                break

        stats.elapsed = time.time() - started
        self.last_stats = stats
        self.last_outcomes = outcomes

        logger.info(
            f"Evaluated {stats.evaluated} cycles in {stats.elapsed:.2f}s: "
            f"{stats.profitable} profitable, {stats.broken} broken"
        )
        profitable.sort(key=lambda r: r.profit_percentage, reverse=True)
        return profitable[:self.max_profitable]
