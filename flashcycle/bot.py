#!/usr/bin/env python3
"""
Arbitrage Bot - detection orchestrator

One pipeline per detection pass:

    TokenCatalog -> CycleGenerator -> ProfitEvaluator -> StrategyBuilder
        -> ExecutionCoordinator -> ScoringFeedback

Passes are triggered by new block headers over WebSocket; if the stream is
unavailable the bot falls back to interval polling. A pass is skipped while
another one runs, while an execution is in flight, or inside the cooldown
window after the previous pass. Any error inside a pass is logged and the
next pass runs normally.

Transactions that timed out waiting for a receipt are kept as pending and
checked again at the start of each pass; once mined, their journal row and
scores are settled.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table
from rich import box

from .aggregator import DEXQuoteAggregator
from .config_loader import ArbitrageSettings, ChainConfig
from .cycles import CycleGenerator
from .dex import build_adapters
from .evaluator import ProfitEvaluator
from .executor import ExecutionCoordinator, ExecutionOutcome, ExecutionResult
from .journal import STATUS_BY_OUTCOME
from .metrics import PerformanceMetrics
from .network import NetworkOutageError, RPCError
from .price_oracle import PriceOracle
from .scoring import ScoringFeedback
from .state import MarketState, pair_key
from .strategy import Strategy, StrategyBuilder
from .tokens import Token, TokenCatalog

logger = logging.getLogger(__name__)


class ArbitrageBot:
    """
    Cyclic arbitrage bot for one chain and one wallet.

    Usage:
        bot = ArbitrageBot(network, chain_config, settings, journal=journal)
        await bot.start()      # runs until stop()
    """

    def __init__(
        self,
        network,
        chain_config: ChainConfig,
        settings: ArbitrageSettings,
        *,
        state: Optional[MarketState] = None,
        catalog: Optional[TokenCatalog] = None,
        adapters=None,
        price_oracle=None,
        executor=None,
        journal=None,
        metrics: Optional[PerformanceMetrics] = None,
        clock=time.monotonic,
    ) -> None:
        self.network = network
        self.chain_config = chain_config
        self.settings = settings
        self.journal = journal
        self.metrics = metrics or PerformanceMetrics()
        self._clock = clock

        seed = settings.scoring_seed
        self.state = state or MarketState(quote_ttl=settings.quote_cache_ttl)
        self.catalog = catalog or TokenCatalog(network)

        if adapters is None:
            adapters = build_adapters(chain_config.dexes, network)
        self.aggregator = DEXQuoteAggregator(adapters, self.state, seed=seed)

        self.feedback = ScoringFeedback(self.state, self.catalog, settings.reference_profit_usd)
        self.cycle_generator = CycleGenerator(
            self.catalog,
            self.aggregator,
            seed=seed,
            exploration_ratio=settings.exploration_ratio,
            max_cycles=settings.max_cycles,
            max_cycles_per_length=settings.max_cycles_per_length,
            cache_ttl=settings.cycle_cache_ttl,
        )
        self.evaluator = ProfitEvaluator(
            self.aggregator,
            self.catalog,
            test_amounts=settings.test_amounts,
            min_profit_percentage=settings.min_profit_percentage,
            max_profitable=settings.max_profitable_cycles,
            adaptive_batch_size=settings.adaptive_batch_size,
            progress_interval=settings.progress_interval,
        )

        self.price_oracle = price_oracle or PriceOracle(
            chain_config.coingecko_platform,
            session=getattr(network, "session", None),
            fallback_prices=chain_config.fallback_prices,
        )
        self.strategy_builder = StrategyBuilder(
            self.catalog,
            self.price_oracle,
            self.state,
            min_profit_usd=settings.min_profit_usd,
            slippage_bps=settings.slippage_tolerance_bps,
            seed=seed,
        )
        self.executor = executor or ExecutionCoordinator(
            network,
            chain_config,
            protocol=settings.flash_loan_protocol,
            private_key=chain_config.private_key,
            max_gas_gwei=settings.max_gas_gwei,
            base_gas_limit=settings.base_gas_limit,
            gas_per_hop=settings.gas_per_hop,
            tx_timeout=settings.tx_timeout,
            dry_run=settings.dry_run,
            price_oracle=self.price_oracle,
            catalog=self.catalog,
            aggregator=self.aggregator,
        )

        # State
        self.running = False
        self._detecting = False
        self._last_detection: Optional[float] = None
        self._loop_task: Optional[asyncio.Task] = None
        self.polling = False
        self.start_time: Optional[float] = None
        self.pending: Dict[str, Strategy] = {}

        # Stats
        self.detection_passes = 0
        self.detection_errors = 0
        self.skipped_triggers = 0
        self.cycles_evaluated = 0
        self.profitable_found = 0
        self.strategies_built = 0

    # ============================================
    # Lifecycle
    # ============================================

    async def initialize(self) -> None:
        """Load tokens and warm up liquidity knowledge for predefined pairs."""
        await self.catalog.load(self.chain_config.tokens)
        self.catalog.set_popular_pairs(self.chain_config.popular_pairs)

        pairs = self.prioritize_pairs(self.catalog.generate_predefined_pairs())
        logger.info(f"Warming up {len(pairs)} predefined pairs across {len(self.aggregator.adapters)} DEXes")
        await self.aggregator.warm_up(pairs, self._probe_amount)

    async def start(self) -> None:
        """Initialize, then run detection until stop() is called."""
        self.running = True
        self.start_time = time.time()
        await self.initialize()

        self._loop_task = asyncio.create_task(self._detection_loop())
        try:
            await self._loop_task
        except asyncio.CancelledError:
            logger.info("Detection loop cancelled")

    async def stop(self) -> None:
        self.running = False
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        if isinstance(self.price_oracle, PriceOracle):
            await self.price_oracle.close()

    async def _detection_loop(self) -> None:
        try:
            await self.network.subscribe_new_blocks(self._on_new_block)
        except NetworkOutageError as e:
            logger.warning(
                f"Block subscription unavailable ({e}); "
                f"polling every {self.settings.detection_interval}s"
            )
        await self._poll_loop()

    async def _poll_loop(self) -> None:
        self.polling = True
        while self.running:
            await self._on_trigger()
            await asyncio.sleep(self.settings.detection_interval)

    async def _on_new_block(self, block_number: int) -> None:
        logger.debug(f"New block {block_number}")
        await self._on_trigger()

    async def _on_trigger(self) -> None:
        if self.should_skip_detection():
            self.skipped_triggers += 1
            return
        await self.check_arbitrage_opportunities()

    def should_skip_detection(self) -> bool:
        if self._detecting or self.executor.in_flight:
            return True
        if self._last_detection is None:
            return False
        return self._clock() - self._last_detection < self.settings.min_time_between_detections

    # ============================================
    # Detection pass
    # ============================================

    def prioritize_tokens(self) -> List[Token]:
        """Highest-weight tokens first, capped at max_tokens_to_consider."""
        tokens = sorted(self.catalog.tokens, key=lambda t: t.weight, reverse=True)
        return tokens[:self.settings.max_tokens_to_consider]

    def prioritize_pairs(self, pairs: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
        """Pairs ordered by feedback score, capped at max_pairs_to_use."""
        ranked = sorted(pairs, key=lambda p: self.feedback.get_score(pair_key(*p)), reverse=True)
        return ranked[:self.settings.max_pairs_to_use]

    async def check_arbitrage_opportunities(self) -> Optional[ExecutionResult]:
        """Run one detection pass. Errors are logged, never raised."""
        if self._detecting:
            return None

        self._detecting = True
        self._last_detection = self._clock()
        self.detection_passes += 1
        op_id = self.metrics.start_operation("opportunity_detection")
        success = False

        try:
            if self.pending:
                await self.reconcile_pending()
            self.aggregator.next_epoch()
            tokens = self.prioritize_tokens()

            with self.metrics.track("cycle_generation"):
                cycles = self.cycle_generator.generate(tokens, self.settings.cycle_lengths)
            if not cycles:
                logger.info("No candidate cycles this pass")
                success = True
                return None

            with self.metrics.track("cycle_evaluation"):
                profitable = await self.evaluator.evaluate(cycles)
            self.cycles_evaluated += self.evaluator.last_stats.evaluated
            self.profitable_found += len(profitable)

            for pair, was_profitable in self.evaluator.last_outcomes.items():
                self.feedback.on_detection(pair, was_profitable)

            if not profitable:
                success = True
                return None

            with self.metrics.track("strategy_building"):
                strategy = await self.strategy_builder.build(profitable)
            if strategy is None:
                logger.info(f"{len(profitable)} profitable cycles, none above ${self.settings.min_profit_usd}")
                success = True
                return None
            self.strategies_built += 1

            with self.metrics.track("arbitrage_execution"):
                result = await self.executor.execute(strategy)
            self._handle_result(result)
            success = True
            return result

        except Exception:
            self.detection_errors += 1
            logger.exception("Detection pass failed")
            return None
        finally:
            self._detecting = False
            self.metrics.end_operation("opportunity_detection", success, op_id)

    def _handle_result(self, result: ExecutionResult) -> None:
        strategy = result.strategy

        if result.outcome == ExecutionOutcome.SIMULATED:
            if self.journal is not None:
                self.journal.log_opportunity(
                    strategy, self.catalog, notes=result.error or "simulation passed",
                )
            return

        self._apply_feedback(result)
        if result.outcome == ExecutionOutcome.TIMED_OUT and result.tx_hash:
            self.pending[result.tx_hash] = strategy

        if self.journal is not None:
            self.journal.log_execution(result, self.catalog)

    def _apply_feedback(self, result: ExecutionResult) -> None:
        strategy = result.strategy
        if result.outcome == ExecutionOutcome.CONFIRMED:
            self.feedback.on_execution(
                strategy.pair, True, result.realized_profit_usd, dexes=strategy.dexes,
            )
        elif result.outcome == ExecutionOutcome.FAILED:
            self.feedback.on_execution(strategy.pair, False, dexes=strategy.dexes)

    async def reconcile_pending(self) -> int:
        """Settle timed-out transactions that have since been mined. Returns how many settled."""
        settled = 0
        for tx_hash, strategy in list(self.pending.items()):
            try:
                receipt = await self.network.get_transaction_receipt(tx_hash)
            except RPCError as e:
                logger.debug(f"Receipt lookup for {tx_hash} failed: {e}")
                continue
            if receipt is None:
                continue

            del self.pending[tx_hash]
            result = await self.executor.reconcile(strategy, tx_hash, receipt)
            self._apply_feedback(result)
            if self.journal is not None:
                self.journal.update_status(
                    tx_hash,
                    STATUS_BY_OUTCOME[result.outcome],
                    gas_used=result.gas_used,
                    realized_profit_usd=result.realized_profit_usd,
                )
            logger.info(f"Reconciled {tx_hash}: {result.outcome.value}")
            settled += 1
        return settled

    def _probe_amount(self, token_address: str) -> int:
        return self.evaluator.amounts_for(token_address)[0]

    # ============================================
    # Reporting
    # ============================================

    def get_statistics(self) -> dict:
        return {
            "detection_passes": self.detection_passes,
            "detection_errors": self.detection_errors,
            "skipped_triggers": self.skipped_triggers,
            "cycles_evaluated": self.cycles_evaluated,
            "profitable_found": self.profitable_found,
            "strategies_built": self.strategies_built,
            "cycles": self.cycle_generator.get_statistics(),
            "quotes": self.aggregator.get_statistics(),
            "execution": self.executor.get_statistics(),
            "operations": self.metrics.get_metrics(),
        }

    def print_summary(self, console: Optional[Console] = None) -> None:
        """Render final statistics as rich tables."""
        console = console or Console()
        stats = self.get_statistics()
        runtime = time.time() - self.start_time if self.start_time else 0
        hours, rem = divmod(int(runtime), 3600)
        minutes, seconds = divmod(rem, 60)

        summary = Table(title="📊 Final Statistics", box=box.ROUNDED, show_header=False)
        summary.add_column("Metric", style="cyan")
        summary.add_column("Value", justify="right")
        execution = stats["execution"]
        rows = [
            ("Runtime", f"{hours}h {minutes}m {seconds}s"),
            ("Detection passes", str(stats["detection_passes"])),
            ("Errors", str(stats["detection_errors"])),
            ("Cycles evaluated", str(stats["cycles_evaluated"])),
            ("Profitable cycles", str(stats["profitable_found"])),
            ("Strategies built", str(stats["strategies_built"])),
            ("Executions", str(execution["executed"])),
            ("Success rate", f"{execution['success_rate'] * 100:.1f}%"),
            ("Timed out", str(execution["timed_out"])),
            ("Dry-run simulations", str(execution["simulated"])),
            ("Realized profit", f"${execution['total_profit_usd']:.2f}"),
            ("Quote cache hit rate", f"{stats['quotes']['cache_hit_rate'] * 100:.1f}%"),
            ("Cycle cache hit rate", f"{stats['cycles']['cache_hit_rate'] * 100:.1f}%"),
        ]
        for name, value in rows:
            summary.add_row(name, value)
        console.print(summary)

        dexes = Table(title="DEX success rates", box=box.SIMPLE)
        dexes.add_column("DEX", style="cyan")
        dexes.add_column("Rate", justify="right")
        for name, rate in sorted(stats["quotes"]["dex_success_rates"].items()):
            dexes.add_row(name, f"{rate * 100:.1f}%")
        console.print(dexes)
