#!/usr/bin/env python3
"""
=========================================================
     🚀 FlashCycle - DEX Cyclic Arbitrage Bot
=========================================================

Beam-search cycle discovery across several DEXes on one EVM chain,
funded by flash loans.

Features:
- Constant-product, concentrated-liquidity and stableswap quote adapters
- Adaptive DEX ranking with seeded, reproducible exploration
- Batched concurrent profit evaluation
- Aave / Balancer / custom flash-loan dispatch
- Block-driven detection with polling fallback

Usage:
    CHAIN=POLYGON python main.py
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from flashcycle.bot import ArbitrageBot
from flashcycle.config_loader import ConfigLoader, ConfigValidationError
from flashcycle.journal import TradeJournal
from flashcycle.network import NetworkManager
from flashcycle.price_oracle import PriceOracle
from flashcycle.utils.abi_loader import ABILoadError

# Project root
PROJECT_ROOT = Path(__file__).resolve().parent

# Load environment
load_dotenv(PROJECT_ROOT / ".env")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

logger = logging.getLogger("flashcycle")


def setup_logging() -> None:
    """Console logging plus an optional file handler (LOG_FILE)."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        path = Path(log_file)
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    # web3 is chatty at DEBUG
    logging.getLogger("web3").setLevel(logging.WARNING)


async def run(chain_name: str) -> int:
    try:
        loader = ConfigLoader()
        chain_config = loader.get_chain_config(chain_name)
        settings = loader.get_settings()
    except ConfigValidationError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 1

    if loader.debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 60)
    logger.info(f"🚀 FlashCycle on {chain_config.name} (chain {chain_config.chain_id})")
    logger.info(f"   Cycle lengths:   {settings.cycle_lengths}")
    logger.info(f"   Flash loans:     {settings.flash_loan_protocol}")
    logger.info(f"   Min profit:      {settings.min_profit_percentage}% / ${settings.min_profit_usd}")
    logger.info(f"   Mode:            {'DRY RUN' if settings.dry_run else 'LIVE'}")
    logger.info("=" * 60)

    if not settings.dry_run and not loader.has_private_key:
        logger.error("❌ PRIVATE_KEY is required when DRY_RUN=false")
        return 1

    async with NetworkManager(chain_config) as network:
        oracle = PriceOracle(
            chain_config.coingecko_platform,
            session=network.session,
            fallback_prices=chain_config.fallback_prices,
            api_key=os.getenv("COINGECKO_API_KEY"),
        )
        journal_dir = os.getenv("JOURNAL_DIR")
        journal = TradeJournal(Path(journal_dir) if journal_dir else None)

        try:
            bot = ArbitrageBot(
                network, chain_config, settings,
                price_oracle=oracle, journal=journal,
            )
        except ABILoadError as e:
            logger.error(f"❌ ABI loading failed: {e}")
            return 1

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(bot.stop()))
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                break

        try:
            await bot.start()
        finally:
            await bot.stop()
            logger.info("🛑 Shutting down...")
            bot.print_summary()
            journal_stats = journal.get_stats()
            logger.info(
                f"📒 Journal {journal.file_path}: {int(journal_stats['total'])} records, "
                f"{len(bot.pending)} unreconciled, "
                f"${journal_stats['total_profit_usd']:.2f} realized"
            )

    return 0


def main() -> None:
    """Main entry point."""
    setup_logging()
    chain_name = (sys.argv[1] if len(sys.argv) > 1 else os.getenv("CHAIN", "POLYGON")).upper()
    try:
        code = asyncio.run(run(chain_name))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
