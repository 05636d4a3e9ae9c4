import csv

import pytest

from flashcycle.executor import ExecutionOutcome, ExecutionResult
from flashcycle.journal import CSV_HEADERS, TradeJournal
from flashcycle.state import pair_key
from flashcycle.strategy import Strategy

from conftest import USDC, WETH


@pytest.fixture
def strategy():
    return Strategy(
        pair=pair_key(USDC, WETH),
        base_token=USDC,
        quote_token=WETH,
        leg1=[USDC, WETH],
        leg2=[WETH, USDC],
        dexes=["quickswap", "sushiswap"],
        flash_loan_amount=1000 * 10 ** 6,
        min_amount_out=999_900_000,
        estimated_profit=10 * 10 ** 6,
        profit_percentage=1.0,
        profit_usd=10.0,
        strategy_hash=b"\x01" * 32,
        confidence=0.5,
        cycle=(USDC, WETH, USDC),
    )


def read_rows(journal):
    with open(journal.file_path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def test_new_journal_writes_header(tmp_path):
    journal = TradeJournal(tmp_path / "logs")
    with open(journal.file_path, newline="", encoding="utf-8") as f:
        assert next(csv.reader(f)) == CSV_HEADERS


def test_execution_is_appended_with_symbols(tmp_path, strategy, catalog):
    journal = TradeJournal(tmp_path)
    result = ExecutionResult(
        strategy=strategy,
        outcome=ExecutionOutcome.CONFIRMED,
        success=True,
        realized_profit_usd=12.5,
        gas_used=310_000,
        tx_hash="0xabc",
    )

    journal.log_execution(result, catalog)

    (row,) = read_rows(journal)
    assert row["Path"] == "USDC -> WETH -> USDC"
    assert row["Flash_Loan_Amount"] == "1000.000000"
    assert row["Dexes"] == "quickswap | sushiswap"
    assert row["Status"] == "Success"
    assert row["Gas_Used"] == "310000"
    assert row["Realized_Profit_USD"] == "12.50"
    assert row["Strategy_Hash"] == "0x" + "01" * 32


def test_opportunity_and_status_update(tmp_path, strategy, catalog):
    journal = TradeJournal(tmp_path)
    journal.log_opportunity(strategy, catalog, notes="simulation passed")
    journal.log_execution(ExecutionResult(
        strategy=strategy, outcome=ExecutionOutcome.TIMED_OUT, tx_hash="0xdef", error="no receipt",
    ))

    assert journal.update_status("0xdef", "Success", gas_used=280_000, realized_profit_usd=3.0)
    assert not journal.update_status("0xmissing", "Failed")

    rows = read_rows(journal)
    assert rows[0]["Status"] == "DryRun"
    assert rows[0]["Notes"] == "simulation passed"
    assert rows[1]["Status"] == "Success"
    assert rows[1]["Gas_Used"] == "280000"


def test_stats_summarize_rows(tmp_path, strategy):
    journal = TradeJournal(tmp_path)
    for outcome, profit, gas in [
        (ExecutionOutcome.CONFIRMED, 5.0, 100),
        (ExecutionOutcome.CONFIRMED, 7.5, 200),
        (ExecutionOutcome.FAILED, None, 50),
        (ExecutionOutcome.REJECTED, None, 0),
    ]:
        journal.log_execution(ExecutionResult(
            strategy=strategy, outcome=outcome, realized_profit_usd=profit, gas_used=gas,
        ))
    journal.log_opportunity(strategy)

    stats = journal.get_stats()

    assert stats["total"] == 5
    assert stats["successful"] == 2
    assert stats["failed"] == 1
    assert stats["rejected"] == 1
    assert stats["dry_run"] == 1
    assert stats["total_profit_usd"] == pytest.approx(12.5)
    assert stats["total_gas_used"] == 350


def test_existing_file_is_appended_not_truncated(tmp_path, strategy):
    TradeJournal(tmp_path).log_opportunity(strategy)
    TradeJournal(tmp_path).log_opportunity(strategy)
    assert len(read_rows(TradeJournal(tmp_path))) == 2
