#!/usr/bin/env python3
"""
交易日志模块 (Trade Journal)

功能：
- 将每个策略的执行结果追加到 CSV 文件
- Dry Run 模式下记录发现的机会
- 线程安全的文件追加操作，支持后续审计和性能分析

使用方法：
    journal = TradeJournal(log_dir)
    journal.log_execution(result, catalog)
    journal.log_opportunity(strategy, catalog, notes="simulation passed")
"""

import csv
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .executor import ExecutionOutcome, ExecutionResult
from .strategy import Strategy

logger = logging.getLogger(__name__)


# ============================================
# 配置
# ============================================

# 日志文件目录（项目根目录下的 logs/）
LOGS_DIR = Path(__file__).resolve().parent.parent / "logs"

TRADE_HISTORY_FILE = "trade_history.csv"

CSV_HEADERS = [
    "Timestamp",
    "Strategy_Hash",
    "Path",
    "Flash_Loan_Amount",
    "Dexes",
    "Expected_Profit_Pct",
    "Expected_Profit_USD",
    "Tx_Hash",
    "Status",
    "Gas_Used",
    "Realized_Profit_USD",
    "Notes",
]

STATUS_BY_OUTCOME = {
    ExecutionOutcome.CONFIRMED: "Success",
    ExecutionOutcome.FAILED: "Failed",
    ExecutionOutcome.TIMED_OUT: "TimedOut",
    ExecutionOutcome.REJECTED: "Rejected",
    ExecutionOutcome.SIMULATED: "DryRun",
}


# ============================================
# 数据结构
# ============================================

@dataclass
class TradeRecord:
    """单条日志记录"""
    timestamp: str
    strategy_hash: str
    path: str
    flash_loan_amount: float
    dexes: str
    expected_profit_pct: float
    expected_profit_usd: float
    tx_hash: str
    status: str
    gas_used: int = 0
    realized_profit_usd: Optional[float] = None
    notes: str = ""

    def to_row(self) -> list:
        """转换为 CSV 行"""
        return [
            self.timestamp,
            self.strategy_hash,
            self.path,
            f"{self.flash_loan_amount:.6f}",
            self.dexes,
            f"{self.expected_profit_pct:.4f}",
            f"{self.expected_profit_usd:.2f}",
            self.tx_hash,
            self.status,
            str(self.gas_used) if self.gas_used else "",
            f"{self.realized_profit_usd:.2f}" if self.realized_profit_usd is not None else "",
            self.notes,
        ]


def _describe_path(strategy: Strategy, catalog) -> str:
    tokens = list(strategy.cycle) or strategy.leg1 + strategy.leg2[1:]
    if catalog is None:
        return " -> ".join(tokens)
    return " -> ".join(catalog.symbol(t) for t in tokens)


def _human_amount(strategy: Strategy, catalog) -> float:
    token = catalog.get(strategy.base_token) if catalog is not None else None
    decimals = token.decimals if token else 18
    return strategy.flash_loan_amount / 10 ** decimals


# ============================================
# TradeJournal 类
# ============================================

class TradeJournal:
    """
    交易日志管理器

    每次执行尝试（含 Dry Run 机会）对应 CSV 中的一行。
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        初始化交易日志

        参数：
            log_dir: 日志目录路径（默认为项目根目录下的 logs/）
        """
        self.log_dir = Path(log_dir) if log_dir else LOGS_DIR
        self.file_path = self.log_dir / TRADE_HISTORY_FILE
        self._lock = threading.Lock()

        self._ensure_file()

    def _ensure_file(self) -> None:
        """确保目录和 CSV 文件存在，并写入表头"""
        if not self.log_dir.exists():
            self.log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"📁 创建日志目录: {self.log_dir}")

        if not self.file_path.exists() or self.file_path.stat().st_size == 0:
            with open(self.file_path, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(CSV_HEADERS)
            logger.info(f"📄 创建交易日志: {self.file_path}")

    def _append(self, record: TradeRecord) -> TradeRecord:
        with self._lock:
            with open(self.file_path, "a", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(record.to_row())
        return record

    def _record_for(self, strategy: Strategy, catalog, status: str, **extra) -> TradeRecord:
        return TradeRecord(
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            strategy_hash=strategy.hash_hex,
            path=_describe_path(strategy, catalog),
            flash_loan_amount=_human_amount(strategy, catalog),
            dexes=" | ".join(strategy.dexes),
            expected_profit_pct=strategy.profit_percentage,
            expected_profit_usd=strategy.profit_usd,
            status=status,
            **extra,
        )

    def log_execution(self, result: ExecutionResult, catalog=None) -> TradeRecord:
        """
        记录一次执行结果

        参数：
            result: ExecutionCoordinator 返回的执行结果
            catalog: 可选的 TokenCatalog，用于把地址显示为代币符号

        返回：
            TradeRecord 记录对象
        """
        return self._append(self._record_for(
            result.strategy,
            catalog,
            STATUS_BY_OUTCOME[result.outcome],
            tx_hash=result.tx_hash or "N/A",
            gas_used=result.gas_used,
            realized_profit_usd=result.realized_profit_usd,
            notes=result.error or "",
        ))

    def log_opportunity(
        self,
        strategy: Strategy,
        catalog=None,
        notes: str = "Opportunity detected, not executed",
    ) -> TradeRecord:
        """记录一个发现但未广播的机会（Dry Run 模式）"""
        return self._append(self._record_for(
            strategy, catalog, "DryRun", tx_hash="N/A", notes=notes,
        ))

    def update_status(
        self,
        tx_hash: str,
        status: str,
        gas_used: int = 0,
        realized_profit_usd: Optional[float] = None,
    ) -> bool:
        """
        按 tx_hash 更新已记录交易的状态（例如超时后交易最终被打包）

        注意：会读取整个文件并重写。

        返回：
            是否找到并更新了记录
        """
        tx_col = CSV_HEADERS.index("Tx_Hash")
        status_col = CSV_HEADERS.index("Status")
        gas_col = CSV_HEADERS.index("Gas_Used")
        profit_col = CSV_HEADERS.index("Realized_Profit_USD")

        with self._lock:
            with open(self.file_path, "r", newline="", encoding="utf-8") as f:
                rows: List[List[str]] = list(csv.reader(f))

            updated = False
            for row in rows[1:]:
                if len(row) > tx_col and row[tx_col] == tx_hash:
                    row[status_col] = status
                    if gas_used:
                        row[gas_col] = str(gas_used)
                    if realized_profit_usd is not None:
                        row[profit_col] = f"{realized_profit_usd:.2f}"
                    updated = True

            if updated:
                with open(self.file_path, "w", newline="", encoding="utf-8") as f:
                    csv.writer(f).writerows(rows)

        return updated

    def get_stats(self) -> Dict[str, float]:
        """
        汇总日志中的记录

        返回：
            统计字典（各状态计数、累计实际利润、累计 Gas）
        """
        stats: Dict[str, float] = {
            "total": 0,
            "successful": 0,
            "failed": 0,
            "timed_out": 0,
            "rejected": 0,
            "dry_run": 0,
            "total_profit_usd": 0.0,
            "total_gas_used": 0,
        }
        keys = {
            "success": "successful",
            "failed": "failed",
            "timedout": "timed_out",
            "rejected": "rejected",
            "dryrun": "dry_run",
        }

        with self._lock:
            with open(self.file_path, "r", newline="", encoding="utf-8") as f:
                for row in csv.DictReader(f):
                    stats["total"] += 1
                    key = keys.get(row.get("Status", "").lower())
                    if key:
                        stats[key] += 1
                    try:
                        stats["total_profit_usd"] += float(row.get("Realized_Profit_USD") or 0)
                        stats["total_gas_used"] += int(row.get("Gas_Used") or 0)
                    except ValueError:
                        logger.debug(f"Skipping malformed journal row: {row}")

        return stats
