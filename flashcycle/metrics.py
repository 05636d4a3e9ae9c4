#!/usr/bin/env python3
"""
Per-operation timing statistics (count, success rate, min/avg/max time).
"""

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_OPERATIONS = (
    "opportunity_detection",
    "cycle_generation",
    "cycle_evaluation",
    "strategy_building",
    "arbitrage_execution",
)


@dataclass
class OperationStats:
    count: int = 0
    success_count: int = 0
    total_time: float = 0.0
    max_time: float = 0.0
    min_time: float = float("inf")
    active: Dict[str, float] = field(default_factory=dict)

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.count if self.count else 0.0


class PerformanceMetrics:
    """
    Usage:
        op = metrics.start_operation("cycle_generation")
        ...
        metrics.end_operation("cycle_generation", success=True, op_id=op)

        with metrics.track("cycle_evaluation"):
            ...
    """

    def __init__(self, clock=time.perf_counter) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counter = itertools.count()
        self._operations: Dict[str, OperationStats] = {
            name: OperationStats() for name in DEFAULT_OPERATIONS
        }

    def start_operation(self, name: str) -> str:
        with self._lock:
            stats = self._operations.setdefault(name, OperationStats())
            op_id = f"{name}-{next(self._counter)}"
            stats.active[op_id] = self._clock()
            return op_id

    def end_operation(self, name: str, success: bool = True, op_id: Optional[str] = None) -> Optional[float]:
        """Close an operation (the oldest active one when op_id is omitted); returns its duration."""
        with self._lock:
            stats = self._operations.get(name)
            if stats is None or not stats.active:
                logger.warning(f"No active operation: {name}")
                return None

            if op_id is None:
                op_id = min(stats.active, key=stats.active.get)
            started = stats.active.pop(op_id, None)
            if started is None:
                logger.warning(f"Unknown operation id: {op_id}")
                return None

            duration = self._clock() - started
            stats.count += 1
            if success:
                stats.success_count += 1
            stats.total_time += duration
            stats.max_time = max(stats.max_time, duration)
            stats.min_time = min(stats.min_time, duration)
            return duration

    @contextmanager
    def track(self, name: str):
        op_id = self.start_operation(name)
        success = False
        try:
            yield
            success = True
        finally:
            self.end_operation(name, success, op_id)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "count": s.count,
                    "success_rate": s.success_rate,
                    "avg_ms": s.avg_time * 1000,
                    "min_ms": s.min_time * 1000 if s.count else 0.0,
                    "max_ms": s.max_time * 1000,
                    "active": len(s.active),
                }
                for name, s in self._operations.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._operations = {name: OperationStats() for name in DEFAULT_OPERATIONS}
