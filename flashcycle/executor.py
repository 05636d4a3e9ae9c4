#!/usr/bin/env python3
"""
Flash Loan Execution Coordinator

Drives one strategy at a time through the flash-loan lifecycle:

    Idle -> Validating -> Submitting -> PendingConfirmation
         -> Confirmed | Failed | TimedOut -> Idle

⚡ Execution path:
1. Validate the strategy (amount, legs, hash, base token)
2. Encode the receiver params and dispatch by protocol (Aave / Balancer / custom)
3. Gas limit from hop count, gas price scaled by network congestion
4. eth_estimateGas pre-flight (a revert aborts before broadcast), sign
   locally, broadcast, bounded wait for the receipt
5. Parse ArbitrageExecuted from the receipt for realized profit

A second execute() while one is in flight is rejected without touching the
chain. A confirmation timeout (or losing the provider while waiting) is not a
failure: the transaction may still land, so it carries no scoring penalty and
can be settled later with reconcile().
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, Optional

from eth_abi import decode, encode
from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from .config_loader import ChainConfig
from .network import FeeData, GasParams, RPCError
from .strategy import Strategy
from .utils.abi_loader import encode_function_call, event_topic, get_event_by_name, load_abi

logger = logging.getLogger(__name__)

# Receiver deadline offset
DEADLINE_SECONDS = 300

# Legacy congestion band (gwei)
CONGESTION_LOW_GWEI = 30
CONGESTION_HIGH_GWEI = 100

# Congestion assumed when fee data is unavailable
DEFAULT_CONGESTION = 0.5

GAS_HISTORY_SIZE = 20

# Headroom over eth_estimateGas (percent) when it exceeds the hop-based limit
GAS_ESTIMATE_MARGIN_PCT = 120

PARAMS_TYPES = ["address[]", "address[]", "uint256", "uint256", "bytes32"]


# ============================================
# Types
# ============================================

class ExecutionState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ExecutionOutcome(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    SIMULATED = "simulated"


class FlashLoanProtocol(Enum):
    AAVE = "aave"
    BALANCER = "balancer"
    CUSTOM = "custom"


class ExecutionError(Exception):
    """Base class for execution errors"""
    pass


class ValidationError(ExecutionError):
    """Strategy is not executable as built"""
    pass


class SubmissionError(ExecutionError):
    """Transaction could not be built, signed or broadcast"""
    pass


class ConfirmationTimeout(ExecutionError):
    """No receipt within the confirmation window"""
    pass


@dataclass
class ExecutionResult:
    """Outcome of one execute() call with timing metrics"""
    strategy: Strategy
    outcome: ExecutionOutcome
    success: bool = False
    realized_profit: Optional[int] = None
    realized_profit_usd: Optional[float] = None
    gas_used: int = 0
    gas_price: int = 0
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    # Timing metrics
    time_build_ms: float = 0.0
    time_broadcast_ms: float = 0.0
    time_confirm_ms: float = 0.0
    time_total_ms: float = 0.0


def congestion_from_fee(fee: FeeData) -> float:
    """
    Congestion level in [0, 1].

    EIP-1559: (gasPrice / baseFee - 1) / 5. Legacy: linear between 30 and
    100 gwei.
    """
    if fee.base_fee:
        level = (fee.gas_price / fee.base_fee - 1) / 5
    else:
        gwei = fee.gas_price / 10 ** 9
        level = (gwei - CONGESTION_LOW_GWEI) / (CONGESTION_HIGH_GWEI - CONGESTION_LOW_GWEI)
    return max(0.0, min(1.0, level))


def encode_strategy_params(strategy: Strategy, deadline: int) -> bytes:
    """Receiver params: (path1, path2, minAmountOut, deadline, strategyHash)"""
    return encode(
        PARAMS_TYPES,
        [
            [Web3.to_checksum_address(a) for a in strategy.leg1],
            [Web3.to_checksum_address(a) for a in strategy.leg2],
            strategy.min_amount_out,
            deadline,
            strategy.strategy_hash,
        ],
    )


class ExecutionCoordinator:
    """
    Single-flight flash-loan executor.

    Usage:
        coordinator = ExecutionCoordinator(network, chain_config, private_key=key)
        result = await coordinator.execute(strategy)
    """

    def __init__(
        self,
        network,
        config: ChainConfig,
        protocol: str = "custom",
        private_key: Optional[str] = None,
        max_gas_gwei: float = 300.0,
        base_gas_limit: int = 400_000,
        gas_per_hop: int = 50_000,
        tx_timeout: float = 60.0,
        dry_run: bool = True,
        price_oracle=None,
        catalog=None,
        aggregator=None,
        clock=time.time,
    ) -> None:
        self.network = network
        self.config = config
        self.protocol = FlashLoanProtocol(protocol)
        self.max_gas_wei = int(max_gas_gwei * 10 ** 9)
        self.base_gas_limit = base_gas_limit
        self.gas_per_hop = gas_per_hop
        self.tx_timeout = tx_timeout
        self.dry_run = dry_run
        self.price_oracle = price_oracle
        self.catalog = catalog
        self.aggregator = aggregator
        self._clock = clock

        self.account = None
        if private_key:
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            self.account = Account.from_key(private_key)

        self.executor_address = (
            Web3.to_checksum_address(config.executor_address)
            if config.executor_address else None
        )

        self._event_topic = event_topic(
            get_event_by_name(load_abi("arbitrage_executor"), "ArbitrageExecuted")
        )

        self._state = ExecutionState.IDLE
        self._busy = False
        self.gas_price_history: Deque[int] = deque(maxlen=GAS_HISTORY_SIZE)

        # Stats
        self.executed = 0
        self.successful = 0
        self.failed = 0
        self.timed_out = 0
        self.rejected = 0
        self.simulated = 0
        self.total_profit_usd = 0.0

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._busy

    @property
    def sender(self) -> Optional[str]:
        if self.account is not None:
            return self.account.address
        return self.executor_address

    # ============================================
    # Validation
    # ============================================

    def validate(self, strategy: Strategy) -> None:
        if strategy.flash_loan_amount <= 0:
            raise ValidationError("flash loan amount must be positive")
        if len(strategy.leg1) < 2 or len(strategy.leg2) < 2:
            raise ValidationError("each leg needs at least two tokens")
        if not strategy.strategy_hash:
            raise ValidationError("missing strategy hash")
        if not strategy.base_token:
            raise ValidationError("missing base token")
        if self.executor_address is None:
            raise ValidationError("EXECUTOR_ADDRESS not configured")
        if not self.dry_run and self.account is None:
            raise ValidationError("PRIVATE_KEY required for live execution")

    # ============================================
    # Transaction building
    # ============================================

    def target_address(self) -> str:
        if self.protocol == FlashLoanProtocol.CUSTOM:
            return self.executor_address
        provider = self.config.flash_loan_providers.get(self.protocol.value)
        if not provider:
            raise ValidationError(f"no {self.protocol.value} flash loan provider configured")
        return Web3.to_checksum_address(provider)

    def build_calldata(self, strategy: Strategy, deadline: int) -> bytes:
        params = encode_strategy_params(strategy, deadline)
        token = Web3.to_checksum_address(strategy.base_token)
        amount = strategy.flash_loan_amount

        if self.protocol == FlashLoanProtocol.AAVE:
            return encode_function_call("aave_pool", "flashLoan", [
                self.executor_address, [token], [amount], [0],
                self.executor_address, params, 0,
            ])
        if self.protocol == FlashLoanProtocol.BALANCER:
            return encode_function_call("balancer_vault", "flashLoan", [
                self.executor_address, [token], [amount], params,
            ])
        return encode_function_call("arbitrage_executor", "executeArbitrage", [
            token, amount, params, strategy.strategy_hash,
        ])

    def gas_limit_for(self, strategy: Strategy) -> int:
        """base + per hop, never below the aggregator's estimate for the route"""
        hops = max(0, len(strategy.cycle) - 1) if strategy.cycle else strategy.hops
        limit = self.base_gas_limit + self.gas_per_hop * hops
        if self.aggregator is not None and strategy.cycle:
            limit = max(limit, self.aggregator.estimate_gas_cost(strategy.cycle, strategy.dexes))
        return limit

    async def compute_gas_params(self, strategy: Strategy) -> GasParams:
        """Gas price scaled by (1 + congestion), capped at the configured maximum."""
        try:
            fee = await self.network.get_fee_data()
            congestion = congestion_from_fee(fee)
            base_price = int(fee.gas_price)
        except (RPCError, Web3Exception) as e:
            if not self.gas_price_history:
                raise SubmissionError(f"fee data unavailable: {e}") from e
            fee = None
            congestion = DEFAULT_CONGESTION
            base_price = self.gas_price_history[-1]

        price = min(int(base_price * (1 + congestion)), self.max_gas_wei)
        self.gas_price_history.append(price)
        gas_limit = self.gas_limit_for(strategy)

        if fee is not None and fee.is_eip1559:
            priority = min(int(fee.priority_fee or 10 ** 9), price)
            return GasParams(
                gas_limit=gas_limit,
                max_fee_per_gas=price,
                max_priority_fee_per_gas=priority,
            )
        return GasParams(gas_limit=gas_limit, gas_price=price)

    # ============================================
    # Execution
    # ============================================

    async def execute(self, strategy: Strategy) -> ExecutionResult:
        """Run one strategy through the lifecycle. Never raises for expected failures."""
        if self._busy:
            self.rejected += 1
            logger.info(f"Rejected {strategy.hash_hex[:10]}: execution already in flight")
            return ExecutionResult(
                strategy=strategy,
                outcome=ExecutionOutcome.REJECTED,
                error="execution in flight",
            )

        self._busy = True
        start_time = time.time()
        try:
            result = await self._run(strategy, start_time)
        finally:
            self._busy = False
            self._state = ExecutionState.IDLE

        result.time_total_ms = (time.time() - start_time) * 1000
        self._record(result)
        return result

    async def _run(self, strategy: Strategy, start_time: float) -> ExecutionResult:
        self._state = ExecutionState.VALIDATING
        try:
            self.validate(strategy)
            to = self.target_address()
        except ValidationError as e:
            logger.warning(f"Strategy {strategy.hash_hex[:10]} invalid: {e}")
            return ExecutionResult(strategy=strategy, outcome=ExecutionOutcome.REJECTED, error=str(e))

        deadline = int(self._clock()) + DEADLINE_SECONDS
        data = self.build_calldata(strategy, deadline)

        if self.dry_run:
            return await self._simulate(strategy, to, data, start_time)

        self._state = ExecutionState.SUBMITTING
        try:
            gas = await self.compute_gas_params(strategy)
            tx_hash = await self._submit(to, data, gas)
        except SubmissionError as e:
            self._state = ExecutionState.FAILED
            logger.error(f"Submission failed for {strategy.hash_hex[:10]}: {e}")
            return ExecutionResult(
                strategy=strategy,
                outcome=ExecutionOutcome.FAILED,
                error=str(e),
                time_build_ms=(time.time() - start_time) * 1000,
            )
        t_broadcast_ms = (time.time() - start_time) * 1000

        self._state = ExecutionState.PENDING_CONFIRMATION
        t_confirm_start = time.time()
        try:
            receipt = await self._wait_for_receipt(tx_hash)
        except ConfirmationTimeout as e:
            self._state = ExecutionState.TIMED_OUT
            logger.warning(f"Confirmation timeout for {tx_hash}: {e}")
            return ExecutionResult(
                strategy=strategy,
                outcome=ExecutionOutcome.TIMED_OUT,
                gas_price=gas.effective_price,
                tx_hash=tx_hash,
                error=str(e),
                time_broadcast_ms=t_broadcast_ms,
                time_confirm_ms=(time.time() - t_confirm_start) * 1000,
            )
        t_confirm_ms = (time.time() - t_confirm_start) * 1000

        result = await self.result_from_receipt(strategy, tx_hash, receipt, gas.effective_price)
        self._state = (
            ExecutionState.CONFIRMED if result.outcome == ExecutionOutcome.CONFIRMED
            else ExecutionState.FAILED
        )
        result.time_broadcast_ms = t_broadcast_ms
        result.time_confirm_ms = t_confirm_ms
        return result

    async def result_from_receipt(
        self,
        strategy: Strategy,
        tx_hash: str,
        receipt: Dict[str, Any],
        fallback_gas_price: int = 0,
    ) -> ExecutionResult:
        """Confirmed with realized profit, or Failed ("reverted") on status 0."""
        gas_used = int(receipt.get("gasUsed", 0))
        gas_price = int(receipt.get("effectiveGasPrice", fallback_gas_price))

        if receipt.get("status") != 1:
            logger.error(f"Transaction reverted: {tx_hash}")
            return ExecutionResult(
                strategy=strategy,
                outcome=ExecutionOutcome.FAILED,
                gas_used=gas_used,
                gas_price=gas_price,
                tx_hash=tx_hash,
                error="reverted",
            )

        profit = self.parse_realized_profit(receipt)
        profit_usd = await self._profit_usd(strategy, profit)
        logger.info(
            f"✅ Confirmed {tx_hash} gas={gas_used} "
            f"profit={profit if profit is not None else 'n/a'}"
            + (f" (${profit_usd:.2f})" if profit_usd is not None else "")
        )
        return ExecutionResult(
            strategy=strategy,
            outcome=ExecutionOutcome.CONFIRMED,
            success=True,
            realized_profit=profit,
            realized_profit_usd=profit_usd,
            gas_used=gas_used,
            gas_price=gas_price,
            tx_hash=tx_hash,
        )

    async def reconcile(self, strategy: Strategy, tx_hash: str, receipt: Dict[str, Any]) -> ExecutionResult:
        """Settle a timed-out transaction whose receipt showed up later."""
        result = await self.result_from_receipt(strategy, tx_hash, receipt)
        self.executed -= 1
        self.timed_out -= 1
        self._record(result)
        return result

    async def _simulate(self, strategy: Strategy, to: str, data: bytes, start_time: float) -> ExecutionResult:
        error = None
        try:
            await self.network.call_contract(to, data, sender=self.sender)
        except (RPCError, Web3Exception) as e:
            error = f"simulation failed: {e}"

        logger.info(
            f"[DRY RUN] {strategy.hash_hex[:10]} via {self.protocol.value}: "
            + (error or "simulation passed")
        )
        return ExecutionResult(
            strategy=strategy,
            outcome=ExecutionOutcome.SIMULATED,
            success=error is None,
            error=error,
            time_build_ms=(time.time() - start_time) * 1000,
        )

    async def _submit(self, to: str, data: bytes, gas: GasParams) -> str:
        try:
            tx: Dict[str, Any] = {"from": self.account.address, "to": to, "data": data, "value": 0}
            # a revert here means the transaction would revert on-chain
            estimated = await self.network.estimate_gas(tx)
            gas.gas_limit = max(gas.gas_limit or 0, int(estimated) * GAS_ESTIMATE_MARGIN_PCT // 100)

            tx["nonce"] = await self.network.get_nonce(self.account.address)
            tx["chainId"] = self.config.chain_id
            tx.update(gas.to_tx_params())
            signed = self.account.sign_transaction(tx)
            return await self.network.send_raw_transaction(signed.raw_transaction)
        except (RPCError, Web3Exception, ValueError, TypeError) as e:
            raise SubmissionError(str(e)) from e

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        try:
            receipt = await asyncio.wait_for(
                self.network.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout),
                timeout=self.tx_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConfirmationTimeout(f"no receipt after {self.tx_timeout}s") from e
        except (RPCError, Web3Exception) as e:
            # broadcast already happened, the outcome is unknown
            raise ConfirmationTimeout(f"receipt unavailable: {e}") from e
        if receipt is None:
            raise ConfirmationTimeout(f"no receipt after {self.tx_timeout}s")
        return receipt

    def parse_realized_profit(self, receipt: Dict[str, Any]) -> Optional[int]:
        """profit field of the first ArbitrageExecuted log, None when absent"""
        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if not topics or bytes(topics[0]) != self._event_topic:
                continue
            profit, _, _ = decode(["uint256", "bytes32", "uint256"], bytes(log["data"]))
            return int(profit)
        return None

    async def _profit_usd(self, strategy: Strategy, profit: Optional[int]) -> Optional[float]:
        if profit is None or self.price_oracle is None:
            return None
        token = self.catalog.get(strategy.base_token) if self.catalog else None
        decimals = token.decimals if token else 18
        return await self.price_oracle.to_usd(strategy.base_token, profit, decimals)

    # ============================================
    # Stats
    # ============================================

    def _record(self, result: ExecutionResult) -> None:
        outcome = result.outcome
        if outcome == ExecutionOutcome.SIMULATED:
            self.simulated += 1
            return
        if outcome == ExecutionOutcome.REJECTED:
            self.rejected += 1
            return

        self.executed += 1
        if outcome == ExecutionOutcome.CONFIRMED:
            self.successful += 1
            self.total_profit_usd += result.realized_profit_usd or 0.0
        elif outcome == ExecutionOutcome.TIMED_OUT:
            self.timed_out += 1
        else:
            self.failed += 1

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "executed": self.executed,
            "successful": self.successful,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "rejected": self.rejected,
            "simulated": self.simulated,
            "success_rate": self.successful / self.executed if self.executed else 0.0,
            "total_profit_usd": self.total_profit_usd,
            "gas_price_history": list(self.gas_price_history),
        }
