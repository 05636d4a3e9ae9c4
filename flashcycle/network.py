"""
FlashCycle 网络管理器

健壮的异步网络层，提供以下功能:
- RPC 故障转移支持
- 速率限制的指数退避
- 手续费数据（EIP-1559 baseFee / Legacy gasPrice）
- 有界等待交易收据，以及超时交易的事后查询
- WebSocket 新区块订阅（失败时抛出 NetworkOutageError 以便回退到轮询）
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import aiohttp
from web3 import AsyncWeb3, WebSocketProvider
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider
from web3.types import Wei

from .config_loader import ChainConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 连续失败多少次后标记为不健康
UNHEALTHY_AFTER = 3


class RPCError(Exception):
    """RPC 相关错误的基类"""
    pass


class AllRPCsFailedError(RPCError):
    """当所有 RPC 端点都失败时抛出"""
    pass


class RateLimitError(AllRPCsFailedError):
    """重试用尽时最后一次失败仍是限速"""
    pass


class NetworkOutageError(RPCError):
    """提供者或区块流断开时抛出，调用方应回退到轮询"""
    pass


@dataclass
class FeeData:
    """当前网络手续费快照"""

    gas_price: Wei
    base_fee: Optional[Wei] = None
    priority_fee: Optional[Wei] = None

    @property
    def is_eip1559(self) -> bool:
        return self.base_fee is not None and self.base_fee > 0


@dataclass
class GasParams:
    """交易提交的 Gas 参数"""

    gas_limit: Optional[int] = None

    # EIP-1559 字段
    max_fee_per_gas: Optional[Wei] = None
    max_priority_fee_per_gas: Optional[Wei] = None

    # Legacy 字段
    gas_price: Optional[Wei] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    @property
    def effective_price(self) -> int:
        return int(self.max_fee_per_gas if self.is_eip1559 else (self.gas_price or 0))

    def to_tx_params(self) -> Dict[str, Any]:
        """转换为交易参数字典"""
        params: Dict[str, Any] = {}
        if self.gas_limit:
            params["gas"] = self.gas_limit
        if self.is_eip1559:
            params["maxFeePerGas"] = self.max_fee_per_gas
            params["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        else:
            params["gasPrice"] = self.gas_price
        return params


@dataclass
class RPCHealth:
    """单个 RPC 端点的失败计数，用于故障转移时跳过坏节点"""

    url: str
    is_healthy: bool = True
    consecutive_failures: int = 0
    total_requests: int = 0

    def record_success(self) -> None:
        self.is_healthy = True
        self.consecutive_failures = 0
        self.total_requests += 1

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        if self.consecutive_failures >= UNHEALTHY_AFTER:
            self.is_healthy = False


def _block_number(header: Dict[str, Any]) -> int:
    number = header["number"]
    if isinstance(number, str):
        return int(number, 16)
    return int(number)


class NetworkManager:
    """
    套利流水线的链客户端

    - 连接错误或 5xx 时切换到下一个健康的 RPC 端点
    - HTTP 429 时指数退避，其余 4xx 直接抛出 RPCError
    - 合约 revert 不重试，原样抛出
    - 有界等待收据，超时返回 None 而不是假定失败

    使用示例:
        >>> config = ConfigLoader().get_chain_config("POLYGON")
        >>> async with NetworkManager(config) as network:
        ...     number = await network.get_block_number()
    """

    def __init__(self, config: ChainConfig) -> None:
        self.config = config
        self.chain_id = config.chain_id
        self.gas_config = config.gas_config

        self._rpc_urls = config.rpc_urls.copy()
        self._current_rpc_index = 0
        self._rpc_health: Dict[str, RPCHealth] = {
            url: RPCHealth(url=url) for url in self._rpc_urls
        }

        self._session: Optional[aiohttp.ClientSession] = None
        self._web3: Optional[AsyncWeb3] = None

        # 重试配置
        self._max_retries = config.max_retries
        self._base_delay = 0.5
        self._max_delay = 30.0
        self._timeout = aiohttp.ClientTimeout(total=config.rpc_timeout)

    @property
    def current_rpc_url(self) -> str:
        return self._rpc_urls[self._current_rpc_index]

    @property
    def session(self) -> Optional[aiohttp.ClientSession]:
        """共享的 aiohttp 会话（价格预言机复用），connect() 之后可用"""
        return self._session

    @property
    def w3(self) -> AsyncWeb3:
        """获取 Web3 实例。如果未连接则抛出异常"""
        if self._web3 is None:
            raise RPCError("网络管理器未连接。请先调用 connect() 方法。")
        return self._web3

    async def __aenter__(self) -> "NetworkManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """创建会话和 Web3 提供者并校验链 ID；所有端点都不可用时以降级模式继续"""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        self._create_web3_instance()

        try:
            chain_id = await self._execute_with_retry(lambda: self.w3.eth.chain_id, "chain_id")
        except RPCError as e:
            logger.warning(f"无法验证连接，进入降级模式: {e}")
            return

        if chain_id != self.chain_id:
            logger.warning(f"链 ID 不匹配: 期望 {self.chain_id}，实际 {chain_id}")
        logger.info(f"已连接到 {self.config.name}，使用 {self.current_rpc_url}")

    async def disconnect(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._web3 = None
        logger.info(f"已断开与 {self.config.name} 的连接")

    def _create_web3_instance(self) -> None:
        provider = AsyncHTTPProvider(
            endpoint_uri=self.current_rpc_url,
            request_kwargs={"timeout": self._timeout},
        )
        self._web3 = AsyncWeb3(provider)

    def _switch_to_next_rpc(self) -> None:
        """切换到下一个健康的端点；全部不健康时重置健康状态后轮换"""
        for _ in range(len(self._rpc_urls)):
            self._current_rpc_index = (self._current_rpc_index + 1) % len(self._rpc_urls)
            if self._rpc_health[self.current_rpc_url].is_healthy:
                break
        else:
            logger.warning("所有 RPC 都标记为不健康，正在重置健康状态")
            for health in self._rpc_health.values():
                health.is_healthy = True
                health.consecutive_failures = 0
            self._current_rpc_index = (self._current_rpc_index + 1) % len(self._rpc_urls)

        logger.info(f"切换 RPC 到: {self.current_rpc_url}")
        self._create_web3_instance()

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        带故障转移的异步操作执行

        异常:
            RPCError: 不可重试的客户端错误
            AllRPCsFailedError: 重试次数（max_retries × 端点数）用尽
        """
        last_error: Optional[Exception] = None
        rate_limited = False
        total_attempts = self._max_retries * len(self._rpc_urls)

        for attempt in range(total_attempts):
            health = self._rpc_health[self.current_rpc_url]
            rate_limited = False
            try:
                result = await operation()
                health.record_success()
                return result

            except aiohttp.ClientResponseError as e:
                last_error = e
                if e.status == 429:
                    rate_limited = True
                    await self._backoff(operation_name, attempt)
                    continue
                if e.status >= 500:
                    health.record_failure()
                    self._switch_to_next_rpc()
                    continue
                raise RPCError(f"HTTP {e.status}: {e.message}") from e

            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                logger.warning(
                    f"{operation_name} 连接错误: {e}，"
                    f"切换 RPC（尝试 {attempt + 1}/{total_attempts}）"
                )
                health.record_failure()
                self._switch_to_next_rpc()

            except Web3Exception as e:
                last_error = e
                message = str(e).lower()
                if "429" in message or "rate" in message or "limit" in message:
                    rate_limited = True
                    await self._backoff(operation_name, attempt)
                    continue
                health.record_failure()
                self._switch_to_next_rpc()

        error_type = RateLimitError if rate_limited else AllRPCsFailedError
        raise error_type(
            f"{operation_name} 的所有 {total_attempts} 次尝试都失败了。"
            f"最后的错误: {last_error}"
        )

    async def _backoff(self, operation_name: str, attempt: int) -> None:
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        logger.warning(f"{operation_name} 被限速，等待 {delay:.2f} 秒后重试")
        await asyncio.sleep(delay)

    # =====================================================
    # 公共 API - 区块链读取操作
    # =====================================================

    async def get_block_number(self) -> int:
        """获取当前区块号"""
        async def _fetch():
            return await self.w3.eth.block_number

        return await self._execute_with_retry(_fetch, "get_block_number")

    async def get_nonce(self, address: str) -> int:
        """获取地址的 pending 交易计数（nonce）"""
        async def _fetch():
            checksum_addr = self.w3.to_checksum_address(address)
            return await self.w3.eth.get_transaction_count(checksum_addr, "pending")

        return await self._execute_with_retry(_fetch, "get_nonce")

    async def call_contract(
        self,
        contract_address: str,
        data: bytes,
        block_identifier: Union[int, str] = "latest",
        sender: Optional[str] = None,
    ) -> bytes:
        """
        执行合约调用（只读）

        合约 revert 不会被重试，直接以 Web3Exception 子类抛出，
        由调用方（DEX 适配器）视为报价不可用。

        参数:
            contract_address: 合约地址
            data: 编码后的函数调用数据
            block_identifier: 区块号或 "latest"/"pending"
            sender: 可选的调用者地址（模拟交易时使用）

        返回:
            调用返回的原始字节结果
        """
        tx: Dict[str, Any] = {
            "to": AsyncWeb3.to_checksum_address(contract_address),
            "data": data,
        }
        if sender:
            tx["from"] = AsyncWeb3.to_checksum_address(sender)

        async def _fetch():
            return await self.w3.eth.call(tx, block_identifier)

        return await self._execute_with_retry_no_revert(_fetch, "call_contract")

    async def _execute_with_retry_no_revert(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        # revert 是确定性的结果，切换 RPC 没有意义

        async def _guarded():
            try:
                return await operation()
            except ContractLogicError as e:
                raise _RevertPassthrough(e) from e

        try:
            return await self._execute_with_retry(_guarded, operation_name)
        except _RevertPassthrough as e:
            raise e.original from None

    async def estimate_gas(self, tx_params: Dict[str, Any]) -> int:
        """估算交易的 Gas 消耗；会 revert 的交易直接抛出 ContractLogicError"""
        async def _fetch():
            return await self.w3.eth.estimate_gas(tx_params)

        return await self._execute_with_retry_no_revert(_fetch, "estimate_gas")

    # =====================================================
    # 手续费
    # =====================================================

    async def get_fee_data(self) -> FeeData:
        """
        获取当前手续费快照

        返回:
            FeeData：gasPrice，以及 EIP-1559 链上的 baseFee 和建议小费
        """
        async def _gas_price():
            return await self.w3.eth.gas_price

        gas_price = await self._execute_with_retry(_gas_price, "get_gas_price")

        if self.gas_config.type != "eip1559":
            return FeeData(gas_price=Wei(int(gas_price * self.gas_config.gas_price_multiplier)))

        async def _latest():
            return await self.w3.eth.get_block("latest")

        block = await self._execute_with_retry(_latest, "get_base_fee")
        base_fee = block.get("baseFeePerGas")

        priority_fee = Wei(1_000_000_000)
        try:
            priority_fee = await self.w3.eth.max_priority_fee
        except (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"max_priority_fee 不可用，使用默认 1 gwei: {e}")

        priority_fee = Wei(int(priority_fee * self.gas_config.priority_fee_multiplier))

        return FeeData(
            gas_price=Wei(int(gas_price)),
            base_fee=Wei(int(base_fee)) if base_fee else None,
            priority_fee=priority_fee,
        )

    # =====================================================
    # 交易管理
    # =====================================================

    async def send_raw_transaction(self, signed_tx: bytes) -> str:
        """
        发送已签名的交易到网络

        返回:
            交易哈希（0x 十六进制字符串）
        """
        async def _send():
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx)
            return AsyncWeb3.to_hex(tx_hash)

        return await self._execute_with_retry(_send, "send_raw_transaction")

    async def wait_for_transaction_receipt(
        self,
        tx_hash: str,
        timeout: float = 60.0,
        poll_latency: float = 0.5,
    ) -> Optional[Dict[str, Any]]:
        """
        在有界时间内等待交易被打包

        参数:
            tx_hash: 交易哈希
            timeout: 最大等待时间（秒）
            poll_latency: 轮询间隔

        返回:
            交易收据；超时返回 None（交易可能稍后仍被打包）
        """
        try:
            return await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout,
                poll_latency=poll_latency,
            )
        except TimeExhausted:
            logger.warning(f"等待收据超时（{timeout}s）: {tx_hash}")
            return None

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """查询一次收据，交易仍在 pending 时返回 None"""
        async def _fetch():
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._execute_with_retry(_fetch, "get_transaction_receipt")

    # =====================================================
    # 新区块订阅
    # =====================================================

    async def subscribe_new_blocks(
        self,
        callback: Callable[[int], Awaitable[None]],
    ) -> None:
        """
        通过 WebSocket 订阅新区块头，每个区块调用一次 callback

        该协程一直运行直到被取消。

        异常:
            NetworkOutageError: 未配置 WebSocket、连接失败或流中断
        """
        if not self.config.ws_urls:
            raise NetworkOutageError(f"{self.config.name} 未配置 WebSocket URL")

        url = self.config.ws_urls[0]
        try:
            async with AsyncWeb3(WebSocketProvider(url)) as ws3:
                subscription_id = await ws3.eth.subscribe("newHeads")
                logger.info(f"已订阅新区块: {url} ({subscription_id})")
                async for message in ws3.socket.process_subscriptions():
                    await callback(_block_number(message["result"]))
        except asyncio.CancelledError:
            raise
        except NetworkOutageError:
            raise
        except Exception as e:
            raise NetworkOutageError(f"区块订阅中断: {e}") from e

        raise NetworkOutageError("区块订阅流已关闭")

    # =====================================================
    # 健康监控
    # =====================================================

    def get_rpc_health(self) -> Dict[str, RPCHealth]:
        """获取所有 RPC 端点的健康指标"""
        return self._rpc_health.copy()


class _RevertPassthrough(Exception):
    def __init__(self, original: Exception) -> None:
        super().__init__(str(original))
        self.original = original
