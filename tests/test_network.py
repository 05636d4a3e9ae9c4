from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from flashcycle.config_loader import GasConfig
from flashcycle.network import (
    AllRPCsFailedError,
    GasParams,
    NetworkManager,
    NetworkOutageError,
    RateLimitError,
    RPCError,
)

from conftest import USDC

RPC_A = "http://rpc-a.example"
RPC_B = "http://rpc-b.example"


@pytest.fixture
def manager(chain_config):
    config = replace(chain_config, rpc_urls=[RPC_A, RPC_B], max_retries=2)
    network = NetworkManager(config)
    network._base_delay = 0
    return network


def fake_web3(**eth):
    web3 = MagicMock()
    for name, value in eth.items():
        setattr(web3.eth, name, value)
    return web3


def response_error(status):
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status, message="err")


@pytest.mark.asyncio
async def test_connection_error_fails_over_to_next_rpc(manager):
    operation = AsyncMock(side_effect=[aiohttp.ClientConnectionError("refused"), 42])

    assert await manager._execute_with_retry(operation, "probe") == 42
    assert manager.current_rpc_url == RPC_B
    assert manager.get_rpc_health()[RPC_A].consecutive_failures == 1


@pytest.mark.asyncio
async def test_rate_limit_retries_on_same_rpc(manager):
    operation = AsyncMock(side_effect=[response_error(429), "ok"])

    assert await manager._execute_with_retry(operation, "probe") == "ok"
    assert manager.current_rpc_url == RPC_A


@pytest.mark.asyncio
async def test_client_error_is_not_retried(manager):
    operation = AsyncMock(side_effect=response_error(400))

    with pytest.raises(RPCError):
        await manager._execute_with_retry(operation, "probe")
    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise(manager):
    operation = AsyncMock(side_effect=aiohttp.ClientConnectionError("down"))

    with pytest.raises(AllRPCsFailedError):
        await manager._execute_with_retry(operation, "probe")
    assert operation.await_count == 4


@pytest.mark.asyncio
async def test_persistent_rate_limit_raises_rate_limit_error(manager):
    operation = AsyncMock(side_effect=response_error(429))

    with pytest.raises(RateLimitError):
        await manager._execute_with_retry(operation, "probe")
    assert manager.current_rpc_url == RPC_A


@pytest.mark.asyncio
async def test_gas_estimate_revert_is_not_retried(manager):
    estimate = AsyncMock(side_effect=ContractLogicError("execution reverted"))
    manager._web3 = fake_web3(estimate_gas=estimate)

    with pytest.raises(ContractLogicError):
        await manager.estimate_gas({"to": USDC, "data": b"\x00"})
    assert estimate.await_count == 1


@pytest.mark.asyncio
async def test_contract_revert_is_raised_without_failover(manager):
    manager._web3 = fake_web3(call=AsyncMock(side_effect=ContractLogicError("execution reverted")))

    with pytest.raises(ContractLogicError):
        await manager.call_contract(USDC, b"\x01\x02\x03\x04", sender=USDC)

    tx, block = manager._web3.eth.call.call_args.args
    assert tx["from"] == tx["to"]
    assert block == "latest"
    assert manager.current_rpc_url == RPC_A


@pytest.mark.asyncio
async def test_block_number_goes_through_retry(manager):
    web3 = MagicMock()
    web3.eth.block_number = AwaitableValue(1234)
    manager._web3 = web3

    assert await manager.get_block_number() == 1234
    assert manager.get_rpc_health()[RPC_A].total_requests == 1


@pytest.mark.asyncio
async def test_receipt_timeout_returns_none(manager):
    manager._web3 = fake_web3(wait_for_transaction_receipt=AsyncMock(side_effect=TimeExhausted("slow")))
    assert await manager.wait_for_transaction_receipt("0xabc", timeout=1) is None


@pytest.mark.asyncio
async def test_pending_transaction_has_no_receipt_yet(manager):
    manager._web3 = fake_web3(get_transaction_receipt=AsyncMock(side_effect=TransactionNotFound("pending")))

    assert await manager.get_transaction_receipt("0xabc") is None
    assert manager.current_rpc_url == RPC_A


@pytest.mark.asyncio
async def test_receipt_lookup_returns_mined_receipt(manager):
    receipt = {"status": 1, "gasUsed": 21_000}
    manager._web3 = fake_web3(get_transaction_receipt=AsyncMock(return_value=receipt))
    assert await manager.get_transaction_receipt("0xabc") == receipt


@pytest.mark.asyncio
async def test_send_raw_transaction_returns_hex(manager):
    manager._web3 = fake_web3(send_raw_transaction=AsyncMock(return_value=b"\xab" * 32))
    assert await manager.send_raw_transaction(b"signed") == "0x" + "ab" * 32


@pytest.mark.asyncio
async def test_legacy_fee_data_applies_multiplier(manager):
    manager.gas_config = GasConfig(type="legacy", gas_price_multiplier=1.5)
    web3 = MagicMock()
    web3.eth.gas_price = AwaitableValue(20 * 10 ** 9)
    manager._web3 = web3

    fee = await manager.get_fee_data()

    assert fee.gas_price == 30 * 10 ** 9
    assert not fee.is_eip1559


@pytest.mark.asyncio
async def test_block_subscription_without_websocket_raises(manager):
    with pytest.raises(NetworkOutageError):
        await manager.subscribe_new_blocks(AsyncMock())


def test_gas_params_to_tx_params():
    eip1559 = GasParams(gas_limit=500_000, max_fee_per_gas=40, max_priority_fee_per_gas=2)
    assert eip1559.to_tx_params() == {"gas": 500_000, "maxFeePerGas": 40, "maxPriorityFeePerGas": 2}
    assert eip1559.effective_price == 40

    legacy = GasParams(gas_limit=500_000, gas_price=30)
    assert legacy.to_tx_params() == {"gas": 500_000, "gasPrice": 30}
    assert legacy.effective_price == 30


class AwaitableValue:
    """Property value that can be awaited more than once."""

    def __init__(self, value):
        self.value = value

    def __await__(self):
        if False:
            yield
        return self.value
