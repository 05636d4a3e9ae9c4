from typing import Callable, Dict, Tuple, Union
from unittest.mock import AsyncMock

import pytest

from flashcycle.config_loader import ArbitrageSettings, ChainConfig, GasConfig
from flashcycle.dex import Quote, QuoteUnavailable
from flashcycle.network import FeeData
from flashcycle.state import MarketState
from flashcycle.tokens import BASE_WEIGHTS, Token, TokenCatalog, TokenCategory

USDC = "0x" + "11" * 20
WETH = "0x" + "22" * 20
WBTC = "0x" + "33" * 20
DAI = "0x" + "44" * 20
AAVE = "0x" + "55" * 20
EXECUTOR = "0x" + "ee" * 20

QuoteRule = Union[int, Callable[[int], int]]


class FakeAdapter:
    """Quote adapter answering from a {(token_in, token_out): rule} table."""

    def __init__(self, name: str, rules: Dict[Tuple[str, str], QuoteRule] = None, kind: str = "v2"):
        self.name = name
        self.kind = kind
        self.rules = {(a.lower(), b.lower()): r for (a, b), r in (rules or {}).items()}
        self.calls = []

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> Quote:
        self.calls.append((token_in, token_out, amount_in))
        rule = self.rules.get((token_in.lower(), token_out.lower()))
        if rule is None:
            raise QuoteUnavailable(f"{self.name}: no pool")
        amount_out = rule(amount_in) if callable(rule) else rule
        if amount_out <= 0:
            raise QuoteUnavailable(f"{self.name}: zero output")
        return Quote(self.name, token_in.lower(), token_out.lower(), amount_in, amount_out)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_token(address: str, symbol: str, decimals: int, category: TokenCategory) -> Token:
    return Token(address, symbol, decimals, category, BASE_WEIGHTS[category])


@pytest.fixture
def catalog() -> TokenCatalog:
    catalog = TokenCatalog()
    catalog.add(make_token(USDC, "USDC", 6, TokenCategory.STABLECOIN))
    catalog.add(make_token(DAI, "DAI", 18, TokenCategory.STABLECOIN))
    catalog.add(make_token(WETH, "WETH", 18, TokenCategory.MAJOR))
    catalog.add(make_token(WBTC, "WBTC", 8, TokenCategory.MAJOR))
    catalog.add(make_token(AAVE, "AAVE", 18, TokenCategory.DEFI))
    return catalog


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock) -> MarketState:
    return MarketState(quote_ttl=15.0, clock=clock)


@pytest.fixture
def chain_config() -> ChainConfig:
    return ChainConfig(
        name="TESTNET",
        chain_id=31337,
        rpc_urls=["http://127.0.0.1:8545"],
        native_token="ETH",
        wnative_address=WETH,
        gas_config=GasConfig(type="eip1559"),
        block_time=2,
        flash_loan_providers={
            "aave": "0x" + "aa" * 20,
            "balancer": "0x" + "bb" * 20,
        },
        executor_address=EXECUTOR,
    )


@pytest.fixture
def settings() -> ArbitrageSettings:
    return ArbitrageSettings(
        cycle_lengths=[3],
        test_amounts=[1000],
        exploration_ratio=0.0,
        min_profit_usd=1.0,
    )


@pytest.fixture
def fake_network():
    network = AsyncMock()
    network.session = None
    network.get_fee_data.return_value = FeeData(
        gas_price=30 * 10 ** 9, base_fee=25 * 10 ** 9, priority_fee=2 * 10 ** 9,
    )
    network.estimate_gas.return_value = 300_000
    network.get_nonce.return_value = 7
    network.call_contract.return_value = b""
    network.send_raw_transaction.return_value = "0x" + "ab" * 32
    network.wait_for_transaction_receipt.return_value = {"status": 1, "gasUsed": 250_000, "logs": []}
    return network


@pytest.fixture
def price_oracle():
    oracle = AsyncMock()

    async def to_usd(address, raw_amount, decimals):
        return raw_amount / 10 ** decimals

    oracle.to_usd.side_effect = to_usd
    oracle.get_token_price.return_value = 1.0
    return oracle
