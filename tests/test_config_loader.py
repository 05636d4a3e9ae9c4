import json

import pytest

from flashcycle.config_loader import ConfigLoader, ConfigValidationError

WMATIC = "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270"
USDC = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
ROUTER = "0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff"

ENV_KNOBS = (
    "PRIVATE_KEY", "EXECUTOR_ADDRESS", "CYCLE_LENGTHS", "TEST_AMOUNTS", "EXPLORATION_RATIO",
    "FLASH_LOAN_PROTOCOL", "DRY_RUN", "MIN_PROFIT_USD", "TESTNET_RPC_OVERRIDE",
)


def chain_entry(**overrides):
    entry = {
        "chain_id": 137,
        "rpc_urls": ["https://rpc.example"],
        "native_token": "MATIC",
        "wnative_address": WMATIC,
        "gas_config": {"type": "eip1559"},
        "block_time": 2,
        "coingecko_platform": "polygon-pos",
        "fallback_prices": {USDC: 1.0},
        "tokens": {
            "stablecoin": [{"symbol": "USDC", "address": USDC, "decimals": 6}],
            "major": [WMATIC],
        },
        "dexes": [
            {"name": "quickswap", "kind": "v2", "address": ROUTER},
            {"name": "uniswap_v3", "kind": "v3", "address": ROUTER, "fee_tiers": [500], "quoter_v2": True},
        ],
        "flash_loan_providers": {"aave": ROUTER},
    }
    entry.update(overrides)
    return entry


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_KNOBS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def write(**chains):
        path = tmp_path / "chains.json"
        path.write_text(json.dumps(chains), encoding="utf-8")
        return ConfigLoader(config_path=str(path), env_path=str(tmp_path / "missing.env"))
    return write


def test_chain_config_is_parsed(write_config, monkeypatch):
    monkeypatch.setenv("EXECUTOR_ADDRESS", "0x" + "ee" * 20)
    loader = write_config(TESTNET=chain_entry())

    config = loader.get_chain_config("testnet")

    assert config.chain_id == 137
    assert config.executor_address == "0x" + "ee" * 20
    assert [(t.category, t.symbol) for t in config.tokens] == [("stablecoin", "USDC"), ("major", None)]
    assert config.dexes[1].fee_tiers == [500]
    assert config.dexes[1].quoter_v2
    assert config.fallback_prices == {USDC.lower(): 1.0}
    assert loader.get_chain_config("TESTNET") is config


def test_rpc_override_replaces_configured_urls(write_config, monkeypatch):
    monkeypatch.setenv("TESTNET_RPC_OVERRIDE", "https://a.example, https://b.example")
    config = write_config(TESTNET=chain_entry()).get_chain_config("TESTNET")
    assert config.rpc_urls == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize("overrides", [
    {"rpc_urls": []},
    {"gas_config": {"type": "turbo"}},
    {"wnative_address": "0x1234"},
    {"tokens": {"memecoin": []}},
    {"dexes": [{"name": "x", "kind": "orderbook", "address": ROUTER}]},
])
def test_invalid_chain_config_is_rejected(write_config, overrides):
    loader = write_config(TESTNET=chain_entry(**overrides))
    with pytest.raises(ConfigValidationError):
        loader.get_chain_config("TESTNET")


def test_unknown_chain(write_config):
    loader = write_config(TESTNET=chain_entry())
    with pytest.raises(ConfigValidationError):
        loader.get_chain_config("MAINNET")
    assert loader.get_available_chains() == ["TESTNET"]


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigValidationError):
        ConfigLoader(config_path=str(tmp_path / "nope.json"), env_path=str(tmp_path / "x.env"))

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        ConfigLoader(config_path=str(broken), env_path=str(tmp_path / "x.env"))


def test_settings_defaults(write_config):
    settings = write_config(TESTNET=chain_entry()).get_settings()
    assert settings.cycle_lengths == [3, 4, 5]
    assert settings.test_amounts == [10, 100, 1000, 5000]
    assert settings.dry_run
    assert settings.flash_loan_protocol == "custom"


def test_settings_from_environment(write_config, monkeypatch):
    monkeypatch.setenv("CYCLE_LENGTHS", "3, 4")
    monkeypatch.setenv("TEST_AMOUNTS", "50,500")
    monkeypatch.setenv("FLASH_LOAN_PROTOCOL", "Balancer")
    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.setenv("MIN_PROFIT_USD", "2.5")

    settings = write_config(TESTNET=chain_entry()).get_settings()

    assert settings.cycle_lengths == [3, 4]
    assert settings.test_amounts == [50, 500]
    assert settings.flash_loan_protocol == "balancer"
    assert not settings.dry_run
    assert settings.min_profit_usd == 2.5


@pytest.mark.parametrize("name, value", [
    ("CYCLE_LENGTHS", "2,3"),
    ("CYCLE_LENGTHS", "three"),
    ("TEST_AMOUNTS", "0"),
    ("EXPLORATION_RATIO", "1.5"),
    ("FLASH_LOAN_PROTOCOL", "dydx"),
])
def test_invalid_settings_are_rejected(write_config, monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    loader = write_config(TESTNET=chain_entry())
    with pytest.raises(ConfigValidationError):
        loader.get_settings()
