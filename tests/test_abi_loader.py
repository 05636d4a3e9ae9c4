import pytest
from eth_abi import encode
from web3 import Web3

from flashcycle.utils.abi_loader import (
    ABILoadError,
    decode_function_result,
    encode_function_call,
    event_topic,
    extract_function_selector,
    get_event_by_name,
    get_function_by_name,
    load_abi,
)


def test_load_abi_caches_by_file_name():
    assert load_abi("erc20") is load_abi("erc20.json")


def test_missing_abi_raises():
    with pytest.raises(ABILoadError):
        load_abi("does_not_exist")


def test_known_selectors():
    router = load_abi("uniswap_v2_router")
    assert extract_function_selector(get_function_by_name(router, "getAmountsOut")) == "0xd06ca61f"

    erc20 = load_abi("erc20")
    assert extract_function_selector(get_function_by_name(erc20, "decimals")) == "0x313ce567"
    assert get_function_by_name(erc20, "transfer") is None


def test_tuple_inputs_use_canonical_signature():
    entry = get_function_by_name(load_abi("uniswap_v3_quoter_v2"), "quoteExactInputSingle")
    expected = Web3.keccak(text="quoteExactInputSingle((address,address,uint256,uint24,uint160))")[:4]
    assert extract_function_selector(entry) == Web3.to_hex(expected)


def test_encode_and_decode_function_call():
    data = encode_function_call("curve_pool", "get_dy", [0, 1, 10 ** 18])
    assert len(data) == 4 + 3 * 32

    (dy,) = decode_function_result("curve_pool", "get_dy", encode(["uint256"], [42]))
    assert dy == 42


def test_event_topic():
    event = get_event_by_name(load_abi("arbitrage_executor"), "ArbitrageExecuted")
    expected = Web3.keccak(text="ArbitrageExecuted(address,uint256,bytes32,uint256)")
    assert event_topic(event) == bytes(expected)


def test_unknown_function_raises():
    with pytest.raises(ABILoadError):
        encode_function_call("erc20", "mint", [])
