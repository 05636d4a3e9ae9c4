#!/usr/bin/env python3
"""
DEX Quote Adapters

One adapter per on-chain pricing shape:
- V2Adapter:    constant-product router, getAmountsOut(amountIn, [in, out])
- V3Adapter:    concentrated-liquidity quoter, quoteExactInputSingle per fee tier
- CurveAdapter: stableswap pool, coins(i) index scan + get_dy(i, j, dx)

Every adapter talks to the chain only through ``network.call_contract`` and
raises QuoteUnavailable for any failure (revert, empty return, RPC error),
so the aggregator can isolate one adapter from the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import Web3Exception

from .config_loader import DexSpec
from .network import RPCError
from .utils.abi_loader import decode_function_result, encode_function_call

logger = logging.getLogger(__name__)

FEE_NAMES = {100: "0.01%", 500: "0.05%", 3000: "0.3%", 10000: "1%"}

# Curve pools hold at most 8 coins
MAX_CURVE_COINS = 8

# Rough per-swap gas used when the venue does not report one
DEFAULT_GAS = {"v2": 110_000, "v3": 135_000, "curve": 160_000}

_CALL_ERRORS = (Web3Exception, RPCError, DecodingError, ValueError, OverflowError)


class QuoteUnavailable(Exception):
    """A single adapter could not price a hop"""
    pass


@dataclass
class Quote:
    """Best executable output for one hop on one DEX"""
    dex: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    gas_estimate: int = 0
    timestamp: float = field(default_factory=time.time)
    fee_tier: Optional[int] = None


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


class DexAdapter:
    """Base class for quote adapters"""

    kind = ""

    def __init__(self, name: str, address: str, network) -> None:
        self.name = name
        self.address = _checksum(address)
        self.network = network

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> Quote:
        raise NotImplementedError

    async def _call(self, abi_name: str, function_name: str, args: list) -> tuple:
        try:
            data = encode_function_call(abi_name, function_name, args)
            raw = await self.network.call_contract(self.address, data)
            return decode_function_result(abi_name, function_name, raw)
        except _CALL_ERRORS as e:
            raise QuoteUnavailable(f"{self.name}.{function_name} failed: {e}") from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name}@{self.address[:10]})"


class V2Adapter(DexAdapter):
    """Uniswap V2 style router (QuickSwap, SushiSwap, BaseSwap...)"""

    kind = "v2"

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> Quote:
        (amounts,) = await self._call(
            "uniswap_v2_router",
            "getAmountsOut",
            [amount_in, [_checksum(token_in), _checksum(token_out)]],
        )
        if not amounts or amounts[-1] <= 0:
            raise QuoteUnavailable(f"{self.name}: zero output")

        return Quote(
            dex=self.name,
            token_in=token_in.lower(),
            token_out=token_out.lower(),
            amount_in=amount_in,
            amount_out=int(amounts[-1]),
            gas_estimate=DEFAULT_GAS["v2"],
        )


class V3Adapter(DexAdapter):
    """
    Uniswap V3 quoter.

    All configured fee tiers are tried concurrently; the best non-reverting
    positive output wins. ``quoter_v2`` selects the struct-parameter
    QuoterV2 ABI, which also reports a gas estimate.
    """

    kind = "v3"

    def __init__(
        self,
        name: str,
        address: str,
        network,
        fee_tiers: Optional[List[int]] = None,
        quoter_v2: bool = False,
    ) -> None:
        super().__init__(name, address, network)
        self.fee_tiers = fee_tiers or [500, 3000, 10000]
        self.quoter_v2 = quoter_v2

    async def _quote_tier(self, token_in: str, token_out: str, amount_in: int, fee: int) -> Quote:
        if self.quoter_v2:
            out = await self._call(
                "uniswap_v3_quoter_v2",
                "quoteExactInputSingle",
                [(_checksum(token_in), _checksum(token_out), amount_in, fee, 0)],
            )
            amount_out, gas = int(out[0]), int(out[3])
        else:
            out = await self._call(
                "uniswap_v3_quoter",
                "quoteExactInputSingle",
                [_checksum(token_in), _checksum(token_out), fee, amount_in, 0],
            )
            amount_out, gas = int(out[0]), DEFAULT_GAS["v3"]

        if amount_out <= 0:
            raise QuoteUnavailable(f"{self.name}: zero output at {FEE_NAMES.get(fee, fee)}")

        return Quote(
            dex=self.name,
            token_in=token_in.lower(),
            token_out=token_out.lower(),
            amount_in=amount_in,
            amount_out=amount_out,
            gas_estimate=gas or DEFAULT_GAS["v3"],
            fee_tier=fee,
        )

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> Quote:
        results = await asyncio.gather(
            *(self._quote_tier(token_in, token_out, amount_in, fee) for fee in self.fee_tiers),
            return_exceptions=True,
        )
        quotes = [r for r in results if isinstance(r, Quote)]
        for r in results:
            if isinstance(r, BaseException) and not isinstance(r, QuoteUnavailable):
                raise r

        if not quotes:
            raise QuoteUnavailable(f"{self.name}: no fee tier quoted")
        return max(quotes, key=lambda q: q.amount_out)


class CurveAdapter(DexAdapter):
    """
    Curve stableswap pool.

    Coin indices are discovered once by scanning coins(0..7) until the
    first revert; pools that do not hold both tokens decline without a call.
    """

    kind = "curve"

    def __init__(self, name: str, address: str, network) -> None:
        super().__init__(name, address, network)
        self._coins: Optional[List[str]] = None
        self._coins_lock = asyncio.Lock()

    async def load_coins(self) -> List[str]:
        async with self._coins_lock:
            if self._coins is not None:
                return self._coins

            coins: List[str] = []
            for i in range(MAX_CURVE_COINS):
                try:
                    (coin,) = await self._call("curve_pool", "coins", [i])
                except QuoteUnavailable:
                    break
                coins.append(coin.lower())

            # an empty scan is retried on the next quote
            self._coins = coins or None
            logger.debug(f"{self.name}: {len(coins)} coins")
            return coins

    async def coin_index(self, token: str) -> Optional[int]:
        coins = await self.load_coins()
        try:
            return coins.index(token.lower())
        except ValueError:
            return None

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> Quote:
        i = await self.coin_index(token_in)
        j = await self.coin_index(token_out)
        if i is None or j is None:
            raise QuoteUnavailable(f"{self.name}: pair not in pool")

        (dy,) = await self._call("curve_pool", "get_dy", [i, j, amount_in])
        if dy <= 0:
            raise QuoteUnavailable(f"{self.name}: zero output")

        return Quote(
            dex=self.name,
            token_in=token_in.lower(),
            token_out=token_out.lower(),
            amount_in=amount_in,
            amount_out=int(dy),
            gas_estimate=DEFAULT_GAS["curve"],
        )


def build_adapters(specs: List[DexSpec], network) -> List[DexAdapter]:
    """Instantiate adapters from chain configuration."""
    adapters: List[DexAdapter] = []
    for spec in specs:
        if spec.kind == "v2":
            adapters.append(V2Adapter(spec.name, spec.address, network))
        elif spec.kind == "v3":
            adapters.append(V3Adapter(
                spec.name, spec.address, network,
                fee_tiers=spec.fee_tiers, quoter_v2=spec.quoter_v2,
            ))
        elif spec.kind == "curve":
            adapters.append(CurveAdapter(spec.name, spec.address, network))
    return adapters
