#!/usr/bin/env python3
"""
USD Price Oracle

CoinGecko token price lookups by contract address with a short cache and
configured static fallbacks. Used to put a dollar value on strategy profit
and on realized execution profit.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

import aiohttp
import orjson

logger = logging.getLogger(__name__)

COINGECKO_API_BASE_URL = "https://api.coingecko.com/api/v3"
DEFAULT_PRICE = 1.0


class PriceOracle:
    """
    Token USD prices by address.

    Lookup order: fresh cache entry -> CoinGecko -> configured fallback ->
    1.0. Failures are logged and never raised.

    Usage:
        oracle = PriceOracle("polygon-pos", session=network.session)
        usd = await oracle.get_token_price(usdc_address)
    """

    def __init__(
        self,
        platform: str,
        session: Optional[aiohttp.ClientSession] = None,
        fallback_prices: Optional[Dict[str, float]] = None,
        api_key: Optional[str] = None,
        cache_ttl: float = 60.0,
        request_timeout: float = 10.0,
        base_url: str = COINGECKO_API_BASE_URL,
    ) -> None:
        self.platform = platform
        self.fallback_prices = {k.lower(): v for k, v in (fallback_prices or {}).items()}
        self.cache_ttl = cache_ttl
        self.base_url = base_url
        self.headers = {"x-cg-demo-api-key": api_key} if api_key else {}
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._own_session = False
        self._cache: Dict[str, Tuple[float, float]] = {}

        self.requests = 0
        self.failures = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._own_session = True
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ============================================
    # Lookup
    # ============================================

    async def get_token_price(self, address: str) -> float:
        """USD price of one token unit."""
        address = address.lower()

        cached = self._cache.get(address)
        if cached is not None and time.monotonic() - cached[0] < self.cache_ttl:
            return cached[1]

        price = await self._fetch_price(address) if self.platform else None
        if price is None:
            price = self.fallback_prices.get(address, DEFAULT_PRICE)
            logger.debug(f"Using fallback price {price} for {address}")

        self._cache[address] = (time.monotonic(), price)
        return price

    async def to_usd(self, address: str, raw_amount: int, decimals: int) -> float:
        """Dollar value of a raw token amount."""
        price = await self.get_token_price(address)
        return raw_amount / 10 ** decimals * price

    async def _fetch_price(self, address: str) -> Optional[float]:
        url = f"{self.base_url}/simple/token_price/{self.platform}"
        params = {"contract_addresses": address, "vs_currencies": "usd"}
        self.requests += 1

        try:
            session = await self._get_session()
            async with session.get(
                url, params=params, headers=self.headers, timeout=self._timeout,
            ) as response:
                response.raise_for_status()
                data = orjson.loads(await response.read())
        except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
            self.failures += 1
            logger.warning(f"Price lookup failed for {address}: {e}")
            return None

        entry = data.get(address) if isinstance(data, dict) else None
        if not entry or "usd" not in entry:
            return None
        return float(entry["usd"])
