#!/usr/bin/env python3
"""
Token Catalog

Loads token metadata (batched, tolerant of partial failure), assigns a
category and a search weight, and derives the predefined pair set used to
warm up liquidity knowledge.

Weights start from the category base weight and are modulated additively
by ScoringFeedback; they always stay within [0.1, 1.0].
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import Web3Exception

from .config_loader import TokenSpec
from .network import RPCError
from .state import pair_key
from .utils.abi_loader import decode_function_result, encode_function_call

logger = logging.getLogger(__name__)

# Tokens loaded concurrently per batch
METADATA_BATCH_SIZE = 20

# Seeds used when no stablecoin/major is configured
FALLBACK_SEED_COUNT = 10


class TokenCategory(Enum):
    """Token category, drives the base search weight"""
    STABLECOIN = "stablecoin"
    MAJOR = "major"
    DEFI = "defi"
    NFT_GAMING = "nft_gaming"
    OTHER = "other"


BASE_WEIGHTS = {
    TokenCategory.STABLECOIN: 1.0,
    TokenCategory.MAJOR: 0.9,
    TokenCategory.DEFI: 0.7,
    TokenCategory.NFT_GAMING: 0.6,
    TokenCategory.OTHER: 0.5,
}


@dataclass
class Token:
    """Token metadata plus its current search weight"""
    address: str
    symbol: str
    decimals: int
    category: TokenCategory = TokenCategory.OTHER
    weight: float = 0.5
    placeholder: bool = False

    def units(self, amount: float) -> int:
        """Convert a human amount to raw token units"""
        return int(round(amount * 10 ** self.decimals))


def placeholder_symbol(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


class TokenCatalog:
    """
    In-memory registry of the tokens the bot trades.

    Usage:
        catalog = TokenCatalog(network)
        await catalog.load(chain_config.tokens)
        usdc = catalog.by_symbol("USDC")
    """

    def __init__(self, network=None) -> None:
        self.network = network
        self._tokens: Dict[str, Token] = {}
        self._order: List[str] = []
        self._symbols: Dict[str, str] = {}
        self.popular_pairs: List[Tuple[str, str]] = []

    # ============================================
    # Loading
    # ============================================

    async def load(self, specs: Iterable[TokenSpec]) -> List[Token]:
        """
        Load metadata for every configured token.

        Specs that carry symbol and decimals are used as-is; the rest are
        resolved on-chain in batches of 20. Invalid addresses are skipped;
        unresolved metadata degrades to a placeholder.
        """
        pending: List[TokenSpec] = []
        seen = set()
        for spec in specs:
            address = spec.address.lower()
            if not Web3.is_address(address):
                logger.warning(f"Skipping invalid token address: {spec.address}")
                continue
            if address in seen:
                continue
            seen.add(address)
            pending.append(spec)

        loaded: List[Token] = []
        for start in range(0, len(pending), METADATA_BATCH_SIZE):
            batch = pending[start:start + METADATA_BATCH_SIZE]
            loaded.extend(await asyncio.gather(*(self._load_one(spec) for spec in batch)))

        for token in loaded:
            self.add(token)

        placeholders = sum(1 for t in loaded if t.placeholder)
        logger.info(
            f"Loaded metadata for {len(loaded)} tokens"
            + (f" ({placeholders} placeholders)" if placeholders else "")
        )
        return loaded

    async def _load_one(self, spec: TokenSpec) -> Token:
        address = spec.address.lower()
        category = TokenCategory(spec.category)
        symbol, decimals = spec.symbol, spec.decimals
        placeholder = False

        if (symbol is None or decimals is None) and self.network is not None:
            try:
                if symbol is None:
                    symbol = await self._read(address, "symbol")
                if decimals is None:
                    decimals = await self._read(address, "decimals")
            except (Web3Exception, RPCError, DecodingError, ValueError) as e:
                logger.warning(f"Metadata unavailable for {address}: {e}")

        if symbol is None:
            symbol, placeholder = placeholder_symbol(address), True
        if decimals is None:
            decimals, placeholder = 18, True

        return Token(
            address=address,
            symbol=symbol,
            decimals=int(decimals),
            category=category,
            weight=BASE_WEIGHTS[category],
            placeholder=placeholder,
        )

    async def _read(self, address: str, function_name: str):
        data = encode_function_call("erc20", function_name, [])
        raw = await self.network.call_contract(address, data)
        (value,) = decode_function_result("erc20", function_name, raw)
        return value

    def add(self, token: Token) -> None:
        if token.address not in self._tokens:
            self._order.append(token.address)
        self._tokens[token.address] = token
        self._symbols[token.symbol.upper()] = token.address

    def set_popular_pairs(self, pairs: Iterable[Iterable[str]]) -> None:
        self.popular_pairs = [tuple(a.lower() for a in pair) for pair in pairs]

    # ============================================
    # Lookup
    # ============================================

    @property
    def tokens(self) -> List[Token]:
        """All tokens in configured order"""
        return [self._tokens[a] for a in self._order]

    def get(self, address: str) -> Optional[Token]:
        return self._tokens.get(address.lower())

    def by_symbol(self, symbol: str) -> Optional[Token]:
        address = self._symbols.get(symbol.upper())
        return self._tokens.get(address) if address else None

    def symbol(self, address: str) -> str:
        token = self.get(address)
        return token.symbol if token else placeholder_symbol(address)

    def is_stablecoin(self, address: str) -> bool:
        token = self.get(address)
        return token is not None and token.category == TokenCategory.STABLECOIN

    def is_major(self, address: str) -> bool:
        token = self.get(address)
        return token is not None and token.category == TokenCategory.MAJOR

    def in_category(self, category: TokenCategory) -> List[Token]:
        return [t for t in self.tokens if t.category == category]

    def weight(self, address: str) -> float:
        token = self.get(address)
        return token.weight if token else BASE_WEIGHTS[TokenCategory.OTHER]

    def adjust_weight(self, address: str, delta: float) -> float:
        token = self.get(address)
        if token is None:
            return BASE_WEIGHTS[TokenCategory.OTHER]
        token.weight = max(0.1, min(1.0, token.weight + delta))
        return token.weight

    def seed_tokens(self, tokens: Optional[List[Token]] = None) -> List[Token]:
        """Stablecoins and majors ordered by weight, else the first tokens in order."""
        pool = tokens if tokens is not None else self.tokens
        seeds = [
            t for t in pool
            if t.category in (TokenCategory.STABLECOIN, TokenCategory.MAJOR)
        ]
        if not seeds:
            return pool[:FALLBACK_SEED_COUNT]
        return sorted(seeds, key=lambda t: t.weight, reverse=True)

    # ============================================
    # Predefined pairs
    # ============================================

    def generate_predefined_pairs(self) -> List[Tuple[str, str]]:
        """
        Candidate pairs by category combination, de-duplicated.

        stable-stable, major-stable, major-major, defi-stable, defi-major,
        the first five DeFi tokens among themselves, nft-stable, nft-major,
        other-stable, plus configured popular pairs.
        """
        stables = self.in_category(TokenCategory.STABLECOIN)
        majors = self.in_category(TokenCategory.MAJOR)
        defi = self.in_category(TokenCategory.DEFI)
        nft = self.in_category(TokenCategory.NFT_GAMING)
        other = self.in_category(TokenCategory.OTHER)

        pairs: List[Tuple[str, str]] = []
        seen = set()

        def add(a: str, b: str) -> None:
            if a == b:
                return
            key = pair_key(a, b)
            if key not in seen:
                seen.add(key)
                pairs.append((a, b))

        def cross(left: List[Token], right: List[Token]) -> None:
            for x in left:
                for y in right:
                    add(x.address, y.address)

        cross(stables, stables)
        cross(majors, stables)
        cross(majors, majors)
        cross(defi, stables)
        cross(defi, majors)
        cross(defi[:5], defi[:5])
        cross(nft, stables)
        cross(nft, majors)
        cross(other, stables)

        for a, b in self.popular_pairs:
            if self.get(a) and self.get(b):
                add(a, b)

        return pairs

    def __len__(self) -> int:
        return len(self._tokens)
