"""
Lap Engine - DexScreener Market Data.

============================================================
PURPOSE
============================================================
Resolves the tradeable pair of a resource through the public
DexScreener API:

    GET {base_url}/latest/dex/tokens/{resource_ref}

SELECTION:
1. Pairs whose base token is the resource
2. Restricted to `preferred_dex` when any pair is on it
3. Highest USD liquidity wins

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

import aiohttp
from pydantic import ValidationError as SchemaError

from ..config import MarketDataConfig
from ..errors import GuardTimeoutError, NetworkError, NotFoundError
from ..types import PairInfo
from .base import MarketDataProvider
from .schemas import DexPair, DexTokenPairsResponse


logger = logging.getLogger(__name__)


class DexScreenerMarketData(MarketDataProvider):
    """Pair lookup against DexScreener."""

    def __init__(self, config: MarketDataConfig, timeout_seconds: float = 15.0):
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def resolve_pair(self, resource_ref: str) -> PairInfo:
        pairs = await self._fetch_pairs(resource_ref)
        pair = select_pair(pairs, resource_ref, self._config.preferred_dex)
        if pair is None:
            raise NotFoundError(f"No pair found for {resource_ref}")

        logger.info(
            f"Resolved {pair.base_token.name or resource_ref} ({pair.base_token.symbol}) "
            f"on {pair.dex_id}: pair {pair.pair_address}, liquidity ${pair.liquidity_usd}"
        )
        return PairInfo(
            resource_ref=resource_ref,
            pair_ref=pair.pair_address,
            resource_name=pair.base_token.name or pair.base_token.symbol,
            price=pair.price_native,
            liquidity=pair.liquidity_usd,
            extra={
                "chain_id": pair.chain_id,
                "dex_id": pair.dex_id,
                "symbol": pair.base_token.symbol,
                "price_usd": str(pair.price_usd) if pair.price_usd is not None else None,
            },
        )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _fetch_pairs(self, resource_ref: str) -> List[DexPair]:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            )

        url = f"{self._base_url}/latest/dex/tokens/{resource_ref}"
        try:
            async with self._session.get(url) as response:
                if response.status == 429:
                    raise NetworkError("DexScreener rate limit hit", code="NET_RATE_LIMITED")
                if response.status >= 400:
                    raise NetworkError(
                        f"DexScreener returned HTTP {response.status}",
                        code="NET_CONNECTION_FAILED" if response.status >= 500 else "NET_BAD_RESPONSE",
                    )
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise GuardTimeoutError(f"dexscreener {resource_ref}", self._timeout_seconds) from None
        except aiohttp.ClientError as e:
            raise NetworkError(f"Failed to fetch token data from DexScreener: {e}") from e

        try:
            parsed = DexTokenPairsResponse.model_validate(data or {})
        except SchemaError as e:
            raise NetworkError(
                f"Unexpected DexScreener payload: {e.error_count()} errors",
                code="NET_BAD_RESPONSE",
            ) from e
        return parsed.pairs or []


def select_pair(
    pairs: List[DexPair],
    resource_ref: str,
    preferred_dex: Optional[str] = None,
) -> Optional[DexPair]:
    """Pick the most liquid pair trading `resource_ref` as its base token."""
    ref = resource_ref.lower()
    candidates = [p for p in pairs if p.base_token.address.lower() == ref] or list(pairs)
    if preferred_dex:
        on_dex = [p for p in candidates if p.dex_id == preferred_dex]
        candidates = on_dex or candidates
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.liquidity_usd or Decimal("0"))
