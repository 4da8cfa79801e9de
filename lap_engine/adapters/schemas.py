"""
Pydantic Schemas for remote ledger gateway and market data responses.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


# =============================================================
# LEDGER GATEWAY
# =============================================================

class IdentityResponse(BaseModel):
    """Identity created or imported by the gateway."""
    address: str
    credential: Optional[str] = None


class BalanceResponse(BaseModel):
    primary: Decimal = Decimal("0")
    secondary: Decimal = Decimal("0")


class TransferRequest(BaseModel):
    source: str
    credential: str
    destination: str
    amount: Decimal
    kind: str
    resource_ref: str = ""


class TransferResponse(BaseModel):
    reference: str
    amount: Decimal
    kind: str = "primary"


class CloseAccountRequest(BaseModel):
    address: str
    credential: str
    destination: str
    resource_ref: str


class CloseAccountResponse(BaseModel):
    closed: bool = True
    reference: Optional[str] = None
    reclaimed: Decimal = Decimal("0")


class GatewayError(BaseModel):
    """Error body returned by the gateway on non-2xx responses."""
    code: str = ""
    message: str = "Unknown error"


# =============================================================
# DEXSCREENER
# =============================================================

class DexToken(BaseModel):
    address: str
    name: str = ""
    symbol: str = ""


class DexLiquidity(BaseModel):
    usd: Optional[Decimal] = None


class DexPair(BaseModel):
    """One entry of the `pairs` list."""
    chain_id: str = Field("", alias="chainId")
    dex_id: str = Field("", alias="dexId")
    pair_address: str = Field(..., alias="pairAddress")
    base_token: DexToken = Field(..., alias="baseToken")
    quote_token: Optional[DexToken] = Field(None, alias="quoteToken")
    price_native: Optional[Decimal] = Field(None, alias="priceNative")
    price_usd: Optional[Decimal] = Field(None, alias="priceUsd")
    liquidity: Optional[DexLiquidity] = None

    class Config:
        populate_by_name = True

    @property
    def liquidity_usd(self) -> Decimal:
        if self.liquidity is None or self.liquidity.usd is None:
            return Decimal("0")
        return self.liquidity.usd


class DexTokenPairsResponse(BaseModel):
    pairs: Optional[List[DexPair]] = None
