"""
Lap Engine - HTTP Ledger Client.

============================================================
PURPOSE
============================================================
LedgerClient backed by a ledger gateway REST API.

ENDPOINTS:
    GET  /health
    POST /identities                  -> IdentityResponse
    POST /identities/import           -> IdentityResponse
    GET  /balances/{address}?resource -> BalanceResponse
    POST /transfers                   -> TransferResponse
    POST /accounts/close              -> CloseAccountResponse

ERROR MAPPING:
    429            -> NetworkError (NET_RATE_LIMITED, retryable)
    5xx / transport-> NetworkError (NET_CONNECTION_FAILED, retryable)
    404            -> NotFoundError
    402            -> InsufficientFundsError
    other 4xx      -> LedgerError
    client timeout -> GuardTimeoutError (outcome unknown)

The API key is read from the environment and sent as a bearer
token. Neither it nor any identity credential is ever logged.

============================================================
"""

import asyncio
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional, Type, TypeVar

import aiohttp
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from ..config import LedgerConfig
from ..errors import (
    GuardTimeoutError,
    InsufficientFundsError,
    LedgerError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from ..logging_utils import register_secret
from ..types import BalanceSnapshot, ResourceKind, TransferReceipt, WorkerIdentity
from .base import LedgerClient
from .schemas import (
    BalanceResponse,
    CloseAccountRequest,
    CloseAccountResponse,
    GatewayError,
    IdentityResponse,
    TransferRequest,
    TransferResponse,
)


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class HttpLedgerClient(LedgerClient):
    """Ledger gateway client over aiohttp."""

    def __init__(self, config: LedgerConfig, api_key: Optional[str] = None):
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._api_key = api_key if api_key is not None else os.environ.get(config.api_key_env)
        register_secret(self._api_key)

        self._session: Optional[aiohttp.ClientSession] = None
        self._connected = False

    @property
    def ledger_id(self) -> str:
        return "http"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Open the HTTP session and check the gateway is reachable."""
        if self._session is not None:
            await self.disconnect()

        timeout = aiohttp.ClientTimeout(
            connect=self._config.connection_timeout_seconds,
            total=self._config.read_timeout_seconds,
        )
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)

        try:
            await self._request("GET", "/health")
            self._connected = True
            logger.info(f"Connected to ledger gateway at {self._base_url}")
        except Exception as e:
            logger.error(f"Failed to connect to ledger gateway: {e}")
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        self._connected = False
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from ledger gateway")

    # --------------------------------------------------------
    # IDENTITIES
    # --------------------------------------------------------

    async def create_identity(self) -> WorkerIdentity:
        data = await self._request("POST", "/identities", json={})
        identity = self._parse(IdentityResponse, data)
        if not identity.credential:
            raise LedgerError("Gateway created an identity without a credential")
        return WorkerIdentity(id=0, address=identity.address, credential=identity.credential)

    async def import_identity(self, credential: str) -> WorkerIdentity:
        if not credential:
            raise ValidationError("Credential must not be empty")
        data = await self._request("POST", "/identities/import", json={"credential": credential})
        identity = self._parse(IdentityResponse, data)
        return WorkerIdentity(id=0, address=identity.address, credential=credential)

    # --------------------------------------------------------
    # BALANCES AND TRANSFERS
    # --------------------------------------------------------

    async def get_balance(self, identity: WorkerIdentity, resource_ref: str) -> BalanceSnapshot:
        data = await self._request(
            "GET",
            f"/balances/{identity.address}",
            params={"resource": resource_ref} if resource_ref else None,
        )
        balance = self._parse(BalanceResponse, data)
        return BalanceSnapshot(primary=balance.primary, secondary=balance.secondary)

    async def transfer(
        self,
        source: WorkerIdentity,
        destination: WorkerIdentity,
        amount: Decimal,
        kind: ResourceKind,
        resource_ref: str,
    ) -> TransferReceipt:
        if amount <= 0:
            raise ValidationError(f"Transfer amount must be positive: {amount}")
        if not source.credential:
            raise LedgerError(f"Identity {source.address} has no credential")

        request = TransferRequest(
            source=source.address,
            credential=source.credential,
            destination=destination.address,
            amount=amount,
            kind=kind.value,
            resource_ref=resource_ref,
        )
        data = await self._request("POST", "/transfers", json=request.model_dump(mode="json"))
        receipt = self._parse(TransferResponse, data)
        return TransferReceipt(reference=receipt.reference, amount=receipt.amount, kind=kind)

    async def close_account(
        self,
        identity: WorkerIdentity,
        destination: WorkerIdentity,
        resource_ref: str,
    ) -> Optional[TransferReceipt]:
        if not identity.credential:
            raise LedgerError(f"Identity {identity.address} has no credential")

        request = CloseAccountRequest(
            address=identity.address,
            credential=identity.credential,
            destination=destination.address,
            resource_ref=resource_ref,
        )
        data = await self._request("POST", "/accounts/close", json=request.model_dump(mode="json"))
        result = self._parse(CloseAccountResponse, data)
        if not result.closed:
            return None
        return TransferReceipt(
            reference=result.reference or "",
            amount=result.reclaimed,
            kind=ResourceKind.PRIMARY,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make API request."""
        if not self._session:
            raise NetworkError("Not connected", is_retryable=False)

        url = f"{self._base_url}{path}"

        try:
            async with self._session.request(method, url, params=params, json=json) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if response.status >= 400:
                    raise self._map_error(response.status, data, f"{method} {path}")
                return data

        except asyncio.TimeoutError:
            # aiohttp's ServerTimeoutError is also a ClientError
            raise GuardTimeoutError(f"{method} {path}", self._config.read_timeout_seconds) from None
        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error on {method} {path}: {e}",
                code="NET_CONNECTION_FAILED",
                is_retryable=True,
            ) from e

    @staticmethod
    def _map_error(status: int, data: Any, label: str) -> Exception:
        body = GatewayError()
        if isinstance(data, dict):
            try:
                body = GatewayError.model_validate(data)
            except SchemaError:
                body = GatewayError(message=str(data)[:200])
        message = f"{label} -> HTTP {status}: {body.message}"

        if status == 429:
            return NetworkError(message, code="NET_RATE_LIMITED")
        if status >= 500:
            return NetworkError(message, code="NET_CONNECTION_FAILED", is_retryable=True)
        if status == 404:
            return NotFoundError(message)
        if status == 402 or body.code == "LED_INSUFFICIENT_FUNDS":
            return InsufficientFundsError(message)
        return LedgerError(message, code=body.code if body.code.startswith("LED_") else "LED_REJECTED")

    @staticmethod
    def _parse(model: Type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except SchemaError as e:
            raise NetworkError(
                f"Unexpected {model.__name__} payload: {e.error_count()} errors",
                code="NET_BAD_RESPONSE",
            ) from e
