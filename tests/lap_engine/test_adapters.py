"""
Adapter Tests.

============================================================
PURPOSE
============================================================
Tests for the ledger and market data collaborators.

============================================================
TEST CATEGORIES
============================================================
1. Mock ledger behaviour
2. HTTP ledger client against a local gateway
3. DexScreener pair resolution and selection

============================================================
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp import test_utils

from lap_engine.adapters.dexscreener import DexScreenerMarketData, select_pair
from lap_engine.adapters.http_ledger import HttpLedgerClient
from lap_engine.adapters.mock import (
    MockLedgerClient,
    MockLedgerConfig,
    StaticMarketDataProvider,
)
from lap_engine.adapters.schemas import DexPair
from lap_engine.config import LedgerConfig, MarketDataConfig
from lap_engine.errors import (
    GuardTimeoutError,
    InsufficientFundsError,
    LedgerError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from lap_engine.types import PairInfo, ResourceKind, WorkerIdentity


RESOURCE = "TokenMint111"


# ============================================================
# MOCK LEDGER
# ============================================================

class TestMockLedger:
    """Tests for MockLedgerClient."""

    @pytest.mark.asyncio
    async def test_transfer_moves_primary(self):
        ledger = MockLedgerClient()
        source = await ledger.create_identity()
        dest = await ledger.create_identity()
        ledger.fund(source.address, primary=Decimal("1"))

        receipt = await ledger.transfer(source, dest, Decimal("0.4"), ResourceKind.PRIMARY, RESOURCE)

        assert receipt.amount == Decimal("0.4")
        assert ledger.balance_of(source.address) == Decimal("0.6")
        assert ledger.balance_of(dest.address) == Decimal("0.4")

    @pytest.mark.asyncio
    async def test_secondary_transfer_opens_account(self):
        ledger = MockLedgerClient()
        source = await ledger.create_identity()
        dest = await ledger.create_identity()
        ledger.fund(source.address, secondary=Decimal("50"), resource_ref=RESOURCE)

        await ledger.transfer(source, dest, Decimal("20"), ResourceKind.SECONDARY, RESOURCE)

        balance = await ledger.get_balance(dest, RESOURCE)
        assert balance.secondary == Decimal("20")
        assert ledger.is_account_open(dest.address, RESOURCE)

    @pytest.mark.asyncio
    async def test_fee_is_charged_to_source(self):
        ledger = MockLedgerClient(MockLedgerConfig(transfer_fee=Decimal("0.01")))
        source = await ledger.create_identity()
        dest = await ledger.create_identity()
        ledger.fund(source.address, primary=Decimal("1"))

        await ledger.transfer(source, dest, Decimal("0.5"), ResourceKind.PRIMARY, RESOURCE)

        assert ledger.balance_of(source.address) == Decimal("0.49")

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        ledger = MockLedgerClient()
        source = await ledger.create_identity()
        dest = await ledger.create_identity()

        with pytest.raises(InsufficientFundsError):
            await ledger.transfer(source, dest, Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self):
        ledger = MockLedgerClient()
        source = await ledger.create_identity()

        with pytest.raises(ValidationError):
            await ledger.transfer(source, source, Decimal("0"), ResourceKind.PRIMARY, RESOURCE)

    @pytest.mark.asyncio
    async def test_unknown_credential_cannot_sign(self):
        ledger = MockLedgerClient()
        dest = await ledger.create_identity()
        stranger = WorkerIdentity(id=1, address="elsewhere", credential="nope")

        with pytest.raises(LedgerError):
            await ledger.transfer(stranger, dest, Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

    @pytest.mark.asyncio
    async def test_import_is_deterministic(self):
        ledger = MockLedgerClient()

        first = await ledger.import_identity("admin-secret")
        second = await ledger.import_identity("admin-secret")

        assert first.address == second.address
        assert first.credential == "admin-secret"

    @pytest.mark.asyncio
    async def test_close_account_returns_deposit(self):
        ledger = MockLedgerClient(MockLedgerConfig(account_deposit=Decimal("0.002")))
        worker = await ledger.create_identity()
        admin = await ledger.create_identity()
        ledger.fund(worker.address, secondary=Decimal("5"), resource_ref=RESOURCE)
        await ledger.transfer(worker, admin, Decimal("5"), ResourceKind.SECONDARY, RESOURCE)

        receipt = await ledger.close_account(worker, admin, RESOURCE)

        assert receipt.amount == Decimal("0.002")
        assert not ledger.is_account_open(worker.address, RESOURCE)
        assert ledger.balance_of(admin.address) == Decimal("0.002")

    @pytest.mark.asyncio
    async def test_close_without_account_is_noop(self):
        ledger = MockLedgerClient()
        worker = await ledger.create_identity()
        admin = await ledger.create_identity()

        assert await ledger.close_account(worker, admin, RESOURCE) is None

    @pytest.mark.asyncio
    async def test_failing_address(self):
        ledger = MockLedgerClient()
        worker = await ledger.create_identity()
        ledger.fail_address(worker.address)

        with pytest.raises(NetworkError):
            await ledger.get_balance(worker, RESOURCE)

        ledger.clear_failures()
        balance = await ledger.get_balance(worker, RESOURCE)
        assert balance.primary == Decimal("0")

    @pytest.mark.asyncio
    async def test_static_market_data(self):
        provider = StaticMarketDataProvider()
        provider.add_pair(PairInfo(resource_ref=RESOURCE, pair_ref="Pair111", resource_name="Test"))

        pair = await provider.resolve_pair(RESOURCE)

        assert pair.pair_ref == "Pair111"
        with pytest.raises(NotFoundError):
            await provider.resolve_pair("unknown")


# ============================================================
# HTTP LEDGER GATEWAY
# ============================================================

def build_gateway(state: dict) -> web.Application:
    """Small in-process ledger gateway."""

    async def health(request):
        state["auth"].append(request.headers.get("Authorization"))
        if state.get("unhealthy"):
            return web.json_response({"message": "down"}, status=503)
        return web.json_response({"status": "ok"})

    async def create_identity(request):
        return web.json_response({"address": "addr1", "credential": "cred1"})

    async def import_identity(request):
        body = await request.json()
        return web.json_response({"address": f"imported-{body['credential'][:4]}"})

    async def balance(request):
        address = request.match_info["address"]
        state["resources"].append(request.query.get("resource"))
        if address == "missing":
            return web.json_response({"code": "LED_NOT_FOUND", "message": "no account"}, status=404)
        if address == "garbage":
            return web.json_response({"primary": "not-a-number"})
        if address == "slow":
            await asyncio.sleep(0.5)
        return web.json_response({"primary": "1.5", "secondary": "20"})

    async def transfer(request):
        body = await request.json()
        state["transfers"].append(body)
        if body["source"] == "busy":
            return web.json_response({"message": "slow down"}, status=429)
        if body["source"] == "broken":
            return web.json_response({"message": "internal"}, status=500)
        if Decimal(body["amount"]) > 100:
            return web.json_response({"code": "LED_INSUFFICIENT_FUNDS", "message": "short"}, status=402)
        if body["source"] == "bad":
            return web.json_response({"code": "LED_BAD_SIGNATURE", "message": "bad signature"}, status=400)
        return web.json_response({"reference": "tx1", "amount": body["amount"], "kind": body["kind"]})

    async def close_account(request):
        body = await request.json()
        if body["address"] == "none":
            return web.json_response({"closed": False})
        return web.json_response({"closed": True, "reference": "c1", "reclaimed": "0.002"})

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_post("/identities", create_identity)
    app.router.add_post("/identities/import", import_identity)
    app.router.add_get("/balances/{address}", balance)
    app.router.add_post("/transfers", transfer)
    app.router.add_post("/accounts/close", close_account)
    return app


@asynccontextmanager
async def gateway(read_timeout: float = 5.0):
    state = {"auth": [], "resources": [], "transfers": []}
    server = test_utils.TestServer(build_gateway(state))
    await server.start_server()
    config = LedgerConfig(
        backend="http",
        base_url=str(server.make_url("/")),
        read_timeout_seconds=read_timeout,
    )
    client = HttpLedgerClient(config, api_key="gateway-key")
    try:
        await client.connect()
        yield client, state
    finally:
        await client.disconnect()
        await server.close()


def signer(address: str = "src") -> WorkerIdentity:
    return WorkerIdentity(id=1, address=address, credential="secret")


def receiver() -> WorkerIdentity:
    return WorkerIdentity(id=2, address="dst")


class TestHttpLedgerClient:
    """Tests for HttpLedgerClient."""

    @pytest.mark.asyncio
    async def test_connect_sends_bearer_token(self):
        async with gateway() as (client, state):
            assert client.is_connected
            assert state["auth"] == ["Bearer gateway-key"]

    @pytest.mark.asyncio
    async def test_create_and_import_identity(self):
        async with gateway() as (client, _):
            created = await client.create_identity()
            imported = await client.import_identity("admin-secret")

        assert (created.address, created.credential) == ("addr1", "cred1")
        assert imported.address == "imported-admi"
        assert imported.credential == "admin-secret"

    @pytest.mark.asyncio
    async def test_balance_parsed_as_decimal(self):
        async with gateway() as (client, state):
            balance = await client.get_balance(signer(), RESOURCE)

        assert balance.primary == Decimal("1.5")
        assert balance.secondary == Decimal("20")
        assert state["resources"] == [RESOURCE]

    @pytest.mark.asyncio
    async def test_transfer_round_trip(self):
        async with gateway() as (client, state):
            receipt = await client.transfer(signer(), receiver(), Decimal("0.25"), ResourceKind.SECONDARY, RESOURCE)

        assert receipt.reference == "tx1"
        assert receipt.amount == Decimal("0.25")
        assert receipt.kind == ResourceKind.SECONDARY
        sent = state["transfers"][0]
        assert sent["destination"] == "dst"
        assert Decimal(sent["amount"]) == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_close_account(self):
        async with gateway() as (client, _):
            receipt = await client.close_account(signer(), receiver(), RESOURCE)
            nothing = await client.close_account(signer("none"), receiver(), RESOURCE)

        assert receipt.amount == Decimal("0.002")
        assert nothing is None

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        async with gateway() as (client, _):
            with pytest.raises(NetworkError) as exc_info:
                await client.transfer(signer("busy"), receiver(), Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

        assert exc_info.value.code == "NET_RATE_LIMITED"
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        async with gateway() as (client, _):
            with pytest.raises(NetworkError) as exc_info:
                await client.transfer(signer("broken"), receiver(), Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

        assert exc_info.value.code == "NET_CONNECTION_FAILED"
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_payment_required_maps_to_insufficient_funds(self):
        async with gateway() as (client, _):
            with pytest.raises(InsufficientFundsError):
                await client.transfer(signer(), receiver(), Decimal("500"), ResourceKind.PRIMARY, RESOURCE)

    @pytest.mark.asyncio
    async def test_rejection_keeps_gateway_code(self):
        async with gateway() as (client, _):
            with pytest.raises(LedgerError) as exc_info:
                await client.transfer(signer("bad"), receiver(), Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

        assert exc_info.value.code == "LED_BAD_SIGNATURE"
        assert not exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_not_found(self):
        async with gateway() as (client, _):
            with pytest.raises(NotFoundError, match="no account"):
                await client.get_balance(signer("missing"), RESOURCE)

    @pytest.mark.asyncio
    async def test_bad_payload(self):
        async with gateway() as (client, _):
            with pytest.raises(NetworkError) as exc_info:
                await client.get_balance(signer("garbage"), RESOURCE)

        assert exc_info.value.code == "NET_BAD_RESPONSE"
        assert not exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_client_timeout_is_guard_timeout(self):
        async with gateway(read_timeout=0.1) as (client, _):
            with pytest.raises(GuardTimeoutError):
                await client.get_balance(signer("slow"), RESOURCE)

    @pytest.mark.asyncio
    async def test_transfer_without_credential_never_sent(self):
        async with gateway() as (client, state):
            with pytest.raises(LedgerError):
                await client.transfer(receiver(), signer(), Decimal("1"), ResourceKind.PRIMARY, RESOURCE)

        assert state["transfers"] == []

    @pytest.mark.asyncio
    async def test_unhealthy_gateway_fails_connect(self):
        state = {"auth": [], "resources": [], "transfers": [], "unhealthy": True}
        server = test_utils.TestServer(build_gateway(state))
        await server.start_server()
        client = HttpLedgerClient(LedgerConfig(backend="http", base_url=str(server.make_url("/"))), api_key="unused-key")
        try:
            with pytest.raises(NetworkError):
                await client.connect()
            assert not client.is_connected
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_request_before_connect(self):
        client = HttpLedgerClient(LedgerConfig(backend="http"), api_key="unused-key")

        with pytest.raises(NetworkError, match="Not connected"):
            await client.get_balance(signer(), RESOURCE)


# ============================================================
# DEXSCREENER
# ============================================================

def dex_pair(address: str, dex: str, liquidity, base: str = RESOURCE) -> dict:
    return {
        "chainId": "solana",
        "dexId": dex,
        "pairAddress": address,
        "baseToken": {"address": base, "name": "Test Token", "symbol": "TST"},
        "quoteToken": {"address": "So111", "name": "Wrapped SOL", "symbol": "SOL"},
        "priceNative": "0.0001",
        "priceUsd": "0.02",
        "liquidity": {"usd": liquidity},
    }


class TestSelectPair:
    """Tests for select_pair()."""

    def parse(self, *raw) -> list:
        return [DexPair.model_validate(r) for r in raw]

    def test_schema_aliases(self):
        pair = DexPair.model_validate(dex_pair("P1", "raydium", 1234.5))

        assert pair.pair_address == "P1"
        assert pair.base_token.symbol == "TST"
        assert pair.liquidity_usd == Decimal("1234.5")

    def test_missing_liquidity_counts_as_zero(self):
        raw = dex_pair("P1", "raydium", None)
        del raw["liquidity"]

        assert DexPair.model_validate(raw).liquidity_usd == Decimal("0")

    def test_highest_liquidity_wins(self):
        pairs = self.parse(dex_pair("P1", "raydium", 100), dex_pair("P2", "orca", 900))

        assert select_pair(pairs, RESOURCE).pair_address == "P2"

    def test_base_token_match_preferred(self):
        pairs = self.parse(
            dex_pair("P1", "raydium", 100),
            dex_pair("P2", "raydium", 9000, base="OtherMint"),
        )

        assert select_pair(pairs, RESOURCE.lower()).pair_address == "P1"

    def test_preferred_dex(self):
        pairs = self.parse(dex_pair("P1", "raydium", 100), dex_pair("P2", "orca", 900))

        assert select_pair(pairs, RESOURCE, preferred_dex="raydium").pair_address == "P1"
        assert select_pair(pairs, RESOURCE, preferred_dex="meteora").pair_address == "P2"

    def test_no_pairs(self):
        assert select_pair([], RESOURCE) is None


class TestDexScreenerMarketData:
    """Tests for DexScreenerMarketData against a local server."""

    @asynccontextmanager
    async def provider(self, payload, status: int = 200):
        async def tokens(request):
            return web.json_response(payload, status=status)

        app = web.Application()
        app.router.add_get("/latest/dex/tokens/{ref}", tokens)
        server = test_utils.TestServer(app)
        await server.start_server()
        config = MarketDataConfig(backend="dexscreener", base_url=str(server.make_url("/")))
        provider = DexScreenerMarketData(config, timeout_seconds=5.0)
        try:
            yield provider
        finally:
            await provider.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_resolve_pair(self):
        payload = {"pairs": [dex_pair("P1", "raydium", 100), dex_pair("P2", "orca", 900)]}

        async with self.provider(payload) as provider:
            pair = await provider.resolve_pair(RESOURCE)

        assert pair.pair_ref == "P2"
        assert pair.resource_name == "Test Token"
        assert pair.price == Decimal("0.0001")
        assert pair.extra["dex_id"] == "orca"

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        async with self.provider({"pairs": None}) as provider:
            with pytest.raises(NotFoundError):
                await provider.resolve_pair(RESOURCE)

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        async with self.provider({}, status=429) as provider:
            with pytest.raises(NetworkError) as exc_info:
                await provider.resolve_pair(RESOURCE)

        assert exc_info.value.code == "NET_RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        async with self.provider({"pairs": [{"dexId": "raydium"}]}) as provider:
            with pytest.raises(NetworkError) as exc_info:
                await provider.resolve_pair(RESOURCE)

        assert exc_info.value.code == "NET_BAD_RESPONSE"
