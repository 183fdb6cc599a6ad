import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import Settings
from exceptions import ConversionFailed, GatewayTimeout, GatewayUnavailable, NotFound, TransferRejected
from partner_gateway import (
    BankRecipient,
    HttpPartnerGateway,
    SimulatedPartnerGateway,
    SimulatedTransferStore,
    TransferStatus,
    build_partner_gateway,
)


RECIPIENT = BankRecipient(
    account_number="000123456789",
    routing_number="110000000",
    account_holder_name="Acme Coffee LLC",
    bank_name="First Test Bank",
)


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestSimulatedRates:

    @pytest.mark.asyncio
    async def test_same_currency_rate_is_one(self):
        gateway = SimulatedPartnerGateway()
        assert await gateway.get_exchange_rate("USD", "usd") == Decimal("1")

    @pytest.mark.asyncio
    async def test_table_and_inverse_rates(self):
        gateway = SimulatedPartnerGateway(rates={("USDC", "EUR"): Decimal("0.8")})

        assert await gateway.get_exchange_rate("USDC", "EUR") == Decimal("0.8")
        assert await gateway.get_exchange_rate("EUR", "USDC") == Decimal("1.25")

    @pytest.mark.asyncio
    async def test_unknown_pair_fails(self):
        gateway = SimulatedPartnerGateway()
        with pytest.raises(ConversionFailed):
            await gateway.get_exchange_rate("DOGE", "JPY")

    @pytest.mark.asyncio
    async def test_conversion_deducts_partner_fee(self):
        gateway = SimulatedPartnerGateway(conversion_fee_percentage=Decimal("0.005"))

        result = await gateway.convert_to_fiat(Decimal("1000"), "USDC", "USD")

        assert result.fee == Decimal("5.0000")
        assert result.target_amount == Decimal("995.0000")
        assert result.exchange_rate == Decimal("1")
        assert result.conversion_id.startswith("conv_")

    @pytest.mark.asyncio
    async def test_conversion_rejects_non_positive_amount(self):
        gateway = SimulatedPartnerGateway()
        with pytest.raises(ConversionFailed):
            await gateway.convert_to_fiat(Decimal("0"), "USDC", "USD")


class TestSimulatedTransfers:

    @pytest.mark.asyncio
    async def test_transfer_is_idempotent_on_reference(self):
        gateway = SimulatedPartnerGateway()

        first = await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")
        second = await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

        assert first.transfer_id == second.transfer_id
        assert first.transfer_id.startswith("trf_")
        assert len(gateway.transfer_store.transfers) == 1

    @pytest.mark.asyncio
    async def test_scripted_outcomes_apply_in_order(self):
        store = SimulatedTransferStore()
        store.script_transfer_outcomes(TransferRejected("Insufficient liquidity"), None)
        gateway = SimulatedPartnerGateway(transfer_store=store)

        with pytest.raises(TransferRejected, match="Insufficient liquidity"):
            await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")
        result = await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

        assert result.status == TransferStatus.PENDING

    @pytest.mark.asyncio
    async def test_scripted_outcome_for_one_reference(self):
        store = SimulatedTransferStore()
        store.script_transfer_outcomes(GatewayUnavailable("down"), reference="SETTLE-2")
        gateway = SimulatedPartnerGateway(transfer_store=store)

        await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")
        with pytest.raises(GatewayUnavailable):
            await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-2")

    @pytest.mark.asyncio
    async def test_stores_are_isolated(self):
        first = SimulatedPartnerGateway(transfer_store=SimulatedTransferStore())
        second = SimulatedPartnerGateway(transfer_store=SimulatedTransferStore())

        result = await first.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

        with pytest.raises(NotFound):
            await second.get_settlement_status(result.transfer_id)

    @pytest.mark.asyncio
    async def test_status_progresses_with_time(self):
        clock = FakeClock()
        gateway = SimulatedPartnerGateway(clock=clock)
        result = await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

        assert (await gateway.get_settlement_status(result.transfer_id)).status == TransferStatus.PENDING
        clock.advance(seconds=90)
        assert (await gateway.get_settlement_status(result.transfer_id)).status == TransferStatus.PROCESSING
        clock.advance(minutes=5)
        completed = await gateway.get_settlement_status(result.transfer_id)
        assert completed.status == TransferStatus.COMPLETED
        assert completed.bank_reference == f"BANK_REF_{result.transfer_id}"

    @pytest.mark.asyncio
    async def test_marked_failed_transfer_reports_reason(self):
        gateway = SimulatedPartnerGateway()
        result = await gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")
        gateway.transfer_store.mark_failed(result.transfer_id, "account closed")

        status = await gateway.get_settlement_status(result.transfer_id)

        assert status.status == TransferStatus.FAILED
        assert status.failure_reason == "account closed"


class TestBuildGateway:

    def test_simulated_by_default(self):
        gateway = build_partner_gateway(Settings(PARTNER_GATEWAY_MODE="simulated"))
        assert isinstance(gateway, SimulatedPartnerGateway)

    def test_http_mode(self):
        gateway = build_partner_gateway(Settings(
            PARTNER_GATEWAY_MODE="http",
            PARTNER_API_URL="https://partner.test/api/",
            PARTNER_API_KEY="sk_test"
        ))
        assert isinstance(gateway, HttpPartnerGateway)
        assert gateway.base_url == "https://partner.test/api"

    def test_http_mode_requires_api_key(self):
        with pytest.raises(ValueError):
            Settings(PARTNER_GATEWAY_MODE="http", PARTNER_API_KEY=None)

    def test_fee_percentage_limited_to_four_decimals(self):
        assert Settings(SETTLEMENT_FEE_PERCENTAGE="0.0125").SETTLEMENT_FEE_PERCENTAGE == Decimal("0.0125")
        with pytest.raises(ValueError, match="4 decimal places"):
            Settings(SETTLEMENT_FEE_PERCENTAGE="0.01255")


# ==================== HTTP ADAPTER ====================

@pytest_asyncio.fixture
async def partner_server():
    """A fake partner API; handlers read their behaviour from server.state"""
    seen = []
    state = {"mode": "ok"}

    async def rates(request):
        return web.json_response({"rate": "0.92"})

    async def conversions(request):
        body = await request.json()
        seen.append(("conversion", dict(request.headers), body))
        if state["mode"] == "malformed":
            return web.json_response({"conversion_id": "conv_remote", "exchange_rate": "0.92"})
        return web.json_response({
            "conversion_id": "conv_remote",
            "target_amount": "910.8000",
            "exchange_rate": "0.92",
            "fee": "0.00",
        })

    async def transfers(request):
        body = await request.json()
        seen.append(("transfer", dict(request.headers), body))
        mode = state["mode"]
        if mode == "reject":
            return web.json_response({"error": "Insufficient liquidity"}, status=422)
        if mode == "server_error":
            return web.json_response({"error": "upstream"}, status=503)
        if mode == "malformed":
            return web.json_response({"transfer_id": "trf_remote", "status": "teleported"})
        if mode == "array":
            return web.json_response([{"transfer_id": "trf_remote"}])
        if mode == "slow":
            await asyncio.sleep(1)
        return web.json_response({"transfer_id": "trf_remote", "status": "pending"})

    async def transfer_status(request):
        if request.match_info["transfer_id"] != "trf_remote":
            return web.json_response({"error": "not found"}, status=404)
        if state["mode"] == "malformed":
            return web.json_response({"bank_reference": "BANK_REF_trf_remote"})
        return web.json_response({"status": "completed", "bank_reference": "BANK_REF_trf_remote"})

    app = web.Application()
    app.router.add_get("/v1/rates", rates)
    app.router.add_post("/v1/conversions", conversions)
    app.router.add_post("/v1/transfers", transfers)
    app.router.add_get("/v1/transfers/{transfer_id}", transfer_status)

    server = TestServer(app)
    await server.start_server()
    server.seen = seen
    server.state = state
    yield server
    await server.close()


@pytest_asyncio.fixture
async def http_gateway(partner_server):
    gateway = HttpPartnerGateway(str(partner_server.make_url("")), api_key="sk_test", timeout_seconds=0.3)
    yield gateway
    await gateway.close()


class TestHttpGateway:

    @pytest.mark.asyncio
    async def test_exchange_rate(self, http_gateway):
        assert await http_gateway.get_exchange_rate("USDC", "EUR") == Decimal("0.92")

    @pytest.mark.asyncio
    async def test_conversion(self, http_gateway, partner_server):
        result = await http_gateway.convert_to_fiat(Decimal("990.00"), "USDC", "EUR")

        assert result.conversion_id == "conv_remote"
        assert result.target_amount == Decimal("910.8000")
        _, headers, body = partner_server.seen[0]
        assert headers["Authorization"] == "Bearer sk_test"
        assert body["source_amount"] == "990.00"

    @pytest.mark.asyncio
    async def test_transfer_sends_idempotency_key(self, http_gateway, partner_server):
        result = await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-abc")

        assert result.transfer_id == "trf_remote"
        assert result.status == TransferStatus.PENDING
        _, headers, body = partner_server.seen[-1]
        assert headers["Idempotency-Key"] == "SETTLE-abc"
        assert body["recipient"]["account_holder_name"] == "Acme Coffee LLC"

    @pytest.mark.asyncio
    async def test_client_error_is_rejection(self, http_gateway, partner_server):
        partner_server.state["mode"] = "reject"
        with pytest.raises(TransferRejected, match="Insufficient liquidity"):
            await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, http_gateway, partner_server):
        partner_server.state["mode"] = "server_error"
        with pytest.raises(GatewayUnavailable) as exc_info:
            await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_slow_partner_times_out(self, http_gateway, partner_server):
        partner_server.state["mode"] = "slow"
        with pytest.raises(GatewayTimeout):
            await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

    @pytest.mark.asyncio
    async def test_transfer_status(self, http_gateway):
        status = await http_gateway.get_settlement_status("trf_remote")

        assert status.status == TransferStatus.COMPLETED
        assert status.bank_reference == "BANK_REF_trf_remote"

    @pytest.mark.asyncio
    async def test_unknown_transfer_is_not_found(self, http_gateway):
        with pytest.raises(NotFound):
            await http_gateway.get_settlement_status("trf_missing")

    @pytest.mark.asyncio
    async def test_unreachable_partner(self):
        gateway = HttpPartnerGateway("http://127.0.0.1:1", api_key="sk_test", timeout_seconds=1)
        try:
            with pytest.raises((GatewayUnavailable, GatewayTimeout)):
                await gateway.get_exchange_rate("USDC", "USD")
        finally:
            await gateway.close()


class TestMalformedPartnerResponses:

    @pytest.mark.asyncio
    async def test_conversion_missing_fields(self, http_gateway, partner_server):
        partner_server.state["mode"] = "malformed"
        with pytest.raises(ConversionFailed, match="Malformed conversion response"):
            await http_gateway.convert_to_fiat(Decimal("10"), "USDC", "EUR")

    @pytest.mark.asyncio
    async def test_transfer_with_unknown_status(self, http_gateway, partner_server):
        partner_server.state["mode"] = "malformed"
        with pytest.raises(GatewayUnavailable, match="Malformed transfer response"):
            await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

    @pytest.mark.asyncio
    async def test_transfer_with_array_body(self, http_gateway, partner_server):
        partner_server.state["mode"] = "array"
        with pytest.raises(GatewayUnavailable, match="non-object body"):
            await http_gateway.initiate_bank_transfer(Decimal("10"), "USD", RECIPIENT, "SETTLE-1")

    @pytest.mark.asyncio
    async def test_transfer_status_missing_status(self, http_gateway, partner_server):
        partner_server.state["mode"] = "malformed"
        with pytest.raises(GatewayUnavailable, match="Malformed transfer status"):
            await http_gateway.get_settlement_status("trf_remote")
