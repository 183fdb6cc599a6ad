"""Shared fixtures: a throwaway SQLite database per test and a wired orchestrator."""
from decimal import Decimal

import pytest
import pytest_asyncio

from database import build_engine, build_sessionmaker, create_tables
from partner_gateway import SimulatedPartnerGateway, SimulatedTransferStore
from settlement_events import SettlementEventPublisher, SettlementEventType
from settlement_repository import SettlementRepository
from settlement_service import SettlementOrchestrator


BANK_DETAILS = {
    "account_number": "000123456789",
    "routing_number": "110000000",
    "name": "Acme Coffee LLC",
    "bank_name": "First Test Bank",
}


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions get their own connections
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlements.db'}", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(engine):
    return SettlementRepository(build_sessionmaker(engine))


@pytest.fixture
def transfer_store():
    return SimulatedTransferStore()


@pytest.fixture
def gateway(transfer_store):
    return SimulatedPartnerGateway(transfer_store=transfer_store)


@pytest.fixture
def events():
    return SettlementEventPublisher()


@pytest.fixture
def received(events):
    """Every lifecycle event published, as (event_type, payload) tuples"""
    captured = []
    for event_type in SettlementEventType:
        async def capture(payload, event_type=event_type):
            captured.append((event_type, payload))
        events.subscribe(event_type, capture)
    return captured


@pytest.fixture
def orchestrator(repository, gateway, events):
    return SettlementOrchestrator(
        repository=repository,
        gateway=gateway,
        events=events,
        batch_size=50,
        fee_percentage=Decimal("0.01"),
        max_retries=3,
        call_timeout_seconds=5.0
    )


@pytest.fixture
def make_settlement(orchestrator):
    """Create a PENDING settlement through the orchestrator"""
    counter = {"n": 0}

    async def _make(merchant_id="merchant-1", amount="100.00", currency="USD", source_currency="USDC", payment_request_id=None):
        counter["n"] += 1
        return await orchestrator.create_settlement(
            payment_request_id=payment_request_id or f"payreq-{counter['n']:04d}",
            merchant_id=merchant_id,
            amount=Decimal(amount),
            currency=currency,
            source_currency=source_currency,
            bank_details=BANK_DETAILS
        )

    return _make
