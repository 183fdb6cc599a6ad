import uvicorn
from fastapi import FastAPI
from sqlalchemy import text
import logging
from typing import Optional

from config import Settings, settings
from database import build_engine, build_sessionmaker, create_tables
from deps import SessionDep
from partner_gateway import SimulatedTransferStore, build_partner_gateway
from routers.settlement_api import router as settlement_router
from settlement_events import SettlementEventPublisher, SettlementEventType
from settlement_repository import SettlementRepository
from settlement_scheduler import SettlementScheduler
from settlement_service import SettlementOrchestrator

log = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )


def create_app(app_settings: Optional[Settings] = None, transfer_store: Optional[SimulatedTransferStore] = None) -> FastAPI:
    """
    Build the settlement API.

    Everything stateful (engine, gateway, publisher, orchestrator, scheduler)
    is created at startup and hung off app.state, so each app instance is
    isolated from any other.
    """
    app_settings = app_settings or settings
    app = FastAPI(title="Settlement Engine")

    @app.on_event("startup")
    async def startup_event():
        log.info("Initializing settlement engine...")
        engine = build_engine(app_settings.DATABASE_URL, echo=app_settings.SQL_ECHO)
        await create_tables(engine)

        sessionmaker = build_sessionmaker(engine)
        events = SettlementEventPublisher()
        gateway = build_partner_gateway(app_settings, transfer_store=transfer_store)
        orchestrator = SettlementOrchestrator.from_settings(
            app_settings,
            repository=SettlementRepository(sessionmaker),
            gateway=gateway,
            events=events
        )
        events.subscribe(SettlementEventType.PAYMENT_CONFIRMED, orchestrator.handle_payment_confirmed)

        scheduler = SettlementScheduler(orchestrator, interval_seconds=app_settings.SETTLEMENT_INTERVAL_SECONDS)
        if app_settings.SETTLEMENT_SCHEDULER_ENABLED:
            scheduler.start()

        app.state.engine = engine
        app.state.sessionmaker = sessionmaker
        app.state.events = events
        app.state.gateway = gateway
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler
        log.info("Settlement engine ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.scheduler.stop()
        await app.state.gateway.close()
        await app.state.engine.dispose()
        log.info("Settlement engine stopped")

    @app.get("/health")
    async def health(db: SessionDep):
        await db.execute(text("SELECT 1"))
        return {"status": "ok", "scheduler_running": app.state.scheduler.running}

    app.include_router(settlement_router)
    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
