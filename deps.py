# deps.py
# Dependency injections for routes: database sessions and the settlement orchestrator.

from typing import Annotated, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service import SettlementOrchestrator


# -----------------------
#  DATABASE DEPENDENCY
# -----------------------
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.sessionmaker() as session:
        yield session

SessionDep = Annotated[AsyncSession, Depends(get_db)]


# -----------------------
#  ORCHESTRATOR DEPENDENCY
# -----------------------
def get_orchestrator(request: Request) -> SettlementOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settlement engine is not ready"
        )
    return orchestrator

OrchestratorDep = Annotated[SettlementOrchestrator, Depends(get_orchestrator)]
