"""
Settlement API Router
Merchant-facing settlement queries plus batch triggers
"""

from fastapi import APIRouter, HTTPException, Query, status
from datetime import datetime
from typing import Optional
import logging

from deps import OrchestratorDep
from exceptions import (
    DuplicatePaymentReference,
    GatewayError,
    GatewayTimeout,
    InvalidStatusTransition,
    NotFound,
    ReceiptNotAvailable,
    SettlementOwnershipError,
)
from models import SettlementStatus
from schemas import ManualBatchRequest, Settlement as SettlementSchema, SettlementCreate

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/settlements", tags=["settlements"])


def _http_error(e: Exception) -> HTTPException:
    """Map settlement errors onto HTTP responses"""
    if isinstance(e, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, DuplicatePaymentReference):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (InvalidStatusTransition, ReceiptNotAvailable)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, SettlementOwnershipError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, GatewayTimeout):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    if isinstance(e, GatewayError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    log.error(f"Unhandled settlement error: {e!r}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal settlement error")


def _serialize(settlement) -> dict:
    return SettlementSchema.model_validate(settlement).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_settlement(payload: SettlementCreate, orchestrator: OrchestratorDep):
    """Create a settlement for a confirmed payment"""
    try:
        settlement = await orchestrator.create_settlement(
            payment_request_id=payload.payment_request_id,
            merchant_id=payload.merchant_id,
            amount=payload.amount,
            currency=payload.currency,
            source_currency=payload.source_currency,
            bank_details=payload.bank_details
        )
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": _serialize(settlement), "message": "Settlement created"}


@router.get("")
async def list_settlements(
    orchestrator: OrchestratorDep,
    merchant_id: str = Query(...),
    status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
    from_date: Optional[datetime] = Query(None),
    to_date: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    """Merchant settlements, newest first"""
    try:
        settlements, total = await orchestrator.list_settlements(
            merchant_id,
            status=status_filter,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
            offset=offset
        )
    except Exception as e:
        raise _http_error(e) from e
    return {
        "success": True,
        "data": [_serialize(s) for s in settlements],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/status/{settlement_status}")
async def list_by_status(
    settlement_status: SettlementStatus,
    orchestrator: OrchestratorDep,
    limit: int = Query(100, ge=1, le=500)
):
    """Operational view: settlements in one status, oldest first"""
    try:
        settlements = await orchestrator.list_by_status(settlement_status, limit=limit)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": [_serialize(s) for s in settlements]}


@router.get("/statistics/{merchant_id}")
async def get_statistics(merchant_id: str, orchestrator: OrchestratorDep):
    try:
        stats = await orchestrator.get_statistics(merchant_id)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": stats.model_dump(mode="json")}


@router.post("/batch/run")
async def run_batch(orchestrator: OrchestratorDep):
    """Trigger one scheduled-style batch pass now"""
    try:
        result = await orchestrator.process_batch()
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": result.model_dump(mode="json")}


@router.post("/batch", status_code=status.HTTP_202_ACCEPTED)
async def create_batch(payload: ManualBatchRequest, orchestrator: OrchestratorDep):
    """Settle specific PENDING settlements of one merchant"""
    try:
        result = await orchestrator.create_batch(payload.merchant_id, payload.settlement_ids)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": result.model_dump(mode="json")}


@router.get("/{settlement_id}")
async def get_settlement(
    settlement_id: str,
    orchestrator: OrchestratorDep,
    merchant_id: Optional[str] = Query(None)
):
    try:
        settlement = await orchestrator.get_settlement(settlement_id, merchant_id)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": _serialize(settlement)}


@router.get("/{settlement_id}/receipt")
async def get_receipt(settlement_id: str, orchestrator: OrchestratorDep, merchant_id: str = Query(...)):
    """Receipt for a COMPLETED settlement"""
    try:
        receipt = await orchestrator.generate_receipt(settlement_id, merchant_id)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": receipt.model_dump(mode="json")}


@router.get("/{settlement_id}/transfer-status")
async def get_transfer_status(settlement_id: str, orchestrator: OrchestratorDep):
    """Live partner status of the payout behind a settlement"""
    try:
        transfer = await orchestrator.get_transfer_status(settlement_id)
    except Exception as e:
        raise _http_error(e) from e
    return {"success": True, "data": transfer.model_dump(mode="json")}
