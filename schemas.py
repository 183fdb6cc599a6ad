# schemas.py
# Pydantic models for request/response validation and lifecycle event payloads.

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models import SettlementStatus, SettlementProvider


class BankDetails(BaseModel):
    """Destination bank account, already verified by the merchant-bank process"""
    account_number: str = Field(min_length=1)
    routing_number: str = Field(min_length=1)
    name: str = Field(min_length=1)  # account holder
    bank_name: str = Field(min_length=1)
    swift_code: Optional[str] = None
    iban: Optional[str] = None


class SettlementCreate(BaseModel):
    payment_request_id: str = Field(min_length=1, max_length=36)
    merchant_id: str = Field(min_length=1, max_length=36)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    source_currency: str
    bank_details: BankDetails


class Settlement(BaseModel):
    id: str
    payment_request_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    source_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    fee_amount: Decimal
    fee_percentage: Optional[Decimal] = None
    net_amount: Decimal
    status: SettlementStatus
    provider: Optional[SettlementProvider] = None
    provider_reference: Optional[str] = None
    settlement_reference: Optional[str] = None
    settlement_receipt: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int
    max_retries: int
    batch_id: Optional[str] = None
    batch_sequence: Optional[int] = None
    bank_account_number: Optional[str] = None
    bank_name: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettlementStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")


class SettlementReceipt(BaseModel):
    receipt_id: str
    settlement_id: str
    merchant_id: str
    amount: Decimal
    net_amount: Decimal
    currency: str
    settlement_reference: Optional[str] = None
    settled_at: datetime
    status: SettlementStatus


class ManualBatchRequest(BaseModel):
    merchant_id: str = Field(min_length=1, max_length=36)
    settlement_ids: List[str] = Field(min_length=1)


class BatchResult(BaseModel):
    """Outcome of one batch pass"""
    batch_id: Optional[str] = None
    requested: int = 0
    claimed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0


# ==================== LIFECYCLE EVENTS ====================

class PaymentConfirmedEvent(BaseModel):
    """Inbound signal: an on-chain payment reached its confirmation depth"""
    payment_request_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    source_currency: str
    bank_details: BankDetails
    tx_hash: Optional[str] = None
    confirmed_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentSettlingEvent(BaseModel):
    payment_request_id: str
    merchant_id: str
    settlement_id: str
    batch_id: Optional[str] = None
    amount: Decimal
    currency: str
    exchange_rate: Optional[Decimal] = None
    started_at: datetime


class PaymentSettledEvent(BaseModel):
    payment_request_id: str
    merchant_id: str
    settlement_id: str
    amount: Decimal
    net_amount: Decimal
    currency: str
    settled_at: datetime
    settlement_reference: str


class PaymentFailedEvent(BaseModel):
    payment_request_id: str
    merchant_id: str
    settlement_id: Optional[str] = None
    reason: str
    failed_at: datetime
    retry_count: int = 0
    retryable: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
