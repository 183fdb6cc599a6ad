# models.py
# SQLAlchemy models defining the settlement tables.

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text, JSON, Enum, Index

from database import Base


class SettlementStatus(str, enum.Enum):
    """Settlement lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementStatus.COMPLETED, SettlementStatus.FAILED)


class SettlementProvider(str, enum.Enum):
    """Fiat payout providers"""
    BANK_API = "bank_api"
    STRIPE = "stripe"
    WISE = "wise"
    PAYPAL = "paypal"
    OTHER = "other"


# PENDING -> PROCESSING -> {COMPLETED | PENDING (retry) | FAILED}
ALLOWED_TRANSITIONS = {
    SettlementStatus.PENDING: {SettlementStatus.PROCESSING},
    SettlementStatus.PROCESSING: {
        SettlementStatus.COMPLETED,
        SettlementStatus.PENDING,
        SettlementStatus.FAILED,
    },
    SettlementStatus.COMPLETED: set(),
    SettlementStatus.FAILED: set(),
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _new_id() -> str:
    return str(uuid.uuid4())


class Settlement(Base):
    """
    One fiat payout for one confirmed stablecoin payment.

    Money columns are Numeric and surface as Decimal. net_amount is fixed
    when the record is created and never recomputed.
    """
    __tablename__ = "settlements"

    id = Column(String(36), primary_key=True, default=_new_id)
    payment_request_id = Column(String(36), nullable=False, unique=True, comment="One settlement per payment")
    merchant_id = Column(String(36), nullable=False, index=True)

    # Amounts
    amount = Column(Numeric(19, 4), nullable=False)
    currency = Column(String(3), nullable=False)  # fiat payout currency
    source_currency = Column(String(10), nullable=True)  # stablecoin, e.g. USDC
    exchange_rate = Column(Numeric(19, 8), nullable=True)  # quote at creation, executed rate after conversion
    fee_amount = Column(Numeric(19, 8), nullable=False, default=0)
    fee_percentage = Column(Numeric(5, 4), nullable=True)
    net_amount = Column(Numeric(19, 8), nullable=False)

    # Destination bank account (validated upstream)
    bank_account_number = Column(String(50), nullable=True)
    bank_routing_number = Column(String(50), nullable=True)
    bank_swift_code = Column(String(11), nullable=True)
    bank_iban = Column(String(34), nullable=True)
    bank_account_holder_name = Column(String(255), nullable=True)
    bank_name = Column(String(255), nullable=True)

    # Batch linkage, set when a batch claims the record
    batch_id = Column(String(36), nullable=True, index=True)
    batch_sequence = Column(Integer, nullable=True)

    # Provider linkage
    provider = Column(
        Enum(SettlementProvider, name="settlement_provider_enum", values_callable=_enum_values),
        nullable=True,
        default=SettlementProvider.BANK_API,
    )
    provider_reference = Column(String(255), nullable=True)
    settlement_reference = Column(String(255), nullable=True)
    settlement_receipt = Column(String(255), nullable=True, unique=True)

    # Lifecycle
    status = Column(
        Enum(SettlementStatus, name="settlement_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SettlementStatus.PENDING,
        index=True,
    )
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    # Timestamps (UTC, naive)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)  # stamped on every processing attempt
    settled_at = Column(DateTime, nullable=True, index=True)  # COMPLETED only

    # Audit/debug context; "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_settlements_status_created_at", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Settlement(id={self.id}, payment_request_id={self.payment_request_id}, status='{self.status.value}')>"

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and SettlementStatus(self.status).is_terminal

    def can_transition_to(self, new_status: SettlementStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[SettlementStatus(self.status)]
