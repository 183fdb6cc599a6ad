"""
Settlement Service
Stablecoin-to-fiat settlement lifecycle and batch processing

Features:
- Settlement creation from confirmed payments (fee, net amount, rate quote)
- Periodic batch processing: claim PENDING, convert, transfer
- Bounded retries driven by the scheduler interval
- Manual batches and stale PROCESSING reconciliation
- Read queries, receipts and partner transfer status

Lifecycle:
    PENDING -> PROCESSING -> COMPLETED
                          -> PENDING (retries remain)
                          -> FAILED  (retries exhausted)
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, List, Optional, Sequence, Tuple, TypeVar, Union

from exceptions import (
    DuplicatePaymentReference,
    GatewayTimeout,
    InvalidStatusTransition,
    NotFound,
    ReceiptNotAvailable,
    SettlementOwnershipError,
)
from models import Settlement, SettlementStatus, SettlementProvider
from partner_gateway import BankRecipient, PartnerLiquidityGateway, TransferStatusResult
from schemas import (
    BankDetails,
    BatchResult,
    PaymentConfirmedEvent,
    PaymentFailedEvent,
    PaymentSettledEvent,
    PaymentSettlingEvent,
    SettlementReceipt,
    SettlementStats,
)
from settlement_events import SettlementEventPublisher, SettlementEventType
from settlement_repository import SettlementRepository

log = logging.getLogger(__name__)

T = TypeVar("T")

# Scale of the amount and fee_percentage columns; their product fits fee_amount exactly
AMOUNT_QUANTUM = Decimal("0.0001")
DEFAULT_BATCH_SIZE = 50
DEFAULT_FEE_PERCENTAGE = Decimal("0.01")  # 1% platform fee


def transfer_reference(settlement_id: str) -> str:
    """Partner-side idempotency key for a settlement's payout"""
    return f"SETTLE-{settlement_id}"


class SettlementOrchestrator:
    """Drives settlements from creation to COMPLETED or FAILED"""

    def __init__(
        self,
        repository: SettlementRepository,
        gateway: PartnerLiquidityGateway,
        events: Optional[SettlementEventPublisher] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        fee_percentage: Decimal = DEFAULT_FEE_PERCENTAGE,
        max_retries: int = 3,
        workers: int = 1,
        call_timeout_seconds: float = 30.0,
        stale_after: timedelta = timedelta(minutes=30)
    ):
        self.repository = repository
        self.gateway = gateway
        self.events = events
        self.batch_size = batch_size
        self.fee_percentage = Decimal(str(fee_percentage))
        if self.fee_percentage.quantize(AMOUNT_QUANTUM) != self.fee_percentage:
            raise ValueError(f"Fee percentage supports at most 4 decimal places, got {self.fee_percentage}")
        self.max_retries = max_retries
        self.workers = workers
        self.call_timeout_seconds = call_timeout_seconds
        self.stale_after = stale_after
        # One batch at a time per process; the atomic claim covers other processes
        self._batch_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings,
        repository: SettlementRepository,
        gateway: PartnerLiquidityGateway,
        events: Optional[SettlementEventPublisher] = None
    ) -> "SettlementOrchestrator":
        return cls(
            repository=repository,
            gateway=gateway,
            events=events,
            batch_size=settings.SETTLEMENT_BATCH_SIZE,
            fee_percentage=settings.SETTLEMENT_FEE_PERCENTAGE,
            max_retries=settings.SETTLEMENT_MAX_RETRIES,
            workers=settings.SETTLEMENT_WORKERS,
            call_timeout_seconds=settings.PARTNER_CALL_TIMEOUT_SECONDS,
            stale_after=timedelta(minutes=settings.SETTLEMENT_STALE_AFTER_MINUTES)
        )

    # ==================== CREATION ====================

    async def create_settlement(
        self,
        payment_request_id: str,
        merchant_id: str,
        amount: Union[Decimal, str, int, float],
        currency: str,
        source_currency: str,
        bank_details: Union[BankDetails, dict]
    ) -> Settlement:
        """
        Create a PENDING settlement for a confirmed payment.

        The exchange rate is quoted before anything is written, so a partner
        failure leaves no record behind.

        Raises:
            DuplicatePaymentReference: the payment already has a settlement
            GatewayError: the rate quote failed
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"Settlement amount must be positive, got {amount}")
        if amount.quantize(AMOUNT_QUANTUM) != amount:
            raise ValueError(f"Settlement amount supports at most 4 decimal places, got {amount}")
        if isinstance(bank_details, dict):
            bank_details = BankDetails(**bank_details)

        exchange_rate = await self._call_gateway(
            "get_exchange_rate",
            self.gateway.get_exchange_rate(source_currency, currency)
        )

        fee_amount = amount * self.fee_percentage
        net_amount = amount - fee_amount

        settlement = await self.repository.create({
            "payment_request_id": payment_request_id,
            "merchant_id": merchant_id,
            "amount": amount,
            "currency": currency,
            "source_currency": source_currency,
            "exchange_rate": exchange_rate,
            "fee_amount": fee_amount,
            "fee_percentage": self.fee_percentage,
            "net_amount": net_amount,
            "bank_account_number": bank_details.account_number,
            "bank_routing_number": bank_details.routing_number,
            "bank_swift_code": bank_details.swift_code,
            "bank_iban": bank_details.iban,
            "bank_account_holder_name": bank_details.name,
            "bank_name": bank_details.bank_name,
            "status": SettlementStatus.PENDING,
            "provider": SettlementProvider.BANK_API,
            "max_retries": self.max_retries,
        })

        log.info(f"Settlement created: {settlement.id}, amount={amount} {currency}, fee={fee_amount}, net={net_amount}")
        return settlement

    async def handle_payment_confirmed(self, event: PaymentConfirmedEvent) -> Optional[Settlement]:
        """payment.confirmed subscriber; redelivered events are ignored"""
        try:
            return await self.create_settlement(
                payment_request_id=event.payment_request_id,
                merchant_id=event.merchant_id,
                amount=event.amount,
                currency=event.currency,
                source_currency=event.source_currency,
                bank_details=event.bank_details
            )
        except DuplicatePaymentReference:
            log.info(f"Payment {event.payment_request_id} already has a settlement, ignoring redelivery")
            return None

    # ==================== BATCH PROCESSING ====================

    async def process_batch(self) -> BatchResult:
        """
        Scheduled entry point: claim the oldest PENDING settlements and settle them.

        Store errors while reading or claiming abort the whole pass; errors on
        individual settlements only affect that settlement.
        """
        async with self._batch_lock:
            log.info("Starting settlement batch processing...")

            pending = await self.repository.find_pending(self.batch_size)
            if not pending:
                log.info("No pending settlements found.")
                return BatchResult()

            log.info(f"Found {len(pending)} pending settlements.")
            batch_id = str(uuid.uuid4())
            claimed = await self.repository.claim_batch_records([s.id for s in pending], batch_id)
            return await self._run_batch(batch_id, len(pending), claimed)

    async def create_batch(self, merchant_id: str, settlement_ids: Sequence[str]) -> BatchResult:
        """
        Manually settle specific PENDING settlements of one merchant now.

        Raises:
            NotFound: an id does not exist
            SettlementOwnershipError: an id belongs to another merchant
            InvalidStatusTransition: a settlement is not PENDING
        """
        settlement_ids = list(dict.fromkeys(settlement_ids))
        settlements = await self.repository.find_by_ids(settlement_ids)

        found = {s.id for s in settlements}
        for settlement_id in settlement_ids:
            if settlement_id not in found:
                raise NotFound("Settlement", settlement_id)
        for settlement in settlements:
            if settlement.merchant_id != merchant_id:
                raise SettlementOwnershipError(f"Settlement {settlement.id} does not belong to merchant {merchant_id}")
            if settlement.status != SettlementStatus.PENDING:
                raise InvalidStatusTransition(settlement.id, settlement.status.value, SettlementStatus.PROCESSING.value)

        async with self._batch_lock:
            batch_id = str(uuid.uuid4())
            log.info(f"Manual batch {batch_id} for merchant {merchant_id}: {len(settlement_ids)} settlements")
            claimed = await self.repository.claim_batch_records(settlement_ids, batch_id)
            return await self._run_batch(batch_id, len(settlement_ids), claimed)

    async def _run_batch(self, batch_id: str, requested: int, claimed: List[Settlement]) -> BatchResult:
        result = BatchResult(batch_id=batch_id, requested=requested, claimed=len(claimed))

        for settlement in claimed:
            await self._emit(SettlementEventType.PAYMENT_SETTLING, PaymentSettlingEvent(
                payment_request_id=settlement.payment_request_id,
                merchant_id=settlement.merchant_id,
                settlement_id=settlement.id,
                batch_id=batch_id,
                amount=settlement.amount,
                currency=settlement.currency,
                exchange_rate=settlement.exchange_rate,
                started_at=settlement.processed_at or datetime.utcnow()
            ))

        semaphore = asyncio.Semaphore(self.workers)

        async def settle(settlement: Settlement) -> SettlementStatus:
            async with semaphore:
                return await self.process_one(settlement)

        outcomes = await asyncio.gather(*(settle(s) for s in claimed), return_exceptions=True)

        for settlement, outcome in zip(claimed, outcomes):
            if isinstance(outcome, BaseException):
                # Store failure while recording the outcome; the stale sweep requeues it
                log.error(f"Settlement {settlement.id} left in PROCESSING: {outcome!r}")
            elif outcome == SettlementStatus.COMPLETED:
                result.completed += 1
            elif outcome == SettlementStatus.PENDING:
                result.requeued += 1
            elif outcome == SettlementStatus.FAILED:
                result.failed += 1

        log.info(
            f"Batch processing completed: batch={batch_id}, claimed={result.claimed}, "
            f"completed={result.completed}, requeued={result.requeued}, failed={result.failed}"
        )
        return result

    async def process_one(self, settlement: Settlement) -> SettlementStatus:
        """
        Convert and pay out one claimed settlement, then record the outcome.

        Any conversion or transfer failure goes through the retry policy.
        Returns the status the settlement ended in.
        """
        reference = transfer_reference(settlement.id)
        try:
            conversion = await self._call_gateway(
                "convert_to_fiat",
                self.gateway.convert_to_fiat(
                    settlement.net_amount,
                    settlement.source_currency or settlement.currency,
                    settlement.currency
                )
            )
            transfer = await self._call_gateway(
                "initiate_bank_transfer",
                self.gateway.initiate_bank_transfer(
                    settlement.net_amount,
                    settlement.currency,
                    self._recipient(settlement),
                    reference
                )
            )
        except Exception as e:
            log.error(f"Error processing settlement {settlement.id}: {e!r}")
            return await self._handle_failure(settlement, e)

        completed = await self.repository.update_status(
            settlement.id,
            SettlementStatus.COMPLETED,
            exchange_rate=conversion.exchange_rate,
            settlement_reference=transfer.transfer_id,
            provider_reference=transfer.transfer_id,
            settlement_receipt=f"RCPT-{transfer.transfer_id}",
            extra_metadata={
                "conversion_id": conversion.conversion_id,
                "converted_amount": str(conversion.target_amount),
                "conversion_fee": str(conversion.fee),
                "transfer_reference": reference,
                "transfer_status": transfer.status.value,
            }
        )
        log.info(f"Settlement {settlement.id} completed successfully.")

        await self._emit(SettlementEventType.PAYMENT_SETTLED, PaymentSettledEvent(
            payment_request_id=completed.payment_request_id,
            merchant_id=completed.merchant_id,
            settlement_id=completed.id,
            amount=completed.amount,
            net_amount=completed.net_amount,
            currency=completed.currency,
            settled_at=completed.settled_at,
            settlement_reference=completed.settlement_reference
        ))
        return SettlementStatus.COMPLETED

    async def _handle_failure(self, settlement: Settlement, error: Exception) -> SettlementStatus:
        """Count the attempt; back to PENDING while retries remain, FAILED after"""
        reason = str(error) or error.__class__.__name__
        transient = getattr(error, "retryable", False)

        updated = await self.repository.record_failure(
            settlement.id,
            reason,
            extra_metadata={"last_error_type": error.__class__.__name__, "last_error_transient": transient}
        )
        status = updated.status

        log.warning(
            f"Settlement {settlement.id} failed (Attempt {updated.retry_count}/{updated.max_retries}). "
            f"Reason: {reason}. New Status: {status.value}"
        )

        await self._emit(SettlementEventType.PAYMENT_FAILED, PaymentFailedEvent(
            payment_request_id=updated.payment_request_id,
            merchant_id=updated.merchant_id,
            settlement_id=updated.id,
            reason=reason,
            failed_at=updated.updated_at,
            retry_count=updated.retry_count,
            retryable=status == SettlementStatus.PENDING,
            metadata={"error_type": error.__class__.__name__, "transient": transient}
        ))
        return status

    async def reconcile_stale(self) -> int:
        """
        Requeue settlements left in PROCESSING by a crashed pass.

        Any whose retry budget is already spent are closed as FAILED instead.
        Runs under the batch lock, so settlements this process is working on
        are never touched.
        """
        async with self._batch_lock:
            cutoff = datetime.utcnow() - self.stale_after
            return await self.repository.requeue_stale(cutoff)

    # ==================== READ QUERIES ====================

    async def get_settlement(self, settlement_id: str, merchant_id: Optional[str] = None) -> Settlement:
        settlement = await self.repository.get(settlement_id)
        if merchant_id is not None and settlement.merchant_id != merchant_id:
            raise NotFound("Settlement", settlement_id)
        return settlement

    async def list_settlements(
        self,
        merchant_id: str,
        status: Optional[SettlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Settlement], int]:
        return await self.repository.list_by_merchant(
            merchant_id, status=status, from_date=from_date, to_date=to_date, limit=limit, offset=offset
        )

    async def list_by_status(self, status: SettlementStatus, limit: int = 100) -> List[Settlement]:
        return await self.repository.list_by_status(status, limit=limit)

    async def get_statistics(self, merchant_id: str) -> SettlementStats:
        return await self.repository.get_stats(merchant_id)

    async def generate_receipt(self, settlement_id: str, merchant_id: str) -> SettlementReceipt:
        settlement = await self.get_settlement(settlement_id, merchant_id)
        if settlement.status != SettlementStatus.COMPLETED:
            raise ReceiptNotAvailable(f"Receipt not available for {settlement.status.value} settlement {settlement_id}")
        return SettlementReceipt(
            receipt_id=settlement.settlement_receipt,
            settlement_id=settlement.id,
            merchant_id=settlement.merchant_id,
            amount=settlement.amount,
            net_amount=settlement.net_amount,
            currency=settlement.currency,
            settlement_reference=settlement.settlement_reference,
            settled_at=settlement.settled_at,
            status=settlement.status
        )

    async def get_transfer_status(self, settlement_id: str) -> TransferStatusResult:
        """Poll the partner for the payout behind a settlement"""
        settlement = await self.repository.get(settlement_id)
        if not settlement.provider_reference:
            raise NotFound("Transfer", f"for settlement {settlement_id}")
        return await self._call_gateway(
            "get_settlement_status",
            self.gateway.get_settlement_status(settlement.provider_reference)
        )

    # ==================== HELPERS ====================

    async def _call_gateway(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(f"Partner {operation} timed out after {self.call_timeout_seconds}s") from e

    @staticmethod
    def _recipient(settlement: Settlement) -> BankRecipient:
        return BankRecipient(
            account_number=settlement.bank_account_number,
            routing_number=settlement.bank_routing_number,
            swift_code=settlement.bank_swift_code,
            iban=settlement.bank_iban,
            account_holder_name=settlement.bank_account_holder_name,
            bank_name=settlement.bank_name
        )

    async def _emit(self, event_type: SettlementEventType, payload) -> None:
        if self.events is not None:
            await self.events.publish(event_type, payload)
