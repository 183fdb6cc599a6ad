"""
Settlement Repository
Durable settlement state: create, claim, transition, query

Every operation opens its own AsyncSession, so concurrent workers never
share one. Per-record updates go through the ORM and are guarded by the
version column (optimistic concurrency); batch claims and stale requeues are
single conditional UPDATE statements.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from exceptions import DuplicatePaymentReference, InvalidStatusTransition, NotFound
from models import Settlement, SettlementStatus
from schemas import SettlementStats

log = logging.getLogger(__name__)

# Fixed at creation or only changed through dedicated operations
PROTECTED_FIELDS = {
    "id", "payment_request_id", "merchant_id", "amount", "fee_amount",
    "fee_percentage", "net_amount", "status", "retry_count", "settled_at",
    "created_at", "version",
}


class SettlementRepository:
    """Persistence for settlement records"""

    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    async def create(self, data: Dict) -> Settlement:
        """
        Persist a new PENDING settlement.

        Raises:
            DuplicatePaymentReference: a settlement already exists for the payment,
                whatever its status
        """
        payment_request_id = data["payment_request_id"]
        async with self._sessionmaker() as db:
            existing = await db.execute(
                select(Settlement.id).where(Settlement.payment_request_id == payment_request_id).limit(1)
            )
            if existing.scalar() is not None:
                raise DuplicatePaymentReference(payment_request_id)

            settlement = Settlement(**data)
            db.add(settlement)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                # Lost a race with a concurrent create for the same payment
                if "payment_request_id" in str(e.orig):
                    raise DuplicatePaymentReference(payment_request_id) from e
                raise

            log.info(f"Settlement persisted: {settlement.id} for payment {payment_request_id}")
            return settlement

    async def get(self, settlement_id: str) -> Settlement:
        async with self._sessionmaker() as db:
            settlement = await db.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFound("Settlement", settlement_id)
            return settlement

    async def find_pending(self, limit: int) -> List[Settlement]:
        """Oldest PENDING settlements first, up to limit"""
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(Settlement)
                .where(Settlement.status == SettlementStatus.PENDING)
                .order_by(Settlement.created_at, Settlement.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_by_ids(self, settlement_ids: Sequence[str]) -> List[Settlement]:
        if not settlement_ids:
            return []
        async with self._sessionmaker() as db:
            result = await db.execute(select(Settlement).where(Settlement.id.in_(list(settlement_ids))))
            return list(result.scalars().all())

    def _claim_statement(self, settlement_ids: Sequence[str], batch_id: str):
        now = datetime.utcnow()
        sequence = case(
            {settlement_id: position for position, settlement_id in enumerate(settlement_ids, start=1)},
            value=Settlement.id
        )
        return (
            update(Settlement)
            .where(
                Settlement.id.in_(list(settlement_ids)),
                Settlement.status == SettlementStatus.PENDING
            )
            .values(
                status=SettlementStatus.PROCESSING,
                processed_at=now,
                updated_at=now,
                batch_id=batch_id,
                batch_sequence=sequence,
                version=Settlement.version + 1
            )
            .execution_options(synchronize_session=False)
        )

    async def claim_batch(self, settlement_ids: Sequence[str], batch_id: str) -> int:
        """
        Atomically move PENDING settlements into PROCESSING.

        Returns the number actually claimed; ids that are no longer PENDING
        (claimed elsewhere, or terminal) are skipped.
        """
        if not settlement_ids:
            return 0
        async with self._sessionmaker() as db:
            async with db.begin():
                result = await db.execute(self._claim_statement(settlement_ids, batch_id))
                claimed = result.rowcount
        log.info(f"Batch {batch_id}: claimed {claimed}/{len(settlement_ids)} settlements")
        return claimed

    async def claim_batch_records(self, settlement_ids: Sequence[str], batch_id: str) -> List[Settlement]:
        """Same claim as claim_batch, returning the rows this caller won in batch order"""
        if not settlement_ids:
            return []
        async with self._sessionmaker() as db:
            async with db.begin():
                result = await db.execute(
                    self._claim_statement(settlement_ids, batch_id).returning(Settlement.id)
                )
                claimed_ids = [row[0] for row in result.all()]
                if not claimed_ids:
                    claimed = []
                else:
                    rows = await db.execute(
                        select(Settlement)
                        .where(Settlement.id.in_(claimed_ids))
                        .order_by(Settlement.batch_sequence)
                    )
                    claimed = list(rows.scalars().all())

        if len(claimed) < len(settlement_ids):
            log.warning(f"Batch {batch_id}: partial claim, {len(claimed)}/{len(settlement_ids)} settlements")
        else:
            log.info(f"Batch {batch_id}: claimed {len(claimed)} settlements")
        return claimed

    async def update_status(self, settlement_id: str, status: SettlementStatus, **extra_fields) -> Settlement:
        """
        Apply a lifecycle transition plus provider/receipt/failure fields.

        settled_at is stamped when (and only when) the settlement completes.
        extra_metadata is merged into the existing metadata bag.

        Raises:
            NotFound: unknown settlement id
            InvalidStatusTransition: the lifecycle forbids the move
        """
        protected = PROTECTED_FIELDS.intersection(extra_fields)
        if protected:
            raise ValueError(f"Fields cannot be set through update_status: {sorted(protected)}")

        async with self._sessionmaker() as db:
            settlement = await db.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFound("Settlement", settlement_id)

            status = SettlementStatus(status)
            if not settlement.can_transition_to(status):
                raise InvalidStatusTransition(settlement_id, settlement.status.value, status.value)

            metadata = extra_fields.pop("extra_metadata", None)
            for field, value in extra_fields.items():
                if not hasattr(Settlement, field):
                    raise ValueError(f"Unknown settlement field: {field}")
                setattr(settlement, field, value)
            if metadata:
                settlement.extra_metadata = {**(settlement.extra_metadata or {}), **metadata}

            now = datetime.utcnow()
            settlement.status = status
            settlement.updated_at = now
            if status == SettlementStatus.COMPLETED:
                settlement.settled_at = now

            await db.commit()
            return settlement

    async def increment_retry(self, settlement_id: str) -> Settlement:
        """Bump retry_count by one. Raises NotFound."""
        async with self._sessionmaker() as db:
            settlement = await db.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFound("Settlement", settlement_id)
            settlement.retry_count = settlement.retry_count + 1
            settlement.updated_at = datetime.utcnow()
            await db.commit()
            return settlement

    async def record_failure(self, settlement_id: str, reason: str, extra_metadata: Optional[Dict] = None) -> Settlement:
        """
        Count a failed attempt and leave PROCESSING in one commit.

        Back to PENDING while retry_count < max_retries, FAILED otherwise.
        If the commit fails nothing changes: the attempt is not counted and the
        record stays in PROCESSING for the stale sweep.

        Raises:
            NotFound: unknown settlement id
            InvalidStatusTransition: the settlement is not PROCESSING
        """
        async with self._sessionmaker() as db:
            settlement = await db.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFound("Settlement", settlement_id)

            retry_count = settlement.retry_count + 1
            status = SettlementStatus.PENDING if retry_count < settlement.max_retries else SettlementStatus.FAILED
            if not settlement.can_transition_to(status):
                raise InvalidStatusTransition(settlement_id, settlement.status.value, status.value)

            settlement.retry_count = retry_count
            settlement.status = status
            settlement.failure_reason = reason
            settlement.updated_at = datetime.utcnow()
            if extra_metadata:
                settlement.extra_metadata = {**(settlement.extra_metadata or {}), **extra_metadata}

            await db.commit()
            return settlement

    async def requeue_stale(self, older_than: datetime) -> int:
        """
        Release PROCESSING settlements claimed before older_than.

        Settlements with retries left go back to PENDING; any whose retry
        budget is already spent are closed as FAILED. Returns the number requeued.
        """
        now = datetime.utcnow()
        stale = (
            Settlement.status == SettlementStatus.PROCESSING,
            Settlement.processed_at < older_than,
        )
        async with self._sessionmaker() as db:
            async with db.begin():
                exhausted = await db.execute(
                    update(Settlement)
                    .where(*stale, Settlement.retry_count >= Settlement.max_retries)
                    .values(
                        status=SettlementStatus.FAILED,
                        failure_reason=func.coalesce(Settlement.failure_reason, "Retries exhausted"),
                        updated_at=now,
                        version=Settlement.version + 1
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(
                    update(Settlement)
                    .where(*stale, Settlement.retry_count < Settlement.max_retries)
                    .values(status=SettlementStatus.PENDING, updated_at=now, version=Settlement.version + 1)
                    .execution_options(synchronize_session=False)
                )
                requeued = result.rowcount
        if exhausted.rowcount:
            log.error(f"Closed {exhausted.rowcount} stale settlements with no retries left as FAILED")
        if requeued:
            log.warning(f"Requeued {requeued} settlements stuck in PROCESSING since before {older_than.isoformat()}")
        return requeued

    async def list_by_merchant(
        self,
        merchant_id: str,
        status: Optional[SettlementStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Settlement], int]:
        """Newest first; returns (page, total matching)"""
        conditions = [Settlement.merchant_id == merchant_id]
        if status is not None:
            conditions.append(Settlement.status == status)
        if from_date is not None:
            conditions.append(Settlement.created_at >= from_date)
        if to_date is not None:
            conditions.append(Settlement.created_at <= to_date)

        async with self._sessionmaker() as db:
            total = await db.execute(select(func.count(Settlement.id)).where(*conditions))
            result = await db.execute(
                select(Settlement)
                .where(*conditions)
                .order_by(Settlement.created_at.desc(), Settlement.id)
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total.scalar() or 0

    async def list_by_status(self, status: SettlementStatus, limit: int = 100) -> List[Settlement]:
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(Settlement)
                .where(Settlement.status == status)
                .order_by(Settlement.created_at, Settlement.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_stats(self, merchant_id: str) -> SettlementStats:
        """Counts per status plus total amount and fees for a merchant"""
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(
                    Settlement.status,
                    func.count(Settlement.id),
                    func.coalesce(func.sum(Settlement.amount), 0),
                    func.coalesce(func.sum(Settlement.fee_amount), 0)
                )
                .where(Settlement.merchant_id == merchant_id)
                .group_by(Settlement.status)
            )
            rows = result.all()

        stats = SettlementStats()
        for status, count, amount, fees in rows:
            setattr(stats, SettlementStatus(status).value, count)
            stats.total += count
            stats.total_amount += Decimal(str(amount))
            stats.total_fees += Decimal(str(fees))
        return stats
