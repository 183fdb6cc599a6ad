"""
Partner Liquidity Gateway
Stablecoin-to-fiat conversion and bank payouts through the liquidity partner

One interface, two implementations:
- HttpPartnerGateway: production adapter for the partner REST API (aiohttp)
- SimulatedPartnerGateway: deterministic adapter for local runs and tests

Callers never branch on which one is active; build_partner_gateway() picks it
from configuration.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from exceptions import (
    ConversionFailed,
    TransferRejected,
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    NotFound,
)

log = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.0001")


class TransferStatus(str, Enum):
    """Partner-side bank transfer states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BankRecipient(BaseModel):
    account_number: str
    account_holder_name: str
    bank_name: str
    routing_number: Optional[str] = None
    swift_code: Optional[str] = None
    iban: Optional[str] = None


class ConversionResult(BaseModel):
    conversion_id: str
    source_amount: Decimal
    target_amount: Decimal
    exchange_rate: Decimal
    fee: Decimal
    timestamp: datetime


class BankTransferResult(BaseModel):
    transfer_id: str
    status: TransferStatus = TransferStatus.PENDING
    reference: str
    estimated_completion_time: Optional[datetime] = None


class TransferStatusResult(BaseModel):
    transfer_id: str
    status: TransferStatus
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    bank_reference: Optional[str] = None


class PartnerLiquidityGateway(ABC):
    """Capabilities the settlement engine needs from the liquidity partner"""

    @abstractmethod
    async def convert_to_fiat(
        self,
        source_amount: Decimal,
        source_currency: str,
        target_currency: str
    ) -> ConversionResult:
        """Convert stablecoin into fiat. Raises ConversionFailed on rejection."""

    @abstractmethod
    async def initiate_bank_transfer(
        self,
        amount: Decimal,
        currency: str,
        recipient: BankRecipient,
        reference: str
    ) -> BankTransferResult:
        """
        Submit a payout. The partner deduplicates on reference, so resubmitting
        the same reference never pays twice. Raises TransferRejected.
        """

    @abstractmethod
    async def get_settlement_status(self, transfer_id: str) -> TransferStatusResult:
        """Current partner-side state of a transfer. Safe to call repeatedly."""

    @abstractmethod
    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Spot rate lookup"""

    async def close(self) -> None:
        return None


# ==================== SIMULATED ADAPTER ====================

# Spot rates as quoted by the partner sandbox
DEFAULT_RATES: Dict[Tuple[str, str], Decimal] = {
    ("USDC", "USD"): Decimal("1.0"),
    ("USDC", "EUR"): Decimal("0.92"),
    ("USDC", "GBP"): Decimal("0.79"),
    ("USDC", "NGN"): Decimal("1530.0"),
    ("BTC", "USD"): Decimal("50000.0"),
    ("ETH", "USD"): Decimal("3000.0"),
}

SIMULATED_CONVERSION_FEE = Decimal("0.005")  # 0.5% partner conversion fee
PENDING_WINDOW = timedelta(minutes=1)
PROCESSING_WINDOW = timedelta(minutes=2)


class SimulatedTransferStore:
    """
    Process-scoped state for the simulated adapter.

    Holds initiated transfers and the scripted outcomes used by tests. Each
    gateway instance receives its own store, so nothing leaks between runs.
    """

    def __init__(self):
        self.transfers: Dict[str, dict] = {}
        self.by_reference: Dict[str, str] = {}
        self._scripted: Deque[Optional[Exception]] = deque()
        self._scripted_by_reference: Dict[str, Deque[Optional[Exception]]] = {}

    def script_transfer_outcomes(self, *outcomes: Optional[Exception], reference: Optional[str] = None) -> None:
        """
        Queue outcomes for upcoming initiate_bank_transfer calls.

        Each entry is an exception to raise or None for success. With a
        reference the queue only applies to that transfer reference.
        """
        if reference is None:
            self._scripted.extend(outcomes)
        else:
            self._scripted_by_reference.setdefault(reference, deque()).extend(outcomes)

    def next_outcome(self, reference: str) -> Optional[Exception]:
        queue = self._scripted_by_reference.get(reference)
        if queue:
            return queue.popleft()
        if self._scripted:
            return self._scripted.popleft()
        return None

    def mark_failed(self, transfer_id: str, reason: str) -> None:
        if transfer_id not in self.transfers:
            raise NotFound("Transfer", transfer_id)
        self.transfers[transfer_id]["failure_reason"] = reason

    def clear(self) -> None:
        self.transfers.clear()
        self.by_reference.clear()
        self._scripted.clear()
        self._scripted_by_reference.clear()


class SimulatedPartnerGateway(PartnerLiquidityGateway):
    """Deterministic partner: lookup-table rates, fixed fee, scripted failures"""

    def __init__(
        self,
        transfer_store: Optional[SimulatedTransferStore] = None,
        rates: Optional[Dict[Tuple[str, str], Decimal]] = None,
        conversion_fee_percentage: Decimal = SIMULATED_CONVERSION_FEE,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.transfer_store = transfer_store or SimulatedTransferStore()
        self.rates = dict(DEFAULT_RATES if rates is None else rates)
        self.conversion_fee_percentage = conversion_fee_percentage
        self._clock = clock

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")
        if (from_currency, to_currency) in self.rates:
            return self.rates[(from_currency, to_currency)]
        if (to_currency, from_currency) in self.rates:
            return Decimal("1") / self.rates[(to_currency, from_currency)]
        raise ConversionFailed(f"No rate available for {from_currency}/{to_currency}")

    async def convert_to_fiat(
        self,
        source_amount: Decimal,
        source_currency: str,
        target_currency: str
    ) -> ConversionResult:
        if source_amount <= 0:
            raise ConversionFailed(f"Conversion amount must be positive, got {source_amount}")

        rate = await self.get_exchange_rate(source_currency, target_currency)
        fee = (source_amount * self.conversion_fee_percentage).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
        target_amount = ((source_amount - fee) * rate).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)

        result = ConversionResult(
            conversion_id=f"conv_{uuid.uuid4().hex[:16]}",
            source_amount=source_amount,
            target_amount=target_amount,
            exchange_rate=rate,
            fee=fee,
            timestamp=self._clock()
        )
        log.info(f"Simulated conversion {result.conversion_id}: {source_amount} {source_currency} -> {target_amount} {target_currency}")
        return result

    async def initiate_bank_transfer(
        self,
        amount: Decimal,
        currency: str,
        recipient: BankRecipient,
        reference: str
    ) -> BankTransferResult:
        store = self.transfer_store

        existing_id = store.by_reference.get(reference)
        if existing_id is not None:
            log.info(f"Simulated transfer for reference {reference} already exists: {existing_id}")
            existing = store.transfers[existing_id]
            return BankTransferResult(
                transfer_id=existing_id,
                status=self._progress(existing),
                reference=reference,
                estimated_completion_time=existing["initiated_at"] + PROCESSING_WINDOW
            )

        outcome = store.next_outcome(reference)
        if outcome is not None:
            log.warning(f"Simulated transfer for reference {reference} rejected: {outcome}")
            raise outcome

        now = self._clock()
        transfer_id = f"trf_{uuid.uuid4().hex[:16]}"
        store.transfers[transfer_id] = {
            "amount": amount,
            "currency": currency,
            "recipient": recipient.account_holder_name,
            "reference": reference,
            "initiated_at": now,
            "failure_reason": None,
        }
        store.by_reference[reference] = transfer_id

        log.info(f"Simulated bank transfer {transfer_id}: {amount} {currency} to {recipient.account_holder_name}")
        return BankTransferResult(
            transfer_id=transfer_id,
            status=TransferStatus.PENDING,
            reference=reference,
            estimated_completion_time=now + PROCESSING_WINDOW
        )

    async def get_settlement_status(self, transfer_id: str) -> TransferStatusResult:
        transfer = self.transfer_store.transfers.get(transfer_id)
        if transfer is None:
            raise NotFound("Transfer", transfer_id)

        status = self._progress(transfer)
        if status == TransferStatus.FAILED:
            return TransferStatusResult(
                transfer_id=transfer_id,
                status=status,
                failure_reason=transfer["failure_reason"]
            )
        if status == TransferStatus.COMPLETED:
            return TransferStatusResult(
                transfer_id=transfer_id,
                status=status,
                completed_at=transfer["initiated_at"] + PROCESSING_WINDOW,
                bank_reference=f"BANK_REF_{transfer_id}"
            )
        return TransferStatusResult(transfer_id=transfer_id, status=status)

    def _progress(self, transfer: dict) -> TransferStatus:
        if transfer["failure_reason"]:
            return TransferStatus.FAILED
        elapsed = self._clock() - transfer["initiated_at"]
        if elapsed < PENDING_WINDOW:
            return TransferStatus.PENDING
        if elapsed < PROCESSING_WINDOW:
            return TransferStatus.PROCESSING
        return TransferStatus.COMPLETED


# ==================== PRODUCTION ADAPTER ====================

class HttpPartnerGateway(PartnerLiquidityGateway):
    """Partner REST API client. Holds no per-request state beyond its connection pool."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                }
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        rejection: type = GatewayError,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None
    ) -> dict:
        """
        Call the partner API and return the decoded JSON body.

        Timeouts raise GatewayTimeout, transport errors and 5xx raise
        GatewayUnavailable, other 4xx raise the given rejection type.
        """
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        request_headers = {"X-Request-ID": str(uuid.uuid4())}
        if headers:
            request_headers.update(headers)

        try:
            async with session.request(method, url, json=payload, params=params, headers=request_headers) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError as e:
            log.error(f"Partner API timeout: {method} {path}")
            raise GatewayTimeout(f"Partner API timed out after {self.timeout_seconds}s: {method} {path}") from e
        except aiohttp.ClientError as e:
            log.error(f"Partner API unreachable: {method} {path}: {e}")
            raise GatewayUnavailable(f"Partner API unreachable: {e}") from e

        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {"error": text}
        if not isinstance(body, dict):
            body = {"error": text}
            if status < 400:
                raise GatewayUnavailable(f"Partner API returned a non-object body: {method} {path}")

        if status >= 500:
            raise GatewayUnavailable(f"Partner API error {status}: {body.get('error', text)}")
        if status == 404:
            raise NotFound("Partner resource", path)
        if status >= 400:
            raise rejection(body.get("error") or body.get("message") or f"Partner API returned {status}")
        return body

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        body = await self._request(
            "GET", "/v1/rates",
            rejection=ConversionFailed,
            params={"from": from_currency, "to": to_currency}
        )
        try:
            return Decimal(str(body["rate"]))
        except (KeyError, ArithmeticError) as e:
            raise ConversionFailed(f"Partner returned no usable rate for {from_currency}/{to_currency}") from e

    async def convert_to_fiat(
        self,
        source_amount: Decimal,
        source_currency: str,
        target_currency: str
    ) -> ConversionResult:
        body = await self._request(
            "POST", "/v1/conversions",
            rejection=ConversionFailed,
            payload={
                "source_amount": str(source_amount),
                "source_currency": source_currency,
                "target_currency": target_currency,
            }
        )
        if not body.get("conversion_id"):
            raise ConversionFailed(body.get("error") or "Partner response missing conversion_id")

        try:
            result = ConversionResult(
                conversion_id=body["conversion_id"],
                source_amount=source_amount,
                target_amount=Decimal(str(body["target_amount"])),
                exchange_rate=Decimal(str(body["exchange_rate"])),
                fee=Decimal(str(body.get("fee", "0"))),
                timestamp=datetime.utcnow()
            )
        except (KeyError, ValueError, ArithmeticError) as e:
            raise ConversionFailed(f"Malformed conversion response from partner: {e!r}") from e
        log.info(f"Conversion {result.conversion_id}: {source_amount} {source_currency} -> {result.target_amount} {target_currency}")
        return result

    async def initiate_bank_transfer(
        self,
        amount: Decimal,
        currency: str,
        recipient: BankRecipient,
        reference: str
    ) -> BankTransferResult:
        body = await self._request(
            "POST", "/v1/transfers",
            rejection=TransferRejected,
            payload={
                "amount": str(amount),
                "currency": currency,
                "recipient": recipient.model_dump(exclude_none=True),
                "reference": reference,
            },
            headers={"Idempotency-Key": reference}
        )
        if not body.get("transfer_id"):
            raise TransferRejected(body.get("error") or "Partner response missing transfer_id")
        if body.get("status") == TransferStatus.FAILED.value:
            raise TransferRejected(body.get("failure_reason") or "Partner marked transfer as failed")

        try:
            result = BankTransferResult(
                transfer_id=body["transfer_id"],
                status=TransferStatus(body.get("status", TransferStatus.PENDING.value)),
                reference=reference,
                estimated_completion_time=body.get("estimated_completion_time")
            )
        except (KeyError, ValueError) as e:
            # The partner may have accepted the payout; the reference keeps a retry idempotent
            raise GatewayUnavailable(f"Malformed transfer response from partner: {e!r}") from e

        log.info(f"Bank transfer initiated: {result.transfer_id} ({amount} {currency}, reference={reference})")
        return result

    async def get_settlement_status(self, transfer_id: str) -> TransferStatusResult:
        body = await self._request("GET", f"/v1/transfers/{transfer_id}")
        try:
            return TransferStatusResult(
                transfer_id=transfer_id,
                status=TransferStatus(body["status"]),
                completed_at=body.get("completed_at"),
                failure_reason=body.get("failure_reason"),
                bank_reference=body.get("bank_reference")
            )
        except (KeyError, ValueError) as e:
            raise GatewayUnavailable(f"Malformed transfer status from partner: {e!r}") from e


def build_partner_gateway(settings, transfer_store: Optional[SimulatedTransferStore] = None) -> PartnerLiquidityGateway:
    """Select the gateway implementation from PARTNER_GATEWAY_MODE"""
    if settings.PARTNER_GATEWAY_MODE == "http":
        log.info(f"Using partner liquidity API at {settings.PARTNER_API_URL}")
        return HttpPartnerGateway(
            base_url=settings.PARTNER_API_URL,
            api_key=settings.PARTNER_API_KEY,
            timeout_seconds=settings.PARTNER_CALL_TIMEOUT_SECONDS
        )
    log.info("Using simulated partner liquidity gateway")
    return SimulatedPartnerGateway(transfer_store=transfer_store or SimulatedTransferStore())
