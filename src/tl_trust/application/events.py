"""Payment event consumers — bridge the event bus to TrustAccountService.

Each event is handled in its own session. A failed handler is queued in
trust_event_failures for the retry worker and the error still propagates to
the publisher (the payment pipeline, or the reconciliation job re-emitting a
missed event), which records it on its side.

Both events are idempotent: confirmations by payment id, reversals by their
reversal payment id or, when the event carries none, by a key derived from the
reversed payment.
"""

import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.tl_common.datetime_utils import utc_now
from src.tl_common.errors import SalePaymentNotFoundError
from src.tl_common.event_bus import PAYMENT_CONFIRMED, PAYMENT_REVERSED, EventBus
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.models import PostingResult, SalePayment
from src.tl_trust.domain.repository import (
    EventFailureRepositoryProtocol,
    SalePaymentSourceProtocol,
)
from src.tl_trust.infrastructure.job_state import EventFailureRepository

logger = logging.getLogger(__name__)

_SALE_PAYMENT_TYPE = "sale"
_PAYMENT_ID_MAX = 64
_EVENT_ID_MAX = 100
_MAX_BACKOFF_MINUTES = 60


def reversal_posting_key(payment_id: str) -> str:
    """Idempotency key for a reversal that has no payment id of its own."""
    key = f"reversal:{payment_id}"
    if len(key) <= _PAYMENT_ID_MAX:
        return key
    return f"reversal:{hashlib.sha256(payment_id.encode()).hexdigest()[:40]}"


def event_key(event_name: str, payload: dict[str, Any]) -> str:
    """One failure-queue row per event: explicit event_id, else name + payment ids."""
    explicit = payload.get("event_id")
    if explicit:
        return str(explicit)[:_EVENT_ID_MAX]
    parts = [event_name, str(payload.get("payment_id", ""))]
    if payload.get("reversal_payment_id"):
        parts.append(str(payload["reversal_payment_id"]))
    return ":".join(parts)[:_EVENT_ID_MAX]


def retry_backoff(attempts: int) -> timedelta:
    """1, 2, 4, ... minutes after the n-th failed attempt, capped at an hour."""
    return timedelta(minutes=min(_MAX_BACKOFF_MINUTES, 2 ** max(0, attempts - 1)))


class PaymentConfirmedEvent(BaseModel):
    payment_id: str
    company_id: str
    property_id: str
    amount: int = Field(..., gt=0)
    payer_id: str | None = None
    reference: str | None = None
    date: datetime | None = None
    trust_account_id: str | None = None

    @classmethod
    def from_sale_payment(cls, payment: SalePayment) -> "PaymentConfirmedEvent":
        return cls(
            payment_id=payment.payment_id,
            company_id=payment.company_id,
            property_id=payment.property_id,
            amount=payment.amount,
            payer_id=payment.payer_id,
            reference=payment.reference,
            date=payment.payment_date,
        )


class PaymentReversedEvent(BaseModel):
    payment_id: str                       # the original payment being reversed
    company_id: str
    reversal_payment_id: str | None = None
    amount: int | None = None             # defaults to the reversal or original amount
    reason: str | None = None
    performed_by: str | None = None


class TrustPaymentListener:
    def __init__(
        self,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        sale_payments: SalePaymentSourceProtocol,
        failures: EventFailureRepositoryProtocol | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._service = service
        self._session_factory = session_factory
        self._sale_payments = sale_payments
        self._failures: EventFailureRepositoryProtocol = failures or EventFailureRepository()
        self._clock = clock
        self._unsubscribers: list[Callable[[], None]] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[PostingResult | None]]] = {
            PAYMENT_CONFIRMED: self.handle_payment_confirmed,
            PAYMENT_REVERSED: self.handle_payment_reversed,
        }

    def register(self, bus: EventBus) -> None:
        self._unsubscribers = [
            bus.subscribe(PAYMENT_CONFIRMED, self.on_payment_confirmed),
            bus.subscribe(PAYMENT_REVERSED, self.on_payment_reversed),
        ]

    def unregister(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def on_payment_confirmed(self, payload: dict[str, Any]) -> PostingResult | None:
        return await self._handle_or_enqueue(PAYMENT_CONFIRMED, payload)

    async def on_payment_reversed(self, payload: dict[str, Any]) -> PostingResult | None:
        return await self._handle_or_enqueue(PAYMENT_REVERSED, payload)

    async def dispatch(self, event_name: str, payload: dict[str, Any]) -> PostingResult | None:
        """Handle an event without queueing it on failure. Used by the retry worker."""
        handler = self._handlers.get(event_name)
        if handler is None:
            raise ValueError(f"No trust handler for event {event_name!r}")
        return await handler(payload)

    async def _handle_or_enqueue(
        self, event_name: str, payload: dict[str, Any]
    ) -> PostingResult | None:
        try:
            return await self.dispatch(event_name, payload)
        except PayloadValidationError:
            raise
        except Exception as exc:
            await self._enqueue_failure(event_name, payload, exc)
            raise

    async def _enqueue_failure(
        self, event_name: str, payload: dict[str, Any], exc: Exception
    ) -> None:
        now = self._clock()
        try:
            async with self._session_factory() as db:
                await self._failures.enqueue(
                    db,
                    event_id=event_key(event_name, payload),
                    event_name=event_name,
                    company_id=payload.get("company_id"),
                    payload=jsonable_encoder(payload),
                    error_message=f"{type(exc).__name__}: {exc}",
                    now=now,
                    next_retry_at=now + retry_backoff(1),
                )
        except SQLAlchemyError:
            logger.exception("Could not queue failed %s for retry", event_name)
            return
        logger.warning("%s handling failed, queued for retry: %s", event_name, exc)

    async def handle_payment_confirmed(self, payload: dict[str, Any]) -> PostingResult:
        event = PaymentConfirmedEvent.model_validate(payload)
        async with self._session_factory() as db:
            result = await self._service.record_buyer_payment(
                db,
                event.company_id,
                event.property_id,
                event.amount,
                event.payment_id,
                reference=event.reference,
                trust_account_id=event.trust_account_id,
                buyer_id=event.payer_id,
                source_event=PAYMENT_CONFIRMED,
            )
        logger.info(
            "payment.confirmed handled: payment=%s account=%s duplicate=%s",
            event.payment_id,
            result.account.id,
            result.duplicate,
        )
        return result

    async def handle_payment_reversed(self, payload: dict[str, Any]) -> PostingResult | None:
        event = PaymentReversedEvent.model_validate(payload)
        async with self._session_factory() as db:
            original = await self._sale_payments.get_payment(db, event.company_id, event.payment_id)
            if original is None:
                raise SalePaymentNotFoundError(event.payment_id)
            if original.payment_type != _SALE_PAYMENT_TYPE:
                logger.info(
                    "payment.reversed ignored for non-sale payment: payment=%s type=%s",
                    event.payment_id,
                    original.payment_type,
                )
                return None

            amount = event.amount
            if amount is None and event.reversal_payment_id:
                reversal = await self._sale_payments.get_payment(
                    db, event.company_id, event.reversal_payment_id
                )
                if reversal is not None:
                    amount = reversal.amount
            if amount is None:
                amount = original.amount

            reference = f"reversal:{event.payment_id}"
            if event.reason:
                reference = f"{reference}:{event.reason}"

            result = await self._service.reverse_buyer_payment(
                db,
                event.company_id,
                original.property_id,
                amount,
                reversal_payment_id=event.reversal_payment_id
                or reversal_posting_key(event.payment_id),
                reference=reference[:200],
                performed_by=event.performed_by,
            )
        logger.info(
            "payment.reversed handled: payment=%s account=%s amount=%d duplicate=%s",
            event.payment_id,
            result.account.id,
            abs(amount),
            result.duplicate,
        )
        return result
