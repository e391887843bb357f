"""payment.confirmed / payment.reversed consumers wired to a real bus and store."""

from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.tl_common.datetime_utils import utc_now
from src.tl_common.errors import SalePaymentNotFoundError
from src.tl_common.event_bus import PAYMENT_CONFIRMED, PAYMENT_REVERSED, EventBus
from src.tl_trust.application.events import TrustPaymentListener, reversal_posting_key
from src.tl_trust.application.retry import TrustEventRetryWorker
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.infrastructure.job_state import EventFailureRepository
from src.tl_trust.infrastructure.upstream import SqlSalePaymentSource
from tests.support import COMPANY, seed_property, seed_sale_payment


@pytest.fixture
def bus(
    service: TrustAccountService, session_factory: async_sessionmaker[AsyncSession]
) -> EventBus:
    bus = EventBus()
    TrustPaymentListener(service, session_factory, SqlSalePaymentSource()).register(bus)
    return bus


def _confirmed(payment_id: str, amount: int, property_id: str = "prop-1") -> dict[str, object]:
    return {
        "payment_id": payment_id,
        "company_id": COMPANY,
        "property_id": property_id,
        "amount": amount,
        "payer_id": "buyer-1",
        "reference": f"REF-{payment_id}",
    }


class TestPaymentConfirmed:
    async def test_credits_trust_account(
        self, db: AsyncSession, bus: EventBus, service: TrustAccountService
    ) -> None:
        await seed_property(db, "prop-1", 5_000_000)

        handled = await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 1_200_000))

        assert handled == 1
        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 1_200_000
        assert account.buyer_id == "buyer-1"
        assert account.amount_outstanding == 3_800_000

    async def test_redelivery_posts_once(
        self, db: AsyncSession, bus: EventBus, service: TrustAccountService
    ) -> None:
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 1_200_000))
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 1_200_000))

        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 1_200_000
        assert (await service.get_ledger(db, COMPANY, account.id)).total == 1

    async def test_invalid_payload_propagates(self, bus: EventBus) -> None:
        with pytest.raises(ValidationError):
            await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 0))


class TestPaymentReversed:
    async def test_reversal_amount_from_reversal_payment(
        self, db: AsyncSession, bus: EventBus, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 1_000_000)
        await seed_sale_payment(db, "rev-1", "prop-1", 300_000, payment_type="refund")
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("sale-1", 1_000_000))

        await bus.publish(PAYMENT_REVERSED, {
            "payment_id": "sale-1",
            "company_id": COMPANY,
            "reversal_payment_id": "rev-1",
            "reason": "buyer withdrew",
        })

        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 700_000
        ledger = await service.get_ledger(db, COMPANY, account.id)
        latest = ledger.items[0]
        assert latest.debit == 300_000
        assert latest.payment_id == "rev-1"
        assert latest.reference == "reversal:sale-1:buyer withdrew"

    async def test_reversal_defaults_to_original_amount(
        self, db: AsyncSession, bus: EventBus, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 1_000_000)
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("sale-1", 1_000_000))

        await bus.publish(PAYMENT_REVERSED, {"payment_id": "sale-1", "company_id": COMPANY})

        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 0

    async def test_non_sale_payment_ignored(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_sale_payment(db, "rent-1", "prop-1", 90_000, payment_type="rent")
        listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())

        result = await listener.on_payment_reversed(
            {"payment_id": "rent-1", "company_id": COMPANY}
        )

        assert result is None

    async def test_unknown_original_raises(self, bus: EventBus) -> None:
        with pytest.raises(SalePaymentNotFoundError):
            await bus.publish(PAYMENT_REVERSED, {"payment_id": "missing", "company_id": COMPANY})

    async def test_redelivered_reversal_without_own_id_debits_once(
        self, db: AsyncSession, bus: EventBus, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "pay-1", "prop-1", 30_000)
        await seed_sale_payment(db, "pay-2", "prop-1", 30_000)
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 30_000))
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-2", 30_000))
        reversal = {"payment_id": "pay-1", "company_id": COMPANY}

        await bus.publish(PAYMENT_REVERSED, reversal)
        await bus.publish(PAYMENT_REVERSED, reversal)

        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 30_000
        ledger = await service.get_ledger(db, COMPANY, account.id)
        assert ledger.total == 3
        assert ledger.items[0].payment_id == reversal_posting_key("pay-1")


class TestFailedEventQueue:
    async def test_failed_event_is_queued_and_error_propagates(
        self, db: AsyncSession, bus: EventBus
    ) -> None:
        with pytest.raises(SalePaymentNotFoundError):
            await bus.publish(PAYMENT_REVERSED, {"payment_id": "missing", "company_id": COMPANY})

        queued = await EventFailureRepository().list_for_company(db, COMPANY, "pending", 10)
        assert len(queued) == 1
        assert queued[0].event_id == "payment.reversed:missing"
        assert queued[0].attempts == 1
        assert "SalePaymentNotFoundError" in queued[0].error_message
        assert queued[0].next_retry_at > utc_now()

    async def test_second_failure_of_same_event_keeps_one_row(
        self, db: AsyncSession, bus: EventBus
    ) -> None:
        payload = {"payment_id": "missing", "company_id": COMPANY}
        for _ in range(2):
            with pytest.raises(SalePaymentNotFoundError):
                await bus.publish(PAYMENT_REVERSED, payload)

        queued = await EventFailureRepository().list_for_company(db, COMPANY, None, 10)
        assert len(queued) == 1

    async def test_invalid_payload_is_not_queued(self, db: AsyncSession, bus: EventBus) -> None:
        with pytest.raises(ValidationError):
            await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 0))

        assert await EventFailureRepository().list_for_company(db, COMPANY, None, 10) == []


class TestRetryWorkerFlow:
    async def test_reversal_that_arrived_early_resolves_on_retry(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        bus = EventBus()
        listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())
        listener.register(bus)
        reversal = {"payment_id": "pay-1", "company_id": COMPANY}
        with pytest.raises(SalePaymentNotFoundError):
            await bus.publish(PAYMENT_REVERSED, reversal)

        await seed_sale_payment(db, "pay-1", "prop-1", 30_000)
        await bus.publish(PAYMENT_CONFIRMED, _confirmed("pay-1", 30_000))
        worker = TrustEventRetryWorker(
            listener, session_factory, clock=lambda: utc_now() + timedelta(minutes=5)
        )

        summary = await worker.run()

        assert summary.resolved == 1
        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 0
        rows = await EventFailureRepository().list_for_company(db, COMPANY, "resolved", 10)
        assert [r.event_id for r in rows] == ["payment.reversed:pay-1"]

    async def test_row_not_yet_due_is_left_alone(
        self,
        db: AsyncSession,
        bus: EventBus,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        with pytest.raises(SalePaymentNotFoundError):
            await bus.publish(PAYMENT_REVERSED, {"payment_id": "missing", "company_id": COMPANY})
        listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())

        summary = await TrustEventRetryWorker(listener, session_factory).run()

        assert summary.processed == 0
        queued = await EventFailureRepository().list_for_company(db, COMPANY, "pending", 10)
        assert queued[0].attempts == 1
