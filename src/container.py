"""Process-wide wiring: one instance of each collaborator, stored on app.state."""

from dataclasses import dataclass

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.tl_common.event_bus import EventBus
from src.tl_common.locks import build_lock_provider
from src.tl_common.scheduler import CronJobTrigger, IntervalJobTrigger, JobScheduler
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_reconciliation.application.job import TrustReconciliationJob
from src.tl_trust.application.backfill import TrustBackfillService
from src.tl_trust.application.events import TrustPaymentListener
from src.tl_trust.application.retry import TrustEventRetryWorker
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.tax import TaxRates
from src.tl_trust.infrastructure.upstream import SqlPropertyDirectory, SqlSalePaymentSource


@dataclass
class Container:
    bus: EventBus
    trust_service: TrustAccountService
    payment_listener: TrustPaymentListener
    reconciliation_job: TrustReconciliationJob
    reconciliation_scheduler: JobScheduler
    event_retry_worker: TrustEventRetryWorker
    event_retry_scheduler: JobScheduler
    backfill_service: TrustBackfillService

    def bind(self, app: FastAPI) -> None:
        app.state.event_bus = self.bus
        app.state.trust_service = self.trust_service
        app.state.payment_listener = self.payment_listener
        app.state.reconciliation_job = self.reconciliation_job
        app.state.reconciliation_scheduler = self.reconciliation_scheduler
        app.state.event_retry_worker = self.event_retry_worker
        app.state.event_retry_scheduler = self.event_retry_scheduler
        app.state.backfill_service = self.backfill_service


def build_container(session_factory: async_sessionmaker[AsyncSession]) -> Container:
    # one UnitOfWork so a NotSupportedError fallback applies process-wide
    unit_of_work = UnitOfWork(settings.STORE_TRANSACTIONS)
    sale_payments = SqlSalePaymentSource()
    properties = SqlPropertyDirectory()
    bus = EventBus()

    service = TrustAccountService(
        properties=properties,
        sale_payments=sale_payments,
        unit_of_work=unit_of_work,
        locks=build_lock_provider(
            settings.ACCOUNT_LOCK_BACKEND,
            settings.ACCOUNT_LOCK_TTL_SECONDS,
            settings.ACCOUNT_LOCK_WAIT_SECONDS,
        ),
        tax_rates=TaxRates.from_settings(settings),
    )
    listener = TrustPaymentListener(service, session_factory, sale_payments)
    job = TrustReconciliationJob(
        service,
        session_factory,
        bus,
        sale_payments=sale_payments,
        unit_of_work=unit_of_work,
    )
    retry_worker = TrustEventRetryWorker(listener, session_factory)
    return Container(
        bus=bus,
        trust_service=service,
        payment_listener=listener,
        reconciliation_job=job,
        reconciliation_scheduler=JobScheduler(
            job, CronJobTrigger(settings.RECONCILIATION_CRON), name="trust-reconciliation"
        ),
        event_retry_worker=retry_worker,
        event_retry_scheduler=JobScheduler(
            retry_worker,
            IntervalJobTrigger(settings.EVENT_RETRY_INTERVAL_SECONDS),
            name="trust-event-retry",
        ),
        backfill_service=TrustBackfillService(
            service, session_factory, properties=properties, sale_payments=sale_payments
        ),
    )
