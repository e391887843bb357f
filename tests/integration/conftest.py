"""HTTP-level fixtures.

The FastAPI app is driven through httpx's ASGITransport without running its
lifespan: the DB session dependency and the app.state collaborators are
swapped for instances bound to the per-test SQLite store.
"""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.main import app
from src.tl_common.database import get_db_session
from src.tl_common.event_bus import EventBus
from src.tl_common.scheduler import CronJobTrigger, IntervalJobTrigger, JobScheduler
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_reconciliation.application.job import TrustReconciliationJob
from src.tl_trust.application.backfill import TrustBackfillService
from src.tl_trust.application.events import TrustPaymentListener
from src.tl_trust.application.retry import TrustEventRetryWorker
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.infrastructure.upstream import SqlSalePaymentSource

_STATE_KEYS = (
    "trust_service",
    "reconciliation_job",
    "reconciliation_scheduler",
    "event_retry_worker",
    "event_retry_scheduler",
    "backfill_service",
)


@pytest.fixture
async def client(
    service: TrustAccountService,
    session_factory: async_sessionmaker[AsyncSession],
    unit_of_work: UnitOfWork,
) -> AsyncGenerator[AsyncClient, None]:
    bus = EventBus()
    listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())
    listener.register(bus)
    job = TrustReconciliationJob(service, session_factory, bus, unit_of_work=unit_of_work)

    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    saved = {key: getattr(app.state, key) for key in _STATE_KEYS}
    app.state.trust_service = service
    app.state.reconciliation_job = job
    app.state.reconciliation_scheduler = JobScheduler(job, CronJobTrigger("15 2 * * *"))
    retry_worker = TrustEventRetryWorker(listener, session_factory)
    app.state.event_retry_worker = retry_worker
    app.state.event_retry_scheduler = JobScheduler(retry_worker, IntervalJobTrigger(60))
    app.state.backfill_service = TrustBackfillService(service, session_factory)
    app.dependency_overrides[get_db_session] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Company-Id": "company-1", "X-User-Id": "accountant-1"},
    ) as ac:
        yield ac

    app.dependency_overrides.pop(get_db_session, None)
    for key, value in saved.items():
        setattr(app.state, key, value)
