"""TrustEventRetryWorker — replays payment events whose handler failed.

Each pass takes up to `batch_size` pending rows whose next_retry_at has come,
oldest first, and hands each payload back to the listener's handlers. A
success marks the row resolved; a failure bumps attempts and reschedules with
exponential backoff until `max_attempts`, when the row is marked dead and left
for an operator.

Two workers picking the same row is harmless: both handlers are idempotent on
the payment id.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.tl_common.datetime_utils import utc_now
from src.tl_common.enums import EventFailureStatus
from src.tl_trust.application.events import TrustPaymentListener, retry_backoff
from src.tl_trust.domain.models import EventFailure
from src.tl_trust.domain.repository import EventFailureRepositoryProtocol
from src.tl_trust.infrastructure.job_state import EventFailureRepository

logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    resolved: int = 0
    rescheduled: int = 0
    dead: int = 0

    @property
    def processed(self) -> int:
        return self.resolved + self.rescheduled + self.dead


class TrustEventRetryWorker:
    def __init__(
        self,
        listener: TrustPaymentListener,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        failures: EventFailureRepositoryProtocol | None = None,
        max_attempts: int = settings.EVENT_RETRY_MAX_ATTEMPTS,
        batch_size: int = settings.EVENT_RETRY_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._listener = listener
        self._session_factory = session_factory
        self._failures: EventFailureRepositoryProtocol = failures or EventFailureRepository()
        self._max_attempts = max(1, max_attempts)
        self._batch_size = max(1, batch_size)
        self._clock = clock

    async def run(self) -> RetrySummary:
        summary = RetrySummary()
        async with self._session_factory() as db:
            due = await self._failures.find_due(db, self._clock(), self._batch_size)

        for failure in due:
            await self._retry(failure, summary)

        if summary.processed:
            logger.info(
                "Event retry pass: resolved=%d rescheduled=%d dead=%d",
                summary.resolved,
                summary.rescheduled,
                summary.dead,
            )
        return summary

    async def list_failures(
        self, db: AsyncSession, company_id: str, status: str | None = None, limit: int = 100
    ) -> list[EventFailure]:
        return await self._failures.list_for_company(db, company_id, status, limit)

    async def _retry(self, failure: EventFailure, summary: RetrySummary) -> None:
        try:
            await self._listener.dispatch(failure.event_name, failure.payload)
        except Exception as exc:  # every failure is recorded on the row
            self._record_failure(failure, exc, summary)
        else:
            failure.status = EventFailureStatus.RESOLVED.value
            failure.next_retry_at = None
            failure.last_tried_at = self._clock()
            summary.resolved += 1
            logger.info("Queued event resolved: %s", failure.event_id)

        async with self._session_factory() as db:
            await self._failures.save(db, failure)

    def _record_failure(
        self, failure: EventFailure, exc: Exception, summary: RetrySummary
    ) -> None:
        now = self._clock()
        failure.attempts += 1
        failure.error_message = f"{type(exc).__name__}: {exc}"
        failure.last_tried_at = now
        if failure.attempts >= self._max_attempts:
            failure.status = EventFailureStatus.DEAD.value
            failure.next_retry_at = None
            summary.dead += 1
            logger.error(
                "Queued event %s gave up after %d attempts: %s",
                failure.event_id,
                failure.attempts,
                failure.error_message,
            )
            return
        failure.next_retry_at = now + retry_backoff(failure.attempts)
        summary.rescheduled += 1
        logger.warning(
            "Queued event %s failed again (attempt %d/%d), next try at %s",
            failure.event_id,
            failure.attempts,
            self._max_attempts,
            failure.next_retry_at.isoformat(),
        )
