"""UnitOfWork — run a multi-step ledger mutation as one unit.

Two strategies:
  transactional  `async with db.begin()`; all steps commit or none do.
  sequential     steps run in order on the session and commit at the end;
                 used when the store rejects transactions.

The first NotSupportedError raised by the store switches this unit of work to
sequential mode for the rest of the process lifetime. Correctness does not
depend on which strategy is active: the payment_id unique index is what makes
replayed postings safe.

Nested calls (an operation composed of other operations) join the unit that is
already running on the session instead of opening a new one.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import NotSupportedError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACTIVE_KEY = "trust_unit_of_work_active"


class UnitOfWork:
    def __init__(self, mode: str = "auto") -> None:
        self._transactional = mode.lower() not in ("off", "sequential", "false", "0")

    @property
    def transactional(self) -> bool:
        return self._transactional

    async def run(self, db: AsyncSession, work: Callable[[], Awaitable[T]]) -> T:
        if db.info.get(_ACTIVE_KEY):
            return await work()

        db.info[_ACTIVE_KEY] = True
        try:
            if self._transactional:
                try:
                    return await self._run_transactional(db, work)
                except NotSupportedError:
                    self._transactional = False
                    logger.warning(
                        "Store does not support transactions; falling back to sequential unit of work"
                    )
            return await self._run_sequential(db, work)
        finally:
            db.info.pop(_ACTIVE_KEY, None)

    async def release(self, db: AsyncSession) -> None:
        """End the read transaction autobegun on the session.

        The session hands its connection back to the pool, so a caller about to
        queue on an account lock does not pin one while it waits. No-op inside a
        running unit.
        """
        if db.in_transaction() and not db.info.get(_ACTIVE_KEY):
            await db.commit()

    async def _run_transactional(
        self, db: AsyncSession, work: Callable[[], Awaitable[T]]
    ) -> T:
        # Close the read-only transaction autobegun by earlier reads on this session
        if db.in_transaction():
            await db.commit()
        async with db.begin():
            return await work()

    async def _run_sequential(
        self, db: AsyncSession, work: Callable[[], Awaitable[T]]
    ) -> T:
        try:
            result = await work()
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return result
