"""Shared test fixtures.

Integration-style tests run against a temp-file SQLite database: the ORM
tables come from Base.metadata, the upstream `properties` / `payments`
tables (owned by other systems in production) from raw DDL.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import src.tl_audit.infrastructure.db_models  # noqa: F401  -- register tables
import src.tl_reconciliation.infrastructure.db_models  # noqa: F401
import src.tl_trust.infrastructure.db_models  # noqa: F401
from src.tl_common.database import Base, build_engine, build_session_factory
from src.tl_common.locks import LocalLockProvider
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.tax import TaxRates

_UPSTREAM_DDL = (
    """
    CREATE TABLE properties (
        id          VARCHAR(64) PRIMARY KEY,
        company_id  VARCHAR(64) NOT NULL,
        price       BIGINT
    )
    """,
    """
    CREATE TABLE payments (
        id                  VARCHAR(64) PRIMARY KEY,
        company_id          VARCHAR(64) NOT NULL,
        property_id         VARCHAR(64) NOT NULL,
        payer_id            VARCHAR(64),
        payment_type        VARCHAR(20) NOT NULL,
        status              VARCHAR(20) NOT NULL,
        is_provisional      BOOLEAN DEFAULT FALSE,
        is_in_suspense      BOOLEAN DEFAULT FALSE,
        amount              BIGINT NOT NULL,
        commission_amount   BIGINT DEFAULT 0,
        vat_on_commission   BIGINT DEFAULT 0,
        vat_on_sale         BIGINT DEFAULT 0,
        reference_number    VARCHAR(100),
        payment_date        DATETIME
    )
    """,
)


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'trust.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for ddl in _UPSTREAM_DDL:
            await conn.execute(text(ddl))
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def unit_of_work() -> UnitOfWork:
    return UnitOfWork("auto")


@pytest.fixture
def service(unit_of_work: UnitOfWork) -> TrustAccountService:
    return TrustAccountService(
        unit_of_work=unit_of_work,
        locks=LocalLockProvider(),
        tax_rates=TaxRates(),
    )
