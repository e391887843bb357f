"""Unit tests for TrustBackfillService with mocked repositories."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.tl_common.errors import BackfillInProgressError
from src.tl_trust.application.backfill import TrustBackfillService

T0 = datetime(2026, 10, 19, 3, 0, tzinfo=UTC)


class _SessionFactory:
    def __call__(self) -> "_SessionFactory":
        return self

    async def __aenter__(self) -> MagicMock:
        return MagicMock()

    async def __aexit__(self, *exc: Any) -> None:
        return None


def _make_backfill(**overrides: Any) -> tuple[TrustBackfillService, dict[str, Any]]:
    deps: dict[str, Any] = {
        "properties": AsyncMock(),
        "sale_payments": AsyncMock(),
        "accounts": AsyncMock(),
        "transactions": AsyncMock(),
        "states": AsyncMock(),
        "leases": AsyncMock(),
        "audit": AsyncMock(),
    }
    deps.update(overrides)
    deps["properties"].list_properties.return_value = []
    deps["states"].get.return_value = None
    deps["leases"].try_acquire.return_value = True
    deps["leases"].extend.return_value = True
    backfill = TrustBackfillService(
        AsyncMock(),
        _SessionFactory(),  # type: ignore[arg-type]
        clock=lambda: T0,
        **deps,
    )
    return backfill, deps


class TestBackfillService:
    async def test_limit_is_clamped_to_batch_maximum(self) -> None:
        backfill, deps = _make_backfill()

        await backfill.run(dry_run=True, limit=500)

        assert deps["properties"].list_properties.await_args.args[1:] == (None, 50)

    async def test_held_lease_raises_without_touching_state(self) -> None:
        backfill, deps = _make_backfill()
        deps["leases"].try_acquire.return_value = False

        with pytest.raises(BackfillInProgressError):
            await backfill.run()
        deps["states"].save.assert_not_awaited()
        deps["leases"].release.assert_not_awaited()

    async def test_store_failure_marks_state_failed_and_releases_lease(self) -> None:
        backfill, deps = _make_backfill()
        deps["properties"].list_properties.side_effect = OperationalError(
            "SELECT", {}, Exception("connection lost")
        )

        with pytest.raises(OperationalError):
            await backfill.run()

        final = deps["states"].save.await_args.args[1]
        assert final.status == "failed"
        assert "OperationalError" in final.error
        deps["leases"].release.assert_awaited_once()

    async def test_completed_state_restarts_from_the_beginning(self) -> None:
        backfill, deps = _make_backfill()
        previous = MagicMock(status="completed", processed_count=40, last_processed_id="prop-9")
        deps["states"].get.return_value = previous

        await backfill.run()

        assert deps["properties"].list_properties.await_args.args[1] is None
        final = deps["states"].save.await_args.args[1]
        assert (final.status, final.processed_count) == ("completed", 0)

    async def test_dry_run_takes_no_lease(self) -> None:
        backfill, deps = _make_backfill()

        result = await backfill.run(dry_run=True)

        assert result.dry_run
        deps["leases"].try_acquire.assert_not_awaited()
        deps["states"].save.assert_not_awaited()
