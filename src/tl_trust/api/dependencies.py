"""FastAPI dependencies for tl_trust — the service instances live on app.state."""

from fastapi import Request

from src.tl_trust.application.backfill import TrustBackfillService
from src.tl_trust.application.retry import TrustEventRetryWorker
from src.tl_trust.application.service import TrustAccountService


def get_trust_service(request: Request) -> TrustAccountService:
    return request.app.state.trust_service


def get_backfill_service(request: Request) -> TrustBackfillService:
    return request.app.state.backfill_service


def get_event_retry_worker(request: Request) -> TrustEventRetryWorker:
    return request.app.state.event_retry_worker
