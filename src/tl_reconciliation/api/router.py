"""tl_reconciliation REST API — on-demand run and latest result."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.database import get_db_session
from src.tl_common.errors import ReconciliationInProgressError
from src.tl_common.response import ApiResponse, respond
from src.tl_common.scheduler import JobScheduler
from src.tl_gateway.api.context import OperatorContext, get_operator_context
from src.tl_reconciliation.application.job import TrustReconciliationJob
from src.tl_reconciliation.application.schemas import (
    ReconciliationResultResponse,
    ReconciliationRunResponse,
)

router = APIRouter(prefix="/trust/reconciliation", tags=["reconciliation"])


def get_reconciliation_job(request: Request) -> TrustReconciliationJob:
    return request.app.state.reconciliation_job


def get_reconciliation_scheduler(request: Request) -> JobScheduler:
    return request.app.state.reconciliation_scheduler


@router.post("/run")
async def run_reconciliation(
    ctx: Annotated[OperatorContext, Depends(get_operator_context)],
    scheduler: Annotated[JobScheduler, Depends(get_reconciliation_scheduler)],
    request: Request,
) -> ApiResponse:
    summary = await scheduler.run_now()
    if summary.skipped:
        raise ReconciliationInProgressError()
    data = ReconciliationRunResponse.from_summary(summary, ctx.company_id).model_dump()
    return respond(request, data)


@router.get("/results/latest")
async def get_latest_result(
    ctx: Annotated[OperatorContext, Depends(get_operator_context)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    job: Annotated[TrustReconciliationJob, Depends(get_reconciliation_job)],
    request: Request,
) -> ApiResponse:
    result = await job.get_latest_result(db, ctx.company_id)
    data = ReconciliationResultResponse.from_domain(result).model_dump() if result else None
    return respond(request, data)
