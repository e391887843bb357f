"""tl_trust REST API — trust accounts, postings, settlement and read models.

All endpoints are tenant-scoped by the X-Company-Id header, except the
backfill, which walks every company's properties.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.database import get_db_session
from src.tl_common.response import ApiResponse, respond
from src.tl_gateway.api.context import OperatorContext, get_operator_context
from src.tl_trust.api.dependencies import (
    get_backfill_service,
    get_event_retry_worker,
    get_trust_service,
)
from src.tl_trust.application.backfill import TrustBackfillService
from src.tl_trust.application.schemas import (
    ApplyTaxRequest,
    AuditEntryResponse,
    BackfillRequest,
    BackfillResultResponse,
    BackfillStateResponse,
    BuyerPaymentRequest,
    CalculateSettlementRequest,
    CloseTrustAccountRequest,
    CreateTrustAccountRequest,
    EventFailureResponse,
    LedgerResponse,
    PostingResponse,
    PostTransactionRequest,
    ReconciliationSnapshotResponse,
    SettlementResponse,
    TaxApplicationResponse,
    TaxSummaryResponse,
    TransferToSellerRequest,
    TrustAccountListResponse,
    TrustAccountResponse,
    WorkflowTransitionRequest,
)
from src.tl_trust.application.retry import TrustEventRetryWorker
from src.tl_trust.application.service import TrustAccountService

router = APIRouter(prefix="/trust", tags=["trust"])

Ctx = Annotated[OperatorContext, Depends(get_operator_context)]
Db = Annotated[AsyncSession, Depends(get_db_session)]
Service = Annotated[TrustAccountService, Depends(get_trust_service)]
Backfill = Annotated[TrustBackfillService, Depends(get_backfill_service)]
RetryWorker = Annotated[TrustEventRetryWorker, Depends(get_event_retry_worker)]


@router.get("/accounts")
async def list_trust_accounts(
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
    status: str | None = Query(None, description="OPEN | SETTLED | CLOSED"),
    search: str | None = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
) -> ApiResponse:
    result = await service.list_trust_accounts(
        db, ctx.company_id, status=status, search=search, page=page, limit=limit
    )
    return respond(request, TrustAccountListResponse.from_page(result).model_dump())


@router.post("/accounts")
async def create_trust_account(
    body: CreateTrustAccountRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    account = await service.create_trust_account(
        db,
        ctx.company_id,
        body.property_id,
        opening_balance=body.opening_balance_cents,
        initial_workflow_state=body.initial_workflow_state.value
        if body.initial_workflow_state
        else None,
        buyer_id=body.buyer_id,
        seller_id=body.seller_id,
        deal_id=body.deal_id,
        performed_by=ctx.user_id,
    )
    return respond(request, TrustAccountResponse.from_domain(account).model_dump())


@router.get("/accounts/{account_id}")
async def get_trust_account(
    account_id: str, ctx: Ctx, db: Db, service: Service, request: Request
) -> ApiResponse:
    account = await service.get_by_id(db, ctx.company_id, account_id)
    return respond(request, TrustAccountResponse.from_domain(account).model_dump())


@router.get("/properties/{property_id}/account")
async def get_trust_account_by_property(
    property_id: str, ctx: Ctx, db: Db, service: Service, request: Request
) -> ApiResponse:
    account = await service.get_by_property(db, ctx.company_id, property_id)
    return respond(request, TrustAccountResponse.from_domain(account).model_dump())


@router.post("/buyer-payments")
async def record_buyer_payment(
    body: BuyerPaymentRequest, ctx: Ctx, db: Db, service: Service, request: Request
) -> ApiResponse:
    result = await service.record_buyer_payment(
        db,
        ctx.company_id,
        body.property_id,
        body.amount_cents,
        body.payment_id,
        reference=body.reference,
        trust_account_id=body.trust_account_id,
        buyer_id=body.buyer_id,
        seller_id=body.seller_id,
        source_event="api.buyer_payment",
        performed_by=ctx.user_id,
    )
    return respond(request, PostingResponse.from_result(result).model_dump())


@router.post("/accounts/{account_id}/transactions")
async def post_transaction(
    account_id: str,
    body: PostTransactionRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    result = await service.post_transaction(
        db,
        ctx.company_id,
        account_id,
        body.type.value,
        debit=body.debit_cents,
        credit=body.credit_cents,
        payment_id=body.payment_id,
        reference=body.reference,
        source_event="api.manual_posting",
        performed_by=ctx.user_id,
    )
    return respond(request, PostingResponse.from_result(result).model_dump())


@router.post("/accounts/{account_id}/settlement")
async def calculate_settlement(
    account_id: str,
    body: CalculateSettlementRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    calc = await service.calculate_settlement(
        db, ctx.company_id, account_id, body.to_overrides(), performed_by=ctx.user_id
    )
    return respond(request, SettlementResponse.from_calculation(calc).model_dump())


@router.post("/accounts/{account_id}/tax-deductions")
async def apply_tax_deductions(
    account_id: str,
    body: ApplyTaxRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    result = await service.apply_tax_deductions(
        db,
        ctx.company_id,
        account_id,
        authority_payment_reference=body.authority_payment_reference,
        performed_by=ctx.user_id,
    )
    return respond(request, TaxApplicationResponse.from_result(result).model_dump())


@router.post("/accounts/{account_id}/transfer")
async def transfer_to_seller(
    account_id: str,
    body: TransferToSellerRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    result = await service.transfer_to_seller(
        db,
        ctx.company_id,
        account_id,
        body.amount_cents,
        reference=body.reference,
        performed_by=ctx.user_id,
    )
    return respond(request, PostingResponse.from_result(result).model_dump())


@router.post("/accounts/{account_id}/close")
async def close_trust_account(
    account_id: str,
    body: CloseTrustAccountRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    account = await service.close_trust_account(
        db, ctx.company_id, account_id, lock_reason=body.lock_reason, performed_by=ctx.user_id
    )
    return respond(request, TrustAccountResponse.from_domain(account).model_dump())


@router.post("/accounts/{account_id}/workflow")
async def transition_workflow_state(
    account_id: str,
    body: WorkflowTransitionRequest,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
) -> ApiResponse:
    account = await service.transition_workflow_state(
        db, ctx.company_id, account_id, body.to_state.value, performed_by=ctx.user_id
    )
    return respond(request, TrustAccountResponse.from_domain(account).model_dump())


@router.get("/accounts/{account_id}/ledger")
async def get_ledger(
    account_id: str,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
) -> ApiResponse:
    result = await service.get_ledger(db, ctx.company_id, account_id, page=page, limit=limit)
    return respond(request, LedgerResponse.from_page(result).model_dump())


@router.get("/accounts/{account_id}/tax-summary")
async def get_tax_summary(
    account_id: str, ctx: Ctx, db: Db, service: Service, request: Request
) -> ApiResponse:
    summary = await service.get_tax_summary(db, ctx.company_id, account_id)
    return respond(request, TaxSummaryResponse.from_summary(summary).model_dump())


@router.get("/accounts/{account_id}/audit-logs")
async def get_audit_logs(
    account_id: str,
    ctx: Ctx,
    db: Db,
    service: Service,
    request: Request,
    limit: int = Query(200, ge=1, le=500),
) -> ApiResponse:
    entries = await service.get_audit_logs(db, ctx.company_id, account_id, limit)
    return respond(
        request, [AuditEntryResponse.from_domain(e).model_dump(mode="json") for e in entries]
    )


@router.get("/accounts/{account_id}/reconciliation")
async def get_reconciliation_snapshot(
    account_id: str, ctx: Ctx, db: Db, service: Service, request: Request
) -> ApiResponse:
    snap = await service.get_reconciliation_snapshot(db, ctx.company_id, account_id)
    return respond(request, ReconciliationSnapshotResponse.from_snapshot(snap).model_dump())


@router.post("/backfill")
async def run_backfill(
    body: BackfillRequest, ctx: Ctx, backfill: Backfill, request: Request
) -> ApiResponse:
    result = await backfill.run(
        dry_run=body.dry_run, limit=body.limit, performed_by=ctx.user_id
    )
    return respond(request, BackfillResultResponse.from_result(result).model_dump())


@router.get("/backfill/state")
async def get_backfill_state(
    ctx: Ctx, db: Db, backfill: Backfill, request: Request
) -> ApiResponse:
    state = await backfill.get_state(db)
    data = BackfillStateResponse.from_domain(state).model_dump() if state else None
    return respond(request, data)


@router.get("/event-failures")
async def list_event_failures(
    ctx: Ctx,
    db: Db,
    worker: RetryWorker,
    request: Request,
    status: str | None = Query(None, pattern="^(pending|resolved|dead)$"),
    limit: int = Query(100, ge=1, le=500),
) -> ApiResponse:
    failures = await worker.list_failures(db, ctx.company_id, status, limit)
    return respond(
        request, [EventFailureResponse.from_domain(f).model_dump(mode="json") for f in failures]
    )
