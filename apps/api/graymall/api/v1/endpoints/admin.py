"""
Operator Endpoints
Withdrawal batch runs, listing and reconciliation

All routes accept the BATCH_API_KEY in X-API-Key or an admin session.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from graymall.core.database import get_db, get_session_factory
from graymall.core.security import require_operator
from graymall.models.withdrawals import WithdrawalStatus
from graymall.schemas.response import create_paginated_response
from graymall.schemas.withdrawal import AdminWithdrawalResponse, BatchRunRequest, BatchSummaryResponse, SettlementDetail
from graymall.services.payments import StripeService, get_stripe_service
from graymall.services.payout_batch import WithdrawalBatchProcessor
from graymall.services.withdrawals import list_withdrawals

router = APIRouter()
logger = structlog.get_logger()


@router.post("/withdrawals/process-batch", response_model=BatchSummaryResponse)
async def process_withdrawal_batch(
    payload: Optional[BatchRunRequest] = Body(default=None),
    operator: str = Depends(require_operator),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Settle queued withdrawals.

    Returns 200 with the summary even when items failed; per-item
    failures are reported in the body, not as an HTTP error.
    """
    year = payload.year if payload else None
    month = payload.month if payload else None

    logger.info("Withdrawal batch triggered", operator=operator, year=year, month=month)
    processor = WithdrawalBatchProcessor(session_factory, stripe_service)
    summary = await processor.run(year=year, month=month)

    return summary.to_dict()


@router.get("/withdrawals")
async def list_all_withdrawals(
    status: Optional[WithdrawalStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    items, total = await list_withdrawals(db, status=status, limit=limit, offset=(page - 1) * limit)
    return create_paginated_response(
        data=[AdminWithdrawalResponse.model_validate(item).model_dump(mode="json") for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/withdrawals/{request_id}/reconcile", response_model=SettlementDetail)
async def reconcile_withdrawal(
    request_id: UUID,
    operator: str = Depends(require_operator),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Resolve a request stuck in processing to paid or failed."""
    logger.info("Withdrawal reconcile triggered", operator=operator, request_id=str(request_id))
    processor = WithdrawalBatchProcessor(session_factory, stripe_service)
    outcome = await processor.reconcile(request_id)
    return SettlementDetail(**outcome.__dict__)
