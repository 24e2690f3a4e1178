"""
Withdrawal Endpoints

Creation always re-runs the eligibility gate server side, whatever the
client displayed.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.database import get_db
from graymall.core.security import get_current_user
from graymall.models.user import User
from graymall.schemas.response import create_paginated_response
from graymall.schemas.withdrawal import (
    EligibilityResponse,
    WithdrawalCanceledResponse,
    WithdrawalCreate,
    WithdrawalCreatedResponse,
    WithdrawalResponse,
)
from graymall.services.eligibility import check_eligibility
from graymall.services.ledger import get_balance
from graymall.services.payments import StripeService, get_stripe_service
from graymall.services.withdrawals import (
    cancel_withdrawal,
    create_withdrawal,
    estimated_payout_date,
    list_withdrawals,
)

router = APIRouter()
logger = structlog.get_logger()


@router.post("", response_model=WithdrawalCreatedResponse, status_code=201)
async def request_withdrawal(
    payload: WithdrawalCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Request a payout; it is settled by the batch at the end of the month."""
    request = await create_withdrawal(db, current_user, payload.amount, stripe_service)

    response = WithdrawalResponse.model_validate(request)
    return WithdrawalCreatedResponse(
        **response.model_dump(),
        estimated_payout_date=estimated_payout_date(request),
    )


@router.get("")
async def list_my_withdrawals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await list_withdrawals(
        db, user_id=current_user.id, limit=limit, offset=(page - 1) * limit
    )
    return create_paginated_response(
        data=[WithdrawalResponse.model_validate(item).model_dump(mode="json") for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/eligibility", response_model=EligibilityResponse)
async def get_eligibility(
    amount: Optional[int] = Query(None, gt=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Preview of the withdrawal gate; refreshes the cached payout flags."""
    result = await check_eligibility(db, current_user, stripe_service, amount=amount)
    balance = await get_balance(db, current_user.id)
    await db.commit()

    return EligibilityResponse(
        eligible=result.eligible,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        details=result.details,
        withdrawable_amount=balance.withdrawable_amount,
        minimum_withdrawal=settings.MINIMUM_WITHDRAWAL,
    )


@router.post("/{request_id}/cancel", response_model=WithdrawalCanceledResponse)
async def cancel_my_withdrawal(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a queued request; the amount returns to the withdrawable balance."""
    request = await cancel_withdrawal(db, current_user.id, request_id)

    response = WithdrawalResponse.model_validate(request)
    return WithdrawalCanceledResponse(**response.model_dump(), refunded_amount=request.amount)
