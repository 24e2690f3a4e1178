"""
Earnings Endpoints
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.database import get_db
from graymall.core.security import get_current_user
from graymall.models.user import User
from graymall.schemas.withdrawal import BalanceResponse
from graymall.services.ledger import get_balance

router = APIRouter()
logger = structlog.get_logger()


@router.get("/balance", response_model=BalanceResponse)
async def get_my_balance(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Current author and affiliate earnings.

    Computed on every call from paid orders and withdrawal requests;
    nothing is cached.
    """
    balance = await get_balance(db, current_user.id)

    return BalanceResponse(
        author_amount=balance.author_amount,
        affiliate_amount=balance.affiliate_amount,
        total_amount=balance.total_amount,
        pending_withdrawal_amount=balance.pending_withdrawal_amount,
        carry_amount=balance.carry_amount,
        withdrawable_amount=balance.withdrawable_amount,
        minimum_withdrawal=settings.MINIMUM_WITHDRAWAL,
    )
