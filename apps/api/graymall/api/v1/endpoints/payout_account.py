"""
Payout Account Endpoints
Stripe Connect onboarding for creators and affiliates
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.database import get_db
from graymall.core.security import get_current_user
from graymall.models.user import User
from graymall.schemas.checkout import (
    OnboardingLinkResponse,
    PayoutAccountResponse,
    PayoutAccountStatusResponse,
)
from graymall.services.payments import StripeService, get_stripe_service
from graymall.services.payout_account import (
    create_onboarding_link,
    create_payout_account,
    get_payout_account_status,
)

router = APIRouter()
logger = structlog.get_logger()


@router.post("", response_model=PayoutAccountResponse)
async def create_my_payout_account(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Create the connected account; returns the existing one if already created."""
    return await create_payout_account(db, stripe_service, current_user)


@router.post("/onboarding-link", response_model=OnboardingLinkResponse)
async def create_my_onboarding_link(
    current_user: User = Depends(get_current_user),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    return await create_onboarding_link(stripe_service, current_user)


@router.get("/status", response_model=PayoutAccountStatusResponse)
async def get_my_payout_account_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Fresh identity and bank status from Stripe"""
    return await get_payout_account_status(db, stripe_service, current_user)
