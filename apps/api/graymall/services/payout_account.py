"""
Payout Account Service

Stripe Connect Express accounts for creators and affiliates.
"""

from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.models.user import StripeAccountStatus, User
from graymall.services.eligibility import refresh_payout_account
from graymall.services.errors import WithdrawalError
from graymall.services.payments import StripeService

logger = structlog.get_logger()


async def create_payout_account(db: AsyncSession, stripe_service: StripeService, user: User) -> Dict[str, Any]:
    """Create the user's connected account, or return the one they already have."""
    if user.stripe_account_id:
        return {"account_id": user.stripe_account_id, "created": False}

    result = await stripe_service.create_connect_account(email=user.email, user_id=str(user.id))
    user.stripe_account_id = result["account_id"]
    user.stripe_account_status = StripeAccountStatus.ONBOARDING.value
    await db.commit()

    logger.info("Payout account created", user_id=str(user.id), account_id=result["account_id"])
    return {"account_id": result["account_id"], "created": True}


async def create_onboarding_link(stripe_service: StripeService, user: User) -> Dict[str, Any]:
    if not user.stripe_account_id:
        raise WithdrawalError(
            "no_external_account",
            "Register a payout account before starting verification.",
        )

    return await stripe_service.create_account_link(
        account_id=user.stripe_account_id,
        refresh_url=f"{settings.FRONTEND_URL}/settings/payout?refresh=1",
        return_url=f"{settings.FRONTEND_URL}/settings/payout?onboarding=complete",
    )


async def get_payout_account_status(db: AsyncSession, stripe_service: StripeService, user: User) -> Dict[str, Any]:
    """Fresh provider read of the payout account; refreshes the cached flags."""
    if not user.stripe_account_id:
        return {
            "has_external_account": False,
            "identity_submitted": False,
            "bank_account_registered": False,
            "payouts_enabled": False,
            "status": None,
            "currently_due": [],
            "past_due": [],
            "has_past_due": False,
        }

    account = await refresh_payout_account(user, stripe_service)
    await db.commit()

    return {
        "has_external_account": True,
        "identity_submitted": account.details_submitted,
        "bank_account_registered": account.has_bank_account,
        "payouts_enabled": account.payouts_enabled,
        "status": user.stripe_account_status,
        "currently_due": account.currently_due,
        "past_due": account.past_due,
        "has_past_due": account.has_past_due,
    }
