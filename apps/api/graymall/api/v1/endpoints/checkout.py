"""
Checkout Endpoints
Article purchases (guests welcome) and the reader subscription
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.database import get_db
from graymall.core.security import get_current_user, get_optional_user
from graymall.models.user import User
from graymall.schemas.checkout import ArticleCheckoutRequest, ArticleCheckoutResponse, CheckoutResponse
from graymall.services.checkout import create_article_checkout, create_subscription_checkout
from graymall.services.payments import StripeService, get_stripe_service

router = APIRouter()
logger = structlog.get_logger()


@router.post("/article", response_model=ArticleCheckoutResponse)
async def checkout_article(
    payload: ArticleCheckoutRequest,
    current_user: User = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Start a Stripe Checkout for one article.

    The order stays pending until the payment webhook arrives; the
    redirect back from Stripe proves nothing.
    """
    return await create_article_checkout(
        db,
        stripe_service,
        article_id=payload.article_id,
        buyer=current_user,
        affiliate_user_id=payload.affiliate_user_id,
    )


@router.post("/subscription", response_model=CheckoutResponse)
async def checkout_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    return await create_subscription_checkout(db, stripe_service, current_user)
