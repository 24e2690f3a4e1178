"""
Checkout Service

Creates pending orders and Stripe Checkout Sessions. Nothing here marks
an order paid: that only happens when the payment webhook arrives.
"""

from typing import Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.models.article import Article, ArticleStatus
from graymall.models.orders import Order, OrderStatus
from graymall.models.user import User
from graymall.services.errors import CheckoutError
from graymall.services.payments import StripeService

logger = structlog.get_logger()


async def _resolve_affiliate(db: AsyncSession, article: Article, affiliate_user_id: Optional[UUID]) -> Optional[UUID]:
    """Drop referrals that cannot earn: unknown users and the author themself."""
    if affiliate_user_id is None or affiliate_user_id == article.author_id:
        return None
    referrer = await db.get(User, affiliate_user_id)
    return referrer.id if referrer is not None else None


async def create_article_checkout(
    db: AsyncSession,
    stripe_service: StripeService,
    article_id: UUID,
    buyer: Optional[User] = None,
    affiliate_user_id: Optional[UUID] = None,
) -> Dict[str, str]:
    """
    Open a checkout for one article purchase.

    Raises:
        CheckoutError: article missing or unpurchasable, own article, already bought
        StripeError: the session could not be created (the order is rolled back)
    """
    article = await db.get(Article, article_id)
    if article is None or article.status != ArticleStatus.PUBLISHED.value:
        raise CheckoutError("not_found", "Article not found", status_code=404)
    if not article.price or article.price <= 0:
        raise CheckoutError("free_article", "This article is free to read.")

    if buyer is not None:
        if buyer.id == article.author_id:
            raise CheckoutError("own_article", "You cannot purchase your own article.")

        existing = await db.execute(
            select(Order.id).where(
                Order.buyer_id == buyer.id,
                Order.article_id == article.id,
                Order.status == OrderStatus.PAID,
            )
        )
        if existing.first() is not None:
            raise CheckoutError("already_purchased", "You have already purchased this article.", status_code=409)

    order = Order(
        buyer_id=buyer.id if buyer else None,
        article_id=article.id,
        author_id=article.author_id,
        affiliate_user_id=await _resolve_affiliate(db, article, affiliate_user_id),
        amount=article.price,
        status=OrderStatus.PENDING,
        payment_provider="stripe",
    )
    db.add(order)
    await db.flush()

    session = await stripe_service.create_checkout_session(
        line_items=[
            {
                "price_data": {
                    "currency": settings.PAYOUT_CURRENCY,
                    "product_data": {"name": article.title},
                    "unit_amount": article.price,
                },
                "quantity": 1,
            }
        ],
        mode="payment",
        success_url=f"{settings.FRONTEND_URL}/articles/{article.slug}?purchase=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.FRONTEND_URL}/articles/{article.slug}?purchase=canceled",
        customer_id=buyer.stripe_customer_id if buyer else None,
        metadata={
            "order_id": str(order.id),
            "article_id": str(article.id),
            "buyer_user_id": str(buyer.id) if buyer else "",
        },
        idempotency_key=f"checkout_order_{order.id}",
    )

    order.stripe_session_id = session["session_id"]
    await db.commit()

    logger.info(
        "Article checkout created",
        order_id=str(order.id),
        article_id=str(article.id),
        amount=order.amount,
        has_affiliate=order.affiliate_user_id is not None,
    )
    return {
        "order_id": str(order.id),
        "session_id": session["session_id"],
        "checkout_url": session["checkout_url"],
    }


async def create_subscription_checkout(
    db: AsyncSession,
    stripe_service: StripeService,
    user: User,
) -> Dict[str, str]:
    """Open a checkout for the reader subscription, creating the Stripe customer if needed."""
    if not settings.STRIPE_SUBSCRIPTION_PRICE_ID:
        raise CheckoutError("not_configured", "Subscriptions are not available.", status_code=503)
    if user.is_premium:
        raise CheckoutError("already_subscribed", "You already have an active subscription.", status_code=409)

    if not user.stripe_customer_id:
        customer = await stripe_service.create_customer(user.email, metadata={"user_id": str(user.id)})
        user.stripe_customer_id = customer["customer_id"]
        await db.flush()

    session = await stripe_service.create_checkout_session(
        line_items=[{"price": settings.STRIPE_SUBSCRIPTION_PRICE_ID, "quantity": 1}],
        mode="subscription",
        success_url=f"{settings.FRONTEND_URL}/settings/subscription?status=success",
        cancel_url=f"{settings.FRONTEND_URL}/settings/subscription?status=canceled",
        customer_id=user.stripe_customer_id,
        metadata={"user_id": str(user.id)},
    )
    await db.commit()

    logger.info("Subscription checkout created", user_id=str(user.id))
    return {"session_id": session["session_id"], "checkout_url": session["checkout_url"]}
