"""
Stripe Webhook Reconciliation

Applies verified Stripe events to orders and users. Stripe delivers at
least once and in no particular order, so:

- every event id is recorded in ``webhook_events``; a completed id is a duplicate
- every handler checks the current row status before mutating it
  ("already paid", "already refunded" short-circuit to a no-op)
- an event that arrives before the state it depends on is logged and skipped

Signature verification happens in the endpoint, before anything here runs.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from graymall.core.helpers import utc_now
from graymall.core.monitoring import SETTLEMENT_INVARIANT_VIOLATIONS, WEBHOOK_EVENTS
from graymall.models.article import Article
from graymall.models.orders import Order, OrderStatus
from graymall.models.user import User
from graymall.models.webhooks import WebhookEvent, WebhookEventStatus, WebhookSource
from graymall.services.eligibility import sync_account_flags
from graymall.services.payments import account_status_from_stripe
from graymall.services.settlement import AffiliateConfig, SplitInvariantError, calculate_split

logger = structlog.get_logger()

APPLIED = "applied"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
IGNORED = "ignored"
FAILED = "failed"

PREMIUM_SUBSCRIPTION_STATUSES = ("active", "trialing")


def _parse_uuid(value) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _from_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


# ===========================================
# Orders
# ===========================================

async def mark_order_paid(
    db: AsyncSession,
    order_id: UUID,
    payment_intent_id: Optional[str] = None,
    guest_email: Optional[str] = None,
) -> str:
    """
    Move a pending order to paid and write its fee split.

    Runs at most once per order: the update is conditional on the order
    still being pending, so a redelivered event finds nothing to change.

    Raises:
        SplitInvariantError: the computed split does not balance
    """
    order = await db.get(Order, order_id)
    if order is None:
        logger.warning("Paid event for unknown order", order_id=str(order_id))
        return SKIPPED

    if order.status != OrderStatus.PENDING:
        logger.info("Order already settled", order_id=str(order.id), status=OrderStatus(order.status).value)
        return DUPLICATE

    article = await db.get(Article, order.article_id)
    affiliate = AffiliateConfig(
        enabled=bool(article and article.affiliate_enabled),
        rate=article.affiliate_rate if article else 0,
        referrer_id=order.affiliate_user_id,
    )
    split = calculate_split(order.amount, order.author_id, affiliate)

    values: Dict[str, Any] = {
        "status": OrderStatus.PAID,
        "platform_fee": split.platform_fee,
        "author_amount": split.author_amount,
        "affiliate_amount": split.affiliate_amount,
        "paid_at": utc_now(),
    }
    if payment_intent_id:
        values["stripe_payment_intent_id"] = payment_intent_id
    if guest_email and order.buyer_id is None:
        values["guest_email"] = guest_email

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return DUPLICATE

    logger.info(
        "Order paid",
        order_id=str(order.id),
        amount=split.amount,
        platform_fee=split.platform_fee,
        author_amount=split.author_amount,
        affiliate_amount=split.affiliate_amount,
    )
    return APPLIED


async def handle_checkout_completed(db: AsyncSession, data: dict) -> str:
    metadata = data.get("metadata") or {}

    if data.get("mode") == "subscription":
        return await _activate_subscription_from_checkout(db, data, metadata)

    order_id = _parse_uuid(metadata.get("order_id"))
    if order_id is None:
        return IGNORED

    # Delayed payment methods complete the session before the money arrives;
    # payment_intent.succeeded settles those orders later
    if data.get("payment_status") != "paid" or not data.get("payment_intent"):
        logger.info(
            "Checkout completed without payment",
            order_id=str(order_id),
            payment_status=data.get("payment_status"),
        )
        return SKIPPED

    customer_details = data.get("customer_details") or {}
    return await mark_order_paid(
        db,
        order_id,
        payment_intent_id=data.get("payment_intent"),
        guest_email=customer_details.get("email"),
    )


async def handle_payment_succeeded(db: AsyncSession, data: dict) -> str:
    order_id = _parse_uuid((data.get("metadata") or {}).get("order_id"))
    if order_id is None:
        return IGNORED
    return await mark_order_paid(db, order_id, payment_intent_id=data.get("id"))


async def handle_charge_refunded(db: AsyncSession, data: dict) -> str:
    payment_intent_id = data.get("payment_intent")
    if not payment_intent_id:
        return IGNORED

    result = await db.execute(select(Order).where(Order.stripe_payment_intent_id == payment_intent_id))
    order = result.scalars().first()
    if order is None:
        logger.warning("Refund for unknown payment", payment_intent_id=payment_intent_id)
        return SKIPPED

    current = OrderStatus(order.status)
    if current == OrderStatus.PENDING:
        # The paid event may simply be late
        logger.warning("Refund for order not yet paid", order_id=str(order.id))
        return SKIPPED
    if current == OrderStatus.REFUNDED:
        return DUPLICATE

    amount_refunded = int(data.get("amount_refunded") or 0)
    charge_amount = int(data.get("amount") or order.amount)
    if amount_refunded < charge_amount:
        new_status = OrderStatus.PARTIALLY_REFUNDED
    else:
        new_status = OrderStatus.REFUNDED

    if new_status == current:
        return DUPLICATE

    updated = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(status=new_status, refunded_at=utc_now())
        .execution_options(synchronize_session="fetch")
    )
    if updated.rowcount != 1:
        return DUPLICATE

    logger.info(
        "Order refunded",
        order_id=str(order.id),
        status=new_status.value,
        amount_refunded=amount_refunded,
    )
    return APPLIED


# ===========================================
# Subscriptions
# ===========================================

async def _find_subscriber(db: AsyncSession, customer_id: Optional[str], metadata: dict) -> Optional[User]:
    user_id = _parse_uuid(metadata.get("user_id"))
    if user_id is not None:
        user = await db.get(User, user_id)
        if user is not None:
            return user
    if customer_id:
        result = await db.execute(select(User).where(User.stripe_customer_id == customer_id))
        return result.scalars().first()
    return None


async def _activate_subscription_from_checkout(db: AsyncSession, data: dict, metadata: dict) -> str:
    user = await _find_subscriber(db, data.get("customer"), metadata)
    if user is None:
        logger.warning("Subscription checkout for unknown user", session_id=data.get("id"))
        return SKIPPED

    user.is_premium = True
    user.subscription_status = "active"
    if data.get("subscription"):
        user.stripe_subscription_id = data.get("subscription")
    if data.get("customer") and not user.stripe_customer_id:
        user.stripe_customer_id = data.get("customer")
    if user.subscription_started_at is None:
        user.subscription_started_at = utc_now()

    logger.info("Subscription activated", user_id=str(user.id))
    return APPLIED


async def handle_subscription_changed(db: AsyncSession, data: dict) -> str:
    user = await _find_subscriber(db, data.get("customer"), data.get("metadata") or {})
    if user is None:
        return SKIPPED

    status = data.get("status")
    user.subscription_status = status
    user.is_premium = status in PREMIUM_SUBSCRIPTION_STATUSES
    user.stripe_subscription_id = data.get("id") or user.stripe_subscription_id
    user.subscription_current_period_start = _from_timestamp(data.get("current_period_start"))
    user.subscription_current_period_end = _from_timestamp(data.get("current_period_end"))
    if user.is_premium and user.subscription_started_at is None:
        user.subscription_started_at = utc_now()

    logger.info("Subscription updated", user_id=str(user.id), status=status)
    return APPLIED


async def handle_subscription_deleted(db: AsyncSession, data: dict) -> str:
    user = await _find_subscriber(db, data.get("customer"), data.get("metadata") or {})
    if user is None:
        return SKIPPED
    if user.subscription_status == "canceled" and not user.is_premium:
        return DUPLICATE

    user.is_premium = False
    user.subscription_status = "canceled"
    user.subscription_canceled_at = utc_now()

    logger.info("Subscription canceled", user_id=str(user.id))
    return APPLIED


# ===========================================
# Connect accounts
# ===========================================

async def handle_account_updated(db: AsyncSession, data: dict) -> str:
    account_id = data.get("id")
    result = await db.execute(select(User).where(User.stripe_account_id == account_id))
    user = result.scalars().first()
    if user is None:
        return SKIPPED

    account = account_status_from_stripe(data)
    if "external_accounts" not in data:
        # Thin payloads omit bank accounts; keep what we knew
        account.has_bank_account = user.bank_account_registered
    sync_account_flags(user, account)

    logger.info(
        "Payout account synced",
        user_id=str(user.id),
        payouts_enabled=account.payouts_enabled,
        currently_due=len(account.currently_due),
    )
    return APPLIED


EVENT_HANDLERS: Dict[str, Callable[[AsyncSession, dict], Awaitable[str]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "charge.refunded": handle_charge_refunded,
    "account.updated": handle_account_updated,
}


# ===========================================
# Event processing
# ===========================================

async def _claim_event(db: AsyncSession, event_id: str, event_type: str, payload: dict) -> Optional[WebhookEvent]:
    """Record the delivery; None means the event was already completed."""
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    record = result.scalar_one_or_none()

    if record is not None:
        if record.status == WebhookEventStatus.COMPLETED:
            return None
        record.status = WebhookEventStatus.PROCESSING
        record.attempts = (record.attempts or 0) + 1
        record.last_attempt_at = utc_now()
        await db.commit()
        return record

    record = WebhookEvent(
        event_id=event_id,
        source=WebhookSource.STRIPE,
        event_type=event_type,
        payload=payload,
        status=WebhookEventStatus.PROCESSING,
        attempts=1,
        last_attempt_at=utc_now(),
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        await db.rollback()
        return None
    return record


async def _mark_event(db: AsyncSession, record: WebhookEvent, status: WebhookEventStatus, error: Optional[str] = None):
    record.status = status
    record.error_message = error
    if status == WebhookEventStatus.COMPLETED:
        record.processed_at = utc_now()
    await db.commit()


async def process_stripe_event(session_factory: async_sessionmaker, event) -> str:
    """
    Apply one verified Stripe event.

    Returns the outcome: applied, duplicate, skipped, ignored or failed.
    A split that does not balance is recorded as failed and reported, but
    only that event is halted. Any other error is recorded and re-raised
    so the endpoint answers 500 and Stripe redelivers.
    """
    event_id = event["id"]
    event_type = event["type"]
    data = event["data"]["object"]

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        WEBHOOK_EVENTS.labels(event_type=event_type, result=IGNORED).inc()
        logger.debug("Unhandled Stripe event type", event_type=event_type, event_id=event_id)
        return IGNORED

    payload = dict(event)

    async with session_factory() as db:
        record = await _claim_event(db, event_id, event_type, payload)
        if record is None:
            WEBHOOK_EVENTS.labels(event_type=event_type, result=DUPLICATE).inc()
            logger.info("Duplicate Stripe event", event_id=event_id, event_type=event_type)
            return DUPLICATE

        try:
            result = await handler(db, data)
            await db.commit()
        except SplitInvariantError as e:
            await db.rollback()
            SETTLEMENT_INVARIANT_VIOLATIONS.inc()
            logger.error(
                "Settlement split invariant violated",
                event_id=event_id,
                amount=e.amount,
                platform_fee=e.platform_fee,
                author_amount=e.author_amount,
                affiliate_amount=e.affiliate_amount,
            )
            await _mark_event(db, record, WebhookEventStatus.FAILED, str(e))
            WEBHOOK_EVENTS.labels(event_type=event_type, result=FAILED).inc()
            return FAILED
        except Exception as e:
            await db.rollback()
            logger.error(
                "Stripe webhook processing error",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                exc_info=True,
            )
            await _mark_event(db, record, WebhookEventStatus.FAILED, str(e)[:1000])
            WEBHOOK_EVENTS.labels(event_type=event_type, result=FAILED).inc()
            raise

        await _mark_event(db, record, WebhookEventStatus.COMPLETED)

    WEBHOOK_EVENTS.labels(event_type=event_type, result=result).inc()
    logger.info("Stripe event processed", event_id=event_id, event_type=event_type, result=result)
    return result
