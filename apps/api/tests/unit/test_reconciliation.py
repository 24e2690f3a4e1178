"""
Unit Tests for Stripe Webhook Reconciliation
Order payment, refunds, subscriptions and Connect account sync
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from graymall.models.orders import Order, OrderStatus
from graymall.models.user import StripeAccountStatus, User
from graymall.models.webhooks import WebhookEvent, WebhookEventStatus
from graymall.services.reconciliation import (
    APPLIED,
    DUPLICATE,
    EVENT_HANDLERS,
    FAILED,
    IGNORED,
    SKIPPED,
    process_stripe_event,
)
from graymall.services.settlement import SplitInvariantError


def stripe_event(event_type: str, obj: dict, event_id: str = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def checkout_completed(order: Order, email: str = "reader@example.com", **overrides) -> dict:
    session = {
        "id": f"cs_test_{uuid.uuid4().hex[:16]}",
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": f"pi_{uuid.uuid4().hex[:20]}",
        "metadata": {"order_id": str(order.id)},
        "customer_details": {"email": email},
    }
    session.update(overrides)
    return stripe_event("checkout.session.completed", session)


async def reload(db_session, model, row_id):
    return await db_session.get(model, row_id, populate_existing=True)


async def event_record(db_session, event_id: str) -> WebhookEvent:
    result = await db_session.execute(
        select(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.fixture
def make_pending_order(db_session):

    async def _make_pending_order(article, affiliate=None, buyer=None) -> Order:
        order = Order(
            buyer_id=buyer.id if buyer else None,
            article_id=article.id,
            author_id=article.author_id,
            affiliate_user_id=affiliate.id if affiliate else None,
            amount=article.price,
            status=OrderStatus.PENDING,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _make_pending_order


class TestOrderPayment:
    """Test paid events settle orders exactly once"""

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_checkout_completed_settles_order(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator, price=1000)
        order = await make_pending_order(article)
        event = checkout_completed(order, email="guest@example.com")

        result = await process_stripe_event(session_factory, event)

        assert result == APPLIED
        paid = await reload(db_session, Order, order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.platform_fee == 150
        assert paid.author_amount == 850
        assert paid.affiliate_amount == 0
        assert paid.paid_at is not None
        assert paid.guest_email == "guest@example.com"
        assert paid.stripe_payment_intent_id == event["data"]["object"]["payment_intent"]

        record = await event_record(db_session, event["id"])
        assert record.status == WebhookEventStatus.COMPLETED
        assert record.attempts == 1
        assert record.processed_at is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_affiliate_split_applied(
        self, db_session, session_factory, creator, make_user, make_article, make_pending_order
    ):
        referrer = await make_user()
        article = await make_article(creator, price=1000, affiliate_rate=20)
        order = await make_pending_order(article, affiliate=referrer)

        await process_stripe_event(session_factory, checkout_completed(order))

        paid = await reload(db_session, Order, order.id)
        assert paid.affiliate_amount == 170
        assert paid.author_amount == 680

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_buyer_order_keeps_no_guest_email(
        self, db_session, session_factory, creator, make_user, make_article, make_pending_order
    ):
        buyer = await make_user(role="USER")
        article = await make_article(creator)
        order = await make_pending_order(article, buyer=buyer)

        await process_stripe_event(session_factory, checkout_completed(order))

        assert (await reload(db_session, Order, order.id)).guest_email is None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_redelivered_event_is_duplicate(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator)
        order = await make_pending_order(article)
        event = checkout_completed(order)

        first = await process_stripe_event(session_factory, event)
        second = await process_stripe_event(session_factory, event)

        assert first == APPLIED
        assert second == DUPLICATE
        count = (await db_session.execute(select(func.count()).select_from(WebhookEvent))).scalar()
        assert count == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_payment_intent_after_checkout_is_duplicate(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        """Test a second paid event for the same order changes nothing"""
        article = await make_article(creator)
        order = await make_pending_order(article)
        await process_stripe_event(session_factory, checkout_completed(order))
        first_paid_at = (await reload(db_session, Order, order.id)).paid_at

        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "payment_intent.succeeded",
                {"id": "pi_late", "object": "payment_intent", "metadata": {"order_id": str(order.id)}},
            ),
        )

        assert result == DUPLICATE
        paid = await reload(db_session, Order, order.id)
        assert paid.paid_at == first_paid_at
        assert paid.stripe_payment_intent_id != "pi_late"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_payment_intent_settles_pending_order(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator)
        order = await make_pending_order(article)

        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "payment_intent.succeeded",
                {"id": "pi_first", "object": "payment_intent", "metadata": {"order_id": str(order.id)}},
            ),
        )

        assert result == APPLIED
        paid = await reload(db_session, Order, order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.stripe_payment_intent_id == "pi_first"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unpaid_session_leaves_order_pending(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator, price=1000)
        order = await make_pending_order(article)

        result = await process_stripe_event(
            session_factory, checkout_completed(order, payment_status="unpaid", payment_intent=None)
        )

        assert result == SKIPPED
        pending = await reload(db_session, Order, order.id)
        assert pending.status == OrderStatus.PENDING
        assert pending.paid_at is None

        # The delayed payment lands later
        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "payment_intent.succeeded",
                {"id": "pi_delayed", "object": "payment_intent", "metadata": {"order_id": str(order.id)}},
            ),
        )

        assert result == APPLIED
        paid = await reload(db_session, Order, order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.stripe_payment_intent_id == "pi_delayed"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_paid_session_without_payment_intent_skipped(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator, price=1000)
        order = await make_pending_order(article)

        result = await process_stripe_event(session_factory, checkout_completed(order, payment_intent=None))

        assert result == SKIPPED
        pending = await reload(db_session, Order, order.id)
        assert pending.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unknown_order_skipped(self, session_factory, db_session):
        event = stripe_event(
            "checkout.session.completed",
            {
                "mode": "payment",
                "payment_status": "paid",
                "payment_intent": "pi_orphan",
                "metadata": {"order_id": str(uuid.uuid4())},
            },
        )

        assert await process_stripe_event(session_factory, event) == SKIPPED

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_session_without_order_ignored(self, session_factory, db_session):
        event = stripe_event("checkout.session.completed", {"mode": "payment", "metadata": {}})

        assert await process_stripe_event(session_factory, event) == IGNORED


class TestSplitInvariant:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unbalanced_split_halts_only_that_event(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator)
        broken = await make_pending_order(article)
        healthy = await make_pending_order(article)
        broken_event = checkout_completed(broken)

        with patch(
            "graymall.services.reconciliation.calculate_split",
            side_effect=SplitInvariantError(
                "Split does not balance", amount=1000, platform_fee=150, author_amount=900, affiliate_amount=0
            ),
        ):
            result = await process_stripe_event(session_factory, broken_event)

        assert result == FAILED
        assert (await reload(db_session, Order, broken.id)).status == OrderStatus.PENDING
        record = await event_record(db_session, broken_event["id"])
        assert record.status == WebhookEventStatus.FAILED
        assert "does not balance" in record.error_message

        assert await process_stripe_event(session_factory, checkout_completed(healthy)) == APPLIED


class TestProcessingErrors:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_error_recorded_and_reraised_then_redelivery_succeeds(
        self, db_session, session_factory, creator, make_article, make_pending_order
    ):
        article = await make_article(creator)
        order = await make_pending_order(article)
        event = checkout_completed(order)

        with patch.dict(
            EVENT_HANDLERS,
            {"checkout.session.completed": AsyncMock(side_effect=RuntimeError("database went away"))},
        ):
            with pytest.raises(RuntimeError):
                await process_stripe_event(session_factory, event)

        record = await event_record(db_session, event["id"])
        assert record.status == WebhookEventStatus.FAILED
        assert record.error_message == "database went away"

        assert await process_stripe_event(session_factory, event) == APPLIED
        record = await event_record(db_session, event["id"])
        assert record.status == WebhookEventStatus.COMPLETED
        assert record.attempts == 2

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unhandled_event_type_not_recorded(self, db_session, session_factory):
        result = await process_stripe_event(session_factory, stripe_event("invoice.created", {"id": "in_1"}))

        assert result == IGNORED
        count = (await db_session.execute(select(func.count()).select_from(WebhookEvent))).scalar()
        assert count == 0


class TestRefunds:
    """Test refunds remove orders from the balance"""

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_full_refund(self, db_session, session_factory, creator, make_article, make_paid_order):
        article = await make_article(creator)
        order = await make_paid_order(article)

        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "charge.refunded",
                {"payment_intent": order.stripe_payment_intent_id, "amount": 1000, "amount_refunded": 1000},
            ),
        )

        assert result == APPLIED
        refunded = await reload(db_session, Order, order.id)
        assert refunded.status == OrderStatus.REFUNDED
        assert refunded.refunded_at is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_partial_then_full_refund(
        self, db_session, session_factory, creator, make_article, make_paid_order
    ):
        article = await make_article(creator)
        order = await make_paid_order(article)
        charge = {"payment_intent": order.stripe_payment_intent_id, "amount": 1000}

        partial = await process_stripe_event(
            session_factory, stripe_event("charge.refunded", {**charge, "amount_refunded": 300})
        )
        assert partial == APPLIED
        assert (await reload(db_session, Order, order.id)).status == OrderStatus.PARTIALLY_REFUNDED

        full = await process_stripe_event(
            session_factory, stripe_event("charge.refunded", {**charge, "amount_refunded": 1000})
        )
        assert full == APPLIED
        assert (await reload(db_session, Order, order.id)).status == OrderStatus.REFUNDED

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_refund_before_payment_skipped(
        self, db_session, session_factory, creator, make_article, make_paid_order
    ):
        article = await make_article(creator)
        order = await make_paid_order(article, status=OrderStatus.PENDING)

        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "charge.refunded",
                {"payment_intent": order.stripe_payment_intent_id, "amount": 1000, "amount_refunded": 1000},
            ),
        )

        assert result == SKIPPED
        assert (await reload(db_session, Order, order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_refund_for_unknown_payment_skipped(self, session_factory, db_session):
        result = await process_stripe_event(
            session_factory,
            stripe_event("charge.refunded", {"payment_intent": "pi_unknown", "amount_refunded": 100}),
        )

        assert result == SKIPPED


class TestSubscriptions:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_subscription_checkout_activates_premium(self, db_session, session_factory, make_user):
        reader = await make_user(role="USER")

        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "checkout.session.completed",
                {
                    "mode": "subscription",
                    "customer": "cus_reader",
                    "subscription": "sub_reader",
                    "metadata": {"user_id": str(reader.id)},
                },
            ),
        )

        assert result == APPLIED
        user = await reload(db_session, User, reader.id)
        assert user.is_premium is True
        assert user.subscription_status == "active"
        assert user.stripe_subscription_id == "sub_reader"
        assert user.stripe_customer_id == "cus_reader"
        assert user.subscription_started_at is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_past_due_subscription_loses_premium(self, db_session, session_factory, make_user):
        reader = await make_user(role="USER", stripe_customer_id="cus_past_due", is_premium=True)

        await process_stripe_event(
            session_factory,
            stripe_event(
                "customer.subscription.updated",
                {
                    "id": "sub_past_due",
                    "customer": "cus_past_due",
                    "status": "past_due",
                    "current_period_start": 1767225600,
                    "current_period_end": 1769904000,
                },
            ),
        )

        user = await reload(db_session, User, reader.id)
        assert user.is_premium is False
        assert user.subscription_status == "past_due"
        assert user.subscription_current_period_end is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_subscription_deleted(self, db_session, session_factory, make_user):
        reader = await make_user(role="USER", stripe_customer_id="cus_leaving", is_premium=True)
        event = stripe_event("customer.subscription.deleted", {"id": "sub_leaving", "customer": "cus_leaving"})

        assert await process_stripe_event(session_factory, event) == APPLIED

        user = await reload(db_session, User, reader.id)
        assert user.is_premium is False
        assert user.subscription_status == "canceled"
        assert user.subscription_canceled_at is not None


class TestAccountUpdated:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_syncs_payout_flags(self, db_session, session_factory, creator):
        result = await process_stripe_event(
            session_factory,
            stripe_event(
                "account.updated",
                {
                    "id": creator.stripe_account_id,
                    "object": "account",
                    "payouts_enabled": False,
                    "charges_enabled": True,
                    "details_submitted": True,
                    "requirements": {"currently_due": ["external_account"], "past_due": []},
                },
            ),
        )

        assert result == APPLIED
        user = await reload(db_session, User, creator.id)
        assert user.payouts_enabled is False
        assert user.identity_submitted is True
        # Thin payload without external_accounts keeps the known bank flag
        assert user.bank_account_registered is True
        assert user.stripe_account_status == StripeAccountStatus.RESTRICTED.value
        assert user.payout_status_synced_at is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unknown_account_skipped(self, session_factory, db_session):
        result = await process_stripe_event(
            session_factory,
            stripe_event("account.updated", {"id": "acct_unknown", "payouts_enabled": True}),
        )

        assert result == SKIPPED
