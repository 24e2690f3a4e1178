"""
Integration Tests for Checkout and Payout Account Endpoints
"""

import uuid

import pytest
from httpx import AsyncClient

from graymall.models.orders import Order, OrderStatus
from graymall.services.payments import StripeServiceUnavailable


class TestArticleCheckout:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_guest_checkout(self, client: AsyncClient, db_session, creator, make_article, stripe_fake):
        article = await make_article(creator, price=800)

        response = await client.post("/api/v1/checkout/article", json={"article_id": str(article.id)})

        assert response.status_code == 200
        data = response.json()
        assert data["checkout_url"].startswith("https://")
        order = await db_session.get(Order, uuid.UUID(data["order_id"]))
        assert order.status == OrderStatus.PENDING
        assert order.buyer_id is None
        assert stripe_fake.checkout_sessions[0]["metadata"]["buyer_user_id"] == ""

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_signed_in_checkout(self, client: AsyncClient, db_session, auth_headers, creator, make_user, make_article):
        buyer = await make_user(role="USER")
        article = await make_article(creator)

        response = await client.post(
            "/api/v1/checkout/article",
            json={"article_id": str(article.id)},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 200
        order = await db_session.get(Order, uuid.UUID(response.json()["order_id"]))
        assert order.buyer_id == buyer.id

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_own_article(self, client: AsyncClient, auth_headers, creator, make_article):
        article = await make_article(creator)

        response = await client.post(
            "/api/v1/checkout/article",
            json={"article_id": str(article.id)},
            headers=auth_headers(creator),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "own_article"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unknown_article(self, client: AsyncClient):
        response = await client.post("/api/v1/checkout/article", json={"article_id": str(uuid.uuid4())})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_stripe_unavailable(self, client: AsyncClient, creator, make_article, stripe_fake):
        article = await make_article(creator)

        async def unavailable(**kwargs):
            raise StripeServiceUnavailable("Stripe service temporarily unavailable. Please try again later.")

        stripe_fake.create_checkout_session = unavailable

        response = await client.post("/api/v1/checkout/article", json={"article_id": str(article.id)})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


class TestSubscriptionCheckout:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_requires_login(self, client: AsyncClient):
        response = await client.post("/api/v1/checkout/subscription")

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_subscription_checkout(self, client: AsyncClient, auth_headers, make_user, stripe_fake):
        reader = await make_user(role="USER")

        response = await client.post("/api/v1/checkout/subscription", headers=auth_headers(reader))

        assert response.status_code == 200
        assert response.json()["session_id"].startswith("cs_test_")
        assert stripe_fake.checkout_sessions[0]["metadata"] == {"user_id": str(reader.id)}


class TestPayoutAccountEndpoints:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_create_account_and_onboard(self, client: AsyncClient, auth_headers, make_user):
        user = await make_user()

        created = await client.post("/api/v1/payout-account", headers=auth_headers(user))
        assert created.status_code == 200
        assert created.json()["created"] is True

        link = await client.post("/api/v1/payout-account/onboarding-link", headers=auth_headers(user))
        assert link.status_code == 200
        assert created.json()["account_id"] in link.json()["url"]

        status = await client.get("/api/v1/payout-account/status", headers=auth_headers(user))
        assert status.status_code == 200
        data = status.json()
        assert data["has_external_account"] is True
        assert data["payouts_enabled"] is False
        assert data["status"] == "onboarding"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_onboarding_link_without_account(self, client: AsyncClient, auth_headers, make_user):
        user = await make_user()

        response = await client.post("/api/v1/payout-account/onboarding-link", headers=auth_headers(user))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "no_external_account"
