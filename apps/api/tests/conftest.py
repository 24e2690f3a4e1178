"""
Pytest Configuration and Fixtures

Tests run against a temp-file SQLite database (aiosqlite) and a fake
Stripe service; no network access is needed.
"""
import json
import os
import tempfile
import uuid
from datetime import timedelta
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

# Set test environment (before graymall reads its settings)
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-testing-only-0123456789"
os.environ["BATCH_API_KEY"] = "test-batch-api-key-0123456789abcdef0123"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["STRIPE_SUBSCRIPTION_PRICE_ID"] = "price_test_premium"
os.environ.pop("SENTRY_DSN", None)

from graymall.main import app
from graymall.core.database import Base, get_db, get_session_factory
from graymall.core.helpers import utc_now
from graymall.core.security import create_access_token
from graymall.models.article import Article, ArticleStatus
from graymall.models.orders import Order, OrderStatus
from graymall.models.user import User, UserRole
from graymall.models.withdrawals import WithdrawalRequest, WithdrawalStatus
from graymall.services.payments import (
    AccountStatus,
    StripeError,
    TransferResult,
    get_stripe_service,
)
from graymall.services.settlement import AffiliateConfig, calculate_split


TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), f"graymall_test_{os.getpid()}.db"),
)

BATCH_API_KEY = os.environ["BATCH_API_KEY"]
FAKE_SIGNATURE = "t=1,v1=fake-signature"

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    poolclass=NullPool,
    echo=False
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


# ==============================================================================
# Fake Stripe
# ==============================================================================

def ready_account(account_id: str) -> AccountStatus:
    """Connected account that can receive payouts"""
    return AccountStatus(
        account_id=account_id,
        payouts_enabled=True,
        charges_enabled=True,
        details_submitted=True,
        has_bank_account=True,
    )


class FakeStripeService:
    """
    In-memory stand-in for StripeService.

    Set ``account_error`` / ``transfer_error`` / ``find_error`` to make the
    matching call raise. Transfers honour idempotency keys like Stripe does.
    """

    def __init__(self):
        self.accounts: Dict[str, AccountStatus] = {}
        self.account_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.find_error: Optional[Exception] = None
        self.transfer_calls: List[Dict] = []
        self.transfers_by_key: Dict[str, TransferResult] = {}
        self.transfers_by_group: Dict[str, TransferResult] = {}
        self.checkout_sessions: List[Dict] = []
        self.customers: List[Dict] = []
        self.connect_accounts: List[Dict] = []

    @property
    def is_configured(self) -> bool:
        return True

    def add_account(self, account_id: str, **overrides) -> AccountStatus:
        account = ready_account(account_id)
        for key, value in overrides.items():
            setattr(account, key, value)
        self.accounts[account_id] = account
        return account

    async def get_account_status(self, account_id: str) -> AccountStatus:
        if self.account_error is not None:
            raise self.account_error
        if account_id not in self.accounts:
            raise StripeError(f"No such account: {account_id}")
        return self.accounts[account_id]

    async def create_transfer(self, amount, destination, idempotency_key, currency=None,
                              metadata=None, transfer_group=None) -> TransferResult:
        self.transfer_calls.append({
            "amount": amount,
            "destination": destination,
            "idempotency_key": idempotency_key,
            "transfer_group": transfer_group,
            "metadata": metadata,
        })
        if self.transfer_error is not None:
            raise self.transfer_error
        if idempotency_key in self.transfers_by_key:
            return self.transfers_by_key[idempotency_key]

        transfer = TransferResult(
            transfer_id=f"tr_{uuid.uuid4().hex[:16]}",
            amount=amount,
            currency=currency or "jpy",
            destination=destination,
        )
        self.transfers_by_key[idempotency_key] = transfer
        if transfer_group:
            self.transfers_by_group[transfer_group] = transfer
        return transfer

    async def find_transfer(self, transfer_group: str) -> Optional[TransferResult]:
        if self.find_error is not None:
            raise self.find_error
        return self.transfers_by_group.get(transfer_group)

    async def create_customer(self, email: str, metadata: Optional[Dict] = None) -> Dict:
        customer = {"customer_id": f"cus_{uuid.uuid4().hex[:14]}", "email": email}
        self.customers.append({**customer, "metadata": metadata})
        return customer

    async def create_checkout_session(self, line_items, mode, success_url, cancel_url,
                                      customer_id=None, metadata=None, idempotency_key=None) -> Dict:
        session_id = f"cs_test_{uuid.uuid4().hex[:20]}"
        self.checkout_sessions.append({
            "session_id": session_id,
            "line_items": line_items,
            "mode": mode,
            "customer_id": customer_id,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return {"session_id": session_id, "checkout_url": f"https://checkout.stripe.test/{session_id}"}

    async def create_connect_account(self, email: str, user_id: str) -> Dict:
        account_id = f"acct_{uuid.uuid4().hex[:16]}"
        self.connect_accounts.append({"account_id": account_id, "email": email, "user_id": user_id})
        self.add_account(account_id, payouts_enabled=False, details_submitted=False, has_bank_account=False)
        return {"account_id": account_id}

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str,
                                  link_type: str = "account_onboarding") -> Dict:
        return {"url": f"https://connect.stripe.test/setup/{account_id}", "expires_at": 1893456000}

    def construct_webhook_event(self, payload: bytes, signature: str, webhook_secret: Optional[str] = None) -> Dict:
        if signature != FAKE_SIGNATURE:
            raise StripeError("Invalid webhook signature: no signatures found matching the expected signature")
        return json.loads(payload)


# ==============================================================================
# Database
# ==============================================================================

@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test"""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session) -> async_sessionmaker:
    """Session factory for services that open their own transactions"""
    return TestSessionLocal


@pytest.fixture
def stripe_fake() -> FakeStripeService:
    return FakeStripeService()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, stripe_fake: FakeStripeService) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database and Stripe overrides"""

    async def override_get_db():
        async with TestSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_stripe_service] = lambda: stripe_fake

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ==============================================================================
# Factories
# ==============================================================================

@pytest.fixture
def make_user(db_session: AsyncSession, stripe_fake: FakeStripeService):
    """Create a user; ``payout_ready=True`` also registers a ready Stripe account"""

    async def _make_user(role: str = UserRole.CREATOR.value, payout_ready: bool = False, **fields) -> User:
        user_id = fields.pop("id", uuid.uuid4())
        values = {
            "email": f"user-{user_id.hex[:8]}@example.com",
            "display_name": "Test User",
            "role": role,
            "is_active": True,
        }
        if payout_ready:
            account_id = f"acct_{user_id.hex[:16]}"
            stripe_fake.add_account(account_id)
            values.update(
                stripe_account_id=account_id,
                identity_submitted=True,
                bank_account_registered=True,
                payouts_enabled=True,
            )
        values.update(fields)

        user = User(id=user_id, **values)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_article(db_session: AsyncSession):

    async def _make_article(author: User, price: int = 1000, affiliate_rate: int = 0, **fields) -> Article:
        article_id = uuid.uuid4()
        article = Article(
            id=article_id,
            author_id=author.id,
            title=fields.pop("title", "Test Article"),
            slug=fields.pop("slug", f"article-{article_id.hex[:12]}"),
            price=price,
            status=fields.pop("status", ArticleStatus.PUBLISHED.value),
            affiliate_enabled=fields.pop("affiliate_enabled", affiliate_rate > 0),
            affiliate_rate=affiliate_rate,
            **fields,
        )
        db_session.add(article)
        await db_session.commit()
        await db_session.refresh(article)
        return article

    return _make_article


@pytest.fixture
def make_paid_order(db_session: AsyncSession):
    """Create an order already settled by the payment webhook"""

    async def _make_paid_order(
        article: Article,
        affiliate: Optional[User] = None,
        buyer: Optional[User] = None,
        paid_minutes_ago: int = 60,
        status: OrderStatus = OrderStatus.PAID,
    ) -> Order:
        split = calculate_split(
            article.price,
            article.author_id,
            AffiliateConfig(
                enabled=article.affiliate_enabled,
                rate=article.affiliate_rate,
                referrer_id=affiliate.id if affiliate else None,
            ),
        )
        order = Order(
            buyer_id=buyer.id if buyer else None,
            article_id=article.id,
            author_id=article.author_id,
            affiliate_user_id=affiliate.id if affiliate else None,
            amount=split.amount,
            status=status,
            platform_fee=split.platform_fee,
            author_amount=split.author_amount,
            affiliate_amount=split.affiliate_amount,
            stripe_payment_intent_id=f"pi_{uuid.uuid4().hex[:20]}",
            paid_at=utc_now() - timedelta(minutes=paid_minutes_ago),
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _make_paid_order


@pytest.fixture
def make_withdrawal(db_session: AsyncSession):

    async def _make_withdrawal(
        user: User,
        amount: int,
        status: WithdrawalStatus = WithdrawalStatus.QUEUED,
        minutes_ago: int = 10,
        **fields,
    ) -> WithdrawalRequest:
        requested_at = utc_now() - timedelta(minutes=minutes_ago)
        request = WithdrawalRequest(
            user_id=user.id,
            amount=amount,
            status=status,
            requested_at=requested_at,
            queued_at=requested_at,
            target_year=fields.pop("target_year", requested_at.year),
            target_month=fields.pop("target_month", requested_at.month),
            **fields,
        )
        db_session.add(request)
        await db_session.commit()
        await db_session.refresh(request)
        return request

    return _make_withdrawal


# ==============================================================================
# Auth
# ==============================================================================

@pytest.fixture
def auth_headers():
    """Authorization header for a user"""

    def _auth_headers(user: User) -> Dict[str, str]:
        token = create_access_token(data={"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def operator_headers() -> Dict[str, str]:
    return {"X-API-Key": BATCH_API_KEY}


@pytest.fixture
def webhook_signature() -> str:
    return FAKE_SIGNATURE


@pytest.fixture
async def creator(make_user) -> User:
    """Creator with a ready payout account"""
    return await make_user(payout_ready=True)


@pytest.fixture
async def admin_user(make_user) -> User:
    return await make_user(role=UserRole.ADMIN.value)
