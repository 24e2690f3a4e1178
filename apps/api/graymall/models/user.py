"""
User Profile Model
"""

import enum
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, String, Uuid

from graymall.core.database import Base
from graymall.core.helpers import utc_now


class UserRole(str, enum.Enum):
    USER = "USER"
    CREATOR = "CREATOR"
    ADMIN = "ADMIN"


class StripeAccountStatus(str, enum.Enum):
    """Local view of the connected account lifecycle"""
    ONBOARDING = "onboarding"
    RESTRICTED = "restricted"
    ACTIVE = "active"


class User(Base):
    """
    User profile.

    Sessions are issued by the external auth provider; this row holds the
    profile plus the cached payout verification state read from Stripe.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Basic info
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(100))

    # Role (String to match VARCHAR in DB)
    role = Column(String(20), default="USER", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Billing
    stripe_customer_id = Column(String(255))

    # Payout account (Stripe Connect). Read-through cache of provider state:
    # eligibility decisions always re-read the provider first.
    stripe_account_id = Column(String(255), unique=True)
    stripe_account_status = Column(String(20))
    identity_submitted = Column(Boolean, default=False, nullable=False)
    bank_account_registered = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    charges_enabled = Column(Boolean, default=False, nullable=False)
    payout_status_synced_at = Column(DateTime(timezone=True))

    # Reader subscription
    is_premium = Column(Boolean, default=False, nullable=False)
    subscription_status = Column(String(20))
    stripe_subscription_id = Column(String(255))
    subscription_current_period_start = Column(DateTime(timezone=True))
    subscription_current_period_end = Column(DateTime(timezone=True))
    subscription_started_at = Column(DateTime(timezone=True))
    subscription_canceled_at = Column(DateTime(timezone=True))

    # Metadata
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("role IN ('USER', 'CREATOR', 'ADMIN')", name="chk_user_role"),
    )

    @property
    def has_external_account(self) -> bool:
        return bool(self.stripe_account_id)
