"""
Order Model

One sale of one article. The fee split is written once, when the
payment-succeeded webhook moves the order to paid.
"""

import enum
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)

from graymall.core.database import Base
from graymall.core.helpers import utc_now


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class Order(Base):
    """Article purchase"""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Parties
    buyer_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), index=True)  # null for guests
    guest_email = Column(String(255))
    article_id = Column(Uuid, ForeignKey("articles.id", ondelete="RESTRICT"), nullable=False, index=True)
    author_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    affiliate_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))

    # Money (smallest currency unit)
    amount = Column(Integer, nullable=False)
    status = Column(
        Enum(OrderStatus, name="order_status", values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    platform_fee = Column(Integer)
    author_amount = Column(Integer)
    affiliate_amount = Column(Integer, default=0, nullable=False)

    # Provider references
    payment_provider = Column(String(20), default="stripe", nullable=False)
    stripe_session_id = Column(String(255), unique=True)
    stripe_payment_intent_id = Column(String(255), index=True)

    # Sweep references: set once a share is consumed by a paid withdrawal.
    # Author and affiliate shares belong to different users, so each has its own.
    author_withdrawal_id = Column(Uuid, ForeignKey("withdrawal_requests.id", ondelete="RESTRICT"))
    affiliate_withdrawal_id = Column(Uuid, ForeignKey("withdrawal_requests.id", ondelete="RESTRICT"))

    paid_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_order_amount_positive"),
        CheckConstraint("affiliate_amount >= 0", name="chk_order_affiliate_non_negative"),
        CheckConstraint(
            "status != 'paid' OR platform_fee + author_amount + affiliate_amount = amount",
            name="chk_order_split_balances",
        ),
        Index("idx_order_author_status", "author_id", "status"),
        Index("idx_order_affiliate_status", "affiliate_user_id", "status"),
        Index("idx_order_buyer_article", "buyer_id", "article_id"),
    )
