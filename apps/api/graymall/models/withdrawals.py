"""
Withdrawal Request Model

Rows are never deleted. Every request ends in paid, failed or canceled,
which keeps the full payout history as an audit trail.
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
    Text,
    Uuid,
)

from graymall.core.database import Base
from graymall.core.helpers import utc_now


class WithdrawalStatus(str, enum.Enum):
    REQUESTED = "requested"
    QUEUED = "queued"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"


# Statuses that still reserve their amount against the balance
PENDING_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.REQUESTED,
    WithdrawalStatus.QUEUED,
    WithdrawalStatus.PROCESSING,
)

TERMINAL_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.PAID,
    WithdrawalStatus.FAILED,
    WithdrawalStatus.CANCELED,
)


class WithdrawalRequest(Base):
    """One payout instruction from a creator or affiliate"""

    __tablename__ = "withdrawal_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    status = Column(
        Enum(WithdrawalStatus, name="withdrawal_status", values_callable=lambda e: [m.value for m in e]),
        default=WithdrawalStatus.REQUESTED,
        nullable=False,
    )

    # Lifecycle timestamps
    requested_at = Column(DateTime(timezone=True), nullable=False)
    queued_at = Column(DateTime(timezone=True))
    processing_started_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    canceled_at = Column(DateTime(timezone=True))

    # Outcome
    failure_reason = Column(Text)
    stripe_transfer_id = Column(String(255), unique=True)
    # Order shares swept into this request once paid (may differ from amount)
    settled_order_amount = Column(Integer)

    # Batch grouping key
    target_year = Column(Integer, nullable=False)
    target_month = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_withdrawal_amount_positive"),
        CheckConstraint("target_month BETWEEN 1 AND 12", name="chk_withdrawal_target_month"),
        CheckConstraint(
            "status != 'paid' OR stripe_transfer_id IS NOT NULL",
            name="chk_withdrawal_paid_has_transfer",
        ),
        Index("idx_withdrawal_status_requested", "status", "requested_at"),
        Index("idx_withdrawal_user_status", "user_id", "status"),
    )
