"""
Webhook Event Model
"""

import enum
import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Enum, Index, Integer, String, Text, Uuid

from graymall.core.database import Base
from graymall.core.helpers import utc_now


class WebhookEventStatus(str, enum.Enum):
    """Status of webhook event processing"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WebhookSource(str, enum.Enum):
    """Sources of webhook events"""
    STRIPE = "STRIPE"


class WebhookEvent(Base):
    """Track incoming webhook events for idempotency and debugging"""

    __tablename__ = "webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Event identification
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    source = Column(Enum(WebhookSource), nullable=False, default=WebhookSource.STRIPE)
    event_type = Column(String(100), nullable=False, index=True)

    payload = Column(JSON, nullable=False)

    # Processing
    status = Column(Enum(WebhookEventStatus), default=WebhookEventStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="chk_webhook_attempts_positive"),
        Index("idx_webhook_status_created", "status", "created_at"),
    )
