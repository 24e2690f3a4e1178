"""
Article Model

Only the columns the earnings ledger reads: price, author and the
affiliate configuration. Body, media and SEO live with the editor.
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import relationship

from graymall.core.database import Base
from graymall.core.helpers import utc_now


class ArticleStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class Article(Base):
    """Paywalled article"""

    __tablename__ = "articles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    author_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    price = Column(Integer, nullable=False, default=0)  # JPY
    status = Column(String(20), nullable=False, default=ArticleStatus.DRAFT.value)

    # Affiliate program
    affiliate_enabled = Column(Boolean, default=False, nullable=False)
    affiliate_rate = Column(Integer, default=0, nullable=False)  # percent of the post-fee amount
    affiliate_rate_last_changed_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    author = relationship("User", foreign_keys=[author_id])

    __table_args__ = (
        CheckConstraint("price >= 0", name="chk_article_price_positive"),
        CheckConstraint(
            "affiliate_rate >= 0 AND affiliate_rate <= 50",
            name="chk_article_affiliate_rate_range",
        ),
        Index("idx_article_author_status", "author_id", "status"),
    )
