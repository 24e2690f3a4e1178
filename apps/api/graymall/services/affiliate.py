"""
Article affiliate settings

Authors choose whether an article pays referrers and at which rate. The
rate may only change once per cooldown window so a referrer cannot be
undercut right after promoting an article.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.helpers import as_utc, utc_now
from graymall.models.article import Article
from graymall.models.user import User
from graymall.services.errors import AffiliateSettingsError

logger = structlog.get_logger()


def next_rate_change_at(article: Article) -> Optional[datetime]:
    """When the rate may next change, or None if it can change now."""
    last_changed = as_utc(article.affiliate_rate_last_changed_at)
    if last_changed is None:
        return None
    next_at = last_changed + timedelta(hours=settings.AFFILIATE_RATE_CHANGE_COOLDOWN_HOURS)
    return next_at if next_at > utc_now() else None


async def update_affiliate_settings(
    db: AsyncSession,
    article_id: UUID,
    author: User,
    enabled: bool,
    rate: int,
) -> Article:
    article = await db.get(Article, article_id)
    if article is None:
        raise AffiliateSettingsError("not_found", "Article not found", status_code=404)
    if article.author_id != author.id:
        raise AffiliateSettingsError("forbidden", "Only the author can change affiliate settings", status_code=403)

    if rate not in settings.AFFILIATE_RATE_OPTIONS:
        raise AffiliateSettingsError(
            "invalid_rate",
            "Affiliate rate must be one of the offered options",
            details={"options": settings.AFFILIATE_RATE_OPTIONS},
        )

    if rate != article.affiliate_rate:
        blocked_until = next_rate_change_at(article)
        if blocked_until is not None:
            raise AffiliateSettingsError(
                "rate_change_cooldown",
                "The affiliate rate was changed recently. Try again later.",
                status_code=409,
                details={"next_change_at": blocked_until.isoformat()},
            )
        article.affiliate_rate = rate
        article.affiliate_rate_last_changed_at = utc_now()

    article.affiliate_enabled = enabled
    await db.commit()
    await db.refresh(article)

    logger.info(
        "Affiliate settings updated",
        article_id=str(article.id),
        enabled=enabled,
        rate=article.affiliate_rate,
    )
    return article
