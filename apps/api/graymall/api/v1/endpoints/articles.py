"""
Article Endpoints
Affiliate settings (the rest of article management lives elsewhere)
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.database import get_db
from graymall.core.security import get_current_user
from graymall.models.user import User
from graymall.schemas.checkout import AffiliateSettingsResponse, AffiliateSettingsUpdate
from graymall.services.affiliate import next_rate_change_at, update_affiliate_settings

router = APIRouter()


@router.put("/{article_id}/affiliate", response_model=AffiliateSettingsResponse)
async def update_article_affiliate(
    article_id: UUID,
    payload: AffiliateSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    article = await update_affiliate_settings(
        db, article_id, current_user, enabled=payload.enabled, rate=payload.rate
    )
    return AffiliateSettingsResponse(
        article_id=article.id,
        enabled=article.affiliate_enabled,
        rate=article.affiliate_rate,
        rate_last_changed_at=article.affiliate_rate_last_changed_at,
        next_change_at=next_rate_change_at(article),
    )
