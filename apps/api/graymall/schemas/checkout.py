"""Checkout, payout account and affiliate schemas"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, StrictInt


class ArticleCheckoutRequest(BaseModel):
    """Buy one article; affiliate_user_id comes from the referral link"""
    article_id: UUID
    affiliate_user_id: Optional[UUID] = None


class ArticleCheckoutResponse(BaseModel):
    order_id: UUID
    session_id: str
    checkout_url: str


class CheckoutResponse(BaseModel):
    """Checkout session response"""
    checkout_url: str
    session_id: str


class PayoutAccountResponse(BaseModel):
    account_id: str
    created: bool


class OnboardingLinkResponse(BaseModel):
    url: str
    expires_at: Optional[int] = None


class PayoutAccountStatusResponse(BaseModel):
    """Fresh view of the connected account"""
    has_external_account: bool
    identity_submitted: bool
    bank_account_registered: bool
    payouts_enabled: bool
    status: Optional[str] = None
    currently_due: List[str] = []
    past_due: List[str] = []
    has_past_due: bool = False


class AffiliateSettingsUpdate(BaseModel):
    enabled: bool
    rate: StrictInt


class AffiliateSettingsResponse(BaseModel):
    article_id: UUID
    enabled: bool
    rate: int
    rate_last_changed_at: Optional[datetime] = None
    next_change_at: Optional[datetime] = None
