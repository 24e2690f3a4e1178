"""Pydantic schemas for request/response validation"""

from graymall.schemas.checkout import (
    AffiliateSettingsResponse,
    AffiliateSettingsUpdate,
    ArticleCheckoutRequest,
    ArticleCheckoutResponse,
    CheckoutResponse,
    OnboardingLinkResponse,
    PayoutAccountResponse,
    PayoutAccountStatusResponse,
)
from graymall.schemas.response import ErrorCodes, ErrorMessages, ErrorResponse, api_error
from graymall.schemas.withdrawal import (
    AdminWithdrawalResponse,
    BalanceResponse,
    BatchRunRequest,
    BatchSummaryResponse,
    EligibilityResponse,
    WithdrawalCanceledResponse,
    WithdrawalCreate,
    WithdrawalCreatedResponse,
    WithdrawalResponse,
)

__all__ = [
    # Checkout & payout account
    "ArticleCheckoutRequest",
    "ArticleCheckoutResponse",
    "CheckoutResponse",
    "PayoutAccountResponse",
    "OnboardingLinkResponse",
    "PayoutAccountStatusResponse",
    "AffiliateSettingsUpdate",
    "AffiliateSettingsResponse",
    # Earnings & withdrawals
    "BalanceResponse",
    "WithdrawalCreate",
    "WithdrawalResponse",
    "WithdrawalCreatedResponse",
    "WithdrawalCanceledResponse",
    "EligibilityResponse",
    "AdminWithdrawalResponse",
    "BatchRunRequest",
    "BatchSummaryResponse",
    # Responses
    "ErrorCodes",
    "ErrorMessages",
    "ErrorResponse",
    "api_error",
]
