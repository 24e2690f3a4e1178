"""Services module"""

from graymall.services.errors import AffiliateSettingsError, CheckoutError, ServiceError, WithdrawalError
from graymall.services.payments import StripeService, get_stripe_service
from graymall.services.payout_batch import BatchSummary, WithdrawalBatchProcessor
from graymall.services.settlement import AffiliateConfig, SettlementSplit, calculate_split

__all__ = [
    "ServiceError",
    "WithdrawalError",
    "CheckoutError",
    "AffiliateSettingsError",
    "StripeService",
    "get_stripe_service",
    "WithdrawalBatchProcessor",
    "BatchSummary",
    "AffiliateConfig",
    "SettlementSplit",
    "calculate_split",
]
