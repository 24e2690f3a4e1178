"""Database models for GrayMall"""

from graymall.models.article import Article, ArticleStatus
from graymall.models.orders import Order, OrderStatus
from graymall.models.user import User, UserRole
from graymall.models.webhooks import WebhookEvent, WebhookEventStatus
from graymall.models.withdrawals import WithdrawalRequest, WithdrawalStatus

__all__ = [
    # Users
    "User",
    "UserRole",
    # Catalog
    "Article",
    "ArticleStatus",
    # Earnings ledger
    "Order",
    "OrderStatus",
    "WithdrawalRequest",
    "WithdrawalStatus",
    # Webhooks
    "WebhookEvent",
    "WebhookEventStatus",
]
