"""API v1 routes"""

from fastapi import APIRouter

from graymall.api.v1.endpoints import (
    admin,
    articles,
    checkout,
    earnings,
    health,
    payout_account,
    webhooks,
    withdrawals,
)

router = APIRouter()

# Include all endpoint routers
router.include_router(earnings.router, prefix="/earnings", tags=["Earnings"])
router.include_router(withdrawals.router, prefix="/withdrawals", tags=["Withdrawals"])
router.include_router(payout_account.router, prefix="/payout-account", tags=["Payout Account"])
router.include_router(checkout.router, prefix="/checkout", tags=["Checkout"])
router.include_router(articles.router, prefix="/articles", tags=["Articles"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

# Operator routes (batch API key or admin session)
router.include_router(admin.router, prefix="/admin", tags=["Admin"])

# Health checks
router.include_router(health.router, prefix="/health", tags=["Health"])
