"""
Payout Eligibility Gate

Decides whether a user may submit a withdrawal. The cached payout flags
on the user row are only a hint: every decision that can move money
re-reads the connected account from Stripe first.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.helpers import utc_now
from graymall.models.user import StripeAccountStatus, User
from graymall.services.errors import WithdrawalError
from graymall.services.ledger import get_balance
from graymall.services.payments import AccountStatus, StripeError, StripeService

logger = structlog.get_logger()


class IneligibilityReason(str, enum.Enum):
    BELOW_MINIMUM = "below_minimum"
    NO_EXTERNAL_ACCOUNT = "no_external_account"
    PAYOUTS_NOT_ENABLED = "payouts_not_enabled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STRIPE_ACCOUNT_ERROR = "stripe_account_error"


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[IneligibilityReason] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    account: Optional[AccountStatus] = None

    def raise_for_reason(self) -> None:
        if self.eligible:
            return
        status_code = 502 if self.reason == IneligibilityReason.STRIPE_ACCOUNT_ERROR else 400
        raise WithdrawalError(self.reason.value, self.message, status_code=status_code, details=self.details)


def sync_account_flags(user: User, account: AccountStatus) -> None:
    """Copy a fresh provider read onto the user's cached payout flags."""
    user.identity_submitted = account.details_submitted
    user.bank_account_registered = account.has_bank_account
    user.payouts_enabled = account.payouts_enabled
    user.charges_enabled = account.charges_enabled
    if account.payouts_enabled:
        user.stripe_account_status = StripeAccountStatus.ACTIVE.value
    elif account.details_submitted:
        user.stripe_account_status = StripeAccountStatus.RESTRICTED.value
    else:
        user.stripe_account_status = StripeAccountStatus.ONBOARDING.value
    user.payout_status_synced_at = utc_now()


async def refresh_payout_account(user: User, stripe_service: StripeService) -> AccountStatus:
    """
    Read the connected account from Stripe and refresh the cached flags.

    Raises:
        WithdrawalError: stripe_account_error when Stripe cannot be read
    """
    try:
        account = await stripe_service.get_account_status(user.stripe_account_id)
    except (StripeError, ConnectionError, TimeoutError) as e:
        logger.warning(
            "Payout account lookup failed",
            user_id=str(user.id),
            account_id=user.stripe_account_id,
            error=str(e),
        )
        raise WithdrawalError(
            IneligibilityReason.STRIPE_ACCOUNT_ERROR.value,
            "Could not verify your payout account. Please try again later.",
            status_code=502,
        ) from e

    sync_account_flags(user, account)
    return account


def _ineligible(reason: IneligibilityReason, message: str, **details) -> EligibilityResult:
    return EligibilityResult(eligible=False, reason=reason, message=message, details=details)


async def check_eligibility(
    db: AsyncSession,
    user: User,
    stripe_service: StripeService,
    amount: Optional[int] = None,
) -> EligibilityResult:
    """
    Run the withdrawal gates in order.

    1. below_minimum (skipped when no amount is given)
    2. no_external_account
    3. payouts_not_enabled, from a fresh Stripe read
    4. insufficient_balance (skipped when no amount is given)

    A failed Stripe read is reported as stripe_account_error. The cached
    flags on ``user`` are refreshed as a side effect; the caller commits.
    """
    if amount is not None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError("Withdrawal amount must be an integer")
        if amount < settings.MINIMUM_WITHDRAWAL:
            return _ineligible(
                IneligibilityReason.BELOW_MINIMUM,
                f"The minimum withdrawal is {settings.MINIMUM_WITHDRAWAL} yen.",
                minimum_withdrawal=settings.MINIMUM_WITHDRAWAL,
                requested=amount,
            )

    if not user.has_external_account:
        return _ineligible(
            IneligibilityReason.NO_EXTERNAL_ACCOUNT,
            "Register a payout account before requesting a withdrawal.",
        )

    try:
        account = await refresh_payout_account(user, stripe_service)
    except WithdrawalError as e:
        return _ineligible(IneligibilityReason.STRIPE_ACCOUNT_ERROR, e.message)

    if not account.payouts_enabled:
        result = _ineligible(
            IneligibilityReason.PAYOUTS_NOT_ENABLED,
            "Identity verification or bank account registration is incomplete.",
            currently_due=account.currently_due,
            past_due=account.past_due,
            has_past_due=account.has_past_due,
            details_submitted=account.details_submitted,
            bank_account_registered=account.has_bank_account,
        )
        result.account = account
        return result

    if amount is not None:
        balance = await get_balance(db, user.id)
        if amount > balance.withdrawable_amount:
            result = _ineligible(
                IneligibilityReason.INSUFFICIENT_BALANCE,
                "The requested amount exceeds your withdrawable balance.",
                withdrawable=balance.withdrawable_amount,
                requested=amount,
            )
            result.account = account
            return result

    return EligibilityResult(eligible=True, account=account)
