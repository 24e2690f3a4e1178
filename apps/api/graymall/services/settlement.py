"""
Order Settlement Calculator

Splits a sale into platform fee, affiliate reward and author net.

    platform_fee     = floor(amount * fee_rate)
    affiliate_amount = floor((amount - platform_fee) * rate / 100)   # only for a valid referral
    author_amount    = amount - platform_fee - affiliate_amount

Every division floors, so the author absorbs the rounding remainder.
This rounding policy is a fixed contract: changing it changes who bears
fractional-unit losses. Pure functions only, no I/O.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional
from uuid import UUID

from graymall.core.config import settings

MAX_AFFILIATE_RATE = 50


class InvalidSettlementInput(ValueError):
    """Caller passed an amount or rate the calculator does not accept"""


class SplitInvariantError(Exception):
    """A split does not balance to its order amount"""

    def __init__(self, message: str, amount: int, platform_fee: int, author_amount: int, affiliate_amount: int):
        super().__init__(message)
        self.amount = amount
        self.platform_fee = platform_fee
        self.author_amount = author_amount
        self.affiliate_amount = affiliate_amount


@dataclass(frozen=True)
class AffiliateConfig:
    """Article affiliate settings plus the referrer attached to the sale"""

    enabled: bool = False
    rate: int = 0
    referrer_id: Optional[UUID] = None


@dataclass(frozen=True)
class SettlementSplit:
    amount: int
    platform_fee: int
    author_amount: int
    affiliate_amount: int

    @property
    def total(self) -> int:
        return self.platform_fee + self.author_amount + self.affiliate_amount


def _require_amount(amount) -> int:
    # bool is an int subclass; True is not a price
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidSettlementInput(f"Amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidSettlementInput(f"Amount must be positive, got {amount}")
    return amount


def _fee_rate(fee_rate) -> Decimal:
    rate = Decimal(str(settings.PLATFORM_FEE_RATE if fee_rate is None else fee_rate))
    if rate < 0 or rate >= 1:
        raise InvalidSettlementInput(f"Fee rate must be in [0, 1), got {rate}")
    return rate


def is_affiliate_eligible(affiliate: AffiliateConfig, author_id: UUID) -> bool:
    """A referral earns only when enabled, rated, present and not self-referred."""
    return (
        affiliate.enabled
        and affiliate.rate > 0
        and affiliate.referrer_id is not None
        and affiliate.referrer_id != author_id
    )


def calculate_split(
    amount: int,
    author_id: UUID,
    affiliate: Optional[AffiliateConfig] = None,
    fee_rate: Optional[float] = None,
) -> SettlementSplit:
    """
    Compute the fee split for one sale.

    Args:
        amount: Sale amount in the smallest currency unit
        author_id: Article author
        affiliate: Affiliate configuration; None means no affiliate
        fee_rate: Platform fee rate; defaults to PLATFORM_FEE_RATE

    Raises:
        InvalidSettlementInput: amount or rate outside the accepted domain
    """
    amount = _require_amount(amount)
    rate = _fee_rate(fee_rate)
    affiliate = affiliate or AffiliateConfig()

    if isinstance(affiliate.rate, bool) or not isinstance(affiliate.rate, int):
        raise InvalidSettlementInput("Affiliate rate must be an integer percentage")
    if not 0 <= affiliate.rate <= MAX_AFFILIATE_RATE:
        raise InvalidSettlementInput(
            f"Affiliate rate must be between 0 and {MAX_AFFILIATE_RATE}, got {affiliate.rate}"
        )

    platform_fee = int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_FLOOR))

    affiliate_amount = 0
    if is_affiliate_eligible(affiliate, author_id):
        affiliate_amount = (amount - platform_fee) * affiliate.rate // 100

    author_amount = amount - platform_fee - affiliate_amount

    split = SettlementSplit(
        amount=amount,
        platform_fee=platform_fee,
        author_amount=author_amount,
        affiliate_amount=affiliate_amount,
    )
    verify_split(split)
    return split


def verify_split(split: SettlementSplit) -> None:
    """Raise SplitInvariantError unless the parts are non-negative and sum to the amount."""
    parts = (split.platform_fee, split.author_amount, split.affiliate_amount)
    if any(part < 0 for part in parts) or split.total != split.amount:
        raise SplitInvariantError(
            f"Split does not balance: {split.platform_fee} + {split.author_amount} + "
            f"{split.affiliate_amount} != {split.amount}",
            amount=split.amount,
            platform_fee=split.platform_fee,
            author_amount=split.author_amount,
            affiliate_amount=split.affiliate_amount,
        )
