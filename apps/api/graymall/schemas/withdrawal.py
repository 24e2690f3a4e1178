"""Earnings and withdrawal schemas"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, StrictInt, field_validator


class BalanceResponse(BaseModel):
    """Current earnings balance (all amounts in yen)"""
    author_amount: int
    affiliate_amount: int
    total_amount: int
    pending_withdrawal_amount: int
    carry_amount: int
    withdrawable_amount: int
    minimum_withdrawal: int


class WithdrawalCreate(BaseModel):
    """Request a payout of part of the withdrawable balance"""
    amount: StrictInt = Field(..., gt=0)


class WithdrawalResponse(BaseModel):
    """Withdrawal request details"""
    id: UUID
    amount: int
    status: str
    requested_at: datetime
    queued_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    target_year: int
    target_month: int

    class Config:
        from_attributes = True

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, value):
        return getattr(value, "value", value)


class WithdrawalCreatedResponse(WithdrawalResponse):
    estimated_payout_date: date


class WithdrawalCanceledResponse(WithdrawalResponse):
    refunded_amount: int


class EligibilityResponse(BaseModel):
    """Whether the user can request a withdrawal right now"""
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    withdrawable_amount: int
    minimum_withdrawal: int


class AdminWithdrawalResponse(WithdrawalResponse):
    user_id: UUID
    settled_order_amount: Optional[int] = None


class BatchRunRequest(BaseModel):
    """Optional target period filter for a batch run"""
    year: Optional[int] = Field(default=None, ge=2000, le=9999)
    month: Optional[int] = Field(default=None, ge=1, le=12)


class SettlementDetail(BaseModel):
    request_id: str
    user_id: Optional[str] = None
    amount: int
    status: str
    transfer_id: Optional[str] = None
    error: Optional[str] = None


class BatchSummaryResponse(BaseModel):
    """Result of one batch run; failures are data, not transport errors"""
    processed: int
    failed: int
    skipped: int
    reconciliation_required: int
    total_amount: int
    details: List[SettlementDetail]
    errors: List[Dict[str, str]]
