"""
Withdrawal Request State Machine

    requested -> queued -> processing -> paid
        |          |  \\         \\
        v          v   v         v
      failed   canceled failed  failed

Every transition is a conditional UPDATE guarded on the current status,
so two writers racing on the same row (cancel vs. batch claim, or two
batch runs) resolve to exactly one winner. Terminal states have no
outgoing transitions.
"""

from datetime import date
from typing import Dict, FrozenSet, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.helpers import end_of_month, utc_now
from graymall.core.monitoring import WITHDRAWAL_REQUESTS
from graymall.models.user import User
from graymall.models.withdrawals import TERMINAL_WITHDRAWAL_STATUSES, WithdrawalRequest, WithdrawalStatus
from graymall.services.eligibility import check_eligibility
from graymall.services.errors import WithdrawalError
from graymall.services.payments import StripeService

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: Dict[WithdrawalStatus, FrozenSet[WithdrawalStatus]] = {
    WithdrawalStatus.REQUESTED: frozenset({WithdrawalStatus.QUEUED, WithdrawalStatus.FAILED}),
    WithdrawalStatus.QUEUED: frozenset(
        {WithdrawalStatus.PROCESSING, WithdrawalStatus.CANCELED, WithdrawalStatus.FAILED}
    ),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.PAID, WithdrawalStatus.FAILED}),
    **{status: frozenset() for status in TERMINAL_WITHDRAWAL_STATUSES},
}

# Timestamp column stamped when a request enters each status
_TRANSITION_TIMESTAMPS = {
    WithdrawalStatus.QUEUED: "queued_at",
    WithdrawalStatus.PROCESSING: "processing_started_at",
    WithdrawalStatus.PAID: "processed_at",
    WithdrawalStatus.FAILED: "processed_at",
    WithdrawalStatus.CANCELED: "canceled_at",
}

CANCEL_REJECTION_MESSAGES = {
    WithdrawalStatus.REQUESTED: "This request is still being checked and cannot be canceled yet.",
    WithdrawalStatus.PROCESSING: "This withdrawal is already being transferred and can no longer be canceled.",
    WithdrawalStatus.PAID: "This withdrawal has already been paid.",
    WithdrawalStatus.FAILED: "This withdrawal has already failed; the amount is back in your balance.",
    WithdrawalStatus.CANCELED: "This withdrawal has already been canceled.",
}


class InvalidTransitionError(Exception):
    """Transition not present in ALLOWED_TRANSITIONS"""

    def __init__(self, from_status: WithdrawalStatus, to_status: WithdrawalStatus):
        super().__init__(f"Invalid withdrawal transition: {from_status.value} -> {to_status.value}")
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: WithdrawalStatus, to_status: WithdrawalStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


async def transition(
    db: AsyncSession,
    request_id: UUID,
    from_status: WithdrawalStatus,
    to_status: WithdrawalStatus,
    **values,
) -> bool:
    """
    Move a request from ``from_status`` to ``to_status`` if it is still there.

    Returns True when this caller won the update, False when the row had
    already left ``from_status``. Does not commit.

    Raises:
        InvalidTransitionError: the pair is not an allowed transition
    """
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)

    timestamp_column = _TRANSITION_TIMESTAMPS.get(to_status)
    if timestamp_column and timestamp_column not in values:
        values[timestamp_column] = utc_now()

    result = await db.execute(
        update(WithdrawalRequest)
        .where(
            WithdrawalRequest.id == request_id,
            WithdrawalRequest.status == from_status,
        )
        .values(status=to_status, **values)
        .execution_options(synchronize_session="fetch")
    )
    won = result.rowcount == 1

    if won:
        logger.info(
            "Withdrawal status changed",
            request_id=str(request_id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
    else:
        logger.info(
            "Withdrawal transition lost race",
            request_id=str(request_id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
    return won


def estimated_payout_date(request: WithdrawalRequest) -> date:
    """Requests are paid by the batch run at the end of their target month."""
    return end_of_month(request.target_year, request.target_month)


async def create_withdrawal(
    db: AsyncSession,
    user: User,
    amount: int,
    stripe_service: StripeService,
) -> WithdrawalRequest:
    """
    Create a queued withdrawal after the eligibility gate passes.

    The user row is locked for the duration so two concurrent requests
    cannot both pass the balance check against the same earnings.

    Raises:
        WithdrawalError: the gate rejected the request
    """
    locked = await db.execute(select(User).where(User.id == user.id).with_for_update())
    user = locked.scalar_one()

    result = await check_eligibility(db, user, stripe_service, amount=amount)
    if not result.eligible:
        # Keep the refreshed payout flags even though the request is refused
        await db.commit()
        WITHDRAWAL_REQUESTS.labels(result=result.reason.value).inc()
        logger.info(
            "Withdrawal rejected",
            user_id=str(user.id),
            amount=amount,
            reason=result.reason.value,
        )
        result.raise_for_reason()

    now = utc_now()
    request = WithdrawalRequest(
        user_id=user.id,
        amount=amount,
        # Eligibility was just confirmed, so the request skips requested
        status=WithdrawalStatus.QUEUED,
        requested_at=now,
        queued_at=now,
        target_year=now.year,
        target_month=now.month,
    )
    db.add(request)
    await db.commit()
    await db.refresh(request)

    WITHDRAWAL_REQUESTS.labels(result="queued").inc()
    logger.info(
        "Withdrawal queued",
        request_id=str(request.id),
        user_id=str(user.id),
        amount=amount,
        target_year=request.target_year,
        target_month=request.target_month,
    )
    return request


async def get_user_withdrawal(db: AsyncSession, user_id: UUID, request_id: UUID) -> WithdrawalRequest:
    request = await db.get(WithdrawalRequest, request_id)
    if request is None or request.user_id != user_id:
        raise WithdrawalError("not_found", "Withdrawal request not found", status_code=404)
    return request


async def cancel_withdrawal(db: AsyncSession, user_id: UUID, request_id: UUID) -> WithdrawalRequest:
    """
    Cancel a queued request owned by ``user_id``.

    Raises:
        WithdrawalError: not_found, or cannot_cancel with a status-specific message
    """
    request = await get_user_withdrawal(db, user_id, request_id)

    if request.status != WithdrawalStatus.QUEUED:
        raise WithdrawalError(
            "cannot_cancel",
            CANCEL_REJECTION_MESSAGES[WithdrawalStatus(request.status)],
            status_code=409,
            details={"status": WithdrawalStatus(request.status).value},
        )

    won = await transition(db, request.id, WithdrawalStatus.QUEUED, WithdrawalStatus.CANCELED)
    if not won:
        # A batch run claimed it between our read and our write
        await db.rollback()
        await db.refresh(request)
        current = WithdrawalStatus(request.status)
        raise WithdrawalError(
            "cannot_cancel",
            CANCEL_REJECTION_MESSAGES.get(current, "This withdrawal can no longer be canceled."),
            status_code=409,
            details={"status": current.value},
        )

    await db.commit()
    await db.refresh(request)
    return request


async def list_withdrawals(
    db: AsyncSession,
    user_id: Optional[UUID] = None,
    status: Optional[WithdrawalStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[WithdrawalRequest], int]:
    """Requests newest first, optionally filtered by owner and status."""
    filters = []
    if user_id is not None:
        filters.append(WithdrawalRequest.user_id == user_id)
    if status is not None:
        filters.append(WithdrawalRequest.status == status)

    total = (
        await db.execute(select(func.count()).select_from(WithdrawalRequest).where(*filters))
    ).scalar() or 0

    result = await db.execute(
        select(WithdrawalRequest)
        .where(*filters)
        .order_by(WithdrawalRequest.requested_at.desc(), WithdrawalRequest.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total
