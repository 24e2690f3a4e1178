"""
Earnings Ledger

The balance is never stored. It is recomputed from paid orders and
withdrawal requests on every read:

    withdrawable = max(0, author + affiliate - pending - carry)

where ``carry`` is money already paid out but not yet matched by swept
order shares (a paid request rarely lines up exactly with whole orders).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.models.orders import Order, OrderStatus
from graymall.models.withdrawals import (
    PENDING_WITHDRAWAL_STATUSES,
    WithdrawalRequest,
    WithdrawalStatus,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class BalanceView:
    author_amount: int
    affiliate_amount: int
    pending_withdrawal_amount: int
    carry_amount: int

    @property
    def total_amount(self) -> int:
        return self.author_amount + self.affiliate_amount

    @property
    def withdrawable_amount(self) -> int:
        available = self.total_amount - self.pending_withdrawal_amount - self.carry_amount
        return max(0, available)


@dataclass(frozen=True)
class OrderShare:
    """One user's unswept portion of a paid order"""

    order_id: UUID
    kind: str  # "author" or "affiliate"
    amount: int
    paid_at: Optional[datetime]


async def _scalar_sum(db: AsyncSession, stmt) -> int:
    result = await db.execute(stmt)
    return int(result.scalar() or 0)


async def get_carry_amount(
    db: AsyncSession,
    user_id: UUID,
    exclude_request_id: Optional[UUID] = None,
) -> int:
    """Paid-out money not yet matched by swept order shares."""
    stmt = select(
        func.coalesce(
            func.sum(
                WithdrawalRequest.amount - func.coalesce(WithdrawalRequest.settled_order_amount, 0)
            ),
            0,
        )
    ).where(
        WithdrawalRequest.user_id == user_id,
        WithdrawalRequest.status == WithdrawalStatus.PAID,
    )
    if exclude_request_id is not None:
        stmt = stmt.where(WithdrawalRequest.id != exclude_request_id)
    return await _scalar_sum(db, stmt)


async def get_pending_withdrawal_amount(
    db: AsyncSession,
    user_id: UUID,
    up_to: Optional[WithdrawalRequest] = None,
) -> int:
    """
    Sum reserved by requests that have not reached a terminal status.

    With ``up_to``, queued requests behind it in batch order
    (requested_at, id) are left out, so an older request is never
    starved by a newer one.
    """
    stmt = select(func.coalesce(func.sum(WithdrawalRequest.amount), 0)).where(
        WithdrawalRequest.user_id == user_id,
        WithdrawalRequest.status.in_(PENDING_WITHDRAWAL_STATUSES),
    )
    if up_to is not None:
        stmt = stmt.where(
            or_(
                WithdrawalRequest.status != WithdrawalStatus.QUEUED,
                WithdrawalRequest.requested_at < up_to.requested_at,
                and_(
                    WithdrawalRequest.requested_at == up_to.requested_at,
                    WithdrawalRequest.id <= up_to.id,
                ),
            )
        )
    return await _scalar_sum(db, stmt)


async def get_balance(db: AsyncSession, user_id: UUID) -> BalanceView:
    """
    Compute a user's balance from unswept paid orders.

    Read-only. Orders landing mid-computation may or may not be counted;
    creation and settlement re-run this check before moving money.
    """
    author_amount = await _scalar_sum(
        db,
        select(func.coalesce(func.sum(Order.author_amount), 0)).where(
            Order.author_id == user_id,
            Order.status == OrderStatus.PAID,
            Order.author_withdrawal_id.is_(None),
        ),
    )
    affiliate_amount = await _scalar_sum(
        db,
        select(func.coalesce(func.sum(Order.affiliate_amount), 0)).where(
            Order.affiliate_user_id == user_id,
            Order.status == OrderStatus.PAID,
            Order.affiliate_amount > 0,
            Order.affiliate_withdrawal_id.is_(None),
        ),
    )

    return BalanceView(
        author_amount=author_amount,
        affiliate_amount=affiliate_amount,
        pending_withdrawal_amount=await get_pending_withdrawal_amount(db, user_id),
        carry_amount=await get_carry_amount(db, user_id),
    )


async def get_unswept_shares(db: AsyncSession, user_id: UUID) -> List[OrderShare]:
    """Author and affiliate shares still counted in the balance, oldest first."""
    author_rows = await db.execute(
        select(Order.id, Order.author_amount, Order.paid_at).where(
            Order.author_id == user_id,
            Order.status == OrderStatus.PAID,
            Order.author_withdrawal_id.is_(None),
        )
    )
    affiliate_rows = await db.execute(
        select(Order.id, Order.affiliate_amount, Order.paid_at).where(
            Order.affiliate_user_id == user_id,
            Order.status == OrderStatus.PAID,
            Order.affiliate_amount > 0,
            Order.affiliate_withdrawal_id.is_(None),
        )
    )

    shares = [
        OrderShare(order_id=row[0], kind="author", amount=row[1] or 0, paid_at=row[2])
        for row in author_rows.all()
    ]
    shares.extend(
        OrderShare(order_id=row[0], kind="affiliate", amount=row[1] or 0, paid_at=row[2])
        for row in affiliate_rows.all()
    )
    shares.sort(key=lambda s: (s.paid_at is None, s.paid_at or datetime.min, str(s.order_id), s.kind))
    return shares


async def sweep_orders_for_withdrawal(db: AsyncSession, request: WithdrawalRequest) -> int:
    """
    Mark order shares as consumed by a paid withdrawal.

    Shares are taken oldest first while the running total stays within
    ``request.amount`` plus the carry left by earlier payouts. Each share is
    claimed with a conditional update, so a share is swept at most once
    even if two sweeps race. Records and returns the swept total.

    The caller commits.
    """
    budget = request.amount + await get_carry_amount(db, request.user_id, exclude_request_id=request.id)

    swept = 0
    swept_orders = 0
    for share in await get_unswept_shares(db, request.user_id):
        if swept + share.amount > budget:
            break

        if share.kind == "author":
            column = Order.author_withdrawal_id
        else:
            column = Order.affiliate_withdrawal_id

        result = await db.execute(
            update(Order)
            .where(Order.id == share.order_id, column.is_(None))
            .values({column.key: request.id})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            swept += share.amount
            swept_orders += 1

    request.settled_order_amount = swept

    logger.info(
        "Orders swept into withdrawal",
        request_id=str(request.id),
        user_id=str(request.user_id),
        amount=request.amount,
        swept_amount=swept,
        swept_shares=swept_orders,
    )
    return swept
