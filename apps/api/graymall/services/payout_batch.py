"""
Withdrawal Batch Settlement

Drains queued withdrawal requests oldest first and pays each one through
a Stripe transfer. Each request is settled in its own session and
transaction, so one failure never rolls back another.

Safety comes from two things, not from in-process locks:
- the queued -> processing claim is a conditional update, so concurrent
  runs never settle the same request twice
- the transfer carries the idempotency key ``withdrawal_<request_id>``,
  so re-issuing it after a crash returns the original transfer
"""

from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from graymall.core.config import settings
from graymall.core.helpers import as_utc, utc_now
from graymall.core.monitoring import WITHDRAWAL_SETTLED_AMOUNT, WITHDRAWAL_SETTLEMENTS
from graymall.models.user import User
from graymall.models.withdrawals import WithdrawalRequest, WithdrawalStatus
from graymall.services.eligibility import refresh_payout_account
from graymall.services.errors import WithdrawalError
from graymall.services.ledger import get_balance, get_pending_withdrawal_amount, sweep_orders_for_withdrawal
from graymall.services.payments import (
    StripeError,
    StripeService,
    TransferOutcomeUnknown,
    withdrawal_idempotency_key,
    withdrawal_transfer_group,
)
from graymall.services.withdrawals import transition

logger = structlog.get_logger()

PAID = "paid"
FAILED = "failed"
SKIPPED = "skipped"
RECONCILIATION_REQUIRED = "reconciliation_required"

NO_ACCOUNT_REASON = "No Stripe account configured"
PAYOUTS_DISABLED_REASON = "Payouts not enabled - KYC/bank details incomplete"
INSUFFICIENT_BALANCE_REASON = "Insufficient balance at settlement time"


@dataclass
class SettlementOutcome:
    request_id: str
    user_id: str
    amount: int
    status: str
    transfer_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    reconciliation_required: int = 0
    total_amount: int = 0
    details: List[SettlementOutcome] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record(self, outcome: SettlementOutcome) -> None:
        self.details.append(outcome)
        if outcome.status == PAID:
            self.processed += 1
            self.total_amount += outcome.amount
        elif outcome.status == FAILED:
            self.failed += 1
        elif outcome.status == RECONCILIATION_REQUIRED:
            self.reconciliation_required += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WithdrawalBatchProcessor:
    """Settles queued withdrawals against Stripe"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        stripe_service: StripeService,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.stripe = stripe_service
        self.batch_size = batch_size or settings.WITHDRAWAL_BATCH_SIZE

    async def run(self, year: Optional[int] = None, month: Optional[int] = None) -> BatchSummary:
        """
        Settle up to ``batch_size`` queued requests, oldest first.

        Per-request errors are isolated: they are logged, listed under
        ``errors`` and never abort the rest of the batch.
        """
        async with self.session_factory() as db:
            stmt = select(WithdrawalRequest.id).where(WithdrawalRequest.status == WithdrawalStatus.QUEUED)
            if year is not None:
                stmt = stmt.where(WithdrawalRequest.target_year == year)
            if month is not None:
                stmt = stmt.where(WithdrawalRequest.target_month == month)
            stmt = stmt.order_by(WithdrawalRequest.requested_at.asc(), WithdrawalRequest.id.asc()).limit(
                self.batch_size
            )
            request_ids = list((await db.execute(stmt)).scalars().all())

        logger.info("Withdrawal batch started", count=len(request_ids), year=year, month=month)

        summary = BatchSummary()
        for request_id in request_ids:
            try:
                summary.record(await self.settle(request_id))
            except Exception as e:
                logger.error(
                    "Unexpected error settling withdrawal",
                    request_id=str(request_id),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                summary.errors.append({"request_id": str(request_id), "error": str(e)})

        logger.info(
            "Withdrawal batch finished",
            processed=summary.processed,
            failed=summary.failed,
            skipped=summary.skipped,
            reconciliation_required=summary.reconciliation_required,
            total_amount=summary.total_amount,
            errors=len(summary.errors),
        )
        return summary

    async def settle(self, request_id: UUID) -> SettlementOutcome:
        """Settle one queued request."""
        async with self.session_factory() as db:
            request = await db.get(WithdrawalRequest, request_id)
            if request is None or request.status != WithdrawalStatus.QUEUED:
                return self._outcome(
                    request_id=request_id,
                    user_id=getattr(request, "user_id", None),
                    amount=getattr(request, "amount", 0),
                    status=SKIPPED,
                    error="Request is no longer queued",
                )

            # Rollback expires the instance, so keep plain copies for reporting
            ref = (request.id, request.user_id, request.amount)

            user = await db.get(User, request.user_id)
            if user is None or not user.stripe_account_id:
                return await self._fail(db, request, WithdrawalStatus.QUEUED, NO_ACCOUNT_REASON)

            try:
                account = await refresh_payout_account(user, self.stripe)
            except WithdrawalError as e:
                # Provider unreachable: leave it queued for the next run
                await db.rollback()
                return self._outcome(*ref, SKIPPED, error=e.message)

            if not account.payouts_enabled:
                return await self._fail(db, request, WithdrawalStatus.QUEUED, PAYOUTS_DISABLED_REASON)

            balance = await get_balance(db, user.id)
            # Reserve this request and whatever is ahead of it, not newer requests
            reserved = await get_pending_withdrawal_amount(db, user.id, up_to=request)
            if balance.total_amount - balance.carry_amount - reserved < 0:
                return await self._fail(db, request, WithdrawalStatus.QUEUED, INSUFFICIENT_BALANCE_REASON)

            if not await transition(db, request.id, WithdrawalStatus.QUEUED, WithdrawalStatus.PROCESSING):
                await db.rollback()
                return self._outcome(*ref, SKIPPED, error="Claimed by another run")
            # The claim must be durable before money moves
            await db.commit()

            return await self._transfer(db, request, user.stripe_account_id)

    async def reconcile(self, request_id: UUID) -> SettlementOutcome:
        """
        Resolve a request left in processing.

        Looks for a transfer Stripe already made for this request, then
        re-issues the call with the same idempotency key if none exists.

        Only requests claimed at least ``STUCK_PROCESSING_ALERT_HOURS`` ago
        (the ones the stuck report lists) are touched.

        Raises:
            WithdrawalError: not_found, or cannot_reconcile when not processing
                or claimed too recently
        """
        async with self.session_factory() as db:
            request = await db.get(WithdrawalRequest, request_id)
            if request is None:
                raise WithdrawalError("not_found", "Withdrawal request not found", status_code=404)
            if request.status != WithdrawalStatus.PROCESSING:
                raise WithdrawalError(
                    "cannot_reconcile",
                    f"Only processing requests can be reconciled (status: {WithdrawalStatus(request.status).value})",
                    status_code=409,
                )

            # A recent claim may still have its transfer in flight under the same key
            started = as_utc(request.processing_started_at)
            if started is not None:
                reconcile_after = started + timedelta(hours=settings.STUCK_PROCESSING_ALERT_HOURS)
                if reconcile_after > utc_now():
                    raise WithdrawalError(
                        "cannot_reconcile",
                        "This request was claimed recently and its transfer may still be in flight.",
                        status_code=409,
                        details={"reconcile_after": reconcile_after.isoformat()},
                    )

            user = await db.get(User, request.user_id)
            if user is None or not user.stripe_account_id:
                return await self._fail(db, request, WithdrawalStatus.PROCESSING, NO_ACCOUNT_REASON)

            try:
                existing = await self.stripe.find_transfer(withdrawal_transfer_group(request.id))
            except (StripeError, ConnectionError, TimeoutError) as e:
                logger.warning("Transfer lookup failed", request_id=str(request.id), error=str(e))
                return self._outcome(
                    request.id, request.user_id, request.amount, RECONCILIATION_REQUIRED, error=str(e)
                )

            if existing is not None:
                logger.info(
                    "Found existing transfer for withdrawal",
                    request_id=str(request.id),
                    transfer_id=existing.transfer_id,
                )
                return await self._mark_paid(db, request, existing.transfer_id)

            return await self._transfer(db, request, user.stripe_account_id)

    async def _transfer(self, db: AsyncSession, request: WithdrawalRequest, destination: str) -> SettlementOutcome:
        idempotency_key = withdrawal_idempotency_key(request.id)
        try:
            transfer = await self.stripe.create_transfer(
                amount=request.amount,
                destination=destination,
                idempotency_key=idempotency_key,
                transfer_group=withdrawal_transfer_group(request.id),
                metadata={
                    "withdrawal_request_id": str(request.id),
                    "user_id": str(request.user_id),
                    "target_period": f"{request.target_year}-{request.target_month:02d}",
                },
            )
        except TransferOutcomeUnknown as e:
            # Stripe may have moved the money; guessing either way is worse than waiting
            WITHDRAWAL_SETTLEMENTS.labels(status="unknown").inc()
            logger.error(
                "Transfer outcome unknown, left in processing",
                request_id=str(request.id),
                idempotency_key=idempotency_key,
                error=str(e),
            )
            return self._outcome(
                request.id, request.user_id, request.amount, RECONCILIATION_REQUIRED, error=str(e)
            )
        except (StripeError, ConnectionError) as e:
            return await self._fail(db, request, WithdrawalStatus.PROCESSING, str(e))

        return await self._mark_paid(db, request, transfer.transfer_id)

    async def _mark_paid(self, db: AsyncSession, request: WithdrawalRequest, transfer_id: str) -> SettlementOutcome:
        won = await transition(
            db,
            request.id,
            WithdrawalStatus.PROCESSING,
            WithdrawalStatus.PAID,
            stripe_transfer_id=transfer_id,
        )
        ref = (request.id, request.user_id, request.amount)
        if not won:
            await db.rollback()
            logger.error(
                "Transfer succeeded but request left processing",
                request_id=str(ref[0]),
                transfer_id=transfer_id,
            )
            return self._outcome(
                *ref,
                RECONCILIATION_REQUIRED,
                transfer_id=transfer_id,
                error="Request status changed during transfer",
            )

        await sweep_orders_for_withdrawal(db, request)
        await db.commit()

        WITHDRAWAL_SETTLEMENTS.labels(status=PAID).inc()
        WITHDRAWAL_SETTLED_AMOUNT.inc(request.amount)
        return self._outcome(request.id, request.user_id, request.amount, PAID, transfer_id=transfer_id)

    async def _fail(
        self,
        db: AsyncSession,
        request: WithdrawalRequest,
        from_status: WithdrawalStatus,
        reason: str,
    ) -> SettlementOutcome:
        ref = (request.id, request.user_id, request.amount)
        won = await transition(db, request.id, from_status, WithdrawalStatus.FAILED, failure_reason=reason)
        if not won:
            await db.rollback()
            return self._outcome(*ref, SKIPPED, error="Request status changed")
        await db.commit()

        WITHDRAWAL_SETTLEMENTS.labels(status=FAILED).inc()
        logger.warning(
            "Withdrawal failed",
            request_id=str(ref[0]),
            user_id=str(ref[1]),
            amount=ref[2],
            reason=reason,
        )
        return self._outcome(*ref, FAILED, error=reason)

    @staticmethod
    def _outcome(request_id, user_id, amount, status, transfer_id=None, error=None) -> SettlementOutcome:
        if status == SKIPPED:
            WITHDRAWAL_SETTLEMENTS.labels(status=SKIPPED).inc()
        return SettlementOutcome(
            request_id=str(request_id),
            user_id=str(user_id) if user_id else None,
            amount=amount or 0,
            status=status,
            transfer_id=transfer_id,
            error=error,
        )


async def find_stuck_withdrawals(db: AsyncSession, older_than_hours: Optional[int] = None) -> List[WithdrawalRequest]:
    """Requests sitting in processing longer than the alert threshold."""
    hours = older_than_hours or settings.STUCK_PROCESSING_ALERT_HOURS
    cutoff = utc_now() - timedelta(hours=hours)
    result = await db.execute(
        select(WithdrawalRequest)
        .where(
            WithdrawalRequest.status == WithdrawalStatus.PROCESSING,
            WithdrawalRequest.processing_started_at < cutoff,
        )
        .order_by(WithdrawalRequest.processing_started_at.asc())
    )
    return list(result.scalars().all())
