"""
Stripe Payments Service

Centralized, resilient Stripe integration with:
- Circuit breaker protection
- Retry with exponential backoff for read-only calls
- Deterministic idempotency keys for money movement
- Bounded deadlines on every call
- Comprehensive error handling
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe
import structlog

from graymall.core.config import settings
from graymall.core.monitoring import EXTERNAL_CALL_DURATION
from graymall.core.resilience import (
    STRIPE_CIRCUIT_CONFIG,
    STRIPE_RETRY_CONFIG,
    CircuitBreaker,
    retry_async,
    with_timeout,
)

logger = structlog.get_logger()


class StripeError(Exception):
    """Base exception for Stripe errors"""

    def __init__(self, message: str, code: Optional[str] = None, decline_code: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.decline_code = decline_code


class StripeServiceUnavailable(StripeError):
    """Raised when Stripe service is unavailable (circuit open)"""

    pass


class StripePaymentFailed(StripeError):
    """Raised when payment fails (card declined, etc.)"""

    pass


class StripeIdempotencyConflict(StripeError):
    """The idempotency key is in use by a concurrent request, or was used with other parameters"""

    pass


class TransferOutcomeUnknown(Exception):
    """
    A transfer call hit its deadline.

    Stripe may or may not have created the transfer. The request must be
    left as is and resolved by re-issuing the call with the same
    idempotency key.
    """

    def __init__(self, message: str, idempotency_key: str):
        super().__init__(message)
        self.idempotency_key = idempotency_key


@dataclass
class AccountStatus:
    """Payout-relevant view of a connected account"""

    account_id: str
    payouts_enabled: bool
    charges_enabled: bool
    details_submitted: bool
    has_bank_account: bool
    currently_due: List[str] = field(default_factory=list)
    past_due: List[str] = field(default_factory=list)

    @property
    def has_past_due(self) -> bool:
        return bool(self.past_due)


@dataclass
class TransferResult:
    transfer_id: str
    amount: int
    currency: str
    destination: str


def withdrawal_idempotency_key(request_id) -> str:
    """One key per withdrawal request, stable across retries and reruns."""
    return f"withdrawal_{request_id}"


class StripeService:
    """
    Resilient Stripe payment service.

    All Stripe operations go through this service to ensure:
    - Consistent error handling
    - Circuit breaker protection
    - Retry logic for transient failures (never for transfers)
    - Idempotency for safe retries
    - Bounded deadlines
    """

    _circuit_breaker = CircuitBreaker("stripe", STRIPE_CIRCUIT_CONFIG)

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = 0  # We handle retries ourselves

    @property
    def is_configured(self) -> bool:
        """Check if Stripe is properly configured"""
        return bool(settings.STRIPE_SECRET_KEY)

    @property
    def is_available(self) -> bool:
        """Check if Stripe service is available (circuit closed)"""
        return self._circuit_breaker.is_closed

    def _generate_idempotency_key(self, prefix: str = "") -> str:
        """Generate a one-off idempotency key for create calls without a natural key"""
        return f"{prefix}_{uuid.uuid4().hex}" if prefix else uuid.uuid4().hex

    async def _execute_stripe_call(
        self,
        operation_name: str,
        stripe_func,
        *args,
        idempotency_key: Optional[str] = None,
        skip_retry: bool = False,
        read_only: bool = False,
        **kwargs,
    ) -> Any:
        """
        Execute a Stripe API call with full resilience stack.

        Args:
            operation_name: Name for logging/metrics
            stripe_func: Stripe SDK function to call
            idempotency_key: Key for safe retries (auto-generated for writes if not provided)
            skip_retry: Single attempt only (money movement)
            read_only: GET call, no idempotency key is sent
            *args, **kwargs: Arguments for the Stripe function
        """
        if not self.is_configured:
            raise StripeError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

        if idempotency_key is None and not read_only:
            idempotency_key = self._generate_idempotency_key(operation_name)

        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        loop = asyncio.get_running_loop()

        def sync_call():
            start = time.time()
            status = "success"
            try:
                return stripe_func(*args, **kwargs)
            except stripe.RateLimitError as e:
                status = "rate_limited"
                raise ConnectionError(f"Stripe rate limited: {e.user_message or e}")
            except stripe.APIConnectionError as e:
                status = "connection_error"
                raise ConnectionError(f"Stripe connection error: {e.user_message or e}")
            except stripe.IdempotencyError as e:
                status = "idempotency_conflict"
                raise StripeIdempotencyConflict(e.user_message or str(e), code=getattr(e, "code", None))
            except stripe.CardError as e:
                status = "card_error"
                raise StripePaymentFailed(str(e), code=e.code, decline_code=getattr(e, "decline_code", None))
            except stripe.StripeError as e:
                status = "error"
                raise StripeError(e.user_message or str(e), code=getattr(e, "code", None))
            finally:
                EXTERNAL_CALL_DURATION.labels(
                    service="stripe", operation=operation_name, status=status
                ).observe(time.time() - start)

        async def async_call():
            return await with_timeout(
                lambda: loop.run_in_executor(None, sync_call),
                timeout=self.timeout,
                service_name="stripe",
                operation=operation_name,
            )

        try:
            if not await self._circuit_breaker._check_state():
                raise StripeServiceUnavailable(
                    "Stripe service temporarily unavailable. Please try again later."
                )

            if skip_retry:
                result = await async_call()
            else:
                result = await retry_async(
                    async_call,
                    config=STRIPE_RETRY_CONFIG,
                    service_name="stripe",
                    operation=operation_name,
                )

            await self._circuit_breaker._record_success()
            return result

        except StripeError as e:
            # Business errors do not count against the circuit
            logger.warning(
                f"Stripe {operation_name} failed",
                error=str(e),
                code=getattr(e, "code", None),
            )
            raise

        except Exception as e:
            await self._circuit_breaker._record_failure(e)
            logger.error(
                f"Stripe {operation_name} error",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    # ===========================================
    # Customer & Checkout Operations
    # ===========================================

    async def create_customer(self, email: str, metadata: Optional[Dict] = None) -> Dict:
        """Create a new Stripe customer"""
        params = {"email": email}
        if metadata:
            params["metadata"] = metadata

        result = await self._execute_stripe_call(
            "create_customer",
            stripe.Customer.create,
            **params,
        )
        return {"customer_id": result.id, "email": result.email}

    async def create_checkout_session(
        self,
        line_items: List[Dict],
        mode: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        """Create a Stripe Checkout Session"""
        params = {
            "payment_method_types": ["card"],
            "line_items": line_items,
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        if metadata:
            params["metadata"] = metadata
            if mode == "payment":
                # Copy onto the PaymentIntent so payment_intent.* events carry the order id
                params["payment_intent_data"] = {"metadata": metadata}
            elif mode == "subscription":
                params["subscription_data"] = {"metadata": metadata}

        result = await self._execute_stripe_call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )

        return {
            "session_id": result.id,
            "checkout_url": result.url,
        }

    # ===========================================
    # Webhook Handling
    # ===========================================

    def construct_webhook_event(
        self,
        payload: bytes,
        signature: str,
        webhook_secret: Optional[str] = None,
    ) -> Dict:
        """
        Construct and verify a webhook event.

        Synchronous: signature checking is local HMAC work, no network call.
        """
        webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not webhook_secret:
            raise StripeError("Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise StripeError(f"Invalid webhook signature: {e}")

        # Verified; hand back the plain payload so handlers work on dicts
        return json.loads(payload)

    # ===========================================
    # Account Operations (for Connect)
    # ===========================================

    async def create_connect_account(self, email: str, user_id: str) -> Dict:
        """
        Create an Express connected account for payouts.

        Payout schedule is manual: money leaves the connected account only
        through the withdrawal batch.
        """
        result = await self._execute_stripe_call(
            "create_connect_account",
            stripe.Account.create,
            idempotency_key=f"connect_account_{user_id}",
            type="express",
            country=settings.STRIPE_CONNECT_COUNTRY,
            email=email,
            capabilities={"transfers": {"requested": True}},
            business_type="individual",
            business_profile={
                "url": settings.FRONTEND_URL,
                "product_description": "Digital content (articles) sales",
                "mcc": "5818",
            },
            settings={"payouts": {"schedule": {"interval": "manual"}}},
            metadata={"user_id": user_id, "platform": "graymall"},
        )

        return {"account_id": result.id}

    async def create_account_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
        link_type: str = "account_onboarding",
    ) -> Dict:
        """Create an account link for Connect onboarding"""
        result = await self._execute_stripe_call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type=link_type,
        )

        return {
            "url": result.url,
            "expires_at": result.expires_at,
        }

    async def get_account_status(self, account_id: str) -> AccountStatus:
        """Fresh read of a connected account's payout capability"""
        result = await self._execute_stripe_call(
            "get_account",
            stripe.Account.retrieve,
            account_id,
            read_only=True,
        )
        return account_status_from_stripe(result)

    # ===========================================
    # Transfer Operations (Payouts to Connected Accounts)
    # ===========================================

    async def create_transfer(
        self,
        amount: int,
        destination: str,
        idempotency_key: str,
        currency: Optional[str] = None,
        metadata: Optional[Dict] = None,
        transfer_group: Optional[str] = None,
    ) -> TransferResult:
        """
        Create a transfer to a connected Stripe account.

        Single attempt, no automatic retry. Replaying the same idempotency
        key returns the original transfer instead of creating a new one.

        Raises:
            TransferOutcomeUnknown: the deadline passed before Stripe answered, or
                the key is held by another call
            StripeError / ConnectionError: the transfer was not created
        """
        params = {
            "amount": amount,
            "currency": currency or settings.PAYOUT_CURRENCY,
            "destination": destination,
        }
        if metadata:
            params["metadata"] = metadata
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            result = await self._execute_stripe_call(
                "create_transfer",
                stripe.Transfer.create,
                idempotency_key=idempotency_key,
                skip_retry=True,
                **params,
            )
        except TimeoutError as e:
            raise TransferOutcomeUnknown(str(e), idempotency_key=idempotency_key) from e
        except StripeIdempotencyConflict as e:
            # Another call with this key is in flight or already settled it
            raise TransferOutcomeUnknown(str(e), idempotency_key=idempotency_key) from e

        logger.info(
            "Transfer created",
            transfer_id=result.id,
            destination=destination,
            amount=amount,
            idempotency_key=idempotency_key,
        )

        return TransferResult(
            transfer_id=result.id,
            amount=result.amount,
            currency=result.currency,
            destination=result.destination,
        )

    async def find_transfer(self, transfer_group: str) -> Optional[TransferResult]:
        """
        Look up a transfer by its group.

        Stripe forgets idempotency keys after 24 hours, so reconciliation
        checks for an existing transfer before re-issuing one.
        """
        result = await self._execute_stripe_call(
            "list_transfers",
            stripe.Transfer.list,
            transfer_group=transfer_group,
            limit=1,
            read_only=True,
        )
        transfers = list(result.data or [])
        if not transfers:
            return None

        transfer = transfers[0]
        return TransferResult(
            transfer_id=transfer["id"],
            amount=transfer["amount"],
            currency=transfer["currency"],
            destination=transfer["destination"],
        )


def withdrawal_transfer_group(request_id) -> str:
    return f"withdrawal_{request_id}"


def account_status_from_stripe(account) -> AccountStatus:
    """Map a Stripe Account object (or webhook payload dict) to AccountStatus"""
    if hasattr(account, "to_dict"):
        account = account.to_dict()
    requirements = account.get("requirements") or {}
    external_accounts = account.get("external_accounts") or {}
    bank_accounts = external_accounts.get("data") or []

    return AccountStatus(
        account_id=account.get("id"),
        payouts_enabled=bool(account.get("payouts_enabled")),
        charges_enabled=bool(account.get("charges_enabled")),
        details_submitted=bool(account.get("details_submitted")),
        has_bank_account=bool(bank_accounts) or bool(external_accounts.get("total_count")),
        currently_due=list(requirements.get("currently_due") or []),
        past_due=list(requirements.get("past_due") or []),
    )


# Singleton instance
_stripe_service: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton"""
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service
