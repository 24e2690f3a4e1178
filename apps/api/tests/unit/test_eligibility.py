"""
Unit Tests for the Payout Eligibility Gate
"""

import pytest

from graymall.models.user import StripeAccountStatus
from graymall.services.eligibility import IneligibilityReason, check_eligibility
from graymall.services.errors import WithdrawalError
from graymall.services.payments import StripeError


@pytest.fixture
async def funded_creator(creator, make_article, make_paid_order):
    """Creator with 8500 yen withdrawable"""
    article = await make_article(creator, price=10000)
    await make_paid_order(article)
    return creator


class TestEligibilityGates:
    """Test the gates run in order and report the first failure"""

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_eligible(self, db_session, funded_creator, stripe_fake):
        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=5000)

        assert result.eligible is True
        assert result.reason is None
        assert result.account.payouts_enabled is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_below_minimum_checked_first(self, db_session, make_user, stripe_fake):
        """Test the minimum is reported even when no payout account exists"""
        user = await make_user()

        result = await check_eligibility(db_session, user, stripe_fake, amount=2999)

        assert result.eligible is False
        assert result.reason == IneligibilityReason.BELOW_MINIMUM
        assert result.details["minimum_withdrawal"] == 3000
        assert result.details["requested"] == 2999

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_minimum_is_inclusive(self, db_session, funded_creator, stripe_fake):
        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=3000)

        assert result.eligible is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_external_account(self, db_session, make_user, stripe_fake):
        user = await make_user()

        result = await check_eligibility(db_session, user, stripe_fake, amount=5000)

        assert result.reason == IneligibilityReason.NO_EXTERNAL_ACCOUNT

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_payouts_not_enabled_uses_fresh_read(self, db_session, funded_creator, stripe_fake):
        """Test the provider read wins over the cached flags"""
        assert funded_creator.payouts_enabled is True
        stripe_fake.add_account(
            funded_creator.stripe_account_id,
            payouts_enabled=False,
            currently_due=["individual.verification.document"],
            past_due=["external_account"],
            has_bank_account=False,
        )

        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=5000)

        assert result.reason == IneligibilityReason.PAYOUTS_NOT_ENABLED
        assert result.details["currently_due"] == ["individual.verification.document"]
        assert result.details["has_past_due"] is True
        assert result.details["bank_account_registered"] is False
        # Cached flags refreshed as a side effect
        assert funded_creator.payouts_enabled is False
        assert funded_creator.bank_account_registered is False
        assert funded_creator.stripe_account_status == StripeAccountStatus.RESTRICTED.value

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_insufficient_balance(self, db_session, funded_creator, stripe_fake):
        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=9000)

        assert result.reason == IneligibilityReason.INSUFFICIENT_BALANCE
        assert result.details == {"withdrawable": 8500, "requested": 9000}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_stripe_read_failure(self, db_session, funded_creator, stripe_fake):
        stripe_fake.account_error = StripeError("account lookup failed")

        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=5000)

        assert result.reason == IneligibilityReason.STRIPE_ACCOUNT_ERROR

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_connection_error_is_stripe_account_error(self, db_session, funded_creator, stripe_fake):
        stripe_fake.account_error = ConnectionError("Stripe connection error")

        result = await check_eligibility(db_session, funded_creator, stripe_fake, amount=5000)

        assert result.reason == IneligibilityReason.STRIPE_ACCOUNT_ERROR

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_without_amount_skips_amount_gates(self, db_session, creator, stripe_fake):
        """Test the account-only check used by the eligibility endpoint"""
        result = await check_eligibility(db_session, creator, stripe_fake)

        assert result.eligible is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [5000.0, "5000", True])
    async def test_non_integer_amount_rejected(self, db_session, creator, stripe_fake, amount):
        with pytest.raises(ValueError):
            await check_eligibility(db_session, creator, stripe_fake, amount=amount)


class TestRaiseForReason:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_rejection_maps_to_400(self, db_session, make_user, stripe_fake):
        user = await make_user()
        result = await check_eligibility(db_session, user, stripe_fake, amount=5000)

        with pytest.raises(WithdrawalError) as exc_info:
            result.raise_for_reason()

        assert exc_info.value.code == "no_external_account"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_provider_failure_maps_to_502(self, db_session, creator, stripe_fake):
        stripe_fake.account_error = StripeError("down")
        result = await check_eligibility(db_session, creator, stripe_fake)

        with pytest.raises(WithdrawalError) as exc_info:
            result.raise_for_reason()

        assert exc_info.value.code == "stripe_account_error"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_eligible_does_not_raise(self, db_session, creator, stripe_fake):
        result = await check_eligibility(db_session, creator, stripe_fake)

        result.raise_for_reason()
