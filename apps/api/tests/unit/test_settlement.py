"""
Unit Tests for the Order Settlement Calculator
Fee, affiliate and author shares for a single sale
"""

import uuid

import pytest

from graymall.services.settlement import (
    AffiliateConfig,
    InvalidSettlementInput,
    SettlementSplit,
    SplitInvariantError,
    calculate_split,
    is_affiliate_eligible,
    verify_split,
)

AUTHOR_ID = uuid.uuid4()
REFERRER_ID = uuid.uuid4()


def referral(rate: int, referrer_id=REFERRER_ID, enabled: bool = True) -> AffiliateConfig:
    return AffiliateConfig(enabled=enabled, rate=rate, referrer_id=referrer_id)


class TestCalculateSplit:
    """Test the fee split"""

    @pytest.mark.unit
    def test_split_without_affiliate(self):
        """Test 15% platform fee, remainder to the author"""
        split = calculate_split(1000, AUTHOR_ID)

        assert split.platform_fee == 150
        assert split.author_amount == 850
        assert split.affiliate_amount == 0
        assert split.total == 1000

    @pytest.mark.unit
    def test_split_with_affiliate(self):
        """Test affiliate reward comes out of the post-fee amount"""
        split = calculate_split(1000, AUTHOR_ID, referral(20))

        assert split.platform_fee == 150
        assert split.affiliate_amount == 170
        assert split.author_amount == 680

    @pytest.mark.unit
    def test_rounding_favours_platform_and_affiliate_floor(self):
        """Test every division floors and the author absorbs the remainder"""
        split = calculate_split(999, AUTHOR_ID, referral(30))

        assert split.platform_fee == 149
        assert split.affiliate_amount == 255
        assert split.author_amount == 595

    @pytest.mark.unit
    def test_smallest_sale(self):
        """Test a 1 yen sale pays no fee"""
        split = calculate_split(1, AUTHOR_ID)

        assert split == SettlementSplit(amount=1, platform_fee=0, author_amount=1, affiliate_amount=0)

    @pytest.mark.unit
    def test_custom_fee_rate(self):
        split = calculate_split(1000, AUTHOR_ID, fee_rate=0.1)

        assert split.platform_fee == 100
        assert split.author_amount == 900

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [1, 7, 99, 100, 333, 999, 1000, 4321, 98765])
    @pytest.mark.parametrize("rate", [0, 10, 20, 30, 40, 50])
    def test_split_always_balances(self, amount, rate):
        """Test the parts are non-negative and sum to the amount"""
        split = calculate_split(amount, AUTHOR_ID, referral(rate))

        assert split.platform_fee >= 0
        assert split.author_amount >= 0
        assert split.affiliate_amount >= 0
        assert split.platform_fee + split.author_amount + split.affiliate_amount == amount


class TestAffiliateEligibility:
    """Test when a referral earns a share"""

    @pytest.mark.unit
    def test_self_referral_earns_nothing(self):
        split = calculate_split(1000, AUTHOR_ID, referral(20, referrer_id=AUTHOR_ID))

        assert split.affiliate_amount == 0
        assert split.author_amount == 850

    @pytest.mark.unit
    def test_disabled_affiliate_earns_nothing(self):
        split = calculate_split(1000, AUTHOR_ID, referral(20, enabled=False))

        assert split.affiliate_amount == 0

    @pytest.mark.unit
    def test_zero_rate_earns_nothing(self):
        split = calculate_split(1000, AUTHOR_ID, referral(0))

        assert split.affiliate_amount == 0

    @pytest.mark.unit
    def test_missing_referrer_earns_nothing(self):
        split = calculate_split(1000, AUTHOR_ID, referral(20, referrer_id=None))

        assert split.affiliate_amount == 0

    @pytest.mark.unit
    def test_is_affiliate_eligible(self):
        assert is_affiliate_eligible(referral(10), AUTHOR_ID) is True
        assert is_affiliate_eligible(referral(10, referrer_id=AUTHOR_ID), AUTHOR_ID) is False
        assert is_affiliate_eligible(AffiliateConfig(), AUTHOR_ID) is False


class TestInvalidInput:
    """Test the calculator rejects amounts and rates outside its domain"""

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [0, -1, -1000])
    def test_non_positive_amount(self, amount):
        with pytest.raises(InvalidSettlementInput):
            calculate_split(amount, AUTHOR_ID)

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [10.5, "1000", None, True])
    def test_non_integer_amount(self, amount):
        with pytest.raises(InvalidSettlementInput):
            calculate_split(amount, AUTHOR_ID)

    @pytest.mark.unit
    @pytest.mark.parametrize("rate", [-10, 51, 100])
    def test_affiliate_rate_out_of_range(self, rate):
        with pytest.raises(InvalidSettlementInput):
            calculate_split(1000, AUTHOR_ID, referral(rate))

    @pytest.mark.unit
    def test_fractional_affiliate_rate(self):
        with pytest.raises(InvalidSettlementInput):
            calculate_split(1000, AUTHOR_ID, referral(12.5))

    @pytest.mark.unit
    @pytest.mark.parametrize("fee_rate", [-0.1, 1.0, 1.5])
    def test_fee_rate_out_of_range(self, fee_rate):
        with pytest.raises(InvalidSettlementInput):
            calculate_split(1000, AUTHOR_ID, fee_rate=fee_rate)

    @pytest.mark.unit
    def test_invalid_input_is_value_error(self):
        """Test callers catching ValueError also catch bad input"""
        with pytest.raises(ValueError):
            calculate_split(0, AUTHOR_ID)


class TestVerifySplit:

    @pytest.mark.unit
    def test_balanced_split_passes(self):
        verify_split(SettlementSplit(amount=1000, platform_fee=150, author_amount=680, affiliate_amount=170))

    @pytest.mark.unit
    def test_unbalanced_split_raises(self):
        split = SettlementSplit(amount=1000, platform_fee=150, author_amount=700, affiliate_amount=170)

        with pytest.raises(SplitInvariantError) as exc_info:
            verify_split(split)

        assert exc_info.value.amount == 1000
        assert exc_info.value.author_amount == 700

    @pytest.mark.unit
    def test_negative_part_raises(self):
        split = SettlementSplit(amount=1000, platform_fee=150, author_amount=900, affiliate_amount=-50)

        with pytest.raises(SplitInvariantError):
            verify_split(split)
