"""
Unit tests for amount normalization.

Verifies:
- Float and garbage input rejection
- Percentage calls converted against the committed amount
- Half-up rounding at currency precision
- Payment percentage
"""

from decimal import Decimal

import pytest

from capital_kernel.domain.amounts import (
    normalize_call_amount,
    payment_percentage,
    quantize_money,
    require_positive,
    to_decimal,
)
from capital_kernel.domain.statuses import AmountType
from capital_kernel.exceptions import InvalidAmountError, ValidationError


class TestToDecimal:

    def test_accepts_int_str_decimal(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal("100.50") == Decimal("100.50")
        assert to_decimal(Decimal("7.25")) == Decimal("7.25")

    def test_rejects_float(self):
        with pytest.raises(InvalidAmountError) as exc_info:
            to_decimal(1.5, "amount")
        assert exc_info.value.field == "amount"

    def test_rejects_bool(self):
        with pytest.raises(InvalidAmountError):
            to_decimal(True)

    def test_rejects_garbage(self):
        with pytest.raises(InvalidAmountError):
            to_decimal("twelve")

    def test_rejects_non_finite(self):
        with pytest.raises(InvalidAmountError):
            to_decimal("NaN")
        with pytest.raises(InvalidAmountError):
            to_decimal(Decimal("Infinity"))

    def test_invalid_amount_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            to_decimal(0.1)


class TestRequirePositive:

    @pytest.mark.parametrize("value", [0, "-1", Decimal("-0.01")])
    def test_non_positive_rejected(self, value):
        with pytest.raises(InvalidAmountError) as exc_info:
            require_positive(value, "committed_amount")
        assert exc_info.value.field == "committed_amount"
        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_positive_returned(self):
        assert require_positive("0.01") == Decimal("0.01")


class TestNormalizeCallAmount:

    def test_percentage_of_commitment(self):
        result = normalize_call_amount(Decimal("70"), AmountType.PERCENTAGE, Decimal("200000"))
        assert result == Decimal("140000.00")

    def test_percentage_accepts_string_type(self):
        result = normalize_call_amount("25", "percentage", Decimal("100000"))
        assert result == Decimal("25000.00")

    def test_percentage_above_hundred_rejected(self):
        with pytest.raises(InvalidAmountError):
            normalize_call_amount(Decimal("100.01"), AmountType.PERCENTAGE, Decimal("1000"))

    def test_full_percentage_allowed(self):
        assert normalize_call_amount(100, AmountType.PERCENTAGE, Decimal("1000")) == Decimal("1000.00")

    def test_absolute_rounded_half_up(self):
        result = normalize_call_amount("1234.565", AmountType.ABSOLUTE, Decimal("5000"))
        assert result == Decimal("1234.57")

    def test_percentage_rounded_half_up(self):
        # 33.335% of 1000 = 333.35
        result = normalize_call_amount("33.335", AmountType.PERCENTAGE, Decimal("1000"))
        assert result == Decimal("333.35")

    def test_rounds_to_zero_rejected(self):
        with pytest.raises(InvalidAmountError):
            normalize_call_amount("0.001", AmountType.PERCENTAGE, Decimal("1"))

    def test_zero_rejected(self):
        with pytest.raises(InvalidAmountError):
            normalize_call_amount(0, AmountType.ABSOLUTE, Decimal("1000"))

    def test_custom_precision(self):
        result = normalize_call_amount("10.12345", AmountType.ABSOLUTE, Decimal("100"), precision=4)
        assert result == Decimal("10.1235")


class TestPaymentPercentage:

    def test_partial(self):
        assert payment_percentage(Decimal("100000"), Decimal("40000")) == Decimal("40.00")

    def test_full(self):
        assert payment_percentage(Decimal("100000"), Decimal("100000")) == Decimal("100.00")

    def test_repeating_fraction(self):
        assert payment_percentage(Decimal("3"), Decimal("1")) == Decimal("33.33")

    def test_zero_commitment(self):
        assert payment_percentage(Decimal("0"), Decimal("0")) == Decimal("0")


def test_quantize_money():
    assert quantize_money(Decimal("2.005")) == Decimal("2.01")
    assert quantize_money(Decimal("2.004")) == Decimal("2.00")
