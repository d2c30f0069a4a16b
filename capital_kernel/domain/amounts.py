"""
Amount normalization.

All monetary values are ``Decimal``; floats are rejected at the boundary.
Percentages are converted to currency against the committed amount and
rounded half-up to the configured currency precision.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from capital_kernel.domain.statuses import AmountType
from capital_kernel.exceptions import InvalidAmountError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: object, field: str = "amount") -> Decimal:
    """Coerce ``int``/``str``/``Decimal`` input; reject floats and garbage."""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(field, value, "must be a Decimal, int or numeric string")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(field, value, "not a number")
    if not result.is_finite():
        raise InvalidAmountError(field, value, "must be finite")
    return result


def require_positive(value: object, field: str = "amount") -> Decimal:
    amount = to_decimal(value, field)
    if amount <= ZERO:
        raise InvalidAmountError(field, amount, "must be greater than zero")
    return amount


def quantize_money(amount: Decimal, precision: int = 2) -> Decimal:
    """Round half-up to ``precision`` decimal places."""
    return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def normalize_call_amount(
    requested: object,
    amount_type: AmountType,
    committed_amount: Decimal,
    precision: int = 2,
) -> Decimal:
    """
    Convert a capital-call request into currency.

    A percentage must lie in (0, 100]; it is applied to ``committed_amount``.
    An absolute amount must be positive.  Both results are quantized.
    """
    value = require_positive(requested, "call_amount")
    if AmountType(amount_type) is AmountType.PERCENTAGE:
        if value > HUNDRED:
            raise InvalidAmountError("call_amount", value, "percentage cannot exceed 100")
        result = quantize_money(committed_amount * value / HUNDRED, precision)
    else:
        result = quantize_money(value, precision)
    if result <= ZERO:
        raise InvalidAmountError("call_amount", value, "rounds to zero at currency precision")
    return result


def payment_percentage(committed_amount: Decimal, paid_amount: Decimal) -> Decimal:
    """Share of the commitment paid, in percent, 2 dp half-up."""
    if committed_amount <= ZERO:
        return ZERO
    return quantize_money(paid_amount / committed_amount * HUNDRED, 2)
