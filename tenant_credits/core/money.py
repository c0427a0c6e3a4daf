"""Fixed-point amounts: two fraction digits, round half up to the cent."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from tenant_credits.core.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert without binary float artefacts (10.005 stays 10.005)."""
    if isinstance(value, bool):
        raise ValidationError("Amount must be a number", code="INVALID_AMOUNT")
    if isinstance(value, Decimal):
        dec = value
    else:
        try:
            dec = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid amount: {value!r}", code="INVALID_AMOUNT") from e
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}", code="INVALID_AMOUNT")
    return dec


def quantize(value: Decimal | int | float | str) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_amount(value: Decimal | int | float | str | None) -> Decimal:
    """Quantize a credit amount and require it to be strictly positive."""
    if value is None:
        raise ValidationError("Amount is required", code="INVALID_AMOUNT")
    amount = quantize(value)
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero", code="INVALID_AMOUNT", details={"amount": str(amount)})
    return amount


def minor_units(amount: Decimal) -> int:
    """Cents for the payment processor."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    return str(quantize(amount))
