from decimal import Decimal, InvalidOperation
from typing import Union

from errors import ValidationError
from models import TransactionType


def parse_amount(value: Union[str, int, float, Decimal]) -> int:
    """Convert a user-entered amount ("12,50", "$1 200.00", 12.5) to cents."""
    if isinstance(value, Decimal):
        amount = value
    else:
        clean = str(value).strip().replace("₹", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValidationError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0:
        raise ValidationError("Amount must be positive")
    return cents


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -amount_cents
    return amount_cents


def format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"
