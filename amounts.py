from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")


def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """Coerce a JSON-ish number into a Decimal without going through binary floats.

    Floats are routed through ``str`` so ``50.1`` becomes ``Decimal("50.1")``
    rather than its binary expansion.
    """
    if isinstance(value, bool):
        raise ValueError("Monto inválido")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Monto inválido") from exc


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int) -> str:
    amount = (Decimal(cents) * CENT).quantize(CENT)
    return f"{amount:.2f}"
