"""
Module: refinery_kernel.db.types
Responsibility: Column types and numeric helpers shared by models, domain and
    services.  Centralizes timestamp normalization and weight/percentage
    precision so every table stores identical representations.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Timestamps are stored as UTC and always read back timezone-aware.
      SQLite drops tzinfo on the way in; UTCDateTime restores it.
    - No floats: weights (grams) and percentages are Decimal.  to_decimal()
      is the ONLY sanctioned way to turn operator input into a quantity.

Failure modes:
    - ValueError from UTCDateTime on a naive datetime bind parameter.
    - to_decimal() returns None for values that are not numbers.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    Guarantees:
        - process_bind_param: aware datetime -> UTC datetime.
        - process_result_value: always returns an aware UTC datetime.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


QUANTITY_DECIMAL_PLACES = 9
DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value: Any) -> Decimal | None:
    """
    Convert operator-supplied input into a Decimal quantity.

    Accepts int, float, Decimal and numeric strings.  Floats go through
    str() so that 0.1 becomes Decimal("0.1"), not its binary expansion.

    Returns:
        Decimal, or None when the value is missing, blank, boolean,
        non-numeric, or not finite.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    if not result.is_finite():
        return None
    return result


def round_quantity(
    value: Decimal,
    decimal_places: int = 2,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a weight or percentage for presentation.

    Stored values are never rounded by the kernel beyond column precision;
    this is for read models and reports only.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)
