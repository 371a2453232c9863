"""
Module: stock_kernel.db.types
Responsibility: Annotated column type aliases and the UTC-normalizing
    timestamp type shared by every model.
Architecture position: Kernel > DB.  May be imported by models/ and
    services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Acquisition costs are Decimal stored as Numeric(38, 9).  NEVER float.
    - Timestamps are always timezone-aware UTC when read back, including on
      backends (SQLite) that drop the offset on write.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.types import TypeDecorator

# Acquisition cost: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# External catalog identifiers (SKU, tool code)
CatalogRef = Annotated[str, String(100)]

# Actor names as supplied by the caller's auth layer
ActorRef = Annotated[str, String(100)]

ShortText = Annotated[str, String(255)]

LongText = Annotated[str, String(4000)]


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp normalized to UTC.

    Contract:
        Aware datetimes are converted to UTC before storage; naive values
        read back (SQLite) are stamped as UTC.

    Guarantees:
        - process_result_value never returns a naive datetime.
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


ZERO = Decimal("0")


def to_money(value: Decimal | int | str) -> Decimal:
    """Coerce a cost input to Decimal, rejecting floats and negatives.

    Raises:
        TypeError: If value is a float.
        ValueError: If value is negative or not numeric.
    """
    if isinstance(value, float):
        raise TypeError("Costs must be Decimal, int or str, never float")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cost is not a number: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Cost must be finite: {value!r}")
    if amount < ZERO:
        raise ValueError(f"Cost must be non-negative: {value!r}")
    return amount
