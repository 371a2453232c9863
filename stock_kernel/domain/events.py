"""
Stock events emitted once per completed ownership transition.

Events are pure records.  Delivery lives in
stock_kernel.services.event_publisher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID, uuid4

from stock_kernel.domain.dtos import SelectionMethod


class StockEventType(str, Enum):
    ALLOCATED = "allocated"
    RELEASED = "released"
    TRANSFERRED = "transferred"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    RECEIVED = "received"


@dataclass(frozen=True)
class StockEvent:
    """
    One completed transition.

    Contract:
        catalog_entry_id is None for tag-wide transitions spanning several
        lines (fulfill_all, cancel).  details is frozen on construction.
    """

    event_type: StockEventType
    actor: str
    occurred_at: datetime
    tag_id: UUID | None = None
    catalog_entry_id: str | None = None
    instance_ids: tuple[UUID, ...] = ()
    method: SelectionMethod | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        object.__setattr__(self, "instance_ids", tuple(self.instance_ids))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    @property
    def quantity(self) -> int:
        return len(self.instance_ids)

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten for structured logging."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "actor": self.actor,
            "occurred_at": self.occurred_at.isoformat(),
            "tag_id": str(self.tag_id) if self.tag_id else None,
            "catalog_entry_id": self.catalog_entry_id,
            "quantity": self.quantity,
            "instance_ids": [str(i) for i in self.instance_ids],
            "method": self.method.value if self.method else None,
            **{f"detail_{k}": v for k, v in self.details.items()},
        }
