"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the enumerations and immutable records that cross the service
    boundary: line requests going in (LineRequest, LineRemoval,
    QuantityTarget) and records coming out (InstanceRecord, TagRecord,
    AllocationResult, StockSnapshot, CostSummary, OwnershipViolation).

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Free of ORM dependencies.
    from_model() class methods are boundary converters invoked only from
    services and selectors.

Invariants enforced:
    - A line's quantity is ALWAYS len(instance_ids).  No record in this
      module stores a quantity next to an id set.
    - Snapshot total is the sum of its buckets by construction.

Failure modes:
    - ValueError on non-positive requested quantities.
    - ValueError on manual requests without instance ids, or non-manual
      requests that carry instance ids.

Data flow:
    LineRequest -> AllocationEngine -> AllocationResult -> TagLineRecord
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from stock_kernel.models.instance import Instance as InstanceModel
    from stock_kernel.models.tag import Tag as TagModel
    from stock_kernel.models.tag import TagLine as TagLineModel


class TagType(str, Enum):
    """
    Kind of claim a tag makes on its instances.

    Every tag type is also an inventory bucket: an owned instance is
    counted under the type of its owning tag.
    """

    RESERVED = "reserved"
    BROKEN = "broken"
    IMPERFECT = "imperfect"
    LOANED = "loaned"
    STOCK = "stock"


class TagStatus(str, Enum):
    """
    Lifecycle status of a tag.

    Contract:
        ACTIVE -> FULFILLED and ACTIVE -> CANCELLED.  Both targets are
        terminal: no edge leaves them.
    """

    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TagStatus.ACTIVE


class SelectionMethod(str, Enum):
    """How the allocation engine picks instances for a line."""

    FIFO = "fifo"
    COST_BASED = "cost_based"
    MANUAL = "manual"


class ReturnCondition(str, Enum):
    """Condition of tools coming back from a loan."""

    FUNCTIONAL = "functional"
    NEEDS_MAINTENANCE = "needs_maintenance"
    BROKEN = "broken"


class StockStatus(str, Enum):
    """Threshold classification of available stock."""

    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    IN_STOCK = "in_stock"
    OVERSTOCK = "overstock"


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class LineRequest:
    """
    One line of a tag creation or add-items call.

    Contract:
        Non-manual lines give a positive quantity.  Manual lines give the
        explicit instance ids; quantity is optional and, when present, is
        checked against the id count by the allocation engine.
    """

    catalog_entry_id: str
    quantity: int | None = None
    method: SelectionMethod = SelectionMethod.FIFO
    instance_ids: tuple[UUID, ...] = ()
    notes: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", SelectionMethod(self.method))
        object.__setattr__(self, "instance_ids", tuple(self.instance_ids))
        if self.quantity is not None and self.quantity <= 0:
            raise ValueError(
                f"Quantity must be positive for {self.catalog_entry_id}: {self.quantity}"
            )
        if self.method == SelectionMethod.MANUAL:
            if not self.instance_ids:
                raise ValueError(
                    f"Manual selection for {self.catalog_entry_id} requires instance_ids"
                )
        else:
            if self.instance_ids:
                raise ValueError(
                    f"instance_ids are only valid with manual selection "
                    f"({self.catalog_entry_id})"
                )
            if self.quantity is None:
                raise ValueError(f"Quantity is required for {self.catalog_entry_id}")

    @property
    def requested_quantity(self) -> int:
        if self.quantity is not None:
            return self.quantity
        return len(self.instance_ids)


@dataclass(frozen=True)
class LineRemoval:
    """Release `quantity` instances from the line for `catalog_entry_id`."""

    catalog_entry_id: str
    quantity: int

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(
                f"Removal quantity must be positive for {self.catalog_entry_id}: "
                f"{self.quantity}"
            )


@dataclass(frozen=True)
class QuantityTarget:
    """Desired final quantity for a line.  Growth uses `method`."""

    catalog_entry_id: str
    quantity: int
    method: SelectionMethod = SelectionMethod.FIFO

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", SelectionMethod(self.method))
        if self.quantity < 0:
            raise ValueError(
                f"Target quantity cannot be negative for {self.catalog_entry_id}: "
                f"{self.quantity}"
            )
        if self.method == SelectionMethod.MANUAL:
            raise ValueError("Quantity targets cannot use manual selection")


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class InstanceRecord:
    """Immutable view of one physical unit."""

    id: UUID
    catalog_entry_id: str
    acquired_at: datetime
    acquisition_cost: Decimal
    tag_id: UUID | None
    location: str
    supplier: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    added_by: str | None = None

    @property
    def is_available(self) -> bool:
        return self.tag_id is None

    @classmethod
    def from_model(cls, model: InstanceModel) -> InstanceRecord:
        return cls(
            id=model.id,
            catalog_entry_id=model.catalog_entry_id,
            acquired_at=model.acquired_at,
            acquisition_cost=model.acquisition_cost,
            tag_id=model.tag_id,
            location=model.location,
            supplier=model.supplier,
            reference_number=model.reference_number,
            notes=model.notes,
            added_by=model.added_by,
        )


@dataclass(frozen=True)
class AllocationResult:
    """
    Outcome of one successful allocate call.

    Guarantees:
        - instance_ids is in selection order and every id is now owned by
          tag_id.
        - attempts counts selection rounds (1 unless a race was lost).
    """

    tag_id: UUID
    catalog_entry_id: str
    method: SelectionMethod
    instance_ids: tuple[UUID, ...]
    attempts: int = 1

    @property
    def quantity(self) -> int:
        return len(self.instance_ids)


@dataclass(frozen=True)
class TagLineRecord:
    """A line item: catalog entry plus the ordered set of allocated ids."""

    catalog_entry_id: str
    method: SelectionMethod
    instance_ids: tuple[UUID, ...]
    notes: str | None = None

    @property
    def quantity(self) -> int:
        return len(self.instance_ids)

    @classmethod
    def from_model(cls, model: TagLineModel) -> TagLineRecord:
        return cls(
            catalog_entry_id=model.catalog_entry_id,
            method=SelectionMethod(model.method),
            instance_ids=tuple(a.instance_id for a in model.allocations),
            notes=model.notes,
        )


@dataclass(frozen=True)
class TagRecord:
    """
    Immutable view of a tag and its lines.

    Guarantees:
        - lines are in creation order.
        - quantity figures are derived from the id sets.
    """

    id: UUID
    tag_type: TagType
    status: TagStatus
    lines: tuple[TagLineRecord, ...]
    created_by: str
    created_at: datetime
    customer_name: str | None = None
    project_name: str | None = None
    notes: str | None = None
    due_date: datetime | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None
    fulfilled_at: datetime | None = None
    fulfilled_by: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def instance_ids(self) -> tuple[UUID, ...]:
        return tuple(i for line in self.lines for i in line.instance_ids)

    def line_for(self, catalog_entry_id: str) -> TagLineRecord | None:
        for line in self.lines:
            if line.catalog_entry_id == catalog_entry_id:
                return line
        return None

    @classmethod
    def from_model(cls, model: TagModel) -> TagRecord:
        return cls(
            id=model.id,
            tag_type=TagType(model.tag_type),
            status=TagStatus(model.status),
            lines=tuple(TagLineRecord.from_model(line) for line in model.lines),
            created_by=model.created_by,
            created_at=model.created_at,
            customer_name=model.customer_name,
            project_name=model.project_name,
            notes=model.notes,
            due_date=model.due_date,
            updated_by=model.updated_by,
            updated_at=model.updated_at,
            fulfilled_at=model.fulfilled_at,
            fulfilled_by=model.fulfilled_by,
            cancelled_at=model.cancelled_at,
            cancelled_by=model.cancelled_by,
            cancel_reason=model.cancel_reason,
        )


@dataclass(frozen=True)
class StockAdjustment:
    """
    Outcome of a receipt or write-off.

    delta is positive for received units and negative for consumed units;
    instance_ids are the created or destroyed ids.  tag_id is the stock tag
    a write-off was consumed through.
    """

    catalog_entry_id: str
    delta: int
    instance_ids: tuple[UUID, ...]
    tag_id: UUID | None = None


@dataclass(frozen=True)
class LoanReturnResult:
    """
    Outcome of a loan check-in.

    condition_tag_id is set when damaged tools were moved onto a new
    broken/imperfect tag.
    """

    loan: TagRecord
    condition: ReturnCondition
    returned_instance_ids: tuple[UUID, ...]
    condition_tag_id: UUID | None = None


# =============================================================================
# Inventory aggregates
# =============================================================================


@dataclass(frozen=True)
class StockSnapshot:
    """
    Stock breakdown for one catalog entry.

    Guarantees:
        - total == available + reserved + broken + imperfect + loaned + stock.
    """

    catalog_entry_id: str
    available: int = 0
    reserved: int = 0
    broken: int = 0
    imperfect: int = 0
    loaned: int = 0
    stock: int = 0
    total_value: Decimal = Decimal("0")
    available_value: Decimal = Decimal("0")
    stock_status: StockStatus = StockStatus.OUT_OF_STOCK

    @property
    def total(self) -> int:
        return (
            self.available
            + self.reserved
            + self.broken
            + self.imperfect
            + self.loaned
            + self.stock
        )

    def bucket(self, tag_type: TagType | None) -> int:
        """Count for a tag type, or the available count for None."""
        if tag_type is None:
            return self.available
        return getattr(self, TagType(tag_type).value)


@dataclass(frozen=True)
class CostSummary:
    """Cost statistics over the available units of one catalog entry."""

    catalog_entry_id: str
    count: int
    total_value: Decimal
    average_cost: Decimal | None = None
    lowest_cost: Decimal | None = None
    highest_cost: Decimal | None = None
    oldest_acquired_at: datetime | None = None
    newest_acquired_at: datetime | None = None


@dataclass(frozen=True)
class CostBreakdownRow:
    """Available units sharing one acquisition cost."""

    acquisition_cost: Decimal
    count: int
    oldest_acquired_at: datetime
    newest_acquired_at: datetime
    locations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def total_value(self) -> Decimal:
        return self.acquisition_cost * self.count


class ViolationKind(str, Enum):
    """Ways the owner field and the allocation relation can disagree."""

    OWNER_WITHOUT_ALLOCATION = "owner_without_allocation"
    OWNER_MISMATCH = "owner_mismatch"
    TERMINAL_TAG_ALLOCATION = "terminal_tag_allocation"


@dataclass(frozen=True)
class OwnershipViolation:
    """One detected disagreement between instance owner and tag membership."""

    kind: ViolationKind
    instance_id: UUID
    owner_tag_id: UUID | None
    line_tag_id: UUID | None = None
    detail: str = ""
