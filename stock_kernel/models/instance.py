"""
Module: stock_kernel.models.instance
Responsibility: ORM persistence for individually tracked physical units.
Architecture position: Kernel > Models.  May import from db/ and domain/
    only.  MUST NOT import from services/ or selectors/.

Invariants enforced:
    - Owner field: tag_id is NULL iff the instance is available.  Only
      InstanceStore.set_owner writes it, always conditionally.
    - Frozen cost: acquisition_cost is written once on INSERT.
    - Destruction: rows are deleted only by fulfillment/consumption.

Failure modes:
    - IntegrityError if tag_id references a missing tag.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString
from stock_kernel.db.types import UTCDateTime


class Instance(Base):
    """
    One physical unit of a catalog entry.

    Contract:
        Selection order for allocation comes from acquired_at (fifo) or
        acquisition_cost then acquired_at (cost_based), with id as the final
        tie-breaker.
    """

    __tablename__ = "instances"

    __table_args__ = (
        # Available-stock scans: WHERE catalog_entry_id = ? AND tag_id IS NULL
        Index("idx_instance_entry_owner", "catalog_entry_id", "tag_id"),
        Index("idx_instance_entry_acquired", "catalog_entry_id", "acquired_at"),
        Index("idx_instance_tag", "tag_id"),
    )

    catalog_entry_id: Mapped[str] = mapped_column(String(100), nullable=False)

    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Frozen at receipt
    acquisition_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    tag_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("tags.id"),
        nullable=True,
    )

    location: Mapped[str] = mapped_column(String(255), nullable=False)

    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    added_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        owner = self.tag_id or "available"
        return (
            f"<Instance {self.id} {self.catalog_entry_id} "
            f"cost={self.acquisition_cost} owner={owner}>"
        )
