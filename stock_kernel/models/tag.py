"""
Module: stock_kernel.models.tag
Responsibility: ORM persistence for tags, their line items, and the explicit
    ownership relation between lines and instances.
Architecture position: Kernel > Models.  May import from db/ and domain/
    only.  MUST NOT import from services/ or selectors/.

Invariants enforced:
    - One line per catalog entry per tag (UNIQUE(tag_id, catalog_entry_id)).
    - An instance sits in at most one line of one tag
      (UNIQUE(tag_line_allocations.instance_id)).
    - No quantity column: a line's quantity is the number of its
      allocation rows.

Failure modes:
    - IntegrityError on a second allocation row for the same instance.
      The conditional owner write prevents this in normal operation; hitting
      the constraint means the owner field was bypassed.

Audit relevance:
    created_by/updated_by plus the fulfilled_* and cancelled_* stamps record
    who moved each tag through its lifecycle.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.db.types import UTCDateTime
from stock_kernel.domain.dtos import TagStatus, TagType


class Tag(TrackedBase):
    """
    A claim on specific instances.

    Contract:
        status moves ACTIVE -> FULFILLED or ACTIVE -> CANCELLED, never back.
    """

    __tablename__ = "tags"

    __table_args__ = (
        Index("idx_tag_type_status", "tag_type", "status"),
        Index("idx_tag_customer", "customer_name"),
        Index("idx_tag_due_date", "due_date"),
    )

    tag_type: Mapped[TagType] = mapped_column(String(20), nullable=False)

    status: Mapped[TagStatus] = mapped_column(
        String(20),
        default=TagStatus.ACTIVE.value,
        nullable=False,
    )

    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    fulfilled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    fulfilled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    cancel_reason: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    lines: Mapped[list["TagLine"]] = relationship(
        back_populates="tag",
        cascade="all, delete-orphan",
        order_by="TagLine.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Tag {self.id} {self.tag_type} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return TagStatus(self.status).is_terminal

    def line_for(self, catalog_entry_id: str) -> "TagLine | None":
        for line in self.lines:
            if line.catalog_entry_id == catalog_entry_id:
                return line
        return None


class TagLine(Base):
    """A catalog entry within a tag, plus its selection method."""

    __tablename__ = "tag_lines"

    __table_args__ = (
        UniqueConstraint("tag_id", "catalog_entry_id", name="uq_tag_line_entry"),
        Index("idx_tag_line_entry", "catalog_entry_id"),
    )

    tag_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tags.id", ondelete="CASCADE"),
        nullable=False,
    )

    catalog_entry_id: Mapped[str] = mapped_column(String(100), nullable=False)

    method: Mapped[str] = mapped_column(String(20), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tag: Mapped[Tag] = relationship(back_populates="lines")

    allocations: Mapped[list["TagLineAllocation"]] = relationship(
        back_populates="line",
        cascade="all, delete-orphan",
        order_by="TagLineAllocation.position",
        lazy="selectin",
    )

    @property
    def quantity(self) -> int:
        return len(self.allocations)

    @property
    def instance_ids(self) -> list[UUID]:
        return [a.instance_id for a in self.allocations]

    def __repr__(self) -> str:
        return f"<TagLine {self.catalog_entry_id} x{self.quantity} ({self.method})>"


class TagLineAllocation(Base):
    """
    Ownership relation: instance_id belongs to this line.

    position preserves allocation order within the line.
    """

    __tablename__ = "tag_line_allocations"

    __table_args__ = (
        UniqueConstraint("instance_id", name="uq_allocation_instance"),
        Index("idx_allocation_line", "line_id"),
    )

    line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tag_lines.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Intentionally no FK to instances: fulfilment deletes the instance in
    # the same flush that removes this row.
    instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    position: Mapped[int] = mapped_column(Integer, nullable=False)

    line: Mapped[TagLine] = relationship(back_populates="allocations")
