"""
Module: stock_kernel.selectors.tag_selector
Responsibility: Read-only tag listings for customer lookups, overdue loans
    and status dashboards.
Architecture position: Kernel > Selectors.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.dtos import TagRecord, TagStatus, TagType
from stock_kernel.models.tag import Tag
from stock_kernel.selectors.base import BaseSelector


class TagSelector(BaseSelector):
    """Tag queries returning TagRecord DTOs."""

    def get(self, tag_id: UUID) -> TagRecord | None:
        tag = self.session.get(Tag, tag_id)
        return TagRecord.from_model(tag) if tag is not None else None

    def list_active(self, tag_type: TagType | None = None) -> list[TagRecord]:
        stmt = select(Tag).where(Tag.status == TagStatus.ACTIVE.value)
        if tag_type is not None:
            stmt = stmt.where(Tag.tag_type == TagType(tag_type).value)
        return self._records(stmt.order_by(Tag.created_at.asc(), Tag.id.asc()))

    def list_by_customer(
        self,
        name: str,
        status: TagStatus | None = None,
    ) -> list[TagRecord]:
        """Tags whose customer name contains `name`, case-insensitively."""
        stmt = select(Tag).where(
            func.lower(Tag.customer_name).contains(name.lower(), autoescape=True)
        )
        if status is not None:
            stmt = stmt.where(Tag.status == TagStatus(status).value)
        return self._records(stmt.order_by(Tag.created_at.desc(), Tag.id.asc()))

    def list_overdue(self, as_of: datetime) -> list[TagRecord]:
        """Active tags whose due date is before `as_of`, most overdue first."""
        stmt = (
            select(Tag)
            .where(
                Tag.status == TagStatus.ACTIVE.value,
                Tag.due_date.is_not(None),
                Tag.due_date < as_of,
            )
            .order_by(Tag.due_date.asc(), Tag.id.asc())
        )
        return self._records(stmt)

    def status_counts(self) -> dict[tuple[TagType, TagStatus], int]:
        stmt = select(Tag.tag_type, Tag.status, func.count(Tag.id)).group_by(
            Tag.tag_type, Tag.status
        )
        return {
            (TagType(tag_type), TagStatus(status)): count
            for tag_type, status, count in self.session.execute(stmt)
        }

    def _records(self, stmt) -> list[TagRecord]:
        return [TagRecord.from_model(t) for t in self.session.scalars(stmt).all()]
