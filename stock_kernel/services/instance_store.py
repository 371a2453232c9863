"""
InstanceStore -- persistence of individually tracked physical units.

Responsibility:
    CRUD and ordered queries over the ``instances`` table.  No business
    rules beyond the conditional owner write.

Architecture position:
    Kernel > Services.  Lowest write-side component; called by
    AllocationEngine (owner changes), TagLifecycleManager (fulfilment
    deletes) and StockService (receipt).

Invariants enforced:
    - set_owner is the ONLY statement that writes instances.tag_id, and it
      always carries a predicate on the current owner.  A concurrent writer
      that got there first makes the row drop out of the predicate, which
      shows up as a short rowcount.
    - delete is conditional on the expected owner as well, so an instance
      moved by someone else is never destroyed.
    - Acquisition cost is set on INSERT only.

Failure modes:
    - ValueError for negative costs or non-positive bulk quantities.
    - Short rowcounts are returned, not raised; callers decide whether a
      short count is a lost race or a consistency violation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update

from stock_kernel.db.types import to_money
from stock_kernel.domain.dtos import InstanceRecord, SelectionMethod
from stock_kernel.logging_config import get_logger
from stock_kernel.models.instance import Instance as InstanceModel
from stock_kernel.services.base import BaseService

logger = get_logger("services.instance_store")

DEFAULT_LOCATION = "HQ"


class InstanceStore(BaseService):
    """
    Instance table access.

    Guarantees:
        - find_available returns only unowned instances, in deterministic
          order: acquired_at asc (fifo) or acquisition_cost asc then
          acquired_at asc (cost_based), id asc as the final tie-breaker.
        - Every read repopulates identity-mapped objects, so owner changes
          made by bulk statements are always visible.
    """

    def __init__(self, session, clock=None, default_location: str = DEFAULT_LOCATION):
        super().__init__(session, clock)
        self.default_location = default_location

    @classmethod
    def from_settings(cls, session, settings, clock=None) -> "InstanceStore":
        return cls(session, clock, default_location=settings.default_location)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(
        self,
        catalog_entry_id: str,
        cost: Decimal | int | str,
        location: str | None = None,
        *,
        acquired_at: datetime | None = None,
        supplier: str | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
        added_by: str | None = None,
    ) -> InstanceRecord:
        """Create one available instance."""
        return self.create_many(
            catalog_entry_id,
            1,
            cost,
            location,
            acquired_at=acquired_at,
            supplier=supplier,
            reference_number=reference_number,
            notes=notes,
            added_by=added_by,
        )[0]

    def create_many(
        self,
        catalog_entry_id: str,
        quantity: int,
        cost: Decimal | int | str,
        location: str | None = None,
        *,
        acquired_at: datetime | None = None,
        supplier: str | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
        added_by: str | None = None,
    ) -> list[InstanceRecord]:
        """
        Create `quantity` identical available instances.

        All units share one acquisition timestamp and cost.

        Raises:
            ValueError: quantity < 1 or invalid cost.
        """
        if quantity < 1:
            raise ValueError(f"Quantity must be at least 1, got {quantity}")
        amount = to_money(cost)
        now = self.clock.now()
        acquired = acquired_at or now

        models = [
            InstanceModel(
                id=uuid4(),
                catalog_entry_id=catalog_entry_id,
                acquired_at=acquired,
                acquisition_cost=amount,
                tag_id=None,
                location=location or self.default_location,
                supplier=supplier,
                reference_number=reference_number,
                notes=notes,
                added_by=added_by,
                created_at=now,
            )
            for _ in range(quantity)
        ]
        self.session.add_all(models)
        self.session.flush()

        logger.debug(
            "instances_created",
            extra={
                "catalog_entry_id": catalog_entry_id,
                "quantity": quantity,
                "acquisition_cost": str(amount),
            },
        )
        return [InstanceRecord.from_model(m) for m in models]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_available(
        self,
        catalog_entry_id: str,
        method: SelectionMethod = SelectionMethod.FIFO,
        limit: int | None = None,
    ) -> list[InstanceRecord]:
        """
        Unowned instances of one catalog entry in selection order.

        Manual selection has no intrinsic order and is served in fifo order.
        """
        stmt = select(InstanceModel).where(
            InstanceModel.catalog_entry_id == catalog_entry_id,
            InstanceModel.tag_id.is_(None),
        )
        if SelectionMethod(method) == SelectionMethod.COST_BASED:
            stmt = stmt.order_by(
                InstanceModel.acquisition_cost.asc(),
                InstanceModel.acquired_at.asc(),
                InstanceModel.id.asc(),
            )
        else:
            stmt = stmt.order_by(
                InstanceModel.acquired_at.asc(),
                InstanceModel.id.asc(),
            )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._records(stmt)

    def count_available(self, catalog_entry_id: str) -> int:
        stmt = select(func.count(InstanceModel.id)).where(
            InstanceModel.catalog_entry_id == catalog_entry_id,
            InstanceModel.tag_id.is_(None),
        )
        return self.session.scalar(stmt) or 0

    def get(self, instance_id: UUID) -> InstanceRecord | None:
        found = self.get_many([instance_id])
        return found[0] if found else None

    def get_many(self, ids: Iterable[UUID]) -> list[InstanceRecord]:
        """Existing instances among `ids`, ordered by acquired_at then id."""
        id_list = list(ids)
        if not id_list:
            return []
        stmt = (
            select(InstanceModel)
            .where(InstanceModel.id.in_(id_list))
            .order_by(InstanceModel.acquired_at.asc(), InstanceModel.id.asc())
        )
        return self._records(stmt)

    def find_by_owner(self, tag_id: UUID) -> list[InstanceRecord]:
        """Instances whose owner field points at `tag_id`, oldest first."""
        stmt = (
            select(InstanceModel)
            .where(InstanceModel.tag_id == tag_id)
            .order_by(InstanceModel.acquired_at.asc(), InstanceModel.id.asc())
        )
        return self._records(stmt)

    def _records(self, stmt) -> list[InstanceRecord]:
        rows = self.session.scalars(
            stmt.execution_options(populate_existing=True)
        ).all()
        return [InstanceRecord.from_model(m) for m in rows]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def set_owner(
        self,
        ids: Sequence[UUID],
        tag_id: UUID | None,
        expected_owner: UUID | None,
    ) -> int:
        """
        Conditionally move `ids` from `expected_owner` to `tag_id`.

        Only rows currently owned by `expected_owner` (NULL for claiming)
        change.

        Returns:
            Number of rows changed.
        """
        id_list = list(ids)
        if not id_list:
            return 0
        owner_clause = (
            InstanceModel.tag_id.is_(None)
            if expected_owner is None
            else InstanceModel.tag_id == expected_owner
        )
        stmt = (
            update(InstanceModel)
            .where(InstanceModel.id.in_(id_list), owner_clause)
            .values(tag_id=tag_id)
            .execution_options(synchronize_session="evaluate")
        )
        changed = self.session.execute(stmt).rowcount
        logger.debug(
            "instance_owner_set",
            extra={
                "requested": len(id_list),
                "changed": changed,
                "tag_id": str(tag_id) if tag_id else None,
                "expected_owner": str(expected_owner) if expected_owner else None,
            },
        )
        return changed

    def delete(self, ids: Sequence[UUID], expected_owner: UUID | None) -> int:
        """
        Irreversibly delete `ids` that are owned by `expected_owner`.

        Only fulfilment and write-off call this.

        Returns:
            Number of rows deleted.
        """
        id_list = list(ids)
        if not id_list:
            return 0
        owner_clause = (
            InstanceModel.tag_id.is_(None)
            if expected_owner is None
            else InstanceModel.tag_id == expected_owner
        )
        stmt = (
            delete(InstanceModel)
            .where(InstanceModel.id.in_(id_list), owner_clause)
            .execution_options(synchronize_session="evaluate")
        )
        deleted = self.session.execute(stmt).rowcount
        logger.info(
            "instances_deleted",
            extra={
                "requested": len(id_list),
                "deleted": deleted,
                "tag_id": str(expected_owner) if expected_owner else None,
            },
        )
        return deleted

    def update_details(
        self,
        instance_id: UUID,
        *,
        location: str | None = None,
        supplier: str | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> InstanceRecord | None:
        """
        Edit non-ownership metadata.  Cost and owner are not editable here.

        Returns:
            The updated record, or None if the instance does not exist.
        """
        model = self.session.get(InstanceModel, instance_id, populate_existing=True)
        if model is None:
            return None
        if location is not None:
            model.location = location
        if supplier is not None:
            model.supplier = supplier
        if reference_number is not None:
            model.reference_number = reference_number
        if notes is not None:
            model.notes = notes
        self.session.flush()
        return InstanceRecord.from_model(model)
