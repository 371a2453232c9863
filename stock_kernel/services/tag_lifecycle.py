"""
TagLifecycleManager -- the tag state machine over allocated instance sets.

Responsibility:
    Creates tags (reservations, loans, defect markings, pending
    consumption), changes their line items while active, and moves them to
    a terminal state through fulfilment, cancellation or loan return.

Architecture position:
    Kernel > Services.  Delegates instance selection and every owner change
    to AllocationEngine, fulfilment deletes to InstanceStore, and bundle
    resolution to the CatalogProvider.  Persists the explicit ownership
    relation (tag_line_allocations).

Invariants enforced:
    - Terminal status: FULFILLED and CANCELLED tags reject every mutating
      call with InvalidTransitionError before anything is written.
    - Derived quantity: line quantity is the number of allocation rows.
    - All-or-nothing: create/add/adjust release everything claimed in the
      call when a later line fails; fulfil/remove validate quantities before
      the first write.
    - Release vs delete: cancel, remove and loan return release; only
      fulfil deletes instances.

Failure modes:
    - TagNotFoundError, TagLineNotFoundError.
    - InvalidTransitionError on terminal tags (and loan returns against
      non-loan tags).
    - InsufficientAllocationError when fulfilling/removing more than a line
      holds.
    - InsufficientStockError / InvalidSelectionError propagated from the
      allocation engine after compensation.
    - ConsistencyViolationError when an allocated id is not owned by its
      tag.  Logged at CRITICAL, never repaired.

Audit relevance:
    created_by/updated_by, fulfilled_*/cancelled_* stamps and the events
    published for every transition identify who did what to which units.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Sequence
from uuid import UUID, uuid4

from stock_kernel.catalog import CatalogProvider
from stock_kernel.domain.dtos import (
    LineRemoval,
    LineRequest,
    LoanReturnResult,
    QuantityTarget,
    ReturnCondition,
    SelectionMethod,
    TagRecord,
    TagStatus,
    TagType,
)
from stock_kernel.domain.events import StockEvent, StockEventType
from stock_kernel.exceptions import (
    ConsistencyViolationError,
    InsufficientAllocationError,
    InvalidSelectionError,
    InvalidTransitionError,
    TagLineNotFoundError,
    TagNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.tag import Tag as TagModel
from stock_kernel.models.tag import TagLine as TagLineModel
from stock_kernel.models.tag import TagLineAllocation as TagLineAllocationModel
from stock_kernel.services.allocation_engine import AllocationEngine
from stock_kernel.services.base import BaseService
from stock_kernel.services.event_publisher import EventPublisher

logger = get_logger("services.tag_lifecycle")

_CONDITION_TAG_TYPES = {
    ReturnCondition.NEEDS_MAINTENANCE: TagType.IMPERFECT,
    ReturnCondition.BROKEN: TagType.BROKEN,
}


@dataclass
class _Claim:
    """Ids claimed into one line during a single call, for compensation."""

    line: TagLineModel
    instance_ids: list[UUID] = field(default_factory=list)
    new_line: bool = False


class TagLifecycleManager(BaseService):
    """
    Tag state machine.

    Contract:
        Every public mutator either completes and returns the updated
        TagRecord, or raises leaving the tag and its instances as they were
        (ConsistencyViolationError excepted: the caller must roll back).

    Guarantees:
        - At most one line per catalog entry per tag; repeated requests for
          an entry grow its existing line.
        - Bundle lines are replaced by their component lines.
    """

    def __init__(
        self,
        session,
        catalog: CatalogProvider,
        engine: AllocationEngine | None = None,
        publisher: EventPublisher | None = None,
        clock=None,
        allocation_retries: int = 1,
    ):
        super().__init__(session, clock)
        self.catalog = catalog
        if engine is None:
            engine = AllocationEngine(
                session,
                publisher=publisher,
                clock=self.clock,
                allocation_retries=allocation_retries,
            )
        self.engine = engine
        self.store = engine.store
        self.publisher = publisher or engine.publisher

    @classmethod
    def from_settings(
        cls,
        session,
        catalog: CatalogProvider,
        settings,
        publisher: EventPublisher | None = None,
        clock=None,
    ) -> "TagLifecycleManager":
        engine = AllocationEngine.from_settings(
            session, settings, publisher=publisher, clock=clock
        )
        return cls(session, catalog, engine=engine, publisher=publisher, clock=clock)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, tag_id: UUID) -> TagRecord:
        return TagRecord.from_model(self._load(tag_id))

    # =========================================================================
    # Creation and line changes
    # =========================================================================

    def create(
        self,
        tag_type: TagType,
        lines: Sequence[LineRequest],
        actor: str,
        customer_name: str | None = None,
        project_name: str | None = None,
        notes: str | None = None,
        due_date: datetime | None = None,
    ) -> TagRecord:
        """
        Create an active tag with every line allocated.

        All-or-nothing: if any line fails, everything allocated in this call
        is released, the tag row is removed and the line's error is raised.
        """
        tag_type = TagType(tag_type)
        if not lines:
            raise ValueError("A tag needs at least one line")
        requests = self._resolve_lines(lines)

        t0 = time.monotonic()
        now = self.clock.now()
        tag = TagModel(
            id=uuid4(),
            tag_type=tag_type.value,
            status=TagStatus.ACTIVE.value,
            customer_name=customer_name,
            project_name=project_name,
            notes=notes,
            due_date=due_date,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        self.session.add(tag)
        self.session.flush()

        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            logger.info("tag_creation_started", extra={
                "tag_type": tag_type.value,
                "line_count": len(requests),
            })
            try:
                self._allocate_lines(tag, requests, actor)
            except Exception:
                self.session.delete(tag)
                self.session.flush()
                logger.warning("tag_creation_rolled_back", extra={
                    "tag_type": tag_type.value,
                })
                raise

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info("tag_created", extra={
                "tag_type": tag_type.value,
                "line_count": len(tag.lines),
                "total_quantity": sum(line.quantity for line in tag.lines),
                "duration_ms": duration_ms,
            })
        return TagRecord.from_model(tag)

    def add_items(
        self,
        tag_id: UUID,
        lines: Sequence[LineRequest],
        actor: str,
    ) -> TagRecord:
        """Allocate more units onto an active tag (all-or-nothing)."""
        tag = self._load(tag_id)
        self._require_active(tag, "add items to")
        requests = self._resolve_lines(lines)
        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            self._allocate_lines(tag, requests, actor)
            self._touch(tag, actor)
            self.session.flush()
            logger.info("tag_items_added", extra={
                "lines": [r.catalog_entry_id for r in requests],
            })
        return TagRecord.from_model(tag)

    def remove_items(
        self,
        tag_id: UUID,
        removals: Sequence[LineRemoval],
        actor: str,
    ) -> TagRecord:
        """
        Release the oldest-acquired units of each named line.

        Quantities are validated for every removal before anything is
        released.  Lines emptied by removal stay on the tag, and the tag
        stays active.
        """
        tag = self._load(tag_id)
        self._require_active(tag, "remove items from")
        plan = self._plan_removals(tag, removals)
        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            self._release_oldest(tag, plan, actor)
            self._touch(tag, actor)
            self.session.flush()
            logger.info("tag_items_removed", extra={
                "lines": {line.catalog_entry_id: qty for line, qty in plan},
            })
        return TagRecord.from_model(tag)

    def adjust_quantities(
        self,
        tag_id: UUID,
        targets: Sequence[QuantityTarget],
        actor: str,
    ) -> TagRecord:
        """
        Move each named line to its target quantity.

        A bundle target sets each component line to its multiple of the
        bundle quantity.  Growth is allocated first (with compensation on
        failure), so a failed adjustment never leaves lines shrunk.

        Raises:
            ValueError: two targets (directly or through a bundle) name the
                same catalog entry.
        """
        tag = self._load(tag_id)
        self._require_active(tag, "adjust")
        resolved = self._resolve_targets(targets)

        additions: list[LineRequest] = []
        removals: list[LineRemoval] = []
        for target in resolved:
            line = tag.line_for(target.catalog_entry_id)
            current = line.quantity if line is not None else 0
            delta = target.quantity - current
            if delta > 0:
                additions.append(LineRequest(
                    catalog_entry_id=target.catalog_entry_id,
                    quantity=delta,
                    method=target.method,
                ))
            elif delta < 0:
                removals.append(LineRemoval(target.catalog_entry_id, -delta))

        plan = self._plan_removals(tag, removals)
        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            if additions:
                self._allocate_lines(tag, additions, actor)
            self._release_oldest(tag, plan, actor)
            self._touch(tag, actor)
            self.session.flush()
            logger.info("tag_quantities_adjusted", extra={
                "added": {r.catalog_entry_id: r.quantity for r in additions},
                "removed": {r.catalog_entry_id: r.quantity for r in removals},
            })
        return TagRecord.from_model(tag)

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def fulfill_all(self, tag_id: UUID, actor: str) -> TagRecord:
        """Consume every allocated unit and mark the tag fulfilled."""
        tag = self._load(tag_id)
        self._require_active(tag, "fulfill")

        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            all_ids: list[UUID] = []
            for line in tag.lines:
                ids = line.instance_ids
                self._verify_owned(tag, line.catalog_entry_id, ids)
                all_ids.extend(ids)

            self._delete_owned(tag, all_ids, None)
            for line in tag.lines:
                line.allocations.clear()

            self._mark_fulfilled(tag, actor)
            self.session.flush()

            self.publisher.publish(StockEvent(
                event_type=StockEventType.FULFILLED,
                actor=actor,
                occurred_at=self.clock.now(),
                tag_id=tag.id,
                instance_ids=tuple(all_ids),
            ))
            logger.info("tag_fulfilled", extra={"quantity": len(all_ids)})
        return TagRecord.from_model(tag)

    def fulfill_partial(
        self,
        tag_id: UUID,
        catalog_entry_id: str,
        quantity: int,
        actor: str,
    ) -> TagRecord:
        """
        Consume the `quantity` oldest-acquired units of one line.

        The tag becomes fulfilled when every line is empty afterwards.
        """
        if quantity <= 0:
            raise ValueError(f"Fulfilment quantity must be positive, got {quantity}")
        tag = self._load(tag_id)
        self._require_active(tag, "fulfill")
        line = self._line(tag, catalog_entry_id)
        if quantity > line.quantity:
            logger.warning("fulfilment_exceeds_allocation", extra={
                "tag_id": str(tag.id),
                "catalog_entry_id": catalog_entry_id,
                "requested": quantity,
                "allocated": line.quantity,
            })
            raise InsufficientAllocationError(
                str(tag.id), catalog_entry_id, quantity, line.quantity
            )

        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            records = self._verify_owned(tag, catalog_entry_id, line.instance_ids)
            chosen = [r.id for r in records[:quantity]]
            self._delete_owned(tag, chosen, catalog_entry_id)
            self._drop_allocations(line, chosen)

            if all(ln.quantity == 0 for ln in tag.lines):
                self._mark_fulfilled(tag, actor)
            else:
                self._touch(tag, actor)
            self.session.flush()

            self.publisher.publish(StockEvent(
                event_type=StockEventType.FULFILLED,
                actor=actor,
                occurred_at=self.clock.now(),
                tag_id=tag.id,
                catalog_entry_id=catalog_entry_id,
                instance_ids=tuple(chosen),
                details={"partial": True, "status": tag.status},
            ))
            logger.info("tag_partially_fulfilled", extra={
                "catalog_entry_id": catalog_entry_id,
                "quantity": quantity,
                "remaining": line.quantity,
                "status": tag.status,
            })
        return TagRecord.from_model(tag)

    def cancel(
        self,
        tag_id: UUID,
        actor: str,
        reason: str | None = None,
    ) -> TagRecord:
        """
        Release every allocated unit and mark the tag cancelled.

        Cancelling a terminal tag raises InvalidTransitionError and
        releases nothing.
        """
        tag = self._load(tag_id)
        self._require_active(tag, "cancel")

        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            released: list[UUID] = []
            for line in tag.lines:
                ids = line.instance_ids
                if ids:
                    self.engine.release(tag.id, ids, actor, line.catalog_entry_id)
                    released.extend(ids)
                line.allocations.clear()

            now = self.clock.now()
            tag.status = TagStatus.CANCELLED.value
            tag.cancelled_at = now
            tag.cancelled_by = actor
            tag.cancel_reason = reason
            self._touch(tag, actor)
            self.session.flush()

            self.publisher.publish(StockEvent(
                event_type=StockEventType.CANCELLED,
                actor=actor,
                occurred_at=now,
                tag_id=tag.id,
                instance_ids=tuple(released),
                details={"reason": reason},
            ))
            logger.info("tag_cancelled", extra={
                "quantity": len(released),
                "reason": reason,
            })
        return TagRecord.from_model(tag)

    def return_loan(
        self,
        tag_id: UUID,
        actor: str,
        returns: Mapping[str, Sequence[UUID]] | None = None,
        condition: ReturnCondition = ReturnCondition.FUNCTIONAL,
        notes: str | None = None,
    ) -> LoanReturnResult:
        """
        Check loaned units back in.

        Functional units are released to the available pool.  Units needing
        maintenance or broken are moved onto a new imperfect/broken tag.
        Nothing is deleted.  The loan becomes fulfilled once every line is
        empty.

        Args:
            returns: catalog entry -> ids being returned.  None returns
                everything still on the loan.
        """
        condition = ReturnCondition(condition)
        tag = self._load(tag_id)
        self._require_active(tag, "return")
        if TagType(tag.tag_type) != TagType.LOANED:
            raise InvalidTransitionError(
                str(tag.id), tag.status, f"return a {tag.tag_type} tag as a loan"
            )

        selection = self._select_returns(tag, returns)

        with LogContext.bind(actor_id=actor, tag_id=str(tag.id)):
            for line, ids in selection:
                self._verify_owned(tag, line.catalog_entry_id, ids)

            condition_tag = None
            if condition == ReturnCondition.FUNCTIONAL:
                for line, ids in selection:
                    self.engine.release(tag.id, ids, actor, line.catalog_entry_id)
                    self._drop_allocations(line, ids)
            else:
                condition_tag = self._new_condition_tag(tag, condition, actor, notes)
                for line, ids in selection:
                    self.engine.transfer(
                        tag.id, condition_tag.id, ids, actor, line.catalog_entry_id
                    )
                    self._drop_allocations(line, ids)
                # Loan rows must be gone before the same instances are
                # inserted under the condition tag.
                self.session.flush()
                for line, ids in selection:
                    target = TagLineModel(
                        id=uuid4(),
                        catalog_entry_id=line.catalog_entry_id,
                        method=SelectionMethod.MANUAL.value,
                        position=len(condition_tag.lines),
                    )
                    condition_tag.lines.append(target)
                    self._append_allocations(target, ids)

            if notes:
                tag.notes = f"{tag.notes}\n{notes}" if tag.notes else notes
            if all(ln.quantity == 0 for ln in tag.lines):
                self._mark_fulfilled(tag, actor)
            else:
                self._touch(tag, actor)
            self.session.flush()

            returned = tuple(i for _, ids in selection for i in ids)
            self.publisher.publish(StockEvent(
                event_type=StockEventType.RETURNED,
                actor=actor,
                occurred_at=self.clock.now(),
                tag_id=tag.id,
                instance_ids=returned,
                details={
                    "condition": condition.value,
                    "condition_tag_id": str(condition_tag.id) if condition_tag else None,
                },
            ))
            logger.info("loan_returned", extra={
                "quantity": len(returned),
                "condition": condition.value,
                "status": tag.status,
            })

        return LoanReturnResult(
            loan=TagRecord.from_model(tag),
            condition=condition,
            returned_instance_ids=returned,
            condition_tag_id=condition_tag.id if condition_tag else None,
        )

    # =========================================================================
    # Internal
    # =========================================================================

    def _load(self, tag_id: UUID) -> TagModel:
        tag = self.session.get(TagModel, tag_id)
        if tag is None:
            raise TagNotFoundError(str(tag_id))
        return tag

    def _require_active(self, tag: TagModel, operation: str) -> None:
        if tag.is_terminal:
            logger.warning("tag_transition_rejected", extra={
                "tag_id": str(tag.id),
                "status": tag.status,
                "operation": operation,
            })
            raise InvalidTransitionError(str(tag.id), tag.status, operation)

    def _line(self, tag: TagModel, catalog_entry_id: str) -> TagLineModel:
        line = tag.line_for(catalog_entry_id)
        if line is None:
            raise TagLineNotFoundError(str(tag.id), catalog_entry_id)
        return line

    def _touch(self, tag: TagModel, actor: str) -> None:
        tag.updated_at = self.clock.now()
        tag.updated_by = actor

    def _mark_fulfilled(self, tag: TagModel, actor: str) -> None:
        now = self.clock.now()
        tag.status = TagStatus.FULFILLED.value
        tag.fulfilled_at = now
        tag.fulfilled_by = actor
        tag.updated_at = now
        tag.updated_by = actor

    def _resolve_lines(self, lines: Iterable[LineRequest]) -> list[LineRequest]:
        """Replace bundle lines with their component lines."""
        resolved: list[LineRequest] = []
        for request in lines:
            entry = self.catalog.get_catalog_entry(request.catalog_entry_id)
            if not entry.is_bundle:
                resolved.append(request)
                continue
            if request.method == SelectionMethod.MANUAL:
                raise InvalidSelectionError(
                    request.catalog_entry_id,
                    [str(i) for i in request.instance_ids],
                    "bundles cannot use manual selection",
                )
            for component in entry.bundle_components:
                resolved.append(LineRequest(
                    catalog_entry_id=component.catalog_entry_id,
                    quantity=request.requested_quantity * component.quantity,
                    method=request.method,
                    notes=request.notes,
                ))
            logger.debug("bundle_resolved", extra={
                "bundle_id": request.catalog_entry_id,
                "components": len(entry.bundle_components),
            })
        return resolved

    def _resolve_targets(
        self, targets: Iterable[QuantityTarget]
    ) -> list[QuantityTarget]:
        """Replace bundle targets with component targets, one per entry."""
        resolved: dict[str, QuantityTarget] = {}
        for target in targets:
            entry = self.catalog.get_catalog_entry(target.catalog_entry_id)
            if entry.is_bundle:
                expanded = [
                    QuantityTarget(
                        component.catalog_entry_id,
                        target.quantity * component.quantity,
                        target.method,
                    )
                    for component in entry.bundle_components
                ]
            else:
                expanded = [target]
            for item in expanded:
                if item.catalog_entry_id in resolved:
                    raise ValueError(
                        f"Conflicting quantity targets for {item.catalog_entry_id}"
                    )
                resolved[item.catalog_entry_id] = item
        return list(resolved.values())

    def _allocate_lines(
        self,
        tag: TagModel,
        requests: list[LineRequest],
        actor: str,
    ) -> None:
        """Allocate each request onto its line; undo this call on failure."""
        claims: list[_Claim] = []
        try:
            for request in requests:
                result = self.engine.allocate(
                    tag.id,
                    request.catalog_entry_id,
                    request.quantity,
                    request.method,
                    request.instance_ids or None,
                    actor,
                )
                line = tag.line_for(request.catalog_entry_id)
                claim = _Claim(line=line, new_line=line is None)
                if line is None:
                    line = TagLineModel(
                        id=uuid4(),
                        catalog_entry_id=request.catalog_entry_id,
                        method=request.method.value,
                        notes=request.notes,
                        position=len(tag.lines),
                    )
                    tag.lines.append(line)
                    claim.line = line
                claim.instance_ids = list(result.instance_ids)
                claims.append(claim)
                self._append_allocations(line, result.instance_ids)
                self.session.flush()
        except Exception:
            self._undo_claims(tag, claims, actor)
            raise

    def _undo_claims(self, tag: TagModel, claims: list[_Claim], actor: str) -> None:
        for claim in reversed(claims):
            self.engine.release(
                tag.id, claim.instance_ids, actor, claim.line.catalog_entry_id
            )
            self._drop_allocations(claim.line, claim.instance_ids)
            if claim.new_line:
                tag.lines.remove(claim.line)
        self.session.flush()
        if claims:
            logger.warning("allocation_compensated", extra={
                "tag_id": str(tag.id),
                "released": sum(len(c.instance_ids) for c in claims),
            })

    def _append_allocations(self, line: TagLineModel, ids: Iterable[UUID]) -> None:
        position = max((a.position for a in line.allocations), default=-1) + 1
        for instance_id in ids:
            line.allocations.append(TagLineAllocationModel(
                id=uuid4(),
                instance_id=instance_id,
                position=position,
            ))
            position += 1

    def _drop_allocations(self, line: TagLineModel, ids: Iterable[UUID]) -> None:
        drop = set(ids)
        for allocation in [a for a in line.allocations if a.instance_id in drop]:
            line.allocations.remove(allocation)

    def _verify_owned(self, tag: TagModel, catalog_entry_id: str, ids: list[UUID]):
        """
        Confirm every id still exists and is owned by `tag`.

        Returns:
            The instance records, oldest-acquired first.
        """
        records = self.store.get_many(ids)
        owned = {r.id for r in records if r.tag_id == tag.id}
        stray = [str(i) for i in ids if i not in owned]
        if stray:
            logger.critical("ownership_consistency_violation", extra={
                "tag_id": str(tag.id),
                "catalog_entry_id": catalog_entry_id,
                "instance_ids": stray,
            })
            raise ConsistencyViolationError(
                f"{len(stray)} instance(s) on tag {tag.id} are missing or owned elsewhere",
                instance_ids=stray,
                tag_id=str(tag.id),
                catalog_entry_id=catalog_entry_id,
            )
        return records

    def _delete_owned(
        self,
        tag: TagModel,
        ids: list[UUID],
        catalog_entry_id: str | None,
    ) -> None:
        deleted = self.store.delete(ids, expected_owner=tag.id)
        if deleted != len(ids):
            logger.critical("ownership_consistency_violation", extra={
                "tag_id": str(tag.id),
                "catalog_entry_id": catalog_entry_id,
                "requested": len(ids),
                "deleted": deleted,
            })
            raise ConsistencyViolationError(
                f"deleted {deleted} of {len(ids)} instances owned by tag {tag.id}",
                instance_ids=[str(i) for i in ids],
                tag_id=str(tag.id),
                catalog_entry_id=catalog_entry_id,
            )

    def _plan_removals(
        self,
        tag: TagModel,
        removals: Sequence[LineRemoval],
    ) -> list[tuple[TagLineModel, int]]:
        """Validate removals up front; returns (line, quantity) pairs."""
        totals: dict[str, int] = {}
        for removal in removals:
            totals[removal.catalog_entry_id] = (
                totals.get(removal.catalog_entry_id, 0) + removal.quantity
            )
        plan = []
        for catalog_entry_id, quantity in totals.items():
            line = self._line(tag, catalog_entry_id)
            if quantity > line.quantity:
                logger.warning("removal_exceeds_allocation", extra={
                    "tag_id": str(tag.id),
                    "catalog_entry_id": catalog_entry_id,
                    "requested": quantity,
                    "allocated": line.quantity,
                })
                raise InsufficientAllocationError(
                    str(tag.id), catalog_entry_id, quantity, line.quantity
                )
            plan.append((line, quantity))
        return plan

    def _release_oldest(
        self,
        tag: TagModel,
        plan: list[tuple[TagLineModel, int]],
        actor: str,
    ) -> None:
        for line, quantity in plan:
            records = self._verify_owned(tag, line.catalog_entry_id, line.instance_ids)
            chosen = [r.id for r in records[:quantity]]
            self.engine.release(tag.id, chosen, actor, line.catalog_entry_id)
            self._drop_allocations(line, chosen)

    def _select_returns(
        self,
        tag: TagModel,
        returns: Mapping[str, Sequence[UUID]] | None,
    ) -> list[tuple[TagLineModel, list[UUID]]]:
        if returns is None:
            selection = [(line, line.instance_ids) for line in tag.lines if line.quantity]
        else:
            if not returns:
                raise ValueError("returns must name at least one catalog entry")
            selection = []
            for catalog_entry_id, ids in returns.items():
                line = self._line(tag, catalog_entry_id)
                id_list = list(ids)
                on_line = set(line.instance_ids)
                if not id_list or len(set(id_list)) != len(id_list):
                    raise InvalidSelectionError(
                        catalog_entry_id,
                        [str(i) for i in id_list],
                        "returned ids must be a non-empty set",
                    )
                foreign = [str(i) for i in id_list if i not in on_line]
                if foreign:
                    raise InvalidSelectionError(
                        catalog_entry_id, foreign, "instances are not on this loan"
                    )
                selection.append((line, id_list))
        if not selection:
            raise InvalidSelectionError("", [], "nothing left on the loan to return")
        return selection

    def _new_condition_tag(
        self,
        loan: TagModel,
        condition: ReturnCondition,
        actor: str,
        notes: str | None,
    ) -> TagModel:
        now = self.clock.now()
        tag_type = _CONDITION_TAG_TYPES[condition]
        summary = f"Returned {condition.value} from loan {loan.id}"
        tag = TagModel(
            id=uuid4(),
            tag_type=tag_type.value,
            status=TagStatus.ACTIVE.value,
            customer_name=loan.customer_name,
            project_name=loan.project_name,
            notes=f"{summary}: {notes}" if notes else summary,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        self.session.add(tag)
        self.session.flush()
        logger.info("condition_tag_created", extra={
            "loan_tag_id": str(loan.id),
            "condition_tag_id": str(tag.id),
            "tag_type": tag_type.value,
        })
        return tag
