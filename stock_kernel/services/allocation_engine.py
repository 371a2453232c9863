"""
AllocationEngine -- selects instances and claims them for a tag.

Responsibility:
    Picks available instances for a requested quantity under a selection
    method (fifo, cost_based, manual) and marks them owned by a tag with a
    conditional write.  Also performs the inverse (release) and the
    owner-to-owner move used by damaged loan returns (transfer).

Architecture position:
    Kernel > Services.  Depends on InstanceStore for every read and write
    and on EventPublisher for notifications.  Knows nothing about tag lines;
    TagLifecycleManager records the returned ids.

Invariants enforced:
    - Single owner: claiming is ``UPDATE ... WHERE tag_id IS NULL``.  No
      global lock is taken; an instance claimed by a concurrent request
      simply does not match the predicate.
    - All-or-nothing: when the claim changes fewer rows than selected (lost
      race), the rows this call did acquire are released before retrying
      or failing.  A failed allocate leaves no ownership change.
    - Release never deletes.

Failure modes:
    - InsufficientStockError: fewer candidates than requested, or still
      short after ``allocation_retries`` lost races.
    - InvalidSelectionError: manual ids unknown, duplicated, of another
      catalog entry, already owned, or lost to a concurrent claim.
    - ConsistencyViolationError: release/transfer found instances that are
      not owned by the tag they were supposed to come from.  Logged at
      CRITICAL; the caller's transaction must be rolled back.

Audit relevance:
    Every completed allocate/release/transfer publishes one StockEvent with
    the tag id, catalog entry, instance ids, method and actor.
"""

import time
from typing import Iterable, Sequence
from uuid import UUID

from stock_kernel.domain.dtos import AllocationResult, SelectionMethod
from stock_kernel.domain.events import StockEvent, StockEventType
from stock_kernel.exceptions import (
    ConsistencyViolationError,
    InsufficientStockError,
    InvalidSelectionError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.services.base import BaseService
from stock_kernel.services.event_publisher import EventPublisher
from stock_kernel.services.instance_store import InstanceStore

logger = get_logger("services.allocation_engine")


class AllocationEngine(BaseService):
    """
    Instance selection and ownership transitions.

    Contract:
        allocate() either returns an AllocationResult whose ids are all owned
        by tag_id, or raises with no ownership change.

    Guarantees:
        - Selection order is deterministic per method (see InstanceStore).
        - At most 1 + allocation_retries selection rounds per call.

    Non-goals:
        - Does NOT persist line membership (TagLifecycleManager does).
        - Does NOT check tag status.
    """

    def __init__(
        self,
        session,
        store: InstanceStore | None = None,
        publisher: EventPublisher | None = None,
        clock=None,
        allocation_retries: int = 1,
    ):
        super().__init__(session, clock)
        if allocation_retries < 0:
            raise ValueError("allocation_retries cannot be negative")
        self.store = store or InstanceStore(session, self.clock)
        self.publisher = publisher or EventPublisher()
        self.allocation_retries = allocation_retries

    @classmethod
    def from_settings(
        cls,
        session,
        settings,
        publisher: EventPublisher | None = None,
        clock=None,
    ) -> "AllocationEngine":
        """Engine whose store and retry bound follow `settings`."""
        return cls(
            session,
            store=InstanceStore.from_settings(session, settings, clock),
            publisher=publisher,
            clock=clock,
            allocation_retries=settings.allocation_retries,
        )

    # =========================================================================
    # Allocate
    # =========================================================================

    def allocate(
        self,
        tag_id: UUID,
        catalog_entry_id: str,
        quantity: int | None,
        method: SelectionMethod = SelectionMethod.FIFO,
        manual_ids: Sequence[UUID] | None = None,
        actor: str = "system",
    ) -> AllocationResult:
        """
        Claim instances of `catalog_entry_id` for `tag_id`.

        Args:
            quantity: Units to claim.  Optional for manual selection, where
                it must equal len(manual_ids) when given.
            method: fifo, cost_based or manual.
            manual_ids: Explicit ids for manual selection.

        Raises:
            InsufficientStockError, InvalidSelectionError, ValueError.
        """
        method = SelectionMethod(method)
        t0 = time.monotonic()
        logger.debug("allocation_started", extra={
            "tag_id": str(tag_id),
            "catalog_entry_id": catalog_entry_id,
            "quantity": quantity,
            "method": method.value,
        })

        if method == SelectionMethod.MANUAL:
            ids = self._allocate_manual(
                tag_id, catalog_entry_id, quantity, list(manual_ids or [])
            )
            attempts = 1
        else:
            if manual_ids:
                raise ValueError("manual_ids are only valid with manual selection")
            if quantity is None or quantity <= 0:
                raise ValueError(f"Quantity must be positive, got {quantity}")
            ids, attempts = self._allocate_selected(
                tag_id, catalog_entry_id, quantity, method
            )

        result = AllocationResult(
            tag_id=tag_id,
            catalog_entry_id=catalog_entry_id,
            method=method,
            instance_ids=tuple(ids),
            attempts=attempts,
        )

        self.publisher.publish(StockEvent(
            event_type=StockEventType.ALLOCATED,
            actor=actor,
            occurred_at=self.clock.now(),
            tag_id=tag_id,
            catalog_entry_id=catalog_entry_id,
            instance_ids=result.instance_ids,
            method=method,
        ))

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info("allocation_completed", extra={
            "tag_id": str(tag_id),
            "catalog_entry_id": catalog_entry_id,
            "quantity": result.quantity,
            "method": method.value,
            "attempts": attempts,
            "duration_ms": duration_ms,
        })
        return result

    def _allocate_selected(
        self,
        tag_id: UUID,
        catalog_entry_id: str,
        quantity: int,
        method: SelectionMethod,
    ) -> tuple[list[UUID], int]:
        max_attempts = 1 + self.allocation_retries
        attempts = 0

        while True:
            attempts += 1
            candidates = self.store.find_available(
                catalog_entry_id, method, limit=quantity
            )
            if len(candidates) < quantity:
                logger.warning("allocation_insufficient_stock", extra={
                    "catalog_entry_id": catalog_entry_id,
                    "requested": quantity,
                    "available": len(candidates),
                    "attempt": attempts,
                })
                raise InsufficientStockError(
                    catalog_entry_id, quantity, len(candidates)
                )

            ids = [c.id for c in candidates]
            changed = self.store.set_owner(ids, tag_id, expected_owner=None)
            if changed == len(ids):
                return ids, attempts

            # Lost a race on at least one candidate.
            self._undo_partial_claim(tag_id, ids)
            logger.warning("allocation_race_lost", extra={
                "tag_id": str(tag_id),
                "catalog_entry_id": catalog_entry_id,
                "selected": len(ids),
                "claimed": changed,
                "attempt": attempts,
                "max_attempts": max_attempts,
            })
            if attempts >= max_attempts:
                available = self.store.count_available(catalog_entry_id)
                raise InsufficientStockError(catalog_entry_id, quantity, available)

    def _allocate_manual(
        self,
        tag_id: UUID,
        catalog_entry_id: str,
        quantity: int | None,
        ids: list[UUID],
    ) -> list[UUID]:
        if not ids:
            raise InvalidSelectionError(catalog_entry_id, [], "no instances selected")
        if len(set(ids)) != len(ids):
            raise InvalidSelectionError(
                catalog_entry_id, [str(i) for i in ids], "duplicate instance ids"
            )
        if quantity is not None and quantity != len(ids):
            raise InvalidSelectionError(
                catalog_entry_id,
                [str(i) for i in ids],
                f"quantity {quantity} does not match {len(ids)} selected instances",
            )

        found = {r.id: r for r in self.store.get_many(ids)}
        unknown = [str(i) for i in ids if i not in found]
        if unknown:
            self._reject(catalog_entry_id, unknown, "unknown instance ids")
        wrong_entry = [
            str(i) for i in ids if found[i].catalog_entry_id != catalog_entry_id
        ]
        if wrong_entry:
            self._reject(
                catalog_entry_id, wrong_entry, "instances belong to another catalog entry"
            )
        owned = [str(i) for i in ids if not found[i].is_available]
        if owned:
            self._reject(catalog_entry_id, owned, "instances are already allocated")

        changed = self.store.set_owner(ids, tag_id, expected_owner=None)
        if changed != len(ids):
            self._undo_partial_claim(tag_id, ids)
            self._reject(
                catalog_entry_id,
                [str(i) for i in ids],
                "instances were allocated concurrently",
            )
        return ids

    def _reject(self, catalog_entry_id: str, ids: list[str], reason: str) -> None:
        logger.warning("allocation_invalid_selection", extra={
            "catalog_entry_id": catalog_entry_id,
            "instance_ids": ids,
            "reason": reason,
        })
        raise InvalidSelectionError(catalog_entry_id, ids, reason)

    def _undo_partial_claim(self, tag_id: UUID, ids: list[UUID]) -> None:
        """Release whatever subset of `ids` this call managed to claim."""
        ours = [r.id for r in self.store.get_many(ids) if r.tag_id == tag_id]
        if ours:
            self.store.set_owner(ours, None, expected_owner=tag_id)

    # =========================================================================
    # Release / transfer
    # =========================================================================

    def release(
        self,
        tag_id: UUID,
        ids: Iterable[UUID],
        actor: str = "system",
        catalog_entry_id: str | None = None,
    ) -> int:
        """
        Return `ids` from `tag_id` to the available pool.  Never deletes.

        Raises:
            ConsistencyViolationError: some ids were not owned by tag_id.
        """
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        changed = self.store.set_owner(id_list, None, expected_owner=tag_id)
        if changed != len(id_list):
            self._violation(
                "release",
                tag_id,
                catalog_entry_id,
                id_list,
                f"released {changed} of {len(id_list)} instances owned by tag {tag_id}",
            )

        self.publisher.publish(StockEvent(
            event_type=StockEventType.RELEASED,
            actor=actor,
            occurred_at=self.clock.now(),
            tag_id=tag_id,
            catalog_entry_id=catalog_entry_id,
            instance_ids=tuple(id_list),
        ))
        logger.info("release_completed", extra={
            "tag_id": str(tag_id),
            "catalog_entry_id": catalog_entry_id,
            "quantity": len(id_list),
        })
        return changed

    def transfer(
        self,
        from_tag_id: UUID,
        to_tag_id: UUID,
        ids: Iterable[UUID],
        actor: str = "system",
        catalog_entry_id: str | None = None,
    ) -> int:
        """
        Move ownership of `ids` from one tag to another without passing
        through the available pool.

        Raises:
            ConsistencyViolationError: some ids were not owned by from_tag_id.
        """
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        changed = self.store.set_owner(id_list, to_tag_id, expected_owner=from_tag_id)
        if changed != len(id_list):
            self._violation(
                "transfer",
                from_tag_id,
                catalog_entry_id,
                id_list,
                f"moved {changed} of {len(id_list)} instances from tag {from_tag_id}",
            )

        self.publisher.publish(StockEvent(
            event_type=StockEventType.TRANSFERRED,
            actor=actor,
            occurred_at=self.clock.now(),
            tag_id=from_tag_id,
            catalog_entry_id=catalog_entry_id,
            instance_ids=tuple(id_list),
            details={"to_tag_id": str(to_tag_id)},
        ))
        logger.info("transfer_completed", extra={
            "from_tag_id": str(from_tag_id),
            "to_tag_id": str(to_tag_id),
            "catalog_entry_id": catalog_entry_id,
            "quantity": len(id_list),
        })
        return changed

    def _violation(
        self,
        operation: str,
        tag_id: UUID,
        catalog_entry_id: str | None,
        ids: list[UUID],
        reason: str,
    ) -> None:
        logger.critical("ownership_consistency_violation", extra={
            "operation": operation,
            "tag_id": str(tag_id),
            "catalog_entry_id": catalog_entry_id,
            "instance_ids": [str(i) for i in ids],
            "reason": reason,
        })
        raise ConsistencyViolationError(
            reason,
            instance_ids=[str(i) for i in ids],
            tag_id=str(tag_id),
            catalog_entry_id=catalog_entry_id,
        )
