"""
StockService -- receipt and consumption of stock outside customer claims.

Responsibility:
    Receives new units into the available pool at a frozen acquisition
    cost, and writes off (consumes) the oldest available units.

Architecture position:
    Kernel > Services.  Receipt goes straight to InstanceStore.  Write-off
    goes through TagLifecycleManager with a ``stock`` tag that is created
    fifo and fulfilled immediately, so consumption reuses the conditional
    claim and the all-or-nothing protocol instead of deleting unowned rows.

Invariants enforced:
    - Frozen cost: the cost is stamped on each instance at receipt and
      defaults to the catalog unit cost at that moment.
    - Bundles have no units of their own and cannot be received.

Failure modes:
    - CatalogEntryNotFoundError, BundleNotStockableError on receipt.
    - InsufficientStockError on write-off when too few units are available
      (nothing is consumed).
    - ValueError for a zero adjustment or non-positive quantities.
"""

from datetime import datetime
from decimal import Decimal

from stock_kernel.catalog import CatalogProvider
from stock_kernel.domain.dtos import (
    InstanceRecord,
    LineRequest,
    SelectionMethod,
    StockAdjustment,
    TagType,
)
from stock_kernel.domain.events import StockEvent, StockEventType
from stock_kernel.exceptions import BundleNotStockableError
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.services.base import BaseService
from stock_kernel.services.instance_store import InstanceStore
from stock_kernel.services.tag_lifecycle import TagLifecycleManager

logger = get_logger("services.stock")


class StockService(BaseService):
    """Receipts, write-offs and signed quantity adjustments."""

    def __init__(
        self,
        session,
        catalog: CatalogProvider,
        lifecycle: TagLifecycleManager | None = None,
        clock=None,
    ):
        super().__init__(session, clock)
        self.catalog = catalog
        self.lifecycle = lifecycle or TagLifecycleManager(
            session, catalog, clock=self.clock
        )
        self.store: InstanceStore = self.lifecycle.store
        self.publisher = self.lifecycle.publisher

    @classmethod
    def from_settings(
        cls, session, catalog: CatalogProvider, settings, clock=None
    ) -> "StockService":
        lifecycle = TagLifecycleManager.from_settings(
            session, catalog, settings, clock=clock
        )
        return cls(session, catalog, lifecycle=lifecycle, clock=clock)

    def receive(
        self,
        catalog_entry_id: str,
        quantity: int,
        actor: str,
        cost: Decimal | int | str | None = None,
        location: str | None = None,
        supplier: str | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
        acquired_at: datetime | None = None,
    ) -> list[InstanceRecord]:
        """Create `quantity` available units of a catalog entry."""
        entry = self.catalog.get_catalog_entry(catalog_entry_id)
        if entry.is_bundle:
            raise BundleNotStockableError(catalog_entry_id)
        unit_cost = entry.unit_cost if cost is None else cost

        with LogContext.bind(actor_id=actor, catalog_entry_id=catalog_entry_id):
            records = self.store.create_many(
                catalog_entry_id,
                quantity,
                unit_cost,
                location,
                acquired_at=acquired_at,
                supplier=supplier,
                reference_number=reference_number,
                notes=notes,
                added_by=actor,
            )
            self.publisher.publish(StockEvent(
                event_type=StockEventType.RECEIVED,
                actor=actor,
                occurred_at=self.clock.now(),
                catalog_entry_id=catalog_entry_id,
                instance_ids=tuple(r.id for r in records),
                details={"unit_cost": str(records[0].acquisition_cost)},
            ))
            logger.info("stock_received", extra={
                "quantity": quantity,
                "unit_cost": str(records[0].acquisition_cost),
                "location": records[0].location,
            })
        return records

    def write_off(
        self,
        catalog_entry_id: str,
        quantity: int,
        actor: str,
        reason: str | None = None,
    ) -> StockAdjustment:
        """
        Consume the `quantity` oldest available units.

        All-or-nothing: if fewer units are available, nothing is consumed.
        """
        if quantity <= 0:
            raise ValueError(f"Write-off quantity must be positive, got {quantity}")
        tag = self.lifecycle.create(
            TagType.STOCK,
            [LineRequest(catalog_entry_id, quantity, SelectionMethod.FIFO)],
            actor,
            notes=reason,
        )
        consumed = tag.instance_ids
        self.lifecycle.fulfill_all(tag.id, actor)
        logger.info("stock_written_off", extra={
            "catalog_entry_id": catalog_entry_id,
            "quantity": len(consumed),
            "write_off_tag_id": str(tag.id),
            "reason": reason,
        })
        return StockAdjustment(
            catalog_entry_id=catalog_entry_id,
            delta=-len(consumed),
            instance_ids=consumed,
            tag_id=tag.id,
        )

    def adjust_quantity(
        self,
        catalog_entry_id: str,
        delta: int,
        actor: str,
        reason: str | None = None,
        cost: Decimal | int | str | None = None,
    ) -> StockAdjustment:
        """Positive delta receives at catalog cost; negative writes off oldest."""
        if delta == 0:
            raise ValueError("Adjustment delta cannot be zero")
        if delta > 0:
            records = self.receive(
                catalog_entry_id, delta, actor, cost=cost, notes=reason
            )
            return StockAdjustment(
                catalog_entry_id=catalog_entry_id,
                delta=delta,
                instance_ids=tuple(r.id for r in records),
            )
        return self.write_off(catalog_entry_id, -delta, actor, reason)
