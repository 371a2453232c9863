"""
Module: stock_kernel.selectors.inventory_selector
Responsibility: Real-time stock breakdowns per catalog entry, derived from
    the instances table and the type of each instance's owning tag.
Architecture position: Kernel > Selectors.  Reads instances and tags only.

Invariants enforced:
    - No stored counts.  Every snapshot is recomputed from instance rows in
      the caller's session on every call, so it reflects mutations flushed
      earlier in the same unit of work.  Nothing is cached.
    - Bucket partition: unowned -> available; owned -> the owning tag's
      type.  total is the sum of the buckets and equals the number of
      surviving instances.

Failure modes:
    - Catalog entries with no instances yield all-zero snapshots, never an
      error.
"""

from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select

from stock_kernel.domain.dtos import (
    CostBreakdownRow,
    CostSummary,
    StockSnapshot,
    StockStatus,
    TagType,
)
from stock_kernel.models.instance import Instance
from stock_kernel.models.tag import Tag
from stock_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")
_COST_QUANTUM = Decimal("0.000000001")


class InventorySelector(BaseSelector):
    """
    Stock-level queries.

    Guarantees:
        - get_bulk_snapshot(ids)[x] == get_snapshot(x) for every x in ids,
          computed from a single grouped query.
    """

    def __init__(
        self,
        session,
        low_stock_threshold: int = 5,
        overstock_threshold: int = 100,
    ):
        super().__init__(session)
        self.low_stock_threshold = low_stock_threshold
        self.overstock_threshold = overstock_threshold

    @classmethod
    def from_settings(cls, session, settings) -> "InventorySelector":
        return cls(
            session,
            low_stock_threshold=settings.low_stock_threshold,
            overstock_threshold=settings.overstock_threshold,
        )

    def get_snapshot(self, catalog_entry_id: str) -> StockSnapshot:
        return self.get_bulk_snapshot([catalog_entry_id])[catalog_entry_id]

    def get_bulk_snapshot(
        self,
        catalog_entry_ids: Iterable[str],
    ) -> dict[str, StockSnapshot]:
        ids = list(dict.fromkeys(catalog_entry_ids))
        if not ids:
            return {}

        stmt = (
            select(
                Instance.catalog_entry_id,
                Tag.tag_type,
                func.count(Instance.id),
                func.sum(Instance.acquisition_cost),
            )
            .outerjoin(Tag, Instance.tag_id == Tag.id)
            .where(Instance.catalog_entry_id.in_(ids))
            .group_by(Instance.catalog_entry_id, Tag.tag_type)
        )

        counts: dict[str, dict[str, int]] = {cid: {} for cid in ids}
        values: dict[str, dict[str, Decimal]] = {cid: {} for cid in ids}
        for catalog_entry_id, tag_type, count, value in self.session.execute(stmt):
            bucket = "available" if tag_type is None else TagType(tag_type).value
            counts[catalog_entry_id][bucket] = count
            values[catalog_entry_id][bucket] = Decimal(value or 0)

        return {cid: self._snapshot(cid, counts[cid], values[cid]) for cid in ids}

    def _snapshot(
        self,
        catalog_entry_id: str,
        counts: dict[str, int],
        values: dict[str, Decimal],
    ) -> StockSnapshot:
        available = counts.get("available", 0)
        total = sum(counts.values())
        return StockSnapshot(
            catalog_entry_id=catalog_entry_id,
            available=available,
            reserved=counts.get(TagType.RESERVED.value, 0),
            broken=counts.get(TagType.BROKEN.value, 0),
            imperfect=counts.get(TagType.IMPERFECT.value, 0),
            loaned=counts.get(TagType.LOANED.value, 0),
            stock=counts.get(TagType.STOCK.value, 0),
            total_value=sum(values.values(), _ZERO),
            available_value=values.get("available", _ZERO),
            stock_status=self.classify(available, total),
        )

    def classify(self, available: int, total: int | None = None) -> StockStatus:
        """
        Shortage is judged on available units, excess on every unit held
        (total defaults to available).  A shortage wins over excess.
        """
        if total is None:
            total = available
        if available <= 0:
            return StockStatus.OUT_OF_STOCK
        if available <= self.low_stock_threshold:
            return StockStatus.LOW_STOCK
        if total > self.overstock_threshold:
            return StockStatus.OVERSTOCK
        return StockStatus.IN_STOCK

    # -------------------------------------------------------------------------
    # Cost views over available units
    # -------------------------------------------------------------------------

    def get_cost_summary(self, catalog_entry_id: str) -> CostSummary:
        stmt = select(
            func.count(Instance.id),
            func.sum(Instance.acquisition_cost),
            func.min(Instance.acquisition_cost),
            func.max(Instance.acquisition_cost),
            func.min(Instance.acquired_at),
            func.max(Instance.acquired_at),
        ).where(
            Instance.catalog_entry_id == catalog_entry_id,
            Instance.tag_id.is_(None),
        )
        count, total, lowest, highest, oldest, newest = self.session.execute(stmt).one()
        if not count:
            return CostSummary(catalog_entry_id=catalog_entry_id, count=0, total_value=_ZERO)

        total = Decimal(total)
        return CostSummary(
            catalog_entry_id=catalog_entry_id,
            count=count,
            total_value=total,
            average_cost=(total / count).quantize(_COST_QUANTUM),
            lowest_cost=Decimal(lowest),
            highest_cost=Decimal(highest),
            oldest_acquired_at=oldest,
            newest_acquired_at=newest,
        )

    def get_cost_breakdown(self, catalog_entry_id: str) -> list[CostBreakdownRow]:
        """Available units grouped by acquisition cost, cheapest first."""
        available = (
            Instance.catalog_entry_id == catalog_entry_id,
            Instance.tag_id.is_(None),
        )
        groups = self.session.execute(
            select(
                Instance.acquisition_cost,
                func.count(Instance.id),
                func.min(Instance.acquired_at),
                func.max(Instance.acquired_at),
            )
            .where(*available)
            .group_by(Instance.acquisition_cost)
            .order_by(Instance.acquisition_cost.asc())
        ).all()

        locations: dict[Decimal, list[str]] = {}
        for cost, location in self.session.execute(
            select(Instance.acquisition_cost, Instance.location)
            .where(*available)
            .distinct()
            .order_by(Instance.acquisition_cost.asc(), Instance.location.asc())
        ):
            locations.setdefault(Decimal(cost), []).append(location)

        return [
            CostBreakdownRow(
                acquisition_cost=Decimal(cost),
                count=count,
                oldest_acquired_at=oldest,
                newest_acquired_at=newest,
                locations=tuple(locations.get(Decimal(cost), ())),
            )
            for cost, count, oldest, newest in groups
        ]
