"""
Catalog collaborator interface.

Responsibility:
    Declares what the stock kernel needs from the product/tool catalog
    (unit cost, category, bundle composition, attributes) and ships an
    in-memory adapter for tests and embedded use.

Architecture position:
    Kernel boundary.  Catalog CRUD lives outside the kernel; services only
    call CatalogProvider.get_catalog_entry().

Failure modes:
    - CatalogEntryNotFoundError for unknown ids.
    - ValueError on bundles without components or with non-positive
      component quantities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Protocol, runtime_checkable

from stock_kernel.db.types import to_money
from stock_kernel.domain.attributes import (
    CategoryAttributes,
    ProductCategory,
    parse_attributes,
)
from stock_kernel.exceptions import CatalogEntryNotFoundError


@dataclass(frozen=True)
class BundleComponent:
    catalog_entry_id: str
    quantity: int = 1

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(
                f"Bundle component quantity must be positive: {self.catalog_entry_id}"
            )


@dataclass(frozen=True)
class CatalogEntry:
    """
    What the kernel knows about one catalog entry.

    Guarantees:
        - is_bundle implies at least one component.
        - unit_cost is a non-negative Decimal.
    """

    catalog_entry_id: str
    unit_cost: Decimal
    category: ProductCategory
    is_bundle: bool = False
    bundle_components: tuple[BundleComponent, ...] = ()
    attributes: CategoryAttributes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "unit_cost", to_money(self.unit_cost))
        object.__setattr__(self, "category", ProductCategory(self.category))
        object.__setattr__(self, "bundle_components", tuple(self.bundle_components))
        if self.is_bundle and not self.bundle_components:
            raise ValueError(f"Bundle {self.catalog_entry_id} has no components")
        if not self.is_bundle and self.bundle_components:
            raise ValueError(
                f"Non-bundle {self.catalog_entry_id} cannot declare components"
            )

    @property
    def is_tool(self) -> bool:
        return self.category.is_tool


@runtime_checkable
class CatalogProvider(Protocol):
    """Lookup interface the kernel depends on."""

    def get_catalog_entry(self, catalog_entry_id: str) -> CatalogEntry:
        """Return the entry or raise CatalogEntryNotFoundError."""
        ...


class InMemoryCatalog:
    """Dictionary-backed CatalogProvider."""

    def __init__(self, entries: list[CatalogEntry] | None = None):
        self._entries: dict[str, CatalogEntry] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: CatalogEntry) -> CatalogEntry:
        self._entries[entry.catalog_entry_id] = entry
        return entry

    def register(
        self,
        catalog_entry_id: str,
        unit_cost: Decimal | int | str,
        category: ProductCategory | str = ProductCategory.MISCELLANEOUS,
        attributes: Mapping[str, Any] | None = None,
        components: list[tuple[str, int]] | None = None,
    ) -> CatalogEntry:
        """Register an entry, validating attributes against the category."""
        category = ProductCategory(category)
        parsed = (
            parse_attributes(category, attributes) if attributes is not None else None
        )
        bundle = tuple(BundleComponent(cid, qty) for cid, qty in components or [])
        return self.add(
            CatalogEntry(
                catalog_entry_id=catalog_entry_id,
                unit_cost=to_money(unit_cost),
                category=category,
                is_bundle=bool(bundle),
                bundle_components=bundle,
                attributes=parsed,
            )
        )

    def get_catalog_entry(self, catalog_entry_id: str) -> CatalogEntry:
        try:
            return self._entries[catalog_entry_id]
        except KeyError:
            raise CatalogEntryNotFoundError(catalog_entry_id) from None

    def __contains__(self, catalog_entry_id: object) -> bool:
        return catalog_entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
