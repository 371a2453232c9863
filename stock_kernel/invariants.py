"""
Stock Kernel Invariants Contract.

These invariants are structural law.  No setting may switch them off.

This module exists solely to declare them explicitly.  Enforcement is
distributed across InstanceStore, AllocationEngine, TagLifecycleManager,
the tag_line_allocations unique constraint, and OwnershipChecker.
"""

from enum import Enum, unique


@unique
class StockInvariant(str, Enum):
    """Non-configurable invariants enforced by the stock kernel."""

    SINGLE_OWNER = "single_owner"
    """An instance's owner is null iff it sits in no allocation set, and
    otherwise it sits in exactly one line of exactly one tag.  Enforced by
    the conditional owner write and UNIQUE(tag_line_allocations.instance_id);
    verified by OwnershipChecker."""

    DERIVED_QUANTITY = "derived_quantity"
    """A line's quantity is the size of its allocated id set.  No quantity
    column exists."""

    TERMINAL_STATUS = "terminal_status"
    """Fulfilled and cancelled tags accept no further mutation.  Enforced
    by TagLifecycleManager before any write."""

    RELEASE_NEVER_DELETES = "release_never_deletes"
    """Cancellation, removal and loan return clear the owner; only
    fulfillment and write-off delete instances."""

    ALL_OR_NOTHING = "all_or_nothing"
    """A failed allocate, create or fulfill leaves no ownership change
    behind.  Enforced by compensating release before the error
    propagates."""

    FROZEN_COST = "frozen_cost"
    """Acquisition cost is fixed at receipt and never follows later
    catalog price changes."""


ALL_STOCK_INVARIANTS: frozenset[StockInvariant] = frozenset(StockInvariant)

# Pure layers that may not import SQLAlchemy.
# Enforced by tests/architecture/test_stock_boundary.py.
PURE_PACKAGES: tuple[str, ...] = ("stock_kernel.domain",)

FORBIDDEN_PURE_IMPORTS: tuple[str, ...] = (
    "sqlalchemy",
    "stock_kernel.db",
    "stock_kernel.models",
    "stock_kernel.services",
    "stock_kernel.selectors",
)
