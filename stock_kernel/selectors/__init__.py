"""Read-only selectors."""

from stock_kernel.selectors.base import BaseSelector
from stock_kernel.selectors.inventory_selector import InventorySelector
from stock_kernel.selectors.ownership_selector import OwnershipChecker
from stock_kernel.selectors.tag_selector import TagSelector

__all__ = [
    "BaseSelector",
    "InventorySelector",
    "OwnershipChecker",
    "TagSelector",
]
