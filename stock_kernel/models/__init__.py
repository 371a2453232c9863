"""ORM models.  Importing this package registers every table on Base.metadata."""

from stock_kernel.models.instance import Instance
from stock_kernel.models.tag import Tag, TagLine, TagLineAllocation

__all__ = [
    "Instance",
    "Tag",
    "TagLine",
    "TagLineAllocation",
]
