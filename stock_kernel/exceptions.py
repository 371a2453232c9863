"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers must be able to tell "not enough stock" from "tag already closed"
without parsing message strings. Every error therefore:
  1. Has its own class (catch by type, not message)
  2. Carries a CODE class attribute (machine-readable, API-safe)
  3. Stores the affected ids and quantities as attributes

Example:
    try:
        manager.create(TagType.RESERVED, lines, actor="alice", customer_name="ACME")
    except InsufficientStockError as e:
        api_response(
            code=e.code,
            catalog_entry_id=e.catalog_entry_id,
            requested=e.requested,
            available=e.available,
        )

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- AllocationError
    |   +-- InsufficientStockError
    |   +-- InvalidSelectionError
    |
    +-- TagError
    |   +-- TagNotFoundError
    |   +-- TagLineNotFoundError
    |   +-- InsufficientAllocationError
    |   +-- InvalidTransitionError
    |
    +-- ConsistencyError
    |   +-- ConsistencyViolationError      (fatal)
    |
    +-- CatalogError
        +-- CatalogEntryNotFoundError
        +-- InvalidAttributesError
        +-- CatalogCategoryMismatchError
        +-- BundleNotStockableError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                      | When Raised
-------------|---------------------------|------------------------------------------
Allocation   | INSUFFICIENT_STOCK        | Fewer available units than requested
             | INVALID_SELECTION         | Manual ids wrong entry / owned / unknown
-------------|---------------------------|------------------------------------------
Tag          | TAG_NOT_FOUND             | Tag id doesn't exist
             | TAG_LINE_NOT_FOUND        | Tag has no line for the catalog entry
             | INSUFFICIENT_ALLOCATION   | Fulfil/remove more than allocated
             | INVALID_TRANSITION        | Mutation against a terminal tag
-------------|---------------------------|------------------------------------------
Consistency  | CONSISTENCY_VIOLATION     | Owner field disagrees with tag membership
-------------|---------------------------|------------------------------------------
Catalog      | CATALOG_ENTRY_NOT_FOUND   | Catalog collaborator has no such entry
             | INVALID_ATTRIBUTES        | Category attributes missing/unknown
             | CATALOG_CATEGORY_MISMATCH | e.g. non-tool entry on a tool checkout
             | BUNDLE_NOT_STOCKABLE      | Receiving units of a bundle entry

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Recoverable errors (allocation, tag, catalog) leave no residual state;
   the caller may present the structured fields and retry.

2. ConsistencyViolationError is NOT recoverable. It means an instance's
   owner field and the tag membership disagree. It is logged at CRITICAL
   and must never be auto-corrected:

    except ConsistencyViolationError as e:
        alert_operator(e)
        raise
"""


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"
    recoverable: bool = True


# Allocation-related exceptions


class AllocationError(StockKernelError):
    """Base exception for instance allocation errors."""

    code: str = "ALLOCATION_ERROR"


class InsufficientStockError(AllocationError):
    """Fewer available instances than requested at allocation time."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, catalog_entry_id: str, requested: int, available: int):
        self.catalog_entry_id = catalog_entry_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {catalog_entry_id}: "
            f"requested {requested}, available {available}"
        )


class InvalidSelectionError(AllocationError):
    """Manual selection references unusable instances."""

    code: str = "INVALID_SELECTION"

    def __init__(
        self,
        catalog_entry_id: str,
        instance_ids: list[str],
        reason: str,
    ):
        self.catalog_entry_id = catalog_entry_id
        self.instance_ids = instance_ids
        self.reason = reason
        super().__init__(
            f"Invalid selection for {catalog_entry_id}: {reason} "
            f"({len(instance_ids)} instance(s))"
        )


# Tag-related exceptions


class TagError(StockKernelError):
    """Base exception for tag lifecycle errors."""

    code: str = "TAG_ERROR"


class TagNotFoundError(TagError):
    """Tag with given ID was not found."""

    code: str = "TAG_NOT_FOUND"

    def __init__(self, tag_id: str):
        self.tag_id = tag_id
        super().__init__(f"Tag not found: {tag_id}")


class TagLineNotFoundError(TagError):
    """Tag has no line item for the catalog entry."""

    code: str = "TAG_LINE_NOT_FOUND"

    def __init__(self, tag_id: str, catalog_entry_id: str):
        self.tag_id = tag_id
        self.catalog_entry_id = catalog_entry_id
        super().__init__(f"Tag {tag_id} has no line for {catalog_entry_id}")


class InsufficientAllocationError(TagError):
    """Fulfilment or removal requests more than a line holds."""

    code: str = "INSUFFICIENT_ALLOCATION"

    def __init__(
        self,
        tag_id: str,
        catalog_entry_id: str,
        requested: int,
        allocated: int,
    ):
        self.tag_id = tag_id
        self.catalog_entry_id = catalog_entry_id
        self.requested = requested
        self.allocated = allocated
        super().__init__(
            f"Tag {tag_id} line {catalog_entry_id}: requested {requested}, "
            f"only {allocated} allocated"
        )


class InvalidTransitionError(TagError):
    """Mutating call against a tag whose status forbids it."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, tag_id: str, status: str, operation: str):
        self.tag_id = tag_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} tag {tag_id}: status is {status}"
        )


# Consistency exceptions


class ConsistencyError(StockKernelError):
    """Base exception for ownership consistency errors."""

    code: str = "CONSISTENCY_ERROR"
    recoverable: bool = False


class ConsistencyViolationError(ConsistencyError):
    """
    Instance owner field disagrees with tag membership.

    Fatal. Never auto-corrected: silently repairing the owner field would
    hide a double-allocation.
    """

    code: str = "CONSISTENCY_VIOLATION"

    def __init__(
        self,
        reason: str,
        instance_ids: list[str] | None = None,
        tag_id: str | None = None,
        catalog_entry_id: str | None = None,
    ):
        self.reason = reason
        self.instance_ids = instance_ids or []
        self.tag_id = tag_id
        self.catalog_entry_id = catalog_entry_id
        super().__init__(f"Consistency violation: {reason}")


# Catalog exceptions


class CatalogError(StockKernelError):
    """Base exception for catalog collaborator errors."""

    code: str = "CATALOG_ERROR"


class CatalogEntryNotFoundError(CatalogError):
    """Catalog collaborator has no entry with the given ID."""

    code: str = "CATALOG_ENTRY_NOT_FOUND"

    def __init__(self, catalog_entry_id: str):
        self.catalog_entry_id = catalog_entry_id
        super().__init__(f"Catalog entry not found: {catalog_entry_id}")


class InvalidAttributesError(CatalogError):
    """Category attributes failed validation."""

    code: str = "INVALID_ATTRIBUTES"

    def __init__(
        self,
        category: str,
        missing_fields: list[str] | None = None,
        unknown_fields: list[str] | None = None,
    ):
        self.category = category
        self.missing_fields = missing_fields or []
        self.unknown_fields = unknown_fields or []
        parts = []
        if self.missing_fields:
            parts.append(f"missing {', '.join(self.missing_fields)}")
        if self.unknown_fields:
            parts.append(f"unknown {', '.join(self.unknown_fields)}")
        super().__init__(
            f"Invalid attributes for category {category}: {'; '.join(parts)}"
        )


class CatalogCategoryMismatchError(CatalogError):
    """Catalog entry belongs to the wrong category kind for the operation."""

    code: str = "CATALOG_CATEGORY_MISMATCH"

    def __init__(self, catalog_entry_id: str, expected: str, actual: str):
        self.catalog_entry_id = catalog_entry_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Catalog entry {catalog_entry_id} is a {actual}, expected {expected}"
        )


class BundleNotStockableError(CatalogError):
    """Bundles have no physical units of their own."""

    code: str = "BUNDLE_NOT_STOCKABLE"

    def __init__(self, catalog_entry_id: str):
        self.catalog_entry_id = catalog_entry_id
        super().__init__(
            f"Catalog entry {catalog_entry_id} is a bundle; receive its components"
        )
