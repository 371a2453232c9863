"""Pure domain layer: enums, DTOs, events, attributes and clocks."""

from stock_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from stock_kernel.domain.dtos import (
    AllocationResult,
    CostBreakdownRow,
    CostSummary,
    InstanceRecord,
    LineRemoval,
    LineRequest,
    LoanReturnResult,
    OwnershipViolation,
    QuantityTarget,
    ReturnCondition,
    SelectionMethod,
    StockAdjustment,
    StockSnapshot,
    StockStatus,
    TagLineRecord,
    TagRecord,
    TagStatus,
    TagType,
    ViolationKind,
)
from stock_kernel.domain.events import StockEvent, StockEventType

__all__ = [
    "AllocationResult",
    "Clock",
    "CostBreakdownRow",
    "CostSummary",
    "DeterministicClock",
    "InstanceRecord",
    "LineRemoval",
    "LineRequest",
    "LoanReturnResult",
    "OwnershipViolation",
    "QuantityTarget",
    "ReturnCondition",
    "SelectionMethod",
    "StockEvent",
    "StockEventType",
    "StockAdjustment",
    "StockSnapshot",
    "StockStatus",
    "SystemClock",
    "TagLineRecord",
    "TagRecord",
    "TagStatus",
    "TagType",
    "ViolationKind",
]
