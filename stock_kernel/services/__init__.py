"""Write-side services.  All of them flush, none of them commit."""

from stock_kernel.services.allocation_engine import AllocationEngine
from stock_kernel.services.base import BaseService
from stock_kernel.services.event_publisher import (
    EventPublisher,
    LoggingEventSink,
    RecordingEventSink,
)
from stock_kernel.services.instance_store import InstanceStore
from stock_kernel.services.loan_service import LoanService
from stock_kernel.services.stock_service import StockService
from stock_kernel.services.tag_lifecycle import TagLifecycleManager

__all__ = [
    "AllocationEngine",
    "BaseService",
    "EventPublisher",
    "InstanceStore",
    "LoanService",
    "LoggingEventSink",
    "RecordingEventSink",
    "StockService",
    "TagLifecycleManager",
]
