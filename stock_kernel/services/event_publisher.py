"""
EventPublisher -- fire-and-forget delivery of stock events.

Responsibility:
    Hands each completed ownership transition (StockEvent) to every
    registered sink.

Architecture position:
    Kernel > Services.  Called by AllocationEngine, TagLifecycleManager and
    StockService after a transition has been flushed.

Invariants enforced:
    - A sink failure never fails the triggering operation.  The exception
      is logged with its traceback and delivery continues with the next sink.
    - Sinks are called in registration order, synchronously, on the
      caller's thread.

Failure modes:
    - None propagate.
"""

from typing import Callable, Protocol

from stock_kernel.domain.events import StockEvent
from stock_kernel.logging_config import get_logger

logger = get_logger("services.event_publisher")


class EventSink(Protocol):
    def __call__(self, event: StockEvent) -> None: ...


class LoggingEventSink:
    """Writes every event as a structured INFO record."""

    def __init__(self, logger_name: str = "events"):
        self._logger = get_logger(logger_name)

    def __call__(self, event: StockEvent) -> None:
        self._logger.info(
            f"stock_{event.event_type.value}",
            extra=event.to_log_dict(),
        )


class RecordingEventSink:
    """Keeps events in memory; used by tests and in-process subscribers."""

    def __init__(self) -> None:
        self.events: list[StockEvent] = []

    def __call__(self, event: StockEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> list[StockEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class EventPublisher:
    """
    Synchronous fan-out to sinks.

    Contract:
        publish() returns normally regardless of sink behaviour.
    """

    def __init__(self, sinks: list[Callable[[StockEvent], None]] | None = None):
        self._sinks: list[Callable[[StockEvent], None]] = list(sinks or [])

    def subscribe(self, sink: Callable[[StockEvent], None]) -> None:
        self._sinks.append(sink)

    def unsubscribe(self, sink: Callable[[StockEvent], None]) -> None:
        self._sinks.remove(sink)

    @property
    def sinks(self) -> tuple[Callable[[StockEvent], None], ...]:
        return tuple(self._sinks)

    def publish(self, event: StockEvent) -> None:
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                logger.warning(
                    "event_sink_failed",
                    extra={
                        "event_id": str(event.event_id),
                        "event_type": event.event_type.value,
                        "sink": getattr(sink, "__qualname__", type(sink).__name__),
                    },
                    exc_info=True,
                )
