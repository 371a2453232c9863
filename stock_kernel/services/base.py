"""
BaseService -- abstract base for all stock kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write-side service.  Services receive a SQLAlchemy ``Session``
    and use ``session.flush()`` -- never ``session.commit()``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back.  The caller (session_scope, API layer or
    test harness) owns commit/rollback.
"""

from abc import ABC

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for write-side services.

    Contract:
        Accepts a ``Session`` and an optional ``Clock``.  Every timestamp a
        service records comes from ``self.clock``.

    Non-goals:
        - Does NOT manage transaction lifecycle.
        - Does NOT provide read-only queries; those belong in selectors/.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
