"""
BaseService -- abstract base for the kernel's mutating services.

Responsibility:
    Common constructor and session-handling contract.  Every service
    receives a SQLAlchemy ``Session`` and uses ``session.flush()`` --
    never ``session.commit()``.  The caller owns the transaction, normally
    through ``db.engine.session_scope()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
"""

from abc import ABC
from typing import Any

from sqlalchemy.orm import Session

from portfolio_kernel.domain.clock import Clock, SystemClock
from portfolio_kernel.domain.ports import AuditSink
from portfolio_kernel.exceptions import InvalidFieldError
from portfolio_kernel.utils.hashing import to_json_value


def json_field(entity_type: str, field: str, value: Any) -> Any:
    """
    Plain-JSON form of an opaque map bound for a JSON column.

    UUIDs, datetimes, enums and sets are rendered the way snapshots are
    hashed.  Anything else JSON cannot hold raises InvalidFieldError.
    """
    try:
        return to_json_value(value)
    except (TypeError, ValueError) as exc:
        raise InvalidFieldError(entity_type, field, str(exc)) from exc


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``; multi-step operations stay atomic.
        - ``self._clock`` is the only time source a service consults.
        - Every mutation is reported to ``self._auditor``.
    """

    def __init__(self, session: Session, auditor: AuditSink, clock: Clock | None = None):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session
