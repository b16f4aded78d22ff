"""
AuditorService -- SQL-backed audit sink.

Responsibility:
    Writes one append-only ``AuditEvent`` per mutation in the org tree,
    policy store, delegation store and request engine, and serves the
    per-entity trace for forensic review.

Architecture position:
    Kernel > Services -- imperative shell.  Implements the ``AuditSink``
    protocol from ``domain/ports.py`` and is injected into every mutating
    service.

Invariants enforced:
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).
    - Fire-and-forget: ``record()`` runs the insert inside a SAVEPOINT.
      A storage failure rolls back the savepoint only, is logged as
      ``audit_record_failed`` and is not raised, so the caller's
      transaction survives.

Failure modes:
    - None propagate from ``record()``.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_kernel.domain.clock import Clock, SystemClock
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.audit_event import AuditAction, AuditEvent
from portfolio_kernel.utils.hashing import hash_payload, to_json_value

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: UUID | None
    payload: dict[str, Any]
    payload_hash: str

    @property
    def payload_intact(self) -> bool:
        return hash_payload(self.payload) == self.payload_hash


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, oldest first."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Records audit events without ever failing the caller.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT interpret audit events; no engine decision reads them.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _build_event(
        self,
        *,
        actor_id: UUID | None,
        entity_type: str,
        entity_id: UUID,
        action: str,
        payload: Mapping[str, Any] | None,
        timestamp: datetime | None,
    ) -> AuditEvent:
        payload_data = to_json_value(dict(payload or {}))
        next_seq = (
            self._session.execute(
                select(func.count())
                .select_from(AuditEvent)
                .where(
                    AuditEvent.entity_type == entity_type,
                    AuditEvent.entity_id == entity_id,
                )
            ).scalar_one()
            + 1
        )
        return AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            entity_seq=next_seq,
            action=action,
            actor_id=actor_id,
            occurred_at=timestamp or self._clock.now(),
            payload=payload_data,
            payload_hash=hash_payload(payload_data),
        )

    def record(
        self,
        *,
        actor_id: UUID | None,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction | str,
        payload: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        """Append an audit event.  Storage errors are logged, not raised."""
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        try:
            with self._session.begin_nested():
                audit_event = self._build_event(
                    actor_id=actor_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action_value,
                    payload=payload,
                    timestamp=timestamp,
                )
                self._session.add(audit_event)
                self._session.flush()
        except SQLAlchemyError:
            logger.error(
                "audit_record_failed",
                exc_info=True,
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "action": action_value,
                },
            )
            return

        logger.debug(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action_value,
            },
        )

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Complete audit trace for an entity, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.entity_seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=event.entity_seq,
                    action=event.action,
                    occurred_at=event.occurred_at,
                    actor_id=event.actor_id,
                    payload=event.payload or {},
                    payload_hash=event.payload_hash,
                )
                for event in events
            ),
        )
