"""
Collaborator contracts for the approval engine.

The engine talks to the person directory, the audit log and the
notification channel only through these protocols.  SQL-backed
implementations live in ``services/``; tests may pass in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from portfolio_kernel.domain.approval import ApprovalRequest, ChainStep
from portfolio_kernel.domain.org import Person


@runtime_checkable
class PersonDirectory(Protocol):
    """Resolves people by id and by role."""

    def get_people(self, person_ids: Iterable[UUID]) -> Mapping[UUID, Person]:
        """Return the known people among *person_ids* (active or not)."""
        ...

    def list_by_role(self, role: str) -> list[Person]:
        """Active people holding *role*."""
        ...

    def list_by_roles(self, roles: Iterable[str]) -> Mapping[str, list[Person]]:
        """Active people for each of *roles*; every role is a key, possibly empty."""
        ...

    def list_admins(self) -> list[Person]:
        """Active platform administrators."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only event log.  Failures never propagate to the caller."""

    def record(
        self,
        *,
        actor_id: UUID | None,
        entity_type: str,
        entity_id: UUID,
        action: str,
        payload: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        ...


@runtime_checkable
class ApprovalNotifier(Protocol):
    """Best-effort outbound notifications after a request transition."""

    def decision_requested(self, request: ApprovalRequest, step: ChainStep) -> None:
        ...

    def request_resolved(self, request: ApprovalRequest) -> None:
        ...
