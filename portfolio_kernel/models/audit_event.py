"""
Module: portfolio_kernel.models.audit_event
Responsibility: ORM persistence for the append-only audit log.
Architecture position: Kernel > Models.  May import from db/ and
    exceptions only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - ``payload_hash`` is the SHA-256 of the canonical payload, so a
      rewritten payload is detectable.

Every mutation in the org tree, policy store, delegation store and
request engine produces one AuditEvent.  The engine writes these rows
but never reads them to make a decision.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from portfolio_kernel.db.base import Base, UUIDString
from portfolio_kernel.db.types import UTCDateTime
from portfolio_kernel.exceptions import ImmutabilityViolationError


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Org tree
    ORG_NODE_CREATED = "org_node_created"
    ORG_NODE_UPDATED = "org_node_updated"
    ORG_NODE_MOVED = "org_node_moved"
    ORG_NODE_DELETED = "org_node_deleted"

    # Memberships
    MEMBERSHIP_ASSIGNED = "membership_assigned"
    MEMBERSHIP_ENDED = "membership_ended"

    # Policies
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    POLICY_DEACTIVATED = "policy_deactivated"

    # Delegations
    DELEGATION_CREATED = "delegation_created"
    DELEGATION_REVOKED = "delegation_revoked"

    # Approval lifecycle
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_AUTO_APPROVED = "approval_auto_approved"
    APPROVAL_DECISION_RECORDED = "approval_decision_recorded"
    APPROVAL_LEVEL_ADVANCED = "approval_level_advanced"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_CANCELLED = "approval_cancelled"
    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_TAMPER_DETECTED = "approval_tamper_detected"


class AuditEvent(Base):
    """Audit log row.  Append-only."""

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "entity_seq", name="uq_audit_entity_seq",
        ),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    # Type of entity being audited (e.g., "OrgNode", "ApprovalRequest")
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # 1-based position in this entity's trace
    entity_seq: Mapped[int] = mapped_column(nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    # None for system actions such as the expiry sweep
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"


@event.listens_for(AuditEvent, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot modify",
    )


@event.listens_for(AuditEvent, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot delete",
    )
