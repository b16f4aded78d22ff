"""
Module: portfolio_kernel.models.approval
Responsibility: ORM persistence for approval policies, delegations,
    requests and decisions.

Architecture position: Kernel > Models.  May import from db/ and
    exceptions only.

Invariants enforced:
    - Policy levels are unique per active (org node, scope) group
      (partial unique index); density is enforced by PolicyService.
    - Delegation windows are non-inverted (CHECK effective_start <=
      effective_end); strictness and self-delegation are checked by
      DelegationService.
    - Request status values are constrained by CHECK; transitions are
      enforced by ApprovalService.
    - ``snapshot_chain`` and ``snapshot_hash`` are write-once
      (before_update listener).
    - ``version`` is an optimistic lock: a concurrent writer that read an
      older version fails with StaleDataError on flush.
    - Decisions are append-only and unique per (request, level, decider).

Failure modes:
    - ImmutabilityViolationError on decision UPDATE/DELETE or snapshot
      rewrite.
    - IntegrityError on a duplicate decision; ApprovalService checks first
      and translates a lost race into ConcurrentModificationError.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portfolio_kernel.db.base import Base, TrackedBase, UUIDString
from portfolio_kernel.db.types import UTCDateTime
from portfolio_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from portfolio_kernel.domain.approval import (
        ApprovalDecisionRecord,
        ApprovalDelegation,
        ApprovalPolicy,
        ApprovalRequest,
    )

_SCOPES = "'RESOURCE_ALLOCATION', 'INITIATIVE', 'SCENARIO'"


class ApprovalPolicyModel(TrackedBase):
    """One approval level attached to an org node for a scope."""

    __tablename__ = "approval_policies"

    __table_args__ = (
        CheckConstraint(f"scope IN ({_SCOPES})", name="ck_approval_policies_scope"),
        CheckConstraint("level >= 1", name="ck_approval_policies_level"),
        CheckConstraint(
            "rule_type IN ('NODE_MANAGER', 'SPECIFIC_PERSON', 'ROLE_BASED', "
            "'ANCESTOR_MANAGER', 'COMMITTEE', 'FALLBACK_ADMIN')",
            name="ck_approval_policies_rule_type",
        ),
        CheckConstraint(
            "cross_bu_strategy IN ('COMMON_ANCESTOR', 'ALL_BRANCHES')",
            name="ck_approval_policies_strategy",
        ),
        Index(
            "uq_approval_policies_active_level",
            "org_node_id", "scope", "level",
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_approval_policies_node_scope", "org_node_id", "scope", "is_active"),
    )

    org_node_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("org_nodes.id"), nullable=False,
    )
    scope: Mapped[str] = mapped_column(String(30), nullable=False)
    level: Mapped[int] = mapped_column(nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    rule_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    cross_bu_strategy: Mapped[str] = mapped_column(
        String(30), nullable=False, default="COMMON_ANCESTOR",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<ApprovalPolicy node={self.org_node_id} {self.scope} "
            f"L{self.level} {self.rule_type}>"
        )

    def to_dto(self) -> ApprovalPolicy:
        from types import MappingProxyType

        from portfolio_kernel.domain.approval import (
            ApprovalPolicy,
            ApprovalRuleType,
            ApprovalScope,
            CrossBuStrategy,
        )

        return ApprovalPolicy(
            id=self.id,
            org_node_id=self.org_node_id,
            scope=ApprovalScope(self.scope),
            level=self.level,
            rule_type=ApprovalRuleType(self.rule_type),
            rule_config=MappingProxyType(dict(self.rule_config or {})),
            cross_bu_strategy=CrossBuStrategy(self.cross_bu_strategy),
            is_active=self.is_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ApprovalDelegationModel(Base):
    """Time-bounded delegation of approval authority."""

    __tablename__ = "approval_delegations"

    __table_args__ = (
        CheckConstraint(
            f"scope IS NULL OR scope IN ({_SCOPES})",
            name="ck_approval_delegations_scope",
        ),
        CheckConstraint(
            "effective_start <= effective_end",
            name="ck_approval_delegations_window",
        ),
        CheckConstraint(
            "delegator_id <> delegate_id",
            name="ck_approval_delegations_not_self",
        ),
        Index(
            "idx_approval_delegations_lookup",
            "delegator_id", "effective_start", "effective_end",
        ),
    )

    delegator_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("people.id"), nullable=False,
    )
    delegate_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("people.id"), nullable=False,
    )
    scope: Mapped[str | None] = mapped_column(String(30), nullable=True)
    org_node_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("org_nodes.id"), nullable=True,
    )
    effective_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalDelegation {self.delegator_id} -> {self.delegate_id} "
            f"[{self.effective_start}, {self.effective_end})>"
        )

    def to_dto(self) -> ApprovalDelegation:
        from portfolio_kernel.domain.approval import ApprovalDelegation, ApprovalScope

        return ApprovalDelegation(
            id=self.id,
            delegator_id=self.delegator_id,
            delegate_id=self.delegate_id,
            effective_start=self.effective_start,
            effective_end=self.effective_end,
            scope=ApprovalScope(self.scope) if self.scope else None,
            org_node_id=self.org_node_id,
            reason=self.reason,
            created_at=self.created_at,
        )


class ApprovalRequestModel(TrackedBase):
    """Persistent approval request with its frozen chain.

    Contract:
        ``snapshot_chain`` is the JSON form of the resolved chain and is
        never rewritten.  ``current_level`` only moves forward.  Terminal
        statuses accept no further change (ApprovalService).
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED', 'EXPIRED')",
            name="ck_approval_requests_status",
        ),
        CheckConstraint(
            "subject_type IN ('allocation', 'initiative', 'scenario')",
            name="ck_approval_requests_subject_type",
        ),
        CheckConstraint("current_level >= 0", name="ck_approval_requests_level"),
        Index(
            "idx_approval_requests_subject",
            "scope", "subject_type", "subject_id", "status",
        ),
        Index("idx_approval_requests_expiry", "status", "expires_at"),
        Index("idx_approval_requests_requester", "requester_id", "created_at"),
    )

    scope: Mapped[str] = mapped_column(String(30), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    org_node_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("org_nodes.id"), nullable=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    snapshot_chain: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    snapshot_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    current_level: Mapped[int] = mapped_column(nullable=False, default=1)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    decisions: Mapped[list[ApprovalDecisionModel]] = relationship(
        "ApprovalDecisionModel",
        back_populates="request",
        order_by="ApprovalDecisionModel.decided_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} {self.subject_type}:{self.subject_id} "
            f"status={self.status} level={self.current_level}>"
        )

    def to_dto(self) -> ApprovalRequest:
        from types import MappingProxyType

        from portfolio_kernel.domain.approval import (
            ApprovalRequest,
            ApprovalScope,
            ApprovalStatus,
            SubjectType,
            chain_from_json,
        )

        return ApprovalRequest(
            id=self.id,
            scope=ApprovalScope(self.scope),
            subject_type=SubjectType(self.subject_type),
            subject_id=self.subject_id,
            requester_id=self.requester_id,
            status=ApprovalStatus(self.status),
            snapshot_chain=chain_from_json(self.snapshot_chain),
            current_level=self.current_level,
            snapshot_hash=self.snapshot_hash,
            snapshot_context=(
                MappingProxyType(dict(self.snapshot_context))
                if self.snapshot_context is not None
                else None
            ),
            org_node_id=self.org_node_id,
            expires_at=self.expires_at,
            resolved_at=self.resolved_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            decisions=tuple(d.to_dto() for d in self.decisions),
        )


class ApprovalDecisionModel(Base):
    """Persistent approval decision record. Append-only."""

    __tablename__ = "approval_decisions"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "level", "decider_id",
            name="uq_approval_decisions_decider",
        ),
        CheckConstraint(
            "decision IN ('APPROVED', 'REJECTED')",
            name="ck_approval_decisions_decision",
        ),
        Index("idx_approval_decisions_request_level", "request_id", "level"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(nullable=False)
    decider_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    request: Mapped[ApprovalRequestModel] = relationship(
        "ApprovalRequestModel", back_populates="decisions",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision request={self.request_id} L{self.level} "
            f"{self.decider_id} {self.decision}>"
        )

    def to_dto(self) -> ApprovalDecisionRecord:
        from portfolio_kernel.domain.approval import ApprovalDecisionRecord, DecisionType

        return ApprovalDecisionRecord(
            id=self.id,
            request_id=self.request_id,
            level=self.level,
            decider_id=self.decider_id,
            decision=DecisionType(self.decision),
            decided_at=self.decided_at,
            comments=self.comments,
        )


# =============================================================================
# ORM-level immutability
# =============================================================================


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot delete",
    )


@event.listens_for(ApprovalRequestModel, "before_update")
def prevent_snapshot_rewrite(mapper, connection, target):
    state = inspect(target)
    for attr in ("snapshot_chain", "snapshot_hash", "scope", "subject_type", "subject_id"):
        if state.attrs[attr].history.has_changes():
            raise ImmutabilityViolationError(
                entity_type="ApprovalRequest",
                entity_id=str(target.id),
                reason=f"{attr} is frozen at creation",
            )
