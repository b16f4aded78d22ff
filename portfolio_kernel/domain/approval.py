"""
Approval domain types (``portfolio_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the org-hierarchy approval engine.  Defines the
request lifecycle state machine, policy and delegation records, the
frozen chain step, and rule-config validation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.  May import
``utils/hashing`` for the snapshot digest.

Invariants enforced
-------------------
* Lifecycle state machine -- ``APPROVAL_TRANSITIONS`` defines the only
  valid status transitions.  Terminal states have no outgoing edges.
* Snapshot immutability -- ``ChainStep`` and ``ResolvedApprover`` are
  frozen; ``chain_to_json``/``chain_from_json`` are exact inverses and
  ``hash_chain`` is the digest stored with every request.
* Quorum -- ``ChainStep.required_approvals`` is the quorum when set,
  otherwise every resolved approver.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

from portfolio_kernel.exceptions import InvalidRuleConfigError
from portfolio_kernel.utils.hashing import hash_payload


# =========================================================================
# Enumerations
# =========================================================================


class ApprovalScope(str, Enum):
    """What kind of change a policy governs."""

    RESOURCE_ALLOCATION = "RESOURCE_ALLOCATION"
    INITIATIVE = "INITIATIVE"
    SCENARIO = "SCENARIO"


class SubjectType(str, Enum):
    """Kind of entity an approval request is about."""

    ALLOCATION = "allocation"
    INITIATIVE = "initiative"
    SCENARIO = "scenario"


class ApprovalRuleType(str, Enum):
    """Closed set of approver-resolution rules."""

    NODE_MANAGER = "NODE_MANAGER"
    SPECIFIC_PERSON = "SPECIFIC_PERSON"
    ROLE_BASED = "ROLE_BASED"
    ANCESTOR_MANAGER = "ANCESTOR_MANAGER"
    COMMITTEE = "COMMITTEE"
    FALLBACK_ADMIN = "FALLBACK_ADMIN"


class CrossBuStrategy(str, Enum):
    """How many ancestors contribute levels to a chain."""

    COMMON_ANCESTOR = "COMMON_ANCESTOR"
    ALL_BRANCHES = "ALL_BRANCHES"


class ApprovalStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class DecisionType(str, Enum):
    """Decisions an approver can record."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class EnforcementMode(str, Enum):
    """How ``check_approval`` treats an operation that lacks approval.

    NONE is reported when no approval applies at all.
    """

    BLOCKING = "BLOCKING"
    ADVISORY = "ADVISORY"
    NONE = "NONE"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
    ApprovalStatus.EXPIRED,
})


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in APPROVAL_TRANSITIONS.get(current, frozenset())


MUTABLE_POLICY_FIELDS: frozenset[str] = frozenset({
    "rule_type",
    "rule_config",
    "cross_bu_strategy",
})


# =========================================================================
# Policies and delegations
# =========================================================================


@dataclass(frozen=True)
class ApprovalPolicy:
    """One level of approval attached to an org node for a scope."""

    id: UUID
    org_node_id: UUID
    scope: ApprovalScope
    level: int
    rule_type: ApprovalRuleType
    rule_config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    cross_bu_strategy: CrossBuStrategy = CrossBuStrategy.COMMON_ANCESTOR
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalDelegation:
    """Time-bounded substitution of *delegate_id* for *delegator_id*.

    ``scope`` and ``org_node_id`` of None mean "all scopes" and "all
    nodes".  The window is half-open: ``[effective_start, effective_end)``.
    """

    id: UUID
    delegator_id: UUID
    delegate_id: UUID
    effective_start: datetime
    effective_end: datetime
    scope: ApprovalScope | None = None
    org_node_id: UUID | None = None
    reason: str | None = None
    created_at: datetime | None = None

    def is_effective_at(self, as_of: datetime) -> bool:
        return self.effective_start <= as_of < self.effective_end

    def applies_to(self, scope: ApprovalScope, org_node_id: UUID) -> bool:
        return (self.scope is None or self.scope == scope) and (
            self.org_node_id is None or self.org_node_id == org_node_id
        )

    def precedence_key(self) -> tuple:
        """Sort key: larger is preferred (most specific, then most recent)."""
        return (
            self.scope is not None,
            self.org_node_id is not None,
            self.effective_start,
            self.created_at or self.effective_start,
            str(self.id),
        )


# =========================================================================
# Chain snapshot
# =========================================================================


@dataclass(frozen=True)
class ResolvedApprover:
    """A person eligible to decide at a chain step.

    ``delegated_from`` is set when this person stands in for the approver
    the rule originally resolved to.
    """

    person_id: UUID
    name: str
    email: str
    delegated_from: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "person_id": str(self.person_id),
            "name": self.name,
            "email": self.email,
            "delegated_from": str(self.delegated_from) if self.delegated_from else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResolvedApprover:
        delegated_from = data.get("delegated_from")
        return cls(
            person_id=UUID(data["person_id"]),
            name=data["name"],
            email=data["email"],
            delegated_from=UUID(delegated_from) if delegated_from else None,
        )


@dataclass(frozen=True)
class ChainStep:
    """One frozen level of an approval chain."""

    level: int
    org_node_id: UUID
    org_node_name: str
    rule_type: ApprovalRuleType
    resolved_approvers: tuple[ResolvedApprover, ...]
    quorum: int | None = None
    fallback_applied: bool = False

    @property
    def approver_ids(self) -> frozenset[UUID]:
        return frozenset(a.person_id for a in self.resolved_approvers)

    @property
    def required_approvals(self) -> int:
        if self.quorum is not None:
            return self.quorum
        return len(self.resolved_approvers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "org_node_id": str(self.org_node_id),
            "org_node_name": self.org_node_name,
            "rule_type": self.rule_type.value,
            "resolved_approvers": [a.to_dict() for a in self.resolved_approvers],
            "quorum": self.quorum,
            "fallback_applied": self.fallback_applied,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChainStep:
        return cls(
            level=int(data["level"]),
            org_node_id=UUID(data["org_node_id"]),
            org_node_name=data["org_node_name"],
            rule_type=ApprovalRuleType(data["rule_type"]),
            resolved_approvers=tuple(
                ResolvedApprover.from_dict(a) for a in data["resolved_approvers"]
            ),
            quorum=data.get("quorum"),
            fallback_applied=bool(data.get("fallback_applied", False)),
        )


def chain_to_json(chain: Sequence[ChainStep]) -> list[dict[str, Any]]:
    return [step.to_dict() for step in chain]


def chain_from_json(data: Sequence[Mapping[str, Any]] | None) -> tuple[ChainStep, ...]:
    return tuple(ChainStep.from_dict(step) for step in (data or ()))


def hash_chain(chain: Sequence[ChainStep] | Sequence[Mapping[str, Any]]) -> str:
    """SHA-256 of the canonical JSON form of a chain."""
    items = [s.to_dict() if isinstance(s, ChainStep) else s for s in chain]
    return hash_payload({"snapshot_chain": items})


# =========================================================================
# Requests and decisions
# =========================================================================


@dataclass(frozen=True)
class ApprovalDecisionRecord:
    """Record of a single approval decision. Immutable."""

    id: UUID
    request_id: UUID
    level: int
    decider_id: UUID
    decision: DecisionType
    decided_at: datetime
    comments: str | None = None


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable view of an approval request and its frozen chain."""

    id: UUID
    scope: ApprovalScope
    subject_type: SubjectType
    subject_id: UUID
    requester_id: UUID
    status: ApprovalStatus
    snapshot_chain: tuple[ChainStep, ...]
    current_level: int
    snapshot_hash: str
    snapshot_context: Mapping[str, Any] | None = None
    org_node_id: UUID | None = None
    expires_at: datetime | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    decisions: tuple[ApprovalDecisionRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    @property
    def current_step(self) -> ChainStep | None:
        if self.status != ApprovalStatus.PENDING:
            return None
        if 1 <= self.current_level <= len(self.snapshot_chain):
            return self.snapshot_chain[self.current_level - 1]
        return None

    def is_expired_at(self, as_of: datetime) -> bool:
        return self.expires_at is not None and as_of >= self.expires_at


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of ``submit_decision``: the request after the decision."""

    request: ApprovalRequest
    decision: ApprovalDecisionRecord
    level_advanced: bool = False


@dataclass(frozen=True)
class ApprovalCheck:
    """
    Result of ``check_approval``: may the operation on a subject go ahead?

    ``request`` is the APPROVED request that allows it, or the PENDING one
    the operation now waits on.  ``request_created`` is set when the check
    opened that PENDING request itself.
    """

    allowed: bool
    enforcement: EnforcementMode
    chain: tuple[ChainStep, ...] = ()
    request: ApprovalRequest | None = None
    request_created: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def pending_request_id(self) -> UUID | None:
        if self.request is not None and self.request.status == ApprovalStatus.PENDING:
            return self.request.id
        return None


# =========================================================================
# Rule config validation
# =========================================================================


def _as_uuid(rule_type: ApprovalRuleType, name: str, value: Any) -> UUID:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidRuleConfigError(rule_type.value, name, f"not a valid id: {value!r}")


def _as_quorum(rule_type: ApprovalRuleType, value: Any, upper: int | None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRuleConfigError(rule_type.value, "quorum", "must be an integer")
    if value < 1:
        raise InvalidRuleConfigError(rule_type.value, "quorum", "must be at least 1")
    if upper is not None and value > upper:
        raise InvalidRuleConfigError(
            rule_type.value, "quorum", f"cannot exceed the {upper} listed members"
        )
    return value


def normalize_rule_config(
    rule_type: ApprovalRuleType,
    rule_config: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """
    Validate *rule_config* for *rule_type* and return its stored form.

    Person ids are rendered as strings; unknown keys are dropped.  Whether
    the referenced people exist is checked by the policy service.

    Raises:
        InvalidRuleConfigError: A required key is missing or malformed.
    """
    config = dict(rule_config or {})

    if rule_type == ApprovalRuleType.SPECIFIC_PERSON:
        if "person_id" not in config:
            raise InvalidRuleConfigError(rule_type.value, "person_id", "is required")
        return {"person_id": str(_as_uuid(rule_type, "person_id", config["person_id"]))}

    if rule_type == ApprovalRuleType.COMMITTEE:
        raw = config.get("person_ids")
        if not isinstance(raw, (list, tuple)) or not raw:
            raise InvalidRuleConfigError(
                rule_type.value, "person_ids", "must be a non-empty list"
            )
        ids: list[str] = []
        for value in raw:
            pid = str(_as_uuid(rule_type, "person_ids", value))
            if pid not in ids:
                ids.append(pid)
        normalized: dict[str, Any] = {"person_ids": ids}
        if config.get("quorum") is not None:
            normalized["quorum"] = _as_quorum(rule_type, config["quorum"], len(ids))
        return normalized

    if rule_type == ApprovalRuleType.ROLE_BASED:
        role = config.get("role")
        if not isinstance(role, str) or not role.strip():
            raise InvalidRuleConfigError(rule_type.value, "role", "is required")
        normalized = {"role": role.strip()}
        if config.get("quorum") is not None:
            normalized["quorum"] = _as_quorum(rule_type, config["quorum"], None)
        return normalized

    return {}


def config_person_ids(rule_type: ApprovalRuleType, rule_config: Mapping[str, Any]) -> tuple[UUID, ...]:
    """Person ids a normalized rule config names directly."""
    if rule_type == ApprovalRuleType.SPECIFIC_PERSON:
        return (UUID(rule_config["person_id"]),)
    if rule_type == ApprovalRuleType.COMMITTEE:
        return tuple(UUID(p) for p in rule_config["person_ids"])
    return ()
