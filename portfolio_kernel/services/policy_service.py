"""
PolicyService -- approval policies attached to org nodes.

Responsibility:
    Creates, updates and deactivates ``ApprovalPolicy`` rows while keeping
    every active (org node, scope) group's levels dense: 1..n, no gaps.

Architecture position:
    Kernel > Services -- imperative shell.  Called by administrators and by
    OrgTreeService when a node is soft-deleted.

Invariants enforced:
    - Dense levels: a new policy must take level ``max + 1`` of its group;
      deactivating a policy shifts the higher levels of its group down by
      one.  Writers lock the group's active rows (FOR UPDATE) first.
    - Rule config is validated against the rule type, and people it names
      must exist in the directory.
    - Policies are deactivated, never deleted.

Failure modes:
    - OrgNodeNotFoundError / InactiveNodeError for a bad org node.
    - NonDenseLevelError, InvalidRuleConfigError, ImmutableFieldError.
    - PersonNotFoundError for a rule config naming an unknown person.
    - PolicyNotFoundError for an unknown policy id.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select

from portfolio_kernel.domain.approval import (
    MUTABLE_POLICY_FIELDS,
    ApprovalPolicy,
    ApprovalRuleType,
    ApprovalScope,
    CrossBuStrategy,
    config_person_ids,
    normalize_rule_config,
)
from portfolio_kernel.exceptions import (
    ImmutableFieldError,
    InactiveNodeError,
    NonDenseLevelError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
    PolicyNotFoundError,
    ValidationError,
)
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.approval import ApprovalPolicyModel
from portfolio_kernel.models.audit_event import AuditAction
from portfolio_kernel.models.org_node import OrgNodeModel
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.selectors.approval_selector import ApprovalSelector
from portfolio_kernel.services.base import BaseService

logger = get_logger("services.policy")


class PolicyService(BaseService):
    """Manages the per-node, per-scope approval levels."""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_policy(self, policy_id: UUID) -> ApprovalPolicy:
        return self._load_policy(policy_id).to_dto()

    def list_active(
        self,
        org_node_id: UUID,
        scope: ApprovalScope | str | None = None,
    ) -> list[ApprovalPolicy]:
        """Active policies of a node, by scope then level."""
        stmt = select(ApprovalPolicyModel).where(
            ApprovalPolicyModel.org_node_id == org_node_id,
            ApprovalPolicyModel.is_active.is_(True),
        )
        if scope is not None:
            stmt = stmt.where(ApprovalPolicyModel.scope == ApprovalScope(scope).value)
        stmt = stmt.order_by(ApprovalPolicyModel.scope, ApprovalPolicyModel.level)
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def list_active_for_nodes(
        self,
        org_node_ids: list[UUID],
        scope: ApprovalScope | str,
    ) -> dict[UUID, tuple[ApprovalPolicy, ...]]:
        """Active policies for *scope* on each of *org_node_ids*, level order."""
        return ApprovalSelector(self._session).active_policies_for_nodes(
            org_node_ids, ApprovalScope(scope)
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_policy(
        self,
        org_node_id: UUID,
        scope: ApprovalScope | str,
        level: int,
        rule_type: ApprovalRuleType | str,
        rule_config: Mapping[str, Any] | None = None,
        cross_bu_strategy: CrossBuStrategy | str = CrossBuStrategy.COMMON_ANCESTOR,
        actor_id: UUID | None = None,
    ) -> ApprovalPolicy:
        """
        Attach a new level to a node.

        The level must be exactly one above the group's current top level
        (1 for an empty group).
        """
        scope = ApprovalScope(scope)
        rule_type = ApprovalRuleType(rule_type)
        cross_bu_strategy = CrossBuStrategy(cross_bu_strategy)

        self._require_active_node(org_node_id)
        config = normalize_rule_config(rule_type, rule_config)
        self._require_people(rule_type, config)

        group = self._lock_group(org_node_id, scope)
        expected = len(group) + 1
        if level != expected:
            raise NonDenseLevelError(str(org_node_id), scope.value, level, expected)

        now = self._clock.now()
        model = ApprovalPolicyModel(
            org_node_id=org_node_id,
            scope=scope.value,
            level=level,
            rule_type=rule_type.value,
            rule_config=config,
            cross_bu_strategy=cross_bu_strategy.value,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self._session.add(model)
        self._session.flush()

        self._auditor.record(
            actor_id=actor_id,
            entity_type="ApprovalPolicy",
            entity_id=model.id,
            action=AuditAction.POLICY_CREATED,
            payload={
                "org_node_id": org_node_id,
                "scope": scope,
                "level": level,
                "rule_type": rule_type,
                "rule_config": config,
                "cross_bu_strategy": cross_bu_strategy,
            },
        )
        logger.info(
            "policy_created",
            extra={
                "policy_id": str(model.id),
                "org_node_id": str(org_node_id),
                "scope": scope.value,
                "level": level,
                "rule_type": rule_type.value,
            },
        )
        return model.to_dto()

    def update_policy(
        self,
        policy_id: UUID,
        patch: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> ApprovalPolicy:
        """
        Change a policy's rule type, rule config or cross-BU strategy.

        Node, scope and level are fixed; reorder by deactivating and
        re-creating.
        """
        for key in patch:
            if key not in MUTABLE_POLICY_FIELDS:
                raise ImmutableFieldError("ApprovalPolicy", key)

        model = self._load_policy(policy_id)
        if not model.is_active:
            raise ValidationError(f"ApprovalPolicy {policy_id} is inactive")

        before = model.to_dto()
        rule_type = ApprovalRuleType(patch.get("rule_type", model.rule_type))
        raw_config = patch["rule_config"] if "rule_config" in patch else model.rule_config
        if "rule_type" in patch and "rule_config" not in patch:
            raw_config = {}
        config = normalize_rule_config(rule_type, raw_config)
        self._require_people(rule_type, config)

        model.rule_type = rule_type.value
        model.rule_config = config
        if "cross_bu_strategy" in patch:
            model.cross_bu_strategy = CrossBuStrategy(patch["cross_bu_strategy"]).value
        model.updated_at = self._clock.now()
        self._session.flush()

        after = model.to_dto()
        self._auditor.record(
            actor_id=actor_id,
            entity_type="ApprovalPolicy",
            entity_id=model.id,
            action=AuditAction.POLICY_UPDATED,
            payload={
                "before": {
                    "rule_type": before.rule_type,
                    "rule_config": dict(before.rule_config),
                    "cross_bu_strategy": before.cross_bu_strategy,
                },
                "after": {
                    "rule_type": after.rule_type,
                    "rule_config": dict(after.rule_config),
                    "cross_bu_strategy": after.cross_bu_strategy,
                },
            },
        )
        logger.info(
            "policy_updated",
            extra={"policy_id": str(policy_id), "fields": sorted(patch)},
        )
        return after

    def deactivate_policy(
        self,
        policy_id: UUID,
        actor_id: UUID | None = None,
    ) -> ApprovalPolicy:
        """
        Deactivate a policy and close the gap it leaves.

        Higher levels in the same (node, scope) group move down by one.
        Deactivating an inactive policy is a no-op.
        """
        model = self._load_policy(policy_id)
        if not model.is_active:
            return model.to_dto()

        scope = ApprovalScope(model.scope)
        group = self._lock_group(model.org_node_id, scope)
        removed_level = model.level

        model.is_active = False
        model.updated_at = self._clock.now()
        self._session.flush()

        shifted = 0
        for other in group:
            if other.id == model.id or other.level < removed_level:
                continue
            # One row per flush so the active-level unique index never sees a clash
            other.level -= 1
            other.updated_at = self._clock.now()
            self._session.flush()
            shifted += 1

        self._auditor.record(
            actor_id=actor_id,
            entity_type="ApprovalPolicy",
            entity_id=model.id,
            action=AuditAction.POLICY_DEACTIVATED,
            payload={
                "org_node_id": model.org_node_id,
                "scope": scope,
                "level": removed_level,
                "levels_shifted": shifted,
            },
        )
        logger.info(
            "policy_deactivated",
            extra={
                "policy_id": str(policy_id),
                "level": removed_level,
                "levels_shifted": shifted,
            },
        )
        return model.to_dto()

    def deactivate_for_node(
        self,
        org_node_id: UUID,
        actor_id: UUID | None = None,
        reason: str = "org_node_deleted",
    ) -> int:
        """Deactivate every active policy of a node.  Returns the count."""
        models = list(
            self._session.execute(
                select(ApprovalPolicyModel)
                .where(
                    ApprovalPolicyModel.org_node_id == org_node_id,
                    ApprovalPolicyModel.is_active.is_(True),
                )
                .order_by(ApprovalPolicyModel.scope, ApprovalPolicyModel.level)
                .with_for_update()
            ).scalars()
        )
        now = self._clock.now()
        for model in models:
            model.is_active = False
            model.updated_at = now
        self._session.flush()

        for model in models:
            self._auditor.record(
                actor_id=actor_id,
                entity_type="ApprovalPolicy",
                entity_id=model.id,
                action=AuditAction.POLICY_DEACTIVATED,
                payload={
                    "org_node_id": org_node_id,
                    "scope": model.scope,
                    "level": model.level,
                    "reason": reason,
                },
            )
        if models:
            logger.info(
                "policies_deactivated_for_node",
                extra={"org_node_id": str(org_node_id), "count": len(models)},
            )
        return len(models)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_policy(self, policy_id: UUID) -> ApprovalPolicyModel:
        model = self._session.get(ApprovalPolicyModel, policy_id)
        if model is None:
            raise PolicyNotFoundError(str(policy_id))
        return model

    def _lock_group(self, org_node_id: UUID, scope: ApprovalScope) -> list[ApprovalPolicyModel]:
        return list(
            self._session.execute(
                select(ApprovalPolicyModel)
                .where(
                    ApprovalPolicyModel.org_node_id == org_node_id,
                    ApprovalPolicyModel.scope == scope.value,
                    ApprovalPolicyModel.is_active.is_(True),
                )
                .order_by(ApprovalPolicyModel.level)
                .with_for_update()
            ).scalars()
        )

    def _require_active_node(self, org_node_id: UUID) -> None:
        node = self._session.get(OrgNodeModel, org_node_id)
        if node is None:
            raise OrgNodeNotFoundError(str(org_node_id))
        if not node.is_active:
            raise InactiveNodeError(str(org_node_id))

    def _require_people(self, rule_type: ApprovalRuleType, config: Mapping[str, Any]) -> None:
        ids = config_person_ids(rule_type, config)
        if not ids:
            return
        found = set(
            self._session.execute(
                select(PersonModel.id).where(PersonModel.id.in_(set(ids)))
            ).scalars()
        )
        for person_id in ids:
            if person_id not in found:
                raise PersonNotFoundError(str(person_id))
