"""
Module: portfolio_kernel.selectors.approval_selector
Responsibility: Read side of approval configuration -- the active policies
    on a set of nodes and the delegations in effect at an instant.  Chain
    resolution reads through here; PolicyService and DelegationService
    expose the same queries to their callers.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from portfolio_kernel.domain.approval import ApprovalDelegation, ApprovalPolicy, ApprovalScope
from portfolio_kernel.models.approval import ApprovalDelegationModel, ApprovalPolicyModel
from portfolio_kernel.selectors.base import BaseSelector


class ApprovalSelector(BaseSelector):
    """Read-only queries over approval policies and delegations."""

    def active_policies_for_nodes(
        self,
        org_node_ids: Iterable[UUID],
        scope: ApprovalScope,
    ) -> dict[UUID, tuple[ApprovalPolicy, ...]]:
        """Active policies for *scope* on each of *org_node_ids*, level order."""
        ids = set(org_node_ids)
        if not ids:
            return {}
        result: dict[UUID, list[ApprovalPolicy]] = {}
        rows = self.session.execute(
            select(ApprovalPolicyModel)
            .where(
                ApprovalPolicyModel.org_node_id.in_(ids),
                ApprovalPolicyModel.scope == scope.value,
                ApprovalPolicyModel.is_active.is_(True),
            )
            .order_by(ApprovalPolicyModel.org_node_id, ApprovalPolicyModel.level)
        ).scalars()
        for row in rows:
            result.setdefault(row.org_node_id, []).append(row.to_dto())
        return {node_id: tuple(policies) for node_id, policies in result.items()}

    def delegations_in_effect(
        self,
        delegator_ids: Iterable[UUID],
        as_of: datetime,
    ) -> tuple[ApprovalDelegation, ...]:
        """Delegations from any of *delegator_ids* in effect at *as_of*."""
        ids = set(delegator_ids)
        if not ids:
            return ()
        rows = self.session.execute(
            select(ApprovalDelegationModel)
            .where(
                ApprovalDelegationModel.delegator_id.in_(ids),
                ApprovalDelegationModel.effective_start <= as_of,
                ApprovalDelegationModel.effective_end > as_of,
            )
            .order_by(ApprovalDelegationModel.id)
        ).scalars()
        return tuple(m.to_dto() for m in rows)
