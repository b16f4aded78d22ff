"""
DelegationService -- time-bounded approver substitution records.

Responsibility:
    Creates and revokes ``ApprovalDelegation`` rows and serves the
    candidate delegations chain resolution needs.  A delegation is inert
    outside ``[effective_start, effective_end)``; revocation moves
    ``effective_end`` to now rather than deleting anything.

Architecture position:
    Kernel > Services -- imperative shell.  Selection among overlapping
    delegations is the pure ``domain.chain_resolver.select_delegation``.

Failure modes:
    - InvalidDelegationError: self-delegation, or start not before end.
    - PersonNotFoundError: unknown delegator, or unknown/inactive delegate.
    - OrgNodeNotFoundError: unknown org node restriction.
    - DelegationNotFoundError: unknown delegation id.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from portfolio_kernel.db.types import as_utc
from portfolio_kernel.domain.approval import ApprovalDelegation, ApprovalScope
from portfolio_kernel.exceptions import (
    DelegationNotFoundError,
    InvalidDelegationError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
)
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.approval import ApprovalDelegationModel
from portfolio_kernel.models.audit_event import AuditAction
from portfolio_kernel.models.org_node import OrgNodeModel
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.selectors.approval_selector import ApprovalSelector
from portfolio_kernel.services.base import BaseService

logger = get_logger("services.delegation")


class DelegationService(BaseService):
    """Creates, revokes and looks up delegations."""

    def get_delegation(self, delegation_id: UUID) -> ApprovalDelegation:
        return self._load(delegation_id).to_dto()

    def create_delegation(
        self,
        delegator_id: UUID,
        delegate_id: UUID,
        effective_start: datetime,
        effective_end: datetime,
        scope: ApprovalScope | str | None = None,
        org_node_id: UUID | None = None,
        reason: str | None = None,
        actor_id: UUID | None = None,
    ) -> ApprovalDelegation:
        """
        Record that *delegate_id* decides for *delegator_id* in the window.

        Overlapping delegations from the same delegator are allowed;
        resolution picks the most specific, most recent one.
        """
        if delegator_id == delegate_id:
            raise InvalidDelegationError("delegator and delegate must differ", "delegate_id")
        effective_start = as_utc(effective_start)
        effective_end = as_utc(effective_end)
        if effective_start >= effective_end:
            raise InvalidDelegationError(
                "effective_start must be before effective_end", "effective_end"
            )
        scope = ApprovalScope(scope) if scope is not None else None

        if self._session.get(PersonModel, delegator_id) is None:
            raise PersonNotFoundError(str(delegator_id), role="Delegator")
        delegate = self._session.get(PersonModel, delegate_id)
        if delegate is None or not delegate.is_active:
            raise PersonNotFoundError(str(delegate_id), role="Delegate")
        if org_node_id is not None and self._session.get(OrgNodeModel, org_node_id) is None:
            raise OrgNodeNotFoundError(str(org_node_id))

        model = ApprovalDelegationModel(
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            scope=scope.value if scope else None,
            org_node_id=org_node_id,
            effective_start=effective_start,
            effective_end=effective_end,
            reason=reason,
            created_at=self._clock.now(),
        )
        self._session.add(model)
        self._session.flush()

        self._auditor.record(
            actor_id=actor_id or delegator_id,
            entity_type="ApprovalDelegation",
            entity_id=model.id,
            action=AuditAction.DELEGATION_CREATED,
            payload={
                "delegator_id": delegator_id,
                "delegate_id": delegate_id,
                "scope": scope,
                "org_node_id": org_node_id,
                "effective_start": effective_start,
                "effective_end": effective_end,
                "reason": reason,
            },
        )
        logger.info(
            "delegation_created",
            extra={
                "delegation_id": str(model.id),
                "delegator_id": str(delegator_id),
                "delegate_id": str(delegate_id),
                "scope": scope.value if scope else None,
            },
        )
        return model.to_dto()

    def revoke_delegation(
        self,
        delegation_id: UUID,
        actor_id: UUID | None = None,
    ) -> ApprovalDelegation:
        """
        End a delegation now.

        A delegation that has not started yet is left with an empty window
        (end == start).  One that already ended is returned unchanged.
        """
        model = self._load(delegation_id, lock=True)
        now = self._clock.now()
        if model.effective_end <= now:
            return model.to_dto()

        previous_end = model.effective_end
        model.effective_end = max(now, model.effective_start)
        self._session.flush()

        self._auditor.record(
            actor_id=actor_id,
            entity_type="ApprovalDelegation",
            entity_id=model.id,
            action=AuditAction.DELEGATION_REVOKED,
            payload={
                "previous_effective_end": previous_end,
                "effective_end": model.effective_end,
            },
        )
        logger.info("delegation_revoked", extra={"delegation_id": str(delegation_id)})
        return model.to_dto()

    def list_active(
        self,
        as_of: datetime | None = None,
        delegator_id: UUID | None = None,
    ) -> list[ApprovalDelegation]:
        """Delegations in effect at *as_of* (default: now)."""
        as_of = as_utc(as_of) if as_of is not None else self._clock.now()
        stmt = select(ApprovalDelegationModel).where(
            ApprovalDelegationModel.effective_start <= as_of,
            ApprovalDelegationModel.effective_end > as_of,
        )
        if delegator_id is not None:
            stmt = stmt.where(ApprovalDelegationModel.delegator_id == delegator_id)
        stmt = stmt.order_by(
            ApprovalDelegationModel.delegator_id,
            ApprovalDelegationModel.effective_start,
            ApprovalDelegationModel.id,
        )
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def find_candidates(
        self,
        delegator_ids: Iterable[UUID],
        as_of: datetime,
    ) -> tuple[ApprovalDelegation, ...]:
        """Delegations from any of *delegator_ids* in effect at *as_of*."""
        return ApprovalSelector(self._session).delegations_in_effect(
            delegator_ids, as_utc(as_of)
        )

    def _load(self, delegation_id: UUID, lock: bool = False) -> ApprovalDelegationModel:
        model = self._session.get(ApprovalDelegationModel, delegation_id, with_for_update=lock or None)
        if model is None:
            raise DelegationNotFoundError(str(delegation_id))
        return model
