"""
ChainResolutionService -- loads what the pure chain resolver needs.

Responsibility:
    Batch-reads the subject's lineage, the active policies on it, the
    people and roles those policies name, the platform administrators and
    the candidate delegations, then hands everything to
    ``domain.chain_resolver.resolve_chain``.  Read-only: it never flushes.

Architecture position:
    Kernel > Services -- imperative shell around a pure core.

Query shape:
    One query each for the lineage, the policies, the role members, the
    people and the delegations -- independent of tree depth.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from portfolio_kernel.config.schema import ApprovalSettings
from portfolio_kernel.db.types import as_utc
from portfolio_kernel.domain.approval import ApprovalScope, ChainStep
from portfolio_kernel.domain.chain_resolver import (
    ResolutionInput,
    referenced_person_ids,
    referenced_roles,
    resolve_chain,
)
from portfolio_kernel.domain.clock import Clock, SystemClock
from portfolio_kernel.domain.org import OrgNode, lowest_common_ancestor
from portfolio_kernel.domain.ports import PersonDirectory
from portfolio_kernel.exceptions import (
    InactiveNodeError,
    MembershipNotFoundError,
    ValidationError,
)
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.org_node import OrgMembershipModel, OrgNodeModel
from portfolio_kernel.selectors.approval_selector import ApprovalSelector
from portfolio_kernel.selectors.org_selector import OrgTreeSelector
from portfolio_kernel.services.person_directory import SqlPersonDirectory

logger = get_logger("services.chain_resolution")


class ChainResolutionService:
    """Resolves approval chains against the live store."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        directory: PersonDirectory | None = None,
        settings: ApprovalSettings | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or ApprovalSettings()
        self._directory = directory or SqlPersonDirectory(
            session, admin_role=self._settings.admin_role
        )
        self._selector = OrgTreeSelector(session)
        self._approvals = ApprovalSelector(session)

    @property
    def directory(self) -> PersonDirectory:
        return self._directory

    def resolve_chain(
        self,
        org_node_id: UUID,
        scope: ApprovalScope | str,
        as_of: datetime | None = None,
    ) -> tuple[ChainStep, ...]:
        """
        Ordered chain for a subject at *org_node_id* in *scope*.

        An empty tuple means no approval is required.

        Raises:
            OrgNodeNotFoundError / InactiveNodeError: bad subject node.
            NoApproversError: a step resolved to nobody, admins included.
        """
        scope = ApprovalScope(scope)
        as_of = as_utc(as_of) if as_of is not None else self._clock.now()

        lineage = self._selector.get_lineage(org_node_id)
        if not lineage[-1].is_active:
            raise InactiveNodeError(str(org_node_id))

        data = self._load_input(lineage, scope, as_of)
        chain = resolve_chain(data)
        logger.info(
            "chain_resolved",
            extra={
                "org_node_id": str(org_node_id),
                "scope": scope.value,
                "as_of": as_of.isoformat(),
                "levels": len(chain),
            },
        )
        return chain

    def resolve_chain_for_person(
        self,
        person_id: UUID,
        scope: ApprovalScope | str,
        as_of: datetime | None = None,
    ) -> tuple[ChainStep, ...]:
        """Chain for a subject owned by a person, via their open membership."""
        return self.resolve_chain(self.node_for_person(person_id), scope, as_of)

    def node_for_person(self, person_id: UUID) -> UUID:
        """
        Org node a person's subjects resolve from.

        A person with no open membership falls back to the active node whose
        code is the configured ``unassigned_node_code``.
        """
        node_id = self._session.execute(
            select(OrgMembershipModel.org_node_id).where(
                OrgMembershipModel.person_id == person_id,
                OrgMembershipModel.effective_end.is_(None),
            )
        ).scalar_one_or_none()
        if node_id is None:
            node_id = self._session.execute(
                select(OrgNodeModel.id).where(
                    OrgNodeModel.code == self._settings.unassigned_node_code,
                    OrgNodeModel.is_active.is_(True),
                )
            ).scalar_one_or_none()
        if node_id is None:
            raise MembershipNotFoundError(f"active membership of {person_id}")
        return node_id

    def resolve_chain_for_nodes(
        self,
        org_node_ids: Iterable[UUID],
        scope: ApprovalScope | str,
        as_of: datetime | None = None,
    ) -> tuple[ChainStep, ...]:
        """Chain for a subject spanning several nodes: resolved at their
        lowest common ancestor."""
        ids = list(dict.fromkeys(org_node_ids))
        if not ids:
            raise ValidationError("At least one org node is required")
        lineages = [self._selector.get_node(i).lineage for i in ids]
        common = lowest_common_ancestor(lineages)
        if common is None:
            raise ValidationError("Org nodes share no common ancestor")
        return self.resolve_chain(common, scope, as_of)

    def _load_input(
        self,
        lineage: list[OrgNode],
        scope: ApprovalScope,
        as_of: datetime,
    ) -> ResolutionInput:
        policies = self._approvals.active_policies_for_nodes([n.id for n in lineage], scope)

        roles = referenced_roles(policies)
        role_members = {
            role: tuple(people)
            for role, people in self._directory.list_by_roles(roles).items()
        }
        admins = tuple(self._directory.list_admins())

        candidate_ids = referenced_person_ids(lineage, policies)
        for members in role_members.values():
            candidate_ids.update(p.id for p in members)
        candidate_ids.update(p.id for p in admins)

        delegations = self._approvals.delegations_in_effect(candidate_ids, as_of)
        people = dict(
            self._directory.get_people(candidate_ids | {d.delegate_id for d in delegations})
        )

        return ResolutionInput(
            path=tuple(lineage),
            scope=scope,
            as_of=as_of,
            policies_by_node=policies,
            people=people,
            role_members=role_members,
            admins=admins,
            delegations=delegations,
            role_based_default_quorum=self._settings.role_based_default_quorum,
        )
