"""
MembershipService -- which org node a person belongs to, over time.

Responsibility:
    Assigns people to nodes and ends assignments.  A person has at most
    one open membership; reassignment closes the open one and opens a new
    one, so closed rows form the person's history.

Architecture position:
    Kernel > Services -- imperative shell.  OrgTreeService consults
    ``count_active_for_node`` before a soft delete; ChainResolutionService
    uses ``get_active_membership`` to resolve a person's chain.
"""

from uuid import UUID

from sqlalchemy import func, select

from portfolio_kernel.domain.org import OrgMembership
from portfolio_kernel.exceptions import (
    InactiveNodeError,
    MembershipNotFoundError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
)
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.audit_event import AuditAction
from portfolio_kernel.models.org_node import OrgMembershipModel, OrgNodeModel
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.services.base import BaseService

logger = get_logger("services.membership")


class MembershipService(BaseService):
    """Person-to-node assignments."""

    def get_active_membership(self, person_id: UUID) -> OrgMembership | None:
        model = self._open_membership(person_id)
        return model.to_dto() if model is not None else None

    def count_active_for_node(self, org_node_id: UUID) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(OrgMembershipModel)
            .where(
                OrgMembershipModel.org_node_id == org_node_id,
                OrgMembershipModel.effective_end.is_(None),
            )
        ).scalar_one()

    def list_history(self, person_id: UUID) -> list[OrgMembership]:
        """All memberships of a person, oldest first."""
        rows = self._session.execute(
            select(OrgMembershipModel)
            .where(OrgMembershipModel.person_id == person_id)
            .order_by(OrgMembershipModel.effective_start, OrgMembershipModel.id)
        ).scalars()
        return [m.to_dto() for m in rows]

    def assign_person(
        self,
        person_id: UUID,
        org_node_id: UUID,
        actor_id: UUID | None = None,
    ) -> OrgMembership:
        """
        Put *person_id* in *org_node_id*, closing any other open membership.

        Assigning a person to the node they already belong to returns the
        existing membership unchanged.
        """
        person = self._session.get(PersonModel, person_id)
        if person is None or not person.is_active:
            raise PersonNotFoundError(str(person_id))
        node = self._session.get(OrgNodeModel, org_node_id)
        if node is None:
            raise OrgNodeNotFoundError(str(org_node_id))
        if not node.is_active:
            raise InactiveNodeError(str(org_node_id))

        now = self._clock.now()
        current = self._open_membership(person_id, lock=True)
        previous_node_id = None
        if current is not None:
            if current.org_node_id == org_node_id:
                return current.to_dto()
            previous_node_id = current.org_node_id
            current.effective_end = now
            self._session.flush()

        model = OrgMembershipModel(
            person_id=person_id,
            org_node_id=org_node_id,
            effective_start=now,
        )
        self._session.add(model)
        self._session.flush()

        self._auditor.record(
            actor_id=actor_id,
            entity_type="OrgMembership",
            entity_id=model.id,
            action=AuditAction.MEMBERSHIP_ASSIGNED,
            payload={
                "person_id": person_id,
                "org_node_id": org_node_id,
                "previous_org_node_id": previous_node_id,
            },
        )
        logger.info(
            "membership_assigned",
            extra={
                "person_id": str(person_id),
                "org_node_id": str(org_node_id),
                "previous_org_node_id": str(previous_node_id) if previous_node_id else None,
            },
        )
        return model.to_dto()

    def end_membership(self, person_id: UUID, actor_id: UUID | None = None) -> OrgMembership:
        """Close the person's open membership."""
        model = self._open_membership(person_id, lock=True)
        if model is None:
            raise MembershipNotFoundError(f"active membership of {person_id}")
        model.effective_end = self._clock.now()
        self._session.flush()

        self._auditor.record(
            actor_id=actor_id,
            entity_type="OrgMembership",
            entity_id=model.id,
            action=AuditAction.MEMBERSHIP_ENDED,
            payload={"person_id": person_id, "org_node_id": model.org_node_id},
        )
        logger.info(
            "membership_ended",
            extra={"person_id": str(person_id), "org_node_id": str(model.org_node_id)},
        )
        return model.to_dto()

    def _open_membership(self, person_id: UUID, lock: bool = False) -> OrgMembershipModel | None:
        stmt = select(OrgMembershipModel).where(
            OrgMembershipModel.person_id == person_id,
            OrgMembershipModel.effective_end.is_(None),
        )
        if lock:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()
