"""Tests for MembershipService -- person-to-node assignments over time."""

from uuid import uuid4

import pytest

from portfolio_kernel.domain.org import OrgNodeType
from portfolio_kernel.exceptions import (
    InactiveNodeError,
    MembershipNotFoundError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
)
from portfolio_kernel.models.audit_event import AuditAction


class TestAssignPerson:
    def test_assign_opens_membership(self, membership_service, make_person, org):
        newcomer = make_person("New Comer")
        membership = membership_service.assign_person(newcomer.id, org.division.id)
        assert membership.is_active
        assert membership_service.get_active_membership(newcomer.id) == membership

    def test_reassign_closes_previous(self, membership_service, deterministic_clock, org):
        deterministic_clock.advance(hours=1)
        moved = membership_service.assign_person(org.requester.id, org.division.id)

        history = membership_service.list_history(org.requester.id)

        assert [m.org_node_id for m in history] == [org.team.id, org.division.id]
        assert history[0].effective_end == moved.effective_start
        assert membership_service.count_active_for_node(org.team.id) == 0

    def test_same_node_is_noop(self, membership_service, org):
        before = membership_service.get_active_membership(org.requester.id)
        again = membership_service.assign_person(org.requester.id, org.team.id)
        assert again.id == before.id
        assert len(membership_service.list_history(org.requester.id)) == 1

    def test_unknown_person(self, membership_service, org):
        with pytest.raises(PersonNotFoundError):
            membership_service.assign_person(uuid4(), org.team.id)

    def test_unknown_node(self, membership_service, org):
        with pytest.raises(OrgNodeNotFoundError):
            membership_service.assign_person(org.requester.id, uuid4())

    def test_inactive_node(self, membership_service, org_tree_service, org):
        leaf = org_tree_service.create_node("Leaf", "LEAF", OrgNodeType.TEAM, parent_id=org.root.id)
        org_tree_service.delete_node(leaf.id)
        with pytest.raises(InactiveNodeError):
            membership_service.assign_person(org.requester.id, leaf.id)

    def test_audited(self, membership_service, auditor_service, make_person, org):
        newcomer = make_person("New Comer")
        membership = membership_service.assign_person(newcomer.id, org.team.id)
        trace = auditor_service.get_trace("OrgMembership", membership.id)
        assert trace.actions == (AuditAction.MEMBERSHIP_ASSIGNED.value,)


class TestEndMembership:
    def test_end(self, membership_service, org):
        ended = membership_service.end_membership(org.requester.id)
        assert ended.effective_end is not None
        assert membership_service.get_active_membership(org.requester.id) is None

    def test_end_without_membership(self, membership_service, make_person, org):
        with pytest.raises(MembershipNotFoundError):
            membership_service.end_membership(make_person("Loner").id)
