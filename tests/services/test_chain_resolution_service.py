"""
Tests for ChainResolutionService against the live store.

Covers the reference scenarios:
- ROOT -> D -> T, NODE_MANAGER on D, COMMON_ANCESTOR: one step, mgr-1
- Same tree, ALL_BRANCHES on D plus ROLE_BASED on T: team step first
- mgr-1 delegates to mgr-2 for INITIATIVE over [t0, t1)

Also:
- person-based resolution via membership and the UNASSIGNED node
- multi-node subjects resolve at the lowest common ancestor
- inactive subject nodes and missing admins are errors
- any PersonDirectory implementation can back resolution
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from portfolio_kernel.domain.approval import (
    ApprovalRuleType,
    ApprovalScope,
    CrossBuStrategy,
)
from portfolio_kernel.domain.org import OrgNodeType, Person
from portfolio_kernel.domain.ports import PersonDirectory
from portfolio_kernel.exceptions import (
    InactiveNodeError,
    MembershipNotFoundError,
    NoApproversError,
    OrgNodeNotFoundError,
    ValidationError,
)
from portfolio_kernel.services.chain_resolution_service import ChainResolutionService

SCOPE = ApprovalScope.INITIATIVE


class TestReferenceScenarios:
    def test_common_ancestor_single_step(self, chain_service, org, division_manager_policy):
        chain = chain_service.resolve_chain(org.team.id, SCOPE)

        assert len(chain) == 1
        (step,) = chain
        assert step.level == 1
        assert step.org_node_id == org.division.id
        assert step.rule_type == ApprovalRuleType.NODE_MANAGER
        assert [a.person_id for a in step.resolved_approvers] == [org.mgr_1.id]

    def test_all_branches_team_before_division(self, chain_service, policy_service, make_person, org):
        reviewer = make_person("Rev Iewer", role="TEAM_REVIEWER")
        policy_service.create_policy(
            org.division.id, SCOPE, 1, ApprovalRuleType.NODE_MANAGER,
            cross_bu_strategy=CrossBuStrategy.ALL_BRANCHES,
        )
        policy_service.create_policy(
            org.team.id, SCOPE, 1, ApprovalRuleType.ROLE_BASED, {"role": "TEAM_REVIEWER"}
        )

        chain = chain_service.resolve_chain(org.team.id, SCOPE)

        assert [s.org_node_id for s in chain] == [org.team.id, org.division.id]
        assert chain[0].approver_ids == {reviewer.id}
        assert chain[1].approver_ids == {org.mgr_1.id}

    def test_delegation_window(
        self, chain_service, delegation_service, deterministic_clock, org, division_manager_policy
    ):
        t0 = deterministic_clock.now()
        t1 = t0 + timedelta(days=5)
        delegation_service.create_delegation(org.mgr_1.id, org.mgr_2.id, t0, t1, scope=SCOPE)

        inside = chain_service.resolve_chain(org.team.id, SCOPE, as_of=t0 + timedelta(days=1))
        at_end = chain_service.resolve_chain(org.team.id, SCOPE, as_of=t1)

        assert inside[0].approver_ids == {org.mgr_2.id}
        assert inside[0].resolved_approvers[0].delegated_from == org.mgr_1.id
        assert at_end[0].approver_ids == {org.mgr_1.id}

    def test_scope_specific_delegation_preferred(
        self, chain_service, delegation_service, make_person, deterministic_clock, org,
        division_manager_policy,
    ):
        other = make_person("Other Deputy")
        now = deterministic_clock.now()
        delegation_service.create_delegation(org.mgr_1.id, other.id, now, now + timedelta(days=2))
        delegation_service.create_delegation(
            org.mgr_1.id, org.mgr_2.id, now - timedelta(days=1), now + timedelta(days=2), scope=SCOPE
        )

        (step,) = chain_service.resolve_chain(org.team.id, SCOPE)

        assert step.approver_ids == {org.mgr_2.id}


class TestResolution:
    def test_no_policies_no_chain(self, chain_service, org):
        assert chain_service.resolve_chain(org.team.id, ApprovalScope.SCENARIO) == ()

    def test_other_scope_not_used(self, chain_service, org, division_manager_policy):
        assert chain_service.resolve_chain(org.team.id, ApprovalScope.RESOURCE_ALLOCATION) == ()

    def test_repeatable(self, chain_service, policy_service, make_person, org):
        for name in ("Pat", "Alex", "Sam"):
            make_person(name, role="PMO")
        policy_service.create_policy(
            org.team.id, SCOPE, 1, ApprovalRuleType.ROLE_BASED, {"role": "PMO", "quorum": 2}
        )

        first = chain_service.resolve_chain(org.team.id, SCOPE)
        second = chain_service.resolve_chain(org.team.id, SCOPE)

        assert first == second
        assert [a.name for a in first[0].resolved_approvers] == ["Alex", "Pat", "Sam"]

    def test_missing_manager_falls_back_to_admin(self, chain_service, policy_service, admin, org):
        policy_service.create_policy(org.team.id, SCOPE, 1, ApprovalRuleType.NODE_MANAGER)

        (step,) = chain_service.resolve_chain(org.team.id, SCOPE)

        assert step.approver_ids == {admin.id}
        assert step.fallback_applied

    def test_no_admins_is_configuration_error(
        self, chain_service, policy_service, person_directory, admin, org
    ):
        policy_service.create_policy(org.team.id, SCOPE, 1, ApprovalRuleType.NODE_MANAGER)
        person_directory.deactivate_person(admin.id)

        with pytest.raises(NoApproversError):
            chain_service.resolve_chain(org.team.id, SCOPE)

    def test_unknown_node(self, chain_service, org):
        with pytest.raises(OrgNodeNotFoundError):
            chain_service.resolve_chain(uuid4(), SCOPE)

    def test_inactive_node(self, chain_service, org_tree_service, org):
        leaf = org_tree_service.create_node("Leaf", "LEAF", OrgNodeType.TEAM, parent_id=org.root.id)
        org_tree_service.delete_node(leaf.id)
        with pytest.raises(InactiveNodeError):
            chain_service.resolve_chain(leaf.id, SCOPE)


class TestPersonAndMultiNode:
    def test_resolve_for_person_uses_membership(self, chain_service, org, division_manager_policy):
        (step,) = chain_service.resolve_chain_for_person(org.requester.id, SCOPE)
        assert step.approver_ids == {org.mgr_1.id}

    def test_unassigned_person_uses_unassigned_node(
        self, chain_service, org_tree_service, policy_service, make_person, org
    ):
        loner = make_person("Lone Wolf")
        holding = org_tree_service.create_node(
            "Unassigned", "UNASSIGNED", OrgNodeType.VIRTUAL, parent_id=org.root.id,
            manager_id=org.mgr_2.id,
        )
        policy_service.create_policy(holding.id, SCOPE, 1, ApprovalRuleType.NODE_MANAGER)

        (step,) = chain_service.resolve_chain_for_person(loner.id, SCOPE)

        assert step.org_node_id == holding.id
        assert step.approver_ids == {org.mgr_2.id}

    def test_unassigned_person_without_holding_node(self, chain_service, make_person, org):
        with pytest.raises(MembershipNotFoundError):
            chain_service.resolve_chain_for_person(make_person("Lone Wolf").id, SCOPE)

    def test_multi_node_resolves_at_common_ancestor(
        self, chain_service, org_tree_service, org, division_manager_policy
    ):
        sibling = org_tree_service.create_node("Team S", "S", OrgNodeType.TEAM, parent_id=org.division.id)

        chain = chain_service.resolve_chain_for_nodes([org.team.id, sibling.id], SCOPE)

        assert chain == chain_service.resolve_chain(org.division.id, SCOPE)

    def test_multi_node_requires_input(self, chain_service, org):
        with pytest.raises(ValidationError):
            chain_service.resolve_chain_for_nodes([], SCOPE)


class InMemoryDirectory:
    """A directory that never touches the people table."""

    def __init__(self, people):
        self._people = {p.id: p for p in people}

    def get_people(self, person_ids):
        return {i: self._people[i] for i in person_ids if i in self._people}

    def list_by_role(self, role):
        return sorted(
            (p for p in self._people.values() if p.role == role and p.is_active),
            key=lambda p: (p.name, p.id),
        )

    def list_by_roles(self, roles):
        return {role: self.list_by_role(role) for role in roles}

    def list_admins(self):
        return self.list_by_role("ADMIN")


class TestDirectoryPort:
    def test_in_memory_directory_satisfies_protocol(self):
        assert isinstance(InMemoryDirectory([]), PersonDirectory)

    def test_role_members_come_from_injected_directory(
        self, session, deterministic_clock, approval_settings, policy_service, org
    ):
        outside = Person(id=uuid4(), name="Quinn Outside", email="quinn@example.com", role="PMO")
        boss = Person(id=uuid4(), name="Ada Admin", email="ada@example.com", role="ADMIN")
        policy_service.create_policy(
            org.team.id, SCOPE, 1, ApprovalRuleType.ROLE_BASED, {"role": "PMO"}
        )
        service = ChainResolutionService(
            session,
            clock=deterministic_clock,
            directory=InMemoryDirectory([outside, boss]),
            settings=approval_settings,
        )

        (step,) = service.resolve_chain(org.team.id, SCOPE)

        assert step.approver_ids == {outside.id}
        assert not step.fallback_applied

    def test_empty_role_in_injected_directory_falls_back_to_its_admins(
        self, session, deterministic_clock, approval_settings, policy_service, admin, org
    ):
        boss = Person(id=uuid4(), name="Ada Admin", email="ada@example.com", role="ADMIN")
        policy_service.create_policy(
            org.team.id, SCOPE, 1, ApprovalRuleType.ROLE_BASED, {"role": "PMO"}
        )
        service = ChainResolutionService(
            session,
            clock=deterministic_clock,
            directory=InMemoryDirectory([boss]),
            settings=approval_settings,
        )

        (step,) = service.resolve_chain(org.team.id, SCOPE)

        assert step.approver_ids == {boss.id}
        assert step.fallback_applied
