"""
Tests for OrgTreeService and OrgTreeSelector.

Covers:
- create_node(): root uniqueness, type/parent rules, path and depth,
  duplicate codes, manager validation, audit trail
- update_node(): mutable fields only, before/after audit payload
- metadata is stored as plain JSON; values JSON cannot hold are rejected
- move_node(): subtree path rewrite and updated_count, cycle and root
  guards, policies stay attached
- delete_node(): soft delete, dependent checks, policy deactivation,
  idempotence on inactive nodes
- reads: full tree, ancestors, descendants, people in subtree, coverage
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from portfolio_kernel.domain.approval import ApprovalRuleType, ApprovalScope
from portfolio_kernel.domain.org import OrgNodeType, child_path
from portfolio_kernel.exceptions import (
    ActiveChildrenError,
    ActiveMembershipsError,
    DuplicateNodeCodeError,
    DuplicateRootError,
    ImmutableFieldError,
    InactiveNodeError,
    InvalidFieldError,
    InvalidNodeTypeError,
    NodeCycleError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
    RootNodeOperationError,
    ValidationError,
)
from portfolio_kernel.models.audit_event import AuditAction, AuditEvent
from portfolio_kernel.models.org_node import OrgNodeModel


def _assert_paths_consistent(session):
    """Every active node's path/depth derive from its parent's."""
    nodes = {n.id: n for n in session.execute(select(OrgNodeModel)).scalars()}
    for node in nodes.values():
        if not node.is_active or node.parent_id is None:
            continue
        parent = nodes[node.parent_id]
        assert node.path == child_path(parent.path, parent.id)
        assert node.depth == parent.depth + 1


# =========================================================================
# create_node()
# =========================================================================


class TestCreateNode:
    def test_root_has_slash_path(self, org_tree_service):
        root = org_tree_service.create_node("Acme", "ROOT", OrgNodeType.ROOT)
        assert root.path == "/"
        assert root.depth == 0
        assert root.parent_id is None

    def test_second_root_rejected(self, org_tree_service, org):
        with pytest.raises(DuplicateRootError) as exc_info:
            org_tree_service.create_node("Other", "ROOT2", OrgNodeType.ROOT)
        assert exc_info.value.existing_root_id == str(org.root.id)

    def test_root_with_parent_rejected(self, org_tree_service, org):
        with pytest.raises(InvalidNodeTypeError):
            org_tree_service.create_node("X", "X", OrgNodeType.ROOT, parent_id=org.root.id)

    def test_non_root_requires_parent(self, org_tree_service):
        with pytest.raises(InvalidNodeTypeError):
            org_tree_service.create_node("Orphan", "ORPHAN", OrgNodeType.TEAM)

    def test_unknown_type_rejected(self, org_tree_service, org):
        with pytest.raises(InvalidNodeTypeError):
            org_tree_service.create_node("X", "X", "GUILD", parent_id=org.root.id)

    def test_child_path_and_depth(self, org):
        assert org.division.path == f"/{org.root.id}/"
        assert org.team.path == f"/{org.root.id}/{org.division.id}/"
        assert org.team.depth == 2

    def test_unknown_parent(self, org_tree_service, org):
        with pytest.raises(OrgNodeNotFoundError):
            org_tree_service.create_node("X", "X", OrgNodeType.TEAM, parent_id=uuid4())

    def test_inactive_parent(self, org_tree_service, org):
        leaf = org_tree_service.create_node("Leaf", "LEAF", OrgNodeType.TEAM, parent_id=org.root.id)
        org_tree_service.delete_node(leaf.id)
        with pytest.raises(InactiveNodeError):
            org_tree_service.create_node("Under", "UNDER", OrgNodeType.TEAM, parent_id=leaf.id)

    def test_duplicate_code(self, org_tree_service, org):
        with pytest.raises(DuplicateNodeCodeError):
            org_tree_service.create_node("Again", "T", OrgNodeType.TEAM, parent_id=org.root.id)

    def test_unknown_manager(self, org_tree_service, org):
        with pytest.raises(PersonNotFoundError):
            org_tree_service.create_node(
                "X", "X", OrgNodeType.TEAM, parent_id=org.root.id, manager_id=uuid4()
            )

    def test_metadata_values_stored_as_plain_json(self, org_tree_service, org):
        owner = uuid4()
        node = org_tree_service.create_node(
            "Ops", "OPS", OrgNodeType.DEPARTMENT, parent_id=org.root.id,
            metadata={"owner_id": owner, "regions": ("emea", "apac")},
        )
        assert node.metadata["owner_id"] == str(owner)
        assert node.metadata["regions"] == ["emea", "apac"]

    def test_unstorable_metadata_rejected(self, session, org_tree_service, org):
        with pytest.raises(InvalidFieldError) as exc_info:
            org_tree_service.create_node(
                "Ops", "OPS", OrgNodeType.DEPARTMENT, parent_id=org.root.id,
                metadata={"handler": object()},
            )
        assert exc_info.value.field == "metadata"
        assert session.execute(
            select(OrgNodeModel).where(OrgNodeModel.code == "OPS")
        ).scalar_one_or_none() is None

    def test_audit_event_created(self, session, org):
        events = session.execute(
            select(AuditEvent).where(
                AuditEvent.entity_type == "OrgNode",
                AuditEvent.entity_id == org.team.id,
            )
        ).scalars().all()
        assert [e.action for e in events] == [AuditAction.ORG_NODE_CREATED.value]
        assert events[0].payload["code"] == "T"

    def test_logs_creation(self, org_tree_service, org, captured_logs):
        org_tree_service.create_node("Ops", "OPS", OrgNodeType.DEPARTMENT, parent_id=org.root.id)
        records = [r for r in captured_logs() if r["message"] == "org_node_created"]
        assert records and records[-1]["code"] == "OPS"


# =========================================================================
# update_node()
# =========================================================================


class TestUpdateNode:
    def test_updates_mutable_fields(self, org_tree_service, org):
        updated = org_tree_service.update_node(
            org.team.id,
            {"name": "Team Tango", "manager_id": org.mgr_2.id, "metadata": {"cost_center": "42"}},
        )
        assert updated.name == "Team Tango"
        assert updated.manager_id == org.mgr_2.id
        assert updated.metadata["cost_center"] == "42"

    def test_metadata_uuid_and_datetime_normalised(
        self, session, org_tree_service, deterministic_clock, org
    ):
        cost_center = uuid4()
        reviewed = deterministic_clock.now()

        updated = org_tree_service.update_node(
            org.team.id, {"metadata": {"cost_center": cost_center, "reviewed_at": reviewed}}
        )

        assert dict(updated.metadata) == {
            "cost_center": str(cost_center),
            "reviewed_at": reviewed.isoformat(),
        }
        session.expire_all()
        assert dict(org_tree_service.get_node(org.team.id).metadata) == dict(updated.metadata)

    def test_unstorable_metadata_leaves_node_untouched(self, org_tree_service, org):
        with pytest.raises(InvalidFieldError) as exc_info:
            org_tree_service.update_node(
                org.team.id, {"name": "Renamed", "metadata": {"weights": {1.5j}}}
            )

        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.entity_type == "OrgNode"
        assert org_tree_service.get_node(org.team.id).name == "Team T"

    @pytest.mark.parametrize("field", ["parent_id", "path", "depth", "node_type", "is_active"])
    def test_structural_fields_rejected(self, org_tree_service, org, field):
        with pytest.raises(ImmutableFieldError):
            org_tree_service.update_node(org.team.id, {field: None})

    def test_unknown_field_rejected(self, org_tree_service, org):
        with pytest.raises(ValidationError):
            org_tree_service.update_node(org.team.id, {"colour": "red"})

    def test_audit_records_before_and_after(self, org_tree_service, auditor_service, org):
        org_tree_service.update_node(org.team.id, {"name": "Renamed"})
        trace = auditor_service.get_trace("OrgNode", org.team.id)
        assert trace.last_action == AuditAction.ORG_NODE_UPDATED.value
        change = trace.entries[-1].payload["changes"]["name"]
        assert change == {"before": "Team T", "after": "Renamed"}


# =========================================================================
# move_node()
# =========================================================================


class TestMoveNode:
    def _build_subtree(self, org_tree_service, org):
        other = org_tree_service.create_node("Division E", "E", OrgNodeType.DIVISION, parent_id=org.root.id)
        sub_a = org_tree_service.create_node("Sub A", "TA", OrgNodeType.TEAM, parent_id=org.team.id)
        sub_b = org_tree_service.create_node("Sub B", "TB", OrgNodeType.TEAM, parent_id=org.team.id)
        leaf = org_tree_service.create_node("Leaf", "TAL", OrgNodeType.TEAM, parent_id=sub_a.id)
        return other, sub_a, sub_b, leaf

    def test_rewrites_whole_subtree(self, session, org_tree_service, org):
        other, sub_a, _, leaf = self._build_subtree(org_tree_service, org)

        result = org_tree_service.move_node(org.team.id, other.id)

        assert result.updated_count == 4
        assert result.old_path == f"/{org.root.id}/{org.division.id}/"
        assert result.new_path == f"/{org.root.id}/{other.id}/"
        moved_leaf = org_tree_service.get_node(leaf.id)
        assert moved_leaf.path == f"/{org.root.id}/{other.id}/{org.team.id}/{sub_a.id}/"
        assert moved_leaf.depth == 4
        _assert_paths_consistent(session)

    def test_ancestors_round_trip_after_move(self, org_tree_service, org):
        other, sub_a, _, leaf = self._build_subtree(org_tree_service, org)
        org_tree_service.move_node(org.team.id, other.id)

        ancestors = org_tree_service.get_ancestors(leaf.id)

        assert [a.id for a in ancestors] == [org.root.id, other.id, org.team.id, sub_a.id]

    def test_inactive_descendants_not_counted(self, org_tree_service, org):
        other, _, sub_b, _ = self._build_subtree(org_tree_service, org)
        org_tree_service.delete_node(sub_b.id)

        result = org_tree_service.move_node(org.team.id, other.id)

        assert result.updated_count == 3

    def test_move_under_own_descendant_rejected(self, org_tree_service, org):
        _, sub_a, _, _ = self._build_subtree(org_tree_service, org)
        with pytest.raises(NodeCycleError):
            org_tree_service.move_node(org.division.id, sub_a.id)

    def test_move_under_self_rejected(self, org_tree_service, org):
        with pytest.raises(NodeCycleError):
            org_tree_service.move_node(org.team.id, org.team.id)

    def test_root_cannot_move(self, org_tree_service, org):
        with pytest.raises(RootNodeOperationError):
            org_tree_service.move_node(org.root.id, org.division.id)

    def test_policies_stay_attached(self, org_tree_service, policy_service, org):
        other = org_tree_service.create_node("Division E", "E", OrgNodeType.DIVISION, parent_id=org.root.id)
        created = policy_service.create_policy(
            org.team.id, ApprovalScope.INITIATIVE, 1, ApprovalRuleType.FALLBACK_ADMIN
        )

        org_tree_service.move_node(org.team.id, other.id)

        assert [p.id for p in policy_service.list_active(org.team.id)] == [created.id]

    def test_move_audited(self, org_tree_service, auditor_service, org):
        other = org_tree_service.create_node("Division E", "E", OrgNodeType.DIVISION, parent_id=org.root.id)
        org_tree_service.move_node(org.team.id, other.id)
        trace = auditor_service.get_trace("OrgNode", org.team.id)
        assert trace.last_action == AuditAction.ORG_NODE_MOVED.value
        assert trace.entries[-1].payload["updated_count"] == 1


# =========================================================================
# delete_node()
# =========================================================================


class TestDeleteNode:
    def test_soft_delete_leaf(self, org_tree_service, org):
        leaf = org_tree_service.create_node("Leaf", "LEAF", OrgNodeType.TEAM, parent_id=org.root.id)
        deleted = org_tree_service.delete_node(leaf.id)
        assert deleted.is_active is False
        assert org_tree_service.get_node(leaf.id).is_active is False

    def test_delete_twice_is_noop(self, org_tree_service, org):
        leaf = org_tree_service.create_node("Leaf", "LEAF", OrgNodeType.TEAM, parent_id=org.root.id)
        org_tree_service.delete_node(leaf.id)
        again = org_tree_service.delete_node(leaf.id)
        assert again.is_active is False

    def test_active_children_block_delete(self, session, org_tree_service, org):
        with pytest.raises(ActiveChildrenError) as exc_info:
            org_tree_service.delete_node(org.division.id)
        assert exc_info.value.child_count == 1
        assert session.get(OrgNodeModel, org.division.id).is_active is True

    def test_active_memberships_block_delete(self, org_tree_service, org):
        with pytest.raises(ActiveMembershipsError) as exc_info:
            org_tree_service.delete_node(org.team.id)
        assert exc_info.value.membership_count == 1

    def test_ended_membership_does_not_block(self, org_tree_service, membership_service, org):
        membership_service.end_membership(org.requester.id)
        assert org_tree_service.delete_node(org.team.id).is_active is False

    def test_root_cannot_be_deleted(self, org_tree_service, org):
        with pytest.raises(RootNodeOperationError):
            org_tree_service.delete_node(org.root.id)

    def test_policies_deactivated(self, org_tree_service, policy_service, membership_service, org):
        membership_service.end_membership(org.requester.id)
        policy_service.create_policy(org.team.id, ApprovalScope.INITIATIVE, 1, ApprovalRuleType.FALLBACK_ADMIN)
        policy_service.create_policy(org.team.id, ApprovalScope.SCENARIO, 1, ApprovalRuleType.FALLBACK_ADMIN)

        org_tree_service.delete_node(org.team.id)

        assert policy_service.list_active(org.team.id) == []


# =========================================================================
# Reads
# =========================================================================


class TestReads:
    def test_full_tree_nests_active_nodes(self, org_tree_service, org):
        org_tree_service.create_node("Alpha", "A", OrgNodeType.DIVISION, parent_id=org.root.id, sort_order=-1)

        (tree,) = org_tree_service.get_full_tree()

        assert tree.node.id == org.root.id
        assert [c.node.code for c in tree.children] == ["A", "D"]
        assert [n.code for n in tree.walk()] == ["ROOT", "A", "D", "T"]

    def test_descendants(self, org_tree_service, org):
        assert [n.id for n in org_tree_service.get_descendants(org.division.id)] == [org.team.id]

    def test_people_in_subtree(self, org_tree_service, org):
        rows = org_tree_service.get_people_in_subtree(org.division.id)
        assert [(p.id, m.org_node_id) for p, m in rows] == [(org.requester.id, org.team.id)]

    def test_coverage_report(self, org_tree_service, policy_service, org, division_manager_policy):
        report = org_tree_service.get_coverage_report()

        # admin, mgr_1 and mgr_2 have no membership; the requester does
        assert report.total_people == 4
        assert report.unassigned_people == 3
        assert org.requester.id not in report.unassigned_person_ids
        assert report.total_active_nodes == 3
        assert set(report.uncovered_node_ids) == {org.root.id, org.team.id}
        assert report.coverage_percentage == 25.0
