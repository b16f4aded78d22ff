"""
Module: portfolio_kernel.selectors.org_selector
Responsibility: Read side of the org tree -- tree assembly, ancestor and
    descendant lookups, subtree membership and the coverage report.

Ancestor lookups parse the node's materialized path and batch-fetch the
ids it lists in one query; no recursive SQL is used anywhere.
"""

from collections import defaultdict
from uuid import UUID

from sqlalchemy import func, select

from portfolio_kernel.domain.org import (
    CoverageReport,
    OrgMembership,
    OrgNode,
    OrgTreeNode,
    Person,
    parse_path,
    subtree_prefix,
)
from portfolio_kernel.exceptions import OrgNodeNotFoundError
from portfolio_kernel.models.approval import ApprovalPolicyModel
from portfolio_kernel.models.org_node import OrgMembershipModel, OrgNodeModel
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.selectors.base import BaseSelector


class OrgTreeSelector(BaseSelector):
    """Read-only queries over org nodes, memberships and people."""

    def get_node(self, node_id: UUID) -> OrgNode:
        model = self.session.get(OrgNodeModel, node_id)
        if model is None:
            raise OrgNodeNotFoundError(str(node_id))
        return model.to_dto()

    def get_node_by_code(self, code: str) -> OrgNode | None:
        model = self.session.execute(
            select(OrgNodeModel).where(OrgNodeModel.code == code)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_nodes(self, include_inactive: bool = False) -> list[OrgNode]:
        stmt = select(OrgNodeModel).order_by(
            OrgNodeModel.depth, OrgNodeModel.sort_order, OrgNodeModel.name
        )
        if not include_inactive:
            stmt = stmt.where(OrgNodeModel.is_active.is_(True))
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def get_nodes(self, node_ids: list[UUID]) -> dict[UUID, OrgNode]:
        if not node_ids:
            return {}
        rows = self.session.execute(
            select(OrgNodeModel).where(OrgNodeModel.id.in_(set(node_ids)))
        ).scalars()
        return {m.id: m.to_dto() for m in rows}

    def get_full_tree(self) -> list[OrgTreeNode]:
        """
        All active nodes as a forest, built in one pass over one query.

        Children are ordered by ``sort_order`` then name.  Normally the
        forest has a single ROOT.
        """
        nodes = self.list_nodes()
        children: dict[UUID | None, list[OrgNode]] = defaultdict(list)
        active_ids = {n.id for n in nodes}
        for node in nodes:
            parent = node.parent_id if node.parent_id in active_ids else None
            children[parent].append(node)

        def build(node: OrgNode) -> OrgTreeNode:
            kids = sorted(children.get(node.id, ()), key=lambda n: (n.sort_order, n.name))
            return OrgTreeNode(node=node, children=tuple(build(k) for k in kids))

        roots = sorted(children.get(None, ()), key=lambda n: (n.sort_order, n.name))
        return [build(root) for root in roots]

    def get_ancestors(self, node_id: UUID) -> list[OrgNode]:
        """Ancestors of the node, root first, excluding the node itself."""
        node = self.get_node(node_id)
        ancestor_ids = parse_path(node.path)
        found = self.get_nodes(list(ancestor_ids))
        return [found[i] for i in ancestor_ids if i in found]

    def get_lineage(self, node_id: UUID) -> list[OrgNode]:
        """Ancestors followed by the node itself."""
        node = self.get_node(node_id)
        found = self.get_nodes(list(node.ancestor_ids))
        return [found[i] for i in node.ancestor_ids if i in found] + [node]

    def get_descendants(self, node_id: UUID, include_inactive: bool = False) -> list[OrgNode]:
        """Every node below *node_id*, shallowest first."""
        node = self.get_node(node_id)
        stmt = (
            select(OrgNodeModel)
            .where(OrgNodeModel.path.startswith(subtree_prefix(node.path, node.id), autoescape=True))
            .order_by(OrgNodeModel.depth, OrgNodeModel.sort_order, OrgNodeModel.name)
        )
        if not include_inactive:
            stmt = stmt.where(OrgNodeModel.is_active.is_(True))
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def count_active_children(self, node_id: UUID) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(OrgNodeModel)
            .where(OrgNodeModel.parent_id == node_id, OrgNodeModel.is_active.is_(True))
        ).scalar_one()

    def get_people_in_subtree(self, node_id: UUID) -> list[tuple[Person, OrgMembership]]:
        """Active people with an open membership at the node or below it."""
        node = self.get_node(node_id)
        prefix = subtree_prefix(node.path, node.id)
        rows = self.session.execute(
            select(PersonModel, OrgMembershipModel)
            .join(OrgMembershipModel, OrgMembershipModel.person_id == PersonModel.id)
            .join(OrgNodeModel, OrgNodeModel.id == OrgMembershipModel.org_node_id)
            .where(
                OrgMembershipModel.effective_end.is_(None),
                PersonModel.is_active.is_(True),
                OrgNodeModel.is_active.is_(True),
                (OrgNodeModel.id == node.id)
                | OrgNodeModel.path.startswith(prefix, autoescape=True),
            )
            .order_by(PersonModel.name, PersonModel.id)
        ).all()
        return [(person.to_dto(), membership.to_dto()) for person, membership in rows]

    def get_coverage_report(self) -> CoverageReport:
        """
        Assignment and policy coverage.

        Counts active people, the active people with no open membership,
        and the active nodes with no active policy in any scope.
        """
        active_people = [
            row[0]
            for row in self.session.execute(
                select(PersonModel.id)
                .where(PersonModel.is_active.is_(True))
                .order_by(PersonModel.name, PersonModel.id)
            ).all()
        ]
        assigned = {
            row[0]
            for row in self.session.execute(
                select(OrgMembershipModel.person_id).where(
                    OrgMembershipModel.effective_end.is_(None)
                )
            ).all()
        }
        unassigned = tuple(pid for pid in active_people if pid not in assigned)

        active_nodes = [
            row[0]
            for row in self.session.execute(
                select(OrgNodeModel.id)
                .where(OrgNodeModel.is_active.is_(True))
                .order_by(OrgNodeModel.depth, OrgNodeModel.sort_order, OrgNodeModel.name)
            ).all()
        ]
        governed = {
            row[0]
            for row in self.session.execute(
                select(ApprovalPolicyModel.org_node_id)
                .where(ApprovalPolicyModel.is_active.is_(True))
                .distinct()
            ).all()
        }
        uncovered = tuple(nid for nid in active_nodes if nid not in governed)

        return CoverageReport(
            total_people=len(active_people),
            unassigned_people=len(unassigned),
            total_active_nodes=len(active_nodes),
            nodes_without_policies=len(uncovered),
            unassigned_person_ids=unassigned,
            uncovered_node_ids=uncovered,
        )
