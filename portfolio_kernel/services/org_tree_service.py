"""
OrgTreeService -- structural writes to the materialized-path org tree.

Responsibility:
    Creates, updates, moves and soft-deletes org nodes, maintaining every
    affected node's ``path`` and ``depth`` inside the same transaction as
    the structural write.  Read operations delegate to OrgTreeSelector.

Architecture position:
    Kernel > Services -- imperative shell.  Uses PolicyService (policy
    cascade on delete) and MembershipService (dependent count on delete).

Invariants enforced:
    - Single active ROOT with no parent; every other node has an active
      parent.
    - ``path == parent.path + str(parent.id) + "/"`` and
      ``depth == parent.depth + 1`` for every active node after every
      create and move.
    - Moves lock the moved node, the new parent and the whole active
      subtree (FOR UPDATE) before rewriting, and reject cycles.
    - Deletes are soft, refused for ROOT and for nodes with active
      children or memberships, and deactivate the node's policies.

Failure modes:
    - InvalidNodeTypeError, DuplicateRootError, DuplicateNodeCodeError,
      ImmutableFieldError, NodeCycleError, RootNodeOperationError,
      ActiveChildrenError, ActiveMembershipsError (ValidationError).
    - InvalidFieldError when metadata holds a value JSON cannot store.
    - OrgNodeNotFoundError, InactiveNodeError, PersonNotFoundError
      (NotFoundError).
    - ConcurrentModificationError when a concurrent writer wins a unique
      constraint race on code or ROOT.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portfolio_kernel.domain.clock import Clock
from portfolio_kernel.domain.org import (
    MUTABLE_NODE_FIELDS,
    ROOT_PATH,
    STRUCTURAL_NODE_FIELDS,
    CoverageReport,
    NodeMoveResult,
    OrgMembership,
    OrgNode,
    OrgNodeType,
    OrgTreeNode,
    Person,
    child_path,
    is_in_subtree,
    subtree_prefix,
)
from portfolio_kernel.domain.ports import AuditSink
from portfolio_kernel.exceptions import (
    ActiveChildrenError,
    ActiveMembershipsError,
    ConcurrentModificationError,
    DuplicateNodeCodeError,
    DuplicateRootError,
    ImmutableFieldError,
    InactiveNodeError,
    InvalidNodeTypeError,
    NodeCycleError,
    OrgNodeNotFoundError,
    PersonNotFoundError,
    RootNodeOperationError,
    ValidationError,
)
from portfolio_kernel.logging_config import LogContext, get_logger
from portfolio_kernel.models.audit_event import AuditAction
from portfolio_kernel.models.org_node import OrgNodeModel
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.selectors.org_selector import OrgTreeSelector
from portfolio_kernel.services.base import BaseService, json_field
from portfolio_kernel.services.membership_service import MembershipService
from portfolio_kernel.services.policy_service import PolicyService

logger = get_logger("services.org_tree")


class OrgTreeService(BaseService):
    """Writes to the org tree; reads go through ``OrgTreeSelector``."""

    def __init__(
        self,
        session: Session,
        auditor: AuditSink,
        clock: Clock | None = None,
        policy_service: PolicyService | None = None,
        membership_service: MembershipService | None = None,
    ):
        super().__init__(session, auditor, clock)
        self._selector = OrgTreeSelector(session)
        self._policies = policy_service or PolicyService(session, auditor, self._clock)
        self._memberships = membership_service or MembershipService(
            session, auditor, self._clock
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_node(self, node_id: UUID) -> OrgNode:
        return self._selector.get_node(node_id)

    def list_nodes(self, include_inactive: bool = False) -> list[OrgNode]:
        return self._selector.list_nodes(include_inactive)

    def get_full_tree(self) -> list[OrgTreeNode]:
        return self._selector.get_full_tree()

    def get_ancestors(self, node_id: UUID) -> list[OrgNode]:
        return self._selector.get_ancestors(node_id)

    def get_descendants(self, node_id: UUID) -> list[OrgNode]:
        return self._selector.get_descendants(node_id)

    def get_people_in_subtree(self, node_id: UUID) -> list[tuple[Person, OrgMembership]]:
        return self._selector.get_people_in_subtree(node_id)

    def get_coverage_report(self) -> CoverageReport:
        return self._selector.get_coverage_report()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_node(
        self,
        name: str,
        code: str,
        node_type: OrgNodeType | str,
        parent_id: UUID | None = None,
        manager_id: UUID | None = None,
        sort_order: int = 0,
        metadata: Mapping[str, Any] | None = None,
        is_portfolio_area: bool = False,
        actor_id: UUID | None = None,
    ) -> OrgNode:
        """
        Create a node under an active parent (or the single ROOT).

        The node's id is assigned here so that its path can be computed
        before INSERT.
        """
        try:
            node_type = OrgNodeType(node_type)
        except ValueError:
            raise InvalidNodeTypeError(str(node_type), "unknown node type")

        if node_type == OrgNodeType.ROOT:
            if parent_id is not None:
                raise InvalidNodeTypeError(node_type.value, "a ROOT node cannot have a parent")
            existing = self._active_root()
            if existing is not None:
                raise DuplicateRootError(str(existing.id))
            path, depth = ROOT_PATH, 0
        else:
            if parent_id is None:
                raise InvalidNodeTypeError(node_type.value, "a non-ROOT node requires a parent")
            parent = self._lock_node(parent_id)
            if not parent.is_active:
                raise InactiveNodeError(str(parent_id))
            path, depth = child_path(parent.path, parent.id), parent.depth + 1

        self._require_unique_code(code)
        if manager_id is not None:
            self._require_person(manager_id)
        meta = json_field("OrgNode", "metadata", dict(metadata or {}))

        now = self._clock.now()
        model = OrgNodeModel(
            id=uuid4(),
            name=name,
            code=code,
            node_type=node_type.value,
            parent_id=parent_id,
            path=path,
            depth=depth,
            manager_id=manager_id,
            sort_order=sort_order,
            is_active=True,
            is_portfolio_area=is_portfolio_area,
            meta=meta,
            created_at=now,
            updated_at=now,
        )
        self._session.add(model)
        self._flush("OrgNode", model.id)

        self._auditor.record(
            actor_id=actor_id,
            entity_type="OrgNode",
            entity_id=model.id,
            action=AuditAction.ORG_NODE_CREATED,
            payload={
                "name": name,
                "code": code,
                "node_type": node_type,
                "parent_id": parent_id,
                "path": path,
                "depth": depth,
                "manager_id": manager_id,
            },
        )
        logger.info(
            "org_node_created",
            extra={
                "org_node_id": str(model.id),
                "code": code,
                "node_type": node_type.value,
                "depth": depth,
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_node(
        self,
        node_id: UUID,
        patch: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> OrgNode:
        """
        Patch mutable fields: name, code, manager_id, sort_order, metadata,
        is_portfolio_area.  Structure changes only through ``move_node``.
        """
        for key in patch:
            if key in STRUCTURAL_NODE_FIELDS:
                raise ImmutableFieldError("OrgNode", key)
            if key not in MUTABLE_NODE_FIELDS:
                raise ValidationError(f"Unknown OrgNode field: {key}")

        model = self._load_node(node_id)
        if not model.is_active:
            raise InactiveNodeError(str(node_id))

        if "code" in patch and patch["code"] != model.code:
            self._require_unique_code(patch["code"])
        if patch.get("manager_id") is not None:
            self._require_person(patch["manager_id"])

        meta = None
        if "metadata" in patch:
            meta = json_field("OrgNode", "metadata", dict(patch["metadata"] or {}))

        before = model.to_dto()
        for key, value in patch.items():
            if key == "metadata":
                model.meta = meta
            else:
                setattr(model, key, value)
        model.updated_at = self._clock.now()
        self._flush("OrgNode", model.id)

        after = model.to_dto()
        changes = {
            key: {
                "before": dict(getattr(before, key)) if key == "metadata" else getattr(before, key),
                "after": dict(getattr(after, key)) if key == "metadata" else getattr(after, key),
            }
            for key in sorted(patch)
        }
        self._auditor.record(
            actor_id=actor_id,
            entity_type="OrgNode",
            entity_id=model.id,
            action=AuditAction.ORG_NODE_UPDATED,
            payload={"changes": changes},
        )
        logger.info(
            "org_node_updated",
            extra={"org_node_id": str(node_id), "fields": sorted(patch)},
        )
        return after

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    def move_node(
        self,
        node_id: UUID,
        new_parent_id: UUID,
        actor_id: UUID | None = None,
    ) -> NodeMoveResult:
        """
        Re-parent a node and rewrite path/depth for its whole active subtree.

        Descendants are rewritten breadth first from the moved node, so
        each child's new path derives from its parent's already-updated
        path.  ``updated_count`` is the moved node plus its active
        descendants.  Policies stay attached to their nodes.
        """
        with LogContext.bind(org_node_id=node_id, actor_id=actor_id):
            node = self._lock_node(node_id)
            if node.node_type == OrgNodeType.ROOT.value:
                raise RootNodeOperationError(str(node_id), "move")
            if not node.is_active:
                raise InactiveNodeError(str(node_id))
            if new_parent_id == node.id:
                raise NodeCycleError(str(node_id), str(new_parent_id))

            parent = self._lock_node(new_parent_id)
            if not parent.is_active:
                raise InactiveNodeError(str(new_parent_id))
            if is_in_subtree(parent.path, node.path, node.id):
                raise NodeCycleError(str(node_id), str(new_parent_id))

            old_parent_id = node.parent_id
            old_path = node.path
            descendants = list(
                self._session.execute(
                    select(OrgNodeModel)
                    .where(
                        OrgNodeModel.path.startswith(
                            subtree_prefix(node.path, node.id), autoescape=True
                        ),
                        OrgNodeModel.is_active.is_(True),
                    )
                    .order_by(OrgNodeModel.depth)
                    .with_for_update()
                ).scalars()
            )
            children: dict[UUID, list[OrgNodeModel]] = defaultdict(list)
            for d in descendants:
                children[d.parent_id].append(d)

            now = self._clock.now()
            node.parent_id = parent.id
            node.path = child_path(parent.path, parent.id)
            node.depth = parent.depth + 1
            node.updated_at = now
            updated = 1

            queue: deque[OrgNodeModel] = deque([node])
            while queue:
                current = queue.popleft()
                for child in children.get(current.id, ()):
                    child.path = child_path(current.path, current.id)
                    child.depth = current.depth + 1
                    child.updated_at = now
                    updated += 1
                    queue.append(child)

            self._flush("OrgNode", node.id)

            self._auditor.record(
                actor_id=actor_id,
                entity_type="OrgNode",
                entity_id=node.id,
                action=AuditAction.ORG_NODE_MOVED,
                payload={
                    "old_parent_id": old_parent_id,
                    "new_parent_id": parent.id,
                    "old_path": old_path,
                    "new_path": node.path,
                    "updated_count": updated,
                },
            )
            logger.info(
                "org_node_moved",
                extra={
                    "old_parent_id": str(old_parent_id),
                    "new_parent_id": str(parent.id),
                    "updated_count": updated,
                },
            )
            return NodeMoveResult(
                node=node.to_dto(),
                updated_count=updated,
                old_path=old_path,
                new_path=node.path,
            )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_node(self, node_id: UUID, actor_id: UUID | None = None) -> OrgNode:
        """
        Soft-delete a node and deactivate its policies.

        Deleting an already inactive node is a no-op.
        """
        node = self._lock_node(node_id)
        if node.node_type == OrgNodeType.ROOT.value:
            raise RootNodeOperationError(str(node_id), "delete")
        if not node.is_active:
            return node.to_dto()

        child_count = self._selector.count_active_children(node_id)
        if child_count > 0:
            raise ActiveChildrenError(str(node_id), child_count)
        membership_count = self._memberships.count_active_for_node(node_id)
        if membership_count > 0:
            raise ActiveMembershipsError(str(node_id), membership_count)

        node.is_active = False
        node.updated_at = self._clock.now()
        self._flush("OrgNode", node.id)
        deactivated = self._policies.deactivate_for_node(node_id, actor_id=actor_id)

        self._auditor.record(
            actor_id=actor_id,
            entity_type="OrgNode",
            entity_id=node.id,
            action=AuditAction.ORG_NODE_DELETED,
            payload={"code": node.code, "policies_deactivated": deactivated},
        )
        logger.info(
            "org_node_deleted",
            extra={"org_node_id": str(node_id), "policies_deactivated": deactivated},
        )
        return node.to_dto()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_node(self, node_id: UUID) -> OrgNodeModel:
        model = self._session.get(OrgNodeModel, node_id)
        if model is None:
            raise OrgNodeNotFoundError(str(node_id))
        return model

    def _lock_node(self, node_id: UUID) -> OrgNodeModel:
        model = self._session.get(OrgNodeModel, node_id, with_for_update=True)
        if model is None:
            raise OrgNodeNotFoundError(str(node_id))
        return model

    def _active_root(self) -> OrgNodeModel | None:
        return self._session.execute(
            select(OrgNodeModel).where(
                OrgNodeModel.node_type == OrgNodeType.ROOT.value,
                OrgNodeModel.is_active.is_(True),
            )
        ).scalar_one_or_none()

    def _require_unique_code(self, code: str) -> None:
        taken = self._session.execute(
            select(OrgNodeModel.id).where(OrgNodeModel.code == code)
        ).first()
        if taken is not None:
            raise DuplicateNodeCodeError(code)

    def _require_person(self, person_id: UUID) -> None:
        person = self._session.get(PersonModel, person_id)
        if person is None or not person.is_active:
            raise PersonNotFoundError(str(person_id), role="Manager")

    def _flush(self, entity_type: str, entity_id: UUID) -> None:
        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "org_tree_write_conflict",
                extra={"entity_id": str(entity_id), "error": str(exc.orig)},
            )
            raise ConcurrentModificationError(entity_type, str(entity_id)) from exc
