"""
Organization tree domain types (``portfolio_kernel.domain.org``).

Responsibility
--------------
Pure value objects for the org hierarchy: nodes, memberships, people and
the coverage report, plus the materialized-path arithmetic shared by the
tree service and the chain resolver.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* A node's ``path`` lists its ancestors' ids, root first, delimited by
  "/".  The ROOT's path is "/".  A child's path is
  ``parent.path + str(parent.id) + "/"`` and its depth ``parent.depth + 1``.
* Only ``MUTABLE_NODE_FIELDS`` may be patched through an update; type,
  parent, path and depth change only through create/move.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

ROOT_PATH = "/"


class OrgNodeType(str, Enum):
    """Kinds of org node.  Exactly one active ROOT exists per tree."""

    ROOT = "ROOT"
    DIVISION = "DIVISION"
    DEPARTMENT = "DEPARTMENT"
    TEAM = "TEAM"
    VIRTUAL = "VIRTUAL"
    PRODUCT = "PRODUCT"
    PLATFORM = "PLATFORM"
    FUNCTIONAL = "FUNCTIONAL"
    CHAPTER = "CHAPTER"


MUTABLE_NODE_FIELDS: frozenset[str] = frozenset({
    "name",
    "code",
    "manager_id",
    "sort_order",
    "metadata",
    "is_portfolio_area",
})

STRUCTURAL_NODE_FIELDS: frozenset[str] = frozenset({
    "node_type",
    "parent_id",
    "path",
    "depth",
    "is_active",
    "id",
})


# =========================================================================
# Path arithmetic
# =========================================================================


def child_path(parent_path: str, parent_id: UUID) -> str:
    """Path of a direct child of the node (*parent_id*, *parent_path*)."""
    return f"{parent_path}{parent_id}/"


def parse_path(path: str) -> tuple[UUID, ...]:
    """Ancestor ids encoded in *path*, root first."""
    return tuple(UUID(part) for part in path.strip("/").split("/") if part)


def subtree_prefix(node_path: str, node_id: UUID) -> str:
    """Prefix shared by the paths of every descendant of the node."""
    return child_path(node_path, node_id)


def is_in_subtree(candidate_path: str, node_path: str, node_id: UUID) -> bool:
    """True if a node with *candidate_path* lies strictly below the given node."""
    return candidate_path.startswith(subtree_prefix(node_path, node_id))


def lowest_common_ancestor(chains: list[tuple[UUID, ...]]) -> UUID | None:
    """
    Deepest id common to every chain.

    Each chain is a root-first list of ids ending in the node itself.
    Returns None for an empty input or chains with no shared prefix.
    """
    if not chains:
        return None
    common: UUID | None = None
    for ids in zip(*chains):
        if all(i == ids[0] for i in ids):
            common = ids[0]
        else:
            break
    return common


# =========================================================================
# Value objects
# =========================================================================


@dataclass(frozen=True)
class Person:
    """Directory entry for a person who can request or approve."""

    id: UUID
    name: str
    email: str
    role: str
    is_active: bool = True


@dataclass(frozen=True)
class OrgNode:
    """Immutable snapshot of a single org node."""

    id: UUID
    name: str
    code: str
    node_type: OrgNodeType
    parent_id: UUID | None
    path: str
    depth: int
    manager_id: UUID | None = None
    sort_order: int = 0
    is_active: bool = True
    is_portfolio_area: bool = False
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_root(self) -> bool:
        return self.node_type == OrgNodeType.ROOT

    @property
    def ancestor_ids(self) -> tuple[UUID, ...]:
        return parse_path(self.path)

    @property
    def lineage(self) -> tuple[UUID, ...]:
        """Ancestor ids followed by this node's own id."""
        return self.ancestor_ids + (self.id,)

    @property
    def children_path(self) -> str:
        return child_path(self.path, self.id)


@dataclass(frozen=True)
class OrgTreeNode:
    """An active node with its active children, for tree rendering."""

    node: OrgNode
    children: tuple[OrgTreeNode, ...] = ()

    def walk(self):
        """Yield this node and all descendants, depth first."""
        yield self.node
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class OrgMembership:
    """Time-bounded assignment of a person to a node."""

    id: UUID
    person_id: UUID
    org_node_id: UUID
    effective_start: datetime
    effective_end: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.effective_end is None


@dataclass(frozen=True)
class NodeMoveResult:
    """Outcome of a move: the node after the move and how many rows were rewritten."""

    node: OrgNode
    updated_count: int
    old_path: str
    new_path: str


@dataclass(frozen=True)
class CoverageReport:
    """How much of the org is assigned and governed by policies."""

    total_people: int
    unassigned_people: int
    total_active_nodes: int
    nodes_without_policies: int
    unassigned_person_ids: tuple[UUID, ...] = ()
    uncovered_node_ids: tuple[UUID, ...] = ()

    @property
    def coverage_percentage(self) -> float:
        if self.total_people == 0:
            return 100.0
        assigned = self.total_people - self.unassigned_people
        return round(assigned * 100.0 / self.total_people, 2)
