"""
Module: portfolio_kernel.models.org_node
Responsibility: ORM persistence for the org tree and for person-to-node
    memberships.

Architecture position: Kernel > Models.  May import from db/ and
    exceptions only.

Invariants enforced:
    - At most one active ROOT node (partial unique index).
    - Node codes are unique across the tree, including inactive nodes.
    - path/depth are maintained by OrgTreeService on every structural
      write; the index on path serves subtree prefix scans.
    - At most one open membership per person (partial unique index on
      rows with no effective_end).

Failure modes:
    - IntegrityError on a second active ROOT or a duplicate code; the
      service checks both first and raises a ValidationError.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from portfolio_kernel.db.base import Base, TrackedBase, UUIDString
from portfolio_kernel.db.types import UTCDateTime

if TYPE_CHECKING:
    from portfolio_kernel.domain.org import OrgMembership, OrgNode

_NODE_TYPES = (
    "'ROOT', 'DIVISION', 'DEPARTMENT', 'TEAM', 'VIRTUAL', "
    "'PRODUCT', 'PLATFORM', 'FUNCTIONAL', 'CHAPTER'"
)


class OrgNodeModel(TrackedBase):
    """Persistent org node.

    Contract:
        Soft-deleted only (``is_active`` = False); rows are kept for history.
        ``metadata`` is exposed as ``meta`` on the model because the
        declarative base reserves the ``metadata`` attribute.
    """

    __tablename__ = "org_nodes"

    __table_args__ = (
        CheckConstraint(f"node_type IN ({_NODE_TYPES})", name="ck_org_nodes_type"),
        CheckConstraint("depth >= 0", name="ck_org_nodes_depth"),
        CheckConstraint(
            "(node_type = 'ROOT' AND parent_id IS NULL) OR "
            "(node_type <> 'ROOT' AND parent_id IS NOT NULL)",
            name="ck_org_nodes_root_parent",
        ),
        Index(
            "uq_org_nodes_active_root",
            "node_type",
            unique=True,
            postgresql_where=text("node_type = 'ROOT' AND is_active = true"),
            sqlite_where=text("node_type = 'ROOT' AND is_active = 1"),
        ),
        Index("idx_org_nodes_parent", "parent_id", "is_active"),
        Index("idx_org_nodes_path", "path"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    node_type: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("org_nodes.id"), nullable=True,
    )
    path: Mapped[str] = mapped_column(String(4000), nullable=False)
    depth: Mapped[int] = mapped_column(nullable=False, default=0)
    manager_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("people.id"), nullable=True,
    )
    sort_order: Mapped[int] = mapped_column(nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_portfolio_area: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<OrgNode {self.code} {self.node_type} path={self.path}>"

    def to_dto(self) -> OrgNode:
        from types import MappingProxyType

        from portfolio_kernel.domain.org import OrgNode, OrgNodeType

        return OrgNode(
            id=self.id,
            name=self.name,
            code=self.code,
            node_type=OrgNodeType(self.node_type),
            parent_id=self.parent_id,
            path=self.path,
            depth=self.depth,
            manager_id=self.manager_id,
            sort_order=self.sort_order,
            is_active=self.is_active,
            is_portfolio_area=self.is_portfolio_area,
            metadata=MappingProxyType(dict(self.meta or {})),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class OrgMembershipModel(Base):
    """Assignment of a person to an org node over a time window.

    An open membership has no ``effective_end``.  Reassignment closes the
    open row and inserts a new one, so the table is the membership history.
    """

    __tablename__ = "org_memberships"

    __table_args__ = (
        Index(
            "uq_org_memberships_open",
            "person_id",
            unique=True,
            postgresql_where=text("effective_end IS NULL"),
            sqlite_where=text("effective_end IS NULL"),
        ),
        Index("idx_org_memberships_node", "org_node_id", "effective_end"),
    )

    person_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("people.id"), nullable=False,
    )
    org_node_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("org_nodes.id"), nullable=False,
    )
    effective_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<OrgMembership person={self.person_id} node={self.org_node_id}>"

    def to_dto(self) -> OrgMembership:
        from portfolio_kernel.domain.org import OrgMembership

        return OrgMembership(
            id=self.id,
            person_id=self.person_id,
            org_node_id=self.org_node_id,
            effective_start=self.effective_start,
            effective_end=self.effective_end,
        )
