"""
Module: portfolio_kernel.models.person
Responsibility: ORM persistence for the person directory (employees and
    administrators).
Architecture position: Kernel > Models.  May import from db/ only.

Directory rows are referenced by org node managers, memberships and
delegations.  People are deactivated, never deleted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from portfolio_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from portfolio_kernel.domain.org import Person


class PersonModel(TrackedBase):
    """A person known to the directory."""

    __tablename__ = "people"

    __table_args__ = (
        Index("idx_people_role_active", "role", "is_active"),
        Index("idx_people_email", "email", unique=True),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False, default="MEMBER")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Person {self.email} role={self.role}>"

    def to_dto(self) -> Person:
        from portfolio_kernel.domain.org import Person

        return Person(
            id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            is_active=self.is_active,
        )
