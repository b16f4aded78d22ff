"""
SqlPersonDirectory -- ``PersonDirectory`` backed by the ``people`` table.

Also offers ``create_person``/``deactivate_person`` for fixtures and
administrative tooling; the approval engine itself only reads.
"""

from collections.abc import Iterable, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from portfolio_kernel.domain.org import Person
from portfolio_kernel.exceptions import PersonNotFoundError
from portfolio_kernel.logging_config import get_logger
from portfolio_kernel.models.person import PersonModel

logger = get_logger("services.person_directory")


class SqlPersonDirectory:
    """Person lookups for chain resolution and node validation."""

    def __init__(self, session: Session, admin_role: str = "ADMIN"):
        self._session = session
        self._admin_role = admin_role

    @property
    def admin_role(self) -> str:
        return self._admin_role

    def get_person(self, person_id: UUID) -> Person:
        model = self._session.get(PersonModel, person_id)
        if model is None:
            raise PersonNotFoundError(str(person_id))
        return model.to_dto()

    def get_people(self, person_ids: Iterable[UUID]) -> Mapping[UUID, Person]:
        ids = set(person_ids)
        if not ids:
            return {}
        rows = self._session.execute(
            select(PersonModel).where(PersonModel.id.in_(ids))
        ).scalars()
        return {row.id: row.to_dto() for row in rows}

    def list_by_role(self, role: str) -> list[Person]:
        rows = self._session.execute(
            select(PersonModel)
            .where(PersonModel.role == role, PersonModel.is_active.is_(True))
            .order_by(PersonModel.name, PersonModel.id)
        ).scalars()
        return [row.to_dto() for row in rows]

    def list_by_roles(self, roles: Iterable[str]) -> dict[str, list[Person]]:
        wanted = set(roles)
        result: dict[str, list[Person]] = {role: [] for role in wanted}
        if not wanted:
            return result
        rows = self._session.execute(
            select(PersonModel)
            .where(PersonModel.role.in_(wanted), PersonModel.is_active.is_(True))
            .order_by(PersonModel.name, PersonModel.id)
        ).scalars()
        for row in rows:
            result[row.role].append(row.to_dto())
        return result

    def list_admins(self) -> list[Person]:
        return self.list_by_role(self._admin_role)

    def count_active(self) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(PersonModel)
            .where(PersonModel.is_active.is_(True))
        ).scalar_one()

    def create_person(
        self,
        name: str,
        email: str,
        role: str = "MEMBER",
        person_id: UUID | None = None,
    ) -> Person:
        model = PersonModel(name=name, email=email, role=role, is_active=True)
        if person_id is not None:
            model.id = person_id
        self._session.add(model)
        self._session.flush()
        logger.info("person_created", extra={"person_id": str(model.id), "role": role})
        return model.to_dto()

    def deactivate_person(self, person_id: UUID) -> Person:
        model = self._session.get(PersonModel, person_id)
        if model is None:
            raise PersonNotFoundError(str(person_id))
        model.is_active = False
        self._session.flush()
        logger.info("person_deactivated", extra={"person_id": str(person_id)})
        return model.to_dto()
