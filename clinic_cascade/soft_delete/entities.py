"""
ORM models for the clinic hierarchy.

Organizations, branches, staff members and patients share one table
(single-table inheritance over ``kind``). Each row carries a parent
reference, the soft delete columns from :class:`SoftDeleteMixin`, and a
version counter used for optimistic concurrency control.
"""

import uuid
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, Session, declarative_base, mapped_column
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from ..timeutils import utcnow
from .exceptions import NotFoundError
from .mixins import SoftDeleteMixin, enum_values, register_soft_delete_listeners
from .models import EntityKind, StaffRole

Base = declarative_base()

# Which kind of entity each kind must be placed under
ALLOWED_PARENT_KIND: Dict[EntityKind, Optional[EntityKind]] = {
    EntityKind.ORGANIZATION: None,
    EntityKind.BRANCH: EntityKind.ORGANIZATION,
    EntityKind.STAFF_MEMBER: EntityKind.BRANCH,
    EntityKind.PATIENT: EntityKind.BRANCH,
}


def new_entity_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4())


class Entity(Base, SoftDeleteMixin):  # type: ignore[valid-type,misc]
    """Any node of the Organization -> Branch -> staff/patient tree."""

    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=new_entity_id
    )
    kind: Mapped[EntityKind] = mapped_column(
        SAEnum(
            EntityKind,
            native_enum=False,
            create_constraint=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        index=True,
    )
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("entities.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Staff members only
    role: Mapped[Optional[StaffRole]] = mapped_column(
        SAEnum(
            StaffRole,
            native_enum=False,
            create_constraint=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        SoftDeleteMixin.deletion_consistency_constraint("entities"),
        CheckConstraint(
            "(kind = 'staff_member' AND role IS NOT NULL) OR "
            "(kind != 'staff_member' AND role IS NULL)",
            name="ck_entities_staff_role",
        ),
        CheckConstraint(
            "(kind = 'organization' AND parent_id IS NULL) OR "
            "(kind != 'organization' AND parent_id IS NOT NULL)",
            name="ck_entities_parent",
        ),
        Index("idx_entities_cascade", "deletion_origin", "cascade_root_id"),
    )

    __mapper_args__ = {
        "polymorphic_on": kind,
        "version_id_col": version_id,
    }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id} deleted={self.is_deleted}>"


class Organization(Entity):
    """Tenant root; has no parent."""

    __mapper_args__ = {"polymorphic_identity": EntityKind.ORGANIZATION}


class Branch(Entity):
    """A clinic location owned by an organization."""

    __mapper_args__ = {"polymorphic_identity": EntityKind.BRANCH}


class StaffMember(Entity):
    """Doctor, receptionist or branch admin working at a branch."""

    __mapper_args__ = {"polymorphic_identity": EntityKind.STAFF_MEMBER}


class Patient(Entity):
    """Patient registered at a branch."""

    __mapper_args__ = {"polymorphic_identity": EntityKind.PATIENT}


ENTITY_CLASSES = {
    EntityKind.ORGANIZATION: Organization,
    EntityKind.BRANCH: Branch,
    EntityKind.STAFF_MEMBER: StaffMember,
    EntityKind.PATIENT: Patient,
}


def init_db(engine: Engine) -> None:
    """Create tables and register soft delete listeners."""
    Base.metadata.create_all(bind=engine)
    register_soft_delete_listeners(Base)


def get_entity(session: Session, entity_id: str) -> Entity:
    """Load an entity by ID or raise NotFoundError."""
    entity = session.get(Entity, entity_id)
    if entity is None:
        raise NotFoundError(entity_id)
    return entity


def claim_versions(session: Session, entities: Iterable[Entity]) -> None:
    """
    Bump the version of rows a write depends on without changing them.

    A check such as "the parent is not deleted" only holds at commit if no
    other transaction changed the parent in the meantime. Advancing its
    version turns any such overlap into a stale version on one side.

    Raises:
        StaleDataError: If another transaction changed one of the rows
            since it was loaded
    """
    table = Entity.__table__
    for entity in entities:
        current = entity.version_id
        result = session.execute(
            table.update()
            .where(table.c.id == entity.id, table.c.version_id == current)
            .values(version_id=current + 1)
        )
        if result.rowcount != 1:
            raise StaleDataError(
                f"{EntityKind(entity.kind).value} {entity.id} was modified "
                "by another transaction"
            )
        set_committed_value(entity, "version_id", current + 1)
