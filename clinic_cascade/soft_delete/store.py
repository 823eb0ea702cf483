"""
Entity store: engine setup, provisioning boundary and read access.

Entities are created active and non-deleted here. Their deletion state
is only ever changed by the cascade service.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .entities import (
    ALLOWED_PARENT_KIND,
    ENTITY_CLASSES,
    Entity,
    claim_versions,
    get_entity,
    init_db,
    new_entity_id,
)
from .exceptions import ConflictError, InvalidOperationError, ValidationError
from .hierarchy import HierarchyIndex
from .models import DeletionOrigin, EntityKind, EntitySummary, StaffRole

logger = logging.getLogger(__name__)


def create_session_factory(database_url: str) -> Callable[[], Session]:
    """
    Build a session factory bound to a freshly initialized entity store.

    Args:
        database_url: SQLAlchemy connection string

    Returns:
        Configured sessionmaker
    """
    if database_url.startswith("sqlite"):
        # SQLite doesn't support pool_size and max_overflow
        engine = create_engine(database_url, pool_pre_ping=True)
    else:
        engine = create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
        )

    init_db(engine)

    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class EntityStore:
    """Provisioning boundary and read access for hierarchy entities."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _create(
        self,
        kind: EntityKind,
        name: str,
        parent_id: Optional[str] = None,
        role: Optional[StaffRole] = None,
        is_active: bool = True,
    ) -> EntitySummary:
        if not name or not name.strip():
            raise ValidationError("Name is required", field="name")

        expected_parent = ALLOWED_PARENT_KIND[kind]
        if expected_parent is not None and not parent_id:
            raise ValidationError(
                f"A {kind.value} must be created under a {expected_parent.value}",
                field="parent_id",
            )

        try:
            with self.session_factory() as session, session.begin():
                parent = None
                if expected_parent is not None:
                    parent = get_entity(session, parent_id)
                    if parent.kind != expected_parent:
                        raise ValidationError(
                            f"A {kind.value} cannot be placed under a "
                            f"{parent.kind.value}",
                            field="parent_id",
                        )
                    if parent.is_deleted:
                        raise InvalidOperationError(
                            parent_id,
                            f"Cannot create a {kind.value} under a deleted "
                            f"{parent.kind.value}",
                            guidance="Restore the parent first",
                        )

                entity = ENTITY_CLASSES[kind](
                    id=new_entity_id(),
                    name=name.strip(),
                    parent_id=parent_id,
                    role=role,
                    is_active=is_active,
                )
                session.add(entity)
                session.flush()
                # A parent deleted since it was read must not gain a live child
                if parent is not None:
                    claim_versions(session, [parent])

                logger.debug("Created %s %s", kind.value, entity.id)
                return EntitySummary.model_validate(entity)
        except StaleDataError as e:
            logger.warning(
                "Parent %s changed while creating a %s", parent_id, kind.value
            )
            raise ConflictError(parent_id) from e

    def create_organization(self, name: str, is_active: bool = True) -> EntitySummary:
        """Create an organization, optionally inactive while it awaits an admin."""
        return self._create(EntityKind.ORGANIZATION, name, is_active=is_active)

    def create_branch(self, organization_id: str, name: str) -> EntitySummary:
        """Create a branch under an organization."""
        return self._create(EntityKind.BRANCH, name, parent_id=organization_id)

    def create_staff_member(
        self, branch_id: str, name: str, role: StaffRole
    ) -> EntitySummary:
        """Create a doctor, receptionist or branch admin under a branch."""
        return self._create(
            EntityKind.STAFF_MEMBER, name, parent_id=branch_id, role=StaffRole(role)
        )

    def create_patient(self, branch_id: str, name: str) -> EntitySummary:
        """Create a patient under a branch."""
        return self._create(EntityKind.PATIENT, name, parent_id=branch_id)

    def get(self, entity_id: str) -> EntitySummary:
        """
        Get an entity by ID.

        Raises:
            NotFoundError: If the entity does not exist
        """
        with self.session_factory() as session:
            return EntitySummary.model_validate(get_entity(session, entity_id))

    def set_active(self, entity_id: str, is_active: bool) -> EntitySummary:
        """
        Toggle the activity flag of a non-deleted entity.

        Raises:
            NotFoundError: If the entity does not exist
            InvalidOperationError: If the entity is deleted
        """
        with self.session_factory() as session, session.begin():
            entity = get_entity(session, entity_id)
            if entity.is_deleted:
                raise InvalidOperationError(
                    entity_id,
                    "Cannot change the activity of a deleted entity",
                    guidance="Restore it first",
                )
            entity.is_active = is_active
            session.flush()
            return EntitySummary.model_validate(entity)

    def list_deleted(
        self,
        scope_id: Optional[str] = None,
        kind: Optional[EntityKind] = None,
        origin: Optional[DeletionOrigin] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EntitySummary]:
        """
        List deleted entities, newest deletion first.

        Args:
            scope_id: Restrict to this entity and its subtree
            kind: Restrict to one entity kind
            origin: Restrict to DIRECT or CASCADED deletions
            limit: Maximum records to return
            offset: Offset for pagination

        Returns:
            Summaries of matching deleted entities
        """
        with self.session_factory() as session:
            query = Entity.query_deleted(session)

            if scope_id is not None:
                root = get_entity(session, scope_id)
                scope_ids = [root.id] + HierarchyIndex(session).descendant_ids(root.id)
                query = query.filter(Entity.id.in_(scope_ids))
            if kind is not None:
                query = query.filter(Entity.kind == EntityKind(kind))
            if origin is not None:
                query = query.filter(Entity.deletion_origin == DeletionOrigin(origin))

            query = query.order_by(Entity.deleted_at.desc(), Entity.id)
            query = query.limit(limit).offset(offset)

            return [EntitySummary.model_validate(e) for e in query.all()]
