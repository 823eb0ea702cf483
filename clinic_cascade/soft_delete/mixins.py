"""
SQLAlchemy mixins for soft delete functionality.

These mixins carry the deletion-state columns and the provenance fields
that let a restore undo exactly the cascade that produced a deletion.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Type

from sqlalchemy import Boolean, CheckConstraint, DateTime, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy import event
from sqlalchemy.orm import Mapped, Query, Session, mapped_column

from .exceptions import InvalidOperationError
from .models import DeletionOrigin


def enum_values(enum_class: Type[Any]) -> list:
    """Persist enum values rather than member names."""
    return [member.value for member in enum_class]


class SoftDeleteMixin:
    """
    Mixin to add provenance-aware soft delete columns to SQLAlchemy models.

    Provides:
    - Soft delete fields (is_deleted, deleted_at, deleted_by, delete_reason)
    - Provenance fields (deletion_origin, cascade_root_id)
    - An activity flag that is independent of deletion
    - State transition methods and query helpers

    Usage:
        class Entity(Base, SoftDeleteMixin):
            __tablename__ = 'entities'
            __table_args__ = (SoftDeleteMixin.deletion_consistency_constraint('entities'),)
            id = mapped_column(String(36), primary_key=True)
    """

    # Soft delete fields
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    delete_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Provenance fields
    deletion_origin: Mapped[DeletionOrigin] = mapped_column(
        SAEnum(
            DeletionOrigin,
            native_enum=False,
            create_constraint=False,
            length=20,
            values_callable=enum_values,
        ),
        default=DeletionOrigin.NONE,
        nullable=False,
    )
    cascade_root_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )

    # Inactive-but-not-deleted is a valid state (e.g. awaiting an admin)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @staticmethod
    def deletion_consistency_constraint(table_name: str) -> CheckConstraint:
        """Table constraint tying the deletion fields to is_deleted."""
        return CheckConstraint(
            "(is_deleted = false AND deleted_at IS NULL AND deleted_by IS NULL "
            "AND delete_reason IS NULL AND deletion_origin = 'none' "
            "AND cascade_root_id IS NULL) OR "
            "(is_deleted = true AND deleted_at IS NOT NULL AND deleted_by IS NOT NULL "
            "AND delete_reason IS NOT NULL AND "
            "((deletion_origin = 'direct' AND cascade_root_id IS NULL) OR "
            "(deletion_origin = 'cascaded' AND cascade_root_id IS NOT NULL)))",
            name=f"ck_{table_name}_deletion_consistency",
        )

    @property
    def effectively_active(self) -> bool:
        """Active flag as seen by users: deleted entities are never active."""
        return self.is_active and not self.is_deleted

    def mark_deleted(
        self,
        actor_id: str,
        reason: str,
        deleted_at: datetime,
        cascade_root_id: Optional[str] = None,
    ) -> None:
        """
        Soft delete this record.

        Args:
            actor_id: ID of the actor performing the deletion
            reason: Reason for deletion, shared by the whole cascade
            deleted_at: Timestamp stamped on the whole cascade
            cascade_root_id: ID of the directly deleted ancestor, when this
                record is swept in by a cascade

        Raises:
            InvalidOperationError: If the record is already deleted
        """
        if self.is_deleted:
            raise InvalidOperationError(
                str(getattr(self, "id", "unknown")), "Entity is already deleted"
            )

        self.is_deleted = True
        self.deleted_at = deleted_at
        self.deleted_by = actor_id
        self.delete_reason = reason

        if cascade_root_id is None:
            self.deletion_origin = DeletionOrigin.DIRECT
            self.cascade_root_id = None
        else:
            self.deletion_origin = DeletionOrigin.CASCADED
            self.cascade_root_id = cascade_root_id

    def mark_restored(self) -> Dict[str, Any]:
        """
        Return this record to the non-deleted state.

        Returns:
            The deletion metadata cleared from the live record

        Raises:
            InvalidOperationError: If the record is not deleted
        """
        if not self.is_deleted:
            raise InvalidOperationError(
                str(getattr(self, "id", "unknown")), "Entity is not deleted"
            )

        previous = {
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "deleted_by": self.deleted_by,
            "delete_reason": self.delete_reason,
            "deletion_origin": DeletionOrigin(self.deletion_origin).value,
            "cascade_root_id": self.cascade_root_id,
        }

        self.is_deleted = False
        self.deleted_at = None
        self.deleted_by = None
        self.delete_reason = None
        self.deletion_origin = DeletionOrigin.NONE
        self.cascade_root_id = None

        return previous

    @classmethod
    def query_deleted(cls, session: Session) -> Query[Any]:
        """Return query for deleted records only."""
        return session.query(cls).filter(cls.is_deleted.is_(True))

    def to_dict(self, include_deleted_fields: bool = True) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Args:
            include_deleted_fields: Whether to include soft delete fields

        Returns:
            Dictionary representation of the model
        """
        result: Dict[str, Any] = {}

        table = getattr(self, "__table__", None)
        if table is None:
            return result

        for column in table.columns:
            if hasattr(self, column.key):
                value = getattr(self, column.key)
                if isinstance(value, datetime):
                    value = value.isoformat()
                elif hasattr(value, "value"):
                    value = value.value
                result[column.key] = value

        if not include_deleted_fields:
            for field in [
                "is_deleted",
                "deleted_at",
                "deleted_by",
                "delete_reason",
                "deletion_origin",
                "cascade_root_id",
            ]:
                result.pop(field, None)

        return result


def prevent_hard_delete(mapper: Any, connection: Any, target: Any) -> None:
    """
    Prevent hard deletes on models with SoftDeleteMixin.

    Connected to SQLAlchemy's before_delete event.
    """
    if isinstance(target, SoftDeleteMixin):
        raise RuntimeError(
            f"Hard delete attempted on {target.__class__.__name__}. "
            "Use the cascade service to soft delete instead."
        )


def register_soft_delete_listeners(base_class: Type[Any]) -> None:
    """
    Register SQLAlchemy event listeners for soft delete functionality.

    Args:
        base_class: The declarative base class
    """
    for mapper in base_class.registry.mappers:
        if issubclass(mapper.class_, SoftDeleteMixin) and not event.contains(
            mapper.class_, "before_delete", prevent_hard_delete
        ):
            event.listen(mapper.class_, "before_delete", prevent_hard_delete)
