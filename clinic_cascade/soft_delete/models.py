"""
Data models for cascade operations.

These models define deletion and restoration requests, the typed impact
counts shared by plans and results, and the statistics returned to the
dashboard layer.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityKind(str, Enum):
    """Kinds of entity in the clinic hierarchy."""

    ORGANIZATION = "organization"
    BRANCH = "branch"
    STAFF_MEMBER = "staff_member"
    PATIENT = "patient"


class StaffRole(str, Enum):
    """Roles a staff member can hold within a branch."""

    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    BRANCH_ADMIN = "branch_admin"


class DeletionOrigin(str, Enum):
    """Why an entity is in the deleted state."""

    NONE = "none"  # Not deleted
    DIRECT = "direct"  # Target of a delete request
    CASCADED = "cascaded"  # Swept in by an ancestor's cascade


class CascadeAction(str, Enum):
    """Operations the cascade engine performs."""

    DELETE = "DELETE"
    RESTORE = "RESTORE"


class ImpactCounts(BaseModel):
    """Per-kind count of descendants touched by a cascade."""

    branches: int = Field(0, ge=0)
    doctors: int = Field(0, ge=0)
    receptionists: int = Field(0, ge=0)
    branch_admins: int = Field(0, ge=0)
    patients: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        """Sum over all kinds."""
        return (
            self.branches
            + self.doctors
            + self.receptionists
            + self.branch_admins
            + self.patients
        )

    @property
    def staff(self) -> int:
        """Doctors, receptionists and branch admins together."""
        return self.doctors + self.receptionists + self.branch_admins

    def add(self, kind: EntityKind, role: Optional[StaffRole] = None) -> None:
        """Count one entity of the given kind (and role, for staff)."""
        if kind == EntityKind.BRANCH:
            self.branches += 1
        elif kind == EntityKind.PATIENT:
            self.patients += 1
        elif kind == EntityKind.STAFF_MEMBER:
            if role == StaffRole.DOCTOR:
                self.doctors += 1
            elif role == StaffRole.RECEPTIONIST:
                self.receptionists += 1
            elif role == StaffRole.BRANCH_ADMIN:
                self.branch_admins += 1
            else:
                raise ValueError(f"Unknown staff role: {role}")
        else:
            raise ValueError(f"{kind} entities are never cascade targets")


class CascadePlan(BaseModel):
    """Read-only impact estimate for a delete or restore."""

    root_id: str
    root_kind: EntityKind
    action: CascadeAction
    per_kind_counts: ImpactCounts = Field(
        default_factory=ImpactCounts,
        description="Descendants the operation would transition",
    )
    untouched_counts: ImpactCounts = Field(
        default_factory=ImpactCounts,
        description="Descendants reached but left as they are",
    )
    total_affected_entities: int = Field(
        0, ge=0, description="Transitioning descendants plus the root if it transitions"
    )
    descendant_ids: List[str] = Field(
        default_factory=list, description="Every descendant reached, BFS order"
    )
    blocked_reason: Optional[str] = Field(
        None, description="Why the operation would be rejected; nothing transitions"
    )


class DeletionRequest(BaseModel):
    """Validated input for a cascade delete."""

    root_id: str = Field(..., min_length=1, max_length=36)
    actor_id: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1)

    @field_validator("root_id", "actor_id", "reason")
    @classmethod
    def strip_and_require(cls, v: str) -> str:
        """Reject values that are only whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("Value must not be blank")
        return v


class RestoreRequest(DeletionRequest):
    """Validated input for a cascade restore."""


class CascadeResult(BaseModel):
    """Fields shared by delete and restore results."""

    root_id: str
    root_kind: EntityKind
    per_kind_counts: ImpactCounts = Field(default_factory=ImpactCounts)
    audit_event_id: Optional[str] = Field(
        None, description="ID of the recorded audit event, if any"
    )
    warnings: List[str] = Field(
        default_factory=list, description="Degraded-success warnings"
    )

    @property
    def degraded(self) -> bool:
        """True when the cascade committed but something secondary failed."""
        return bool(self.warnings)


class DeleteResult(CascadeResult):
    """Outcome of a cascade delete."""

    newly_deleted_count: int = Field(0, ge=0)


class RestoreResult(CascadeResult):
    """Outcome of a cascade restore."""

    newly_restored_count: int = Field(0, ge=0)


class EntitySummary(BaseModel):
    """Read model of an entity and its deletion state."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: EntityKind
    role: Optional[StaffRole] = None
    name: str
    parent_id: Optional[str] = None
    is_active: bool
    is_deleted: bool
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    delete_reason: Optional[str] = None
    deletion_origin: DeletionOrigin
    cascade_root_id: Optional[str] = None


class SoftDeleteStats(BaseModel):
    """Active/deleted counts for a scope, for dashboard consumption."""

    scope_id: Optional[str] = None
    total: int = 0
    active: int = 0
    deleted: int = 0
    deleted_today: int = 0
    deleted_this_week: int = 0
    deleted_this_month: int = 0
    generated_at: datetime
    max_staleness_seconds: int = Field(
        0, ge=0, description="How old these numbers may be when served"
    )

    @property
    def deletion_rate(self) -> float:
        """Percentage of entities in scope that are deleted."""
        if self.total == 0:
            return 0.0
        return (self.deleted / self.total) * 100

    def to_dict(self) -> Dict[str, object]:
        """Serialize including the derived deletion rate."""
        data: Dict[str, object] = self.model_dump()
        data["deletion_rate"] = round(self.deletion_rate, 2)
        return data
