"""
Soft Delete Module - cascading, provenance-aware soft delete and restore.

Provides the hierarchy models, the read-only cascade planner, the
cascade service that executes deletes and restores atomically, and the
statistics aggregator backing dashboard widgets.
"""

from .entities import (
    Base,
    Branch,
    Entity,
    Organization,
    Patient,
    StaffMember,
    init_db,
)
from .exceptions import (
    CascadeError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .hierarchy import HierarchyIndex
from .mixins import SoftDeleteMixin
from .models import (
    CascadeAction,
    CascadePlan,
    DeleteResult,
    DeletionOrigin,
    DeletionRequest,
    EntityKind,
    EntitySummary,
    ImpactCounts,
    RestoreRequest,
    RestoreResult,
    SoftDeleteStats,
    StaffRole,
)
from .planner import CascadePlanner
from .services import CascadeService, create_cascade_service
from .stats import StatsAggregator
from .store import EntityStore, create_session_factory

__all__ = [
    # Mixins and models
    "SoftDeleteMixin",
    "Base",
    "Entity",
    "Organization",
    "Branch",
    "StaffMember",
    "Patient",
    "init_db",
    # Store and traversal
    "EntityStore",
    "create_session_factory",
    "HierarchyIndex",
    "CascadePlanner",
    # Services
    "CascadeService",
    "create_cascade_service",
    "StatsAggregator",
    # Models
    "EntityKind",
    "StaffRole",
    "DeletionOrigin",
    "CascadeAction",
    "ImpactCounts",
    "CascadePlan",
    "DeletionRequest",
    "RestoreRequest",
    "DeleteResult",
    "RestoreResult",
    "EntitySummary",
    "SoftDeleteStats",
    # Exceptions
    "CascadeError",
    "ValidationError",
    "NotFoundError",
    "InvalidOperationError",
    "ConflictError",
    "StorageError",
]
