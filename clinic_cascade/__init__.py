"""
Clinic Cascade Toolkit - cascading soft delete and restore for clinic platforms.

Governs how an organization, its branches, and their staff and patients
are deactivated, reactivated and audited, without ever resurrecting
records that were deleted on purpose.

Key Features
------------
* **Impact estimation**: read-only plans for confirmation screens
* **Provenance tracking**: every deletion records whether it was direct
  or swept in by an ancestor's cascade
* **Scoped restore**: a restore undoes exactly the cascade it targets
* **Atomic cascades**: optimistic versioning detects overlapping writers
* **Audit trail**: one checksummed, append-only event per cascade
* **Statistics**: cached active/deleted counts for dashboards

Quick Start
-----------
>>> from clinic_cascade import CascadeConfig, create_cascade_service
>>>
>>> config = CascadeConfig(database_url="sqlite:///clinic.db")
>>> service = await create_cascade_service(config)
>>>
>>> org = service.store.create_organization("Sunrise Clinics")
>>> plan = await service.plan(org.id)
>>> result = await service.delete(org.id, "admin-1", "Contract ended")
>>> await service.restore(org.id, "admin-1", "Contract renewed")
"""

import logging
from typing import Optional, Union

__version__ = "1.0.0"

from .audit_trail import AuditEvent, AuditRecorder
from .config import CascadeConfig, configure, get_config, set_config
from .soft_delete import (
    CascadeError,
    CascadePlan,
    CascadeService,
    ConflictError,
    DeleteResult,
    EntityStore,
    InvalidOperationError,
    NotFoundError,
    RestoreResult,
    SoftDeleteStats,
    StorageError,
    ValidationError,
    create_cascade_service,
)


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """
    Set the level of the package logger.

    Args:
        level: Level name or number. Defaults to the configured log_level.
    """
    if level is None:
        level = get_config().log_level
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger(__name__).setLevel(level)


__all__ = [
    # Service
    "CascadeService",
    "create_cascade_service",
    "EntityStore",
    # Results
    "CascadePlan",
    "DeleteResult",
    "RestoreResult",
    "SoftDeleteStats",
    # Audit
    "AuditRecorder",
    "AuditEvent",
    # Configuration
    "CascadeConfig",
    "configure",
    "get_config",
    "set_config",
    "configure_logging",
    # Exceptions
    "CascadeError",
    "ValidationError",
    "NotFoundError",
    "InvalidOperationError",
    "ConflictError",
    "StorageError",
]
