"""
Audit recorder for committed cascades.

Writes one summary event per delete or restore cascade and offers the
queries needed to review what happened to a subtree.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..config import CascadeConfig, get_config
from ..timeutils import utcnow
from .models import AuditAction, AuditEvent, AuditEventQuery
from .storage import AuditStorage, get_audit_storage

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Records cascade summaries to an append-only audit store.

    The recorder is invoked after the cascade transaction has committed,
    so a failure here never undoes the state change. Callers decide how
    to surface such a failure.

    Example:
        >>> recorder = AuditRecorder()
        >>> event_id = await recorder.record(
        ...     action=AuditAction.DELETE,
        ...     root_id=org_id,
        ...     root_kind="organization",
        ...     actor_id="admin-1",
        ...     reason="Contract ended",
        ...     per_kind_counts={"branches": 2, "patients": 40},
        ...     total_affected=43,
        ... )
    """

    def __init__(
        self,
        storage: Optional[AuditStorage] = None,
        application_name: Optional[str] = None,
        config: Optional[CascadeConfig] = None,
    ):
        """
        Initialize the recorder.

        Args:
            storage: Storage backend. If None, the configured default is
                created on first use.
            application_name: Name stamped on every event. Defaults to the
                configured application name.
            config: Configuration to read defaults from
        """
        self.storage = storage
        self.config = config or get_config()
        self.application_name = application_name or self.config.application_name

    async def _init_storage(self) -> None:
        """Initialize default storage backend."""
        audit_config = self.config.get_audit_config()
        backend = audit_config["backend"]

        if backend == "file":
            self.storage = await get_audit_storage(
                backend="file", storage_path=audit_config["storage_path"]
            )
        else:
            self.storage = await get_audit_storage(
                backend="sql", connection_string=audit_config["connection_string"]
            )

    async def initialize(self) -> None:
        """Create the configured storage backend now rather than on first use."""
        await self._ensure_storage()

    async def _ensure_storage(self) -> AuditStorage:
        """Ensure storage is initialized."""
        if self.storage is None:
            await self._init_storage()
        assert self.storage is not None  # nosec B101
        return self.storage

    async def record(
        self,
        action: Union[str, AuditAction],
        root_id: str,
        root_kind: str,
        actor_id: str,
        reason: str,
        per_kind_counts: Dict[str, int],
        total_affected: int,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """
        Record one cascade summary.

        Args:
            action: DELETE or RESTORE
            root_id: Entity targeted by the request
            root_kind: Kind of the targeted entity
            actor_id: Acting user
            reason: Reason given by the actor
            per_kind_counts: Descendants transitioned, per kind
            total_affected: All entities transitioned, root included
            details: Additional context
            timestamp: Time of the cascade. Defaults to now.

        Returns:
            ID of the audit event
        """
        storage = await self._ensure_storage()

        audit_event = AuditEvent(
            id=str(uuid.uuid4()),
            timestamp=timestamp or utcnow(),
            action=AuditAction(action),
            root_id=root_id,
            root_kind=root_kind,
            actor_id=actor_id,
            reason=reason,
            per_kind_counts=per_kind_counts,
            total_affected=total_affected,
            application=self.application_name,
            details=details,
        )
        audit_event.checksum = audit_event.calculate_checksum()

        await storage.store(audit_event)
        logger.debug("Recorded audit event %s", audit_event.to_log_format())

        return audit_event.id

    async def list_events(self, query: AuditEventQuery) -> List[AuditEvent]:
        """List audit events matching a query, newest first."""
        storage = await self._ensure_storage()
        return await storage.query(query)

    async def get_event(self, event_id: str) -> Optional[AuditEvent]:
        """Get a single audit event by ID."""
        storage = await self._ensure_storage()
        return await storage.get_by_id(event_id)

    async def get_root_history(
        self, root_id: str, limit: int = 100
    ) -> List[AuditEvent]:
        """
        Delete and restore history of one cascade root.

        Args:
            root_id: Entity targeted by the cascades
            limit: Maximum events to return

        Returns:
            Events for this root, newest first
        """
        return await self.list_events(AuditEventQuery(root_id=root_id, limit=limit))

    async def verify_integrity(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Verify checksums of stored events in an optional time range."""
        storage = await self._ensure_storage()
        results = await storage.verify_integrity(start_date, end_date)

        if results["invalid"]:
            logger.warning(
                "Audit integrity check found %d invalid events", results["invalid"]
            )

        return results
