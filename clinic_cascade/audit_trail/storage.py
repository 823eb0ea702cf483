"""
Storage backends for the cascade audit trail.

Provides an abstract interface plus SQL and JSON Lines implementations.
Both are append-only: events are never updated or removed.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    desc,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .models import AuditAction, AuditEvent, AuditEventQuery

Base = declarative_base()


class AuditEventDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for audit events."""

    __tablename__ = "cascade_audit_events"

    id = Column(String(50), primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)

    action = Column(String(20), nullable=False, index=True)
    root_id = Column(String(36), nullable=False, index=True)
    root_kind = Column(String(20), nullable=False)

    actor_id = Column(String(100), nullable=False, index=True)
    reason = Column(Text, nullable=False)

    per_kind_counts = Column(JSON, nullable=False)
    total_affected = Column(Integer, nullable=False)

    application = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)

    checksum = Column(String(128), nullable=False)

    __table_args__ = (
        Index("idx_cascade_audit_root_timestamp", root_id, timestamp),
    )


def _reject_mutation(mapper: Any, connection: Any, target: Any) -> None:
    raise RuntimeError("Audit events are append-only and cannot be modified")


event.listen(AuditEventDB, "before_update", _reject_mutation)
event.listen(AuditEventDB, "before_delete", _reject_mutation)


class AuditStorage(ABC):
    """Abstract base class for audit storage backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def store(self, audit_event: AuditEvent) -> None:
        """
        Append an audit event.

        Args:
            audit_event: Event to store
        """
        pass

    @abstractmethod
    async def query(self, query: AuditEventQuery) -> List[AuditEvent]:
        """
        Query audit events, newest first.

        Args:
            query: Query parameters

        Returns:
            List of matching events
        """
        pass

    @abstractmethod
    async def get_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """
        Get a specific audit event by ID.

        Args:
            event_id: ID of the event

        Returns:
            Audit event or None if not found
        """
        pass

    @abstractmethod
    async def verify_integrity(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Verify checksums of stored events.

        Args:
            start_date: Optional start date
            end_date: Optional end date

        Returns:
            Integrity verification results
        """
        pass


class SQLAuditStorage(AuditStorage):
    """SQL database storage backend for audit events."""

    def __init__(self, connection_string: str):
        """
        Initialize SQL audit storage.

        Args:
            connection_string: Database connection string
        """
        self.connection_string = connection_string
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]

    async def initialize(self) -> None:
        """Initialize the database."""
        if self.connection_string.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            self.engine = create_engine(self.connection_string, pool_pre_ping=True)
        else:
            self.engine = create_engine(
                self.connection_string,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
            )

        Base.metadata.create_all(bind=self.engine)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )

    def _session(self) -> Any:
        if self.SessionLocal is None:  # nosec B101
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self.SessionLocal()

    def _event_to_db(self, audit_event: AuditEvent) -> AuditEventDB:
        """Convert AuditEvent to database model."""
        if not audit_event.checksum:
            audit_event.checksum = audit_event.calculate_checksum()

        return AuditEventDB(
            id=audit_event.id,
            timestamp=audit_event.timestamp,
            action=audit_event.action,
            root_id=audit_event.root_id,
            root_kind=audit_event.root_kind,
            actor_id=audit_event.actor_id,
            reason=audit_event.reason,
            per_kind_counts=audit_event.per_kind_counts,
            total_affected=audit_event.total_affected,
            application=audit_event.application,
            details=audit_event.details,
            checksum=audit_event.checksum,
        )

    def _db_to_event(self, row: AuditEventDB) -> AuditEvent:
        """Convert database model to AuditEvent."""
        return AuditEvent(
            id=row.id,
            timestamp=row.timestamp,
            action=row.action,
            root_id=row.root_id,
            root_kind=row.root_kind,
            actor_id=row.actor_id,
            reason=row.reason,
            per_kind_counts=row.per_kind_counts or {},
            total_affected=row.total_affected,
            application=row.application,
            details=row.details,
            checksum=row.checksum,
        )

    async def store(self, audit_event: AuditEvent) -> None:
        """Append a single audit event."""
        row = self._event_to_db(audit_event)

        with self._session() as session:
            session.add(row)
            session.commit()

    async def query(self, query: AuditEventQuery) -> List[AuditEvent]:
        """Query audit events with filters."""
        with self._session() as session:
            q = session.query(AuditEventDB)

            if query.root_id:
                q = q.filter(AuditEventDB.root_id == query.root_id)
            if query.actor_id:
                q = q.filter(AuditEventDB.actor_id == query.actor_id)
            if query.actions:
                actions = [AuditAction(a).value for a in query.actions]
                q = q.filter(AuditEventDB.action.in_(actions))
            if query.start_date:
                q = q.filter(AuditEventDB.timestamp >= query.start_date)
            if query.end_date:
                q = q.filter(AuditEventDB.timestamp <= query.end_date)

            q = q.order_by(desc(AuditEventDB.timestamp), desc(AuditEventDB.id))
            q = q.limit(query.limit).offset(query.offset)

            return [self._db_to_event(r) for r in q.all()]

    async def get_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """Get a specific audit event."""
        with self._session() as session:
            row = session.get(AuditEventDB, event_id)
            if row:
                return self._db_to_event(row)
            return None

    async def verify_integrity(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Verify integrity of audit events."""
        results: Dict[str, Any] = {
            "total_checked": 0,
            "valid": 0,
            "invalid": 0,
            "invalid_events": [],
        }

        with self._session() as session:
            q = session.query(AuditEventDB)

            if start_date:
                q = q.filter(AuditEventDB.timestamp >= start_date)
            if end_date:
                q = q.filter(AuditEventDB.timestamp <= end_date)

            for row in q.all():
                results["total_checked"] += 1
                audit_event = self._db_to_event(row)

                if row.checksum and audit_event.verify_checksum(row.checksum):
                    results["valid"] += 1
                else:
                    results["invalid"] += 1
                    results["invalid_events"].append(
                        {
                            "id": audit_event.id,
                            "timestamp": audit_event.timestamp.isoformat(),
                            "stored_checksum": row.checksum,
                            "calculated_checksum": audit_event.calculate_checksum(),
                        }
                    )

        return results


class FileAuditStorage(AuditStorage):
    """JSON Lines storage backend, one file per UTC day."""

    def __init__(self, storage_path: str):
        """
        Initialize file-based audit storage.

        Args:
            storage_path: Directory path for storing audit files
        """
        self.storage_path = Path(storage_path)
        self.file_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the file storage."""
        self.storage_path.mkdir(parents=True, exist_ok=True)

    def _file_for(self, timestamp: datetime) -> Path:
        return self.storage_path / f"audit_{timestamp.strftime('%Y%m%d')}.jsonl"

    def _iter_events(self) -> List[AuditEvent]:
        events = []
        for file_path in sorted(self.storage_path.glob("audit_*.jsonl")):
            with open(file_path, "r") as f:
                for line in f:
                    if line.strip():
                        events.append(AuditEvent(**json.loads(line)))
        return events

    async def store(self, audit_event: AuditEvent) -> None:
        """Append an audit event to the file for its day."""
        if not audit_event.checksum:
            audit_event.checksum = audit_event.calculate_checksum()

        async with self.file_lock:
            with open(self._file_for(audit_event.timestamp), "a") as f:
                f.write(json.dumps(audit_event.model_dump(mode="json")) + "\n")

    async def query(self, query: AuditEventQuery) -> List[AuditEvent]:
        """Scan stored events and apply the query filters."""
        async with self.file_lock:
            events = [e for e in self._iter_events() if query.matches(e)]

        events.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        return events[query.offset : query.offset + query.limit]

    async def get_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """Get an event by ID."""
        async with self.file_lock:
            for audit_event in self._iter_events():
                if audit_event.id == event_id:
                    return audit_event
        return None

    async def verify_integrity(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Verify integrity of file-based events."""
        results: Dict[str, Any] = {
            "total_checked": 0,
            "valid": 0,
            "invalid": 0,
            "invalid_events": [],
        }

        async with self.file_lock:
            events = self._iter_events()

        for audit_event in events:
            if start_date and audit_event.timestamp < start_date:
                continue
            if end_date and audit_event.timestamp > end_date:
                continue

            results["total_checked"] += 1

            if audit_event.checksum and audit_event.verify_checksum(
                audit_event.checksum
            ):
                results["valid"] += 1
            else:
                results["invalid"] += 1
                results["invalid_events"].append({"id": audit_event.id})

        return results


# Storage factory
_storage_instances: Dict[str, AuditStorage] = {}


async def get_audit_storage(backend: str = "sql", **kwargs: Any) -> AuditStorage:
    """
    Get or create an audit storage instance.

    Args:
        backend: Storage backend type ("sql" or "file")
        **kwargs: Backend-specific parameters

    Returns:
        Audit storage instance
    """
    cache_key = f"{backend}:{json.dumps(kwargs, sort_keys=True)}"

    if cache_key not in _storage_instances:
        if backend == "sql":
            connection_string = kwargs.get("connection_string")
            if not connection_string:
                raise ValueError("connection_string is required for sql backend")
            storage: AuditStorage = SQLAuditStorage(connection_string)
        elif backend == "file":
            storage_path = kwargs.get("storage_path")
            if not storage_path:
                raise ValueError("storage_path is required for file backend")
            storage = FileAuditStorage(storage_path)
        else:
            raise ValueError(f"Unknown storage backend: {backend}")

        await storage.initialize()
        _storage_instances[cache_key] = storage

    return _storage_instances[cache_key]
