"""
Audit Trail Module - append-only history of cascades.

Records one summary event per committed delete or restore cascade, with
checksums for integrity verification and SQL or file-based storage.
"""

from .models import AuditAction, AuditEvent, AuditEventQuery
from .recorder import AuditRecorder
from .storage import (
    AuditStorage,
    FileAuditStorage,
    SQLAuditStorage,
    get_audit_storage,
)

__all__ = [
    # Recorder
    "AuditRecorder",
    # Models
    "AuditAction",
    "AuditEvent",
    "AuditEventQuery",
    # Storage
    "AuditStorage",
    "SQLAuditStorage",
    "FileAuditStorage",
    "get_audit_storage",
]
