"""
Data models for the cascade audit trail.

Every committed delete or restore cascade produces exactly one
append-only audit event summarizing the root, actor, reason and the
per-kind counts of entities transitioned.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ..timeutils import utcnow


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    DELETE = "DELETE"
    RESTORE = "RESTORE"


class AuditEvent(BaseModel):
    """
    Immutable record of one cascade.

    Captures who acted, on what, when, why, and how many entities of each
    kind changed state.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Unique identifier for the audit event")
    timestamp: datetime = Field(
        default_factory=utcnow, description="UTC timestamp of the cascade"
    )

    # What
    action: AuditAction = Field(..., description="DELETE or RESTORE")
    root_id: str = Field(..., description="Entity targeted by the request")
    root_kind: str = Field(..., description="Kind of the targeted entity")

    # Who and why
    actor_id: str = Field(..., min_length=1, description="Acting user")
    reason: str = Field(..., min_length=1, description="Reason given by the actor")

    # Impact
    per_kind_counts: Dict[str, int] = Field(
        default_factory=dict, description="Descendants transitioned, per kind"
    )
    total_affected: int = Field(
        0, ge=0, description="All entities transitioned, root included"
    )

    # Where
    application: str = Field(..., description="Application name")

    details: Optional[Dict[str, Any]] = Field(
        None, description="Additional context such as prior deletion metadata"
    )

    checksum: Optional[str] = Field(
        None, description="Checksum of the event for integrity verification"
    )

    def calculate_checksum(self, algorithm: str = "sha256") -> str:
        """
        Calculate checksum for the audit event.

        Args:
            algorithm: Hash algorithm to use

        Returns:
            Hex digest of the checksum
        """
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "root_id": self.root_id,
            "root_kind": self.root_kind,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "per_kind_counts": self.per_kind_counts,
            "total_affected": self.total_affected,
            "application": self.application,
            "details": self.details,
        }

        json_str = json.dumps(data, sort_keys=True, default=str)

        if algorithm == "sha256":
            return hashlib.sha256(json_str.encode()).hexdigest()
        elif algorithm == "sha512":
            return hashlib.sha512(json_str.encode()).hexdigest()
        else:
            raise ValueError(f"Unsupported algorithm: {algorithm}")

    def verify_checksum(
        self, expected_checksum: str, algorithm: str = "sha256"
    ) -> bool:
        """
        Verify the integrity of the audit event.

        Args:
            expected_checksum: Expected checksum value
            algorithm: Hash algorithm used

        Returns:
            True if checksum matches
        """
        return self.calculate_checksum(algorithm) == expected_checksum

    def to_log_format(self) -> str:
        """
        Convert to a standardized log format string.

        Returns:
            Formatted log string
        """
        return " ".join(
            [
                f"[{self.timestamp.isoformat()}]",
                f"ACTOR={self.actor_id}",
                f"ACTION={self.action}",
                f"ROOT={self.root_kind}:{self.root_id}",
                f"AFFECTED={self.total_affected}",
                f"REASON='{self.reason}'",
            ]
        )


class AuditEventQuery(BaseModel):
    """Query parameters for listing audit events."""

    root_id: Optional[str] = Field(None, description="Filter by cascade root")
    actor_id: Optional[str] = Field(None, description="Filter by actor")
    actions: Optional[List[AuditAction]] = Field(
        None, description="Filter by action types"
    )

    start_date: Optional[datetime] = Field(None, description="Start of time range")
    end_date: Optional[datetime] = Field(None, description="End of time range")

    limit: int = Field(100, description="Maximum results to return", gt=0, le=1000)
    offset: int = Field(0, description="Result offset for pagination", ge=0)

    @field_validator("end_date")
    @classmethod
    def validate_date_range(
        cls, v: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        """Ensure end date is after start date."""
        if v and "start_date" in info.data and info.data["start_date"]:
            if v < info.data["start_date"]:
                raise ValueError("End date must be after start date")
        return v

    def matches(self, event: AuditEvent) -> bool:
        """Whether an event satisfies every filter of this query."""
        if self.root_id and event.root_id != self.root_id:
            return False
        if self.actor_id and event.actor_id != self.actor_id:
            return False
        if self.actions and event.action not in [
            AuditAction(a).value for a in self.actions
        ]:
            return False
        if self.start_date and event.timestamp < self.start_date:
            return False
        if self.end_date and event.timestamp > self.end_date:
            return False
        return True
