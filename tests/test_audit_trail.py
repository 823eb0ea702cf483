"""
Tests for the cascade audit trail.

Tests cover event models, both storage backends, the storage factory and
the recorder.
"""

import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from clinic_cascade.audit_trail import (
    AuditAction,
    AuditEvent,
    AuditEventQuery,
    AuditRecorder,
    AuditStorage,
    FileAuditStorage,
    SQLAuditStorage,
    get_audit_storage,
)
from clinic_cascade.audit_trail.storage import AuditEventDB


def make_event(**overrides):
    """Build an audit event with sensible defaults."""
    data = {
        "id": "evt-1",
        "timestamp": datetime(2026, 10, 15, 9, 30),
        "action": AuditAction.DELETE,
        "root_id": "org-1",
        "root_kind": "organization",
        "actor_id": "admin-1",
        "reason": "Contract ended",
        "per_kind_counts": {"branches": 2, "patients": 5},
        "total_affected": 8,
        "application": "Clinic Admin Tests",
    }
    data.update(overrides)
    return AuditEvent(**data)


class TestAuditModels:
    """Test audit event and query models."""

    def test_checksum_detects_tampering(self):
        """Changing a recorded field invalidates the checksum."""
        event = make_event()
        checksum = event.calculate_checksum()

        assert event.verify_checksum(checksum)
        assert len(event.calculate_checksum("sha512")) == 128

        tampered = event.model_copy(update={"total_affected": 1})
        assert not tampered.verify_checksum(checksum)

    def test_checksum_covers_details_and_application(self):
        """Retained deletion history and the source application are sealed."""
        event = make_event(
            action=AuditAction.RESTORE,
            details={"previous_deletion": {"delete_reason": "Contract ended"}},
        )
        checksum = event.calculate_checksum()

        edited = event.model_copy(
            update={"details": {"previous_deletion": {"delete_reason": "Typo"}}}
        )
        relabelled = event.model_copy(update={"application": "Other App"})

        assert not edited.verify_checksum(checksum)
        assert not relabelled.verify_checksum(checksum)

    @pytest.mark.asyncio
    async def test_edited_details_fail_integrity_check(self, audit_storage):
        """A stored restore whose history is rewritten is reported invalid."""
        event = make_event(
            id="restore-1",
            action=AuditAction.RESTORE,
            details={"previous_deletion": {"delete_reason": "Contract ended"}},
        )
        event.checksum = event.calculate_checksum()
        await audit_storage.store(event)

        with audit_storage.engine.begin() as conn:
            conn.execute(
                AuditEventDB.__table__.update()
                .where(AuditEventDB.id == "restore-1")
                .values(details={"previous_deletion": {"delete_reason": "Typo"}})
            )

        results = await audit_storage.verify_integrity()

        assert results["invalid"] == 1
        assert results["invalid_events"][0]["id"] == "restore-1"

    def test_unsupported_checksum_algorithm(self):
        """Only sha256 and sha512 are supported."""
        with pytest.raises(ValueError):
            make_event().calculate_checksum("md5")

    def test_blank_actor_rejected(self):
        """Events always name an actor."""
        with pytest.raises(PydanticValidationError):
            make_event(actor_id="")

    def test_log_format(self):
        """The log line carries the key fields."""
        line = make_event().to_log_format()

        assert "ACTOR=admin-1" in line
        assert "ACTION=DELETE" in line
        assert "ROOT=organization:org-1" in line
        assert "AFFECTED=8" in line

    def test_query_date_range_validation(self):
        """End must not precede start."""
        start = datetime(2026, 10, 15)

        with pytest.raises(PydanticValidationError):
            AuditEventQuery(start_date=start, end_date=start - timedelta(days=1))

        query = AuditEventQuery(start_date=start, end_date=start + timedelta(days=1))
        assert query.limit == 100

    def test_query_limit_bounds(self):
        """Limits stay within 1..1000."""
        with pytest.raises(PydanticValidationError):
            AuditEventQuery(limit=0)
        with pytest.raises(PydanticValidationError):
            AuditEventQuery(limit=1001)

    def test_query_matches(self):
        """In-memory matching applies every filter."""
        event = make_event()

        assert AuditEventQuery(root_id="org-1").matches(event)
        assert not AuditEventQuery(root_id="org-2").matches(event)
        assert not AuditEventQuery(actions=[AuditAction.RESTORE]).matches(event)
        assert not AuditEventQuery(
            start_date=event.timestamp + timedelta(seconds=1)
        ).matches(event)


class TestSQLAuditStorage:
    """Test the SQL backend."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, audit_storage):
        """Stored events come back intact with a checksum."""
        await audit_storage.store(make_event())

        event = await audit_storage.get_by_id("evt-1")

        assert event is not None
        assert event.per_kind_counts == {"branches": 2, "patients": 5}
        assert event.verify_checksum(event.checksum)
        assert await audit_storage.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_query_newest_first_with_filters(self, audit_storage):
        """Queries filter by root, action and range and order newest first."""
        base = datetime(2026, 10, 15, 9, 0)
        await audit_storage.store(make_event(id="a", timestamp=base))
        await audit_storage.store(
            make_event(id="b", timestamp=base + timedelta(hours=1), action="RESTORE")
        )
        await audit_storage.store(
            make_event(id="c", timestamp=base + timedelta(hours=2), root_id="org-2")
        )

        everything = await audit_storage.query(AuditEventQuery())
        assert [e.id for e in everything] == ["c", "b", "a"]

        org_one = await audit_storage.query(AuditEventQuery(root_id="org-1"))
        assert [e.id for e in org_one] == ["b", "a"]

        deletes = await audit_storage.query(
            AuditEventQuery(actions=[AuditAction.DELETE])
        )
        assert [e.id for e in deletes] == ["c", "a"]

        windowed = await audit_storage.query(
            AuditEventQuery(
                start_date=base + timedelta(minutes=30),
                end_date=base + timedelta(minutes=90),
            )
        )
        assert [e.id for e in windowed] == ["b"]

        paged = await audit_storage.query(AuditEventQuery(limit=1, offset=1))
        assert [e.id for e in paged] == ["b"]

    @pytest.mark.asyncio
    async def test_events_are_append_only(self, audit_storage):
        """Stored rows cannot be updated or deleted."""
        await audit_storage.store(make_event())

        session = audit_storage.SessionLocal()
        try:
            row = session.get(AuditEventDB, "evt-1")
            row.reason = "Rewritten history"
            with pytest.raises(RuntimeError):
                session.flush()
            session.rollback()

            session.delete(session.get(AuditEventDB, "evt-1"))
            with pytest.raises(RuntimeError):
                session.flush()
        finally:
            session.rollback()
            session.close()

        event = await audit_storage.get_by_id("evt-1")
        assert event.reason == "Contract ended"

    @pytest.mark.asyncio
    async def test_verify_integrity_flags_tampered_rows(self, audit_storage):
        """Rows altered behind the ORM's back fail verification."""
        await audit_storage.store(make_event(id="good"))
        await audit_storage.store(make_event(id="bad"))

        with audit_storage.engine.begin() as conn:
            conn.execute(
                AuditEventDB.__table__.update()
                .where(AuditEventDB.id == "bad")
                .values(total_affected=999)
            )

        results = await audit_storage.verify_integrity()

        assert results["total_checked"] == 2
        assert results["valid"] == 1
        assert results["invalid"] == 1
        assert results["invalid_events"][0]["id"] == "bad"

    @pytest.mark.asyncio
    async def test_uninitialized_storage(self):
        """Using storage before initialize() is an error."""
        storage = SQLAuditStorage("sqlite:///:memory:")

        with pytest.raises(RuntimeError):
            await storage.get_by_id("evt-1")


class TestFileAuditStorage:
    """Test the JSON Lines backend."""

    @pytest.mark.asyncio
    async def test_one_file_per_day(self, tmp_path):
        """Events land in the file for their UTC day."""
        storage = FileAuditStorage(str(tmp_path / "audit"))
        await storage.initialize()

        await storage.store(make_event(id="a", timestamp=datetime(2026, 10, 14, 23)))
        await storage.store(make_event(id="b", timestamp=datetime(2026, 10, 15, 1)))

        files = sorted(p.name for p in (tmp_path / "audit").iterdir())
        assert files == ["audit_20261014.jsonl", "audit_20261015.jsonl"]

        line = (tmp_path / "audit" / "audit_20261015.jsonl").read_text().strip()
        assert json.loads(line)["id"] == "b"

    @pytest.mark.asyncio
    async def test_query_and_integrity(self, tmp_path):
        """Queries and integrity checks read back across files."""
        storage = FileAuditStorage(str(tmp_path))
        await storage.initialize()
        await storage.store(make_event(id="a", timestamp=datetime(2026, 10, 14, 23)))
        await storage.store(
            make_event(id="b", timestamp=datetime(2026, 10, 15, 1), root_id="org-2")
        )

        everything = await storage.query(AuditEventQuery())
        assert [e.id for e in everything] == ["b", "a"]

        org_one = await storage.query(AuditEventQuery(root_id="org-1"))
        assert [e.id for e in org_one] == ["a"]

        found = await storage.get_by_id("a")
        assert found is not None and found.verify_checksum(found.checksum)
        assert await storage.get_by_id("missing") is None

        results = await storage.verify_integrity()
        assert results == {
            "total_checked": 2,
            "valid": 2,
            "invalid": 0,
            "invalid_events": [],
        }


class TestStorageFactory:
    """Test get_audit_storage."""

    @pytest.mark.asyncio
    async def test_instances_are_cached(self, tmp_path):
        """The same arguments return the same instance."""
        first = await get_audit_storage("file", storage_path=str(tmp_path))
        second = await get_audit_storage("file", storage_path=str(tmp_path))

        assert first is second
        assert isinstance(first, FileAuditStorage)

    @pytest.mark.asyncio
    async def test_invalid_backends(self):
        """Unknown backends and missing parameters are rejected."""
        with pytest.raises(ValueError):
            await get_audit_storage("mongodb")
        with pytest.raises(ValueError):
            await get_audit_storage("sql")
        with pytest.raises(ValueError):
            await get_audit_storage("file")


class TestAuditRecorder:
    """Test the recorder on top of storage."""

    @pytest.mark.asyncio
    async def test_record_stamps_checksum_and_application(self, audit_recorder):
        """Recorded events are complete and verifiable."""
        event_id = await audit_recorder.record(
            action="RESTORE",
            root_id="org-1",
            root_kind="organization",
            actor_id="admin-1",
            reason="Contract renewed",
            per_kind_counts={"branches": 1},
            total_affected=2,
            details={"previous_deletion": {"delete_reason": "Contract ended"}},
        )

        event = await audit_recorder.get_event(event_id)

        assert event.action == "RESTORE"
        assert event.application == "Clinic Admin Tests"
        assert event.details["previous_deletion"]["delete_reason"] == "Contract ended"
        assert event.verify_checksum(event.checksum)

        results = await audit_recorder.verify_integrity()
        assert results["valid"] == 1

    @pytest.mark.asyncio
    async def test_storage_from_configuration(self, tmp_path, test_config):
        """Without explicit storage the configured backend is used."""
        config = test_config.model_copy(
            update={
                "audit_storage_backend": "file",
                "audit_file_path": str(tmp_path / "configured"),
            }
        )
        recorder = AuditRecorder(config=config)

        await recorder.initialize()

        assert isinstance(recorder.storage, FileAuditStorage)
        assert (tmp_path / "configured").is_dir()

    @pytest.mark.asyncio
    async def test_storage_errors_propagate(self, test_config):
        """The recorder itself does not swallow failures."""
        storage = AsyncMock(spec=AuditStorage)
        storage.store.side_effect = ConnectionError("audit db down")
        recorder = AuditRecorder(storage=storage, config=test_config)

        with pytest.raises(ConnectionError):
            await recorder.record(
                action=AuditAction.DELETE,
                root_id="org-1",
                root_kind="organization",
                actor_id="admin-1",
                reason="Contract ended",
                per_kind_counts={},
                total_affected=1,
            )
