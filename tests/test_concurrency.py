"""
Tests for atomicity and overlapping writers.

A second writer is simulated by committing from another session while
the cascade is about to flush.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from clinic_cascade.soft_delete import (
    CascadeService,
    ConflictError,
    DeletionOrigin,
    Entity,
    EntityStore,
    HierarchyIndex,
    SoftDeleteMixin,
    StaffRole,
    StatsAggregator,
    StorageError,
    init_db,
)


@pytest.fixture
def engine(tmp_path):
    """File-backed engine so that two sessions hold separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'clinic.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_factory(engine):
    """Session factory configured like the production one."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def file_service(file_factory, test_config):
    """Cascade service on the file-backed store, without auditing."""
    config = test_config.model_copy(update={"audit_enabled": False})
    return CascadeService(
        file_factory, stats=StatsAggregator(file_factory), config=config
    )


def _two_orgs(store):
    orgs = []
    for name in ("Sunrise Clinics", "Harbour Health"):
        org = store.create_organization(name)
        branch = store.create_branch(org.id, f"{name} main")
        doctor = store.create_staff_member(branch.id, "Dr. Rao", StaffRole.DOCTOR)
        patient = store.create_patient(branch.id, "Patient")
        orgs.append((org, branch, doctor, patient))
    return orgs


def _commit_elsewhere(engine, entity_id, **changes):
    """Commit a change from an unrelated session, bumping the row version."""
    other = sessionmaker(bind=engine)()
    try:
        entity = other.get(Entity, entity_id)
        for key, value in changes.items():
            setattr(entity, key, value)
        other.commit()
    finally:
        other.close()


def _complete_elsewhere(fn, *args):
    """Run a competing operation to completion on another thread."""
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(fn, *args).result()


@pytest.mark.integration
class TestOverlappingWriters:
    """Test conflict detection through row versions."""

    @pytest.mark.asyncio
    async def test_overlapping_write_raises_conflict(
        self, engine, file_factory, file_service
    ):
        """A concurrent change inside the subtree fails the cascade."""
        store = EntityStore(file_factory)
        (org, branch, doctor, patient), _ = _two_orgs(store)

        def concurrent_writer(session, flush_context, instances):
            _commit_elsewhere(engine, patient.id, name="Renamed patient")

        event.listen(file_factory, "before_flush", concurrent_writer, once=True)

        with pytest.raises(ConflictError) as exc:
            await file_service.delete(org.id, "admin-1", "Contract ended")

        assert exc.value.entity_id == org.id
        assert "re-plan and retry" in str(exc.value)
        for entity_id in (org.id, branch.id, doctor.id, patient.id):
            assert store.get(entity_id).is_deleted is False

        # A retry with a fresh traversal succeeds
        result = await file_service.delete(org.id, "admin-1", "Contract ended")
        assert result.newly_deleted_count == 4

    @pytest.mark.asyncio
    async def test_disjoint_subtrees_do_not_conflict(
        self, engine, file_factory, file_service
    ):
        """A change in another organization does not disturb the cascade."""
        store = EntityStore(file_factory)
        (org, _, _, _), (other_org, _, _, other_patient) = _two_orgs(store)

        def concurrent_writer(session, flush_context, instances):
            _commit_elsewhere(engine, other_patient.id, name="Renamed patient")

        event.listen(file_factory, "before_flush", concurrent_writer, once=True)

        result = await file_service.delete(org.id, "admin-1", "Contract ended")

        assert result.newly_deleted_count == 4
        assert store.get(other_org.id).is_deleted is False
        assert store.get(other_patient.id).name == "Renamed patient"


@pytest.mark.integration
class TestReadDependencies:
    """Test writers whose checks depend on rows they do not change."""

    async def _org_with_closed_branch(self, store, file_service):
        org = store.create_organization("Sunrise Clinics")
        open_branch = store.create_branch(org.id, "Main Street")
        store.create_patient(open_branch.id, "Patient A")
        closed_branch = store.create_branch(org.id, "Harbour Road")
        store.create_patient(closed_branch.id, "Patient B")
        await file_service.delete(closed_branch.id, "admin-1", "Branch closed")
        return org, open_branch, closed_branch

    def _live_under_deleted_parent(self, file_factory):
        with file_factory() as session:
            return [
                entity.id
                for entity in session.query(Entity).all()
                if not entity.is_deleted
                and entity.parent_id is not None
                and session.get(Entity, entity.parent_id).is_deleted
            ]

    @pytest.mark.asyncio
    async def test_restore_committed_during_organization_delete(
        self, file_factory, file_service
    ):
        """A branch restored while its organization is deleted fails the delete."""
        store = EntityStore(file_factory)
        org, _, closed_branch = await self._org_with_closed_branch(
            store, file_service
        )

        def competing_restore(session, flush_context, instances):
            _complete_elsewhere(
                asyncio.run,
                file_service.restore(closed_branch.id, "admin-2", "Reopened"),
            )

        event.listen(file_factory, "before_flush", competing_restore, once=True)

        with pytest.raises(ConflictError):
            await file_service.delete(org.id, "admin-1", "Contract ended")

        assert store.get(org.id).is_deleted is False
        assert store.get(closed_branch.id).is_deleted is False
        assert self._live_under_deleted_parent(file_factory) == []

    @pytest.mark.asyncio
    async def test_organization_delete_committed_during_restore(
        self, file_factory, file_service
    ):
        """A delete of the parent committed first fails the restore."""
        store = EntityStore(file_factory)
        org, _, closed_branch = await self._org_with_closed_branch(
            store, file_service
        )

        def competing_delete(session, flush_context, instances):
            _complete_elsewhere(
                asyncio.run,
                file_service.delete(org.id, "admin-2", "Contract ended"),
            )

        event.listen(file_factory, "before_flush", competing_delete, once=True)

        with pytest.raises(ConflictError):
            await file_service.restore(closed_branch.id, "admin-1", "Reopened")

        assert store.get(org.id).is_deleted is True
        closed = store.get(closed_branch.id)
        assert closed.is_deleted is True
        assert closed.deletion_origin == DeletionOrigin.DIRECT
        assert self._live_under_deleted_parent(file_factory) == []

    def test_branch_delete_committed_during_provisioning(
        self, file_factory, file_service
    ):
        """A patient cannot be added to a branch deleted in the meantime."""
        store = EntityStore(file_factory)
        org = store.create_organization("Sunrise Clinics")
        branch = store.create_branch(org.id, "Main Street")
        store.create_patient(branch.id, "Patient A")

        def competing_delete(session, flush_context, instances):
            _complete_elsewhere(
                asyncio.run,
                file_service.delete(branch.id, "admin-2", "Branch closed"),
            )

        event.listen(file_factory, "before_flush", competing_delete, once=True)

        with pytest.raises(ConflictError) as exc:
            store.create_patient(branch.id, "Patient B")

        assert exc.value.entity_id == branch.id
        with file_factory() as session:
            children = HierarchyIndex(session).children(branch.id)
            assert len(children) == 1
            assert all(child.is_deleted for child in children)

    @pytest.mark.asyncio
    async def test_provisioning_committed_during_branch_delete(
        self, file_factory, file_service
    ):
        """A patient added mid-delete fails the delete; a retry includes it."""
        store = EntityStore(file_factory)
        org = store.create_organization("Sunrise Clinics")
        branch = store.create_branch(org.id, "Main Street")
        store.create_patient(branch.id, "Patient A")

        def competing_create(session, flush_context, instances):
            _complete_elsewhere(store.create_patient, branch.id, "Patient B")

        event.listen(file_factory, "before_flush", competing_create, once=True)

        with pytest.raises(ConflictError):
            await file_service.delete(branch.id, "admin-1", "Branch closed")

        assert store.get(branch.id).is_deleted is False

        result = await file_service.delete(branch.id, "admin-1", "Branch closed")
        assert result.per_kind_counts.patients == 2
        assert self._live_under_deleted_parent(file_factory) == []


class TestAtomicity:
    """Test that failed cascades leave no partial state."""

    @pytest.mark.asyncio
    async def test_failure_mid_cascade_rolls_back(
        self, service, store, clinic, monkeypatch
    ):
        """An error partway through applies nothing."""
        original = SoftDeleteMixin.mark_deleted
        calls = {"count": 0}

        def flaky_mark_deleted(self, *args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 5:
                raise OperationalError("UPDATE entities", {}, Exception("disk I/O"))
            return original(self, *args, **kwargs)

        monkeypatch.setattr(SoftDeleteMixin, "mark_deleted", flaky_mark_deleted)

        with pytest.raises(StorageError) as exc:
            await service.delete(clinic.org.id, "admin-1", "Contract ended")

        assert str(exc.value).startswith("Storage failure:")
        assert all(not store.get(i).is_deleted for i in clinic.all_ids)

    @pytest.mark.asyncio
    async def test_failed_restore_keeps_everything_deleted(
        self, service, store, clinic, monkeypatch
    ):
        """A storage failure during restore leaves the cascade in place."""
        await service.delete(clinic.org.id, "admin-1", "Contract ended")
        original = SoftDeleteMixin.mark_restored
        calls = {"count": 0}

        def flaky_mark_restored(self):
            calls["count"] += 1
            if calls["count"] == 3:
                raise OperationalError("UPDATE entities", {}, Exception("timeout"))
            return original(self)

        monkeypatch.setattr(SoftDeleteMixin, "mark_restored", flaky_mark_restored)

        with pytest.raises(StorageError):
            await service.restore(clinic.org.id, "admin-1", "Contract renewed")

        assert all(store.get(i).is_deleted for i in clinic.all_ids)
