"""Shared fixtures for cascade tests."""

import asyncio
from types import SimpleNamespace

import pytest

from clinic_cascade.audit_trail import AuditRecorder, SQLAuditStorage
from clinic_cascade.config import CascadeConfig
from clinic_cascade.soft_delete import (
    CascadeService,
    EntityStore,
    StaffRole,
    StatsAggregator,
    create_session_factory,
)


@pytest.fixture
def test_config():
    """Configuration isolated from the environment."""
    return CascadeConfig(
        application_name="Clinic Admin Tests",
        environment="test",
        database_url="sqlite:///:memory:",
        audit_enabled=True,
    )


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory entity store."""
    return create_session_factory("sqlite:///:memory:")


@pytest.fixture
def store(session_factory):
    """Provisioning boundary for building test hierarchies."""
    return EntityStore(session_factory)


@pytest.fixture
def audit_storage():
    """In-memory SQL audit storage."""
    storage = SQLAuditStorage("sqlite:///:memory:")
    asyncio.run(storage.initialize())
    return storage


@pytest.fixture
def audit_recorder(audit_storage, test_config):
    """Audit recorder writing to in-memory storage."""
    return AuditRecorder(storage=audit_storage, config=test_config)


@pytest.fixture
def service(session_factory, audit_recorder, test_config):
    """Cascade service wired to in-memory stores."""
    return CascadeService(
        session_factory,
        audit_recorder=audit_recorder,
        stats=StatsAggregator(session_factory, cache_ttl_seconds=60),
        config=test_config,
    )


@pytest.fixture
def clinic(store):
    """
    One organization with two branches.

    main: 2 doctors, 1 receptionist, 1 branch admin, 3 patients
    annex: 1 doctor, 2 patients
    """
    org = store.create_organization("Sunrise Clinics")

    main = store.create_branch(org.id, "Main Street")
    main_staff = [
        store.create_staff_member(main.id, "Dr. Rao", StaffRole.DOCTOR),
        store.create_staff_member(main.id, "Dr. Okafor", StaffRole.DOCTOR),
        store.create_staff_member(main.id, "Lee", StaffRole.RECEPTIONIST),
        store.create_staff_member(main.id, "Morgan", StaffRole.BRANCH_ADMIN),
    ]
    main_patients = [
        store.create_patient(main.id, f"Main patient {i}") for i in range(3)
    ]

    annex = store.create_branch(org.id, "Harbour Annex")
    annex_staff = [store.create_staff_member(annex.id, "Dr. Silva", StaffRole.DOCTOR)]
    annex_patients = [
        store.create_patient(annex.id, f"Annex patient {i}") for i in range(2)
    ]

    return SimpleNamespace(
        org=org,
        main=main,
        main_children=main_staff + main_patients,
        annex=annex,
        annex_children=annex_staff + annex_patients,
        all_ids=[org.id, main.id, annex.id]
        + [e.id for e in main_staff + main_patients + annex_staff + annex_patients],
    )
