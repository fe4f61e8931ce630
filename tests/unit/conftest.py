from types import SimpleNamespace

import pytest

from careerlink.core.identity import StoreIdentityProvider
from careerlink.core.settings import Settings
from careerlink.engine.application_tracker_service import ApplicationTrackerService
from careerlink.engine.connection_service import ConnectionService
from careerlink.engine.interaction_service import InteractionNotifier
from careerlink.services.db_service import SqliteStore
from careerlink.services.notification_service import NotificationService


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(DATABASE_URL=f"sqlite:///{tmp_path}/test.db")


@pytest.fixture
def world(settings) -> SimpleNamespace:
    """Store + engine wired together, with one company, one admin, one job and two candidates."""
    store = SqliteStore(settings)
    store.probe_capabilities()
    identity = StoreIdentityProvider(store)
    notifications = NotificationService(store, settings)

    company = store.create_company(name="Acme Corp", company_id="cmp-1")
    store.add_company_admin(company_id=company.id, user_id="admin-1")
    job = store.create_job(company_id=company.id, title="Data Engineer", job_id="job-1")
    store.upsert_profile(user_id="alice", display_name="Alice", avatar_url="https://cdn.example/alice.png")
    store.upsert_profile(user_id="bob", display_name="Bob")

    return SimpleNamespace(
        settings=settings,
        store=store,
        identity=identity,
        notifications=notifications,
        tracker=ApplicationTrackerService(store, identity, notifications),
        connections=ConnectionService(store, identity, notifications),
        interactions=InteractionNotifier(store, identity, notifications),
        company=company,
        job=job,
        admin="admin-1",
    )
