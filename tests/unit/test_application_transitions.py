import threading

import pytest

from careerlink.core.errors import DuplicateEntity, IllegalTransition, NotFound, Unauthorized
from careerlink.core.settings import Settings
from careerlink.engine.application_tracker_schema import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, TransitionRequest
from careerlink.services.db_service import SqliteStore


def _notifications_for(world, recipient_id):
    return world.store.list_notifications(recipient_id=recipient_id, limit=100)


def test_admin_shortlist_creates_one_notification(world) -> None:
    app = world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")

    result = world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=world.admin)

    assert result.changed is True
    assert result.previous_status == "applied"
    assert world.store.get_application("app-1").status == "shortlisted"
    rows = _notifications_for(world, app.applicant_id)
    assert len(rows) == 1
    n = rows[0]
    assert n.id == result.notification_id
    assert n.type == "application_shortlisted"
    assert n.recipient_id == "alice"
    assert n.is_read is False
    assert n.payload.job_title == "Data Engineer"
    assert n.payload.sender_name == "Acme Corp"
    assert n.payload.message == "Great! You've been shortlisted for Data Engineer"


def test_withdraw_from_rejected_is_illegal_and_silent(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    world.tracker.transition(application_id="app-1", requested_status="rejected", actor_id=world.admin)
    before = _notifications_for(world, "alice")

    with pytest.raises(IllegalTransition) as exc:
        world.tracker.transition(application_id="app-1", requested_status="withdrawn", actor_id="alice")

    assert exc.value.current == "rejected"
    assert exc.value.requested == "withdrawn"
    assert world.store.get_application("app-1").status == "rejected"
    assert _notifications_for(world, "alice") == before


def test_concurrent_shortlist_commits_once(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-2")
    results, errors = [], []
    barrier = threading.Barrier(2)

    def _worker() -> None:
        barrier.wait()
        try:
            results.append(
                world.tracker.transition(application_id="app-2", requested_status="shortlisted", actor_id=world.admin)
            )
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(r.changed for r in results) == [False, True]
    assert len(_notifications_for(world, "alice")) == 1
    assert world.store.held_lock_count() == 0


def test_retry_of_same_request_is_idempotent(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    first = world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=world.admin)
    for _ in range(3):
        again = world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=world.admin)
        assert again.changed is False
        assert again.status == "shortlisted"
        assert again.notification_id == first.notification_id
    assert len(_notifications_for(world, "alice")) == 1


def test_every_edge_outside_the_graph_is_rejected(world) -> None:
    statuses = list(ALLOWED_TRANSITIONS)
    path = {"applied": [], "shortlisted": ["shortlisted"], "interview": ["shortlisted", "interview"]}
    for current, steps in path.items():
        for target in statuses:
            if target == current or target in ALLOWED_TRANSITIONS[current] or target == "applied":
                continue
            app = world.store.create_application(job_id=world.job.id, applicant_id=f"cand-{current}-{target}")
            for step in steps:
                world.tracker.transition(application_id=app.id, requested_status=step, actor_id=world.admin)
            actor = app.applicant_id if target == "withdrawn" else world.admin
            with pytest.raises(IllegalTransition):
                world.tracker.transition(application_id=app.id, requested_status=target, actor_id=actor)
            assert world.store.get_application(app.id).status == current


def test_terminal_statuses_accept_nothing() -> None:
    assert TERMINAL_STATUSES == frozenset({"offered", "rejected", "withdrawn"})


def test_full_forward_path_notifies_each_step(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    for status in ("shortlisted", "interview", "offered"):
        world.tracker.transition(application_id="app-1", requested_status=status, actor_id=world.admin)

    types = [n.type for n in _notifications_for(world, "alice")]
    assert types == ["application_offered", "application_interview", "application_shortlisted"]


def test_non_admin_cannot_shortlist(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")

    for actor in ("alice", "bob"):
        with pytest.raises(Unauthorized):
            world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=actor)

    assert world.store.get_application("app-1").status == "applied"
    assert _notifications_for(world, "alice") == []


def test_only_applicant_may_withdraw(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")

    with pytest.raises(Unauthorized):
        world.tracker.transition(application_id="app-1", requested_status="withdrawn", actor_id=world.admin)

    result = world.tracker.transition(application_id="app-1", requested_status="withdrawn", actor_id="alice")
    assert result.changed is True
    assert result.notification_id is None
    assert _notifications_for(world, "alice") == []


def test_authority_is_checked_before_legality(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    world.tracker.transition(application_id="app-1", requested_status="rejected", actor_id=world.admin)

    # An outsider learns nothing about the current status.
    with pytest.raises(Unauthorized):
        world.tracker.transition(application_id="app-1", requested_status="interview", actor_id="bob")


def test_expected_status_mismatch_is_illegal(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=world.admin)

    with pytest.raises(IllegalTransition):
        world.tracker.apply(
            TransitionRequest(
                application_id="app-1",
                requested_status="rejected",
                actor_id=world.admin,
                expected_status="applied",
            )
        )
    assert world.store.get_application("app-1").status == "shortlisted"


def test_duplicate_submit_and_missing_application(world) -> None:
    world.tracker.submit(job_id=world.job.id, applicant_id="alice")
    with pytest.raises(DuplicateEntity):
        world.tracker.submit(job_id=world.job.id, applicant_id="alice")
    with pytest.raises(NotFound):
        world.tracker.transition(application_id="nope", requested_status="shortlisted", actor_id=world.admin)


def test_audit_columns_written_when_present(world) -> None:
    assert world.store.capabilities.application_audit_columns is True
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    world.tracker.transition(application_id="app-1", requested_status="shortlisted", actor_id=world.admin)

    app = world.store.get_application("app-1")
    assert app.status_changed_by == world.admin
    assert app.status_changed_at is not None


def test_transition_without_audit_columns(tmp_path) -> None:
    settings = Settings(DATABASE_URL=f"sqlite:///{tmp_path}/legacy.db", SCHEMA_AUDIT_COLUMNS=False)
    store = SqliteStore(settings)
    assert store.probe_capabilities().application_audit_columns is False

    store.create_company(name="Acme", company_id="cmp-1")
    store.add_company_admin(company_id="cmp-1", user_id="admin-1")
    store.create_job(company_id="cmp-1", title="Analyst", job_id="job-1")
    store.create_application(job_id="job-1", applicant_id="alice", application_id="app-1")

    moved = store.compare_and_set_application_status(
        application_id="app-1", expected="applied", new="shortlisted", actor_id="admin-1"
    )
    assert moved is True
    app = store.get_application("app-1")
    assert app.status == "shortlisted"
    assert app.status_changed_at is None


def test_stale_compare_and_set_loses(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")
    assert world.store.compare_and_set_application_status(
        application_id="app-1", expected="applied", new="rejected", actor_id=world.admin
    )
    assert not world.store.compare_and_set_application_status(
        application_id="app-1", expected="applied", new="shortlisted", actor_id=world.admin
    )
    assert world.store.get_application("app-1").status == "rejected"


def test_entity_locks_are_released_after_each_transition(world) -> None:
    for i in range(50):
        app = world.tracker.submit(job_id=world.job.id, applicant_id=f"user-{i}")
        world.tracker.transition(application_id=app.id, requested_status="shortlisted", actor_id=world.admin)

    conn = world.connections.request(actor_id="alice", other_id="bob")
    world.connections.act(connection_id=conn.entity_id, verb="accept", actor_id="bob")

    assert world.store.held_lock_count() == 0


def test_entity_lock_is_released_when_the_body_raises(world) -> None:
    with pytest.raises(RuntimeError):
        with world.store.lock_for("app-x"):
            assert world.store.held_lock_count() == 1
            raise RuntimeError("validation blew up")

    assert world.store.held_lock_count() == 0
    with world.store.lock_for("app-x"):
        pass
