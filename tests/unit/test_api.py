import asyncio

import httpx
from fastapi.testclient import TestClient

from careerlink.api.main import create_app
from careerlink.client.moderation import ClientState
from careerlink.client.mutation_backend import HttpMutationBackend
from careerlink.client.mutation_coordinator import OptimisticMutationCoordinator, SavePost, WithdrawApplication
from careerlink.client.notification_cache import NotificationCache
from careerlink.client.notification_source import HttpNotificationSource
from careerlink.core.settings import Settings
from careerlink.core.state import NoticeDraft, NotificationPayload

ADMIN = {"X-Actor-Id": "admin-1"}
ALICE = {"X-Actor-Id": "alice"}
BOB = {"X-Actor-Id": "bob"}


def _seed(services) -> None:
    store = services.store
    store.create_company(name="Acme Corp", company_id="cmp-1")
    store.add_company_admin(company_id="cmp-1", user_id="admin-1")
    store.create_job(company_id="cmp-1", title="Data Engineer", job_id="job-1")
    store.upsert_profile(user_id="alice", display_name="Alice")
    store.upsert_profile(user_id="bob", display_name="Bob")
    store.create_post(author_id="bob", body="We're hiring", post_id="post-1")


def _client(tmp_path) -> TestClient:
    settings = Settings(DATABASE_URL=f"sqlite:///{tmp_path}/api.db", DELIVERY_POLL_SECONDS=0.05)
    return TestClient(create_app(settings))


def test_application_flow_and_error_mapping(tmp_path) -> None:
    with _client(tmp_path) as client:
        _seed(client.app.state.services)
        assert client.get("/health").json()["status"] == "ok"

        r = client.post("/applications", json={"job_id": "job-1"}, headers=ALICE)
        assert r.status_code == 200
        app_id = r.json()["id"]
        assert r.json()["status"] == "applied"

        dup = client.post("/applications", json={"job_id": "job-1"}, headers=ALICE)
        assert dup.status_code == 409
        assert dup.json()["error"] == "duplicate"

        denied = client.post(f"/applications/{app_id}/status", json={"status": "shortlisted"}, headers=BOB)
        assert denied.status_code == 403
        assert denied.json()["error"] == "unauthorized"

        ok = client.post(f"/applications/{app_id}/status", json={"status": "shortlisted"}, headers=ADMIN)
        assert ok.status_code == 200
        assert ok.json()["changed"] is True

        illegal = client.post(f"/applications/{app_id}/status", json={"status": "offered"}, headers=ADMIN)
        assert illegal.status_code == 409
        assert illegal.json() == {
            "error": "illegal_transition",
            "reason": "Cannot move application from 'shortlisted' to 'offered'",
            "current": "shortlisted",
            "requested": "offered",
        }

        assert client.get("/applications/nope", headers=ALICE).status_code == 404
        assert client.get(f"/applications/{app_id}", headers=BOB).status_code == 403
        assert client.post(f"/applications/{app_id}/status", json={"status": "bogus"}, headers=ADMIN).status_code == 422
        assert client.get("/notifications").status_code == 403


def test_notifications_are_listed_in_wire_schema(tmp_path) -> None:
    with _client(tmp_path) as client:
        _seed(client.app.state.services)
        app_id = client.post("/applications", json={"job_id": "job-1"}, headers=ALICE).json()["id"]
        client.post(f"/applications/{app_id}/status", json={"status": "shortlisted"}, headers=ADMIN)
        client.post(f"/applications/{app_id}/status", json={"status": "interview"}, headers=ADMIN)

        page = client.get("/notifications", params={"limit": 1}, headers=ALICE).json()
        assert page["has_more"] is True
        assert page["unread_count"] == 2
        [item] = page["items"]
        assert set(item) == {"id", "recipientId", "type", "payload", "isRead", "createdAt"}
        assert item["type"] == "application_interview"
        assert item["payload"]["jobTitle"] == "Data Engineer"
        assert item["payload"]["senderName"] == "Acme Corp"

        older = client.get(
            "/notifications",
            params={"limit": 5, "before_created_at": item["createdAt"], "before_id": item["id"]},
            headers=ALICE,
        ).json()
        assert [n["type"] for n in older["items"]] == ["application_shortlisted"]
        assert older["has_more"] is False

        marked = client.post("/notifications/read", json={"ids": [item["id"]]}, headers=ALICE).json()
        assert marked == {"updated": 1}
        assert client.post("/notifications/read", headers=ALICE).json() == {"updated": 1}
        assert client.get("/notifications", headers=ALICE).json()["unread_count"] == 0


def test_connections_interactions_and_moderation(tmp_path) -> None:
    with _client(tmp_path) as client:
        _seed(client.app.state.services)

        conn = client.post("/connections", json={"addressee_id": "bob"}, headers=ALICE).json()
        assert conn["status"] == "pending"
        assert client.get("/users/alice/connection", headers=BOB).json()["status"] == "pending_received"
        assert client.post(f"/connections/{conn['entity_id']}/accept", headers=ALICE).status_code == 403
        assert client.post(f"/connections/{conn['entity_id']}/accept", headers=BOB).json()["status"] == "accepted"

        liked = client.post("/posts/post-1/interactions", json={"kind": "like"}, headers=ALICE).json()
        assert liked["notification_id"] is not None
        commented = client.post("/posts/post-1/interactions", json={"kind": "comment"}, headers=ALICE).json()
        assert commented["notification_id"] != liked["notification_id"]
        types = [n["type"] for n in client.get("/notifications", headers=BOB).json()["items"]]
        assert types == ["comment", "like", "connection_request"]

        assert client.put("/posts/post-1/save", headers=ALICE).json()["saved_count"] == 1
        assert client.post("/posts/post-1/hide", headers=ALICE).status_code == 200
        assert client.put("/posts/missing/save", headers=ALICE).status_code == 404
        snoozed = client.post("/users/bob/snooze", headers=ALICE).json()
        blocked = client.post("/users/bob/block", headers=ALICE).json()
        assert blocked["status"] == "blocked"

        moderation = client.get("/me/moderation", headers=ALICE).json()
        assert moderation["saved_post_ids"] == ["post-1"]
        assert moderation["hidden_post_ids"] == ["post-1"]
        assert moderation["blocked_user_ids"] == ["bob"]
        assert moderation["snoozed_until"] == {"bob": snoozed["snoozed_until"]}

        assert client.delete("/posts/post-1/save", headers=ALICE).json()["saved_count"] == 0


def test_websocket_streams_new_notifications(tmp_path) -> None:
    with _client(tmp_path) as client:
        _seed(client.app.state.services)
        app_id = client.post("/applications", json={"job_id": "job-1"}, headers=ALICE).json()["id"]

        with client.websocket_connect("/ws/notifications", headers=ALICE) as ws:
            client.post(f"/applications/{app_id}/status", json={"status": "shortlisted"}, headers=ADMIN)
            client.post(f"/applications/{app_id}/status", json={"status": "rejected"}, headers=ADMIN)
            first = ws.receive_json()
            second = ws.receive_json()

        assert first["type"] == "application_shortlisted"
        assert first["recipientId"] == "alice"
        assert first["isRead"] is False
        assert second["type"] == "application_rejected"
        assert client.app.state.services.subscriptions.refcount("notifications", "alice") == 0


def test_http_clients_round_trip_through_api(tmp_path) -> None:
    with _client(tmp_path) as client:
        app = client.app
        _seed(app.state.services)
        app_id = client.post("/applications", json={"job_id": "job-1"}, headers=ALICE).json()["id"]
        client.post(f"/applications/{app_id}/status", json={"status": "rejected"}, headers=ADMIN)

        async def _run():
            transport = httpx.ASGITransport(app=app)
            http = httpx.AsyncClient(transport=transport, base_url="http://testserver")
            source = HttpNotificationSource(base_url="http://testserver", actor_id="alice", client=http)
            backend = HttpMutationBackend(base_url="http://testserver", actor_id="alice", client=http)

            cache = NotificationCache("alice", source)
            await cache.load_first_page()
            await cache.mark_all_read()

            state = ClientState(user_id="alice", application_statuses={app_id: "applied"})
            coordinator = OptimisticMutationCoordinator(state, backend)
            withdraw = await coordinator.perform(WithdrawApplication(app_id))
            save = await coordinator.perform(SavePost("post-1"))
            await http.aclose()
            return cache, state, withdraw, save

        cache, state, withdraw, save = asyncio.run(_run())

        assert [n.type for n in cache.items] == ["application_rejected"]
        assert cache.unread_count == 0
        assert withdraw.ok is False
        assert "rejected" in withdraw.error.reason
        assert state.application_statuses[app_id] == "applied"
        assert save.ok is True
        assert state.saved_post_ids == {"post-1"}
        assert app.state.services.store.saved_post_ids("alice") == ["post-1"]


def _seed_likes(store, recipient_id: str, count: int) -> None:
    for i in range(count):
        store.enqueue_notice(
            NoticeDraft(
                event_key=f"post:p{i}:like:bob",
                recipient_id=recipient_id,
                type="like",
                payload=NotificationPayload(sender_name="Bob", post_id=f"p{i}"),
            )
        )
    for entry in store.list_outbox():
        store.deliver_outbox_entry(entry)


def test_notification_paging_rejects_bad_limits_and_half_watermarks(tmp_path) -> None:
    with _client(tmp_path) as client:
        _seed(client.app.state.services)

        assert client.get("/notifications", params={"limit": 50}, headers=ALICE).status_code == 200
        too_big = client.get("/notifications", params={"limit": 51}, headers=ALICE)
        assert too_big.status_code == 422
        assert "at most 50" in too_big.json()["detail"]
        assert client.get("/notifications", params={"before_id": "ntf_1"}, headers=ALICE).status_code == 422
        assert (
            client.get("/notifications", params={"before_created_at": "2026-03-01T10:00:00.000001Z"}, headers=ALICE)
            .status_code
            == 422
        )


def test_http_source_pages_past_the_server_cap(tmp_path) -> None:
    with _client(tmp_path) as client:
        app = client.app
        _seed(app.state.services)
        _seed_likes(app.state.services.store, "alice", 80)

        async def _run():
            http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
            source = HttpNotificationSource(base_url="http://testserver", actor_id="alice", client=http)
            cache = NotificationCache("alice", source)
            first = await cache.load_first_page(60)
            more_after_first = cache.has_more
            second = await cache.load_next_page(60)
            await http.aclose()
            return cache, first, more_after_first, second

        cache, first, more_after_first, second = asyncio.run(_run())

    assert len(first) == 60
    assert more_after_first is True
    assert len(second) == 20
    assert cache.has_more is False
    assert len(cache.items) == 80
    assert len({n.id for n in cache.items}) == 80
    assert [n.sort_key() for n in cache.items] == sorted((n.sort_key() for n in cache.items), reverse=True)
