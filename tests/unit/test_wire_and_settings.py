import asyncio

import pytest

from careerlink.client.mutation_backend import HttpMutationBackend
from careerlink.client.notification_source import HttpNotificationSource
from careerlink.core.settings import Settings, sqlite_path_from_database_url
from careerlink.core.state import Notification, NotificationPayload, Watermark
from careerlink.services.notification_service import describe


def test_notification_wire_round_trip() -> None:
    n = Notification(
        id="ntf_20260301100000000001_abc123",
        recipient_id="alice",
        type="application_offered",
        payload=NotificationPayload(
            sender_name="Acme Corp",
            job_title="Data Engineer",
            message="Congratulations! You received an offer for Data Engineer",
        ),
        created_at="2026-03-01T10:00:00.000001Z",
    )

    wire = n.to_wire()

    assert wire == {
        "id": "ntf_20260301100000000001_abc123",
        "recipientId": "alice",
        "type": "application_offered",
        "payload": {
            "senderName": "Acme Corp",
            "jobTitle": "Data Engineer",
            "message": "Congratulations! You received an offer for Data Engineer",
        },
        "isRead": False,
        "createdAt": "2026-03-01T10:00:00.000001Z",
    }
    assert Notification.model_validate(wire) == n
    assert Watermark.of(n) == Watermark(created_at=n.created_at, id=n.id)


def test_describe_uses_sender_for_social_types() -> None:
    social = Notification(
        id="n1", recipient_id="bob", type="share", payload=NotificationPayload(), created_at="2026-03-01T10:00:00.000001Z"
    )
    status = Notification(
        id="n2",
        recipient_id="bob",
        type="application_rejected",
        payload=NotificationPayload(message="Your application for Analyst was not selected"),
        created_at="2026-03-01T10:00:00.000002Z",
    )

    assert describe(social) == "Someone shared your post"
    assert describe(status) == "Your application for Analyst was not selected"


def test_settings_defaults_and_env(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFICATION_PAGE_SIZE", "25")
    s = Settings()

    assert s.NOTIFICATION_PAGE_SIZE == 25
    assert s.SNOOZE_DAYS == 30
    assert sqlite_path_from_database_url("sqlite:///outputs/careerlink.db") == "outputs/careerlink.db"


def test_store_timestamps_strictly_increase(world) -> None:
    stamps = [world.store.now() for _ in range(200)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_http_clients_require_api_base_url() -> None:
    with pytest.raises(ValueError):
        HttpNotificationSource.from_settings(Settings(API_BASE_URL=None), actor_id="alice")

    s = Settings(API_BASE_URL="http://api.local", MAX_HTTP_SECONDS=3.0)
    source = HttpNotificationSource.from_settings(s, actor_id="alice")
    backend = HttpMutationBackend.from_settings(s, actor_id="alice")

    assert source._client.base_url.host == "api.local"
    assert source._client.timeout.read == 3.0
    assert backend.user_id == "alice"
    assert backend._headers == {"X-Actor-Id": "alice"}
    asyncio.run(source._client.aclose())
    asyncio.run(backend._client.aclose())
