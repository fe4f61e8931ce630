"""
src/careerlink/api/main.py
==========================
FastAPI backend for CareerLink.
  - Application status transitions (company admins / applicants)
  - Connection requests and interactions on posts
  - Saved / hidden posts, blocked and snoozed users
  - Notification history (paged) + live push over /ws/notifications
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careerlink.api.request_models import (
    ApplicationCreateRequest,
    ConnectionCreateRequest,
    InteractionRequest,
    MarkReadRequest,
    MarkReadResponse,
    ModerationResponse,
    SnoozeRequest,
    StatusChangeRequest,
)
from careerlink.core.errors import CareerLinkError, DuplicateEntity, IllegalTransition, NotFound, Unauthorized
from careerlink.core.identity import StoreIdentityProvider
from careerlink.core.settings import Settings, get_settings
from careerlink.core.state import Watermark, _iso_utc, _utc_now
from careerlink.engine.application_tracker_service import ApplicationTrackerService
from careerlink.engine.connection_service import ConnectionService
from careerlink.engine.interaction_service import InteractionNotifier
from careerlink.services.db_service import SqliteStore
from careerlink.services.delivery_retry_service import DeliveryRetryService
from careerlink.services.fanout_service import FanoutChannel, SubscriptionManager
from careerlink.services.notification_service import NotificationService

# ── Logging ──────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
log = logging.getLogger("api")

NOTIFICATIONS = "notifications"

_STATUS_CODES = (
    (IllegalTransition, 409),
    (Unauthorized, 403),
    (NotFound, 404),
    (DuplicateEntity, 409),
)


class Services:
    """
    Description: Wires store, engine, fan-out and delivery retry for one app instance.
    Layer: L6
    Input: Settings
    Output: shared collaborators for request handlers
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = SqliteStore(settings)
        self.store.probe_capabilities()
        self.identity = StoreIdentityProvider(self.store)
        self.notifications = NotificationService(self.store, settings)
        self.tracker = ApplicationTrackerService(self.store, self.identity, self.notifications)
        self.connections = ConnectionService(self.store, self.identity, self.notifications)
        self.interactions = InteractionNotifier(self.store, self.identity, self.notifications)

        self.channel = FanoutChannel(queue_size=settings.FANOUT_QUEUE_SIZE)
        self.subscriptions = SubscriptionManager()
        self.subscriptions.register(NOTIFICATIONS, self.channel)
        self.store.add_insert_listener(self.channel.publish)

        self.retry = DeliveryRetryService(self.store, self.notifications, settings)

    def close(self) -> None:
        self.retry.stop()
        self.store.remove_insert_listener(self.channel.publish)
        self.channel.close_all()


# ══════════════════════════════════════════════════════════════════════════════
# DEPENDENCIES
# ══════════════════════════════════════════════════════════════════════════════

def get_services(request: Request) -> Services:
    return request.app.state.services


def current_actor(x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id")) -> str:
    """Actor identity comes from the session layer in front of this API."""
    if not x_actor_id:
        raise Unauthorized("X-Actor-Id header is required")
    return x_actor_id


async def _careerlink_error(_request: Request, exc: CareerLinkError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content=exc.to_dict())


router = APIRouter()


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.get("/health")
def health(services: Services = Depends(get_services)):
    return {"status": "ok", "capabilities": services.store.capabilities.model_dump()}


# ── Applications ──

@router.post("/applications")
def submit_application(
    body: ApplicationCreateRequest,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    app_row = services.tracker.submit(
        job_id=body.job_id, applicant_id=actor, cover_note=body.cover_note, resume_id=body.resume_id
    )
    return app_row.model_dump()


@router.get("/applications/{application_id}")
def get_application(
    application_id: str,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    app_row = services.store.get_application(application_id)
    job = services.store.get_job(app_row.job_id)
    if actor != app_row.applicant_id and not services.identity.is_company_admin(
        actor_id=actor, company_id=job.company_id
    ):
        raise Unauthorized("Only the applicant or the hiring company can view this application")
    return app_row.model_dump()


@router.post("/applications/{application_id}/status")
def change_application_status(
    application_id: str,
    body: StatusChangeRequest,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    result = services.tracker.transition(
        application_id=application_id,
        requested_status=body.status,
        actor_id=actor,
        expected_status=body.expected_status,
    )
    return result.model_dump()


# ── Connections ──

@router.post("/connections")
def request_connection(
    body: ConnectionCreateRequest,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.connections.request(actor_id=actor, other_id=body.addressee_id).model_dump()


@router.post("/connections/{connection_id}/{verb}")
def act_on_connection(
    connection_id: str,
    verb: str,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.connections.act(connection_id=connection_id, verb=verb, actor_id=actor).model_dump()


@router.get("/users/{user_id}/connection")
def connection_status(
    user_id: str,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return {"user_id": user_id, "status": services.connections.status_between(actor, user_id)}


# ── Posts & moderation ──

@router.post("/posts/{post_id}/interactions")
def record_interaction(
    post_id: str,
    body: InteractionRequest,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    comment_id = body.comment_id
    if body.kind == "comment" and not comment_id:
        comment_id = services.store.new_id("cmt")
    notification = services.interactions.record(
        post_id=post_id, actor_id=actor, kind=body.kind, comment_id=comment_id
    )
    return {"post_id": post_id, "kind": body.kind, "notification_id": notification.id if notification else None}


@router.put("/posts/{post_id}/save")
def save_post(post_id: str, actor: str = Depends(current_actor), services: Services = Depends(get_services)):
    services.store.get_post(post_id)
    services.store.save_post(user_id=actor, post_id=post_id)
    return {"post_id": post_id, "saved": True, "saved_count": len(services.store.saved_post_ids(actor))}


@router.delete("/posts/{post_id}/save")
def unsave_post(post_id: str, actor: str = Depends(current_actor), services: Services = Depends(get_services)):
    services.store.unsave_post(user_id=actor, post_id=post_id)
    return {"post_id": post_id, "saved": False, "saved_count": len(services.store.saved_post_ids(actor))}


@router.post("/posts/{post_id}/hide")
def hide_post(post_id: str, actor: str = Depends(current_actor), services: Services = Depends(get_services)):
    services.store.get_post(post_id)
    services.store.hide_post(user_id=actor, post_id=post_id)
    return {"post_id": post_id, "hidden": True}


@router.post("/users/{user_id}/block")
def block_user(user_id: str, actor: str = Depends(current_actor), services: Services = Depends(get_services)):
    return services.connections.block(actor_id=actor, other_id=user_id).model_dump()


@router.post("/users/{user_id}/snooze")
def snooze_user(
    user_id: str,
    body: Optional[SnoozeRequest] = None,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    if user_id == actor:
        raise IllegalTransition(current="visible", requested="snoozed", entity="user")
    until = (body.until if body else None) or _iso_utc(
        _utc_now() + timedelta(days=services.settings.SNOOZE_DAYS)
    )
    services.store.snooze_user(user_id=actor, snoozed_user_id=user_id, until=until)
    return {"user_id": user_id, "snoozed_until": until}


@router.get("/me/moderation", response_model=ModerationResponse)
def my_moderation(actor: str = Depends(current_actor), services: Services = Depends(get_services)):
    store = services.store
    return ModerationResponse(
        saved_post_ids=store.saved_post_ids(actor),
        hidden_post_ids=store.hidden_post_ids(actor),
        blocked_user_ids=store.blocked_user_ids(actor),
        snoozed_until=store.snoozed_users(actor),
    )


# ── Notifications ──

@router.get("/notifications")
def list_notifications(
    limit: Optional[int] = Query(default=None, ge=1),
    before_created_at: Optional[str] = None,
    before_id: Optional[str] = None,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    s = services.settings
    limit = limit or s.NOTIFICATION_PAGE_SIZE
    if limit > s.NOTIFICATION_HISTORY_LIMIT:
        raise HTTPException(422, f"limit must be at most {s.NOTIFICATION_HISTORY_LIMIT}")
    if (before_created_at is None) != (before_id is None):
        raise HTTPException(422, "before_created_at and before_id must be given together")
    before = None
    if before_created_at is not None:
        before = Watermark(created_at=before_created_at, id=before_id)
    rows = services.store.list_notifications(recipient_id=actor, limit=limit + 1, before=before)
    return {
        "items": [n.to_wire() for n in rows[:limit]],
        "has_more": len(rows) > limit,
        "unread_count": services.store.count_notifications(recipient_id=actor, unread_only=True),
    }


@router.post("/notifications/read", response_model=MarkReadResponse)
def mark_notifications_read(
    body: Optional[MarkReadRequest] = None,
    actor: str = Depends(current_actor),
    services: Services = Depends(get_services),
):
    ids = body.ids if body else None
    updated = services.store.mark_notifications_read(recipient_id=actor, ids=ids)
    return MarkReadResponse(updated=updated)


@router.websocket("/ws/notifications")
async def notifications_ws(websocket: WebSocket):
    """Push each committed notification of the actor as camelCase JSON."""
    services: Services = websocket.app.state.services
    actor = websocket.headers.get("x-actor-id") or websocket.query_params.get("actor_id")
    if not actor:
        await websocket.close(code=4401)
        return
    stream = services.subscriptions.acquire(NOTIFICATIONS, actor)
    await websocket.accept()

    async def _watch_disconnect() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            services.subscriptions.release(stream)

    watcher = asyncio.create_task(_watch_disconnect())
    log.info("Live notifications opened for %s", actor)
    try:
        async for notification in stream:
            await websocket.send_json(notification.to_wire())
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        services.subscriptions.release(stream)
        log.info("Live notifications closed for %s", actor)


# ══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ══════════════════════════════════════════════════════════════════════════════

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Description: Build the API; services are created in the lifespan.
    Layer: L6
    Input: Settings (defaults to .env)
    Output: FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = Services(settings or get_settings())
        app.state.services = services
        retry_task = asyncio.create_task(services.retry.run_forever())
        log.info("CareerLink API starting up…")
        yield
        log.info("CareerLink API shutting down…")
        services.close()
        await retry_task

    app = FastAPI(
        title="CareerLink API",
        version="1.0.0",
        description="Application tracking, connections and live notifications",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CareerLinkError, _careerlink_error)
    app.include_router(router)
    return app


app = create_app()
