from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence
from uuid import uuid4

from careerlink.core.errors import DuplicateEntity, NotFound
from careerlink.core.settings import Settings, sqlite_path_from_database_url
from careerlink.core.state import (
    ACTIVE_CONNECTION_STATUSES,
    Application,
    Capabilities,
    Company,
    Connection,
    DeferredNotice,
    Job,
    NoticeDraft,
    Notification,
    NotificationPayload,
    OutboxEntry,
    Post,
    Profile,
    QueuedNotice,
    Watermark,
    _iso_utc,
    _utc_now,
)

log = logging.getLogger("store")

InsertListener = Callable[[Notification], None]

_AUDIT_COLUMNS = ("status_changed_at", "status_changed_by")


class _EntityLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SqliteStore:
    """
    Description: Persistence layer for applications, notifications, connections and moderation marks.
    Layer: L1
    Input: engine/coordinator reads and conditional writes
    Output: durable rows + post-commit insert feed for notifications
    """

    def __init__(self, settings: Settings) -> None:
        """
        Description: Open (or create) the sqlite DB named by DATABASE_URL.
        Layer: L0
        Input: Settings
        Output: SqliteStore
        """
        self.s = settings
        self._db_path = sqlite_path_from_database_url(settings.DATABASE_URL)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._locks: Dict[str, _EntityLock] = {}
        self._locks_guard = threading.Lock()
        self._clock_lock = threading.Lock()
        self._delivery_lock = threading.Lock()
        self._last_ts: Optional[datetime] = None
        self._listeners: List[InsertListener] = []
        self._capabilities: Optional[Capabilities] = None

        self._init_schema()

    # --------------------
    # Plumbing
    # --------------------
    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._db_path, timeout=10.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        try:
            yield con
            con.commit()
        except BaseException:
            con.rollback()
            raise
        finally:
            con.close()

    @contextmanager
    def lock_for(self, entity_id: str) -> Iterator[None]:
        """Per-entity lock serializing validate-then-commit for one row.

        The registry entry is dropped once no caller holds or waits on it.
        """
        with self._locks_guard:
            slot = self._locks.get(entity_id)
            if slot is None:
                slot = self._locks[entity_id] = _EntityLock()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._locks_guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[entity_id]

    def held_lock_count(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    def now(self) -> str:
        """Strictly increasing UTC timestamp for this store instance."""
        with self._clock_lock:
            ts = _utc_now()
            if self._last_ts is not None and ts <= self._last_ts:
                ts = self._last_ts + timedelta(microseconds=1)
            self._last_ts = ts
            return _iso_utc(ts)

    @staticmethod
    def new_id(prefix: str) -> str:
        return f"{prefix}_{uuid4().hex[:12]}"

    @staticmethod
    def _notification_id(created_at: str) -> str:
        # Derived from the timestamp so later inserts compare greater.
        digits = "".join(ch for ch in created_at if ch.isdigit())
        return f"ntf_{digits}_{uuid4().hex[:6]}"

    def _init_schema(self) -> None:
        """
        Description: Create tables if they do not exist.
        Layer: L0
        Input: None
        Output: SQLite schema initialized
        """
        with self._connect() as con:
            con.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    avatar_url TEXT
                );
                CREATE TABLE IF NOT EXISTS companies (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS company_admins (
                    company_id TEXT NOT NULL REFERENCES companies(id),
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (company_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    company_id TEXT NOT NULL REFERENCES companies(id),
                    title TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS applications (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL REFERENCES jobs(id),
                    applicant_id TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN
                        ('applied','shortlisted','interview','offered','rejected','withdrawn')),
                    cover_note TEXT,
                    resume_id TEXT,
                    applied_at TEXT NOT NULL,
                    UNIQUE (job_id, applicant_id)
                );
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    recipient_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    event_key TEXT NOT NULL,
                    UNIQUE (event_key, recipient_id)
                );
                CREATE INDEX IF NOT EXISTS ix_notifications_recipient
                    ON notifications (recipient_id, created_at DESC, id DESC);
                CREATE TABLE IF NOT EXISTS notification_outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_key TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    type TEXT,
                    payload_json TEXT,
                    source_json TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (event_key, recipient_id)
                );
                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    addressee_id TEXT NOT NULL,
                    pair_low TEXT NOT NULL,
                    pair_high TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS ux_connections_active_pair
                    ON connections (pair_low, pair_high)
                    WHERE status IN ('pending','accepted','blocked');
                CREATE TABLE IF NOT EXISTS posts (
                    id TEXT PRIMARY KEY,
                    author_id TEXT NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS saved_posts (
                    user_id TEXT NOT NULL,
                    post_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, post_id)
                );
                CREATE TABLE IF NOT EXISTS hidden_posts (
                    user_id TEXT NOT NULL,
                    post_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, post_id)
                );
                CREATE TABLE IF NOT EXISTS blocked_users (
                    user_id TEXT NOT NULL,
                    blocked_user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, blocked_user_id)
                );
                CREATE TABLE IF NOT EXISTS snoozed_users (
                    user_id TEXT NOT NULL,
                    snoozed_user_id TEXT NOT NULL,
                    snoozed_until TEXT NOT NULL,
                    PRIMARY KEY (user_id, snoozed_user_id)
                );
                """
            )
            if self.s.SCHEMA_AUDIT_COLUMNS:
                present = self._columns(con, "applications")
                for col in _AUDIT_COLUMNS:
                    if col not in present:
                        con.execute(f"ALTER TABLE applications ADD COLUMN {col} TEXT")

    @staticmethod
    def _columns(con: sqlite3.Connection, table: str) -> List[str]:
        return [row["name"] for row in con.execute(f"PRAGMA table_info({table})")]

    def probe_capabilities(self) -> Capabilities:
        """
        Description: Detect optional schema features once; writers build payloads from the result.
        Layer: L1
        Input: live schema
        Output: Capabilities
        """
        with self._connect() as con:
            cols = self._columns(con, "applications")
        self._capabilities = Capabilities(application_audit_columns=all(c in cols for c in _AUDIT_COLUMNS))
        log.info("Schema capabilities: %s", self._capabilities.model_dump())
        return self._capabilities

    @property
    def capabilities(self) -> Capabilities:
        if self._capabilities is None:
            return self.probe_capabilities()
        return self._capabilities

    # --------------------
    # Change feed
    # --------------------
    def add_insert_listener(self, listener: InsertListener) -> None:
        self._listeners.append(listener)

    def remove_insert_listener(self, listener: InsertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit_insert(self, notification: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                log.exception("Insert listener failed for notification %s", notification.id)

    # --------------------
    # Surrounding collaborators (profiles, companies, jobs, posts)
    # --------------------
    def upsert_profile(self, *, user_id: str, display_name: str, avatar_url: Optional[str] = None) -> Profile:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO profiles(id, display_name, avatar_url) VALUES(?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    display_name=excluded.display_name,
                    avatar_url=excluded.avatar_url
                """,
                (user_id, display_name, avatar_url),
            )
        return Profile(id=user_id, display_name=display_name, avatar_url=avatar_url)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        return Profile(**dict(row)) if row else None

    def create_company(self, *, name: str, company_id: Optional[str] = None) -> Company:
        company = Company(id=company_id or self.new_id("cmp"), name=name)
        with self._connect() as con:
            con.execute("INSERT INTO companies(id, name) VALUES(?,?)", (company.id, company.name))
        return company

    def add_company_admin(self, *, company_id: str, user_id: str) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR IGNORE INTO company_admins(company_id, user_id) VALUES(?,?)",
                (company_id, user_id),
            )

    def is_company_admin(self, *, company_id: str, user_id: str) -> bool:
        with self._connect() as con:
            row = con.execute(
                "SELECT 1 FROM company_admins WHERE company_id=? AND user_id=?",
                (company_id, user_id),
            ).fetchone()
        return row is not None

    def get_company(self, company_id: str) -> Company:
        with self._connect() as con:
            row = con.execute("SELECT * FROM companies WHERE id=?", (company_id,)).fetchone()
        if not row:
            raise NotFound(f"Company {company_id} not found")
        return Company(**dict(row))

    def create_job(self, *, company_id: str, title: str, job_id: Optional[str] = None) -> Job:
        job = Job(id=job_id or self.new_id("job"), company_id=company_id, title=title)
        with self._connect() as con:
            con.execute(
                "INSERT INTO jobs(id, company_id, title) VALUES(?,?,?)",
                (job.id, job.company_id, job.title),
            )
        return job

    def get_job(self, job_id: str) -> Job:
        with self._connect() as con:
            row = con.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            raise NotFound(f"Job {job_id} not found")
        return Job(**dict(row))

    def create_post(self, *, author_id: str, body: str = "", post_id: Optional[str] = None) -> Post:
        post = Post(id=post_id or self.new_id("post"), author_id=author_id, body=body, created_at=self.now())
        with self._connect() as con:
            con.execute(
                "INSERT INTO posts(id, author_id, body, created_at) VALUES(?,?,?,?)",
                (post.id, post.author_id, post.body, post.created_at),
            )
        return post

    def get_post(self, post_id: str) -> Post:
        with self._connect() as con:
            row = con.execute("SELECT * FROM posts WHERE id=?", (post_id,)).fetchone()
        if not row:
            raise NotFound(f"Post {post_id} not found")
        return Post(**dict(row))

    # --------------------
    # Applications
    # --------------------
    def create_application(
        self,
        *,
        job_id: str,
        applicant_id: str,
        cover_note: Optional[str] = None,
        resume_id: Optional[str] = None,
        application_id: Optional[str] = None,
    ) -> Application:
        """
        Description: Insert an application in 'applied'; one per (job, applicant).
        Layer: L1
        Input: job_id + applicant_id + optional cover note / resume reference
        Output: Application (DuplicateEntity on second submit)
        """
        self.get_job(job_id)
        app = Application(
            id=application_id or self.new_id("app"),
            job_id=job_id,
            applicant_id=applicant_id,
            cover_note=cover_note,
            resume_id=resume_id,
            applied_at=self.now(),
        )
        try:
            with self._connect() as con:
                con.execute(
                    """
                    INSERT INTO applications(id, job_id, applicant_id, status, cover_note, resume_id, applied_at)
                    VALUES(?,?,?,?,?,?,?)
                    """,
                    (app.id, app.job_id, app.applicant_id, app.status, app.cover_note, app.resume_id, app.applied_at),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateEntity(f"Applicant {applicant_id} already applied to job {job_id}") from e
        return app

    def get_application(self, application_id: str) -> Application:
        with self._connect() as con:
            row = con.execute("SELECT * FROM applications WHERE id=?", (application_id,)).fetchone()
        if not row:
            raise NotFound(f"Application {application_id} not found")
        return Application(**dict(row))

    def compare_and_set_application_status(
        self,
        *,
        application_id: str,
        expected: str,
        new: str,
        actor_id: str,
        notice: Optional[QueuedNotice] = None,
    ) -> bool:
        """
        Description: Conditional status write; queues the notice in the same transaction.
        Layer: L1
        Input: expected status (CAS guard) + new status + optional notice
        Output: True when this call moved the row
        """
        fields: Dict[str, Any] = {"status": new}
        if self.capabilities.application_audit_columns:
            fields["status_changed_at"] = self.now()
            fields["status_changed_by"] = actor_id
        assignments = ", ".join(f"{k}=?" for k in fields)

        with self._connect() as con:
            cur = con.execute(
                f"UPDATE applications SET {assignments} WHERE id=? AND status=?",
                (*fields.values(), application_id, expected),
            )
            if cur.rowcount != 1:
                return False
            if notice is not None:
                self._insert_outbox(con, notice)
        return True

    # --------------------
    # Outbox + notifications
    # --------------------
    def _insert_outbox(self, con: sqlite3.Connection, notice: QueuedNotice) -> None:
        ts = self.now()
        if isinstance(notice, DeferredNotice):
            ntype, payload_json, source_json = None, None, json.dumps(notice.source, sort_keys=True)
        else:
            ntype, payload_json, source_json = notice.type, notice.payload.model_dump_json(), None
        con.execute(
            """
            INSERT OR IGNORE INTO notification_outbox(
                event_key, recipient_id, type, payload_json, source_json, next_attempt_at, created_at
            )
            VALUES(?,?,?,?,?,?,?)
            """,
            (notice.event_key, notice.recipient_id, ntype, payload_json, source_json, ts, ts),
        )

    def enqueue_notice(self, notice: QueuedNotice) -> None:
        with self._connect() as con:
            self._insert_outbox(con, notice)

    @staticmethod
    def _outbox_from_row(row: sqlite3.Row) -> OutboxEntry:
        data = dict(row)
        payload_json = data.pop("payload_json")
        source_json = data.pop("source_json")
        data["payload"] = NotificationPayload.model_validate_json(payload_json) if payload_json else None
        data["source"] = json.loads(source_json) if source_json else None
        return OutboxEntry(**data)

    def resolve_outbox_entry(self, *, entry_id: int, notice: NoticeDraft) -> OutboxEntry:
        """
        Description: Fill a deferred outbox row with the notice rebuilt from its source.
        Layer: L1
        Input: outbox id + rebuilt NoticeDraft
        Output: the now deliverable OutboxEntry
        """
        with self._connect() as con:
            con.execute(
                "UPDATE notification_outbox SET type=?, payload_json=?, source_json=NULL WHERE id=?",
                (notice.type, notice.payload.model_dump_json(), entry_id),
            )
            row = con.execute("SELECT * FROM notification_outbox WHERE id=?", (entry_id,)).fetchone()
        if not row:
            raise NotFound(f"Outbox entry {entry_id} not found")
        return self._outbox_from_row(row)

    def drop_outbox_entry(self, entry_id: int) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM notification_outbox WHERE id=?", (entry_id,))

    def get_outbox_entry(self, *, event_key: str, recipient_id: str) -> Optional[OutboxEntry]:
        with self._connect() as con:
            row = con.execute(
                "SELECT * FROM notification_outbox WHERE event_key=? AND recipient_id=?",
                (event_key, recipient_id),
            ).fetchone()
        return self._outbox_from_row(row) if row else None

    def list_outbox(self) -> List[OutboxEntry]:
        with self._connect() as con:
            rows = con.execute("SELECT * FROM notification_outbox ORDER BY id").fetchall()
        return [self._outbox_from_row(r) for r in rows]

    def due_outbox(self, *, now: Optional[str] = None, limit: int = 100) -> List[OutboxEntry]:
        now = now or self.now()
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT * FROM notification_outbox
                WHERE next_attempt_at <= ? AND attempts < ?
                ORDER BY id LIMIT ?
                """,
                (now, self.s.DELIVERY_MAX_ATTEMPTS, limit),
            ).fetchall()
        return [self._outbox_from_row(r) for r in rows]

    def record_outbox_failure(self, *, entry_id: int, error: str, next_attempt_at: str) -> None:
        with self._connect() as con:
            con.execute(
                """
                UPDATE notification_outbox
                SET attempts = attempts + 1, last_error = ?, next_attempt_at = ?
                WHERE id = ?
                """,
                (error[:500], next_attempt_at, entry_id),
            )

    def deliver_outbox_entry(self, entry: OutboxEntry) -> Optional[Notification]:
        """
        Description: Materialize an outbox entry as a notification row.
        Layer: L1
        Input: OutboxEntry
        Output: inserted Notification, or None when the event was already delivered

        Insert and outbox delete share one transaction; listeners run after commit.
        Deliveries are serialized so listeners observe creation order.
        """
        if entry.needs_build:
            raise ValueError(f"Outbox entry {entry.id} has no notice yet; rebuild it first")
        with self._delivery_lock:
            return self._deliver_locked(entry)

    def _deliver_locked(self, entry: OutboxEntry) -> Optional[Notification]:
        created_at = self.now()
        notification = Notification(
            id=self._notification_id(created_at),
            recipient_id=entry.recipient_id,
            type=entry.type,
            payload=entry.payload,
            created_at=created_at,
        )
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO notifications(id, recipient_id, type, payload_json, is_read, created_at, event_key)
                VALUES(?,?,?,?,0,?,?)
                """,
                (
                    notification.id,
                    notification.recipient_id,
                    notification.type,
                    notification.payload.model_dump_json(),
                    notification.created_at,
                    entry.event_key,
                ),
            )
            inserted = cur.rowcount == 1
            con.execute("DELETE FROM notification_outbox WHERE id=?", (entry.id,))

        if not inserted:
            log.info("Event %s already delivered to %s; outbox entry dropped", entry.event_key, entry.recipient_id)
            return None
        self._emit_insert(notification)
        return notification

    @staticmethod
    def _notification_from_row(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            recipient_id=row["recipient_id"],
            type=row["type"],
            payload=NotificationPayload.model_validate_json(row["payload_json"]),
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def get_notification_for_event(self, *, event_key: str, recipient_id: str) -> Optional[Notification]:
        with self._connect() as con:
            row = con.execute(
                "SELECT * FROM notifications WHERE event_key=? AND recipient_id=?",
                (event_key, recipient_id),
            ).fetchone()
        return self._notification_from_row(row) if row else None

    def list_notifications(
        self,
        *,
        recipient_id: str,
        limit: int,
        before: Optional[Watermark] = None,
    ) -> List[Notification]:
        """
        Description: Page of a recipient's notifications, newest first.
        Layer: L1
        Input: recipient_id + limit + optional watermark (strictly below)
        Output: list ordered by (created_at desc, id desc)
        """
        sql = "SELECT * FROM notifications WHERE recipient_id=?"
        params: List[Any] = [recipient_id]
        if before is not None:
            sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
            params += [before.created_at, before.created_at, before.id]
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        with self._connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [self._notification_from_row(r) for r in rows]

    def count_notifications(self, *, recipient_id: str, unread_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM notifications WHERE recipient_id=?"
        if unread_only:
            sql += " AND is_read=0"
        with self._connect() as con:
            return int(con.execute(sql, (recipient_id,)).fetchone()[0])

    def mark_notifications_read(self, *, recipient_id: str, ids: Optional[Sequence[str]] = None) -> int:
        """Flip is_read for the given ids (or every unread row) of one recipient."""
        sql = "UPDATE notifications SET is_read=1 WHERE recipient_id=? AND is_read=0"
        params: List[Any] = [recipient_id]
        if ids is not None:
            if not ids:
                return 0
            sql += f" AND id IN ({','.join('?' for _ in ids)})"
            params += list(ids)
        with self._connect() as con:
            return con.execute(sql, params).rowcount

    # --------------------
    # Connections
    # --------------------
    @staticmethod
    def _connection_from_row(row: sqlite3.Row) -> Connection:
        data = dict(row)
        data.pop("pair_low", None)
        data.pop("pair_high", None)
        return Connection(**data)

    def get_connection(self, connection_id: str) -> Connection:
        with self._connect() as con:
            row = con.execute("SELECT * FROM connections WHERE id=?", (connection_id,)).fetchone()
        if not row:
            raise NotFound(f"Connection {connection_id} not found")
        return self._connection_from_row(row)

    def find_active_connection(self, user_a: str, user_b: str) -> Optional[Connection]:
        low, high = sorted((user_a, user_b))
        placeholders = ",".join("?" for _ in ACTIVE_CONNECTION_STATUSES)
        with self._connect() as con:
            row = con.execute(
                f"SELECT * FROM connections WHERE pair_low=? AND pair_high=? AND status IN ({placeholders})",
                (low, high, *ACTIVE_CONNECTION_STATUSES),
            ).fetchone()
        return self._connection_from_row(row) if row else None

    def create_connection(
        self,
        *,
        requester_id: str,
        addressee_id: str,
        status: str = "pending",
        connection_id: Optional[str] = None,
        notice: Optional[QueuedNotice] = None,
        blocked_by: Optional[str] = None,
    ) -> Connection:
        """
        Description: Open a new edge; the partial unique index keeps one active edge per pair.
        Layer: L1
        Input: participants + initial status + optional notice
        Output: Connection (DuplicateEntity when an active edge exists)
        """
        ts = self.now()
        conn = Connection(
            id=connection_id or self.new_id("conn"),
            requester_id=requester_id,
            addressee_id=addressee_id,
            status=status,  # type: ignore[arg-type]
            created_at=ts,
            updated_at=ts,
        )
        low, high = sorted((requester_id, addressee_id))
        try:
            with self._connect() as con:
                con.execute(
                    """
                    INSERT INTO connections(id, requester_id, addressee_id, pair_low, pair_high, status, created_at, updated_at)
                    VALUES(?,?,?,?,?,?,?,?)
                    """,
                    (conn.id, requester_id, addressee_id, low, high, conn.status, ts, ts),
                )
                if notice is not None:
                    self._insert_outbox(con, notice)
                if blocked_by is not None:
                    self._insert_block(con, blocked_by, conn.other(blocked_by))
        except sqlite3.IntegrityError as e:
            raise DuplicateEntity(f"An active connection already exists between {requester_id} and {addressee_id}") from e
        return conn

    def compare_and_set_connection_status(
        self,
        *,
        connection_id: str,
        expected: str,
        new: str,
        notice: Optional[QueuedNotice] = None,
        blocked_by: Optional[str] = None,
    ) -> bool:
        with self._connect() as con:
            cur = con.execute(
                "UPDATE connections SET status=?, updated_at=? WHERE id=? AND status=?",
                (new, self.now(), connection_id, expected),
            )
            if cur.rowcount != 1:
                return False
            if notice is not None:
                self._insert_outbox(con, notice)
            if blocked_by is not None:
                row = con.execute(
                    "SELECT requester_id, addressee_id FROM connections WHERE id=?", (connection_id,)
                ).fetchone()
                other = row["addressee_id"] if row["requester_id"] == blocked_by else row["requester_id"]
                self._insert_block(con, blocked_by, other)
        return True

    # --------------------
    # Saved / hidden / blocked / snoozed
    # --------------------
    def save_post(self, *, user_id: str, post_id: str) -> None:
        self.get_post(post_id)
        with self._connect() as con:
            con.execute(
                "INSERT OR IGNORE INTO saved_posts(user_id, post_id, created_at) VALUES(?,?,?)",
                (user_id, post_id, self.now()),
            )

    def unsave_post(self, *, user_id: str, post_id: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM saved_posts WHERE user_id=? AND post_id=?", (user_id, post_id))

    def saved_post_ids(self, user_id: str) -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT post_id FROM saved_posts WHERE user_id=? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        return [r["post_id"] for r in rows]

    def hide_post(self, *, user_id: str, post_id: str) -> None:
        self.get_post(post_id)
        with self._connect() as con:
            con.execute(
                "INSERT OR IGNORE INTO hidden_posts(user_id, post_id, created_at) VALUES(?,?,?)",
                (user_id, post_id, self.now()),
            )

    def unhide_post(self, *, user_id: str, post_id: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM hidden_posts WHERE user_id=? AND post_id=?", (user_id, post_id))

    def hidden_post_ids(self, user_id: str) -> List[str]:
        with self._connect() as con:
            rows = con.execute("SELECT post_id FROM hidden_posts WHERE user_id=?", (user_id,)).fetchall()
        return [r["post_id"] for r in rows]

    def _insert_block(self, con: sqlite3.Connection, user_id: str, blocked_user_id: str) -> None:
        con.execute(
            "INSERT OR IGNORE INTO blocked_users(user_id, blocked_user_id, created_at) VALUES(?,?,?)",
            (user_id, blocked_user_id, self.now()),
        )

    def add_block(self, *, user_id: str, blocked_user_id: str) -> None:
        with self._connect() as con:
            self._insert_block(con, user_id, blocked_user_id)

    def blocked_user_ids(self, user_id: str) -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT blocked_user_id FROM blocked_users WHERE user_id=?", (user_id,)
            ).fetchall()
        return [r["blocked_user_id"] for r in rows]

    def snooze_user(self, *, user_id: str, snoozed_user_id: str, until: str) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO snoozed_users(user_id, snoozed_user_id, snoozed_until) VALUES(?,?,?)
                ON CONFLICT(user_id, snoozed_user_id) DO UPDATE SET snoozed_until=excluded.snoozed_until
                """,
                (user_id, snoozed_user_id, until),
            )

    def snoozed_users(self, user_id: str, *, now: Optional[str] = None) -> Dict[str, str]:
        now = now or self.now()
        with self._connect() as con:
            rows = con.execute(
                "SELECT snoozed_user_id, snoozed_until FROM snoozed_users WHERE user_id=? AND snoozed_until > ?",
                (user_id, now),
            ).fetchall()
        return {r["snoozed_user_id"]: r["snoozed_until"] for r in rows}
