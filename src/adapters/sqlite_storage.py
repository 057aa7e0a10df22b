"""SQLite storage adapter.

Implements the core StoragePort using a single SQLite connection that is
opened once per batch and closed at the end.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional

from adapters import document_codec as codec
from core.config import RetryConfig
from core.errors import TransientStorageError
from core.models import (
    Coordinates,
    Device,
    Interest,
    Message,
    NotificationMatch,
    SourceDocument,
    StoredSource,
)
from core.retry import call_with_retry

LOGGER = logging.getLogger(__name__)

# Maximum rows written per transaction in bulk updates.
BATCH_LIMIT = 500

_JSON_FIELDS = {
    "geo_json",
    "addresses",
    "pins",
    "streets",
    "categories",
    "device_info",
    "device_notifications",
    "message_snapshot",
}
_DATETIME_FIELDS = {
    "created_at",
    "crawled_at",
    "finalized_at",
    "timespan_start",
    "timespan_end",
    "notifications_sent_at",
    "matched_at",
    "notified_at",
    "ingested_at",
}
_BOOL_FIELDS = {"city_wide", "is_relevant", "notifications_sent", "notified", "ingested"}

_COLUMNS = {
    "sources": {
        "document_id",
        "source_type",
        "url",
        "title",
        "locality",
        "crawled_at",
        "payload",
        "ingested",
        "ingested_at",
        "ingest_error_kind",
        "ingest_error",
    },
    "messages": {
        "id",
        "text",
        "source",
        "locality",
        "created_at",
        "dedup_key",
        "markdown_text",
        "geo_json",
        "addresses",
        "pins",
        "streets",
        "categories",
        "responsible_entity",
        "source_url",
        "source_document_id",
        "city_wide",
        "is_relevant",
        "crawled_at",
        "finalized_at",
        "timespan_start",
        "timespan_end",
        "notifications_sent",
        "notifications_sent_at",
    },
    "interests": {"id", "user_id", "lat", "lng", "radius", "locality", "label", "color", "created_at"},
    "devices": {"id", "user_id", "token", "device_info", "created_at"},
    "notification_matches": {
        "id",
        "user_id",
        "interest_id",
        "message_id",
        "distance",
        "matched_at",
        "notified",
        "notified_at",
        "device_notifications",
        "message_snapshot",
    },
}


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _JSON_FIELDS:
        return codec.dumps(value)
    if name in _DATETIME_FIELDS:
        return codec.dump_datetime(value)
    if name in _BOOL_FIELDS:
        return int(bool(value))
    return value


def _chunks(items: list[str], size: int = BATCH_LIMIT) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(
        self,
        db_path: str,
        retry: RetryConfig = RetryConfig(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db_path = db_path
        self._retry = retry
        self._sleep = sleep
        self._conn: Optional[sqlite3.Connection] = None

    # Lifecycle

    def open(self) -> None:
        if self._conn is not None:
            return
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000;")
        self._conn = conn
        self.init_db()
        LOGGER.info("Opened SQLite storage at %s", self._db_path)

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage is not open; call open() first")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            raise TransientStorageError(str(exc)) from exc

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._connection().execute(sql, tuple(params)).fetchall()
        except sqlite3.OperationalError as exc:
            raise TransientStorageError(str(exc)) from exc

    def _bulk(self, sql_template: str, ids: Iterable[str], leading: tuple = ()) -> int:
        """Run ``sql_template`` over ``ids`` in chunks, one transaction per chunk."""

        changed = 0
        for chunk in _chunks(list(ids)):
            sql = sql_template.format(placeholders=", ".join("?" for _ in chunk))

            def write(chunk=chunk, sql=sql) -> int:
                with self._transaction() as conn:
                    return conn.execute(sql, leading + tuple(chunk)).rowcount

            changed += call_with_retry(write, self._retry, "bulk update", sleep=self._sleep)
        return changed

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - sources: crawled source documents waiting for (or done with) ingestion
        - messages: canonical messages keyed by their public slug
        - interests: users' watched zones
        - devices: delivery targets per user
        - notification_matches: one row per (interest, message) pair
        """

        with self._transaction() as conn:
            # sources keeps the full crawl result as JSON plus the columns we
            # filter on.
            # Fields:
            # - document_id: url-derived id (PRIMARY KEY)
            # - payload: the SourceDocument as JSON
            # - ingested / ingested_at: set once a message exists for it
            # - ingest_error_kind / ingest_error: set for validation failures
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sources (
                    document_id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT,
                    locality TEXT,
                    crawled_at TIMESTAMP,
                    payload TEXT NOT NULL,
                    ingested INTEGER NOT NULL DEFAULT 0,
                    ingested_at TIMESTAMP,
                    ingest_error_kind TEXT,
                    ingest_error TEXT
                )
                """
            )
            # messages mirrors the Message dataclass. List and geometry fields
            # are JSON text. dedup_key is indexed but not unique: uniqueness is
            # enforced by the ingestor's lookup, and a unique constraint here
            # would be indistinguishable from a slug collision.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    source TEXT NOT NULL,
                    locality TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    dedup_key TEXT NOT NULL,
                    markdown_text TEXT,
                    geo_json TEXT,
                    addresses TEXT,
                    pins TEXT,
                    streets TEXT,
                    categories TEXT,
                    responsible_entity TEXT,
                    source_url TEXT,
                    source_document_id TEXT,
                    city_wide INTEGER NOT NULL DEFAULT 0,
                    is_relevant INTEGER,
                    crawled_at TIMESTAMP,
                    finalized_at TIMESTAMP,
                    timespan_start TIMESTAMP,
                    timespan_end TIMESTAMP,
                    notifications_sent INTEGER NOT NULL DEFAULT 0,
                    notifications_sent_at TIMESTAMP
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_dedup_key ON messages (dedup_key)")
            # interests are the watched zones; radius is in meters.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS interests (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    lat REAL NOT NULL,
                    lng REAL NOT NULL,
                    radius REAL NOT NULL,
                    locality TEXT NOT NULL,
                    label TEXT,
                    color TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            # devices: token is the delivery address (a Telegram chat id).
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token TEXT NOT NULL,
                    device_info TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            # notification_matches: the UNIQUE pair makes match creation
            # idempotent under INSERT OR IGNORE.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_matches (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    interest_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    distance REAL NOT NULL,
                    matched_at TIMESTAMP NOT NULL,
                    notified INTEGER NOT NULL DEFAULT 0,
                    notified_at TIMESTAMP,
                    device_notifications TEXT,
                    message_snapshot TEXT,
                    UNIQUE (interest_id, message_id)
                )
                """
            )

    # Source documents

    def save_source_if_absent(self, document_id: str, document: SourceDocument) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO sources (
                    document_id, source_type, url, title, locality, crawled_at, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    document.source_type,
                    document.url,
                    document.title,
                    document.locality,
                    codec.dump_datetime(document.crawled_at),
                    codec.dumps(document),
                ),
            )
            return cur.rowcount == 1

    def list_pending_sources(
        self, source_type: Optional[str] = None, limit: Optional[int] = None
    ) -> list[StoredSource]:
        sql = "SELECT document_id, payload FROM sources WHERE ingested = 0 AND ingest_error_kind IS NULL"
        params: list[Any] = []
        if source_type:
            sql += " AND source_type = ?"
            params.append(source_type)
        sql += " ORDER BY crawled_at, document_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_source(row) for row in self._query(sql, params)]

    def list_sources(self) -> list[StoredSource]:
        rows = self._query("SELECT document_id, payload FROM sources ORDER BY crawled_at, document_id")
        return [self._row_to_source(row) for row in rows]

    def flag_source(self, document_id: str, kind: str, reason: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sources SET ingest_error_kind = ?, ingest_error = ? WHERE document_id = ?",
                (kind, reason, document_id),
            )

    def mark_sources_ingested(self, document_ids: Iterable[str]) -> None:
        now = codec.dump_datetime(_utc_now())
        self._bulk(
            "UPDATE sources SET ingested = 1, ingested_at = ? WHERE document_id IN ({placeholders})",
            document_ids,
            leading=(now,),
        )

    def list_ingested_source_ids(self) -> set[str]:
        rows = self._query("SELECT document_id FROM sources WHERE ingested = 1")
        return {row["document_id"] for row in rows}

    def delete_sources(self, document_ids: Iterable[str]) -> int:
        return self._bulk("DELETE FROM sources WHERE document_id IN ({placeholders})", document_ids)

    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> StoredSource:
        return StoredSource(
            document_id=row["document_id"],
            document=codec.load_source_document(row["payload"]),
        )

    # Messages

    def find_message_id_by_dedup_key(self, dedup_key: str) -> Optional[str]:
        rows = self._query("SELECT id FROM messages WHERE dedup_key = ? LIMIT 1", (dedup_key,))
        return rows[0]["id"] if rows else None

    def create_message_if_absent(self, message: Message) -> bool:
        names = sorted(_COLUMNS["messages"])
        values = [_encode(name, getattr(message, name)) for name in names]
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO messages ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                    values,
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def get_message(self, message_id: str) -> Optional[Message]:
        rows = self._query("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._row_to_message(rows[0]) if rows else None

    def update_message(self, message_id: str, fields: dict[str, Any]) -> None:
        self._update("messages", message_id, fields)

    def list_messages_pending_notification(self, limit: Optional[int] = None) -> list[Message]:
        sql = "SELECT * FROM messages WHERE notifications_sent = 0 ORDER BY created_at, id"
        params: list[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_message(row) for row in self._query(sql, params)]

    def mark_messages_notified(self, message_ids: Iterable[str]) -> None:
        now = codec.dump_datetime(_utc_now())
        self._bulk(
            "UPDATE messages SET notifications_sent = 1, notifications_sent_at = ? WHERE id IN ({placeholders})",
            message_ids,
            leading=(now,),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        is_relevant = row["is_relevant"]
        return Message(
            id=row["id"],
            text=row["text"],
            source=row["source"],
            locality=row["locality"],
            created_at=codec.load_datetime(row["created_at"]),
            dedup_key=row["dedup_key"],
            markdown_text=row["markdown_text"],
            geo_json=codec.loads(row["geo_json"]),
            addresses=codec.load_addresses(row["addresses"]),
            pins=codec.load_pins(row["pins"]),
            streets=codec.load_streets(row["streets"]),
            categories=codec.loads(row["categories"]) or [],
            responsible_entity=row["responsible_entity"],
            source_url=row["source_url"],
            source_document_id=row["source_document_id"],
            city_wide=bool(row["city_wide"]),
            is_relevant=None if is_relevant is None else bool(is_relevant),
            crawled_at=codec.load_datetime(row["crawled_at"]),
            finalized_at=codec.load_datetime(row["finalized_at"]),
            timespan_start=codec.load_datetime(row["timespan_start"]),
            timespan_end=codec.load_datetime(row["timespan_end"]),
            notifications_sent=bool(row["notifications_sent"]),
            notifications_sent_at=codec.load_datetime(row["notifications_sent_at"]),
        )

    # Interests, matches and devices

    def add_interest(self, interest: Interest) -> None:
        """Insert or replace an interest (used by seeding and tests)."""

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO interests (
                    id, user_id, lat, lng, radius, locality, label, color, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    interest.id,
                    interest.user_id,
                    interest.coordinates.lat,
                    interest.coordinates.lng,
                    interest.radius,
                    interest.locality,
                    interest.label,
                    interest.color,
                    codec.dump_datetime(interest.created_at),
                ),
            )

    def list_interests(self, locality: str) -> list[Interest]:
        rows = self._query(
            "SELECT * FROM interests WHERE locality = ? ORDER BY created_at, id", (locality,)
        )
        return [
            Interest(
                id=row["id"],
                user_id=row["user_id"],
                coordinates=Coordinates(lat=row["lat"], lng=row["lng"]),
                radius=row["radius"],
                locality=row["locality"],
                created_at=codec.load_datetime(row["created_at"]),
                label=row["label"],
                color=row["color"],
            )
            for row in rows
        ]

    def create_match_if_absent(self, match: NotificationMatch) -> bool:
        names = sorted(_COLUMNS["notification_matches"])
        values = [_encode(name, getattr(match, name)) for name in names]
        with self._transaction() as conn:
            cur = conn.execute(
                f"INSERT OR IGNORE INTO notification_matches ({', '.join(names)}) "
                f"VALUES ({', '.join('?' for _ in names)})",
                values,
            )
            return cur.rowcount == 1

    def get_match(self, interest_id: str, message_id: str) -> Optional[NotificationMatch]:
        rows = self._query(
            "SELECT * FROM notification_matches WHERE interest_id = ? AND message_id = ?",
            (interest_id, message_id),
        )
        if not rows:
            return None
        row = rows[0]
        return NotificationMatch(
            id=row["id"],
            user_id=row["user_id"],
            interest_id=row["interest_id"],
            message_id=row["message_id"],
            distance=row["distance"],
            matched_at=codec.load_datetime(row["matched_at"]),
            notified=bool(row["notified"]),
            notified_at=codec.load_datetime(row["notified_at"]),
            device_notifications=codec.load_device_notifications(row["device_notifications"]),
            message_snapshot=codec.load_snapshot(row["message_snapshot"]),
        )

    def update_match(self, match_id: str, fields: dict[str, Any]) -> None:
        self._update("notification_matches", match_id, fields)

    def add_device(self, device: Device) -> None:
        """Insert or replace a device (used by seeding and tests)."""

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO devices (id, user_id, token, device_info, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    device.id,
                    device.user_id,
                    device.token,
                    codec.dumps(device.device_info),
                    codec.dump_datetime(device.created_at),
                ),
            )

    def list_devices(self, user_id: str) -> list[Device]:
        rows = self._query("SELECT * FROM devices WHERE user_id = ? ORDER BY created_at, id", (user_id,))
        return [
            Device(
                id=row["id"],
                user_id=row["user_id"],
                token=row["token"],
                created_at=codec.load_datetime(row["created_at"]),
                device_info=codec.loads(row["device_info"]),
            )
            for row in rows
        ]

    def delete_device(self, device_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))

    def count(self, collection: str, **filters: Any) -> int:
        columns = _COLUMNS.get(collection)
        if columns is None:
            raise ValueError(f"Unknown collection: {collection}")
        unknown = sorted(set(filters) - columns)
        if unknown:
            raise ValueError(f"Unknown fields for {collection}: {', '.join(unknown)}")

        sql = f"SELECT COUNT(*) AS total FROM {collection}"
        if filters:
            sql += " WHERE " + " AND ".join(f"{name} = ?" for name in filters)
        params = [_encode(name, value) for name, value in filters.items()]
        return int(self._query(sql, params)[0]["total"])

    def _update(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        # The primary key is never rewritten.
        unknown = sorted(set(fields) - (_COLUMNS[table] - {"id"}))
        if unknown:
            raise ValueError(f"Cannot update {table} fields: {', '.join(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_encode(name, value) for name, value in fields.items()]
        with self._transaction() as conn:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params + [record_id])
