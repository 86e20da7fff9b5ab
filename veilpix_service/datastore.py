"""SQLite-backed datastore handle.

One ``DatastoreHandle`` is built at process start and handed to every
component that reads or mutates usage state. All access goes through a single
connection guarded by a lock; every sqlite failure surfaces as
``DatastoreError``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from .errors import DatastoreError
from .models import UsageLogEntry

logger = logging.getLogger("veilpix-service.datastore")

READ_RETRY_ATTEMPTS = 3
READ_RETRY_MAX_DELAY_SECONDS = 5.0
RETRYABLE_MARKERS = ("locked", "busy", "timeout", "temporary")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT,
    credits_remaining INTEGER NOT NULL DEFAULT 0,
    total_credits_purchased INTEGER NOT NULL DEFAULT 0,
    last_credit_purchase_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS anonymous_usage (
    session_id TEXT NOT NULL,
    ip_address TEXT NOT NULL DEFAULT '',
    request_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (session_id, ip_address)
);

CREATE TABLE IF NOT EXISTS usage_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    session_id TEXT,
    provider TEXT NOT NULL,
    request_type TEXT NOT NULL,
    image_size TEXT,
    processing_time_ms INTEGER,
    success INTEGER NOT NULL,
    stage TEXT,
    error_message TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS temp_assets (
    key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_logs_user_id ON usage_logs(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_logs_created_at ON usage_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_temp_assets_created_at ON temp_assets(created_at);
"""


def now_iso(ts: float | None = None) -> str:
    value = ts if ts is not None else time.time()
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(value))


def is_retryable_error(error: Exception) -> bool:
    if not isinstance(error, sqlite3.OperationalError):
        return False
    text = str(error).lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


def compute_backoff_seconds(attempt_index: int) -> float:
    return min(READ_RETRY_MAX_DELAY_SECONDS, float(2 ** attempt_index))


class DatastoreHandle:
    def __init__(
        self,
        path: Path | str,
        starting_credits: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = str(path)
        self.starting_credits = starting_credits
        self._sleep = sleep
        self._lock = Lock()
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=5.0)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise DatastoreError("open", exc) from exc
        logger.info("Opened datastore at %s", self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, operation: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock, self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise DatastoreError(operation, exc) from exc

    def _fetchone(self, operation: str, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        try:
            with self._lock:
                row = self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise DatastoreError(operation, exc) from exc
        return dict(row) if row is not None else None

    def ping(self) -> bool:
        try:
            self._fetchone("ping", "SELECT 1 AS ok")
        except DatastoreError:
            return False
        return True

    # Anonymous usage

    def get_anonymous_usage(self, session_id: str, ip_address: str | None) -> dict[str, Any] | None:
        last_error: Exception | None = None
        for attempt in range(READ_RETRY_ATTEMPTS):
            try:
                with self._lock:
                    row = self._conn.execute(
                        "SELECT * FROM anonymous_usage WHERE session_id = ? AND ip_address = ?",
                        (session_id, ip_address or ""),
                    ).fetchone()
                return dict(row) if row is not None else None
            except sqlite3.Error as exc:
                last_error = exc
                if not is_retryable_error(exc) or attempt == READ_RETRY_ATTEMPTS - 1:
                    break
                delay = compute_backoff_seconds(attempt + 1)
                logger.warning(
                    "Anonymous usage read failed (attempt %s/%s), retrying in %.1fs: %s",
                    attempt + 1,
                    READ_RETRY_ATTEMPTS,
                    delay,
                    exc,
                )
                self._sleep(delay)
        raise DatastoreError("get_anonymous_usage", last_error)

    def increment_anonymous_usage(self, session_id: str, ip_address: str | None) -> int:
        """Bump the counter and return the new count.

        Upsert and read-back share one transaction; if either fails nothing is
        committed.
        """
        now_ts = time.time()
        key = (session_id, ip_address or "")
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO anonymous_usage (session_id, ip_address, request_count, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                    ON CONFLICT(session_id, ip_address)
                    DO UPDATE SET request_count = request_count + 1, updated_at = excluded.updated_at
                    """,
                    (*key, now_ts, now_ts),
                )
                row = self._conn.execute(
                    "SELECT request_count FROM anonymous_usage WHERE session_id = ? AND ip_address = ?",
                    key,
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatastoreError("increment_anonymous_usage", exc) from exc
        return int(row["request_count"])

    def delete_anonymous_sessions_older_than(self, cutoff_ts: float) -> int:
        cursor = self._execute(
            "delete_anonymous_sessions",
            "DELETE FROM anonymous_usage WHERE updated_at < ?",
            (cutoff_ts,),
        )
        return cursor.rowcount

    # Users and credits

    def get_or_create_user(self, user_id: str, email: str | None = None) -> tuple[dict[str, Any], bool]:
        existing = self._fetchone("get_user", "SELECT * FROM users WHERE user_id = ?", (user_id,))
        if existing is not None:
            return existing, False

        now_ts = time.time()
        cursor = self._execute(
            "create_user",
            """
            INSERT OR IGNORE INTO users (user_id, email, credits_remaining, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, email, self.starting_credits, now_ts, now_ts),
        )
        created = cursor.rowcount == 1
        if created:
            logger.info("Created user %s with %s starting credits", user_id, self.starting_credits)
        user = self._fetchone("get_user", "SELECT * FROM users WHERE user_id = ?", (user_id,))
        if user is None:
            raise DatastoreError("create_user")
        return user, created

    def get_user_credits(self, user_id: str) -> int:
        row = self._fetchone(
            "get_user_credits",
            "SELECT credits_remaining FROM users WHERE user_id = ?",
            (user_id,),
        )
        if row is None:
            return 0
        return int(row["credits_remaining"] or 0)

    def deduct_user_credit(self, user_id: str) -> bool:
        """Take one credit if the balance allows it; False when it does not."""
        cursor = self._execute(
            "deduct_user_credit",
            """
            UPDATE users
            SET credits_remaining = credits_remaining - 1, updated_at = ?
            WHERE user_id = ? AND credits_remaining > 0
            """,
            (time.time(), user_id),
        )
        return cursor.rowcount == 1

    def add_user_credits(self, user_id: str, credits: int) -> bool:
        now_ts = time.time()
        cursor = self._execute(
            "add_user_credits",
            """
            UPDATE users
            SET credits_remaining = credits_remaining + ?,
                total_credits_purchased = total_credits_purchased + ?,
                last_credit_purchase_at = ?,
                updated_at = ?
            WHERE user_id = ?
            """,
            (credits, credits, now_ts, now_ts, user_id),
        )
        return cursor.rowcount == 1

    # Usage log

    def log_usage(self, entry: UsageLogEntry) -> int:
        cursor = self._execute(
            "log_usage",
            """
            INSERT INTO usage_logs (
                user_id, session_id, provider, request_type, image_size,
                processing_time_ms, success, stage, error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.session_id,
                entry.provider_id,
                entry.request_type,
                entry.image_size,
                entry.processing_time_ms,
                1 if entry.success else 0,
                entry.stage,
                entry.error_message,
                time.time(),
            ),
        )
        return int(cursor.lastrowid)

    def count_user_usage(self, user_id: str, since_ts: float) -> int:
        row = self._fetchone(
            "count_user_usage",
            "SELECT COUNT(*) AS total FROM usage_logs WHERE user_id = ? AND success = 1 AND created_at >= ?",
            (user_id, since_ts),
        )
        return int(row["total"]) if row else 0

    def list_usage_logs(self, limit: int = 100) -> list[dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM usage_logs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatastoreError("list_usage_logs", exc) from exc
        return [dict(row) for row in rows]

    # Temporary asset metadata

    def record_temp_asset(self, key: str, owner: str, mime_type: str, created_at: float) -> None:
        self._execute(
            "record_temp_asset",
            "INSERT OR REPLACE INTO temp_assets (key, owner, mime_type, created_at) VALUES (?, ?, ?, ?)",
            (key, owner, mime_type, created_at),
        )

    def forget_temp_asset(self, key: str) -> None:
        self._execute("forget_temp_asset", "DELETE FROM temp_assets WHERE key = ?", (key,))

    def list_temp_assets_older_than(self, cutoff_ts: float) -> list[dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM temp_assets WHERE created_at < ? ORDER BY created_at",
                    (cutoff_ts,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatastoreError("list_temp_assets", exc) from exc
        return [dict(row) for row in rows]
