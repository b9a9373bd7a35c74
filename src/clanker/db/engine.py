"""SQLite async database — clanker's action log and message history.

Provides:
- Action log (sent replies, reactions, errors, decisions)
- Response triggers (which inbound messages have been answered)
- Message history per channel
- Runtime settings
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from clanker.config import BotSettings
from clanker.models import StoredMessage
from clanker.utils import Clock, iso_from_ms, now_ms

logger = structlog.get_logger()

RESPONSE_TRIGGER_KINDS = frozenset({"sent_reply", "sent_message", "reply_skipped"})

SCHEMA = """
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    channel_id TEXT,
    message_id TEXT,
    user_id TEXT,
    kind TEXT NOT NULL,
    content TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS response_triggers (
    trigger_message_id TEXT PRIMARY KEY,
    action_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (action_id) REFERENCES actions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    author_id TEXT NOT NULL,
    author_name TEXT NOT NULL DEFAULT '',
    is_bot INTEGER NOT NULL DEFAULT 0,
    content TEXT NOT NULL DEFAULT '',
    referenced_message_id TEXT
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_actions_kind_time ON actions(kind, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_channel_time ON messages(channel_id, created_at);
"""

_SETTINGS_KEY = "runtime_settings"


def _collect_trigger_ids(metadata: dict[str, Any] | None) -> list[str]:
    if not metadata:
        return []
    ids: list[str] = []
    single = metadata.get("trigger_message_id")
    if single:
        ids.append(str(single))
    for item in metadata.get("trigger_message_ids") or []:
        if item and str(item) not in ids:
            ids.append(str(item))
    return ids


class Database:
    """Async SQLite database for clanker."""

    def __init__(
        self,
        data_dir: str,
        journal_mode: str = "WAL",
        busy_timeout_ms: int = 5000,
        default_settings: BotSettings | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / "clanker.db"
        self.journal_mode = journal_mode.upper()
        if self.journal_mode not in {"WAL", "DELETE"}:
            raise ValueError(f"Unsupported SQLite journal mode: {journal_mode}")
        self.busy_timeout_ms = int(busy_timeout_ms)
        self.default_settings = default_settings or BotSettings()
        self._settings_cache: BotSettings | None = None
        self._clock = clock
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create the database and run migrations."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row

        # WAL may fail on network filesystems. Fall back to DELETE mode.
        try:
            await self._conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except Exception as exc:
            if self.journal_mode == "WAL":
                logger.warning(
                    "db.wal_unavailable_fallback",
                    path=str(self.db_path),
                    error=str(exc),
                )
                await self._conn.execute("PRAGMA journal_mode=DELETE")
            else:
                raise

        await self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

        logger.info("db.initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("db.closed")

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        """Fetch a single row."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Fetch all rows."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    def _now_iso(self) -> str:
        return iso_from_ms(self._clock())

    # ── Action log ──────────────────────────────────────────────────

    async def log_action(
        self,
        kind: str,
        *,
        channel_id: str | None = None,
        user_id: str | None = None,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> int:
        """Append an action and index any response triggers it carries."""
        created_at = self._now_iso()
        cursor = await self.execute(
            (
                "INSERT INTO actions "
                "(created_at, channel_id, message_id, user_id, kind, content, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                created_at,
                channel_id,
                message_id,
                user_id,
                kind,
                (content or "")[:2000],
                json.dumps(metadata) if metadata else None,
            ),
        )
        action_id = int(cursor.lastrowid or 0)

        if kind in RESPONSE_TRIGGER_KINDS:
            for trigger_id in _collect_trigger_ids(metadata):
                await self.execute(
                    (
                        "INSERT OR IGNORE INTO response_triggers "
                        "(trigger_message_id, action_id, created_at) VALUES (?, ?, ?)"
                    ),
                    (trigger_id, action_id, created_at),
                )
        return action_id

    async def count_actions_since(self, kinds: str | list[str], since_iso: str) -> int:
        """Count actions of the given kind(s) created at or after ``since_iso``."""
        kind_list = [kinds] if isinstance(kinds, str) else list(kinds)
        if not kind_list:
            return 0
        placeholders = ", ".join("?" for _ in kind_list)
        row = await self.fetch_one(
            f"SELECT COUNT(*) AS count FROM actions WHERE kind IN ({placeholders}) AND created_at >= ?",
            (*kind_list, since_iso),
        )
        return int(row["count"]) if row else 0

    async def get_last_action_time(self, kind: str) -> str | None:
        row = await self.fetch_one(
            "SELECT created_at FROM actions WHERE kind = ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (kind,),
        )
        return row["created_at"] if row else None

    async def has_triggered_response(self, message_id: str) -> bool:
        """Whether a reply, message or explicit skip was already logged for ``message_id``."""
        if not message_id:
            return False
        row = await self.fetch_one(
            "SELECT 1 AS hit FROM response_triggers WHERE trigger_message_id = ? LIMIT 1",
            (str(message_id),),
        )
        return row is not None

    # ── Message history ─────────────────────────────────────────────

    async def record_message(
        self,
        *,
        message_id: str,
        channel_id: str,
        author_id: str,
        author_name: str = "",
        is_bot: bool = False,
        content: str = "",
        created_at_ms: float | None = None,
        referenced_message_id: str | None = None,
    ) -> None:
        created_at = iso_from_ms(created_at_ms) if created_at_ms is not None else self._now_iso()
        await self.execute(
            (
                "INSERT OR REPLACE INTO messages "
                "(message_id, created_at, channel_id, author_id, author_name, is_bot, "
                "content, referenced_message_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                str(message_id),
                created_at,
                str(channel_id),
                str(author_id),
                author_name,
                1 if is_bot else 0,
                content,
                referenced_message_id,
            ),
        )

    async def get_recent_messages(self, channel_id: str, limit: int = 35) -> list[StoredMessage]:
        """Stored history for a channel, newest first."""
        rows = await self.fetch_all(
            "SELECT * FROM messages WHERE channel_id = ? ORDER BY created_at DESC LIMIT ?",
            (str(channel_id), int(limit)),
        )
        return [StoredMessage.from_row(row) for row in rows]

    async def get_messages_since(
        self,
        channel_id: str,
        since_ms: float,
        limit: int = 20,
    ) -> list[StoredMessage]:
        """Messages newer than ``since_ms``, oldest first."""
        rows = await self.fetch_all(
            (
                "SELECT * FROM messages WHERE channel_id = ? AND created_at >= ? "
                "ORDER BY created_at DESC LIMIT ?"
            ),
            (str(channel_id), iso_from_ms(since_ms), int(limit)),
        )
        return [StoredMessage.from_row(row) for row in reversed(rows)]

    async def list_active_channels(self, since_ms: float) -> list[str]:
        rows = await self.fetch_all(
            "SELECT DISTINCT channel_id FROM messages WHERE created_at >= ?",
            (iso_from_ms(since_ms),),
        )
        return [str(row["channel_id"]) for row in rows]

    # ── Settings ────────────────────────────────────────────────────

    async def get_settings(self) -> BotSettings:
        """Current settings snapshot. Falls back to the seed when nothing is stored."""
        if self._settings_cache is not None:
            return self._settings_cache
        row = await self.fetch_one("SELECT value FROM settings WHERE key = ?", (_SETTINGS_KEY,))
        settings = self.default_settings
        if row:
            try:
                settings = self.default_settings.merged(json.loads(row["value"]))
            except Exception as exc:
                logger.warning("db.settings_invalid", error=str(exc))
        self._settings_cache = settings
        return settings

    async def update_settings(self, patch: dict[str, Any]) -> BotSettings:
        """Deep-merge ``patch`` into the stored settings and persist the result."""
        current = await self.get_settings()
        updated = current.merged(patch)
        await self.execute(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            (_SETTINGS_KEY, updated.model_dump_json(), self._now_iso()),
        )
        self._settings_cache = updated
        logger.info("db.settings_updated", keys=sorted(patch.keys()))
        return updated

