"""SQLite backed persistence used by the WhatsApp gateway."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import PersistenceError

ACCOUNT_FIELDS = (
    "name",
    "description",
    "status",
    "phone_number",
    "qr_code",
    "error_message",
    "session_dir",
)
WEBHOOK_FIELDS = ("url", "secret", "is_active")
LOG_FIELDS = (
    "account_id",
    "direction",
    "message_id",
    "sender",
    "recipient",
    "message",
    "timestamp",
    "type",
    "chat_id",
    "is_group",
    "group_name",
    "media",
    "status",
    "webhook_id",
    "webhook_url",
    "response_status",
    "error_message",
    "created_at",
)


def utc_now_iso() -> str:
    """Return the current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Persistence:
    """Helper class responsible for reading and writing gateway state."""

    def __init__(self, db_path: str = "/data/whatsapp_service.db", timeout: float = 30.0):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"
        self.timeout = timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                yield db
        except (aiosqlite.Error, ValueError, OverflowError) as exc:
            # sqlite3 rejects unencodable text and out-of-range integers outside its Error hierarchy
            raise PersistenceError(f"store operation failed: {exc}") from exc

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL,
                    phone_number TEXT,
                    qr_code TEXT,
                    error_message TEXT,
                    session_dir TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS webhooks (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    secret TEXT NOT NULL DEFAULT '',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    message_id TEXT,
                    sender TEXT,
                    recipient TEXT,
                    message TEXT,
                    timestamp INTEGER,
                    type TEXT,
                    chat_id TEXT,
                    is_group INTEGER,
                    group_name TEXT,
                    media TEXT,
                    status TEXT NOT NULL DEFAULT 'success',
                    webhook_id TEXT,
                    webhook_url TEXT,
                    response_status INTEGER,
                    error_message TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_webhooks_account ON webhooks(account_id)")
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_logs_account ON message_logs(account_id, created_at)"
            )
            await db.commit()

    @staticmethod
    def _rows(rows: Sequence[Tuple[Any, ...]], description: Sequence[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
        cols = [c[0] for c in description]
        return [dict(zip(cols, row)) for row in rows]

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new account and return the stored row."""
        now = utc_now_iso()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO accounts
                (id, name, description, status, phone_number, qr_code, error_message, session_dir, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    acc["id"],
                    acc["name"],
                    acc.get("description") or "",
                    acc["status"],
                    acc.get("phone_number"),
                    acc.get("qr_code"),
                    acc.get("error_message"),
                    acc.get("session_dir"),
                    acc.get("created_at") or now,
                    now,
                ),
            )
            await db.commit()
        stored = await self.get_account(acc["id"])
        if stored is None:
            raise PersistenceError(f"Account '{acc['id']}' vanished after insert")
        return stored

    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return all known accounts, newest first."""
        async with self._connect() as db:
            async with db.execute("SELECT * FROM accounts ORDER BY created_at DESC, id ASC") as cur:
                rows = await cur.fetchall()
                return self._rows(rows, cur.description)

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single account or ``None`` when it does not exist."""
        async with self._connect() as db:
            async with db.execute("SELECT * FROM accounts WHERE id=?", (account_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._rows([row], cur.description)[0]

    async def update_account(self, account_id: str, **fields: Any) -> bool:
        """Update the given account columns, stamping ``updated_at``."""
        unknown = set(fields) - set(ACCOUNT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name}=?" for name in fields)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE accounts SET {assignments}, updated_at=? WHERE id=?",
                (*fields.values(), utc_now_iso(), account_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_account(self, account_id: str) -> bool:
        """Remove an account and its webhooks; message logs are retained."""
        async with self._connect() as db:
            await db.execute("DELETE FROM webhooks WHERE account_id=?", (account_id,))
            cursor = await db.execute("DELETE FROM accounts WHERE id=?", (account_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Webhooks -----------------------------------------------------------------
    @staticmethod
    def _decode_webhook(data: Dict[str, Any]) -> Dict[str, Any]:
        data["is_active"] = bool(data.get("is_active"))
        data["secret"] = data.get("secret") or ""
        return data

    async def add_webhook(self, hook: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a webhook subscription and return the stored row."""
        now = utc_now_iso()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO webhooks (id, account_id, url, secret, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    hook["id"],
                    hook["account_id"],
                    hook["url"],
                    hook.get("secret") or "",
                    1 if hook.get("is_active", True) else 0,
                    hook.get("created_at") or now,
                    now,
                ),
            )
            await db.commit()
        stored = await self.get_webhook(hook["id"])
        if stored is None:
            raise PersistenceError(f"Webhook '{hook['id']}' vanished after insert")
        return stored

    async def list_webhooks(self, account_id: str) -> List[Dict[str, Any]]:
        """Return the webhooks registered for an account, newest first."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM webhooks WHERE account_id=? ORDER BY created_at DESC, id ASC",
                (account_id,),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(rows, cur.description)
        return [self._decode_webhook(item) for item in result]

    async def get_webhook(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM webhooks WHERE id=?", (webhook_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                data = self._rows([row], cur.description)[0]
        return self._decode_webhook(data)

    async def update_webhook(self, webhook_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        """Update webhook columns and return the refreshed row (``None`` if missing)."""
        unknown = set(fields) - set(WEBHOOK_FIELDS)
        if unknown:
            raise ValueError(f"Unknown webhook fields: {sorted(unknown)}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if fields:
            assignments = ", ".join(f"{name}=?" for name in fields)
            async with self._connect() as db:
                await db.execute(
                    f"UPDATE webhooks SET {assignments}, updated_at=? WHERE id=?",
                    (*fields.values(), utc_now_iso(), webhook_id),
                )
                await db.commit()
        return await self.get_webhook(webhook_id)

    async def delete_webhook(self, webhook_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM webhooks WHERE id=?", (webhook_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Message logs -------------------------------------------------------------
    async def append_log(self, entry: Dict[str, Any]) -> int:
        """Append an immutable log entry and return its row id."""
        values = dict(entry)
        values.setdefault("status", "success")
        values.setdefault("created_at", utc_now_iso())
        if values.get("media") is not None and not isinstance(values["media"], str):
            values["media"] = json.dumps(values["media"])
        if values.get("is_group") is not None:
            values["is_group"] = 1 if values["is_group"] else 0
        columns = [name for name in LOG_FIELDS if name in values]
        placeholders = ", ".join("?" for _ in columns)
        async with self._connect() as db:
            cursor = await db.execute(
                f"INSERT INTO message_logs ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(values[name] for name in columns),
            )
            await db.commit()
            return int(cursor.lastrowid)

    @staticmethod
    def _decode_log(data: Dict[str, Any]) -> Dict[str, Any]:
        media = data.get("media")
        if media is not None:
            try:
                data["media"] = json.loads(media)
            except json.JSONDecodeError:
                data["media"] = {"raw": media}
        if data.get("is_group") is not None:
            data["is_group"] = bool(data["is_group"])
        return data

    async def list_logs(self, account_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the most recent log entries of an account."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM message_logs
                WHERE account_id=?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (account_id, max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(rows, cur.description)
        return [self._decode_log(item) for item in result]

    async def message_stats(self, account_id: Optional[str] = None) -> Dict[str, int]:
        """Aggregate log counters for one account (or all accounts)."""
        query = """
            SELECT
                COUNT(*),
                SUM(CASE WHEN direction='incoming' THEN 1 ELSE 0 END),
                SUM(CASE WHEN direction='outgoing' THEN 1 ELSE 0 END),
                SUM(CASE WHEN direction='webhook' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status='success' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END)
            FROM message_logs
        """
        params: Tuple[Any, ...] = ()
        if account_id is not None:
            query += " WHERE account_id=?"
            params = (account_id,)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        keys = ("total", "incoming", "outgoing", "webhook", "success", "failed")
        values = row or (0,) * len(keys)
        return {key: int(value or 0) for key, value in zip(keys, values)}

    async def purge_logs(self, account_id: str) -> int:
        """Delete every log entry of an account (explicit bulk operation)."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM message_logs WHERE account_id=?", (account_id,))
            await db.commit()
            return cursor.rowcount
