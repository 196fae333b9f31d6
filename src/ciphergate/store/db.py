"""
SQLite storage for ciphergate.

This module holds every piece of engine state in a single SQLite file:
policies, registrations, content, the access control ledger, notifications
and (for the local runtime) ciphertext rows.

Design Principles:
    - Atomic: every engine invocation runs inside one transaction; an
      exception rolls back all of its writes
    - No physical deletion: policies and registrations are overwritten in
      place, content is soft-deleted
    - Monotonic ACL: grants and disclosures are insert-only

Tables:
    - meta: admin identity, proof key, schema bookkeeping
    - policies: one row per (kind, context_key)
    - registrations: one row per (kind, context_key, principal)
    - contents: sequential content records with soft-delete state
    - acl_grants / acl_public: decrypt grants and public disclosures
    - ciphertexts: local runtime values behind opaque handles
    - events: notifications, append-only
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from ciphergate.errors import StorageConnectionError, StorageReadError, StorageWriteError
from ciphergate.schema import (
    BonusPolicy,
    CipherType,
    Content,
    ContentState,
    EligibilityPolicy,
    Event,
    EventType,
    PolicyKind,
    Registration,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Key/value bookkeeping (admin identity, proof key, schema version)
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Policies: overwritten in place, never deleted
CREATE TABLE IF NOT EXISTS policies (
    kind TEXT NOT NULL,
    context_key TEXT NOT NULL,
    policy_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (kind, context_key)
);

-- Registrations: latest result per principal and context
CREATE TABLE IF NOT EXISTS registrations (
    kind TEXT NOT NULL,
    context_key TEXT NOT NULL,
    principal TEXT NOT NULL,
    result_handle TEXT NOT NULL,
    exists_flag INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (kind, context_key, principal)
);

-- Content: sequential ids, soft delete via state
CREATE TABLE IF NOT EXISTS contents (
    content_id INTEGER PRIMARY KEY AUTOINCREMENT,
    author TEXT NOT NULL,
    is_plain INTEGER NOT NULL,
    plain_mask TEXT,
    enc_mask TEXT,
    state TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Access control ledger: insert-only
CREATE TABLE IF NOT EXISTS acl_grants (
    handle TEXT NOT NULL,
    principal TEXT NOT NULL,
    granted_at TEXT NOT NULL,
    PRIMARY KEY (handle, principal)
);

CREATE TABLE IF NOT EXISTS acl_public (
    handle TEXT PRIMARY KEY,
    disclosed_at TEXT NOT NULL
);

-- Local runtime ciphertexts (values stored as text to hold uint64)
CREATE TABLE IF NOT EXISTS ciphertexts (
    handle TEXT PRIMARY KEY,
    ctype TEXT NOT NULL,
    value TEXT NOT NULL
);

-- Notifications
CREATE TABLE IF NOT EXISTS events (
    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_registrations_principal ON registrations(principal);
CREATE INDEX IF NOT EXISTS idx_acl_grants_principal ON acl_grants(principal);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
"""

_POLICY_MODELS: dict[PolicyKind, type[BonusPolicy] | type[EligibilityPolicy]] = {
    PolicyKind.BONUS: BonusPolicy,
    PolicyKind.ELIGIBILITY: EligibilityPolicy,
}


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class LedgerDB:
    """
    SQLite database for ciphergate state.

    Usage:
        db = LedgerDB("ciphergate.db")
        with db.transaction():
            db.put_policy(PolicyKind.ELIGIBILITY, policy)
            db.append_event(event)
        db.close()

    Or use as context manager:
        with LedgerDB(":memory:") as db:
            ...

    Transactions nest: only the outermost transaction() commits or rolls
    back, so standalone writes are atomic on their own and become part of
    the caller's transaction when one is open.
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else ":memory:"
        self._conn: sqlite3.Connection | None = None
        self._depth = 0
        self._tx_lock = threading.RLock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            self._conn.executescript(CREATE_TABLES_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        with self._tx_lock:
            yield from self._transaction()

    def _transaction(self) -> Generator[None, None, None]:
        outermost = self._depth == 0
        if outermost:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="begin",
                    underlying_error=str(e),
                ) from e
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if outermost:
                self._conn.rollback()
            raise
        self._depth -= 1
        if outermost:
            try:
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageWriteError(
                    operation="commit",
                    underlying_error=str(e),
                ) from e

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "LedgerDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    def _write(self, operation: str, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            with self.transaction():
                return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation=operation,
                underlying_error=str(e),
            ) from e

    def _read(self, operation: str, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        # Shares the connection with open transactions; wait for them to finish.
        try:
            with self._tx_lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation=operation,
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Meta Operations
    # =========================================================================

    def get_meta(self, key: str) -> str | None:
        """Get a bookkeeping value."""
        rows = self._read("get_meta", "SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        """Set a bookkeeping value."""
        self._write(
            "set_meta",
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def get_admin(self) -> str | None:
        """Current admin identity, or None before initialization."""
        return self.get_meta("admin")

    def set_admin(self, principal: str) -> None:
        self.set_meta("admin", principal)

    # =========================================================================
    # Policy Operations
    # =========================================================================

    def put_policy(self, kind: PolicyKind, policy: BonusPolicy | EligibilityPolicy) -> None:
        """
        Create or overwrite the policy for (kind, context_key).

        Args:
            kind: Policy kind
            policy: The validated policy model
        """
        self._write(
            "put_policy",
            """
            INSERT INTO policies (kind, context_key, policy_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(kind, context_key) DO UPDATE SET
                policy_json = excluded.policy_json,
                updated_at = excluded.updated_at
            """,
            (kind.value, policy.context_key, policy.model_dump_json(), now_iso()),
        )

    def get_policy(
        self, kind: PolicyKind, context_key: str
    ) -> BonusPolicy | EligibilityPolicy | None:
        """
        Get the policy for (kind, context_key).

        Returns:
            The policy model, or None if never published
        """
        rows = self._read(
            "get_policy",
            "SELECT policy_json FROM policies WHERE kind = ? AND context_key = ?",
            (kind.value, context_key),
        )
        if not rows:
            return None
        return _POLICY_MODELS[kind].model_validate_json(rows[0]["policy_json"])

    def list_policies(self) -> list[tuple[PolicyKind, str, str]]:
        """List (kind, context_key, updated_at) for every published policy."""
        rows = self._read(
            "list_policies",
            "SELECT kind, context_key, updated_at FROM policies ORDER BY kind, context_key",
        )
        return [(PolicyKind(r["kind"]), r["context_key"], r["updated_at"]) for r in rows]

    # =========================================================================
    # Registration Operations
    # =========================================================================

    def put_registration(self, registration: Registration) -> None:
        """Create or overwrite a registration (last write wins)."""
        self._write(
            "put_registration",
            """
            INSERT INTO registrations (
                kind, context_key, principal, result_handle, exists_flag, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(kind, context_key, principal) DO UPDATE SET
                result_handle = excluded.result_handle,
                exists_flag = excluded.exists_flag,
                updated_at = excluded.updated_at
            """,
            (
                registration.kind.value,
                registration.context_key,
                registration.principal,
                registration.result_handle,
                int(registration.exists),
                registration.updated_at.isoformat(),
            ),
        )

    def get_registration(
        self, kind: PolicyKind, context_key: str, principal: str
    ) -> Registration | None:
        """Get a registration, or None if the principal never submitted."""
        rows = self._read(
            "get_registration",
            """
            SELECT * FROM registrations
            WHERE kind = ? AND context_key = ? AND principal = ?
            """,
            (kind.value, context_key, principal),
        )
        if not rows:
            return None
        return self._row_to_registration(rows[0])

    def list_registrations(self, principal: str | None = None) -> list[Registration]:
        """List registrations, optionally for a single principal."""
        if principal is None:
            rows = self._read(
                "list_registrations",
                "SELECT * FROM registrations ORDER BY kind, context_key, principal",
            )
        else:
            rows = self._read(
                "list_registrations",
                "SELECT * FROM registrations WHERE principal = ? ORDER BY kind, context_key",
                (principal,),
            )
        return [self._row_to_registration(r) for r in rows]

    @staticmethod
    def _row_to_registration(row: sqlite3.Row) -> Registration:
        return Registration(
            kind=PolicyKind(row["kind"]),
            context_key=row["context_key"],
            principal=row["principal"],
            result_handle=row["result_handle"],
            exists=bool(row["exists_flag"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # =========================================================================
    # Content Operations
    # =========================================================================

    def insert_content(
        self,
        author: str,
        is_plain: bool,
        plain_mask: int | None,
        enc_mask: str | None,
    ) -> Content:
        """
        Create a content record with the next sequential id.

        Returns:
            The stored Content
        """
        now = now_iso()
        cursor = self._write(
            "insert_content",
            """
            INSERT INTO contents (
                author, is_plain, plain_mask, enc_mask, state, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                author,
                int(is_plain),
                None if plain_mask is None else str(plain_mask),
                enc_mask,
                ContentState.ACTIVE.value,
                now,
                now,
            ),
        )
        return self.get_content(cursor.lastrowid)

    def update_content(
        self,
        content_id: int,
        is_plain: bool,
        plain_mask: int | None,
        enc_mask: str | None,
        state: ContentState = ContentState.ACTIVE,
    ) -> Content:
        """Overwrite a content record's mask representation and state."""
        self._write(
            "update_content",
            """
            UPDATE contents
            SET is_plain = ?, plain_mask = ?, enc_mask = ?, state = ?, updated_at = ?
            WHERE content_id = ?
            """,
            (
                int(is_plain),
                None if plain_mask is None else str(plain_mask),
                enc_mask,
                state.value,
                now_iso(),
                content_id,
            ),
        )
        return self.get_content(content_id)

    def get_content(self, content_id: int) -> Content | None:
        """Get a content record in any state, or None if never created."""
        rows = self._read(
            "get_content",
            "SELECT * FROM contents WHERE content_id = ?",
            (content_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return Content(
            content_id=row["content_id"],
            author=row["author"],
            is_plain=bool(row["is_plain"]),
            plain_mask=None if row["plain_mask"] is None else int(row["plain_mask"]),
            enc_mask=row["enc_mask"],
            state=ContentState(row["state"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def count_contents(self) -> int:
        rows = self._read("count_contents", "SELECT COUNT(*) AS n FROM contents")
        return rows[0]["n"]

    # =========================================================================
    # Access Control Ledger Operations
    # =========================================================================

    def add_grant(self, handle: str, principal: str) -> bool:
        """
        Record a decrypt grant.

        Returns:
            True if the grant is new, False if it already existed
        """
        cursor = self._write(
            "add_grant",
            "INSERT OR IGNORE INTO acl_grants (handle, principal, granted_at) VALUES (?, ?, ?)",
            (handle, principal, now_iso()),
        )
        return cursor.rowcount == 1

    def has_grant(self, handle: str, principal: str) -> bool:
        rows = self._read(
            "has_grant",
            "SELECT 1 FROM acl_grants WHERE handle = ? AND principal = ?",
            (handle, principal),
        )
        return bool(rows)

    def list_grantees(self, handle: str) -> list[str]:
        """Principals granted on a handle, in grant order."""
        rows = self._read(
            "list_grantees",
            "SELECT principal FROM acl_grants WHERE handle = ? ORDER BY rowid",
            (handle,),
        )
        return [r["principal"] for r in rows]

    def mark_public(self, handle: str) -> bool:
        """
        Mark a handle publicly disclosed.

        Returns:
            True if the handle was not already disclosed
        """
        cursor = self._write(
            "mark_public",
            "INSERT OR IGNORE INTO acl_public (handle, disclosed_at) VALUES (?, ?)",
            (handle, now_iso()),
        )
        return cursor.rowcount == 1

    def is_public(self, handle: str) -> bool:
        rows = self._read(
            "is_public",
            "SELECT 1 FROM acl_public WHERE handle = ?",
            (handle,),
        )
        return bool(rows)

    # =========================================================================
    # Ciphertext Operations (local runtime)
    # =========================================================================

    def put_ciphertext(self, handle: str, ctype: CipherType, value: int) -> None:
        """Store a ciphertext row; identical handles are written once."""
        self._write(
            "put_ciphertext",
            "INSERT OR IGNORE INTO ciphertexts (handle, ctype, value) VALUES (?, ?, ?)",
            (handle, ctype.value, str(value)),
        )

    def get_ciphertext(self, handle: str) -> tuple[CipherType, int] | None:
        """Get (type, value) for a handle, or None if unknown."""
        rows = self._read(
            "get_ciphertext",
            "SELECT ctype, value FROM ciphertexts WHERE handle = ?",
            (handle,),
        )
        if not rows:
            return None
        return CipherType(rows[0]["ctype"]), int(rows[0]["value"])

    # =========================================================================
    # Event Operations
    # =========================================================================

    def append_event(self, event: Event) -> Event:
        """Append a notification and return it with its assigned id."""
        cursor = self._write(
            "append_event",
            "INSERT INTO events (event_type, payload_json, created_at) VALUES (?, ?, ?)",
            (
                event.event_type.value,
                json.dumps(event.payload, sort_keys=True, default=str),
                event.created_at.isoformat(),
            ),
        )
        return event.model_copy(update={"event_id": cursor.lastrowid})

    def list_events(
        self,
        limit: int = 100,
        event_type: EventType | None = None,
    ) -> list[Event]:
        """
        List notifications, oldest first.

        Args:
            limit: Maximum number of events to return (most recent ones)
            event_type: Optional filter
        """
        if event_type is None:
            rows = self._read(
                "list_events",
                "SELECT * FROM (SELECT * FROM events ORDER BY event_id DESC LIMIT ?) "
                "ORDER BY event_id",
                (limit,),
            )
        else:
            rows = self._read(
                "list_events",
                "SELECT * FROM (SELECT * FROM events WHERE event_type = ? "
                "ORDER BY event_id DESC LIMIT ?) ORDER BY event_id",
                (event_type.value, limit),
            )
        return [
            Event(
                event_id=r["event_id"],
                event_type=EventType(r["event_type"]),
                payload=json.loads(r["payload_json"]),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]
