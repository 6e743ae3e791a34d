"""DuckDB-backed persistence for users, messages and typing state.

This module provides the storage collaborator the real-time core depends
on. The service implements the singleton pattern so that the WebSocket
handlers, the auth router and the HTTP query endpoints share one
connection.

Database Schema:
    users:               accounts, credentials hash, persisted presence flag
    broadcast_messages:  public-room history
    direct_messages:     one-to-one messages with sent/delivered/read status
    typing_indicators:   one row per ordered (user, target) pair

Status updates are guarded in SQL so a directed message never moves
backwards (sent -> delivered -> read).

Thread Safety:
    A single DuckDB connection is shared and every statement runs under a
    threading.Lock. The async methods run the statement inline; DuckDB is
    embedded and fast enough for this volume of data.

Usage:
    store = ChatStore.get_instance()
    user = await store.find_user_by_id(42)
"""
import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, List, Optional, Sequence

import duckdb

from relaychat.chat.models import (
    BroadcastMessage,
    ConversationSummary,
    DirectedMessage,
    DirectedStatus,
    utcnow,
)

from .schemas import OnlineUser, PersistResult, UserRecord

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS users_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS broadcast_messages_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS direct_messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id            INTEGER DEFAULT nextval('users_seq') PRIMARY KEY,
        username      VARCHAR NOT NULL UNIQUE,
        phone_number  VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL,
        created_at    TIMESTAMP NOT NULL,
        last_login    TIMESTAMP,
        is_online     BOOLEAN NOT NULL DEFAULT FALSE,
        connection_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS broadcast_messages (
        id          INTEGER DEFAULT nextval('broadcast_messages_seq') PRIMARY KEY,
        sender_id   INTEGER NOT NULL,
        sender_name VARCHAR NOT NULL,
        text        VARCHAR NOT NULL,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS direct_messages (
        id           INTEGER DEFAULT nextval('direct_messages_seq') PRIMARY KEY,
        from_user_id INTEGER NOT NULL,
        to_user_id   INTEGER NOT NULL,
        text         VARCHAR NOT NULL,
        created_at   TIMESTAMP NOT NULL,
        status       VARCHAR NOT NULL DEFAULT 'sent',
        delivered_at TIMESTAMP,
        read_at      TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS typing_indicators (
        user_id        INTEGER NOT NULL,
        target_user_id INTEGER NOT NULL,
        is_typing      BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at     TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, target_user_id)
    )
    """,
]

_USER_COLUMNS = (
    "id, username, phone_number, password_hash, created_at, "
    "last_login, is_online, connection_id"
)

_DIRECTED_SELECT = """
    SELECT dm.id, dm.from_user_id, u1.username AS from_username,
           dm.to_user_id, u2.username AS to_username, dm.text, dm.created_at, dm.status, dm.delivered_at, dm.read_at
    FROM direct_messages dm
    LEFT JOIN users u1 ON dm.from_user_id = u1.id
    LEFT JOIN users u2 ON dm.to_user_id = u2.id
"""


class RegistrationConflict(Exception):
    """Username or phone number is already taken."""


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _user_from_row(row: tuple) -> UserRecord:
    return UserRecord(
        id=row[0],
        username=row[1],
        phoneNumber=row[2],
        passwordHash=row[3],
        createdAt=row[4],
        lastLogin=row[5],
        isOnline=bool(row[6]),
        connectionId=row[7],
    )


def _directed_from_row(row: tuple) -> DirectedMessage:
    return DirectedMessage(
        id=row[0],
        fromUserId=row[1],
        fromUsername=row[2] or "",
        toUserId=row[3],
        toUsername=row[4] or "",
        text=row[5],
        createdAt=row[6],
        status=DirectedStatus(row[7]),
        deliveredAt=row[8],
        readAt=row[9],
    )


def _statuses_below(status: DirectedStatus) -> List[str]:
    return [s.value for s in DirectedStatus if s.can_advance_to(status)]


async def persist(label: str, operation: Awaitable[Any]) -> PersistResult:
    """Await a persistence call and fold any failure into a PersistResult.

    Used on the live delivery path where a failed write is logged and the
    in-memory side effect proceeds anyway.
    """
    try:
        value = await operation
    except Exception as e:
        logger.error(f"[Store] {label} failed: {e}")
        return PersistResult.failure(str(e))
    return PersistResult.success(value)


class ChatStore:
    """Singleton service for chat persistence in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "relaychat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file (":memory:" for tests).
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchone()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # Users
    # =========================================================================

    async def create_user(
        self, username: str, phone_number: str, password_hash: str
    ) -> UserRecord:
        """Insert a new user.

        Raises:
            RegistrationConflict: If the username or phone number is taken.
        """
        try:
            row = self._fetchone(
                f"""
                INSERT INTO users (username, phone_number, password_hash, created_at)
                VALUES (?, ?, ?, ?)
                RETURNING {_USER_COLUMNS}
                """,
                [username, phone_number, password_hash, utcnow()],
            )
        except duckdb.ConstraintException as e:
            raise RegistrationConflict(
                "Username or phone number already exists"
            ) from e
        return _user_from_row(row)

    async def find_user_by_username_or_phone(
        self, username: str, phone_number: Optional[str] = None
    ) -> Optional[UserRecord]:
        """Find a user whose username or phone matches.

        With a single argument the value is matched against both columns,
        which is how login accepts either identifier.
        """
        phone = phone_number if phone_number is not None else username
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users "
            "WHERE username = ? OR phone_number = ? ORDER BY id LIMIT 1",
            [username, phone],
        )
        return _user_from_row(row) if row else None

    async def find_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
        )
        return _user_from_row(row) if row else None

    async def touch_last_login(self, user_id: int) -> None:
        self._fetchall(
            "UPDATE users SET last_login = ? WHERE id = ? RETURNING id",
            [utcnow(), user_id],
        )

    async def list_online_users(
        self, excluding_user_id: Optional[int] = None
    ) -> List[OnlineUser]:
        sql = "SELECT id, username, is_online, last_login FROM users WHERE is_online"
        params: List[Any] = []
        if excluding_user_id is not None:
            sql += " AND id != ?"
            params.append(excluding_user_id)
        rows = self._fetchall(sql + " ORDER BY username", params)
        return [
            OnlineUser(id=r[0], username=r[1], isOnline=bool(r[2]), lastLogin=r[3])
            for r in rows
        ]

    async def set_user_online(self, user_id: int, connection_id: str) -> None:
        self._fetchall(
            "UPDATE users SET is_online = TRUE, connection_id = ? WHERE id = ? RETURNING id",
            [connection_id, user_id],
        )

    async def set_user_offline(self, user_id: int) -> None:
        self._fetchall(
            "UPDATE users SET is_online = FALSE, connection_id = NULL WHERE id = ? RETURNING id",
            [user_id],
        )

    # =========================================================================
    # Broadcast messages
    # =========================================================================

    async def insert_broadcast_message(
        self,
        sender_id: int,
        sender_name: str,
        text: str,
        created_at: Optional[datetime] = None,
    ) -> int:
        row = self._fetchone(
            """
            INSERT INTO broadcast_messages (sender_id, sender_name, text, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            [sender_id, sender_name, text, created_at or utcnow()],
        )
        return row[0]

    async def list_recent_broadcasts(self, limit: int = 100) -> List[BroadcastMessage]:
        """Most-recent-first public history."""
        rows = self._fetchall(
            """
            SELECT id, sender_id, sender_name, text, created_at
            FROM broadcast_messages
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            [limit],
        )
        return [
            BroadcastMessage(
                id=r[0], senderId=r[1], senderName=r[2], text=r[3], createdAt=r[4]
            )
            for r in rows
        ]

    # =========================================================================
    # Directed messages
    # =========================================================================

    async def insert_directed_message(
        self,
        from_user_id: int,
        to_user_id: int,
        text: str,
        initial_status: DirectedStatus = DirectedStatus.SENT,
        created_at: Optional[datetime] = None,
    ) -> int:
        row = self._fetchone(
            """
            INSERT INTO direct_messages (from_user_id, to_user_id, text, created_at, status)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            [from_user_id, to_user_id, text, created_at or utcnow(), initial_status.value],
        )
        return row[0]

    async def update_directed_message_status(
        self, message_id: int, status: DirectedStatus, timestamp: datetime
    ) -> bool:
        """Advance one message's status. Returns False if it was already at or past *status*."""
        updated = await self.update_directed_messages_status_batch(
            [message_id], status, timestamp
        )
        return bool(updated)

    async def update_directed_messages_status_batch(
        self,
        message_ids: Sequence[int],
        status: DirectedStatus,
        timestamp: datetime,
        constrained_to_recipient: Optional[int] = None,
    ) -> List[int]:
        """Advance the status of several messages at once.

        Only rows whose current status ranks below *status* change, and with
        *constrained_to_recipient* only rows addressed to that user.

        Returns:
            Ids of the rows that actually changed.
        """
        if not message_ids or status == DirectedStatus.SENT:
            return []

        column = "delivered_at" if status == DirectedStatus.DELIVERED else "read_at"
        from_statuses = _statuses_below(status)
        sql = (
            f"UPDATE direct_messages SET status = ?, {column} = ? "
            f"WHERE id IN ({_placeholders(message_ids)}) "
            f"AND status IN ({_placeholders(from_statuses)})"
        )
        params: List[Any] = [status.value, timestamp, *message_ids, *from_statuses]
        if constrained_to_recipient is not None:
            sql += " AND to_user_id = ?"
            params.append(constrained_to_recipient)
        rows = self._fetchall(sql + " RETURNING id", params)
        return [r[0] for r in rows]

    async def find_directed_messages(self, message_ids: Sequence[int]) -> List[DirectedMessage]:
        if not message_ids:
            return []
        rows = self._fetchall(
            _DIRECTED_SELECT + f" WHERE dm.id IN ({_placeholders(message_ids)}) ORDER BY dm.id",
            list(message_ids),
        )
        return [_directed_from_row(r) for r in rows]

    async def find_directed_conversation(
        self, user_a: int, user_b: int, limit: int = 100
    ) -> List[DirectedMessage]:
        """The latest *limit* messages between two users, oldest first."""
        rows = self._fetchall(
            f"""
            SELECT * FROM (
                {_DIRECTED_SELECT}
                WHERE (dm.from_user_id = ? AND dm.to_user_id = ?)
                   OR (dm.from_user_id = ? AND dm.to_user_id = ?)
                ORDER BY dm.created_at DESC, dm.id DESC
                LIMIT ?
            ) ORDER BY created_at ASC, id ASC
            """,
            [user_a, user_b, user_b, user_a, limit],
        )
        return [_directed_from_row(r) for r in rows]

    async def find_recent_conversations_for_user(
        self, user_id: int, limit: int = 20
    ) -> List[ConversationSummary]:
        rows = self._fetchall(
            """
            WITH peer_messages AS (
                SELECT
                    CASE WHEN from_user_id = ? THEN to_user_id ELSE from_user_id END AS peer_id,
                    id, text, created_at, to_user_id, status
                FROM direct_messages
                WHERE from_user_id = ? OR to_user_id = ?
            )
            SELECT
                p.peer_id,
                u.username,
                MAX(p.created_at) AS last_message_at,
                COUNT(*) FILTER (WHERE p.to_user_id = ? AND p.status != 'read') AS unread_count,
                arg_max(p.text, p.id) AS last_message_text
            FROM peer_messages p
            JOIN users u ON u.id = p.peer_id
            WHERE p.peer_id != ?
            GROUP BY p.peer_id, u.username
            ORDER BY last_message_at DESC
            LIMIT ?
            """,
            [user_id, user_id, user_id, user_id, user_id, limit],
        )
        return [
            ConversationSummary(
                peerId=r[0],
                peerName=r[1],
                lastMessageAt=r[2],
                unreadCount=r[3],
                lastMessageText=r[4],
            )
            for r in rows
        ]

    # =========================================================================
    # Typing indicators
    # =========================================================================

    async def upsert_typing_indicator(
        self, user_id: int, target_user_id: int, is_typing: bool, updated_at: datetime
    ) -> None:
        self._fetchall(
            """
            INSERT INTO typing_indicators (user_id, target_user_id, is_typing, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (user_id, target_user_id)
            DO UPDATE SET is_typing = excluded.is_typing, updated_at = excluded.updated_at
            """,
            [user_id, target_user_id, is_typing, updated_at],
        )

    async def update_typing_indicator(
        self, user_id: int, target_user_id: int, is_typing: bool, updated_at: datetime
    ) -> None:
        self._fetchall(
            """
            UPDATE typing_indicators SET is_typing = ?, updated_at = ?
            WHERE user_id = ? AND target_user_id = ?
            RETURNING user_id
            """,
            [is_typing, updated_at, user_id, target_user_id],
        )

    async def get_typing_indicator(
        self, user_id: int, target_user_id: int
    ) -> Optional[bool]:
        row = self._fetchone(
            "SELECT is_typing FROM typing_indicators WHERE user_id = ? AND target_user_id = ?",
            [user_id, target_user_id],
        )
        return bool(row[0]) if row else None
