from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from everest.logging import get_logger
from everest.storage.errors import ConstraintViolation
from everest.storage.models import (
    ActiveDevice,
    AuditLogEntry,
    ChatMessage,
    Device,
    User,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "audit_log",
    "chat_device",
    "chat_message",
)

_MESSAGE_COLUMNS = (
    "id",
    "device_id",
    "content",
    "sender_type",
    "sender_id",
    "sender_name",
    "recipient_type",
    "recipient_id",
    "read",
    "created_at",
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        role=row.get("role", "user"),
        is_active=row.get("is_active", True),
        session_version=row.get("session_version", 0),
        refresh_token_hash=row.get("refresh_token_hash"),
        password_changed_at=row.get("password_changed_at"),
        password_reset_hash=row.get("password_reset_hash"),
        password_reset_expires_at=row.get("password_reset_expires_at"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        updated_at=row.get("updated_at") or datetime.now(timezone.utc),
    )


def _device_from_row(row: Dict[str, Any]) -> Device:
    return Device(
        device_id=str(row["device_id"]),
        name=row["name"],
        device_type=row.get("device_type", "unknown"),
        is_blocked=row.get("is_blocked", False),
        last_active=row["last_active"],
        created_at=row["created_at"],
    )


def _message_from_row(row: Dict[str, Any], prefix: str = "") -> ChatMessage:
    return ChatMessage(
        id=str(row[f"{prefix}id"]),
        device_id=str(row[f"{prefix}device_id"]),
        content=row[f"{prefix}content"],
        sender_type=row[f"{prefix}sender_type"],
        sender_id=row[f"{prefix}sender_id"],
        sender_name=row[f"{prefix}sender_name"],
        recipient_type=row[f"{prefix}recipient_type"],
        recipient_id=row.get(f"{prefix}recipient_id"),
        read=row[f"{prefix}read"],
        created_at=row[f"{prefix}created_at"],
    )


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """Postgres-backed store for users, audit entries, devices and chat."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.logger.info("postgres_store_ready", min_size=min_size, max_size=max_size)

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        if "username" in constraint:
            return ConstraintViolation("username already exists", {"field": "username"})
        return ConstraintViolation("email already exists", {"field": "email"})

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email.lower(), role, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(self, *, offset: int = 0, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC OFFSET %s LIMIT %s",
                (offset, limit),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() "
                "WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        try:
            return self._update_user(
                user_id,
                "username = COALESCE(%s, username), email = COALESCE(%s, email)",
                (username, email.lower() if email else None),
            )
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
                conn.execute(
                    "UPDATE app_user SET password_changed_at = now() WHERE id = %s",
                    (user_id,),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found", {"user_id": user_id}) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def set_refresh_token_hash(self, user_id: str, token_hash: Optional[str]) -> Optional[User]:
        return self._update_user(user_id, "refresh_token_hash = %s", (token_hash,))

    def rotate_refresh_token(
        self,
        user_id: str,
        *,
        expected_hash: str,
        expected_version: int,
        new_hash: str,
    ) -> Optional[User]:
        # Single conditional UPDATE; concurrent rotations serialize on the row lock
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET refresh_token_hash = %s,
                    session_version = session_version + 1,
                    updated_at = now()
                WHERE id = %s
                  AND is_active
                  AND refresh_token_hash = %s
                  AND session_version = %s
                RETURNING *
                """,
                (new_hash, user_id, expected_hash, expected_version),
            ).fetchone()
        return _user_from_row(row) if row else None

    def revoke_user_sessions(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id,
            "refresh_token_hash = NULL, session_version = session_version + 1",
            (),
        )

    def set_password_reset(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "password_reset_hash = %s, password_reset_expires_at = %s",
            (token_hash, expires_at),
        )

    def get_user_by_reset_hash(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE password_reset_hash = %s", (token_hash,)
            ).fetchone()
        return _user_from_row(row) if row else None

    # -- audit -----------------------------------------------------------

    def record_audit(
        self,
        action: str,
        target_id: str,
        performed_by: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (id, action, target_id, performed_by, metadata)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (entry_id, action, target_id, performed_by, Jsonb(metadata or {})),
            ).fetchone()
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            target_id=row["target_id"],
            performed_by=row["performed_by"],
            metadata=row.get("metadata") or {},
            created_at=row["created_at"],
        )

    def list_audit_logs(self, *, limit: int = 100) -> List[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                action=row["action"],
                target_id=row["target_id"],
                performed_by=row["performed_by"],
                metadata=row.get("metadata") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- devices ---------------------------------------------------------

    def upsert_device(
        self,
        device_id: str,
        *,
        device_type: str,
        default_name: str,
        seen_at: Optional[datetime] = None,
    ) -> Device:
        seen_at = seen_at or datetime.now(timezone.utc)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO chat_device (device_id, name, device_type, last_active, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (device_id) DO UPDATE
                SET device_type = EXCLUDED.device_type,
                    last_active = EXCLUDED.last_active
                RETURNING *
                """,
                (device_id, default_name, device_type, seen_at, seen_at),
            ).fetchone()
        return _device_from_row(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_device WHERE device_id = %s", (device_id,)
            ).fetchone()
        return _device_from_row(row) if row else None

    def rename_device(self, device_id: str, name: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE chat_device SET name = %s WHERE device_id = %s RETURNING *",
                (name, device_id),
            ).fetchone()
        return _device_from_row(row) if row else None

    def set_device_blocked(self, device_id: str, is_blocked: bool) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE chat_device SET is_blocked = %s WHERE device_id = %s RETURNING *",
                (is_blocked, device_id),
            ).fetchone()
        return _device_from_row(row) if row else None

    def list_active_devices(
        self,
        *,
        since: datetime,
        search: str = "",
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ActiveDevice], int]:
        params = {
            "since": since,
            "pattern": _like_pattern(search),
            "offset": offset,
            "limit": limit,
        }
        last_columns = ", ".join(f"lm.{col} AS lm_{col}" for col in _MESSAGE_COLUMNS)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT d.*, {last_columns}, COALESCE(u.unread, 0) AS unread_count
                FROM chat_device d
                LEFT JOIN LATERAL (
                    SELECT * FROM chat_message m
                    WHERE m.device_id = d.device_id AND m.created_at >= %(since)s
                    ORDER BY m.created_at DESC
                    LIMIT 1
                ) lm ON TRUE
                LEFT JOIN LATERAL (
                    SELECT count(*) AS unread FROM chat_message m
                    WHERE m.device_id = d.device_id
                      AND m.sender_type = 'guest'
                      AND NOT m.read
                      AND m.created_at >= %(since)s
                ) u ON TRUE
                WHERE d.last_active >= %(since)s
                  AND NOT d.is_blocked
                  AND d.name ILIKE %(pattern)s
                ORDER BY lm.created_at DESC NULLS LAST, d.last_active DESC
                OFFSET %(offset)s LIMIT %(limit)s
                """,
                params,
            ).fetchall()
            total_row = conn.execute(
                """
                SELECT count(*) AS total FROM chat_device
                WHERE last_active >= %(since)s AND NOT is_blocked AND name ILIKE %(pattern)s
                """,
                params,
            ).fetchone()
        result = [
            ActiveDevice(
                device=_device_from_row(row),
                last_message=_message_from_row(row, "lm_") if row.get("lm_id") else None,
                unread_count=int(row["unread_count"]),
            )
            for row in rows
        ]
        return result, int(total_row["total"]) if total_row else 0

    def delete_devices_inactive_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM chat_device WHERE last_active < %s", (cutoff,))
            return cur.rowcount

    # -- chat messages ---------------------------------------------------

    def create_chat_message(
        self,
        *,
        device_id: str,
        content: str,
        sender_type: str,
        sender_id: str,
        sender_name: str,
        recipient_type: str,
        recipient_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ChatMessage:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO chat_message (
                    id, device_id, content, sender_type, sender_id, sender_name,
                    recipient_type, recipient_id, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    device_id,
                    content,
                    sender_type,
                    sender_id,
                    sender_name,
                    recipient_type,
                    recipient_id,
                    created_at or datetime.now(timezone.utc),
                ),
            ).fetchone()
        return _message_from_row(row)

    def get_chat_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_message WHERE id = %s", (message_id,)
            ).fetchone()
        return _message_from_row(row) if row else None

    def list_conversation(
        self,
        device_id: str,
        *,
        since: Optional[datetime] = None,
        sender_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ChatMessage], int]:
        clauses = ["device_id = %(device_id)s"]
        params: Dict[str, Any] = {
            "device_id": device_id,
            "offset": offset,
            "limit": limit,
        }
        if since is not None:
            clauses.append("created_at > %(since)s")
            params["since"] = since
        if sender_type is not None:
            clauses.append("sender_type = %(sender_type)s")
            params["sender_type"] = sender_type
        where = " AND ".join(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM chat_message WHERE {where} "
                "ORDER BY created_at ASC OFFSET %(offset)s LIMIT %(limit)s",
                params,
            ).fetchall()
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM chat_message WHERE {where}", params
            ).fetchone()
        return [_message_from_row(row) for row in rows], int(total_row["total"])

    def count_unread_guest_messages(
        self, *, device_id: Optional[str] = None, since: Optional[datetime] = None
    ) -> int:
        clauses = ["sender_type = 'guest'", "NOT read"]
        params: Dict[str, Any] = {}
        if device_id is not None:
            clauses.append("device_id = %(device_id)s")
            params["device_id"] = device_id
        if since is not None:
            clauses.append("created_at >= %(since)s")
            params["since"] = since
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM chat_message WHERE " + " AND ".join(clauses),
                params,
            ).fetchone()
        return int(row["total"]) if row else 0

    def mark_message_read(self, message_id: str) -> Optional[ChatMessage]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE chat_message SET read = TRUE WHERE id = %s RETURNING *",
                (message_id,),
            ).fetchone()
        return _message_from_row(row) if row else None

    def mark_device_messages_read(self, device_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE chat_message SET read = TRUE
                WHERE device_id = %s AND sender_type = 'guest' AND NOT read
                """,
                (device_id,),
            )
            return cur.rowcount

    def list_guest_messages(
        self, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ChatMessage], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chat_message WHERE sender_type = 'guest'
                ORDER BY created_at DESC OFFSET %s LIMIT %s
                """,
                (offset, limit),
            ).fetchall()
            total_row = conn.execute(
                "SELECT count(*) AS total FROM chat_message WHERE sender_type = 'guest'"
            ).fetchone()
        return [_message_from_row(row) for row in rows], int(total_row["total"])

    def last_guest_message(self, device_id: str) -> Optional[ChatMessage]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM chat_message
                WHERE device_id = %s AND sender_type = 'guest'
                ORDER BY created_at DESC LIMIT 1
                """,
                (device_id,),
            ).fetchone()
        return _message_from_row(row) if row else None

    def delete_chat_messages_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM chat_message WHERE created_at < %s", (cutoff,))
            return cur.rowcount
