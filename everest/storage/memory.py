from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from everest.storage.errors import ConstraintViolation
from everest.storage.models import (
    ActiveDevice,
    AuditLogEntry,
    ChatMessage,
    Device,
    User,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process backing store used by tests and local development.

    Records are copied on the way in and out so callers never hold a live
    reference; that keeps compare-and-swap semantics identical to the
    Postgres store.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.devices: Dict[str, Device] = {}
        # Insertion ordered; created_at ties keep arrival order
        self.chat_messages: Dict[str, ChatMessage] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        email = email.lower()
        with self._data_lock:
            self._ensure_unique(email=email, username=username)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def _ensure_unique(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username.lower() == username.lower():
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username.lower() == username.lower()),
                None,
            )
            return replace(user) if user else None

    def list_users(self, *, offset: int = 0, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = _utcnow()
            return replace(user)

    def update_user_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        changes: Dict[str, Any] = {}
        if username is not None:
            changes["username"] = username
        if email is not None:
            changes["email"] = email.lower()
        with self._data_lock:
            if user_id not in self.users:
                return None
            self._ensure_unique(
                email=changes.get("email"),
                username=changes.get("username"),
                exclude_id=user_id,
            )
            return self._update_user(user_id, **changes)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].password_changed_at = _utcnow()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_refresh_token_hash(self, user_id: str, token_hash: Optional[str]) -> Optional[User]:
        return self._update_user(user_id, refresh_token_hash=token_hash)

    def rotate_refresh_token(
        self,
        user_id: str,
        *,
        expected_hash: str,
        expected_version: int,
        new_hash: str,
    ) -> Optional[User]:
        """Swap the refresh hash and bump the session version atomically.

        Returns None when the stored hash or version no longer match, which
        is how the loser of two concurrent rotations finds out.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                not user
                or not user.is_active
                or user.refresh_token_hash != expected_hash
                or user.session_version != expected_version
            ):
                return None
            return self._update_user(
                user_id,
                refresh_token_hash=new_hash,
                session_version=user.session_version + 1,
            )

    def revoke_user_sessions(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return self._update_user(
                user_id,
                refresh_token_hash=None,
                session_version=user.session_version + 1,
            )

    def set_password_reset(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            password_reset_hash=token_hash,
            password_reset_expires_at=expires_at,
        )

    def get_user_by_reset_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_hash == token_hash),
                None,
            )
            return replace(user) if user else None

    # -- audit -----------------------------------------------------------

    def record_audit(
        self,
        action: str,
        target_id: str,
        performed_by: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            action=action,
            target_id=target_id,
            performed_by=performed_by,
            metadata=dict(metadata or {}),
        )
        with self._data_lock:
            self.audit_logs.append(entry)
        return replace(entry)

    def list_audit_logs(self, *, limit: int = 100) -> List[AuditLogEntry]:
        with self._data_lock:
            return [replace(e) for e in reversed(self.audit_logs[-limit:])]

    # -- devices ---------------------------------------------------------

    def upsert_device(
        self,
        device_id: str,
        *,
        device_type: str,
        default_name: str,
        seen_at: Optional[datetime] = None,
    ) -> Device:
        seen_at = seen_at or _utcnow()
        with self._data_lock:
            device = self.devices.get(device_id)
            if device is None:
                device = Device(
                    device_id=device_id,
                    name=default_name,
                    device_type=device_type,
                    last_active=seen_at,
                    created_at=seen_at,
                )
                self.devices[device_id] = device
            else:
                device.device_type = device_type
                device.last_active = seen_at
            return replace(device)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def rename_device(self, device_id: str, name: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.name = name
            return replace(device)

    def set_device_blocked(self, device_id: str, is_blocked: bool) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.is_blocked = is_blocked
            return replace(device)

    def list_active_devices(
        self,
        *,
        since: datetime,
        search: str = "",
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ActiveDevice], int]:
        needle = search.lower()
        with self._data_lock:
            matches = [
                d
                for d in self.devices.values()
                if d.last_active >= since
                and not d.is_blocked
                and needle in d.name.lower()
            ]
            rows: List[ActiveDevice] = []
            for device in matches:
                recent = [
                    m
                    for m in self.chat_messages.values()
                    if m.device_id == device.device_id and m.created_at >= since
                ]
                last = max(recent, key=lambda m: m.created_at) if recent else None
                unread = sum(1 for m in recent if m.from_guest and not m.read)
                rows.append(
                    ActiveDevice(
                        device=replace(device),
                        last_message=replace(last) if last else None,
                        unread_count=unread,
                    )
                )
        # Devices with a recent message first, newest conversation on top
        rows.sort(
            key=lambda r: (
                r.last_message is not None,
                r.last_message.created_at if r.last_message else r.device.last_active,
            ),
            reverse=True,
        )
        return rows[offset : offset + limit], len(rows)

    def delete_devices_inactive_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [k for k, d in self.devices.items() if d.last_active < cutoff]
            for key in stale:
                self.devices.pop(key, None)
            return len(stale)

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
        message = ChatMessage(
            id=str(uuid.uuid4()),
            device_id=device_id,
            content=content,
            sender_type=sender_type,
            sender_id=sender_id,
            sender_name=sender_name,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            created_at=created_at or _utcnow(),
        )
        with self._data_lock:
            self.chat_messages[message.id] = message
        return replace(message)

    def get_chat_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._data_lock:
            message = self.chat_messages.get(message_id)
            return replace(message) if message else None

    def list_conversation(
        self,
        device_id: str,
        *,
        since: Optional[datetime] = None,
        sender_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ChatMessage], int]:
        with self._data_lock:
            thread = [
                m
                for m in self.chat_messages.values()
                if m.device_id == device_id
                and (sender_type is None or m.sender_type == sender_type)
                and (since is None or m.created_at > since)
            ]
            thread.sort(key=lambda m: m.created_at)
            return [replace(m) for m in thread[offset : offset + limit]], len(thread)

    def count_unread_guest_messages(
        self, *, device_id: Optional[str] = None, since: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for m in self.chat_messages.values()
                if m.from_guest
                and not m.read
                and (device_id is None or m.device_id == device_id)
                and (since is None or m.created_at >= since)
            )

    def mark_message_read(self, message_id: str) -> Optional[ChatMessage]:
        with self._data_lock:
            message = self.chat_messages.get(message_id)
            if not message:
                return None
            message.read = True
            return replace(message)

    def mark_device_messages_read(self, device_id: str) -> int:
        updated = 0
        with self._data_lock:
            for message in self.chat_messages.values():
                if message.device_id == device_id and message.from_guest and not message.read:
                    message.read = True
                    updated += 1
        return updated

    def list_guest_messages(
        self, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ChatMessage], int]:
        with self._data_lock:
            inbox = [m for m in self.chat_messages.values() if m.from_guest]
        inbox.sort(key=lambda m: m.created_at, reverse=True)
        return [replace(m) for m in inbox[offset : offset + limit]], len(inbox)

    def last_guest_message(self, device_id: str) -> Optional[ChatMessage]:
        with self._data_lock:
            candidates = [
                m
                for m in self.chat_messages.values()
                if m.device_id == device_id and m.from_guest
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda m: m.created_at))

    def delete_chat_messages_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [k for k, m in self.chat_messages.items() if m.created_at < cutoff]
            for key in stale:
                self.chat_messages.pop(key, None)
            return len(stale)
