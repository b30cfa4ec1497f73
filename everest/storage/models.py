from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROLES = ("user", "moderator", "admin")
STAFF_ROLES = ("moderator", "admin")
DEVICE_TYPES = ("desktop", "mobile", "tablet", "unknown")
AUDIT_ACTIONS = ("ROLE_CHANGE", "USER_DEACTIVATE")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = "user"
    is_active: bool = True
    # Bumped on rotation/logout/password change; tokens embedding an older
    # value are rejected.
    session_version: int = 0
    refresh_token_hash: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    password_reset_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


@dataclass
class Device:
    device_id: str
    name: str
    device_type: str = "unknown"
    is_blocked: bool = False
    last_active: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ChatMessage:
    id: str
    device_id: str
    content: str
    sender_type: str
    sender_id: str
    sender_name: str
    recipient_type: str
    recipient_id: Optional[str] = None
    read: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def from_guest(self) -> bool:
        return self.sender_type == "guest"


@dataclass
class ActiveDevice:
    """Device row enriched for the staff inbox listing."""

    device: Device
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0


@dataclass
class AuditLogEntry:
    id: str
    action: str
    target_id: str
    performed_by: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
