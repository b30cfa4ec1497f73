from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, List, Optional, Tuple, TypeVar

from everest.config import Settings
from everest.logging import get_logger
from everest.service.auth import Identity
from everest.service.devices import DeviceInfo, is_valid_device_id
from everest.service.errors import ForbiddenError, NotFoundError, ValidationError
from everest.service.sanitize import clean_text
from everest.storage.models import ActiveDevice, ChatMessage, Device, STAFF_ROLES

logger = get_logger(__name__)

MAX_CONTENT_LENGTH = 1000
MAX_DEVICE_NAME_LENGTH = 50
GUEST_RECIPIENTS = ("admin", "moderator")
_RESERVED_NAME_RE = re.compile(r"^guest-[0-9a-f]{4}$", re.IGNORECASE)

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


@dataclass
class ConversationPage(Page[ChatMessage]):
    unread_count: int = 0


@dataclass
class ActiveDevicesPage(Page[ActiveDevice]):
    total_unread: int = 0


@dataclass
class DeviceDetails:
    device: Device
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0


@dataclass
class InboxPage(Page[ChatMessage]):
    unread_count: int = 0


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ChatService:
    """Guest and staff messaging over device-keyed conversation threads."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _require_device_id(device_id: str) -> str:
        if not is_valid_device_id(device_id):
            raise ValidationError("Invalid device ID format")
        return device_id.strip().lower()

    def _require_device(self, device_id: str) -> Device:
        device = self.store.get_device(self._require_device_id(device_id))
        if not device:
            raise NotFoundError("Device not found")
        return device

    @staticmethod
    def _clean_content(content: str) -> str:
        cleaned = clean_text(content or "")
        if not cleaned:
            raise ValidationError("Message content is required")
        if len(cleaned) > MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Message cannot exceed {MAX_CONTENT_LENGTH} characters"
            )
        return cleaned

    # -- guest side ------------------------------------------------------

    def guest_send(
        self,
        device: DeviceInfo,
        content: str,
        recipient_type: str,
        recipient_id: Optional[str] = None,
    ) -> ChatMessage:
        if recipient_type not in GUEST_RECIPIENTS:
            raise ValidationError("Recipient type must be admin or moderator")
        message = self.store.create_chat_message(
            device_id=device.id,
            content=self._clean_content(content),
            sender_type="guest",
            sender_id=device.id,
            sender_name=device.name or "Guest",
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            created_at=self.clock(),
        )
        logger.info("guest_message_sent", device_id=device.id, message_id=message.id)
        return message

    def conversation(
        self,
        device_id: str,
        *,
        since: Optional[datetime] = None,
        sender_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ConversationPage:
        messages, total = self.store.list_conversation(
            device_id,
            since=_as_utc(since),
            sender_type=sender_type,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return ConversationPage(
            items=messages,
            total=total,
            page=page,
            limit=limit,
            unread_count=self.store.count_unread_guest_messages(device_id=device_id),
        )

    def rename_device(self, requester: DeviceInfo, device_id: Optional[str], new_name: str) -> Device:
        target_id = device_id or requester.id
        if target_id.strip().lower() != requester.id:
            raise ForbiddenError("You can only rename your own device")
        name = clean_text(new_name or "")
        if not name or len(name) > MAX_DEVICE_NAME_LENGTH:
            raise ValidationError(
                f"Name must be between 1 and {MAX_DEVICE_NAME_LENGTH} characters"
            )
        if _RESERVED_NAME_RE.match(name):
            raise ValidationError("This name format is reserved")
        device = self.store.rename_device(requester.id, name)
        if not device:
            raise NotFoundError("Device not found")
        logger.info("device_renamed", device_id=requester.id)
        return device

    # -- staff side ------------------------------------------------------

    def staff_send(self, staff: Identity, device_id: str, content: str) -> ChatMessage:
        if staff.role not in STAFF_ROLES:
            raise ForbiddenError()
        device = self._require_device(device_id)
        message = self.store.create_chat_message(
            device_id=device.device_id,
            content=self._clean_content(content),
            sender_type=staff.role,
            sender_id=staff.user_id,
            sender_name=staff.username or staff.role,
            recipient_type="guest",
            recipient_id=device.device_id,
            created_at=self.clock(),
        )
        logger.info(
            "staff_message_sent",
            device_id=device.device_id,
            message_id=message.id,
            sender_id=staff.user_id,
        )
        return message

    def staff_conversation(
        self,
        device_id: str,
        *,
        since: Optional[datetime] = None,
        sender_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ConversationPage:
        device = self._require_device(device_id)
        return self.conversation(
            device.device_id, since=since, sender_type=sender_type, page=page, limit=limit
        )

    def mark_message_read(self, message_id: str) -> ChatMessage:
        try:
            message_id = str(uuid.UUID(message_id))
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid message ID format") from exc
        message = self.store.mark_message_read(message_id)
        if not message:
            raise NotFoundError("Message not found")
        return message

    def mark_device_read(self, device_id: str) -> int:
        device = self._require_device(device_id)
        updated = self.store.mark_device_messages_read(device.device_id)
        logger.info("device_messages_read", device_id=device.device_id, updated_count=updated)
        return updated

    def set_device_blocked(self, staff: Identity, device_id: str, is_blocked: bool) -> Device:
        device = self.store.set_device_blocked(self._require_device_id(device_id), is_blocked)
        if not device:
            raise NotFoundError("Device not found")
        logger.warning(
            "device_block_changed",
            device_id=device.device_id,
            is_blocked=is_blocked,
            performed_by=staff.user_id,
        )
        return device

    def active_devices(
        self,
        *,
        last_hours: int = 24,
        search: str = "",
        page: int = 1,
        limit: int = 20,
    ) -> ActiveDevicesPage:
        since = self.clock() - timedelta(hours=last_hours)
        devices, total = self.store.list_active_devices(
            since=since,
            search=(search or "").strip(),
            offset=(page - 1) * limit,
            limit=limit,
        )
        return ActiveDevicesPage(
            items=devices,
            total=total,
            page=page,
            limit=limit,
            total_unread=self.store.count_unread_guest_messages(since=since),
        )

    def received_messages(self, *, page: int = 1, limit: int = 20) -> InboxPage:
        messages, total = self.store.list_guest_messages(
            offset=(page - 1) * limit, limit=limit
        )
        return InboxPage(
            items=messages,
            total=total,
            page=page,
            limit=limit,
            unread_count=self.store.count_unread_guest_messages(),
        )

    def device_details(self, device_id: str) -> DeviceDetails:
        device = self._require_device(device_id)
        return DeviceDetails(
            device=device,
            last_message=self.store.last_guest_message(device.device_id),
            unread_count=self.store.count_unread_guest_messages(device_id=device.device_id),
        )

    # -- retention -------------------------------------------------------

    def purge_expired(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Delete messages and idle devices past their retention windows."""

        now = now or self.clock()
        message_cutoff = now - timedelta(days=self.settings.chat_message_retention_days)
        device_cutoff = now - timedelta(days=self.settings.device_retention_days)
        messages = self.store.delete_chat_messages_before(message_cutoff)
        devices = self.store.delete_devices_inactive_before(device_cutoff)
        if messages or devices:
            logger.info(
                "chat_retention_purged",
                messages_deleted=messages,
                devices_deleted=devices,
            )
        return messages, devices
