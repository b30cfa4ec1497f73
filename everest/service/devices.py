from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from everest.logging import get_logger
from everest.service.errors import DeviceBlockedError
from everest.storage.models import Device

logger = get_logger(__name__)

DEVICE_HEADER = "device-id"
DEVICE_COOKIE = "deviceId"

_UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_TABLET_RE = re.compile(r"ipad|tablet|kindle|silk|playbook", re.IGNORECASE)
_MOBILE_RE = re.compile(
    r"iphone|ipod|windows phone|blackberry|opera mini|mobi|android.+mobile",
    re.IGNORECASE,
)


def is_valid_device_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_UUID4_RE.match(value.strip()))


def detect_device_type(user_agent: Optional[str]) -> str:
    """Coarse device class from the user agent string."""

    if not user_agent or not user_agent.strip():
        return "unknown"
    if _TABLET_RE.search(user_agent):
        return "tablet"
    if _MOBILE_RE.search(user_agent):
        return "mobile"
    if "android" in user_agent.lower():
        return "tablet"
    return "desktop"


def default_device_name(device_id: str) -> str:
    return f"Guest-{device_id[:4]}"


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    name: str
    device_type: str
    is_new: bool = False

    @classmethod
    def from_device(cls, device: Device, *, is_new: bool = False) -> "DeviceInfo":
        return cls(
            id=device.device_id,
            name=device.name,
            device_type=device.device_type,
            is_new=is_new,
        )


class DeviceIdentityResolver:
    """Stable anonymous identity for chat guests.

    The id presented by the client is trusted only when it is a well-formed
    uuid4; anything else gets a fresh id. Every resolution refreshes the
    device's activity timestamp and class.
    """

    def __init__(self, store, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(
        self,
        header_value: Optional[str],
        cookie_value: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeviceInfo:
        candidate = header_value or cookie_value
        if is_valid_device_id(candidate):
            device_id = candidate.strip().lower()
        else:
            if candidate:
                logger.info("device_id_rejected")
            device_id = str(uuid.uuid4())

        is_new = self.store.get_device(device_id) is None
        device = self.store.upsert_device(
            device_id,
            device_type=detect_device_type(user_agent),
            default_name=default_device_name(device_id),
            seen_at=self.clock(),
        )
        if device.is_blocked:
            logger.warning("blocked_device_rejected", device_id=device_id)
            raise DeviceBlockedError()
        if is_new:
            logger.info("device_registered", device_id=device_id, device_type=device.device_type)
        return DeviceInfo.from_device(device, is_new=is_new)
