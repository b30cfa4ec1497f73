"""Tests for guest device identity resolution."""

import uuid

import pytest

from everest.service.devices import (
    DeviceIdentityResolver,
    default_device_name,
    detect_device_type,
    is_valid_device_id,
)
from everest.service.errors import DeviceBlockedError
from everest.storage.memory import MemoryStore

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
)
ANDROID_PHONE_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Mobile Safari/537.36"
)
ANDROID_TABLET_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def resolver(store, clock):
    return DeviceIdentityResolver(store, clock=clock)


class TestDeviceIdFormat:
    def test_accepts_uuid4(self):
        assert is_valid_device_id(str(uuid.uuid4()))
        assert is_valid_device_id(str(uuid.uuid4()).upper())

    def test_rejects_other_values(self):
        assert not is_valid_device_id(None)
        assert not is_valid_device_id("")
        assert not is_valid_device_id("not-a-uuid")
        # uuid1 has version nibble 1
        assert not is_valid_device_id(str(uuid.uuid1()))


class TestDeviceType:
    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            (IPHONE_UA, "mobile"),
            (IPAD_UA, "tablet"),
            (ANDROID_PHONE_UA, "mobile"),
            (ANDROID_TABLET_UA, "tablet"),
            (DESKTOP_UA, "desktop"),
            ("", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_detects_device_class(self, user_agent, expected):
        assert detect_device_type(user_agent) == expected


class TestResolve:
    def test_new_device_gets_generated_id(self, resolver, store):
        info = resolver.resolve(None, None, DESKTOP_UA)

        assert info.is_new is True
        assert is_valid_device_id(info.id)
        assert info.name == default_device_name(info.id)
        assert info.device_type == "desktop"
        assert store.get_device(info.id) is not None

    def test_invalid_header_replaced(self, resolver):
        info = resolver.resolve("../../etc/passwd", None, DESKTOP_UA)

        assert info.id != "../../etc/passwd"
        assert is_valid_device_id(info.id)

    def test_known_device_reused(self, resolver, clock, store):
        first = resolver.resolve(None, None, DESKTOP_UA)
        clock.advance(minutes=5)
        second = resolver.resolve(first.id, None, IPHONE_UA)

        assert second.id == first.id
        assert second.is_new is False
        assert second.device_type == "mobile"
        assert store.get_device(first.id).last_active == clock()

    def test_header_preferred_over_cookie(self, resolver):
        header_id = str(uuid.uuid4())
        cookie_id = str(uuid.uuid4())

        assert resolver.resolve(header_id, cookie_id, DESKTOP_UA).id == header_id

    def test_cookie_used_when_header_missing(self, resolver):
        cookie_id = str(uuid.uuid4())

        assert resolver.resolve(None, cookie_id, DESKTOP_UA).id == cookie_id

    def test_ids_are_normalized_to_lower_case(self, resolver):
        device_id = str(uuid.uuid4())

        assert resolver.resolve(device_id.upper(), None, DESKTOP_UA).id == device_id

    def test_renamed_device_keeps_name(self, resolver, store):
        info = resolver.resolve(None, None, DESKTOP_UA)
        store.rename_device(info.id, "Lobby Kiosk")

        assert resolver.resolve(info.id, None, DESKTOP_UA).name == "Lobby Kiosk"

    def test_blocked_device_rejected(self, resolver, store):
        info = resolver.resolve(None, None, DESKTOP_UA)
        store.set_device_blocked(info.id, True)

        with pytest.raises(DeviceBlockedError):
            resolver.resolve(info.id, None, DESKTOP_UA)
