from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from everest.service.chat import Page
from everest.service.sanitize import normalize_unicode
from everest.storage.models import ActiveDevice, ChatMessage, Device, User

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email")
    return normalized


def validate_username(value: str) -> str:
    value = normalize_unicode(value.strip())
    if len(value) < 3 or len(value) > 30:
        raise ValueError("Username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers and underscores")
    return value


def validate_password_strength(value: str) -> str:
    """Length 8-128 with at least one lower-case, upper-case and digit."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


class ErrorBody(BaseModel):
    status: Literal["fail", "error"]
    code: str
    message: str


class Envelope(BaseModel):
    status: Literal["success"] = "success"
    data: Optional[Any] = None


class _PasswordConfirmation(BaseModel):
    @model_validator(mode="after")
    def _passwords_match(self):
        password = getattr(self, "new_password", None) or getattr(self, "password", None)
        if password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


# -- account requests ---------------------------------------------------


class RegisterRequest(_PasswordConfirmation):
    username: str
    email: str
    password: str
    confirm_password: str

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
        max_length=4096,
    )


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_PasswordConfirmation):
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class ChangePasswordRequest(_PasswordConfirmation):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = None
    email: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return validate_username(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class RoleUpdateRequest(BaseModel):
    role: Literal["user", "moderator", "admin"]


# -- chat requests ------------------------------------------------------


class GuestMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    recipient_type: Literal["admin", "moderator"]
    recipient_id: Optional[str] = Field(default=None, max_length=64)


class StaffMessageRequest(BaseModel):
    device_id: str = Field(..., max_length=64)
    content: str = Field(..., min_length=1, max_length=5000)


class RenameDeviceRequest(BaseModel):
    new_name: str = Field(..., min_length=1, max_length=500)
    device_id: Optional[str] = Field(default=None, max_length=64)


class BlockDeviceRequest(BaseModel):
    device_id: str = Field(..., max_length=64)
    is_blocked: bool


# -- responses ----------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    is_active: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.public_dict())


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    expires_at: datetime


class TokenRefreshResponse(BaseModel):
    access_token: str
    expires_at: datetime


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool

    @classmethod
    def from_page(cls, page: Page) -> "PaginationMeta":
        return cls(
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
            has_more=page.has_more,
        )


class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: PaginationMeta


class AuditLogResponse(BaseModel):
    id: str
    action: str
    target_id: str
    performed_by: str
    metadata: dict
    created_at: datetime


class MessageResponse(BaseModel):
    id: str
    device_id: str
    content: str
    sender_type: str
    sender_id: str
    sender_name: str
    recipient_type: str
    recipient_id: Optional[str] = None
    read: bool
    created_at: datetime

    @classmethod
    def from_message(cls, message: ChatMessage) -> "MessageResponse":
        return cls(
            id=message.id,
            device_id=message.device_id,
            content=message.content,
            sender_type=message.sender_type,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            recipient_type=message.recipient_type,
            recipient_id=message.recipient_id,
            read=message.read,
            created_at=message.created_at,
        )


class ConversationResponse(BaseModel):
    messages: List[MessageResponse]
    unread_count: int
    pagination: PaginationMeta


class DeviceResponse(BaseModel):
    device_id: str
    nickname: str
    device_type: str
    is_blocked: bool
    last_active: datetime

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            device_id=device.device_id,
            nickname=device.name,
            device_type=device.device_type,
            is_blocked=device.is_blocked,
            last_active=device.last_active,
        )


class DeviceDetailsResponse(DeviceResponse):
    last_message: Optional[MessageResponse] = None
    unread_count: int = 0


class ActiveDeviceResponse(DeviceDetailsResponse):
    @classmethod
    def from_active(cls, entry: ActiveDevice) -> "ActiveDeviceResponse":
        base = DeviceResponse.from_device(entry.device)
        return cls(
            **base.model_dump(),
            last_message=(
                MessageResponse.from_message(entry.last_message)
                if entry.last_message
                else None
            ),
            unread_count=entry.unread_count,
        )


class ActiveDevicesResponse(BaseModel):
    devices: List[ActiveDeviceResponse]
    total_unread: int
    pagination: PaginationMeta


class InboxResponse(BaseModel):
    messages: List[MessageResponse]
    unread_count: int
    pagination: PaginationMeta
