from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from everest.api.deps import get_device, get_staff
from everest.api.schemas import (
    ActiveDeviceResponse,
    ActiveDevicesResponse,
    BlockDeviceRequest,
    ConversationResponse,
    DeviceDetailsResponse,
    DeviceResponse,
    Envelope,
    GuestMessageRequest,
    InboxResponse,
    MessageResponse,
    PaginationMeta,
    RenameDeviceRequest,
    StaffMessageRequest,
)
from everest.service.auth import Identity
from everest.service.chat import ConversationPage
from everest.service.devices import DeviceInfo
from everest.service.runtime import get_runtime

router = APIRouter(prefix="/api/chat", tags=["chat"])


def _conversation_payload(page: ConversationPage) -> ConversationResponse:
    return ConversationResponse(
        messages=[MessageResponse.from_message(m) for m in page.items],
        unread_count=page.unread_count,
        pagination=PaginationMeta.from_page(page),
    )


# -- guest routes -----------------------------------------------------------


@router.post("/guest/send", response_model=Envelope, status_code=201)
async def guest_send(body: GuestMessageRequest, device: DeviceInfo = Depends(get_device)):
    message = get_runtime().chat.guest_send(
        device, body.content, body.recipient_type, body.recipient_id
    )
    return Envelope(data={"message": MessageResponse.from_message(message)})


@router.get("/guest/conversation", response_model=Envelope)
async def guest_conversation(
    since: Optional[datetime] = Query(None),
    sender_type: Optional[Literal["guest"]] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    device: DeviceInfo = Depends(get_device),
):
    result = get_runtime().chat.conversation(
        device.id, since=since, sender_type=sender_type, page=page, limit=limit
    )
    return Envelope(data=_conversation_payload(result))


@router.patch("/device/rename", response_model=Envelope)
async def rename_device(body: RenameDeviceRequest, device: DeviceInfo = Depends(get_device)):
    renamed = get_runtime().chat.rename_device(device, body.device_id, body.new_name)
    return Envelope(data={"device": DeviceResponse.from_device(renamed)})


# -- staff routes -----------------------------------------------------------


@router.post("/staff/send", response_model=Envelope, status_code=201)
async def staff_send(body: StaffMessageRequest, staff: Identity = Depends(get_staff)):
    message = get_runtime().chat.staff_send(staff, body.device_id, body.content)
    return Envelope(data={"message": MessageResponse.from_message(message)})


@router.get("/staff/conversation/{device_id}", response_model=Envelope)
async def staff_conversation(
    device_id: str,
    since: Optional[datetime] = Query(None),
    sender_type: Optional[Literal["guest"]] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    staff: Identity = Depends(get_staff),
):
    result = get_runtime().chat.staff_conversation(
        device_id, since=since, sender_type=sender_type, page=page, limit=limit
    )
    return Envelope(data=_conversation_payload(result))


@router.get("/staff/devices", response_model=Envelope)
async def active_devices(
    last_hours: int = Query(24, ge=1, le=720),
    search: str = Query("", max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    staff: Identity = Depends(get_staff),
):
    result = get_runtime().chat.active_devices(
        last_hours=last_hours, search=search, page=page, limit=limit
    )
    return Envelope(
        data=ActiveDevicesResponse(
            devices=[ActiveDeviceResponse.from_active(d) for d in result.items],
            total_unread=result.total_unread,
            pagination=PaginationMeta.from_page(result),
        )
    )


@router.patch("/messages/{message_id}/read", response_model=Envelope)
async def mark_message_read(message_id: str, staff: Identity = Depends(get_staff)):
    message = get_runtime().chat.mark_message_read(message_id)
    return Envelope(data={"message": MessageResponse.from_message(message)})


@router.patch("/users/{device_id}/mark-read", response_model=Envelope)
async def mark_device_read(device_id: str, staff: Identity = Depends(get_staff)):
    updated = get_runtime().chat.mark_device_read(device_id)
    return Envelope(data={"updated_count": updated})


@router.patch("/device/block", response_model=Envelope)
async def block_device(body: BlockDeviceRequest, staff: Identity = Depends(get_staff)):
    device = get_runtime().chat.set_device_blocked(staff, body.device_id, body.is_blocked)
    return Envelope(data={"device": DeviceResponse.from_device(device)})


@router.get("/messages/received", response_model=Envelope)
async def received_messages(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    staff: Identity = Depends(get_staff),
):
    result = get_runtime().chat.received_messages(page=page, limit=limit)
    return Envelope(
        data=InboxResponse(
            messages=[MessageResponse.from_message(m) for m in result.items],
            unread_count=result.unread_count,
            pagination=PaginationMeta.from_page(result),
        )
    )


@router.get("/users/{device_id}", response_model=Envelope)
async def device_details(device_id: str, staff: Identity = Depends(get_staff)):
    details = get_runtime().chat.device_details(device_id)
    base = DeviceResponse.from_device(details.device)
    return Envelope(
        data={
            "device": DeviceDetailsResponse(
                **base.model_dump(),
                last_message=(
                    MessageResponse.from_message(details.last_message)
                    if details.last_message
                    else None
                ),
                unread_count=details.unread_count,
            )
        }
    )
