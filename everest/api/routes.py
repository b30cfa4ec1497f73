from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from everest.api.deps import (
    apply_session_cookies,
    clear_session_cookies,
    get_admin,
    get_identity,
    request_context,
)
from everest.api.error_handling import error_response
from everest.api.schemas import (
    AuditLogResponse,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PaginationMeta,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    TokenRefreshResponse,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
)
from everest.logging import get_logger
from everest.service.access import REFRESH_COOKIE, extract_token
from everest.service.auth import Identity, TokenPair
from everest.service.chat import Page
from everest.service.runtime import get_runtime
from everest.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


def _auth_payload(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(user),
        access_token=tokens.access_token,
        expires_at=tokens.expires_at,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.sessions.register(
        body.username, body.email, body.password, request_context(request)
    )
    apply_session_cookies(response, tokens)
    return Envelope(data=_auth_payload(user, tokens))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.sessions.login(
        body.email, body.password, request_context(request)
    )
    apply_session_cookies(response, tokens)
    return Envelope(data=_auth_payload(user, tokens))


@router.post("/auth/refresh", response_model=Envelope)
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    """Rotate the refresh token from the cookie, falling back to the body."""

    runtime = get_runtime()
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    result = await runtime.sessions.rotate(token, request_context(request))
    if not result.ok:
        error = result.error
        logger.warning("token_refresh_failed", error_code=error.error_code)
        failed = error_response(error.status_code, error.message, code=error.error_code)
        clear_session_cookies(failed)
        return failed
    apply_session_cookies(response, result.tokens)
    return Envelope(
        data=TokenRefreshResponse(
            access_token=result.tokens.access_token,
            expires_at=result.tokens.expires_at,
        )
    )


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    await get_runtime().sessions.forgot_password(body.email)
    return Envelope(
        data={"message": "If that email is registered, a reset link has been sent"}
    )


@router.post("/reset-password/{token}", response_model=Envelope)
async def reset_password(
    token: str, body: ResetPasswordRequest, request: Request, response: Response
):
    user, tokens = await get_runtime().sessions.reset_password(
        token, body.password, request_context(request)
    )
    apply_session_cookies(response, tokens)
    return Envelope(data=_auth_payload(user, tokens))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    authorization: Optional[str] = Header(None),
):
    access_token = extract_token(authorization, request.cookies)
    await get_runtime().sessions.logout(identity.user_id, access_token)
    clear_session_cookies(response)
    return Envelope(data={"message": "Logged out"})


@router.get("/me", response_model=Envelope)
async def get_me(identity: Identity = Depends(get_identity)):
    user = get_runtime().sessions.get_profile(identity.user_id)
    return Envelope(data={"user": UserResponse.from_user(user)})


@router.patch("/profile", response_model=Envelope)
async def update_profile(
    body: UpdateProfileRequest, identity: Identity = Depends(get_identity)
):
    user = get_runtime().sessions.update_profile(
        identity.user_id, username=body.username, email=body.email
    )
    return Envelope(data={"user": UserResponse.from_user(user)})


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
):
    user, tokens = await get_runtime().sessions.change_password(
        identity.user_id,
        body.current_password,
        body.new_password,
        request_context(request),
    )
    apply_session_cookies(response, tokens)
    return Envelope(data=_auth_payload(user, tokens))


# -- administration -------------------------------------------------------


@router.get("/", response_model=Envelope)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: Identity = Depends(get_admin),
):
    users, total = get_runtime().sessions.list_users(page=page, limit=limit)
    return Envelope(
        data=UserListResponse(
            users=[UserResponse.from_user(u) for u in users],
            pagination=PaginationMeta.from_page(Page(users, total, page, limit)),
        )
    )


@router.get("/admin/audit-logs", response_model=Envelope)
async def list_audit_logs(
    limit: int = Query(100, ge=1, le=500),
    admin: Identity = Depends(get_admin),
):
    entries = get_runtime().sessions.list_audit_logs(limit=limit)
    return Envelope(
        data={
            "logs": [
                AuditLogResponse(
                    id=e.id,
                    action=e.action,
                    target_id=e.target_id,
                    performed_by=e.performed_by,
                    metadata=e.metadata,
                    created_at=e.created_at,
                )
                for e in entries
            ]
        }
    )


@router.get("/{user_id}", response_model=Envelope)
async def get_user(user_id: str, admin: Identity = Depends(get_admin)):
    user = get_runtime().sessions.get_user(user_id)
    return Envelope(data={"user": UserResponse.from_user(user)})


@router.patch("/{user_id}/role", response_model=Envelope)
async def update_user_role(
    user_id: str, body: RoleUpdateRequest, admin: Identity = Depends(get_admin)
):
    user = get_runtime().sessions.set_user_role(admin.user_id, user_id, body.role)
    return Envelope(data={"user": UserResponse.from_user(user)})


@router.delete("/{user_id}", status_code=204)
async def deactivate_user(user_id: str, admin: Identity = Depends(get_admin)):
    get_runtime().sessions.deactivate_user(admin.user_id, user_id)
