from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from everest.logging import get_logger
from everest.service.auth import AuthOutcome, RequestContext, SessionManager, SessionState
from everest.service.errors import AuthenticationError, ForbiddenError, NoTokenError

logger = get_logger(__name__)

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refreshToken"

# Each role maps to every role whose routes it may call.
ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "user": frozenset({"user"}),
    "moderator": frozenset({"user", "moderator"}),
    "admin": frozenset({"user", "moderator", "admin"}),
}


def effective_roles(role: Optional[str]) -> FrozenSet[str]:
    return ROLE_CAPABILITIES.get(role or "", frozenset())


def role_allows(role: Optional[str], required: Iterable[str]) -> bool:
    return bool(effective_roles(role) & set(required))


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


def extract_token(authorization: Optional[str], cookies: Mapping[str, str]) -> Optional[str]:
    """Bearer header first, then the access cookie."""
    return extract_bearer(authorization) or cookies.get(ACCESS_COOKIE) or None


class AccessGate:
    """Per-request authentication and role enforcement."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def authenticate(
        self,
        authorization: Optional[str],
        cookies: Mapping[str, str],
        ctx: RequestContext,
        *,
        refresh_token: Optional[str] = None,
    ) -> AuthOutcome:
        access_token = extract_token(authorization, cookies)
        refresh_token = refresh_token or cookies.get(REFRESH_COOKIE) or None
        if not access_token and not refresh_token:
            raise NoTokenError()
        try:
            return await self.sessions.authenticate(access_token, refresh_token, ctx)
        except AuthenticationError as exc:
            logger.info(
                "authentication_failed",
                error_code=exc.error_code,
                session_state=SessionState.for_error(exc).value,
            )
            raise

    def authorize(self, user_id: str, role: Optional[str], required: Iterable[str]) -> None:
        required_roles = sorted(set(required))
        if role_allows(role, required_roles):
            return
        logger.warning(
            "role_authorization_denied",
            user_id=user_id,
            required_roles=required_roles,
            effective_roles=sorted(effective_roles(role)),
        )
        raise ForbiddenError()
