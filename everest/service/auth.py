from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from everest.config import Settings
from everest.logging import get_logger
from everest.service.email import EmailService
from everest.service.errors import (
    AuthenticationError,
    ClientMismatchError,
    ConfigurationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidSignatureError,
    MissingRefreshTokenError,
    NoTokenError,
    NotFoundError,
    RevokedTokenError,
    ServerError,
    ServiceError,
    SessionRevokedError,
    SessionTimeoutError,
    TokenExpiredError,
    UserInactiveError,
    ValidationError,
)
from everest.service.revocation import TokenRevocationList
from everest.service.tokens import IssuedToken, TokenClaims, TokenCodec, hash_token
from everest.storage.errors import ConstraintViolation
from everest.storage.models import ROLES, AuditLogEntry, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# Near-expiry rotation failures that mean the refresh cookie is useless.
_CLEAR_COOKIE_CODES = frozenset({"INVALID_REFRESH_TOKEN", "SESSION_REVOKED"})


class CredentialStore(Protocol):
    def create_user(
        self, username: str, email: str, *, role: str = "user", is_active: bool = True
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, *, offset: int = 0, limit: int = 100) -> List[User]: ...

    def count_users(self) -> int: ...

    def update_user_profile(
        self, user_id: str, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_refresh_token_hash(self, user_id: str, token_hash: Optional[str]) -> Optional[User]: ...

    def rotate_refresh_token(
        self, user_id: str, *, expected_hash: str, expected_version: int, new_hash: str
    ) -> Optional[User]: ...

    def revoke_user_sessions(self, user_id: str) -> Optional[User]: ...

    def set_password_reset(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[User]: ...

    def get_user_by_reset_hash(self, token_hash: str) -> Optional[User]: ...

    def record_audit(
        self, action: str, target_id: str, performed_by: str, metadata: Optional[dict] = None
    ) -> AuditLogEntry: ...

    def list_audit_logs(self, *, limit: int = 100) -> List[AuditLogEntry]: ...


def client_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """Hash binding a token pair to the client that obtained it."""

    material = f"{user_agent or ''}{ip_address or ''}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RequestContext:
    user_agent: str = ""
    ip_address: str = ""

    @property
    def fingerprint(self) -> str:
        return client_fingerprint(self.user_agent, self.ip_address)


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @classmethod
    def for_error(cls, exc: ServiceError) -> "SessionState":
        """State a session is left in after ``exc`` rejected it."""
        if isinstance(exc, NoTokenError):
            return cls.ANONYMOUS
        if isinstance(exc, (TokenExpiredError, SessionTimeoutError)):
            return cls.EXPIRED
        return cls.REVOKED


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token

    @property
    def expires_at(self) -> datetime:
        return self.access.expires_at


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str
    session_version: int
    session_issued_at: datetime
    expires_at: datetime
    username: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a refresh-token rotation; exactly one of tokens/error is set."""

    ok: bool
    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    error: Optional[AuthenticationError] = None

    @classmethod
    def success(cls, user: User, tokens: TokenPair) -> "RotationResult":
        return cls(ok=True, user=user, tokens=tokens)

    @classmethod
    def failure(cls, error: AuthenticationError) -> "RotationResult":
        return cls(ok=False, error=error)

    def unwrap(self) -> Tuple[User, TokenPair]:
        if not self.ok:
            raise self.error or InvalidRefreshTokenError()
        return self.user, self.tokens


@dataclass(frozen=True)
class AuthOutcome:
    identity: Identity
    state: SessionState
    tokens: Optional[TokenPair] = None
    clear_refresh_cookies: bool = False


class SessionManager:
    """Login, rotation, validation and account flows for token sessions.

    Access tokens are bound to a client fingerprint and to the user's
    ``session_version``; bumping the version (rotation, logout, password
    change, deactivation) invalidates every token embedding an older value.
    The revocation list is only a fast path in front of that check.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        revocations: TokenRevocationList,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.revocations = revocations
        self.settings = settings
        self.email_service = email_service or EmailService(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self.codec.clock()

    # -- passwords -------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        # Unknown accounts still pay for one argon2 verification.
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    # -- token issuance --------------------------------------------------

    def _issue_pair(self, user: User, session_version: int, fingerprint: str) -> TokenPair:
        access = self.codec.issue_access_token(user.id, user.role, session_version, fingerprint)
        refresh = self.codec.issue_refresh_token(user.id, session_version)
        return TokenPair(access=access, refresh=refresh)

    def _start_session(self, user: User, ctx: RequestContext) -> TokenPair:
        """Issue a pair for the user's current version and store its refresh hash."""
        tokens = self._issue_pair(user, user.session_version, ctx.fingerprint)
        self.store.set_refresh_token_hash(user.id, hash_token(tokens.refresh_token))
        return tokens

    @staticmethod
    def _identity(user: User, claims: TokenClaims) -> Identity:
        return Identity(
            user_id=user.id,
            role=user.role,
            session_version=claims.session_version,
            session_issued_at=claims.issued_at_dt,
            expires_at=claims.expires_at_dt,
            username=user.username,
            email=user.email,
        )

    # -- session lifecycle -----------------------------------------------

    async def login(self, email: str, password: str, ctx: RequestContext) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_verification(password)
            self.logger.warning("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not self.verify_password(user.id, password):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()
        tokens = self._start_session(user, ctx)
        self.logger.info("user_logged_in", user_id=user.id, session_version=user.session_version)
        return user, tokens

    async def validate_access_token(self, token: str, ctx: RequestContext) -> Identity:
        claims = self.codec.verify_access(token)
        return await self._check_access_claims(token, claims, ctx)

    async def _check_access_claims(
        self, token: str, claims: TokenClaims, ctx: RequestContext
    ) -> Identity:
        if not claims.fingerprint or not hmac.compare_digest(claims.fingerprint, ctx.fingerprint):
            self.logger.warning("session_fingerprint_mismatch", user_id=claims.subject)
            raise ClientMismatchError()
        user = self.store.get_user(claims.subject)
        if not user:
            raise InvalidSignatureError()
        if not user.is_active:
            raise UserInactiveError()
        if claims.session_version != user.session_version:
            raise SessionRevokedError()
        age = self._now() - claims.issued_at_dt
        if age > timedelta(minutes=self.settings.session_timeout_minutes):
            raise SessionTimeoutError()
        if await self.revocations.is_revoked(hash_token(token)):
            raise RevokedTokenError()
        return self._identity(user, claims)

    async def rotate(
        self,
        refresh_token: Optional[str],
        ctx: RequestContext,
        *,
        expected_subject: Optional[str] = None,
    ) -> RotationResult:
        """Exchange a refresh token for a new pair, invalidating the old one.

        Never raises for token problems; the failure kind is reported on the
        result. Configuration errors still propagate. When ``expected_subject``
        is given, a refresh token issued to any other user is rejected so an
        existing session can only be extended by its own refresh token.
        """

        if not refresh_token:
            return RotationResult.failure(MissingRefreshTokenError())
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenExpiredError as exc:
            return RotationResult.failure(exc)
        except ConfigurationError:
            raise
        except AuthenticationError as exc:
            self.logger.info("refresh_token_rejected", error_code=exc.error_code)
            return RotationResult.failure(InvalidRefreshTokenError())
        if expected_subject is not None and claims.subject != expected_subject:
            self.logger.warning(
                "refresh_subject_mismatch",
                user_id=expected_subject,
                refresh_user_id=claims.subject,
            )
            return RotationResult.failure(InvalidRefreshTokenError())

        token_hash = hash_token(refresh_token)
        if await self.revocations.is_revoked(token_hash):
            return RotationResult.failure(InvalidRefreshTokenError())
        user = self.store.get_user(claims.subject)
        if not user or not user.is_active:
            return RotationResult.failure(InvalidRefreshTokenError())
        if claims.session_version != user.session_version:
            return RotationResult.failure(SessionRevokedError())
        if not user.refresh_token_hash or not hmac.compare_digest(
            user.refresh_token_hash, token_hash
        ):
            return RotationResult.failure(InvalidRefreshTokenError())

        tokens = self._issue_pair(user, user.session_version + 1, ctx.fingerprint)
        updated = self.store.rotate_refresh_token(
            user.id,
            expected_hash=token_hash,
            expected_version=user.session_version,
            new_hash=hash_token(tokens.refresh_token),
        )
        if updated is None:
            current = self.store.get_user(user.id)
            self.logger.warning("refresh_rotation_lost_race", user_id=user.id)
            if current and current.session_version != user.session_version:
                return RotationResult.failure(SessionRevokedError())
            return RotationResult.failure(InvalidRefreshTokenError())

        await self.revocations.revoke(token_hash, claims.expires_at_dt)
        self.logger.info(
            "refresh_token_rotated", user_id=user.id, session_version=updated.session_version
        )
        return RotationResult.success(updated, tokens)

    async def refresh(self, refresh_token: Optional[str], ctx: RequestContext) -> Tuple[User, TokenPair]:
        result = await self.rotate(refresh_token, ctx)
        return result.unwrap()

    async def logout(self, user_id: str, access_token: Optional[str] = None) -> None:
        if access_token:
            try:
                claims: Optional[TokenClaims] = self.codec.verify_access(access_token)
            except AuthenticationError:
                claims = None
            if claims is not None:
                await self.revocations.revoke(hash_token(access_token), claims.expires_at_dt)
        self.store.revoke_user_sessions(user_id)
        self.logger.info("user_logged_out", user_id=user_id)

    def _rotated_outcome(
        self, result: RotationResult, state: SessionState
    ) -> AuthOutcome:
        identity = self._identity(result.user, result.tokens.access.claims)
        return AuthOutcome(identity=identity, state=state, tokens=result.tokens)

    async def authenticate(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        ctx: RequestContext,
    ) -> AuthOutcome:
        """Resolve the caller's identity, rotating tokens when they are stale.

        Missing or expired access tokens are replaced inline when a usable
        refresh token accompanies them. Tokens inside the refresh window are
        rotated opportunistically; failures there keep the current session.
        """

        if not access_token:
            if not refresh_token:
                raise NoTokenError()
            result = await self.rotate(refresh_token, ctx)
            if not result.ok:
                self.logger.info("soft_expiry_rotation_failed", error_code=result.error.error_code)
                raise TokenExpiredError() from result.error
            return self._rotated_outcome(result, SessionState.EXPIRED)

        try:
            claims = self.codec.verify_access(access_token)
        except TokenExpiredError as exc:
            if not refresh_token or exc.claims is None:
                raise
            result = await self.rotate(refresh_token, ctx, expected_subject=exc.claims.subject)
            if not result.ok:
                self.logger.info("soft_expiry_rotation_failed", error_code=result.error.error_code)
                raise TokenExpiredError() from result.error
            return self._rotated_outcome(result, SessionState.EXPIRED)

        identity = await self._check_access_claims(access_token, claims, ctx)
        window = timedelta(seconds=self.settings.token_refresh_window_seconds)
        if claims.remaining(self._now()) >= window:
            return AuthOutcome(identity=identity, state=SessionState.AUTHENTICATED)
        if not refresh_token:
            return AuthOutcome(identity=identity, state=SessionState.NEAR_EXPIRY)

        result = await self.rotate(refresh_token, ctx, expected_subject=claims.subject)
        if result.ok:
            return self._rotated_outcome(result, SessionState.NEAR_EXPIRY)
        self.logger.warning(
            "near_expiry_rotation_failed",
            user_id=identity.user_id,
            error_code=result.error.error_code,
        )
        return AuthOutcome(
            identity=identity,
            state=SessionState.NEAR_EXPIRY,
            clear_refresh_cookies=result.error.error_code in _CLEAR_COOKIE_CODES,
        )

    # -- account flows ---------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        try:
            uuid.UUID(user_id)
        except (TypeError, ValueError) as exc:
            raise NotFoundError("No user found with that ID") from exc
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("No user found with that ID")
        return user

    async def register(
        self, username: str, email: str, password: str, ctx: RequestContext
    ) -> Tuple[User, TokenPair]:
        try:
            user = self.store.create_user(username, email)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        tokens = self._start_session(user, ctx)
        self.logger.info("user_registered", user_id=user.id)
        return user, tokens

    def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        if username is None and email is None:
            raise ValidationError("Nothing to update")
        try:
            user = self.store.update_user_profile(user_id, username=username, email=email)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not user:
            raise NotFoundError("No user found with that ID")
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        ctx: RequestContext,
    ) -> Tuple[User, TokenPair]:
        self._require_user(user_id)
        if not self.verify_password(user_id, current_password):
            raise InvalidCredentialsError("Your current password is incorrect")
        if hmac.compare_digest(current_password.encode(), new_password.encode()):
            raise ValidationError("New password must be different from current password")
        self.save_password(user_id, new_password)
        user = self.store.revoke_user_sessions(user_id)
        tokens = self._start_session(user, ctx)
        self.logger.info("password_changed", user_id=user_id)
        return user, tokens

    async def forgot_password(self, email: str) -> None:
        """Email a single-use reset link; unknown addresses succeed silently."""

        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info("password_reset_requested_unknown")
            return
        token = secrets.token_hex(32)
        ttl_minutes = self.settings.password_reset_ttl_minutes
        expires_at = self._now() + timedelta(minutes=ttl_minutes)
        self.store.set_password_reset(user.id, hash_token(token), expires_at)
        sent = await asyncio.to_thread(
            self.email_service.send_password_reset, user.email, token, ttl_minutes=ttl_minutes
        )
        if not sent:
            self.store.set_password_reset(user.id, None, None)
            raise ServerError("There was an error sending the email. Try again later!")
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(
        self, token: str, password: str, ctx: RequestContext
    ) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_reset_hash(hash_token(token)) if token else None
        if (
            not user
            or not user.is_active
            or user.password_reset_expires_at is None
            or user.password_reset_expires_at <= self._now()
        ):
            raise ValidationError("Token is invalid or has expired")
        self.save_password(user.id, password)
        self.store.set_password_reset(user.id, None, None)
        user = self.store.revoke_user_sessions(user.id)
        tokens = self._start_session(user, ctx)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user, tokens

    # -- administration --------------------------------------------------

    def list_users(self, *, page: int = 1, limit: int = 10) -> Tuple[List[User], int]:
        offset = (page - 1) * limit
        return self.store.list_users(offset=offset, limit=limit), self.store.count_users()

    def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)

    def set_user_role(self, actor_id: str, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")
        existing = self._require_user(user_id)
        user = self.store.update_user_role(user_id, role)
        self.store.record_audit(
            "ROLE_CHANGE",
            user_id,
            actor_id,
            {"old_role": existing.role, "new_role": role},
        )
        self.logger.info(
            "user_role_changed",
            user_id=user_id,
            performed_by=actor_id,
            old_role=existing.role,
            new_role=role,
        )
        return user

    def deactivate_user(self, actor_id: str, user_id: str) -> None:
        if actor_id == user_id:
            raise ValidationError("You cannot deactivate your own account")
        existing = self._require_user(user_id)
        self.store.set_user_active(user_id, False)
        self.store.revoke_user_sessions(user_id)
        self.store.record_audit(
            "USER_DEACTIVATE",
            user_id,
            actor_id,
            {"username": existing.username},
        )
        self.logger.info("user_deactivated", user_id=user_id, performed_by=actor_id)

    def list_audit_logs(self, *, limit: int = 100) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(limit=limit)
