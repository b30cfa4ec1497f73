from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from everest.config import Settings
from everest.logging import get_logger
from everest.service.errors import (
    ConfigurationError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
)

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


def hash_token(token: str) -> str:
    """Digest stored in place of raw tokens (refresh hash, revocation entries)."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: TokenType
    session_version: int
    issued_at: int
    not_before: int
    expires_at: int
    jti: str
    role: Optional[str] = None
    fingerprint: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def issued_at_dt(self) -> datetime:
        return _from_ts(self.issued_at)

    @property
    def expires_at_dt(self) -> datetime:
        return _from_ts(self.expires_at)

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at_dt - now

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        try:
            token_type = TokenType(payload["typ"])
            subject = payload["sub"]
            jti = payload["jti"]
            if not isinstance(subject, str) or not subject or not isinstance(jti, str):
                raise ValueError("subject and jti must be strings")
            numbers = {}
            for key in ("sv", "iat", "nbf", "exp"):
                value = payload[key]
                # bool is an int subclass; reject it explicitly
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValueError(f"{key} must be an integer")
                numbers[key] = value
        except (KeyError, ValueError) as exc:
            raise MalformedTokenError() from exc
        return cls(
            subject=subject,
            token_type=token_type,
            session_version=numbers["sv"],
            issued_at=numbers["iat"],
            not_before=numbers["nbf"],
            expires_at=numbers["exp"],
            jti=jti,
            role=payload.get("role"),
            fingerprint=payload.get("fp"),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at_dt

    @property
    def max_age_seconds(self) -> int:
        return max(0, self.claims.expires_at - self.claims.issued_at)


class TokenCodec:
    """HS256 signer/verifier for access and refresh tokens.

    Access and refresh tokens are signed with independent secrets, so a token
    of one kind never verifies as the other even if ``typ`` were forged.
    ``clock`` returns the current UTC time and may be replaced in tests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.clock: Callable[[], datetime] = clock or _utcnow

    def _secret_for(self, token_type: TokenType) -> str:
        secret = (
            self.settings.jwt_secret
            if token_type is TokenType.ACCESS
            else self.settings.jwt_refresh_secret
        )
        if not secret:
            logger.error("jwt_secret_missing", token_type=token_type.value)
            raise ConfigurationError()
        return secret

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(
            secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _issue(
        self,
        token_type: TokenType,
        user_id: str,
        session_version: int,
        ttl: timedelta,
        extra: Dict[str, Any],
    ) -> IssuedToken:
        secret = self._secret_for(token_type)
        now = int(self.clock().timestamp())
        payload: Dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sv": session_version,
            "typ": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + int(ttl.total_seconds()),
        }
        payload.update(extra)
        token = self._encode(payload, secret)
        return IssuedToken(token=token, claims=TokenClaims.from_payload(payload))

    def issue_access_token(
        self, user_id: str, role: str, session_version: int, fingerprint: str
    ) -> IssuedToken:
        return self._issue(
            TokenType.ACCESS,
            user_id,
            session_version,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            {"role": role, "fp": fingerprint},
        )

    def issue_refresh_token(self, user_id: str, session_version: int) -> IssuedToken:
        return self._issue(
            TokenType.REFRESH,
            user_id,
            session_version,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            {},
        )

    def verify(self, token: str, secret: str, *, token_type: TokenType) -> TokenClaims:
        """Verify ``token`` against ``secret`` and return its claims.

        Checks run in order: structure and encoding, header algorithm,
        signature, issuer and audience, token type, then time claims. An
        expired token raises ``TokenExpiredError`` carrying the verified
        claims so callers can still identify the session.
        """

        if not isinstance(token, str) or len(token) < self.settings.token_min_length:
            raise MalformedTokenError()
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError() from exc
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise MalformedTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError() from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignatureError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidSignatureError()

        if payload.get("typ") != token_type.value:
            raise MalformedTokenError()
        claims = TokenClaims.from_payload(payload)

        now = self.clock().timestamp()
        if claims.not_before > now:
            raise TokenNotYetValidError()
        if claims.expires_at <= now:
            raise TokenExpiredError(claims=claims)
        return claims

    def verify_access(self, token: str) -> TokenClaims:
        return self.verify(
            token, self._secret_for(TokenType.ACCESS), token_type=TokenType.ACCESS
        )

    def verify_refresh(self, token: str) -> TokenClaims:
        return self.verify(
            token, self._secret_for(TokenType.REFRESH), token_type=TokenType.REFRESH
        )
