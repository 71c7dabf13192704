from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.errors import TokenExpiredError, TokenInvalidError
from eventauth.storage.models import User

logger = get_logger(__name__)

CLAIMS_VERSION = 1
ACCESS = "access"
REFRESH = "refresh"
DEFAULT_LIFETIME_SECONDS = 24 * 60 * 60

_LIFETIME_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_lifetime(value: str | int) -> int:
    """Convert ``"30m"``/``"24h"``/``"7d"`` style lifetimes to seconds.

    Unknown units fall back to 24 hours instead of failing.
    """
    if isinstance(value, int):
        return value
    match = _LIFETIME_RE.match(value or "")
    if not match:
        logger.warning(
            "token_lifetime_unrecognized",
            value=value,
            fallback_seconds=DEFAULT_LIFETIME_SECONDS,
        )
        return DEFAULT_LIFETIME_SECONDS
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


@dataclass(frozen=True)
class TokenClaims:
    """Closed, versioned claim set shared by access and refresh tokens."""

    user_id: str
    email: str
    role: str
    session_id: str
    token_type: str
    issued_at: int
    expires_at: int
    jti: str = field(default_factory=lambda: str(uuid.uuid4()))
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    version: int = CLAIMS_VERSION

    def to_payload(self, issuer: str, audience: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "v": self.version,
            "iss": issuer,
            "aud": audience,
            "sub": self.user_id,
            "email": self.email,
            "role": self.role,
            "sid": self.session_id,
            "token_type": self.token_type,
            "jti": self.jti,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }
        if self.ip is not None:
            payload["ip"] = self.ip
        if self.user_agent is not None:
            payload["ua"] = self.user_agent
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        if payload.get("v") != CLAIMS_VERSION:
            raise TokenInvalidError("unsupported token version")
        try:
            return cls(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                session_id=str(payload["sid"]),
                token_type=str(payload["token_type"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                jti=str(payload["jti"]),
                ip=payload.get("ip"),
                user_agent=payload.get("ua"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("token is missing required claims") from exc


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_claims: TokenClaims
    refresh_claims: TokenClaims
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return self.access_claims.expires_at - self.access_claims.issued_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class TokenService:
    """Issue and verify HS256 JWTs.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so one can never be replayed as the other.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.settings = settings
        self._clock = clock or time.time
        self.access_ttl = parse_lifetime(settings.jwt_expires_in)
        self.refresh_ttl = parse_lifetime(settings.jwt_refresh_expires_in)
        self.remember_me_ttl = parse_lifetime(settings.jwt_remember_me_expires_in)
        self._leeway = settings.jwt_clock_skew_seconds

    def _now(self) -> int:
        return int(self._clock())

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == ACCESS:
            return self.settings.jwt_secret.encode()
        return self.settings.refresh_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, claims: TokenClaims) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload = claims.to_payload(self.settings.jwt_issuer, self.settings.jwt_audience)
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self._secret_for(claims.token_type))}"

    def _decode(self, token: str, token_type: str) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token") from None
        # reject alg confusion (including "none")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secret_for(token_type))
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("invalid token audience")
        if payload.get("token_type") != token_type:
            raise TokenInvalidError("wrong token type")

        claims = TokenClaims.from_payload(payload)
        if self._now() >= claims.expires_at + self._leeway:
            raise TokenExpiredError(f"{token_type} token expired")
        return claims

    def new_claims(
        self,
        user: User,
        session_id: str,
        token_type: str,
        *,
        lifetime_seconds: Optional[int] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenClaims:
        if token_type not in (ACCESS, REFRESH):
            raise ValueError(f"unknown token type '{token_type}'")
        if lifetime_seconds is None:
            lifetime_seconds = self.access_ttl if token_type == ACCESS else self.refresh_ttl
        now = self._now()
        return TokenClaims(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=session_id,
            token_type=token_type,
            issued_at=now,
            expires_at=now + lifetime_seconds,
            ip=ip,
            user_agent=user_agent,
        )

    def issue_access_token(self, claims: TokenClaims) -> str:
        if claims.token_type != ACCESS:
            raise ValueError("claims are not for an access token")
        return self._encode(claims)

    def issue_refresh_token(self, claims: TokenClaims) -> str:
        if claims.token_type != REFRESH:
            raise ValueError("claims are not for a refresh token")
        return self._encode(claims)

    def issue_pair(
        self,
        user: User,
        session_id: str,
        *,
        remember_me: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        access_claims = self.new_claims(user, session_id, ACCESS, ip=ip, user_agent=user_agent)
        refresh_claims = self.new_claims(
            user,
            session_id,
            REFRESH,
            lifetime_seconds=self.remember_me_ttl if remember_me else self.refresh_ttl,
        )
        return TokenPair(
            access_token=self.issue_access_token(access_claims),
            refresh_token=self.issue_refresh_token(refresh_claims),
            access_claims=access_claims,
            refresh_claims=refresh_claims,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._decode(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._decode(token, REFRESH)

    @staticmethod
    def extract_from_header(header: Optional[str]) -> Optional[str]:
        """Return the token of a ``Bearer <token>`` header, else None."""
        if not header or not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):].strip()
        return token or None

    @staticmethod
    def hash_refresh_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()
