from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from gadgetgalaxy.config import Settings
from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.storage.models import new_token_version

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for bearer token failures."""


class TokenExpired(TokenError):
    """Signature is valid but ``exp`` has passed."""


class TokenInvalid(TokenError):
    """Malformed token, bad signature, wrong algorithm or wrong token type."""


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    role: str
    type: str
    iat: float
    exp: float
    version: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    version: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Stateless HS256 access/refresh token minting and verification.

    Access and refresh tokens are signed with different keys and carry a
    ``type`` claim, so neither can stand in for the other.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token signing secrets must be non-empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock or time.time

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    def issue(self, account) -> TokenPair:
        now = self._clock()
        version = new_token_version()
        access = self._encode(
            {
                "sub": account.id,
                "role": account.role,
                "type": ACCESS,
                "iat": now,
                "exp": now + self.access_ttl.total_seconds(),
            },
            ACCESS,
        )
        refresh = self._encode(
            {
                "sub": account.id,
                "role": account.role,
                "version": version,
                "type": REFRESH,
                "iat": now,
                "exp": now + self.refresh_ttl.total_seconds(),
            },
            REFRESH,
        )
        return TokenPair(access_token=access, refresh_token=refresh, version=version)

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        claims = self._verify(token, REFRESH)
        if not claims.version:
            raise TokenInvalid("refresh token has no version")
        return claims

    def _sign(self, signing_input: str, kind: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _verify(self, token: str, kind: str) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise TokenInvalid("empty token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("malformed header") from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid("bad signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed payload") from None
        if not isinstance(payload, dict) or payload.get("type") != kind:
            raise TokenInvalid("wrong token type")

        try:
            exp = float(payload["exp"])
            iat = float(payload["iat"])
            sub = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing claims") from None
        if exp <= self._clock():
            raise TokenExpired("token expired")
        return TokenClaims(
            sub=sub,
            role=str(payload.get("role", "user")),
            type=kind,
            iat=iat,
            exp=exp,
            version=payload.get("version"),
        )
