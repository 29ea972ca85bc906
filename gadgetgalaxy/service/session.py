from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import Forbidden, Unauthenticated
from gadgetgalaxy.service.tokens import (
    TokenClaims,
    TokenExpired,
    TokenInvalid,
    TokenPair,
    TokenService,
)
from gadgetgalaxy.storage.models import Account

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


@dataclass
class AuthenticatedRequest:
    """Per-request identity handed to protected handlers.

    ``refreshed_tokens`` is set when an expired access token was silently
    renewed; the route layer then re-issues both cookies.
    """

    account: Account
    claims: TokenClaims
    refreshed_tokens: Optional[TokenPair] = None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def _require_usable(account: Account) -> None:
    if not account.is_active:
        raise Forbidden("Account is inactive", reason="inactive", requires_verification=not account.is_email_verified)
    if not account.is_email_verified:
        raise Forbidden("Email not verified", reason="unverified", requires_verification=True)


class SessionMiddleware:
    """Resolves the caller from a bearer header or the session cookies."""

    def __init__(self, store, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def authenticate(
        self,
        authorization: Optional[str],
        cookies: Mapping[str, str],
    ) -> AuthenticatedRequest:
        token = bearer_token(authorization) or cookies.get(ACCESS_COOKIE)
        if not token:
            raise Unauthenticated("Access token not found")
        try:
            claims = self.tokens.verify_access(token)
        except TokenExpired:
            return self.refresh(cookies.get(REFRESH_COOKIE))
        except TokenInvalid:
            raise Unauthenticated("Invalid token") from None

        account = self.store.get_account(claims.sub)
        if account is None:
            raise Unauthenticated("User not found")
        _require_usable(account)
        return AuthenticatedRequest(account=account, claims=claims)

    def refresh(self, refresh_token: Optional[str]) -> AuthenticatedRequest:
        """Mint a new token pair from a refresh token, rotating its version."""
        if not refresh_token:
            raise Unauthenticated("Invalid refresh token")
        try:
            refresh_claims = self.tokens.verify_refresh(refresh_token)
        except (TokenExpired, TokenInvalid):
            raise Unauthenticated("Invalid refresh token") from None

        account = self.store.get_account(refresh_claims.sub)
        if account is None or account.token_version != refresh_claims.version:
            logger.info("refresh_token_rejected", account_id=refresh_claims.sub)
            raise Unauthenticated("Invalid refresh token")
        try:
            _require_usable(account)
        except Forbidden as exc:
            logger.info("refresh_token_rejected", account_id=account.id, reason=exc.reason)
            raise Unauthenticated("Invalid refresh token") from None

        pair = self.tokens.issue(account)
        # Compare-and-set: a replayed token loses the race and is rejected
        if not self.store.rotate_token_version(account.id, refresh_claims.version, pair.version):
            raise Unauthenticated("Invalid refresh token")
        account.token_version = pair.version
        claims = self.tokens.verify_access(pair.access_token)
        logger.info("session_refreshed", account_id=account.id)
        return AuthenticatedRequest(account=account, claims=claims, refreshed_tokens=pair)


def authorize(ctx: AuthenticatedRequest, *roles: str) -> AuthenticatedRequest:
    """Require one of ``roles``; admin access also rejects pre-password-change tokens."""
    if ctx.account.role not in roles:
        raise Forbidden("Insufficient permissions", reason="role")
    changed_at = ctx.account.secret_changed_at
    if "admin" in roles and changed_at is not None and ctx.claims.iat < changed_at.timestamp():
        logger.info("stale_admin_token_rejected", account_id=ctx.account.id)
        raise Forbidden("Recent password change detected. Please login again.", reason="stale")
    return ctx
