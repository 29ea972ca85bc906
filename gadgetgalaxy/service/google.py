from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import (
    AccountAlreadyExists,
    AccountNotFound,
    EmailNotVerified,
    InternalError,
    InvalidAssertion,
    UpstreamUnavailable,
    ValidationError,
)
from gadgetgalaxy.service.passwords import unusable_password
from gadgetgalaxy.storage.errors import ConstraintViolation
from gadgetgalaxy.storage.models import (
    GOOGLE_IMAGE_ID,
    Account,
    AccountCreate,
    ProfileImage,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

Verifier = Callable[[str], Dict[str, Any]]


@dataclass(frozen=True)
class VerifiedIdentity:
    email: str
    name: str
    subject_id: str
    email_verified: bool
    picture_url: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None


def _display_name(name: Optional[str], email: str) -> str:
    # Account names must be 2-50 characters; provider names are not
    candidate = (name or "").strip()[:50].strip()
    if len(candidate) >= 2:
        return candidate
    local = email.split("@", 1)[0][:50]
    return local if len(local) >= 2 else "Google user"


class GoogleIdentityBridge:
    """Turns a Google ID token into a local account.

    The verifier is built once; tests inject a callable returning claims.
    """

    def __init__(
        self,
        client_id: Optional[str],
        store,
        *,
        verifier: Optional[Verifier] = None,
        clock_skew_seconds: int = 60,
        default_image_url: str = "",
    ) -> None:
        self.client_id = client_id
        self.store = store
        self.clock_skew_seconds = clock_skew_seconds
        self.default_image_url = default_image_url
        self._request = google_requests.Request()
        self._verifier = verifier or self._verify_with_google

    def _verify_with_google(self, assertion: str) -> Dict[str, Any]:
        if not self.client_id:
            raise InternalError("Google sign-in is not configured")
        return id_token.verify_oauth2_token(
            assertion,
            self._request,
            self.client_id,
            clock_skew_in_seconds=self.clock_skew_seconds,
        )

    def verify(self, assertion: str) -> VerifiedIdentity:
        if not assertion:
            raise ValidationError("No credential provided")
        try:
            claims = self._verifier(assertion)
        except google_exceptions.TransportError as exc:
            logger.error("google_certs_unreachable", error=str(exc))
            raise UpstreamUnavailable("Google authentication is temporarily unavailable") from exc
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            # Provider error text is not surfaced to clients
            logger.warning("google_assertion_rejected", error=str(exc))
            raise InvalidAssertion("Invalid Google credential") from exc

        email = normalize_email(str(claims.get("email") or ""))
        subject = str(claims.get("sub") or "")
        if not email or not subject:
            raise InvalidAssertion("Invalid Google credential")
        if not claims.get("email_verified"):
            raise EmailNotVerified("Google email not verified")
        return VerifiedIdentity(
            email=email,
            name=_display_name(claims.get("name"), email),
            subject_id=subject,
            email_verified=True,
            picture_url=claims.get("picture") or None,
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
        )

    async def exchange(self, assertion: str) -> VerifiedIdentity:
        # verify_oauth2_token fetches certificates over blocking HTTP
        return await asyncio.to_thread(self.verify, assertion)

    async def link(self, identity: VerifiedIdentity, *, is_registration: bool) -> Account:
        existing = await asyncio.to_thread(self.store.get_account_by_email, identity.email)
        if existing and is_registration:
            raise AccountAlreadyExists()
        if not existing and not is_registration:
            raise AccountNotFound()

        now = utcnow()
        if existing is None:
            data = AccountCreate(
                email=identity.email,
                name=identity.name,
                password=unusable_password(),
                provider="google",
                federated_id=identity.subject_id,
                first_name=identity.given_name,
                last_name=identity.family_name,
                image_public_id=GOOGLE_IMAGE_ID,
                image_url=identity.picture_url or self.default_image_url,
                is_email_verified=True,
                last_login=now,
            )
            try:
                account = await asyncio.to_thread(self.store.create_account, data)
            except ConstraintViolation as exc:
                if exc.field == "email":
                    raise AccountAlreadyExists() from exc
                raise
            logger.info("google_account_created", account_id=account.id)
            return account

        updates: Dict[str, Any] = {
            "name": identity.name,
            "first_name": identity.given_name,
            "last_name": identity.family_name,
            "federated_id": identity.subject_id,
            "last_login": now,
            "is_email_verified": True,
        }
        if identity.picture_url:
            updates["image"] = ProfileImage(public_id=GOOGLE_IMAGE_ID, url=identity.picture_url)
        if existing.provider == "local":
            updates["provider"] = "both"
        account = await asyncio.to_thread(self.store.update_account, existing.id, **updates)
        if account is None:
            raise AccountNotFound()
        logger.info("google_account_linked", account_id=account.id, provider=account.provider)
        return account
