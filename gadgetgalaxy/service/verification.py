from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import timedelta

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import InvalidOrExpiredToken, NotFoundError
from gadgetgalaxy.storage.models import Account, utcnow

logger = get_logger(__name__)

PURPOSES = ("email", "reset")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class VerificationService:
    """Single-use email verification and password reset tokens.

    Only the sha256 of a token is stored; the plaintext exists in the
    outgoing email and nowhere else.
    """

    def __init__(
        self,
        store,
        *,
        email_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.ttls = {"email": email_ttl, "reset": reset_ttl}

    def issue(self, account_id: str, purpose: str) -> str:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown verification purpose: {purpose}")
        token = secrets.token_hex(32)
        expires_at = utcnow() + self.ttls[purpose]
        if not self.store.set_verification_token(account_id, purpose, hash_token(token), expires_at):
            raise NotFoundError("User not found")
        logger.info("verification_token_issued", account_id=account_id, purpose=purpose)
        return token

    def consume(self, token: str, purpose: str) -> Account:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown verification purpose: {purpose}")
        message = (
            "Invalid or expired verification token"
            if purpose == "email"
            else "Invalid or expired reset token"
        )
        if not token:
            raise InvalidOrExpiredToken(message)
        # Unknown, used and expired tokens are indistinguishable to the caller
        account = self.store.consume_verification_token(purpose, hash_token(token), utcnow())
        if account is None:
            raise InvalidOrExpiredToken(message)
        logger.info("verification_token_consumed", account_id=account.id, purpose=purpose)
        return account

    async def issue_async(self, account_id: str, purpose: str) -> str:
        return await asyncio.to_thread(self.issue, account_id, purpose)

    async def consume_async(self, token: str, purpose: str) -> Account:
        return await asyncio.to_thread(self.consume, token, purpose)
