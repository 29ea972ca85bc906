from __future__ import annotations

import asyncio
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gadgetgalaxy.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class SecretHasher:
    """Salted, adaptive one-way hashing of account passwords (argon2id).

    Hashing is deliberately slow; async callers go through ``hash_async`` /
    ``verify_async`` so the work runs in a worker thread.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, stored_hash: Optional[str], plaintext: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, stored_hash: Optional[str], plaintext: str) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, plaintext)


def unusable_password() -> str:
    """Random secret for federated-only accounts; nobody ever learns it."""
    return secrets.token_hex(32)
