from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.lockout import next_state
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.storage.errors import ConstraintViolation
from gadgetgalaxy.storage.models import (
    Account,
    AccountCreate,
    ProfileImage,
    normalize_email,
    utcnow,
)

# Fields callers may change through update_account; "password" is hashed first
_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "email",
        "first_name",
        "last_name",
        "image",
        "role",
        "is_active",
        "is_email_verified",
        "provider",
        "federated_id",
        "last_login",
        "token_version",
        "password",
    }
)

_DATETIME_FIELDS = (
    "secret_changed_at",
    "email_verification_expires_at",
    "password_reset_expires_at",
    "lock_until",
    "last_login",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-process account store for tests and local development.

    Every mutation happens under one re-entrant lock, which gives the same
    single-document atomicity the Postgres store gets from ``UPDATE ...
    RETURNING``. When ``fs_root`` is set the state is mirrored to a JSON file.
    """

    def __init__(self, fs_root: Optional[str] = None, *, hasher: SecretHasher) -> None:
        self.logger = get_logger(__name__)
        self.hasher = hasher
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # lookups
    def _find_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        return next((a for a in self.accounts.values() if a.email == normalized), None)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return account.without_secret() if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return account.without_secret() if account else None

    def get_account_with_secret(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email_with_secret(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return replace(account) if account else None

    def get_account_by_federated_id(self, federated_id: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.federated_id == federated_id),
                None,
            )
            return account.without_secret() if account else None

    # writes
    def create_account(self, data: AccountCreate) -> Account:
        secret_hash = self.hasher.hash(data.password)
        with self._data_lock:
            if self._find_by_email(data.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if data.federated_id and any(
                a.federated_id == data.federated_id for a in self.accounts.values()
            ):
                raise ConstraintViolation(
                    "federated id already linked", {"field": "federated_id"}
                )
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=data.email,
                name=data.name,
                role=data.role,
                provider=data.provider,
                federated_id=data.federated_id,
                first_name=data.first_name,
                last_name=data.last_name,
                image=ProfileImage(
                    public_id=data.image_public_id, url=data.image_url or ""
                ),
                secret_hash=secret_hash,
                is_email_verified=data.is_email_verified,
                last_login=data.last_login,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account.without_secret()

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        password = fields.pop("password", None)
        secret_hash = self.hasher.hash(password) if password is not None else None
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                owner = self._find_by_email(fields["email"])
                if owner and owner.id != account_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            federated_id = fields.get("federated_id")
            if federated_id and any(
                a.federated_id == federated_id and a.id != account_id
                for a in self.accounts.values()
            ):
                raise ConstraintViolation(
                    "federated id already linked", {"field": "federated_id"}
                )
            now = utcnow()
            for name, value in fields.items():
                setattr(account, name, value)
            if secret_hash is not None:
                account.secret_hash = secret_hash
                # Backdated so a token minted in the same second still counts as stale
                account.secret_changed_at = now - timedelta(seconds=1)
            account.updated_at = now
            self._persist_state()
            return account.without_secret()

    def rehash_secret(self, account_id: str, password: str) -> bool:
        """Store a fresh hash of the same password; ``secret_changed_at`` is kept."""
        secret_hash = self.hasher.hash(password)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.secret_hash = secret_hash
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            attempts, lock_until = next_state(
                account.login_attempts,
                account.lock_until,
                now or utcnow(),
                max_attempts=max_attempts,
                lock_duration=lock_duration,
            )
            account.login_attempts = attempts
            account.lock_until = lock_until
            account.updated_at = utcnow()
            self._persist_state()
            return account.without_secret()

    def reset_login_attempts(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            if account.login_attempts == 0 and account.lock_until is None:
                return
            account.login_attempts = 0
            account.lock_until = None
            account.updated_at = utcnow()
            self._persist_state()

    def rotate_token_version(self, account_id: str, expected: str, new_version: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.token_version != expected:
                return False
            account.token_version = new_version
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def set_verification_token(
        self,
        account_id: str,
        purpose: str,
        token_hash: str,
        expires_at: datetime,
    ) -> bool:
        hash_attr, expiry_attr = _verification_columns(purpose)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            setattr(account, hash_attr, token_hash)
            setattr(account, expiry_attr, expires_at)
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def consume_verification_token(
        self, purpose: str, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        hash_attr, expiry_attr = _verification_columns(purpose)
        current = now or utcnow()
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if getattr(a, hash_attr) == token_hash
                    and getattr(a, expiry_attr) is not None
                    and getattr(a, expiry_attr) > current
                ),
                None,
            )
            if not account:
                return None
            setattr(account, hash_attr, None)
            setattr(account, expiry_attr, None)
            if purpose == "email":
                account.is_email_verified = True
            account.updated_at = utcnow()
            self._persist_state()
            return account.without_secret()

    # admin queries
    def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Account], int]:
        needle = search.strip().lower() if search else None
        with self._data_lock:
            matches = [
                a
                for a in self.accounts.values()
                if (role is None or a.role == role)
                and (is_active is None or a.is_active == is_active)
                and (
                    needle is None
                    or needle in a.email
                    or needle in a.name.lower()
                )
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            offset = max(0, page - 1) * page_size
            window = matches[offset : offset + page_size]
            return [a.without_secret() for a in window], len(matches)

    def account_stats(self) -> dict:
        with self._data_lock:
            accounts = list(self.accounts.values())
        by_role = {role: 0 for role in ("user", "admin")}
        by_provider = {provider: 0 for provider in ("local", "google", "both")}
        for account in accounts:
            by_role[account.role] = by_role.get(account.role, 0) + 1
            by_provider[account.provider] = by_provider.get(account.provider, 0) + 1
        active = sum(1 for a in accounts if a.is_active)
        return {
            "total": len(accounts),
            "active": active,
            "inactive": len(accounts) - active,
            "verified": sum(1 for a in accounts if a.is_email_verified),
            "locked": sum(
                1 for a in accounts if a.lock_until is not None and a.lock_until > utcnow()
            ),
            "by_role": by_role,
            "by_provider": by_provider,
        }

    def verify_connection(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        data = {
            "id": account.id,
            "email": account.email,
            "name": account.name,
            "role": account.role,
            "is_active": account.is_active,
            "is_email_verified": account.is_email_verified,
            "provider": account.provider,
            "federated_id": account.federated_id,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "image": {"public_id": account.image.public_id, "url": account.image.url},
            "secret_hash": account.secret_hash,
            "email_verification_token_hash": account.email_verification_token_hash,
            "password_reset_token_hash": account.password_reset_token_hash,
            "login_attempts": account.login_attempts,
            "token_version": account.token_version,
        }
        for name in _DATETIME_FIELDS:
            value = getattr(account, name)
            data[name] = value.isoformat() if value else None
        return data

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        dates = {
            name: datetime.fromisoformat(data[name]) if data.get(name) else None
            for name in _DATETIME_FIELDS
        }
        image = data.get("image") or {}
        return Account(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            provider=data.get("provider", "local"),
            federated_id=data.get("federated_id"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            image=ProfileImage(
                public_id=image.get("public_id", "default"), url=image.get("url", "")
            ),
            secret_hash=data.get("secret_hash"),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            login_attempts=int(data.get("login_attempts", 0)),
            token_version=data.get("token_version") or "",
            secret_changed_at=dates["secret_changed_at"],
            email_verification_expires_at=dates["email_verification_expires_at"],
            password_reset_expires_at=dates["password_reset_expires_at"],
            lock_until=dates["lock_until"],
            last_login=dates["last_login"],
            created_at=dates["created_at"] or utcnow(),
            updated_at=dates["updated_at"] or utcnow(),
        )


def _verification_columns(purpose: str) -> Tuple[str, str]:
    if purpose == "email":
        return "email_verification_token_hash", "email_verification_expires_at"
    if purpose == "reset":
        return "password_reset_token_hash", "password_reset_expires_at"
    raise ValueError(f"unknown verification purpose: {purpose}")
