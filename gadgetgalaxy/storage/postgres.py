from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.storage.errors import ConstraintViolation
from gadgetgalaxy.storage.models import (
    DEFAULT_IMAGE_ID,
    Account,
    AccountCreate,
    ProfileImage,
    new_token_version,
    normalize_email,
    utcnow,
)

# Column names that update_account may write directly
_UPDATABLE_COLUMNS = frozenset(
    {
        "name",
        "email",
        "first_name",
        "last_name",
        "role",
        "is_active",
        "is_email_verified",
        "provider",
        "federated_id",
        "last_login",
        "token_version",
    }
)

_VERIFICATION_COLUMNS = {
    "email": ("email_verification_token_hash", "email_verification_expires_at"),
    "reset": ("password_reset_token_hash", "password_reset_expires_at"),
}

_CONSTRAINT_FIELDS = {
    "account_email_key": "email",
    "account_federated_id_key": "federated_id",
}


def _account_uuid(account_id: str) -> Optional[uuid.UUID]:
    """Parse an id for the UUID primary key; malformed ids match no row."""
    try:
        return uuid.UUID(str(account_id))
    except ValueError:
        return None


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "email")
    if field == "federated_id":
        return ConstraintViolation("federated id already linked", {"field": field})
    return ConstraintViolation("email already exists", {"field": field})


class PostgresStore:
    """Account store backed by a single ``account`` table.

    Counter updates and token consumption are single ``UPDATE ... RETURNING``
    statements, so concurrent requests never lose an increment or consume a
    token twice.
    """

    def __init__(self, dsn: str, *, hasher: SecretHasher) -> None:
        self.dsn = dsn
        self.hasher = hasher
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        required_tables = ["account"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/001_accounts.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: dict, *, include_secret: bool = False) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            provider=row.get("provider", "local"),
            federated_id=row.get("federated_id"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            image=ProfileImage(
                public_id=row.get("image_public_id") or DEFAULT_IMAGE_ID,
                url=row.get("image_url") or "",
            ),
            secret_hash=row.get("secret_hash") if include_secret else None,
            secret_changed_at=row.get("secret_changed_at"),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            login_attempts=row.get("login_attempts", 0),
            lock_until=row.get("lock_until"),
            token_version=row.get("token_version") or "",
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _fetch_one(self, query: str, params: tuple, *, include_secret: bool = False) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._account_from_row(row, include_secret=include_secret)

    # lookups
    def get_account(self, account_id: str) -> Optional[Account]:
        key = _account_uuid(account_id)
        if key is None:
            return None
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (key,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
        )

    def get_account_with_secret(self, account_id: str) -> Optional[Account]:
        key = _account_uuid(account_id)
        if key is None:
            return None
        return self._fetch_one(
            "SELECT * FROM account WHERE id = %s", (key,), include_secret=True
        )

    def get_account_by_email_with_secret(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE email = %s",
            (normalize_email(email),),
            include_secret=True,
        )

    def get_account_by_federated_id(self, federated_id: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE federated_id = %s", (federated_id,)
        )

    # writes
    def create_account(self, data: AccountCreate) -> Account:
        secret_hash = self.hasher.hash(data.password)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        email, name, role, provider, federated_id, first_name, last_name,
                        image_public_id, image_url, secret_hash, is_email_verified,
                        last_login, token_version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        data.email,
                        data.name,
                        data.role,
                        data.provider,
                        data.federated_id,
                        data.first_name,
                        data.last_name,
                        data.image_public_id,
                        data.image_url or "",
                        secret_hash,
                        data.is_email_verified,
                        data.last_login,
                        new_token_version(),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._account_from_row(row)

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        key = _account_uuid(account_id)
        if key is None:
            return None
        assignments: List[str] = []
        params: List[Any] = []
        password = fields.pop("password", None)
        image = fields.pop("image", None)
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        for column, value in fields.items():
            assignments.append(f"{column} = %s")
            params.append(value)
        if image is not None:
            assignments.extend(["image_public_id = %s", "image_url = %s"])
            params.extend([image.public_id, image.url])
        if password is not None:
            assignments.extend(["secret_hash = %s", "secret_changed_at = %s"])
            params.extend([self.hasher.hash(password), utcnow() - timedelta(seconds=1)])
        if not assignments:
            return self.get_account(account_id)
        assignments.append("updated_at = now()")
        query = "UPDATE account SET {} WHERE id = %s RETURNING *".format(", ".join(assignments))
        params.append(key)
        try:
            return self._fetch_one(query, tuple(params))
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc

    def rehash_secret(self, account_id: str, password: str) -> bool:
        """Store a fresh hash of the same password; ``secret_changed_at`` is kept."""
        key = _account_uuid(account_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET secret_hash = %s, updated_at = now() WHERE id = %s RETURNING id",
                (self.hasher.hash(password), key),
            ).fetchone()
        return row is not None

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[Account]:
        key = _account_uuid(account_id)
        if key is None:
            return None
        current = now or utcnow()
        # SET expressions read the pre-update row, mirroring lockout.next_state
        return self._fetch_one(
            """
            UPDATE account
            SET login_attempts = CASE
                    WHEN lock_until IS NOT NULL AND lock_until < %(now)s THEN 1
                    ELSE login_attempts + 1
                END,
                lock_until = CASE
                    WHEN lock_until IS NOT NULL AND lock_until < %(now)s THEN NULL
                    WHEN lock_until IS NULL AND login_attempts + 1 >= %(max_attempts)s
                        THEN %(lock_until)s
                    ELSE lock_until
                END,
                updated_at = now()
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "now": current,
                "max_attempts": max_attempts,
                "lock_until": current + lock_duration,
                "id": key,
            },
        )

    def reset_login_attempts(self, account_id: str) -> None:
        key = _account_uuid(account_id)
        if key is None:
            return
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET login_attempts = 0, lock_until = NULL, updated_at = now()
                WHERE id = %s AND (login_attempts <> 0 OR lock_until IS NOT NULL)
                """,
                (key,),
            )

    def rotate_token_version(self, account_id: str, expected: str, new_version: str) -> bool:
        key = _account_uuid(account_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET token_version = %s, updated_at = now()
                WHERE id = %s AND token_version = %s
                RETURNING id
                """,
                (new_version, key, expected),
            ).fetchone()
        return row is not None

    def set_verification_token(
        self,
        account_id: str,
        purpose: str,
        token_hash: str,
        expires_at: datetime,
    ) -> bool:
        hash_column, expiry_column = _verification_columns(purpose)
        key = _account_uuid(account_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {hash_column} = %s, {expiry_column} = %s, updated_at = now() WHERE id = %s RETURNING id",
                (token_hash, expires_at, key),
            ).fetchone()
        return row is not None

    def consume_verification_token(
        self, purpose: str, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        hash_column, expiry_column = _verification_columns(purpose)
        verified = ", is_email_verified = TRUE" if purpose == "email" else ""
        return self._fetch_one(
            f"""
            UPDATE account
            SET {hash_column} = NULL, {expiry_column} = NULL, updated_at = now(){verified}
            WHERE {hash_column} = %s AND {expiry_column} > %s
            RETURNING *
            """,
            (token_hash, now or utcnow()),
        )

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
        clauses: List[str] = []
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        if search:
            clauses.append("(email ILIKE %s OR name ILIKE %s)")
            pattern = f"%{search.strip()}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = max(0, page - 1) * page_size
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM account {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM account {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params + [page_size, offset]),
            ).fetchall()
        accounts = [self._account_from_row(row) for row in rows]
        return accounts, int(total_row["total"]) if total_row else 0

    def account_stats(self) -> dict:
        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT count(*) AS total,
                       count(*) FILTER (WHERE is_active) AS active,
                       count(*) FILTER (WHERE is_email_verified) AS verified,
                       count(*) FILTER (WHERE lock_until > now()) AS locked
                FROM account
                """
            ).fetchone()
            role_rows = conn.execute(
                "SELECT role, count(*) AS n FROM account GROUP BY role"
            ).fetchall()
            provider_rows = conn.execute(
                "SELECT provider, count(*) AS n FROM account GROUP BY provider"
            ).fetchall()
        by_role = {"user": 0, "admin": 0}
        by_role.update({row["role"]: int(row["n"]) for row in role_rows})
        by_provider = {"local": 0, "google": 0, "both": 0}
        by_provider.update({row["provider"]: int(row["n"]) for row in provider_rows})
        total = int(totals["total"])
        active = int(totals["active"])
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "verified": int(totals["verified"]),
            "locked": int(totals["locked"]),
            "by_role": by_role,
            "by_provider": by_provider,
        }


def _verification_columns(purpose: str) -> Tuple[str, str]:
    try:
        return _VERIFICATION_COLUMNS[purpose]
    except KeyError:
        raise ValueError(f"unknown verification purpose: {purpose}") from None
