from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.email import EmailService
from gadgetgalaxy.service.errors import (
    AccountLocked,
    DuplicateKey,
    Forbidden,
    NotFoundError,
    Unauthenticated,
    UpstreamUnavailable,
    ValidationError,
)
from gadgetgalaxy.service.google import GoogleIdentityBridge
from gadgetgalaxy.service.images import ImageHost, ImageUpload, validate_upload
from gadgetgalaxy.service.lockout import LockoutPolicy
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.service.tokens import TokenPair, TokenService
from gadgetgalaxy.service.verification import VerificationService
from gadgetgalaxy.storage.errors import ConstraintViolation
from gadgetgalaxy.storage.models import (
    DEFAULT_IMAGE_ID,
    GOOGLE_IMAGE_ID,
    ROLES,
    Account,
    AccountCreate,
    ProfileImage,
    new_token_version,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Account lifecycle: sign-up, sign-in, verification, recovery and admin edits."""

    def __init__(
        self,
        store,
        hasher: SecretHasher,
        tokens: TokenService,
        verification: VerificationService,
        lockout: LockoutPolicy,
        google: GoogleIdentityBridge,
        email: EmailService,
        images: ImageHost,
        *,
        default_image_url: str,
        max_upload_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.verification = verification
        self.lockout = lockout
        self.google = google
        self.email = email
        self.images = images
        self.default_image_url = default_image_url
        self.max_upload_bytes = max_upload_bytes

    # helpers
    async def _start_session(self, account: Account, *, touch_login: bool = True) -> AuthResult:
        """Issue a token pair and make its refresh version the live one."""
        pair = self.tokens.issue(account)
        fields = {"token_version": pair.version}
        if touch_login:
            fields["last_login"] = utcnow()
        updated = await asyncio.to_thread(self.store.update_account, account.id, **fields)
        return AuthResult(account=updated or account, tokens=pair)

    def _validate_image(self, image: Optional[ImageUpload]) -> None:
        if image is not None:
            validate_upload(image.content_type, len(image.data), max_bytes=self.max_upload_bytes)

    async def _send_verification(self, account: Account) -> bool:
        token = await self.verification.issue_async(account.id, "email")
        return await self.email.send_email_verification_async(account.email, account.name, token)

    async def _require_account(self, account_id: str) -> Account:
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    # local sign-up / sign-in
    async def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        image: Optional[ImageUpload] = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        if await asyncio.to_thread(self.store.get_account_by_email, normalized):
            raise DuplicateKey("Email is already registered")
        self._validate_image(image)

        image_public_id, image_url = DEFAULT_IMAGE_ID, self.default_image_url
        if image is not None:
            try:
                uploaded = await self.images.upload(
                    image.data, filename=image.filename, content_type=image.content_type
                )
                image_public_id, image_url = uploaded.public_id, uploaded.url
            except UpstreamUnavailable:
                # Registration still succeeds with the placeholder image
                logger.warning("register_image_upload_failed", email=normalized)

        data = AccountCreate(
            email=normalized,
            name=name,
            password=password,
            image_public_id=image_public_id,
            image_url=image_url,
        )
        try:
            account = await asyncio.to_thread(self.store.create_account, data)
        except ConstraintViolation as exc:
            raise DuplicateKey("Email is already registered") from exc
        logger.info("account_registered", account_id=account.id, provider="local")

        if not await self._send_verification(account):
            logger.error("verification_email_failed", account_id=account.id)
        return await self._start_session(account, touch_login=False)

    async def login(self, email: str, password: str) -> AuthResult:
        account = await asyncio.to_thread(self.store.get_account_by_email_with_secret, email)
        if account is None:
            logger.info("login_failed_unknown_email")
            raise Unauthenticated(INVALID_CREDENTIALS)

        now = utcnow()
        if self.lockout.is_locked(account, now):
            logger.info("login_refused_locked", account_id=account.id)
            raise AccountLocked(INVALID_CREDENTIALS)

        if not await self.hasher.verify_async(account.secret_hash, password):
            state = await asyncio.to_thread(self.lockout.record_failure, account, now)
            logger.info("login_failed", account_id=account.id, attempts=state.login_attempts)
            raise Unauthenticated(INVALID_CREDENTIALS)

        await asyncio.to_thread(self.lockout.record_success, account)
        if not account.is_active:
            raise Forbidden(
                "Account is inactive",
                reason="inactive",
                requires_verification=not account.is_email_verified,
            )
        if not account.is_email_verified:
            raise Forbidden("Email not verified", reason="unverified", requires_verification=True)

        if self.hasher.needs_rehash(account.secret_hash):
            await asyncio.to_thread(self.store.rehash_secret, account.id, password)
        result = await self._start_session(account.without_secret())
        logger.info("login_succeeded", account_id=account.id)
        return result

    async def logout(self, account_id: Optional[str]) -> None:
        """Invalidate outstanding refresh tokens for the caller, if known."""
        if not account_id:
            return
        await asyncio.to_thread(
            self.store.update_account, account_id, token_version=new_token_version()
        )
        logger.info("logout", account_id=account_id)

    # email verification
    async def verify_email(self, token: str) -> AuthResult:
        account = await self.verification.consume_async(token, "email")
        logger.info("email_verified", account_id=account.id)
        return await self._start_session(account, touch_login=False)

    async def resend_verification(self, email: str) -> None:
        account = await asyncio.to_thread(self.store.get_account_by_email, email)
        if account is None:
            raise NotFoundError("User not found")
        if account.is_email_verified:
            raise ValidationError("Email is already verified")
        if not await self._send_verification(account):
            raise UpstreamUnavailable("Error sending verification email")

    # Google
    async def google_sign_in(self, credential: str, *, is_registration: bool) -> AuthResult:
        identity = await self.google.exchange(credential)
        account = await self.google.link(identity, is_registration=is_registration)
        if not account.is_active:
            raise Forbidden("Account is inactive", reason="inactive")
        await asyncio.to_thread(self.lockout.record_success, account)
        return await self._start_session(account)

    # password recovery
    async def forgot_password(self, email: str) -> None:
        """Send a reset link when the account exists; callers always see success."""
        account = await asyncio.to_thread(self.store.get_account_by_email, email)
        if account is None or not account.is_active:
            logger.info("password_reset_requested_unknown")
            return
        token = await self.verification.issue_async(account.id, "reset")
        if not await self.email.send_password_reset_async(account.email, account.name, token):
            logger.error("password_reset_email_failed", account_id=account.id)
        logger.info("password_reset_requested", account_id=account.id)

    async def reset_password(self, token: str, new_password: str) -> Account:
        account = await self.verification.consume_async(token, "reset")
        updated = await asyncio.to_thread(
            self.store.update_account,
            account.id,
            password=new_password,
            token_version=new_token_version(),
        )
        await asyncio.to_thread(self.store.reset_login_attempts, account.id)
        await self.email.send_password_changed_async(account.email, account.name)
        logger.info("password_reset_completed", account_id=account.id)
        return updated or account

    # profile
    async def get_profile(self, account_id: str) -> Account:
        return await self._require_account(account_id)

    async def update_profile(
        self,
        account: Account,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        image: Optional[ImageUpload] = None,
    ) -> Account:
        fields = {}
        if name:
            fields["name"] = name.strip()
        if email:
            normalized = normalize_email(email)
            if normalized != account.email:
                owner = await asyncio.to_thread(self.store.get_account_by_email, normalized)
                if owner and owner.id != account.id:
                    raise DuplicateKey("Email is already in use")
                fields["email"] = normalized
        self._validate_image(image)
        previous_image = account.image
        if image is not None:
            uploaded = await self.images.upload(
                image.data, filename=image.filename, content_type=image.content_type
            )
            fields["image"] = ProfileImage(public_id=uploaded.public_id, url=uploaded.url)
        if not fields:
            return await self._require_account(account.id)
        try:
            updated = await asyncio.to_thread(self.store.update_account, account.id, **fields)
        except ConstraintViolation as exc:
            raise DuplicateKey("Email is already in use") from exc
        if updated is None:
            raise NotFoundError("User not found")
        if image is not None and previous_image.public_id not in (DEFAULT_IMAGE_ID, GOOGLE_IMAGE_ID):
            await self.images.delete(previous_image.public_id)
        logger.info("profile_updated", account_id=account.id, fields=sorted(fields))
        return updated

    async def _replace_password(self, account_id: str, current: str, new: str) -> Account:
        account = await asyncio.to_thread(self.store.get_account_with_secret, account_id)
        if account is None:
            raise NotFoundError("User not found")
        if not await self.hasher.verify_async(account.secret_hash, current):
            raise ValidationError.for_field("currentPassword", "Current password is incorrect")
        updated = await asyncio.to_thread(
            self.store.update_account,
            account_id,
            password=new,
            token_version=new_token_version(),
        )
        await self.email.send_password_changed_async(account.email, account.name)
        return updated

    async def change_password(self, account: Account, current: str, new: str) -> AuthResult:
        updated = await self._replace_password(account.id, current, new)
        logger.info("password_changed", account_id=account.id)
        # A fresh pair keeps this session alive; older tokens are now stale
        return await self._start_session(updated, touch_login=False)

    # admin
    async def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        return await asyncio.to_thread(
            self.store.list_accounts,
            role=role,
            is_active=is_active,
            search=search,
            page=page,
            page_size=limit,
        )

    async def account_stats(self) -> dict:
        return await asyncio.to_thread(self.store.account_stats)

    async def get_account(self, account_id: str) -> Account:
        return await self._require_account(account_id)

    async def set_role(self, actor: Account, account_id: str, role: str) -> Account:
        if role not in ROLES:
            raise ValidationError.for_field("role", "Invalid role specified")
        await self._require_account(account_id)
        if actor.id == account_id and role != actor.role:
            raise ValidationError("You cannot change your own role")
        updated = await asyncio.to_thread(self.store.update_account, account_id, role=role)
        logger.info("role_changed", actor_id=actor.id, account_id=account_id, role=role)
        return updated

    async def admin_update_account(
        self,
        actor: Account,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        image: Optional[ImageUpload] = None,
    ) -> Account:
        """Edit any account field an admin may touch, in one write."""
        account = await self._require_account(account_id)
        is_self = actor.id == account_id
        if role is not None and role not in ROLES:
            raise ValidationError.for_field("role", "Invalid role specified")
        if is_self and role is not None and role != account.role:
            raise ValidationError("You cannot change your own role")
        if is_self and is_active is False:
            raise ValidationError("You cannot deactivate your own account")

        fields = {}
        if name:
            fields["name"] = name.strip()
        if email:
            normalized = normalize_email(email)
            if normalized != account.email:
                owner = await asyncio.to_thread(self.store.get_account_by_email, normalized)
                if owner and owner.id != account.id:
                    raise DuplicateKey("Email is already in use")
                fields["email"] = normalized
        if role is not None:
            fields["role"] = role
        if is_active is not None:
            fields["is_active"] = is_active
        if password:
            fields["password"] = password
        if password or (is_active is False and account.is_active):
            fields["token_version"] = new_token_version()
        self._validate_image(image)
        if image is not None:
            uploaded = await self.images.upload(
                image.data, filename=image.filename, content_type=image.content_type
            )
            fields["image"] = ProfileImage(public_id=uploaded.public_id, url=uploaded.url)
        if not fields:
            return account

        try:
            updated = await asyncio.to_thread(self.store.update_account, account_id, **fields)
        except ConstraintViolation as exc:
            raise DuplicateKey("Email is already in use") from exc
        if updated is None:
            raise NotFoundError("User not found")
        if image is not None and account.image.public_id not in (DEFAULT_IMAGE_ID, GOOGLE_IMAGE_ID):
            await self.images.delete(account.image.public_id)
        logger.info(
            "account_updated_by_admin",
            actor_id=actor.id,
            account_id=account_id,
            fields=sorted(key for key in fields if key != "token_version"),
        )
        return updated

    async def admin_set_password(self, actor: Account, account_id: str, current: str, new: str) -> Account:
        updated = await self._replace_password(account_id, current, new)
        logger.info("password_changed_by_admin", actor_id=actor.id, account_id=account_id)
        return updated

    async def toggle_status(self, actor: Account, account_id: str) -> Account:
        if actor.id == account_id:
            raise ValidationError("You cannot deactivate your own account")
        account = await self._require_account(account_id)
        fields = {"is_active": not account.is_active}
        if account.is_active:
            # Deactivation also kills outstanding refresh tokens
            fields["token_version"] = new_token_version()
        updated = await asyncio.to_thread(self.store.update_account, account_id, **fields)
        logger.info(
            "account_status_toggled",
            actor_id=actor.id,
            account_id=account_id,
            is_active=updated.is_active,
        )
        return updated
