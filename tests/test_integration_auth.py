"""Integration tests for the authentication flow.

Tests the complete flow over HTTP:
- Registration and email verification
- Password login and lockout
- Google sign-in and registration
- Token refresh and logout
- Password change and reset
- Profile read and update
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from gadgetgalaxy import app as app_module
from gadgetgalaxy.service.images import UploadedImage
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.service.runtime import get_runtime, reset_runtime_for_tests
from gadgetgalaxy.service.tokens import TokenService

REGISTRATION = {"name": "New Shopper", "email": "new@example.com", "password": "Secret123"}


def _fresh_client(**cookies):
    """A client with an empty cookie jar apart from ``cookies``."""
    fresh = TestClient(app_module.app)
    for name, value in cookies.items():
        fresh.cookies.set(name, value)
    return fresh


def _past_tokens(seconds_ago):
    settings = get_runtime().settings
    return TokenService(
        access_secret=settings.jwt_secret,
        refresh_secret=settings.jwt_refresh_secret,
        clock=lambda: time.time() - seconds_ago,
    )


class TestHealthAndHeaders:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        assert body["message"] == "API is running"
        assert body["environment"] == "test"

    def test_security_headers_and_request_id(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_unknown_route(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Route /api/nope not found"}


class TestRegistrationAndVerification:
    """Register, get refused while unverified, verify, then log in."""

    def test_full_verification_flow(self, client, outbox):
        response = client.post("/api/auth/register", data=REGISTRATION)
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Registration successful"
        assert body["token"]
        assert body["user"]["email"] == "new@example.com"
        assert body["user"]["isEmailVerified"] is False
        assert body["user"]["hasImage"] is False
        assert "secret_hash" not in body["user"]
        assert len(outbox["email"]) == 1

        response = client.post(
            "/api/auth/login", json={"email": "new@example.com", "password": "Secret123"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Email not verified"
        assert response.json()["requiresVerification"] is True

        _, token = outbox["email"][0]
        response = client.get("/api/auth/verify-email", params={"token": token})
        assert response.status_code == 200
        assert response.json()["message"] == "Email verified successfully"
        assert response.json()["user"]["isEmailVerified"] is True

        response = client.post(
            "/api/auth/login", json={"email": "NEW@example.com", "password": "Secret123"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["isEmailVerified"] is True
        assert "accessToken" in response.cookies
        assert "refreshToken" in response.cookies

    def test_verification_token_single_use(self, client, outbox):
        client.post("/api/auth/register", data=REGISTRATION)
        _, token = outbox["email"][0]
        assert client.get("/api/auth/verify-email", params={"token": token}).status_code == 200
        response = client.get("/api/auth/verify-email", params={"token": token})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid or expired verification token"

    def test_duplicate_email(self, client, outbox):
        client.post("/api/auth/register", data=REGISTRATION)
        response = client.post("/api/auth/register", data={**REGISTRATION, "email": "NEW@Example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "Email is already registered"

    def test_validation_errors(self, client):
        response = client.post(
            "/api/auth/register", data={"name": "X", "email": "bad", "password": "short"}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation Error"
        fields = {e["field"] for e in body["errors"]}
        assert fields == {"name", "email", "password"}

    def test_bad_image_type_rejected(self, client, outbox):
        response = client.post(
            "/api/auth/register",
            data=REGISTRATION,
            files={"image": ("cv.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "image"
        assert get_runtime().store.get_account_by_email("new@example.com") is None

    def test_image_host_failure_falls_back_to_default(self, client, outbox):
        response = client.post(
            "/api/auth/register",
            data=REGISTRATION,
            files={"image": ("me.png", b"\x89PNG\r\n", "image/png")},
        )
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["hasImage"] is False
        assert user["image"]["url"] == get_runtime().settings.default_user_image_url

    def test_resend_verification(self, client, outbox, make_account):
        client.post("/api/auth/register", data=REGISTRATION)
        response = client.post("/api/auth/resend-verification", json={"email": "new@example.com"})
        assert response.status_code == 200
        assert response.json()["message"] == "Verification email sent successfully"
        assert len(outbox["email"]) == 2
        # Only the newest link works
        first, second = outbox["email"][0][1], outbox["email"][1][1]
        assert client.get("/api/auth/verify-email", params={"token": first}).status_code == 400
        assert client.get("/api/auth/verify-email", params={"token": second}).status_code == 200

    def test_resend_for_unknown_and_verified(self, client, outbox, make_account):
        response = client.post("/api/auth/resend-verification", json={"email": "ghost@example.com"})
        assert response.status_code == 404
        assert response.json()["message"] == "User not found"
        make_account(email="done@example.com")
        response = client.post("/api/auth/resend-verification", json={"email": "done@example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "Email is already verified"


class TestLoginAndLockout:
    def test_unknown_email_and_wrong_password_look_alike(self, client, make_account):
        make_account()
        unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "Secret123"})
        wrong = client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Wrong123"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json() == {"success": False, "message": "Invalid credentials"}

    def test_lockout_after_five_failures(self, client, make_account):
        account = make_account()
        for _ in range(5):
            response = client.post(
                "/api/auth/login", json={"email": "shopper@example.com", "password": "Wrong123"}
            )
            assert response.status_code == 401
            assert response.json()["message"] == "Invalid credentials"

        locked = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        unknown = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": "Secret123"}
        )
        # A locked account is indistinguishable from an unknown email
        assert locked.status_code == unknown.status_code == 401
        assert locked.json() == unknown.json() == {"success": False, "message": "Invalid credentials"}
        stored = get_runtime().store.get_account(account.id)
        assert stored.login_attempts == 5
        assert stored.lock_until is not None

    def test_success_resets_counter(self, client, make_account):
        account = make_account()
        for _ in range(2):
            client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Wrong123"})
        assert get_runtime().store.get_account(account.id).login_attempts == 2
        response = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        assert response.status_code == 200
        assert get_runtime().store.get_account(account.id).login_attempts == 0

    def test_inactive_account(self, client, make_account):
        account = make_account()
        get_runtime().store.update_account(account.id, is_active=False)
        response = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Account is inactive"

    def test_login_records_last_login(self, client, make_account):
        account = make_account()
        response = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        assert response.json()["user"]["lastLogin"] is not None
        stored = get_runtime().store.get_account(account.id)
        assert stored.last_login is not None

    def test_rehash_on_login_keeps_admin_sessions(self, client, make_account, login):
        account = make_account(role="admin")
        headers = login()
        store = get_runtime().store
        stale_params = SecretHasher(time_cost=2, memory_cost=8, parallelism=1)
        store.accounts[account.id].secret_hash = stale_params.hash("Secret123")
        before = store.get_account_with_secret(account.id)

        login()
        after = store.get_account_with_secret(account.id)
        assert after.secret_hash != before.secret_hash
        assert after.secret_changed_at == before.secret_changed_at
        assert client.get("/api/auth/admin", headers=headers).status_code == 200

    def test_rate_limit(self, client, make_account, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT_PER_WINDOW", "2")
        reset_runtime_for_tests()
        body = {"email": "ghost@example.com", "password": "Secret123"}
        assert client.post("/api/auth/login", json=body).status_code == 401
        assert client.post("/api/auth/login", json=body).status_code == 401
        response = client.post("/api/auth/login", json=body)
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1


class TestGoogleSignIn:
    CLAIMS = {
        "email": "fan@gmail.com",
        "email_verified": True,
        "sub": "google-sub-42",
        "name": "Gadget Fan",
        "picture": "https://lh3.googleusercontent.com/a/fan",
    }

    @pytest.fixture(autouse=True)
    def fake_google(self, monkeypatch):
        claims = dict(self.CLAIMS)
        monkeypatch.setattr(get_runtime().google, "_verifier", lambda assertion: dict(claims))
        return claims

    def test_registration_creates_verified_account(self, client):
        response = client.post("/api/auth/google", json={"credential": "id-token", "isRegistration": True})
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["message"] == "Google registration successful"
        assert body["user"]["provider"] == "google"
        assert body["user"]["isEmailVerified"] is True
        assert body["user"]["image"]["url"] == self.CLAIMS["picture"]
        assert "samesite=lax" in response.headers["set-cookie"].lower()

    def test_login_without_account(self, client):
        response = client.post("/api/auth/google", json={"credential": "id-token", "isRegistration": False})
        assert response.status_code == 404
        assert response.json()["isNewUser"] is True

    def test_registration_for_existing_account(self, client, make_account):
        make_account(email="fan@gmail.com")
        response = client.post("/api/auth/google", json={"credential": "id-token", "isRegistration": True})
        assert response.status_code == 400
        assert response.json()["isNewUser"] is False

    def test_login_links_unverified_local_account(self, client, make_account):
        account = make_account(email="fan@gmail.com", is_email_verified=False)
        response = client.post("/api/auth/google", json={"credential": "id-token"})
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Google login successful"
        assert body["user"]["_id"] == account.id
        assert body["user"]["provider"] == "both"
        assert body["user"]["isEmailVerified"] is True
        # The password still works for the linked account
        response = client.post("/api/auth/login", json={"email": "fan@gmail.com", "password": "Secret123"})
        assert response.status_code == 200

    def test_missing_credential(self, client):
        response = client.post("/api/auth/google", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "No credential provided"

    def test_unverified_google_email(self, client, fake_google):
        fake_google["email_verified"] = False
        response = client.post("/api/auth/google", json={"credential": "id-token", "isRegistration": True})
        assert response.status_code == 400
        assert response.json()["message"] == "Google email not verified"

    def test_invalid_assertion(self, client, monkeypatch):
        def reject(assertion):
            raise ValueError("Wrong recipient")

        monkeypatch.setattr(get_runtime().google, "_verifier", reject)
        response = client.post("/api/auth/google", json={"credential": "forged"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid Google credential"


class TestSessions:
    def test_check_with_bearer(self, client, make_account, login):
        make_account()
        headers = login()
        response = client.get("/api/auth/check", headers=headers)
        assert response.status_code == 200
        assert response.json()["isAuthenticated"] is True
        assert response.json()["user"]["email"] == "shopper@example.com"

    def test_check_with_cookie_only(self, client, make_account, login):
        make_account()
        login()
        response = client.get("/api/auth/check")
        assert response.status_code == 200

    def test_check_without_token(self):
        response = _fresh_client().get("/api/auth/check")
        assert response.status_code == 401
        assert response.json()["message"] == "Access token not found"

    def test_explicit_refresh_rotates(self, client, make_account):
        make_account()
        response = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        old_refresh = response.cookies["refreshToken"]

        response = _fresh_client(refreshToken=old_refresh).post("/api/auth/refresh")
        assert response.status_code == 200
        assert response.json()["token"]
        assert response.cookies["refreshToken"] != old_refresh

        replay = _fresh_client(refreshToken=old_refresh).post("/api/auth/refresh")
        assert replay.status_code == 401
        assert replay.json()["message"] == "Invalid refresh token"

    def test_silent_refresh_on_expired_access(self, make_account):
        account = make_account()
        pair = _past_tokens(3600).issue(account)
        get_runtime().store.update_account(account.id, token_version=pair.version)

        response = _fresh_client(accessToken=pair.access_token, refreshToken=pair.refresh_token).get(
            "/api/auth/check"
        )
        assert response.status_code == 200
        assert "accessToken" in response.cookies
        assert "refreshToken" in response.cookies

        replay = _fresh_client(accessToken=pair.access_token, refreshToken=pair.refresh_token).get(
            "/api/auth/check"
        )
        assert replay.status_code == 401
        assert replay.json()["message"] == "Invalid refresh token"

    def test_silent_refresh_for_deactivated_account(self, make_account):
        account = make_account()
        pair = _past_tokens(3600).issue(account)
        get_runtime().store.update_account(account.id, token_version=pair.version, is_active=False)

        response = _fresh_client(accessToken=pair.access_token, refreshToken=pair.refresh_token).get(
            "/api/auth/check"
        )
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid refresh token"}
        assert get_runtime().store.get_account(account.id).token_version == pair.version

    def test_store_calls_run_off_the_event_loop(self, client, make_account, login, monkeypatch):
        make_account(email="admin@example.com", role="admin")
        target = make_account()
        headers = login("admin@example.com")
        store = get_runtime().store
        original = store.get_account
        on_loop = []

        def tracking_get_account(account_id):
            try:
                asyncio.get_running_loop()
                on_loop.append(account_id)
            except RuntimeError:
                pass
            return original(account_id)

        monkeypatch.setattr(store, "get_account", tracking_get_account)
        assert client.get("/api/auth/check", headers=headers).status_code == 200
        assert client.get(f"/api/users/{target.id}", headers=headers).status_code == 200
        assert on_loop == []

    def test_logout_invalidates_refresh(self, client, make_account):
        make_account()
        response = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"}
        )
        token, refresh = response.json()["token"], response.cookies["refreshToken"]

        response = client.post("/api/auth/logout", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert "accessToken=" in response.headers["set-cookie"]

        replay = _fresh_client(refreshToken=refresh).post("/api/auth/refresh")
        assert replay.status_code == 401

    def test_logout_without_session(self):
        response = _fresh_client().post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_non_admin_on_admin_check(self, client, make_account, login):
        make_account()
        response = client.get("/api/auth/admin", headers=login())
        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"

    def test_admin_check(self, client, make_account, login):
        make_account(email="boss@example.com", role="admin")
        response = client.get("/api/auth/admin", headers=login("boss@example.com"))
        assert response.status_code == 200
        assert response.json()["message"] == "Admin access granted"

    def test_stale_admin_token_after_password_change(self, client, make_account, login):
        admin = make_account(email="boss@example.com", role="admin")
        old = _past_tokens(60).issue(admin)
        get_runtime().store.update_account(admin.id, password="Rotated789")

        response = client.get("/api/auth/admin", headers={"Authorization": f"Bearer {old.access_token}"})
        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "message": "Recent password change detected. Please login again.",
        }

        fresh = login("boss@example.com", "Rotated789")
        assert client.get("/api/auth/admin", headers=fresh).status_code == 200


class TestPasswords:
    def test_change_password(self, client, make_account, login, outbox):
        make_account()
        headers = login()
        response = client.put(
            "/api/auth/password",
            headers=headers,
            json={"currentPassword": "Secret123", "newPassword": "Changed456", "confirmPassword": "Changed456"},
        )
        assert response.status_code == 200, response.text
        assert response.json()["token"]
        assert outbox["changed"] == ["shopper@example.com"]

        old = client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Secret123"})
        assert old.status_code == 401
        login(password="Changed456")

    def test_change_password_wrong_current(self, client, make_account, login):
        make_account()
        response = client.put(
            "/api/auth/password",
            headers=login(),
            json={"currentPassword": "Nope1234", "newPassword": "Changed456", "confirmPassword": "Changed456"},
        )
        assert response.status_code == 400
        assert response.json()["errors"] == [
            {"field": "currentPassword", "message": "Current password is incorrect"}
        ]

    @pytest.mark.parametrize(
        "body,message",
        [
            (
                {"currentPassword": "Secret123", "newPassword": "Secret123", "confirmPassword": "Secret123"},
                "New password must be different from current password",
            ),
            (
                {"currentPassword": "Secret123", "newPassword": "Changed456", "confirmPassword": "Changed457"},
                "Password confirmation does not match new password",
            ),
            (
                {"currentPassword": "", "newPassword": "Changed456", "confirmPassword": "Changed456"},
                "Current password is required",
            ),
        ],
    )
    def test_change_password_validation(self, client, make_account, login, body, message):
        make_account()
        response = client.put("/api/auth/password", headers=login(), json=body)
        assert response.status_code == 400
        assert message in [e["message"] for e in response.json()["errors"]]

    def test_forgot_password_is_silent(self, client, make_account, outbox):
        make_account()
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        known = client.post("/api/auth/forgot-password", json={"email": "shopper@example.com"})
        assert unknown.status_code == known.status_code == 200
        assert unknown.json() == known.json()
        assert [to for to, _ in outbox["reset"]] == ["shopper@example.com"]

    def test_reset_password_single_use(self, client, make_account, outbox):
        account = make_account()
        client.post("/api/auth/forgot-password", json={"email": "shopper@example.com"})
        _, token = outbox["reset"][0]

        response = client.post("/api/auth/reset-password", json={"token": token, "password": "Reset789"})
        assert response.status_code == 200
        assert get_runtime().store.get_account(account.id).secret_changed_at is not None

        reuse = client.post("/api/auth/reset-password", json={"token": token, "password": "Again789"})
        assert reuse.status_code == 400
        assert reuse.json()["message"] == "Invalid or expired reset token"

        ok = client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Reset789"})
        assert ok.status_code == 200

    def test_reset_unlocks_account(self, client, make_account, outbox):
        make_account()
        for _ in range(5):
            client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Wrong123"})
        client.post("/api/auth/forgot-password", json={"email": "shopper@example.com"})
        _, token = outbox["reset"][0]
        client.post("/api/auth/reset-password", json={"token": token, "password": "Reset789"})
        ok = client.post("/api/auth/login", json={"email": "shopper@example.com", "password": "Reset789"})
        assert ok.status_code == 200


class TestProfile:
    def test_get_profile(self, client, make_account, login):
        account = make_account()
        response = client.get("/api/auth/profile", headers=login())
        assert response.status_code == 200
        assert response.json()["user"]["_id"] == account.id

    def test_update_name_and_email(self, client, make_account, login):
        make_account()
        response = client.put(
            "/api/auth/profile",
            headers=login(),
            data={"name": "Renamed Shopper", "email": "Renamed@Example.com"},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["message"] == "Profile updated successfully"
        assert body["user"]["name"] == "Renamed Shopper"
        assert body["user"]["email"] == "renamed@example.com"

    def test_update_email_taken(self, client, make_account, login):
        make_account()
        make_account(email="taken@example.com")
        response = client.put("/api/auth/profile", headers=login(), data={"email": "taken@example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "Email is already in use"

    def test_update_image(self, client, make_account, login, monkeypatch):
        make_account()
        deleted = []

        async def fake_upload(data, *, filename, content_type):
            return UploadedImage(public_id="gadget-galaxy/users/user-9", url="https://cdn.test/9.png")

        async def fake_delete(public_id):
            deleted.append(public_id)
            return True

        monkeypatch.setattr(get_runtime().images, "upload", fake_upload)
        monkeypatch.setattr(get_runtime().images, "delete", fake_delete)
        response = client.put(
            "/api/auth/profile",
            headers=login(),
            files={"image": ("me.png", b"\x89PNG\r\n", "image/png")},
        )
        assert response.status_code == 200, response.text
        user = response.json()["user"]
        assert user["hasImage"] is True
        assert user["image"]["url"] == "https://cdn.test/9.png"
        # The placeholder image is never deleted from the host
        assert deleted == []

    def test_update_image_too_large(self, client, make_account, login, monkeypatch):
        monkeypatch.setenv("MAX_UPLOAD_BYTES", "16")
        reset_runtime_for_tests()
        make_account()
        response = client.put(
            "/api/auth/profile",
            headers=login(),
            files={"image": ("big.png", b"x" * 64, "image/png")},
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "image"
