"""Tests for Google ID token exchange and account linking."""

import pytest
from google.auth import exceptions as google_exceptions

from gadgetgalaxy.service.errors import (
    AccountAlreadyExists,
    AccountNotFound,
    EmailNotVerified,
    InternalError,
    InvalidAssertion,
    UpstreamUnavailable,
    ValidationError,
)
from gadgetgalaxy.service.google import GoogleIdentityBridge, VerifiedIdentity
from gadgetgalaxy.service.passwords import SecretHasher
from gadgetgalaxy.storage.memory import MemoryStore
from gadgetgalaxy.storage.models import AccountCreate

CLAIMS = {
    "email": "Fan@Gmail.com",
    "email_verified": True,
    "sub": "google-sub-1",
    "name": "Gadget Fan",
    "given_name": "Gadget",
    "family_name": "Fan",
    "picture": "https://lh3.googleusercontent.com/a/photo",
}


@pytest.fixture
def store():
    return MemoryStore(hasher=SecretHasher(time_cost=1, memory_cost=8, parallelism=1))


def _bridge(store, claims=None, error=None):
    def verifier(assertion):
        if error is not None:
            raise error
        return dict(claims if claims is not None else CLAIMS)

    return GoogleIdentityBridge("client-id", store, verifier=verifier, default_image_url="https://img/default.png")


class TestVerify:
    def test_claims_become_identity(self, store):
        identity = _bridge(store).verify("id-token")
        assert identity.email == "fan@gmail.com"
        assert identity.subject_id == "google-sub-1"
        assert identity.name == "Gadget Fan"
        assert identity.picture_url == CLAIMS["picture"]

    def test_empty_credential(self, store):
        with pytest.raises(ValidationError) as excinfo:
            _bridge(store).verify("")
        assert excinfo.value.message == "No credential provided"

    def test_bad_signature_is_invalid_assertion(self, store):
        with pytest.raises(InvalidAssertion) as excinfo:
            _bridge(store, error=ValueError("Token used too late")).verify("id-token")
        assert excinfo.value.message == "Invalid Google credential"
        assert excinfo.value.status_code == 401

    def test_cert_fetch_failure_is_upstream(self, store):
        bridge = _bridge(store, error=google_exceptions.TransportError("no route"))
        with pytest.raises(UpstreamUnavailable):
            bridge.verify("id-token")

    def test_unverified_email(self, store):
        bridge = _bridge(store, claims={**CLAIMS, "email_verified": False})
        with pytest.raises(EmailNotVerified) as excinfo:
            bridge.verify("id-token")
        assert excinfo.value.message == "Google email not verified"

    def test_missing_email(self, store):
        bridge = _bridge(store, claims={**CLAIMS, "email": None})
        with pytest.raises(InvalidAssertion):
            bridge.verify("id-token")

    def test_short_name_falls_back_to_email(self, store):
        identity = _bridge(store, claims={**CLAIMS, "name": "X"}).verify("id-token")
        assert identity.name == "fan"

    def test_unconfigured_client_id(self, store):
        bridge = GoogleIdentityBridge(None, store)
        with pytest.raises(InternalError):
            bridge.verify("id-token")


def _identity(**overrides):
    values = dict(
        email="fan@gmail.com",
        name="Gadget Fan",
        subject_id="google-sub-1",
        email_verified=True,
        picture_url="https://lh3.googleusercontent.com/a/photo",
        given_name="Gadget",
        family_name="Fan",
    )
    values.update(overrides)
    return VerifiedIdentity(**values)


class TestLink:
    async def test_registration_creates_verified_google_account(self, store):
        account = await _bridge(store).link(_identity(), is_registration=True)
        assert account.provider == "google"
        assert account.is_email_verified
        assert account.federated_id == "google-sub-1"
        assert account.image.public_id == "google_profile"
        assert account.last_login is not None

    async def test_registration_without_picture_uses_default(self, store):
        account = await _bridge(store).link(_identity(picture_url=None), is_registration=True)
        assert account.image.url == "https://img/default.png"

    async def test_registration_for_existing_email(self, store):
        store.create_account(AccountCreate(email="fan@gmail.com", name="Local Fan", password="Secret123"))
        with pytest.raises(AccountAlreadyExists) as excinfo:
            await _bridge(store).link(_identity(), is_registration=True)
        assert excinfo.value.detail == {"isNewUser": False}

    async def test_login_without_account(self, store):
        with pytest.raises(AccountNotFound) as excinfo:
            await _bridge(store).link(_identity(), is_registration=False)
        assert excinfo.value.status_code == 404
        assert excinfo.value.detail == {"isNewUser": True}

    async def test_login_links_local_account(self, store):
        local = store.create_account(
            AccountCreate(email="fan@gmail.com", name="Local Fan", password="Secret123")
        )
        account = await _bridge(store).link(_identity(), is_registration=False)
        assert account.id == local.id
        assert account.provider == "both"
        assert account.is_email_verified
        assert account.federated_id == "google-sub-1"
        assert account.name == "Gadget Fan"
        assert account.image.url == "https://lh3.googleusercontent.com/a/photo"

    async def test_login_keeps_google_provider(self, store):
        bridge = _bridge(store)
        await bridge.link(_identity(), is_registration=True)
        account = await bridge.link(_identity(name="Renamed Fan"), is_registration=False)
        assert account.provider == "google"
        assert account.name == "Renamed Fan"
