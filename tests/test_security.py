"""
Tests for session token verification and authorization.

Both verifier implementations must accept and reject exactly the same
tokens; authorization must consult the durable user record.
"""

import base64
import json
from datetime import timedelta
from types import SimpleNamespace
from uuid import uuid4

import pytest
from jose import jwt

from orderflow.core.config import Settings
from orderflow.core.security import (
    Capability,
    HmacTokenVerifier,
    JoseTokenVerifier,
    Principal,
    TokenError,
    authorize,
    build_token_verifier,
    create_access_token,
)

SECRET = "unit-test-secret-key-with-enough-length"


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(secret_key=SECRET, environment="test")


@pytest.fixture(params=["jose", "hmac"])
def verifier(request):
    """Each test runs against both verifier implementations."""
    if request.param == "jose":
        return JoseTokenVerifier(SECRET)
    return HmacTokenVerifier(SECRET)


def _forge(claims: dict, alg: str = "HS256") -> str:
    def encode(part: dict) -> str:
        raw = json.dumps(part).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{encode({'alg': alg, 'typ': 'JWT'})}.{encode(claims)}.c2lnbmF0dXJl"


# ============================================================================
# Verifier Parity Tests
# ============================================================================


class TestTokenVerifiers:
    """Token verification shared by both implementations."""

    def test_valid_token_yields_principal(self, verifier, settings):
        subject = str(uuid4())
        token = create_access_token(subject, settings=settings)

        principal = verifier.verify(token)

        assert principal.subject == subject
        assert principal.claims["type"] == "access"

    def test_expired_token_rejected(self, verifier, settings):
        token = create_access_token(
            str(uuid4()), expires_delta=timedelta(minutes=-5), settings=settings
        )

        with pytest.raises(TokenError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "TOKEN_EXPIRED"
        assert exc_info.value.status_code == 401

    def test_wrong_secret_rejected(self, verifier):
        other = Settings(secret_key="another-secret-key-of-sufficient-size", environment="test")
        token = create_access_token(str(uuid4()), settings=other)

        with pytest.raises(TokenError):
            verifier.verify(token)

    def test_tampered_payload_rejected(self, verifier, settings):
        token = create_access_token(str(uuid4()), settings=settings)
        header, _, signature = token.split(".")
        payload = base64.urlsafe_b64encode(
            json.dumps({"sub": str(uuid4()), "type": "access"}).encode()
        ).rstrip(b"=").decode()

        with pytest.raises(TokenError):
            verifier.verify(f"{header}.{payload}.{signature}")

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_token_rejected(self, verifier, token):
        with pytest.raises(TokenError):
            verifier.verify(token)

    def test_forged_signature_rejected(self, verifier):
        with pytest.raises(TokenError):
            verifier.verify(_forge({"sub": str(uuid4()), "type": "access"}))

    def test_missing_subject_rejected(self, verifier):
        token = jwt.encode({"type": "access"}, SECRET, algorithm="HS256")

        with pytest.raises(TokenError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "TOKEN_NO_SUBJECT"

    def test_refresh_token_rejected(self, verifier):
        token = jwt.encode({"sub": str(uuid4()), "type": "refresh"}, SECRET, algorithm="HS256")

        with pytest.raises(TokenError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "TOKEN_WRONG_TYPE"


class TestBuildTokenVerifier:
    def test_defaults_to_jose(self, settings):
        assert isinstance(build_token_verifier(settings), JoseTokenVerifier)

    def test_hmac_selected_by_configuration(self):
        settings = Settings(secret_key=SECRET, token_verifier="hmac", environment="test")
        assert isinstance(build_token_verifier(settings), HmacTokenVerifier)


# ============================================================================
# Authorization Tests
# ============================================================================


class TestAuthorize:
    """Authorization decisions against the user record."""

    @pytest.fixture
    def user(self):
        return SimpleNamespace(id=uuid4(), is_active=True, is_admin=False)

    def test_customer_granted(self, user):
        decision = authorize(Principal(str(user.id)), user, Capability.CUSTOMER)

        assert decision
        assert decision.reason == "granted"

    def test_admin_capability_requires_admin_flag(self, user):
        decision = authorize(Principal(str(user.id)), user, Capability.ADMIN)

        assert not decision
        assert decision.reason == "not_admin"

    def test_admin_claim_in_token_is_ignored(self, user):
        principal = Principal(str(user.id), claims={"is_admin": True, "role": "admin"})

        assert not authorize(principal, user, Capability.ADMIN)

    def test_admin_granted_from_record(self, user):
        user.is_admin = True

        assert authorize(Principal(str(user.id)), user, Capability.ADMIN)

    def test_missing_user_denied(self):
        decision = authorize(Principal(str(uuid4())), None, Capability.CUSTOMER)

        assert decision.reason == "user_not_found"

    def test_inactive_user_denied(self, user):
        user.is_active = False
        user.is_admin = True

        decision = authorize(Principal(str(user.id)), user, Capability.ADMIN)

        assert decision.reason == "user_inactive"

    def test_subject_mismatch_denied(self, user):
        decision = authorize(Principal(str(uuid4())), user, Capability.CUSTOMER)

        assert decision.reason == "subject_mismatch"
