"""
Session token verification and capability-based authorization.

Admin access is decided in two mandatory steps:

1. A ``TokenVerifier`` validates the bearer token and yields a ``Principal``.
   Any failure here is a ``TokenError`` (HTTP 401).
2. ``authorize`` compares the principal with the durable user record and
   returns an ``AuthorizationDecision``. A denial is HTTP 403.

Two verifier implementations are provided and are interchangeable:
``JoseTokenVerifier`` built on python-jose, and ``HmacTokenVerifier`` which
checks HS256 tokens with the standard library only.
"""

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from jose import ExpiredSignatureError, JWTError, jwt

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import UnauthorizedError
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class TokenError(UnauthorizedError):
    """Raised when a session token is missing, malformed or expired."""

    default_code = "TOKEN_INVALID"


@dataclass(frozen=True)
class Principal:
    """Identity asserted by a verified session token."""

    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


class TokenVerifier(Protocol):
    """Validates a bearer token and returns the principal it asserts."""

    def verify(self, token: str) -> Principal:
        ...


def _principal_from_claims(claims: dict[str, Any]) -> Principal:
    subject = claims.get("sub")
    if not subject or not isinstance(subject, str):
        raise TokenError("Token missing subject claim", code="TOKEN_NO_SUBJECT")
    if claims.get("type", "access") != "access":
        raise TokenError("Token is not an access token", code="TOKEN_WRONG_TYPE")
    return Principal(subject=subject, claims=claims)


class JoseTokenVerifier:
    """Token verifier backed by python-jose."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: str) -> Principal:
        """
        Decode and validate a JWT.

        Args:
            token: Encoded JWT

        Returns:
            Principal asserted by the token

        Raises:
            TokenError: If the token is empty, malformed, expired or forged
        """
        if not token:
            raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            logger.info("Token has expired")
            raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
        except JWTError as e:
            logger.info("Invalid token", error=str(e))
            raise TokenError("Invalid token") from e

        return _principal_from_claims(claims)


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HmacTokenVerifier:
    """
    HS256 token verifier using only the standard library.

    Accepts exactly the tokens ``JoseTokenVerifier`` accepts for HS256.
    """

    def __init__(self, secret_key: str, leeway_seconds: int = 0):
        self.secret_key = secret_key.encode("utf-8")
        self.leeway_seconds = leeway_seconds

    def verify(self, token: str) -> Principal:
        if not token:
            raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError("Malformed token")
        header_b64, payload_b64, signature_b64 = parts

        try:
            header = json.loads(_b64url_decode(header_b64))
            claims = json.loads(_b64url_decode(payload_b64))
            signature = _b64url_decode(signature_b64)
        except (ValueError, TypeError) as e:
            raise TokenError("Malformed token") from e

        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenError("Unsupported token algorithm", code="TOKEN_BAD_ALG")
        if not isinstance(claims, dict):
            raise TokenError("Malformed token")

        expected = hmac.new(
            self.secret_key,
            f"{header_b64}.{payload_b64}".encode("ascii"),
            hashlib.sha256,
        ).digest()
        if not hmac.compare_digest(expected, signature):
            logger.info("Token signature mismatch")
            raise TokenError("Invalid token")

        exp = claims.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)):
                raise TokenError("Malformed expiration claim")
            if time.time() > exp + self.leeway_seconds:
                raise TokenError("Token has expired", code="TOKEN_EXPIRED")

        return _principal_from_claims(claims)


def build_token_verifier(settings: Optional[Settings] = None) -> TokenVerifier:
    """
    Build the token verifier selected by configuration.

    Args:
        settings: Optional settings override

    Returns:
        Configured TokenVerifier
    """
    settings = settings or get_settings()
    if settings.token_verifier == "hmac":
        return HmacTokenVerifier(settings.secret_key)
    return JoseTokenVerifier(settings.secret_key, settings.jwt_algorithm)


def create_access_token(
    subject: str,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
    **claims: Any,
) -> str:
    """
    Create a signed access token.

    Session issuance belongs to the storefront; this helper exists for
    operational tooling and tests.

    Args:
        subject: User id the token is issued for
        expires_delta: Optional custom lifetime
        settings: Optional settings override
        **claims: Extra claims to embed

    Returns:
        Encoded JWT
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        **claims,
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


class Capability(str, Enum):
    """Privileges that can be requested of ``authorize``."""

    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class AuthorizationDecision:
    """Outcome of an authorization check."""

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def authorize(principal: Principal, user: Any, capability: Capability) -> AuthorizationDecision:
    """
    Decide whether a verified principal holds a capability.

    The admin flag is read from the durable user record, never from token
    claims, so revoking admin rights takes effect immediately.

    Args:
        principal: Principal returned by a TokenVerifier
        user: Durable user record (``None`` if it no longer exists)
        capability: Capability being requested

    Returns:
        AuthorizationDecision
    """
    if user is None:
        return AuthorizationDecision(False, "user_not_found")
    if str(getattr(user, "id", "")) != principal.subject:
        return AuthorizationDecision(False, "subject_mismatch")
    if not getattr(user, "is_active", False):
        return AuthorizationDecision(False, "user_inactive")
    if capability is Capability.ADMIN and not getattr(user, "is_admin", False):
        return AuthorizationDecision(False, "not_admin")
    return AuthorizationDecision(True, "granted")
