"""
auth/tokens.py -- Credential verification, JWT access tokens, refresh-token
and OTP secret helpers, and cookie writers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry identity_id, kind, and the
       kind's capability claims (is_manager for admins; role, company_id and
       is_super_user for users) and a fixed 1 hour expiry. Verification
       returns None on any failure -- the request gate turns that into a 401.
       There is no revocation list; expiry is the only invalidation.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_identity() so response time
       does not reveal whether an email exists [C1].

  Refresh secrets and OTP codes: also bcrypt, at a lower cost factor. The
       refresh record id travels next to the secret ("<id>.<secret>") so the
       lookup is O(1) by primary key and bcrypt only runs once per request.

Signing keys are passed in explicitly by the caller (normally from the
Settings instance built at the composition root) -- this module reads no
configuration itself.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import JWTError, jwt

from auth.models import AccessClaims, AdminCapability, Identity, IdentityKind, UserCapability
from auth.store import utcnow
from core.errors import AuthenticationFailure, NotFound, ValidationFailure

if TYPE_CHECKING:
    from auth.store import IdentityStore
    from core.config import Settings

logger = logging.getLogger("sessiongate.auth")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

_SECRET_ROUNDS = 10

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 200 characters; callers should not rely on the bytes
    past 72.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


def hash_secret(secret: str) -> str:
    """bcrypt hash for refresh secrets and OTP codes."""
    return hash_password(secret, rounds=_SECRET_ROUNDS)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


# ---------------------------------------------------------------------------
# Credential verification [C1]
# ---------------------------------------------------------------------------


def authenticate_identity(
    store: IdentityStore,
    kind: IdentityKind,
    email: str,
    password: str,
    track_failed_attempts: bool = False,
) -> Identity:
    """Verify an email/password pair for the given identity class.

    Always runs bcrypt whether or not the identity exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH, then NotFound.
    - Wrong password: bcrypt runs against the real hash, then
      AuthenticationFailure. When track_failed_attempts is set the
      wrong_attempts counter is incremented.
    - Match: the counter is reset (tracked kinds) and last_login stamped.

    Block state is NOT checked here -- the session coordinator decides how a
    blocked identity is reported.
    """
    identity = store.get_by_email(kind, email)
    if identity is None or not identity.password_hash:
        verify_password(password, _DUMMY_HASH)
        raise NotFound("Identity not found.")

    if not verify_password(password, identity.password_hash):
        if track_failed_attempts:
            identity.wrong_attempts = store.record_failed_attempt(identity.id)
        logger.info("Failed %s login for identity %s", kind.value, identity.id)
        raise AuthenticationFailure("Wrong email or password.")

    if track_failed_attempts and identity.wrong_attempts:
        store.reset_failed_attempts(identity.id)
        identity.wrong_attempts = 0
    store.update_last_login(identity.id)
    return identity


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    identity: Identity,
    secret_key: str,
    expire_seconds: int = 3600,
    now: Optional[datetime] = None,
) -> str:
    """Encode a signed JWT with the identity's claims.

    Args:
        identity:       The authenticated identity (admin or user).
        secret_key:     HS256 signing key.
        expire_seconds: Token lifetime in seconds (1 hour by default).
        now:            Issue time override, used by tests.
    """
    issued = now or utcnow()
    payload: dict = {
        "sub": str(identity.id),
        "identity_id": identity.id,
        "kind": identity.kind.value,
        "iat": issued,
        "exp": issued + timedelta(seconds=expire_seconds),
    }
    capability = identity.capability
    if isinstance(capability, AdminCapability):
        payload["is_manager"] = capability.is_manager
    else:
        payload["role"] = capability.role
        payload["company_id"] = capability.company_id
        payload["is_super_user"] = capability.is_super_user
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret_key: str, kind: IdentityKind | None = None) -> AccessClaims | None:
    """Decode and verify a JWT. Returns AccessClaims or None on any failure.

    Rejects bad signatures, past expiry, missing or ill-typed claims, tokens
    of another identity class when kind is given, and user tokens without a
    company_id.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None

    identity_id = payload.get("identity_id")
    if not isinstance(identity_id, int) or isinstance(identity_id, bool):
        return None
    try:
        token_kind = IdentityKind(payload.get("kind"))
    except ValueError:
        return None
    if kind is not None and token_kind is not kind:
        return None

    if token_kind is IdentityKind.admin:
        is_manager = payload.get("is_manager")
        if not isinstance(is_manager, bool):
            return None
        capability = AdminCapability(is_manager=is_manager)
    else:
        role = payload.get("role")
        company_id = payload.get("company_id")
        if not isinstance(role, str) or not isinstance(company_id, int):
            return None
        capability = UserCapability(
            role=role,
            company_id=company_id,
            is_super_user=bool(payload.get("is_super_user", False)),
        )

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    return AccessClaims(identity_id=identity_id, kind=token_kind, capability=capability, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Refresh token and OTP secrets
# ---------------------------------------------------------------------------


def generate_refresh_secret() -> str:
    """256 bits of URL-safe randomness (43 chars, under bcrypt's 72-byte cap)."""
    return secrets.token_urlsafe(32)


def compose_refresh_token(record_id: str, secret: str) -> str:
    """Client-held refresh token: "<record_id>.<secret>"."""
    return f"{record_id}.{secret}"


def split_refresh_token(raw: str | None) -> tuple[str, str]:
    """Split "<record_id>.<secret>". Raises ValidationFailure when malformed.

    token_urlsafe never emits ".", so the first dot is the separator.
    """
    if not raw:
        raise ValidationFailure("Refresh token is required.")
    raw = raw.strip()
    if not 10 <= len(raw) <= 120:
        raise ValidationFailure("Refresh token is malformed.")
    record_id, sep, secret = raw.partition(".")
    if not sep or not record_id or not secret:
        raise ValidationFailure("Refresh token is malformed.")
    return record_id, secret


def generate_otp_code(length: int = 6) -> str:
    """Numeric one-time code with leading zeros preserved."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(
    response,
    settings: Settings,
    access_token: str,
    refresh_token: str | None = None,
    refresh_max_age: int = 0,
) -> None:
    """Write the access token (and optionally the refresh token) as httpOnly cookies.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: access cookie matches the JWT expiry; refresh cookie uses the
        per-class lifetime passed by the caller.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.access_token_expire_seconds,
    )
    if refresh_token is not None:
        response.set_cookie(
            REFRESH_COOKIE,
            value=refresh_token,
            httponly=True,
            samesite="lax",
            secure=settings.secure_cookies,
            max_age=refresh_max_age,
        )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
