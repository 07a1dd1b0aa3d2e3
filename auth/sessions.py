"""
auth/sessions.py -- Rotation Coordinator: the session state machine.

One SessionCoordinator instance per identity class (admin, user). Both run
the same machine; only the SessionPolicy differs (claim shape comes from the
identity's capability, plus cookie lifetime and failed-attempt tracking).

States per session:
  Anonymous --login--> Authenticated(access + refresh)
  Authenticated --access expires--> AccessExpired(refresh valid)
  AccessExpired --refresh ok--> Authenticated
  AccessExpired --refresh expired/revoked--> RefreshExpiredOrRevoked (re-login)
  Authenticated --logout--> LoggedOut

Refresh failure order:
  malformed        -> ValidationFailure
  unknown id       -> NotFound
  secret mismatch  -> AuthenticationFailure
  revoked          -> Forbidden
  expired          -> AuthenticationFailure, and the record is deleted
  owner missing    -> NotFound
  owner blocked    -> Forbidden

By default a refresh does NOT rotate the refresh secret: the same record stays
valid until its own expiry or logout. With refresh_rotate_on_use enabled, the
presented record is atomically marked revoked and a new one issued; replaying
the old token then fails with Forbidden.

Collaborators are injected; nothing here is module-level state.

Layer rule: no imports from api/ or cache/. The cache is duck-typed
(get/set/invalidate) and its faults arrive as CacheUnavailable, which is
logged and never fails the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from auth.ledger import RefreshTokenLedger
from auth.models import AccessClaims, Identity, IdentityKind, RefreshTokenRecord
from auth.store import IdentityStore
from auth.tokens import (
    authenticate_identity,
    compose_refresh_token,
    create_access_token,
    decode_access_token,
    split_refresh_token,
)
from core.errors import AuthenticationFailure, CacheUnavailable, Forbidden, NotFound

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessiongate.auth.sessions")

_DAY = 24 * 60 * 60

# Extension point: return True to refuse a login even with a correct password.
LockoutPolicy = Callable[[Identity], bool]


@dataclass(frozen=True)
class SessionPolicy:
    kind: IdentityKind
    refresh_cookie_max_age: int
    track_failed_attempts: bool = False

    @classmethod
    def for_kind(cls, kind: IdentityKind, settings: Settings) -> "SessionPolicy":
        if kind is IdentityKind.admin:
            return cls(kind=kind, refresh_cookie_max_age=settings.admin_refresh_cookie_days * _DAY)
        return cls(
            kind=kind,
            refresh_cookie_max_age=settings.user_refresh_cookie_days * _DAY,
            track_failed_attempts=True,
        )


@dataclass
class LoginResult:
    identity: Identity
    access_token: str
    refresh_token: Optional[str] = None
    refresh_record: Optional[RefreshTokenRecord] = None


@dataclass
class RefreshResult:
    identity: Identity
    access_token: str
    refresh_token: str
    refresh_record: RefreshTokenRecord
    rotated: bool = False


class SessionCoordinator:
    """Login, refresh, logout and "who am I" for one identity class."""

    def __init__(
        self,
        policy: SessionPolicy,
        store: IdentityStore,
        ledger: RefreshTokenLedger,
        cache,
        settings: Settings,
        lockout: Optional[LockoutPolicy] = None,
    ) -> None:
        self.policy = policy
        self.store = store
        self.ledger = ledger
        self.cache = cache
        self.settings = settings
        self.lockout = lockout

    @property
    def kind(self) -> IdentityKind:
        return self.policy.kind

    # ------------------------------------------------------------------
    # Access tokens (request-gate contract)
    # ------------------------------------------------------------------

    def issue_access_token(self, identity: Identity) -> str:
        return create_access_token(
            identity,
            self.settings.secret_key,
            expire_seconds=self.settings.access_token_expire_seconds,
        )

    def verify_access_token(self, token: str) -> AccessClaims | None:
        """Verify a bearer token of this identity class. None on any failure."""
        return decode_access_token(token, self.settings.secret_key, kind=self.kind)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, remember: bool = False) -> LoginResult:
        """Anonymous -> Authenticated.

        Without remember only an access token is issued. With remember the
        quota is enforced, a new refresh record is created, and the owner's
        already-expired records are purged.
        """
        identity = authenticate_identity(
            self.store,
            self.kind,
            email,
            password,
            track_failed_attempts=self.policy.track_failed_attempts,
        )
        if identity.is_blocked:
            logger.info("Blocked %s %s attempted login", self.kind.value, identity.id)
            raise Forbidden("Your account is blocked, contact the management.")
        if self.lockout is not None and self.lockout(identity):
            raise Forbidden("Your account is locked.")

        result = LoginResult(identity=identity, access_token=self.issue_access_token(identity))
        if not remember:
            return result

        self.ledger.enforce_quota(identity.id)
        record, secret = self.ledger.create(identity.id)
        self.ledger.purge_expired(identity.id)
        result.refresh_record = record
        result.refresh_token = compose_refresh_token(record.id, secret)
        logger.info("%s %s logged in with refresh record %s", self.kind.value, identity.id, record.id)
        return result

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, raw_refresh_token: Optional[str]) -> RefreshResult:
        """AccessExpired -> Authenticated, or -> RefreshExpiredOrRevoked."""
        record_id, secret = split_refresh_token(raw_refresh_token)

        record = self.ledger.find_by_id(record_id)
        if record is None:
            raise NotFound("Refresh token not found.")
        if not self.ledger.verify_secret(record, secret):
            logger.warning("Refresh secret mismatch for record %s", record_id)
            raise AuthenticationFailure("Invalid refresh token.")
        if record.revoked:
            logger.warning("Revoked refresh record %s presented", record_id)
            raise Forbidden("Refresh token revoked.")
        if self.ledger.is_expired(record):
            self.ledger.revoke(record.id, record.owner_id)
            raise AuthenticationFailure("Refresh token expired, please login again.")

        identity = self.store.get_by_id(record.owner_id, self.kind)
        if identity is None:
            raise NotFound("Identity not found.")
        if identity.is_blocked:
            raise Forbidden("Your account is blocked, contact the management.")

        access_token = self.issue_access_token(identity)
        if not self.settings.refresh_rotate_on_use:
            return RefreshResult(
                identity=identity,
                access_token=access_token,
                refresh_token=compose_refresh_token(record_id, secret),
                refresh_record=record,
            )

        if not self.ledger.mark_revoked(record.id):
            # Lost the race to a concurrent refresh or logout of the same record.
            raise Forbidden("Refresh token revoked.")
        new_record, new_secret = self.ledger.create(identity.id)
        self.ledger.purge_expired(identity.id)
        logger.info("Refresh record %s rotated to %s", record.id, new_record.id)
        return RefreshResult(
            identity=identity,
            access_token=access_token,
            refresh_token=compose_refresh_token(new_record.id, new_secret),
            refresh_record=new_record,
            rotated=True,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, claims: AccessClaims, raw_refresh_token: Optional[str]) -> None:
        """Authenticated -> LoggedOut. Deletes the caller's own refresh record.

        The lookup is owner-scoped: a record belonging to another identity
        resolves to NotFound and is left untouched.
        """
        record_id, _secret = split_refresh_token(raw_refresh_token)
        record = self.ledger.find_for_owner(record_id, claims.identity_id)
        if record is None:
            raise NotFound("Refresh token not found.")
        if record.revoked:
            raise Forbidden("Refresh token revoked.")
        self.ledger.revoke(record.id, claims.identity_id)
        logger.info("%s %s logged out (record %s)", self.kind.value, claims.identity_id, record.id)

    # ------------------------------------------------------------------
    # Am I authenticated
    # ------------------------------------------------------------------

    def current_identity(self, claims: AccessClaims) -> dict:
        """Cache-first projection of the caller.

        A cached projection is not re-checked against the store, so a just-
        blocked identity can be served from cache for up to one TTL unless it
        was invalidated. The is_blocked flag inside the cached payload is
        still checked here.
        """
        if claims.kind is not self.kind:
            raise AuthenticationFailure("Token was issued for another identity class.")
        key = f"{self.kind.value}:{claims.identity_id}"

        cached = self._cache_get(key)
        if cached is not None:
            if cached.get("is_blocked"):
                raise Forbidden("Your account is blocked, contact the management.")
            return cached

        identity = self.store.get_by_id(claims.identity_id, self.kind)
        if identity is None:
            raise NotFound("Identity not found.")
        if identity.is_blocked:
            raise Forbidden("Your account is blocked, contact the management.")
        projection = identity.projection()
        self._cache_set(key, projection)
        return projection

    # ------------------------------------------------------------------
    # Identity mutations the core knows about
    # ------------------------------------------------------------------

    def set_blocked(self, identity_id: int, blocked: bool) -> Identity:
        identity = self.store.get_by_id(identity_id, self.kind)
        if identity is None:
            raise NotFound("Identity not found.")
        self.store.set_blocked(identity_id, blocked)
        identity.is_blocked = blocked
        self._cache_invalidate(identity.cache_key)
        logger.info("%s %s %s", self.kind.value, identity_id, "blocked" if blocked else "unblocked")
        return identity

    def find_identity(self, email: str) -> Identity:
        identity = self.store.get_by_email(self.kind, email)
        if identity is None:
            raise NotFound("Identity not found.")
        return identity

    # ------------------------------------------------------------------
    # Best-effort cache access
    # ------------------------------------------------------------------

    def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return self.cache.get(key)
        except CacheUnavailable as e:
            logger.warning("Identity cache read failed for %s, falling back to store: %s", key, e.detail)
            return None

    def _cache_set(self, key: str, projection: dict) -> None:
        try:
            self.cache.set(key, projection, ttl=self.settings.identity_cache_ttl_seconds)
        except CacheUnavailable as e:
            logger.warning("Identity cache write failed for %s: %s", key, e.detail)

    def _cache_invalidate(self, key: str) -> None:
        try:
            self.cache.invalidate(key)
        except CacheUnavailable as e:
            logger.warning("Identity cache invalidation failed for %s: %s", key, e.detail)
