"""
auth/otp.py -- OTP Challenge Manager for the password-reset flow.

Flow:
  issue(identity)                      -- new code, hash stored, email sent
  verify(identity, code)               -- marks the challenge verified
  consume_password_reset(identity, pw) -- requires a verified challenge;
                                          updates the credential and deletes it

At most one challenge exists per identity (identity_id is the primary key).
issue() overwrites the row, so a superseded code can never verify: its hash
is gone. Challenges expire after otp_expire_seconds (5 minutes) and are
deleted when found expired, and after a successful reset.

Delivery: the row is committed BEFORE the email is handed to the notifier.
The notifier runs on a manager-owned thread pool and is awaited for at most
delivery_timeout seconds:
  - finishes in time and raises -> DeliveryFailure (row left intact)
  - still running at the deadline -> warning logged, issue() succeeds

Layer rule: no imports from api/ or cache/. The cache is duck-typed
(anything with invalidate(key)) and its faults arrive as CacheUnavailable.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Optional

from auth.models import Identity, OtpChallenge
from auth.store import IdentityStore, from_iso, otp_challenges, to_iso, utcnow
from auth.tokens import generate_otp_code, hash_password, hash_secret, verify_password
from core.errors import AuthenticationFailure, CacheUnavailable, DeliveryFailure, NotFound
from core.notifier import OtpNotifier, redact_email

logger = logging.getLogger("sessiongate.auth.otp")


class OtpChallengeManager:
    def __init__(
        self,
        store: IdentityStore,
        notifier: OtpNotifier,
        cache=None,
        code_length: int = 6,
        expire_seconds: int = 300,
        delivery_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = store.engine
        self.notifier = notifier
        self.cache = cache
        self.code_length = code_length
        self.expire_seconds = expire_seconds
        self.delivery_timeout = delivery_timeout
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="otp-delivery")

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> str:
        """Create (or replace) the identity's challenge and deliver the code.

        Returns the plaintext code. Raises DeliveryFailure if the notifier
        fails within the delivery timeout.
        """
        code = generate_otp_code(self.code_length)
        now = self._clock()
        expires_at = now + timedelta(seconds=self.expire_seconds)
        with self.engine.begin() as conn:
            conn.execute(otp_challenges.delete().where(otp_challenges.c.identity_id == identity.id))
            conn.execute(
                otp_challenges.insert().values(
                    identity_id=identity.id,
                    code_hash=hash_secret(code),
                    expires_at=to_iso(expires_at),
                    verified=0,
                    created_at=to_iso(now),
                )
            )

        future = self._executor.submit(self.notifier.send_otp_email, identity.email, code, expires_at)
        done, _ = wait([future], timeout=self.delivery_timeout)
        if not done:
            logger.warning(
                "OTP delivery to %s still pending after %.1fs; continuing",
                redact_email(identity.email),
                self.delivery_timeout,
            )
            future.add_done_callback(_log_late_delivery)
            return code
        error = future.exception()
        if error is not None:
            logger.error("OTP delivery to %s failed: %s", redact_email(identity.email), error)
            raise DeliveryFailure("OTP code could not be delivered.", detail=str(error)) from error
        return code

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, identity_id: int) -> OtpChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                otp_challenges.select().where(otp_challenges.c.identity_id == identity_id)
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, identity: Identity, code: str) -> OtpChallenge:
        challenge = self.get(identity.id)
        if challenge is None:
            raise NotFound("OTP code not found.")
        if challenge.expires_at <= self._clock():
            self._delete(identity.id)
            raise AuthenticationFailure("OTP code expired, request a new one.")
        if not verify_password(code, challenge.code_hash):
            raise AuthenticationFailure("Invalid OTP code.")

        # Guard on code_hash: a challenge re-issued between the read and this
        # update must not be marked verified by the old code.
        with self.engine.begin() as conn:
            result = conn.execute(
                otp_challenges.update()
                .where(
                    (otp_challenges.c.identity_id == identity.id)
                    & (otp_challenges.c.code_hash == challenge.code_hash)
                )
                .values(verified=1)
            )
        if result.rowcount == 0:
            raise AuthenticationFailure("OTP code verification failed.")
        challenge.verified = True
        return challenge

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume_password_reset(self, identity: Identity, new_password: str) -> None:
        """Replace the identity's password using its verified challenge.

        The password update and the challenge delete commit together; the
        delete is guarded on the verified hash so one challenge resets the
        password at most once.
        """
        challenge = self.get(identity.id)
        if challenge is None:
            raise NotFound("OTP code not found.")
        if not challenge.verified:
            raise AuthenticationFailure("OTP code not verified.")
        if challenge.expires_at <= self._clock():
            self._delete(identity.id)
            raise AuthenticationFailure("OTP code expired, request a new one.")

        password_hash = hash_password(new_password)
        with self.engine.begin() as conn:
            deleted = conn.execute(
                otp_challenges.delete().where(
                    (otp_challenges.c.identity_id == identity.id)
                    & (otp_challenges.c.code_hash == challenge.code_hash)
                    & (otp_challenges.c.verified == 1)
                )
            )
            if deleted.rowcount == 0:
                raise AuthenticationFailure("OTP code already used.")
            self.store.update_password(identity.id, password_hash, conn=conn)
        logger.info("Password reset completed for %s %s", identity.kind.value, identity.id)

        if self.cache is not None:
            try:
                self.cache.invalidate(identity.cache_key)
            except CacheUnavailable as e:
                logger.warning("Cache invalidation failed for %s: %s", identity.cache_key, e.detail)

    def _delete(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(otp_challenges.delete().where(otp_challenges.c.identity_id == identity_id))

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def _log_late_delivery(future: Future) -> None:
    error: Optional[BaseException] = future.exception()
    if error is not None:
        logger.error("Late OTP delivery failed: %s", error)


def _row_to_challenge(row) -> OtpChallenge:
    return OtpChallenge(
        identity_id=row.identity_id,
        code_hash=row.code_hash,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        verified=bool(row.verified),
    )
