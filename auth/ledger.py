"""
auth/ledger.py -- Refresh Token Ledger: durable store of issued refresh tokens.

Each row holds the bcrypt hash of a random secret, its owner, an absolute
expiry, and a revoked flag. The plaintext secret exists server-side only in
the return value of create(); the client holds "<id>.<secret>".

A record is live iff revoked = 0 AND expires_at > now.

Quota: before a new record is created at login, enforce_quota() purges every
record of the owner once the live count reaches max_tokens. This is a coarse
reset-on-overflow policy, not LRU eviction. count_live() and purge_all() are
separate statements, so two concurrent logins of the same identity can
briefly exceed the quota; the quota is abuse mitigation, not an invariant the
rest of the core depends on.

Concurrency: every mutation is one statement keyed on the primary key (plus
owner or revoked guards). Nothing is written back after a read, so a record
deleted by logout/purge cannot be resurrected by a concurrent refresh.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenRecord
from auth.store import from_iso, refresh_tokens, to_iso, utcnow
from auth.tokens import generate_refresh_secret, hash_secret, verify_password

logger = logging.getLogger("sessiongate.auth.ledger")


class RefreshTokenLedger:
    """Repository for refresh-token records.

    Usage:
        ledger = RefreshTokenLedger(identity_store.engine)
        record, secret = ledger.create(owner_id=7)
        ledger.find_by_id(record.id)
        ledger.revoke(record.id, owner_id=7)
    """

    def __init__(
        self,
        engine: Engine,
        expire_days: int = 3,
        max_tokens: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.expire_days = expire_days
        self.max_tokens = max_tokens
        self._clock = clock

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, owner_id: int) -> tuple[RefreshTokenRecord, str]:
        """Persist a new record and return it with the plaintext secret.

        This is the only place the plaintext exists server-side.
        """
        secret = generate_refresh_secret()
        now = self._clock()
        record = RefreshTokenRecord(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            token_hash=hash_secret(secret),
            expires_at=now + timedelta(days=self.expire_days),
            created_at=now,
        )
        with self.engine.begin() as conn:
            conn.execute(
                refresh_tokens.insert().values(
                    id=record.id,
                    owner_id=record.owner_id,
                    token_hash=record.token_hash,
                    expires_at=to_iso(record.expires_at),
                    revoked=0,
                    created_at=to_iso(record.created_at),
                )
            )
        logger.info("Refresh record %s issued for owner %s", record.id, owner_id)
        return record, secret

    def find_by_id(self, record_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def find_for_owner(self, record_id: str, owner_id: int) -> RefreshTokenRecord | None:
        """Owner-scoped lookup: another owner's record resolves to None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                refresh_tokens.select().where(
                    (refresh_tokens.c.id == record_id) & (refresh_tokens.c.owner_id == owner_id)
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_for_owner(self, owner_id: int) -> list[RefreshTokenRecord]:
        """All records of an owner, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(refresh_tokens.c.owner_id == owner_id)
                .order_by(refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_live(self, owner_id: int) -> int:
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(refresh_tokens)
                .where(
                    (refresh_tokens.c.owner_id == owner_id)
                    & (refresh_tokens.c.revoked == 0)
                    & (refresh_tokens.c.expires_at > now)
                )
            ).scalar()
        return count or 0

    @staticmethod
    def verify_secret(record: RefreshTokenRecord, secret: str) -> bool:
        return verify_password(secret, record.token_hash)

    def is_expired(self, record: RefreshTokenRecord) -> bool:
        return record.expires_at <= self._clock()

    # ------------------------------------------------------------------
    # Delete / revoke
    # ------------------------------------------------------------------

    def revoke(self, record_id: str, owner_id: int) -> bool:
        """Delete one record scoped to its owner. False if absent or owned by someone else."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.delete().where(
                    (refresh_tokens.c.id == record_id) & (refresh_tokens.c.owner_id == owner_id)
                )
            )
        return result.rowcount > 0

    def mark_revoked(self, record_id: str) -> bool:
        """Flip revoked 0 -> 1 in one statement.

        Returns False if the row is gone or already revoked, which is how a
        concurrent rotation of the same record loses the race.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.id == record_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def purge_expired(self, owner_id: int) -> int:
        now = to_iso(self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.delete().where(
                    (refresh_tokens.c.owner_id == owner_id) & (refresh_tokens.c.expires_at < now)
                )
            )
        return result.rowcount

    def purge_all(self, owner_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.owner_id == owner_id))
        return result.rowcount

    def enforce_quota(self, owner_id: int) -> int:
        """Purge all of the owner's records once the live count reaches the quota.

        Returns the number of records removed (0 when under quota).
        """
        if self.count_live(owner_id) < self.max_tokens:
            return 0
        removed = self.purge_all(owner_id)
        logger.info("Refresh quota reached for owner %s: %d record(s) evicted", owner_id, removed)
        return removed


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        owner_id=row.owner_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        revoked=bool(row.revoked),
    )
