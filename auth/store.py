"""
auth/store.py -- SQLAlchemy Core schema and the Identity Store repository.

Pattern: Repository + Data Mapper. IdentityStore is the repository for
identities; _row_to_identity is the mapper. The refresh-token ledger
(auth/ledger.py) and the OTP challenge manager (auth/otp.py) reuse the engine
owned by IdentityStore and the Table objects defined here, so one database
holds all auth state and create_all() runs once.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Counter updates are single UPDATE statements (wrong_attempts + 1) so
  concurrent failed logins cannot lose increments.

Timestamps:
  Stored as fixed-width UTC ISO-8601 strings (microsecond precision, +00:00
  offset). Fixed width makes lexical comparison in SQL equal chronological
  comparison, which the ledger relies on for expires_at filters.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import Identity, IdentityKind

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

identities = Table(
    "identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(10), nullable=False),  # "admin" | "user"
    Column("email", String(200), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(50), nullable=False, server_default=""),
    Column("last_name", String(50), nullable=False, server_default=""),
    Column("is_manager", Integer, nullable=False, server_default="0"),  # admin capability
    Column("role", String(30)),  # user capability: "manager" | "regular"
    Column("is_super_user", Integer, nullable=False, server_default="0"),
    Column("company_id", Integer),  # NULL for admins
    Column("is_blocked", Integer, nullable=False, server_default="0"),
    Column("wrong_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    UniqueConstraint("kind", "email", name="uq_identities_kind_email"),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex, embedded in the client token
    Column("owner_id", Integer, nullable=False, index=True),
    Column("token_hash", Text, nullable=False),  # bcrypt of the secret
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

otp_challenges = Table(
    "otp_challenges",
    metadata,
    Column("identity_id", Integer, primary_key=True),  # one challenge per identity
    Column("code_hash", Text, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO string. Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for admin and user identities.

    Usage:
        store = IdentityStore("sqlite:///auth.db")
        store.create_identity(Identity(kind=IdentityKind.admin, email="a@x.io", password_hash=...))
        admin = store.get_by_email(IdentityKind.admin, "a@x.io")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_identities(self, kind: IdentityKind) -> bool:
        """Return True if at least one identity of this kind exists."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(identities).where(identities.c.kind == kind.value)
            ).scalar()
        return (count or 0) > 0

    def get_by_email(self, kind: IdentityKind, email: str) -> Identity | None:
        """Look up an identity by (kind, email). Email is compared lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(
                identities.select().where(
                    (identities.c.kind == kind.value) & (identities.c.email == normalize_email(email))
                )
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, identity_id: int, kind: IdentityKind | None = None) -> Identity | None:
        """Look up an identity by primary key, optionally scoped to a kind."""
        query = identities.select().where(identities.c.id == identity_id)
        if kind is not None:
            query = query.where(identities.c.kind == kind.value)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_identity(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if (kind, email) already exists.
        Raises ValueError for a user without a company -- every user belongs
        to a tenant.
        """
        if identity.kind is IdentityKind.user and identity.company_id is None:
            raise ValueError("User identities require a company_id.")
        if not identity.password_hash:
            raise ValueError("Identities require a password hash.")
        with self.engine.begin() as conn:
            result = conn.execute(
                identities.insert().values(
                    kind=identity.kind.value,
                    email=normalize_email(identity.email),
                    password_hash=identity.password_hash,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    is_manager=1 if identity.is_manager else 0,
                    role=identity.role if identity.kind is IdentityKind.user else None,
                    is_super_user=1 if identity.is_super_user else 0,
                    company_id=identity.company_id if identity.kind is IdentityKind.user else None,
                    is_blocked=1 if identity.is_blocked else 0,
                    wrong_attempts=0,
                    created_at=to_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def set_blocked(self, identity_id: int, blocked: bool) -> bool:
        """Block or unblock an identity. Returns False if the id is unknown."""
        with self.engine.begin() as conn:
            result = conn.execute(
                identities.update().where(identities.c.id == identity_id).values(is_blocked=1 if blocked else 0)
            )
        return result.rowcount > 0

    def update_password(self, identity_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        """Replace the credential hash and clear the failed-attempt counter.

        Pass conn to run inside a caller's transaction (the OTP reset commits
        the challenge delete and the new hash together).
        """
        stmt = (
            identities.update()
            .where(identities.c.id == identity_id)
            .values(password_hash=password_hash, wrong_attempts=0)
        )
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount > 0

    def record_failed_attempt(self, identity_id: int) -> int:
        """Increment wrong_attempts atomically and return the new value."""
        with self.engine.begin() as conn:
            conn.execute(
                identities.update()
                .where(identities.c.id == identity_id)
                .values(wrong_attempts=identities.c.wrong_attempts + 1)
            )
            value = conn.execute(
                select(identities.c.wrong_attempts).where(identities.c.id == identity_id)
            ).scalar()
        return value or 0

    def reset_failed_attempts(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(identities.update().where(identities.c.id == identity_id).values(wrong_attempts=0))

    def update_last_login(self, identity_id: int) -> None:
        """Stamp the current UTC timestamp as last_login."""
        with self.engine.begin() as conn:
            conn.execute(identities.update().where(identities.c.id == identity_id).values(last_login=to_iso(utcnow())))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        kind=IdentityKind(row.kind),
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        is_manager=bool(row.is_manager),
        role=row.role,
        is_super_user=bool(row.is_super_user),
        company_id=row.company_id,
        is_blocked=bool(row.is_blocked),
        wrong_attempts=row.wrong_attempts or 0,
        created_at=row.created_at,
        last_login=row.last_login,
    )
