#!/usr/bin/env python3
"""
SessionGate -- operator CLI for identities and the identity cache.

Registration and company management are not part of SessionGate, so this is
how admins and users are bootstrapped.

Usage:
  python main.py create-admin ops@example.com --first-name Ops --manager
  python main.py create-user jane@acme.io --company-id 4 --role manager
  python main.py block user jane@acme.io
  python main.py unblock admin ops@example.com
  python main.py purge-cache

Environment variables:
  SECRET_KEY     Required unless DEBUG=true (see core/config.py).
  DATABASE_URL   Identity database. Defaults to sessiongate.db in the repo root.
  CACHE_DB_PATH  Identity cache file.

The password is read from --password or prompted for without echo.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.ledger import RefreshTokenLedger
from auth.models import Identity, IdentityKind
from auth.sessions import SessionCoordinator, SessionPolicy
from auth.store import IdentityStore
from auth.tokens import hash_password
from cache.store import IdentityCache
from core.config import get_settings
from core.errors import SessionError

_MIN_PASSWORD = 8


def _read_password(given: Optional[str]) -> str:
    if given:
        return given
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _create(store: IdentityStore, identity: Identity, password: str) -> int:
    if len(password) < _MIN_PASSWORD:
        print(f"  [!] Password must be at least {_MIN_PASSWORD} characters.")
        return 1
    identity.password_hash = hash_password(password)
    try:
        new_id = store.create_identity(identity)
    except IntegrityError:
        print(f"  [!] A {identity.kind.value} with email {identity.email} already exists.")
        return 1
    except ValueError as e:
        print(f"  [!] {e}")
        return 1
    print(f"  Created {identity.kind.value} {identity.email} (id {new_id}).")
    return 0


def _set_blocked(store: IdentityStore, cache: IdentityCache, kind: IdentityKind, email: str, blocked: bool) -> int:
    settings = get_settings()
    ledger = RefreshTokenLedger(store.engine, expire_days=settings.refresh_token_expire_days)
    coordinator = SessionCoordinator(SessionPolicy.for_kind(kind, settings), store, ledger, cache, settings)
    try:
        identity = coordinator.find_identity(email)
        coordinator.set_blocked(identity.id, blocked)
    except SessionError as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  {kind.value} {email} {'blocked' if blocked else 'unblocked'}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Manage SessionGate identities and the identity cache.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin ops@example.com --manager
  python main.py create-user jane@acme.io --company-id 4
  python main.py block user jane@acme.io
  python main.py purge-cache
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    admin = sub.add_parser("create-admin", help="Create an admin identity")
    admin.add_argument("email")
    admin.add_argument("--password", help="Password (prompted for when omitted)")
    admin.add_argument("--first-name", default="")
    admin.add_argument("--last-name", default="")
    admin.add_argument("--manager", action="store_true", help="Grant the manager capability")

    user = sub.add_parser("create-user", help="Create a company user identity")
    user.add_argument("email")
    user.add_argument("--company-id", type=int, required=True, metavar="ID")
    user.add_argument("--password", help="Password (prompted for when omitted)")
    user.add_argument("--first-name", default="")
    user.add_argument("--last-name", default="")
    user.add_argument("--role", choices=["manager", "regular"], default="regular")
    user.add_argument("--super-user", action="store_true")

    for name, text in (("block", "Block an identity"), ("unblock", "Unblock an identity")):
        p = sub.add_parser(name, help=text)
        p.add_argument("kind", choices=[k.value for k in IdentityKind])
        p.add_argument("email")

    sub.add_parser("purge-cache", help="Delete expired identity cache entries")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "purge-cache":
        cache = IdentityCache(settings.cache_db_path, ttl=settings.identity_cache_ttl_seconds)
        try:
            removed = cache.purge_expired()
        finally:
            cache.close()
        print(f"  Purged {removed} expired cache entr{'y' if removed == 1 else 'ies'}.")
        return 0

    store = IdentityStore(db_url=settings.database_url)
    try:
        if args.command == "create-admin":
            identity = Identity(
                kind=IdentityKind.admin,
                email=args.email,
                first_name=args.first_name,
                last_name=args.last_name,
                is_manager=args.manager,
            )
            return _create(store, identity, _read_password(args.password))

        if args.command == "create-user":
            identity = Identity(
                kind=IdentityKind.user,
                email=args.email,
                first_name=args.first_name,
                last_name=args.last_name,
                role=args.role,
                is_super_user=args.super_user,
                company_id=args.company_id,
            )
            return _create(store, identity, _read_password(args.password))

        cache = IdentityCache(settings.cache_db_path, ttl=settings.identity_cache_ttl_seconds)
        try:
            return _set_blocked(store, cache, IdentityKind(args.kind), args.email, args.command == "block")
        finally:
            cache.close()
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
