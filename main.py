#!/usr/bin/env python3
"""
IDCore -- operator commands for the identity service.

Usage:
  python main.py seed-admin
  python main.py seed-admin --email admin@example.com --name "Site Admin"
  python main.py purge-expired

Environment variables (see core/config.py for the full list):
  DATABASE_URL     SQLAlchemy URL of the auth store (default: sqlite:///idcore_auth.db)
  ADMIN_EMAIL      Admin account to create with seed-admin
  ADMIN_PASSWORD   Its password (prompted for when neither this nor --password is given)
  CACHE_DRIVER     sqlite or redis; purge-expired also reaps the SQLite cache
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from auth.credentials import CredentialService
from auth.errors import AuthError
from auth.sessions import SessionTokenService
from auth.store import AuthStore
from cache.store import CacheError, build_cache
from core.config import Settings, get_settings

logger = logging.getLogger("idcore.cli")


def _seed_admin(settings: Settings, args: argparse.Namespace) -> int:
    email = args.email or settings.admin_email
    if not email:
        print("  [!] No admin email. Pass --email or set ADMIN_EMAIL.")
        return 2
    password = args.password or settings.admin_password or getpass.getpass("Admin password: ")
    name = args.name or settings.admin_name

    store = AuthStore(settings.database_url)
    cache = build_cache(settings)
    try:
        credentials = CredentialService(store, cache, bcrypt_rounds=settings.bcrypt_rounds)
        user = credentials.seed_admin(email, password, name)
    finally:
        cache.close()
        store.close()

    if user is None:
        print(f"  Admin account {email} already exists; nothing to do.")
    else:
        print(f"  Created admin account {user.email} (id={user.id}).")
    return 0


def _purge_expired(settings: Settings, args: argparse.Namespace) -> int:
    store = AuthStore(settings.database_url)
    cache = build_cache(settings)
    try:
        credentials = CredentialService(store, cache, bcrypt_rounds=settings.bcrypt_rounds)
        sessions = SessionTokenService(store, credentials, secret=settings.secret_key)
        tokens = sessions.purge_expired()
        entries = cache.purge_expired()
    finally:
        cache.close()
        store.close()
    print(f"  Removed {tokens} expired token(s) and {entries} expired cache entr{'y' if entries == 1 else 'ies'}.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="idcore",
        description="Operator commands for the IDCore identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure!pass' python main.py seed-admin
  python main.py seed-admin --email admin@example.com
  python main.py purge-expired
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed-admin", help="Create the admin account if it does not exist yet")
    seed.add_argument("--email", help="Admin email (default: ADMIN_EMAIL)")
    seed.add_argument("--password", help="Admin password (default: ADMIN_PASSWORD, else prompt)")
    seed.add_argument("--name", help="Display name (default: ADMIN_NAME)")
    seed.set_defaults(handler=_seed_admin)

    purge = sub.add_parser("purge-expired", help="Delete expired refresh, reset and verification tokens")
    purge.set_defaults(handler=_purge_expired)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        return args.handler(get_settings(), args)
    except (AuthError, CacheError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"  [!] {args.command} failed: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
