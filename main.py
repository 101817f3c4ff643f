#!/usr/bin/env python3
"""
Tenant portal operator CLI -- bootstrap and maintain tenants and accounts.

Usage:
  python main.py create-tenant "Acme Corp" --contact ops@acme.test
  python main.py create-admin admin@portal.test --name "Portal Admin"
  python main.py create-account jane@acme.test --tenant <tenant-id> --role client_owner
  python main.py set-tenant-status <tenant-id> inactive
  python main.py revoke-sessions jane@acme.test
  python main.py purge-tokens

Environment variables:
  DATABASE_URL              SQLAlchemy URL (default: SQLite file next to auth/store.py)
  TENANT_PORTAL_PASSWORD    Password for create-admin / create-account. When unset
                            the password is prompted for (twice, not echoed).
"""

import argparse
import getpass
import os
import sys
import time
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import PasswordPolicyError
from auth.models import Account, Role, Tenant, TenantStatus
from auth.passwords import check_password_policy, hash_password
from auth.store import PortalStore
from core.config import get_settings

_PASSWORD_ENV = "TENANT_PORTAL_PASSWORD"


def _open_store() -> PortalStore:
    database_url = get_settings().database_url
    return PortalStore(database_url) if database_url else PortalStore()


def _read_password() -> Optional[str]:
    """Return a policy-compliant password from the environment or the terminal."""
    password = os.environ.get(_PASSWORD_ENV)
    if password is None:
        password = getpass.getpass("  Password: ")
        if getpass.getpass("  Repeat password: ") != password:
            print("  [!] Passwords do not match.")
            return None
    try:
        check_password_policy(password, get_settings().password_min_length)
    except PasswordPolicyError as e:
        print(f"  [!] {e}")
        return None
    return password


def _create_account(store: PortalStore, email: str, name: str, role: Role, tenant_id: Optional[str]) -> int:
    password = _read_password()
    if password is None:
        return 1
    account = Account(
        email=email,
        display_name=name or email,
        role=role,
        tenant_id=tenant_id,
        hashed_password=hash_password(password),
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError:
        print(f"  [!] An account for '{email}' already exists, or the tenant does not.")
        return 1
    print(f"  Created {role.value} account {account_id} ({email}).")
    return 0


def cmd_create_tenant(store: PortalStore, args: argparse.Namespace) -> int:
    tenant_id = store.create_tenant(Tenant(name=args.name, contact_email=args.contact))
    print(f"  Created tenant {tenant_id} ({args.name}).")
    return 0


def cmd_create_admin(store: PortalStore, args: argparse.Namespace) -> int:
    return _create_account(store, args.email, args.name, Role.ADMIN, None)


def cmd_create_account(store: PortalStore, args: argparse.Namespace) -> int:
    if store.get_tenant(args.tenant) is None:
        print(f"  [!] No tenant with id '{args.tenant}'.")
        return 1
    return _create_account(store, args.email, args.name, Role(args.role), args.tenant)


def cmd_set_tenant_status(store: PortalStore, args: argparse.Namespace) -> int:
    if not store.update_tenant(args.tenant, status=TenantStatus(args.status)):
        print(f"  [!] No tenant with id '{args.tenant}'.")
        return 1
    print(f"  Tenant {args.tenant} is now {args.status}.")
    return 0


def cmd_revoke_sessions(store: PortalStore, args: argparse.Namespace) -> int:
    account = store.get_account_by_email(args.email)
    if account is None:
        print(f"  [!] No account for '{args.email}'.")
        return 1
    sequence = store.increment_token_sequence(account.id)
    print(f"  Revoked all sessions of {args.email} (sequence {sequence}).")
    return 0


def cmd_purge_tokens(store: PortalStore, args: argparse.Namespace) -> int:
    # Records stay until their token is past expiry plus the clock-skew leeway.
    removed = store.purge_consumed_tokens(time.time() - get_settings().clock_skew_seconds)
    print(f"  Purged {removed} expired refresh-token record(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenant-portal",
        description="Operator tools for the tenant portal credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-tenant "Acme Corp"
  TENANT_PORTAL_PASSWORD='Correct-Horse-9' python main.py create-admin admin@portal.test
  python main.py create-account jane@acme.test --tenant 3f2a... --role user --name "Jane Doe"
  python main.py set-tenant-status 3f2a... inactive
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("create-tenant", help="Create a tenant (client organization)")
    p.add_argument("name", help="Display name of the tenant")
    p.add_argument("--contact", metavar="EMAIL", default=None, help="Contact email for the tenant")
    p.set_defaults(func=cmd_create_tenant)

    p = sub.add_parser("create-admin", help="Create a platform admin account")
    p.add_argument("email")
    p.add_argument("--name", default="", help="Display name (default: the email)")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("create-account", help="Create a client_owner or user account in a tenant")
    p.add_argument("email")
    p.add_argument("--tenant", required=True, metavar="TENANT-ID")
    p.add_argument("--role", choices=[Role.CLIENT_OWNER.value, Role.USER.value], default=Role.USER.value)
    p.add_argument("--name", default="", help="Display name (default: the email)")
    p.set_defaults(func=cmd_create_account)

    p = sub.add_parser("set-tenant-status", help="Activate or deactivate a tenant")
    p.add_argument("tenant", metavar="TENANT-ID")
    p.add_argument("status", choices=[s.value for s in TenantStatus])
    p.set_defaults(func=cmd_set_tenant_status)

    p = sub.add_parser("revoke-sessions", help="Invalidate every token issued to an account")
    p.add_argument("email")
    p.set_defaults(func=cmd_revoke_sessions)

    p = sub.add_parser("purge-tokens", help="Delete expired consumed refresh-token records")
    p.set_defaults(func=cmd_purge_tokens)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        store = _open_store()
    except ValueError as e:
        # Settings validation (e.g. SECRET_KEY policy) failed.
        print(f"  [!] Configuration error: {e}", file=sys.stderr)
        return 2
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
