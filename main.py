#!/usr/bin/env python3
"""
Auth service operator CLI.

Usage:
  python main.py create-user alice alice@example.com --role user --role admin
  python main.py add-role <user-id> auditor
  python main.py remove-role <user-id> auditor
  python main.py disable-user <user-id>
  python main.py list-users
  python main.py prune-revocations

The password for create-user is read from the prompt (or AUTH_CLI_PASSWORD
for scripted setups) -- never from argv, where it would land in shell history.

Environment variables: the same as the API (SECRET_KEY, DATABASE_URL, ...).
"""

import argparse
import getpass
import os
import sys

from sqlalchemy.exc import IntegrityError

from auth.keys import KeyProvider
from auth.revocation import SqlRevocationRegistry
from auth.service import AuthService
from auth.store import StoreUnavailable, UserStore
from core.clock import SystemClock
from core.config import get_settings


def _read_password() -> str:
    password = os.environ.get("AUTH_CLI_PASSWORD")
    if password:
        return password
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _build_service() -> AuthService:
    settings = get_settings()
    clock = SystemClock()
    users = UserStore(settings.database_url, clock=clock)
    registry = SqlRevocationRegistry(settings.database_url, clock=clock)
    return AuthService.build(settings, users, registry, KeyProvider.from_settings(settings), clock)


def cmd_create_user(service: AuthService, args: argparse.Namespace) -> int:
    password = _read_password()
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    try:
        user = service.register(
            args.username, args.email, password, roles=args.role or None, bucket_id=args.bucket_id
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' or with email '{args.email}' already exists.")
        return 1
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    print(f"  Created {user.username} (id={user.id}, roles={','.join(sorted(user.roles))})")
    return 0


def cmd_add_role(service: AuthService, args: argparse.Namespace) -> int:
    if service.users.get_by_id(args.user_id) is None:
        print(f"  [!] No user with id {args.user_id}.")
        return 1
    if service.users.add_role(args.user_id, args.role):
        print(f"  Granted '{args.role}'.")
    else:
        print(f"  User already has '{args.role}'.")
    return 0


def cmd_remove_role(service: AuthService, args: argparse.Namespace) -> int:
    if not service.users.remove_role(args.user_id, args.role):
        print(f"  [!] User {args.user_id} does not have role '{args.role}'.")
        return 1
    print(f"  Removed '{args.role}'.")
    return 0


def cmd_disable_user(service: AuthService, args: argparse.Namespace) -> int:
    if not service.users.disable_user(args.user_id):
        print(f"  [!] No user with id {args.user_id}.")
        return 1
    print(f"  Disabled {args.user_id}. Outstanding refresh tokens will be refused.")
    return 0


def cmd_list_users(service: AuthService, args: argparse.Namespace) -> int:
    for user in service.users.list_users():
        state = "enabled" if user.enabled else "disabled"
        print(f"  {user.id}  {user.username:<24} {user.email:<32} {state:<9} {','.join(sorted(user.roles))}")
    return 0


def cmd_prune_revocations(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.prune_revocations()
    print(f"  Pruned {removed} expired revocation entries.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auth-service",
        description="Operator commands for the auth service user and revocation stores.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user (password read from prompt)")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--role", action="append", help="Role to grant; repeatable. Default: DEFAULT_ROLES")
    create.add_argument("--bucket-id", help="External storage bucket reference to attach to the user")
    create.set_defaults(func=cmd_create_user)

    add = sub.add_parser("add-role", help="Grant a role to a user")
    add.add_argument("user_id")
    add.add_argument("role")
    add.set_defaults(func=cmd_add_role)

    remove = sub.add_parser("remove-role", help="Remove a role from a user")
    remove.add_argument("user_id")
    remove.add_argument("role")
    remove.set_defaults(func=cmd_remove_role)

    disable = sub.add_parser("disable-user", help="Soft-disable a user")
    disable.add_argument("user_id")
    disable.set_defaults(func=cmd_disable_user)

    listing = sub.add_parser("list-users", help="List all users")
    listing.set_defaults(func=cmd_list_users)

    prune = sub.add_parser("prune-revocations", help="Delete revocation entries for expired tokens")
    prune.set_defaults(func=cmd_prune_revocations)
    return parser


def main(argv: list[str] | None = None, service: AuthService | None = None) -> int:
    args = build_parser().parse_args(argv)
    service = service or _build_service()
    try:
        return args.func(service, args)
    except StoreUnavailable:
        print("  [!] Database unavailable. Check DATABASE_URL and try again.")
        return 2


if __name__ == "__main__":
    sys.exit(main())
