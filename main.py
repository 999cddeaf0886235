#!/usr/bin/env python3
"""
identity-core -- Operator CLI for the identity manager.

Bootstrap and day-two operations against the configured credential store.
All settings come from the environment / .env (see core/config.py).

Usage:
  python main.py roles list
  python main.py roles create Administrator
  python main.py roles delete Administrator
  python main.py signup alice alice@example.com --role Administrator
  python main.py signin alice --refreshable
  python main.py refresh <access-token> <refresh-token>
  python main.py providers

Environment variables:
  JWT__SECRET_KEY   Signing key for access tokens (32+ characters). Required
                    unless DEBUG=true.
  DATABASE_URL      SQLAlchemy URL of the credential store (default: sqlite:///identity.db)
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from core.config import get_settings
from identity.errors import IdentityError
from identity.manager import SessionManager
from identity.schemas import Login, LoginRefresh, SignUp
from identity.store import CredentialStore
from identity.tokens import describe_token


def _password(value: Optional[str]) -> str:
    """Use --password when given, otherwise prompt without echo."""
    return value if value is not None else getpass.getpass("Password: ")


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = CredentialStore(settings, db_url=args.database_url)
    manager = SessionManager(settings, store)
    try:
        if args.command == "roles":
            if args.action == "list":
                for role in await manager.roles.get_roles():
                    print(f"  {role.name:<30} {role.id}")
            elif args.action == "create":
                role = await manager.roles.create_role(args.name)
                print(f"  Role '{role.name}' created ({role.id}).")
            else:
                await manager.roles.delete_role(args.name)
                print(f"  Role '{args.name}' deleted.")

        elif args.command == "signup":
            credential = await manager.sign_up(
                SignUp(
                    username=args.username,
                    password=_password(args.password),
                    email=args.email,
                    roles=args.role or [],
                )
            )
            print(f"  User '{credential.username}' created ({credential.id}).")

        elif args.command == "signin":
            token = await manager.sign_in(
                Login(
                    username=args.username,
                    password=_password(args.password),
                    app_id=args.app_id,
                    refreshable=args.refreshable,
                )
            )
            _print_token(token.to_dict(), args.claims)

        elif args.command == "refresh":
            token = await manager.sign_in_refresh(LoginRefresh(token=args.token, refresh_token=args.refresh_token))
            _print_token(token.to_dict(), args.claims)

        else:
            providers = manager.list_external_providers()
            if not providers:
                print("  No external providers configured.")
            for name in providers:
                print(f"  {name}")
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"])
            print(f"  [!] {field}: {err['msg']}", file=sys.stderr)
        return 2
    except IdentityError as e:
        print(f"  [!] {e.code}: {e.message}", file=sys.stderr)
        for detail in getattr(e, "errors", []):
            print(f"      - {detail}", file=sys.stderr)
        return 1
    finally:
        await manager.aclose()
        store.close()
    return 0


def _print_token(token: dict, show_claims: bool) -> None:
    print(json.dumps(token, indent=2))
    if show_claims:
        print(describe_token(token["token"]))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="identity-core",
        description="Operator CLI for the identity manager.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py roles create Administrator
  python main.py signup alice alice@example.com --role Administrator
  python main.py signin alice --refreshable --claims
  JWT__SECRET_KEY=... DATABASE_URL=sqlite:///prod.db python main.py roles list
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this invocation",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log identity-core activity to stderr",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    roles = commands.add_parser("roles", help="List, create or delete roles")
    roles.add_argument("action", choices=["list", "create", "delete"])
    roles.add_argument("name", nargs="?", help="Role name (create/delete)")

    signup = commands.add_parser("signup", help="Create a user with a password")
    signup.add_argument("username")
    signup.add_argument("email")
    signup.add_argument("--password", help="Password (prompted when omitted)")
    signup.add_argument("--role", action="append", metavar="ROLE", help="Role to assign; repeatable")

    signin = commands.add_parser("signin", help="Sign in and print the access token")
    signin.add_argument("username")
    signin.add_argument("--password", help="Password (prompted when omitted)")
    signin.add_argument("--app-id", default=None, help="Application scope of the token (default: Default)")
    signin.add_argument("--refreshable", action="store_true", help="Also issue a refresh token")
    signin.add_argument("--claims", action="store_true", help="Print the decoded token claims")

    refresh = commands.add_parser("refresh", help="Redeem a refresh token")
    refresh.add_argument("token", help="The (possibly expired) access token")
    refresh.add_argument("refresh_token")
    refresh.add_argument("--claims", action="store_true", help="Print the decoded token claims")

    commands.add_parser("providers", help="List configured external providers")

    args = parser.parse_args()

    if args.command == "roles" and args.action != "list" and not args.name:
        parser.error(f"roles {args.action} needs a role name")

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
