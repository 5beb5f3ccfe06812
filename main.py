#!/usr/bin/env python3
"""
AuthCore operator CLI -- maintenance tasks that run outside the HTTP API.

Usage:
  python main.py purge-sessions
  python main.py create-org --owner ann@example.com --name "Acme" --slug acme
  python main.py add-member --org <organization-id> --email bob@example.com --role admin
  python main.py verify-email --email ann@example.com
  python main.py ban-user --email mallory@example.com
  python main.py unban-user --email mallory@example.com

Operator commands act with full authority: add-member does not require an
acting owner or admin, which is how the first members of an organization
created by a script get in. Everything else goes through the same core
classes the API uses, with the same validation.

Environment variables (see core/config.py):
  DATABASE_URL   SQLAlchemy URL of the auth database (default sqlite:///authcore.db)
  SECRET_KEY     Required unless DEBUG=true.
"""

import argparse
import logging
import sys

from auth.credentials import normalize_email
from auth.errors import AuthCoreError
from auth.models import OrganizationMembership, Role
from auth.orchestrator import AuthOrchestrator
from auth.store import AuthStore
from core.config import get_settings

logger = logging.getLogger("authcore.cli")


def _require_user_id(auth: AuthOrchestrator, email: str) -> str:
    user = auth.repository.find_user_by_email(normalize_email(email))
    if user is None:
        raise LookupError(f"no user with email '{email}'")
    return user.id


def cmd_purge_sessions(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    removed = auth.sessions.purge_expired()
    print(f"  Purged {removed} expired session(s).")


def cmd_create_org(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    owner_id = _require_user_id(auth, args.owner)
    organization = auth.organizations.create_organization(owner_id, args.name, args.slug)
    print(f"  Created organization {organization.slug} ({organization.id}) owned by {args.owner}.")


def cmd_add_member(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    if auth.repository.find_organization(args.org) is None:
        raise LookupError(f"no organization with id '{args.org}'")
    user_id = _require_user_id(auth, args.email)
    membership = auth.repository.add_membership(
        OrganizationMembership(user_id=user_id, organization_id=args.org, role=Role(args.role))
    )
    print(f"  Added {args.email} to {args.org} as {membership.role.value}.")


def cmd_verify_email(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    user = auth.mark_email_verified(_require_user_id(auth, args.email))
    print(f"  Marked {user.email} as verified.")


def cmd_ban_user(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    revoked = auth.ban_user(_require_user_id(auth, args.email))
    print(f"  Banned {args.email}; revoked {revoked} session(s).")


def cmd_unban_user(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    auth.unban_user(_require_user_id(auth, args.email))
    print(f"  Unbanned {args.email}.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="AuthCore operator commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Operator commands")[0],
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    purge = sub.add_parser("purge-sessions", help="Delete expired session rows")
    purge.set_defaults(func=cmd_purge_sessions)

    create = sub.add_parser("create-org", help="Create an organization with an existing user as owner")
    create.add_argument("--owner", required=True, metavar="EMAIL", help="Email of the owning user")
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument("--slug", required=True, help="URL slug (lowercase letters, digits, hyphens)")
    create.set_defaults(func=cmd_create_org)

    add = sub.add_parser("add-member", help="Add a user to an organization")
    add.add_argument("--org", required=True, metavar="ORG_ID", help="Organization id")
    add.add_argument("--email", required=True, help="Email of the user to add")
    add.add_argument("--role", choices=[r.value for r in Role], default=Role.member.value)
    add.set_defaults(func=cmd_add_member)

    verify = sub.add_parser("verify-email", help="Mark a user's email address as verified")
    verify.add_argument("--email", required=True)
    verify.set_defaults(func=cmd_verify_email)

    ban = sub.add_parser("ban-user", help="Block a user from signing in and revoke their sessions")
    ban.add_argument("--email", required=True)
    ban.set_defaults(func=cmd_ban_user)

    unban = sub.add_parser("unban-user", help="Lift a ban")
    unban.add_argument("--email", required=True)
    unban.set_defaults(func=cmd_unban_user)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    settings = get_settings()
    store = AuthStore.from_settings(settings)
    try:
        args.func(AuthOrchestrator(store, settings), args)
    except (AuthCoreError, LookupError) as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
