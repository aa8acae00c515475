#!/usr/bin/env python3
"""
IAM Console -- command-line client for the IAM platform.
The token is kept in the local session store, so one login serves every
following command until it expires or you log out.

Usage:
  python main.py login
  python main.py login --username alice
  python main.py whoami
  python main.py dashboard --json
  python main.py users
  python main.py register bob bob@example.com
  python main.py deactivate 9b2f...
  python main.py assign-role 9b2f... 41c0...
  python main.py secrets
  python main.py reveal 5d1e...
  python main.py audit --filter login --limit 20
  python main.py totp-enable
  python main.py logout

Environment variables:
  API_BASE_URL     Backend base URL (default http://localhost:5000/api/v1)
  SESSION_DB_URL   Where the token is kept (default ~/.iam-console/session.db)
"""

import argparse
import asyncio
import dataclasses
import getpass
import json
import logging
import sys
from typing import Any

from auth.dependencies import RouteGuard
from auth.flow import LoginFlow, resume_session
from auth.models import LoginState
from auth.session import SessionStore
from auth.store import TokenStore
from core.audit import action_category, filter_events
from core.config import get_settings
from core.dashboard import load_dashboard
from core.errors import ConsoleError, UnauthorizedError
from core.gateway import ApiClient
from vault.clipboard import BufferClipboard
from vault.visibility import SecretVisibilityCache

logger = logging.getLogger("iamconsole.cli")

# Commands that may run without a session.
PUBLIC_COMMANDS = {"login", "logout"}


def _to_json(value: Any) -> str:
    if dataclasses.is_dataclass(value):
        value = dataclasses.asdict(value)
    elif isinstance(value, list):
        value = [dataclasses.asdict(v) if dataclasses.is_dataclass(v) else v for v in value]
    return json.dumps(value, indent=2, default=str)


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


class Console:
    """One CLI invocation: a session restored from disk and a gateway on top of it."""

    def __init__(self, settings) -> None:
        self.settings = settings
        self.token_store = TokenStore(settings.session_db_url)
        self.session = SessionStore(self.token_store)
        self.session.load()
        self.client = ApiClient(settings.api_base_url, self.session, timeout=settings.request_timeout)

    def close(self) -> None:
        self.client.close()
        self.token_store.close()

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    async def login(self, args) -> int:
        if self.session.is_authenticated:
            print(f"  Already logged in as {self.session.principal.username}. Run 'logout' first.")
            return 0
        username = args.username or input("Username: ")
        password = getpass.getpass("Password: ")

        flow = LoginFlow(self.client, self.session)
        state = await flow.submit(username, password)
        if state is LoginState.TOTP_REQUIRED:
            state = await flow.submit_totp(input("Verification code: "))

        if state is LoginState.AUTHENTICATED:
            print(f"  Logged in as {self.session.principal.username}.")
            return 0
        print(f"  [!] {flow.failure_reason or 'Login failed.'}")
        return 1

    async def logout(self, args) -> int:
        if self.session.clear():
            print("  Logged out.")
        else:
            print("  Not logged in.")
        return 0

    async def whoami(self, args) -> int:
        principal = self.session.principal
        if args.json:
            print(_to_json(principal))
            return 0
        print(f"  {principal.username} <{principal.email}>")
        print(f"  Roles: {', '.join(principal.role_names) or '-'}")
        return 0

    async def totp_enable(self, args) -> int:
        enrollment = await asyncio.to_thread(self.client.enable_totp)
        print("  Add this account to your authenticator app. The secret is shown only once.")
        print(f"  Secret: {enrollment.secret}")
        print(f"  Provisioning URL: {enrollment.qr_url}")
        return 0

    # ------------------------------------------------------------------
    # Dashboard and audit
    # ------------------------------------------------------------------

    async def dashboard(self, args) -> int:
        stats = await load_dashboard(
            self.client,
            policy=self.settings.dashboard_policy,
            audit_limit=self.settings.dashboard_audit_limit,
        )
        if args.json:
            print(_to_json(stats))
            return 0
        if stats.degraded_sources:
            print(f"  [!] Could not load: {', '.join(stats.degraded_sources)}. Figures are incomplete.")
        print(f"  Users:          {stats.total_users}")
        print(f"  Secrets:        {stats.total_secrets}")
        print(f"  Logins (24h):   {stats.recent_logins}")
        print(f"  Audit events:   {stats.total_audit_logs}")
        if stats.recent_activity:
            print("\n  Recent activity:")
            for event in stats.recent_activity:
                print(f"    {_fmt_time(event.created_at)}  {event.action:<20} {event.username or '-'}")
        return 0

    async def audit(self, args) -> int:
        limit = args.limit or self.settings.audit_page_size
        events = await asyncio.to_thread(self.client.list_audit, limit, args.offset)
        events = filter_events(events, args.filter or "")
        if args.json:
            print(_to_json(events))
            return 0
        if not events:
            print("  No audit events.")
            return 0
        for event in events:
            print(
                f"  {_fmt_time(event.created_at)}  {action_category(event.action):<7} "
                f"{event.action:<20} {event.username or '-':<16} {event.resource} {event.ip_address}"
            )
        return 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def users(self, args) -> int:
        users = await asyncio.to_thread(self.client.list_users)
        if args.json:
            print(_to_json(users))
            return 0
        for user in users:
            status = "active" if user.is_active else "inactive"
            roles = ", ".join(user.role_names) or "-"
            print(f"  {user.id}  {user.username:<16} {user.email:<28} {status:<8} {roles}")
        return 0

    async def register(self, args) -> int:
        password = getpass.getpass("Password for new user: ")
        user_id = await asyncio.to_thread(self.client.register, args.username, args.email, password)
        print(f"  Registered {args.username} ({user_id}).")
        return 0

    async def activate(self, args) -> int:
        await asyncio.to_thread(self.client.update_user, args.user_id, {"is_active": True})
        print(f"  Activated {args.user_id}.")
        return 0

    async def deactivate(self, args) -> int:
        await asyncio.to_thread(self.client.update_user, args.user_id, {"is_active": False})
        print(f"  Deactivated {args.user_id}.")
        return 0

    async def assign_role(self, args) -> int:
        await asyncio.to_thread(self.client.assign_role, args.user_id, args.role_id)
        print(f"  Assigned role {args.role_id} to {args.user_id}.")
        return 0

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def secrets(self, args) -> int:
        summaries = await asyncio.to_thread(self.client.list_secrets)
        if args.json:
            print(_to_json(summaries))
            return 0
        if not summaries:
            print("  No secrets stored.")
            return 0
        for secret in summaries:
            print(f"  {secret.id}  {secret.name:<24} {secret.description or '-'}")
        return 0

    async def reveal(self, args) -> int:
        vault = SecretVisibilityCache(self.client, BufferClipboard())
        await vault.reveal(args.secret_id)
        print(vault.value(args.secret_id))
        return 0


async def run(args) -> int:
    console = Console(get_settings())
    try:
        if args.command not in PUBLIC_COMMANDS:
            await resume_session(console.client, console.session)
            decision = RouteGuard(console.session).check()
            if not decision.allowed:
                print("  [!] Not logged in. Run 'python main.py login' first.")
                return 1
        handler = getattr(console, args.command.replace("-", "_"))
        return await handler(args)
    except UnauthorizedError:
        print("  [!] Session expired. Log in again.")
        return 1
    except ConsoleError as e:
        logger.debug("%s failed (status %s)", args.command, e.status)
        print(f"  [!] {e.message}")
        return 1
    finally:
        console.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iam-console",
        description="Operator console for the IAM platform.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log backend calls to stderr")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    p = sub.add_parser("login", help="Log in (prompts for password and, if enabled, a TOTP code)")
    p.add_argument("--username", help="Username (prompted when omitted)")
    sub.add_parser("logout", help="Forget the stored session")
    p = sub.add_parser("whoami", help="Show the logged-in operator")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p = sub.add_parser("dashboard", help="Users, secrets, recent logins and activity")
    p.add_argument("--json", action="store_true", help="Output structured JSON")

    p = sub.add_parser("users", help="List users")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p = sub.add_parser("register", help="Create a user (prompts for the password)")
    p.add_argument("username")
    p.add_argument("email")
    p = sub.add_parser("activate", help="Activate a user")
    p.add_argument("user_id", metavar="USER_ID")
    p = sub.add_parser("deactivate", help="Deactivate a user")
    p.add_argument("user_id", metavar="USER_ID")
    p = sub.add_parser("assign-role", help="Assign a role to a user")
    p.add_argument("user_id", metavar="USER_ID")
    p.add_argument("role_id", metavar="ROLE_ID")

    p = sub.add_parser("secrets", help="List secrets (values stay hidden)")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p = sub.add_parser("reveal", help="Decrypt and print one secret")
    p.add_argument("secret_id", metavar="ID")

    p = sub.add_parser("audit", help="Browse the audit trail")
    p.add_argument("--filter", metavar="TEXT", help="Match action, resource, user or IP")
    p.add_argument("--limit", type=int, default=None, help="Events per page (default AUDIT_PAGE_SIZE)")
    p.add_argument("--offset", type=int, default=0, help="Events to skip")
    p.add_argument("--json", action="store_true", help="Output structured JSON")

    sub.add_parser("totp-enable", help="Enroll the logged-in operator in TOTP")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose or get_settings().debug else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
