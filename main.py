"""
main.py

Command-line entry point for Chatflow session management.
Signs in with any supported credential form, inspects and verifies the
stored session, switches business accounts, and logs out.
Part of Chatflow — Business Messaging Client.
"""

import argparse
import getpass
import json
import logging
import sys
from typing import Optional

import config
from auth.api_client import ApiClient
from auth.errors import AuthError
from auth.handshake import AuthOrchestrator
from auth.models import AuthPhase, Credentials, Session
from auth.session_store import SessionStore
from services.cache import DirectoryContentCache
from services.push import build_push_registrar
from storage import open_store

_log = logging.getLogger("chatflow.main")
_handler = logging.FileHandler(config.LOGS_DIR / "main.log", encoding="utf-8")
_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
_log.addHandler(_handler)
_log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


def print_banner() -> None:
    """Print the Chatflow banner."""
    print()
    print("=" * 60)
    print("   CHATFLOW - Business Messaging Client")
    print("=" * 60)
    print()


def print_phase(phase: AuthPhase, label: str) -> None:
    print(f"  ... {label}")


def print_session(session: Optional[Session], store: SessionStore) -> None:
    """
    Print a session summary without secrets.

    Args:
        session: The session to describe, or None.
        store: Store used for the team-member overlay and timezone.
    """
    if session is None:
        print("Session: none (signed out)")
        return

    user = session.user or {}
    print("Session:")
    print(f"  User:       {user.get('name') or user.get('email') or '-'}")
    print(f"  Token:      {'yes' if session.token else 'no'}")
    print(f"  Account:    {session.setting_id or '-'}")
    print(f"  Timezone:   {store.get_timezone() or '-'}")
    print(f"  Valid:      {'yes' if store.is_valid() else 'no'}")
    team_member = store.get_team_member()
    if team_member.logged_in:
        print(f"  Team member: {team_member.name} ({team_member.role or 'member'})")


def build_orchestrator() -> AuthOrchestrator:
    """
    Wire the store, API client and collaborators from configuration.

    Returns:
        A ready AuthOrchestrator.
    """
    store = SessionStore(open_store())
    api = ApiClient(store)
    return AuthOrchestrator(
        store,
        api,
        push=build_push_registrar(api),
        cache=DirectoryContentCache(config.CACHE_DIR),
    )


def read_credentials(email: Optional[str]) -> Credentials:
    email = email or input("Email: ").strip()
    password = getpass.getpass("Password: ")
    return Credentials(email=email, password=password)


def cmd_login(auth: AuthOrchestrator, args: argparse.Namespace) -> Optional[Session]:
    credentials = read_credentials(args.email)
    if args.mode == "direct":
        return auth.sign_in_direct(credentials)
    if args.mode == "browser":
        from browser.playwright_view import browser_login_sync

        return browser_login_sync(auth, mode="credentials", credentials=credentials, on_phase=print_phase)
    return auth.sign_in_provider(credentials)


def cmd_google_login(auth: AuthOrchestrator, args: argparse.Namespace) -> Optional[Session]:
    if args.id_token:
        return auth.sign_in_oauth(args.id_token, args.access_token)

    from browser.playwright_view import browser_login_sync

    return browser_login_sync(auth, mode="google", on_phase=print_phase)


def cmd_team_login(auth: AuthOrchestrator, args: argparse.Namespace) -> Optional[Session]:
    grant = json.loads(args.grant) if args.grant.lstrip().startswith("{") else {"settingId": args.grant}
    return auth.login_team_member(grant)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(description="Chatflow - Business Messaging Client")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in with email and password")
    login.add_argument("--email", help="Account email (prompted if omitted)")
    login.add_argument(
        "--mode",
        choices=["provider", "direct", "browser"],
        default="provider",
        help="provider: accounts login chain, direct: first-party sign in, "
        "browser: embedded browser form fill (default: provider)",
    )

    google = sub.add_parser("google-login", help="Sign in with Google")
    google.add_argument("--id-token", help="Native Google identity token; opens a browser if omitted")
    google.add_argument("--access-token", help="Google access token accompanying --id-token")

    token = sub.add_parser("token-login", help="Exchange a provider token obtained elsewhere")
    token.add_argument("token")

    team = sub.add_parser("team-login", help="Enter an account as a team member")
    team.add_argument("grant", help="Business account id, or the grant as a JSON object")

    sub.add_parser("team-logout", help="Leave team-member access")

    switch = sub.add_parser("switch-account", help="Switch the active business account")
    switch.add_argument("setting_id")

    sub.add_parser("status", help="Show the stored session")
    sub.add_parser("check", help="Verify the session with the server")
    sub.add_parser("logout", help="Log out and clear local state")

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Process exit code.
    """
    args = parse_args(argv)
    _log.debug("CONFIG | %s", config.as_dict())
    print_banner()
    auth = build_orchestrator()
    store = auth.store

    try:
        if args.command == "login":
            print_session(cmd_login(auth, args), store)
        elif args.command == "google-login":
            print_session(cmd_google_login(auth, args), store)
        elif args.command == "token-login":
            print_session(auth.token_auth(args.token), store)
        elif args.command == "team-login":
            print_session(cmd_team_login(auth, args), store)
        elif args.command == "team-logout":
            auth.logout_team_member()
            print("Team member access ended.")
        elif args.command == "switch-account":
            auth.access_business_account(args.setting_id)
            print(f"Active account: {args.setting_id}")
        elif args.command == "status":
            print_session(auth.restore(), store)
        elif args.command == "check":
            auth.check_session()
            print_session(store.restore_session(), store)
        elif args.command == "logout":
            auth.logout()
            print("Logged out.")
    except AuthError as exc:
        print(f"[{exc.kind.value}] {exc.message}")
        _log.warning("COMMAND %s FAILED | kind=%s", args.command, exc.kind.value)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130

    _log.info("COMMAND %s | ok", args.command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
