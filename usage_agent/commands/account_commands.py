"""Command-line handlers that turn user intents into agent calls."""

import argparse
import asyncio
import logging
import threading
from typing import Callable, Optional

from usage_agent.agent import REAUTH_REQUIRED, UsageAgent
from usage_agent.authenticator import LoginSurface, SessionAuthenticator
from usage_agent.claude_client import SESSION_COOKIE_NAME
from usage_agent.messaging import get_message
from usage_agent.models import Account, CookieEvent, LoginResult
from usage_agent.poller import SNAPSHOT_UPDATED

logger = logging.getLogger(__name__)


def parse_session_key(raw: str) -> Optional[str]:
    """Accept a bare cookie value or a 'name=value; ...' cookie header string."""
    raw = (raw or "").strip()
    if not raw:
        return None
    if "=" not in raw:
        return raw
    for part in raw.split(";"):
        name, _, value = part.strip().partition("=")
        if name.strip() == SESSION_COOKIE_NAME and value.strip():
            return value.strip()
    return None


class ConsoleLoginSurface(LoginSurface):
    """
    Headless login surface: the user signs in with a normal browser and pastes
    the session cookie. The pasted value is delivered to the authenticator as
    a secure, root-path cookie for claude.ai, the same event an embedded
    browser would report.
    """

    def __init__(self, prompt: Callable[[str], str] = input):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.prompt = prompt
        self.authenticator: Optional[SessionAuthenticator] = None
        self._task: Optional[asyncio.Task] = None

    def bind(self, authenticator: SessionAuthenticator) -> None:
        self.authenticator = authenticator

    def open(self, url: str) -> None:
        print(get_message("login.prompt", default="Paste the sessionKey cookie for {app_name}."))
        print(f"  {url}")
        self._task = asyncio.get_running_loop().create_task(self._read_cookie(url))

    def focus(self) -> None:
        self.logger.debug("Console login prompt is already waiting for input.")

    def close(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def clear_browsing_data(self) -> None:
        self.logger.debug("Console login keeps no browsing data.")

    def _start_reader(self) -> asyncio.Future:
        """Read the paste on a daemon thread; an abandoned read never holds up shutdown."""
        loop = asyncio.get_running_loop()
        pasted = loop.create_future()

        def deliver(raw: str) -> None:
            if not pasted.done():
                pasted.set_result(raw)

        def read() -> None:
            try:
                raw = self.prompt(f"{SESSION_COOKIE_NAME}: ")
            except (EOFError, OSError) as e:
                self.logger.debug(f"Login prompt closed: {type(e).__name__}")
                raw = ""
            try:
                loop.call_soon_threadsafe(deliver, raw)
            except RuntimeError:
                self.logger.debug("Login prompt answered after the event loop closed.")

        threading.Thread(target=read, name="session-key-prompt", daemon=True).start()
        return pasted

    async def _read_cookie(self, url: str) -> None:
        self.authenticator.on_navigation(url)
        raw = await self._start_reader()
        session_key = parse_session_key(raw)
        if not session_key:
            self._task = None
            self.authenticator.on_surface_closed()
            return
        self.authenticator.on_cookie_observed(
            CookieEvent(
                name=SESSION_COOKIE_NAME,
                domain="claude.ai",
                secure=True,
                path="/",
                value=session_key,
            )
        )


def find_account(agent: UsageAgent, selector: str) -> Optional[Account]:
    """Resolve an account by 1-based position, id (or id prefix), email or nickname."""
    accounts = agent.registry.accounts
    if selector.isdigit():
        index = int(selector) - 1
        return accounts[index] if 0 <= index < len(accounts) else None
    lowered = selector.lower()
    for account in accounts:
        if account.id == selector or (len(selector) >= 6 and account.id.startswith(selector)):
            return account
        if account.email and account.email.lower() == lowered:
            return account
        if account.nickname and account.nickname.lower() == lowered:
            return account
    return None


def format_login_result(agent: UsageAgent, result: Optional[LoginResult]) -> str:
    if result is None:
        return get_message("login.failed", reason="cancelled")
    if result.success:
        account = agent.registry.get(result.account_id)
        return get_message("login.success", label=agent.registry.display_label(account))
    reason = get_message(f"login.reasons.{result.reason.value}", default=result.reason.value)
    message = get_message("login.failed", reason=reason)
    if result.retryable:
        message = f"{message} {get_message('login.retry_hint')}"
    return message


def format_status(agent: UsageAgent) -> str:
    status = agent.status()
    if not status.authenticated:
        return get_message("status.no_account")
    if status.reauth_required:
        return get_message("status.reauth_required", label=status.display_label)
    if status.snapshot is None:
        return get_message("status.no_data", label=status.display_label)
    snapshot = status.snapshot
    return get_message(
        "status.usage",
        label=status.display_label,
        weekly=snapshot.weekly.remaining_percent,
        session=snapshot.session.remaining_percent,
        opus=snapshot.weekly_opus.remaining_percent,
        sonnet=snapshot.weekly_sonnet.remaining_percent,
        health=status.health.value,
    )


# --- Handlers ---


async def cmd_login(agent: UsageAgent, args: argparse.Namespace) -> int:
    if args.reauth:
        account = find_account(agent, args.reauth) if args.reauth != "active" else agent.registry.active_account
        if account is None:
            print(get_message("accounts.not_found", selector=args.reauth))
            return 1
        agent.reauthenticate(account.id)
        result = await agent.authenticator.wait_for_result()
    else:
        result = await agent.login()
    print(format_login_result(agent, result))
    return 0 if result is not None and result.success else 1


async def cmd_accounts(agent: UsageAgent, args: argparse.Namespace) -> int:
    accounts = agent.registry.accounts
    if not accounts:
        print(get_message("accounts.none"))
        return 0
    for account in accounts:
        marker = "*" if account.id == agent.registry.active_account_id else " "
        print(
            get_message(
                "accounts.line",
                marker=marker,
                label=agent.registry.display_label(account),
                organization_id=account.organization_id,
                threshold=account.notification_threshold,
            )
        )
    return 0


async def cmd_switch(agent: UsageAgent, args: argparse.Namespace) -> int:
    account = find_account(agent, args.account)
    if account is None:
        print(get_message("accounts.not_found", selector=args.account))
        return 1
    agent.switch_account(account.id)
    print(get_message("accounts.switched", label=agent.registry.display_label(account)))
    return 0


async def cmd_nickname(agent: UsageAgent, args: argparse.Namespace) -> int:
    account = find_account(agent, args.account)
    if account is None:
        print(get_message("accounts.not_found", selector=args.account))
        return 1
    agent.set_nickname(account.id, args.nickname)
    return 0


async def cmd_threshold(agent: UsageAgent, args: argparse.Namespace) -> int:
    account = find_account(agent, args.account)
    if account is None:
        print(get_message("accounts.not_found", selector=args.account))
        return 1
    agent.set_threshold(account.id, args.percent)
    return 0


async def cmd_logout(agent: UsageAgent, args: argparse.Namespace) -> int:
    if args.all:
        agent.sign_out_all()
        print(get_message("accounts.removed_all"))
        return 0
    if not args.account:
        print(get_message("accounts.not_found", selector=""))
        return 1
    account = find_account(agent, args.account)
    if account is None:
        print(get_message("accounts.not_found", selector=args.account))
        return 1
    label = agent.registry.display_label(account)
    agent.sign_out(account.id)
    print(get_message("accounts.removed", label=label))
    return 0


async def cmd_status(agent: UsageAgent, args: argparse.Namespace) -> int:
    await agent.poller.poll_once()
    print(format_status(agent))
    return 0


async def cmd_run(agent: UsageAgent, args: argparse.Namespace) -> int:
    """Poll until interrupted, printing each new reading."""
    agent.events.subscribe(SNAPSHOT_UPDATED, lambda snapshot: print(format_status(agent)))
    agent.events.subscribe(REAUTH_REQUIRED, lambda account_id: print(format_status(agent)))
    if agent.registry.active_account is None:
        print(get_message("accounts.none"))
        return 1
    await asyncio.Event().wait()
    return 0


COMMANDS = {
    "login": cmd_login,
    "accounts": cmd_accounts,
    "switch": cmd_switch,
    "nickname": cmd_nickname,
    "threshold": cmd_threshold,
    "logout": cmd_logout,
    "status": cmd_status,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="usage-agent", description="Track claude.ai usage quotas for up to 5 accounts."
    )
    subparsers = parser.add_subparsers(dest="command")

    login = subparsers.add_parser("login", help="Add an account by pasting its session cookie")
    login.add_argument(
        "--reauth",
        nargs="?",
        const="active",
        metavar="ACCOUNT",
        help="Refresh the session of an existing account (default: the active one)",
    )

    subparsers.add_parser("accounts", help="List accounts")

    switch = subparsers.add_parser("switch", help="Choose the account to track")
    switch.add_argument("account", help="Position, id, email or nickname")

    nickname = subparsers.add_parser("nickname", help="Set or clear an account nickname")
    nickname.add_argument("account")
    nickname.add_argument("nickname", nargs="?", default="")

    threshold = subparsers.add_parser("threshold", help="Set the low-usage alert threshold")
    threshold.add_argument("account")
    threshold.add_argument("percent", type=float)

    logout = subparsers.add_parser("logout", help="Remove an account")
    logout.add_argument("account", nargs="?")
    logout.add_argument("--all", action="store_true", help="Remove every account")

    subparsers.add_parser("status", help="Poll the active account once and print its usage")
    subparsers.add_parser("run", help="Keep polling and print each reading (default)")
    return parser


async def run_cli(argv) -> int:
    """Build the agent, dispatch one command, and always shut the agent down."""
    args = build_parser().parse_args(argv)
    handler = COMMANDS[args.command or "run"]

    surface = ConsoleLoginSurface()
    # Only "run" polls in the background; one-shot commands poll explicitly if at all
    agent = UsageAgent(surface, auto_poll=args.command in (None, "run"))
    surface.bind(agent.authenticator)
    agent.start()

    try:
        return await handler(agent, args)
    finally:
        agent.shutdown()
