"""
Login state machine: from a captured session cookie to a registered account.

The authenticator drives an external login surface (an embedded browser in
the desktop app, a paste prompt in the CLI). The surface reports navigations
and cookie events; the authenticator enforces the navigation allow-list,
captures the first qualifying session cookie of the attempt, discovers the
organization behind it and commits the resulting account to the registry.

States: idle -> presenting -> awaiting_cookie -> verifying -> resolved
"""

import asyncio
import logging
import sqlite3
from typing import Optional
from urllib.parse import urlparse

from usage_agent.account_registry import AccountRegistry
from usage_agent.claude_client import (
    SESSION_COOKIE_NAME,
    AuthenticationError,
    ClaudeApiError,
    ClaudeClient,
)
from usage_agent.events import EventEmitter
from usage_agent.models import (
    Account,
    CookieEvent,
    LoginFailureReason,
    LoginResult,
    LoginState,
    mask_secret,
)

SERVICE_DOMAIN = "claude.ai"
SESSION_COOKIE_DOMAINS = frozenset({SERVICE_DOMAIN, f".{SERVICE_DOMAIN}"})

# Exact hosts only: the service itself and the federated identity providers it redirects to.
ALLOWED_NAVIGATION_HOSTS = frozenset(
    {
        SERVICE_DOMAIN,
        f"www.{SERVICE_DOMAIN}",
        "accounts.google.com",
        "appleid.apple.com",
        "challenges.cloudflare.com",
    }
)

DEFAULT_LOGIN_TIMEOUT_SECONDS = 300

LOGIN_STATE_CHANGED = "login_state_changed"
LOGIN_FINISHED = "login_finished"


class LoginSurface:
    """The UI-side browser the authenticator commands.

    Implementations report back through ``SessionAuthenticator.on_navigation``,
    ``on_cookie_observed`` and ``on_surface_closed``. ``close()`` must release
    cookie observers and stop any in-flight navigation.
    """

    def open(self, url: str) -> None:
        raise NotImplementedError

    def focus(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def clear_browsing_data(self) -> None:
        raise NotImplementedError


def is_navigation_allowed(url: str) -> bool:
    """Only https navigations to an allow-listed host may proceed."""
    parsed = urlparse(url)
    if parsed.scheme != "https":
        return False
    host = (parsed.hostname or "").lower()
    return host in ALLOWED_NAVIGATION_HOSTS


def is_session_cookie(cookie: CookieEvent) -> bool:
    return (
        cookie.name == SESSION_COOKIE_NAME
        and cookie.domain.lower() in SESSION_COOKIE_DOMAINS
        and cookie.secure
        and cookie.path == "/"
        and bool(cookie.value)
    )


class SessionAuthenticator:
    """
    Runs one login attempt at a time.

    Each attempt has an integer identity. The timeout task and the
    verification task carry the identity they were started for and do nothing
    if a newer attempt (or a cancellation) has happened since.

    Events:
        login_state_changed(state)
        login_finished(result): a LoginResult for every attempt that resolves
    """

    def __init__(
        self,
        registry: AccountRegistry,
        client: ClaudeClient,
        surface: LoginSurface,
        login_url: str,
        timeout_seconds: float = DEFAULT_LOGIN_TIMEOUT_SECONDS,
        events: Optional[EventEmitter] = None,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.registry = registry
        self.client = client
        self.surface = surface
        self.login_url = login_url
        self.timeout_seconds = timeout_seconds
        self.events = events or EventEmitter()

        self.state = LoginState.IDLE
        self.last_result: Optional[LoginResult] = None
        self._attempt_id = 0
        self._cookie_captured = False
        self._surface_open = False
        self._reauth_account_id: Optional[str] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._verify_task: Optional[asyncio.Task] = None
        self._result_future: Optional[asyncio.Future] = None

    @property
    def in_progress(self) -> bool:
        return self.state in (
            LoginState.PRESENTING,
            LoginState.AWAITING_COOKIE,
            LoginState.VERIFYING,
        )

    def _set_state(self, state: LoginState) -> None:
        if state == self.state:
            return
        self.logger.debug(f"Login attempt {self._attempt_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.events.emit(LOGIN_STATE_CHANGED, state)

    # --- Entry points ---

    def start_login(self, reauth_account_id: Optional[str] = None) -> None:
        """Open the login surface, or re-focus it if an attempt is already running."""
        if self.in_progress:
            if self._surface_open:
                self.logger.debug("Login surface already open; re-focusing.")
                self.surface.focus()
            else:
                self.logger.debug("Login already verifying; start request ignored.")
            return

        self._attempt_id += 1
        self._cookie_captured = False
        self._reauth_account_id = reauth_account_id
        self._result_future = asyncio.get_running_loop().create_future()
        self._set_state(LoginState.PRESENTING)
        self._surface_open = True
        self.logger.info(
            f"Starting login attempt {self._attempt_id}"
            + (f" to re-authenticate account {reauth_account_id}" if reauth_account_id else "")
        )
        self.surface.open(self.login_url)

    async def wait_for_result(self) -> Optional[LoginResult]:
        """Wait for the current attempt to resolve; returns the last result if none is running."""
        if self._result_future is None:
            return self.last_result
        return await asyncio.shield(self._result_future)

    async def login(self, reauth_account_id: Optional[str] = None) -> Optional[LoginResult]:
        self.start_login(reauth_account_id)
        return await self.wait_for_result()

    # --- Surface callbacks ---

    def on_navigation(self, url: str) -> bool:
        """Return whether the surface may load url; the first allowed load arms the timeout."""
        if not is_navigation_allowed(url):
            self.logger.warning(f"Blocked login navigation to {urlparse(url).hostname or url!r}")
            return False

        if self.state == LoginState.PRESENTING:
            self._set_state(LoginState.AWAITING_COOKIE)
            self._arm_timeout()
        return True

    def on_cookie_observed(self, cookie: CookieEvent) -> None:
        if self.state not in (LoginState.PRESENTING, LoginState.AWAITING_COOKIE):
            return
        if self._cookie_captured:
            return
        if not is_session_cookie(cookie):
            if cookie.name == SESSION_COOKIE_NAME:
                self.logger.warning(
                    f"Ignoring {SESSION_COOKIE_NAME} cookie with unexpected attributes "
                    f"(domain={cookie.domain!r}, secure={cookie.secure}, path={cookie.path!r})"
                )
            return

        self._cookie_captured = True
        self.logger.info(
            f"Captured session cookie {mask_secret(cookie.value)} for attempt {self._attempt_id}"
        )
        self._cancel_timeout()
        self._set_state(LoginState.VERIFYING)
        self._teardown_surface(clear_data=True)
        self._verify_task = asyncio.get_running_loop().create_task(
            self._verify(self._attempt_id, cookie)
        )

    def on_surface_closed(self) -> None:
        """The user closed the surface; an unresolved attempt ends as cancelled."""
        was_open = self._surface_open
        self._surface_open = False
        if not was_open or self.state not in (LoginState.PRESENTING, LoginState.AWAITING_COOKIE):
            return
        self.logger.info(f"Login attempt {self._attempt_id} cancelled by user")
        self._resolve(LoginResult(success=False, reason=LoginFailureReason.CANCELLED))

    def cancel_login(self) -> None:
        """Programmatic equivalent of the user closing the surface."""
        if self.state in (LoginState.PRESENTING, LoginState.AWAITING_COOKIE):
            self._teardown_surface()
            self._resolve(LoginResult(success=False, reason=LoginFailureReason.CANCELLED))

    # --- Timeout ---

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        self._timeout_task = asyncio.get_running_loop().create_task(
            self._login_timeout(self._attempt_id)
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_task is not None and not self._timeout_task.done():
            self._timeout_task.cancel()
        self._timeout_task = None

    async def _login_timeout(self, attempt_id: int) -> None:
        await asyncio.sleep(self.timeout_seconds)
        if attempt_id != self._attempt_id:
            return
        if self.state not in (LoginState.PRESENTING, LoginState.AWAITING_COOKIE):
            return
        self.logger.warning(
            f"Login attempt {attempt_id} timed out after {self.timeout_seconds}s without a session cookie"
        )
        self._timeout_task = None
        self._teardown_surface()
        self._resolve(LoginResult(success=False, reason=LoginFailureReason.TIMEOUT))

    # --- Verification ---

    async def _verify(self, attempt_id: int, cookie: CookieEvent) -> None:
        try:
            organizations = await asyncio.to_thread(
                self.client.get_organizations, cookie.value
            )
        except AuthenticationError as e:
            if attempt_id == self._attempt_id:
                self.logger.warning(f"Organization discovery refused the captured cookie: {e}")
                self._resolve(LoginResult(success=False, reason=LoginFailureReason.AUTH))
            return
        except ClaudeApiError as e:
            if attempt_id == self._attempt_id:
                self.logger.error(f"Organization discovery failed: {e}")
                self._resolve(LoginResult(success=False, reason=LoginFailureReason.NETWORK))
            return

        if attempt_id != self._attempt_id or self.state != LoginState.VERIFYING:
            self.logger.debug(f"Discarding verification result for stale attempt {attempt_id}")
            return

        if not organizations:
            self.logger.warning("Session has no organizations (no eligible subscription).")
            self._resolve(
                LoginResult(success=False, reason=LoginFailureReason.NO_ORGANIZATION)
            )
            return

        organization = organizations[0]
        try:
            result = self._commit_account(organization, cookie)
        except sqlite3.Error as e:
            self.logger.error(f"Could not save account for organization {organization['uuid']}: {e}")
            result = LoginResult(success=False, reason=LoginFailureReason.STORAGE)
        self._resolve(result)

    def _commit_account(self, organization: dict, cookie: CookieEvent) -> LoginResult:
        organization_id = organization["uuid"]
        existing = self.registry.find_by_organization(organization_id)

        if existing is not None:
            if existing.id == self._reauth_account_id:
                with self.registry.events.batch():
                    self.registry.update_session_key(
                        existing.id, cookie.value, cookie.expires_at
                    )
                    self.registry.switch_to(existing.id)
                self.logger.info(f"Refreshed session for account {existing.id}")
                return LoginResult(success=True, account_id=existing.id)
            self.logger.warning(
                f"Organization {organization_id} is already registered as account {existing.id}"
            )
            return LoginResult(success=False, reason=LoginFailureReason.DUPLICATE)

        if not self.registry.can_add_account:
            return LoginResult(success=False, reason=LoginFailureReason.LIMIT)

        account = Account(
            session_key=cookie.value,
            organization_id=organization_id,
            email=organization.get("email_address"),
            session_key_expiration=cookie.expires_at,
        )
        with self.registry.events.batch():
            if not self.registry.add(account):
                return LoginResult(success=False, reason=LoginFailureReason.LIMIT)
            self.registry.switch_to(account.id)
        return LoginResult(success=True, account_id=account.id)

    # --- Resolution ---

    def _teardown_surface(self, clear_data: bool = False) -> None:
        if self._surface_open:
            self._surface_open = False
            self.surface.close()
        if clear_data:
            self.surface.clear_browsing_data()

    def _resolve(self, result: LoginResult) -> None:
        self._cancel_timeout()
        if not result.success:
            self._cookie_captured = False
        self._reauth_account_id = None
        self.last_result = result

        if result.success:
            self.logger.info(f"Login attempt {self._attempt_id} succeeded: account {result.account_id}")
        elif result.reason != LoginFailureReason.CANCELLED:
            self.logger.warning(
                f"Login attempt {self._attempt_id} failed: {result.reason.value}"
                + (" (retryable)" if result.retryable else "")
            )

        self._set_state(
            LoginState.IDLE
            if result.reason == LoginFailureReason.CANCELLED
            else LoginState.RESOLVED
        )
        future, self._result_future = self._result_future, None
        if future is not None and not future.done():
            future.set_result(result)
        self.events.emit(LOGIN_FINISHED, result)

    # --- Sign out ---

    def sign_out(self, account_id: str) -> None:
        """Remove one account; other accounts are untouched."""
        self._cookie_captured = False
        self.registry.remove(account_id)

    def sign_out_all(self) -> None:
        self._cookie_captured = False
        self.registry.remove_all()
        self.surface.clear_browsing_data()
        self.logger.info("Signed out of all accounts.")

    def shutdown(self) -> None:
        """Cancel any running attempt and its tasks."""
        self.cancel_login()
        self._cancel_timeout()
        if self._verify_task is not None and not self._verify_task.done():
            self._verify_task.cancel()
        self._verify_task = None
        if self.state == LoginState.VERIFYING:
            self._resolve(LoginResult(success=False, reason=LoginFailureReason.CANCELLED))
