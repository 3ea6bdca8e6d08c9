"""
Usage agent: owns and wires the account, login and polling components.

This module implements the long-running agent that the presentation layer
talks to. It handles:
- Construction of the store, registry, HTTP client, authenticator and poller
- Restarting the poller whenever the active account changes
- Stopping the poller and raising the re-authentication signal on auth failures
- Resuming polling after re-authentication (configurable)
- Sign-out ordering: the poller is stopped before anything is persisted

Key components:
- UsageAgent: the owner of all core components
- AgentStatus: a read-only view of the state the presentation layer renders
"""

import logging
from dataclasses import dataclass
from typing import Optional

from usage_agent.account_registry import ACTIVE_ACCOUNT_CHANGED, AccountRegistry
from usage_agent.authenticator import LOGIN_FINISHED, LoginSurface, SessionAuthenticator
from usage_agent.claude_client import ClaudeClient
from usage_agent.config import get_config_value
from usage_agent.database import SecureStore
from usage_agent.events import EventEmitter
from usage_agent.models import LoginResult, PollHealth, UsageSnapshot
from usage_agent.notifications import AlertSink, LoggingAlertSink
from usage_agent.poller import UsagePoller

REAUTH_REQUIRED = "reauth_required"


@dataclass(frozen=True)
class AgentStatus:
    """What the presentation layer needs to draw the current state."""

    authenticated: bool
    active_account_id: Optional[str]
    display_label: Optional[str]
    snapshot: Optional[UsageSnapshot]
    stale: bool
    consecutive_failures: int
    health: PollHealth
    reauth_required: bool


class UsageAgent:
    """
    Owner of the core components.

    All components share one EventEmitter, available as ``agent.events``, so a
    presentation layer subscribes in one place. Besides the component events
    the agent emits ``reauth_required(account_id)``.

    Attributes:
        store: SecureStore holding accounts and the active id
        registry: AccountRegistry
        client: ClaudeClient shared by login and polling
        authenticator: SessionAuthenticator
        poller: UsagePoller
    """

    def __init__(
        self,
        surface: LoginSurface,
        alert_sink: Optional[AlertSink] = None,
        store: Optional[SecureStore] = None,
        client: Optional[ClaudeClient] = None,
        resume_after_reauth: Optional[bool] = None,
        notifications_enabled: Optional[bool] = None,
        login_timeout_seconds: Optional[float] = None,
        auto_poll: bool = True,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.events = EventEmitter()
        self.auto_poll = auto_poll

        self.logger.info("Initializing secure store...")
        self.store = store or SecureStore(
            get_config_value("agent_settings.store_file_name", "usage_agent.db")
        )
        self.client = client or ClaudeClient(
            get_config_value("claude.base_url", "https://claude.ai"),
            client_version=get_config_value("claude.client_version", "1.0.0"),
            user_agent=get_config_value("claude.user_agent"),
            timeout=get_config_value("claude.request_timeout_seconds", 15),
        )
        self.resume_after_reauth = (
            resume_after_reauth
            if resume_after_reauth is not None
            else get_config_value("polling.resume_after_reauth", True)
        )

        self.registry = AccountRegistry(self.store, events=self.events)
        self.authenticator = SessionAuthenticator(
            self.registry,
            self.client,
            surface,
            login_url=get_config_value("claude.login_url", "https://claude.ai/login"),
            timeout_seconds=(
                login_timeout_seconds
                if login_timeout_seconds is not None
                else get_config_value("login.timeout_seconds", 300)
            ),
            events=self.events,
        )
        self.poller = UsagePoller(
            self.registry,
            self.client,
            alert_sink or LoggingAlertSink(),
            on_reauth_required=self._handle_reauth_required,
            notifications_enabled=(
                notifications_enabled
                if notifications_enabled is not None
                else get_config_value("notifications.enabled", True)
            ),
            events=self.events,
        )

        self._polled_account_id: Optional[str] = None
        self._reauth_account_id: Optional[str] = None
        self.events.subscribe(ACTIVE_ACCOUNT_CHANGED, self._on_active_account_changed)
        self.events.subscribe(LOGIN_FINISHED, self._on_login_finished)
        self.logger.info("UsageAgent initialized successfully.")

    # --- Lifecycle ---

    def start(self) -> None:
        """Load persisted accounts; polling starts if one of them is active."""
        self.logger.info("Starting usage agent...")
        self.registry.load()

    def shutdown(self) -> None:
        self.logger.info("Shutting down usage agent...")
        self.poller.stop()
        self.authenticator.shutdown()
        self.client.close()

    def on_system_wake(self) -> None:
        self.poller.on_system_wake()

    # --- User intents ---

    def sign_in(self) -> None:
        self.authenticator.start_login()

    async def login(self) -> Optional[LoginResult]:
        return await self.authenticator.login()

    def reauthenticate(self, account_id: Optional[str] = None) -> None:
        """Start a login attempt that refreshes an existing account's session."""
        target = account_id or self._reauth_account_id or self.registry.active_account_id
        self.authenticator.start_login(reauth_account_id=target)

    def switch_account(self, account_id: str) -> None:
        self.registry.switch_to(account_id)

    def set_threshold(self, account_id: str, threshold: float) -> None:
        self.registry.update_threshold(account_id, threshold)

    def set_nickname(self, account_id: str, nickname: Optional[str]) -> None:
        self.registry.update_nickname(account_id, nickname)

    def sign_out(self, account_id: str) -> None:
        if account_id == self._polled_account_id:
            self.poller.stop()
        if account_id == self._reauth_account_id:
            self._reauth_account_id = None
        self.authenticator.sign_out(account_id)

    def sign_out_all(self) -> None:
        self.poller.stop()
        self._reauth_account_id = None
        self.authenticator.sign_out_all()

    def resume_polling(self) -> None:
        """Explicit restart after an auth failure, used when automatic resume is off."""
        if self.registry.active_account is None:
            return
        self._reauth_account_id = None
        self.poller.switch_account()

    # --- Status ---

    def status(self) -> AgentStatus:
        active = self.registry.active_account
        state = self.poller.state
        return AgentStatus(
            authenticated=active is not None,
            active_account_id=active.id if active else None,
            display_label=self.registry.display_label(active) if active else None,
            snapshot=state.latest_snapshot,
            stale=self.poller.is_stale(),
            consecutive_failures=state.consecutive_failures,
            health=self.poller.health(),
            reauth_required=(
                active is not None and self._reauth_account_id == active.id
            ),
        )

    # --- Event handlers ---

    def _on_active_account_changed(self, account_id: Optional[str]) -> None:
        if account_id == self._polled_account_id and (
            account_id is None or self.poller.running
        ):
            return
        self._polled_account_id = account_id
        if not self.auto_poll:
            self.poller.reset()
            return
        if account_id is None:
            self.logger.info("No active account; polling stopped.")
            self.poller.reset()
            return
        if account_id == self._reauth_account_id:
            self.logger.info(
                f"Account {account_id} is awaiting re-authentication; not polling."
            )
            self.poller.reset()
            return
        self.poller.switch_account()

    def _handle_reauth_required(self, account_id: str) -> None:
        self.logger.warning(f"Credentials invalid for account {account_id}; polling stopped.")
        self.poller.stop()
        self._reauth_account_id = account_id
        self.events.emit(REAUTH_REQUIRED, account_id)

    def _on_login_finished(self, result: LoginResult) -> None:
        if not result.success or result.account_id != self._reauth_account_id:
            return
        self._reauth_account_id = None
        if result.account_id != self.registry.active_account_id:
            return
        if self.resume_after_reauth and self.auto_poll:
            self.logger.info(f"Account {result.account_id} re-authenticated; resuming polling.")
            self.poller.switch_account()
        else:
            self.logger.info(
                f"Account {result.account_id} re-authenticated; waiting for manual resume."
            )
