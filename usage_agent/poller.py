"""
Adaptive usage polling for the active account.

The poller keeps a single pending timer task. Every tick performs one poll
attempt, then schedules the next one using the backoff table below. Results
are tagged with the poller generation that dispatched them; ``stop()`` and
``switch_account()`` bump the generation, so a response that arrives late
for a previous account is dropped instead of landing in the current state.
"""

import asyncio
import datetime
import logging
import sqlite3
from typing import Callable, Optional

from usage_agent.account_registry import AccountRegistry
from usage_agent.claude_client import AuthenticationError, ClaudeApiError, ClaudeClient
from usage_agent.events import EventEmitter
from usage_agent.models import Account, PollHealth, PollState, UsageSnapshot, utcnow
from usage_agent.notifications import AlertSink

BASE_INTERVAL = 120
BACKOFF_INTERVAL_1 = 300
BACKOFF_INTERVAL_2 = 600
MAX_BACKOFF_INTERVAL = 1800

STALE_FAILURE_THRESHOLD = 3
BACKOFF_THRESHOLD_2 = 6
ERROR_FAILURE_THRESHOLD = 10

STALE_THRESHOLD_SECONDS = 660

SNAPSHOT_UPDATED = "snapshot_updated"
FAILURES_CHANGED = "failures_changed"
AUTH_FAILED = "auth_failed"
POLL_STATE_RESET = "poll_state_reset"


def poll_interval(consecutive_failures: int) -> int:
    """Seconds until the next attempt after the given number of consecutive failures."""
    if consecutive_failures < STALE_FAILURE_THRESHOLD:
        return BASE_INTERVAL
    if consecutive_failures < BACKOFF_THRESHOLD_2:
        return BACKOFF_INTERVAL_1
    if consecutive_failures < ERROR_FAILURE_THRESHOLD:
        return BACKOFF_INTERVAL_2
    return MAX_BACKOFF_INTERVAL


class UsagePoller:
    """
    Fetches quota snapshots for whichever account the registry marks active.

    Events:
        snapshot_updated(snapshot)
        failures_changed(consecutive_failures)
        auth_failed(account_id)
        poll_state_reset()
    """

    def __init__(
        self,
        registry: AccountRegistry,
        client: ClaudeClient,
        alert_sink: AlertSink,
        on_reauth_required: Optional[Callable[[str], None]] = None,
        notifications_enabled: bool = True,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.registry = registry
        self.client = client
        self.alert_sink = alert_sink
        self.on_reauth_required = on_reauth_required
        self.notifications_enabled = notifications_enabled
        self.events = events or EventEmitter()
        self.clock = clock

        self.state = PollState()
        self.running = False
        self._generation = 0
        self._timer_task: Optional[asyncio.Task] = None
        self._fetch_task: Optional[asyncio.Task] = None

    # --- Derived state ---

    @property
    def interval(self) -> int:
        return poll_interval(self.state.consecutive_failures)

    @property
    def is_polling(self) -> bool:
        return self._fetch_task is not None and not self._fetch_task.done()

    def is_stale(self, now: Optional[datetime.datetime] = None) -> bool:
        last = self.state.last_successful_fetch
        if last is None:
            return True
        return ((now or self.clock()) - last).total_seconds() > STALE_THRESHOLD_SECONDS

    def health(self, now: Optional[datetime.datetime] = None) -> PollHealth:
        if self.state.auth_failed or self.state.consecutive_failures >= ERROR_FAILURE_THRESHOLD:
            return PollHealth.ERROR
        if self.state.latest_snapshot is None:
            return PollHealth.NO_DATA
        if self.is_stale(now):
            return PollHealth.STALE
        return PollHealth.FRESH

    # --- Lifecycle ---

    def start(self) -> None:
        """Poll immediately, then keep polling on the adaptive schedule."""
        if self.running:
            return
        self.running = True
        self.logger.info("Usage polling started.")
        self._schedule(0)

    def stop(self) -> None:
        """Cancel the pending timer and any in-flight request."""
        self._generation += 1
        self._cancel_timer()
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()
        self._fetch_task = None
        if self.running:
            self.running = False
            self.logger.info("Usage polling stopped.")

    def reset(self) -> None:
        """Stop and forget everything known about the previous account."""
        self.stop()
        self.state = PollState()
        self.events.emit(POLL_STATE_RESET)
        self.logger.info(
            f"Poll state reset for account {self.registry.active_account_id or 'none'}"
        )

    def switch_account(self) -> None:
        """Start over for the current active account."""
        self.reset()
        self.start()

    def on_system_wake(self) -> None:
        """Poll out of band after sleep, then resume the normal schedule."""
        if not self.running:
            return
        if self.registry.active_account is None or self.state.auth_failed:
            return
        if self.is_polling:
            return
        self.logger.info("System wake: polling immediately.")
        self._schedule(0)

    def _schedule(self, delay: float) -> None:
        self._cancel_timer()
        self._timer_task = asyncio.get_running_loop().create_task(
            self._tick(self._generation, delay)
        )

    def _cancel_timer(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None

    async def _tick(self, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.poll_once()
        except Exception:
            self.logger.exception("Unexpected error during usage poll")
            if generation == self._generation:
                self._record_failure()
        if generation != self._generation or not self.running:
            return
        self._timer_task = None
        next_delay = self.interval
        self.logger.debug(f"Next usage poll in {next_delay}s")
        self._schedule(next_delay)

    # --- Polling ---

    async def poll_once(self) -> None:
        """One poll attempt; dropped if another attempt is already in flight."""
        if self.is_polling:
            self.logger.debug("Poll already in flight; dropping this attempt.")
            return

        account = self.registry.active_account
        if account is None:
            self.logger.debug("Poll skipped - no active account")
            return

        if account.is_session_expired(self.clock()):
            self.logger.info(
                f"Session cookie for account {account.id} expired; skipping network call"
            )
            self._record_auth_failure(account)
            return

        generation = self._generation
        fetch_task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(
                self.client.get_usage, account.organization_id, account.session_key
            )
        )
        self._fetch_task = fetch_task
        try:
            snapshot = await fetch_task
        except asyncio.CancelledError:
            if generation != self._generation:
                self.logger.debug(f"Poll for account {account.id} cancelled")
                return
            raise
        except AuthenticationError as e:
            if self._is_current(generation, account):
                self.logger.info(f"Auth failure polling account {account.id}: {e}")
                self._record_auth_failure(account)
            return
        except ClaudeApiError as e:
            if self._is_current(generation, account):
                self.logger.error(f"Poll failed for account {account.id}: {e}")
                self._record_failure()
            return
        finally:
            if self._fetch_task is fetch_task:
                self._fetch_task = None

        if not self._is_current(generation, account):
            self.logger.debug(f"Discarding late usage result for account {account.id}")
            return
        self._record_success(account, snapshot)

    def _is_current(self, generation: int, account: Account) -> bool:
        return (
            generation == self._generation
            and self.registry.active_account_id == account.id
        )

    def _record_failure(self) -> None:
        self.state.consecutive_failures += 1
        self.events.emit(FAILURES_CHANGED, self.state.consecutive_failures)

    def _record_auth_failure(self, account: Account) -> None:
        self.state.auth_failed = True
        self._record_failure()
        self.events.emit(AUTH_FAILED, account.id)
        if self.on_reauth_required is not None:
            self.on_reauth_required(account.id)

    def _record_success(self, account: Account, snapshot: UsageSnapshot) -> None:
        had_failures = self.state.consecutive_failures != 0
        self.state.latest_snapshot = snapshot
        self.state.last_successful_fetch = self.clock()
        self.state.consecutive_failures = 0
        self.state.auth_failed = False
        self.logger.info(
            f"Usage for account {account.id}: weekly {snapshot.weekly_remaining:.1f}% remaining, "
            f"session {snapshot.session_remaining:.1f}% remaining"
        )
        self.events.emit(SNAPSHOT_UPDATED, snapshot)
        if had_failures:
            self.events.emit(FAILURES_CHANGED, 0)
        self._check_and_notify(account, snapshot.weekly_remaining)

    # --- Notifications ---

    def _check_and_notify(self, account: Account, remaining: float) -> None:
        if not self.notifications_enabled:
            return

        threshold = account.notification_threshold
        if remaining < threshold and not account.did_notify_below_threshold:
            self._save_notify_flag(account, True)
            label = self.registry.display_label(account)
            self.logger.info(
                f"Weekly quota for {label} below {threshold:.0f}% ({remaining:.1f}% remaining); alerting"
            )
            try:
                self.alert_sink.alert(account.id, label, remaining)
            except Exception:
                self.logger.exception(f"Alert sink failed for account {account.id}")
        elif remaining >= threshold and account.did_notify_below_threshold:
            self._save_notify_flag(account, False)
            self.logger.debug(f"Low-usage alert re-armed for account {account.id}")

    def _save_notify_flag(self, account: Account, value: bool) -> None:
        """The in-memory latch holds even when the store write fails."""
        try:
            self.registry.update_notify_flag(account.id, value)
        except sqlite3.Error as e:
            self.logger.error(f"Could not persist alert latch for account {account.id}: {e}")
