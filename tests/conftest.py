"""Shared pytest fixtures for the usage agent tests."""

import asyncio
from unittest.mock import MagicMock

import pytest

from usage_agent.account_registry import AccountRegistry
from usage_agent.authenticator import LoginSurface
from usage_agent.claude_client import ClaudeClient
from usage_agent.database import SecureStore
from usage_agent.events import EventEmitter
from usage_agent.models import Account, CookieEvent, UsageSnapshot, UsageTier


class FakeLoginSurface(LoginSurface):
    """Records every command the authenticator sends to the surface."""

    def __init__(self):
        self.opened = []
        self.focus_count = 0
        self.close_count = 0
        self.clear_count = 0

    def open(self, url):
        self.opened.append(url)

    def focus(self):
        self.focus_count += 1

    def close(self):
        self.close_count += 1

    def clear_browsing_data(self):
        self.clear_count += 1


class RecordingAlertSink:
    def __init__(self):
        self.alerts = []

    def alert(self, account_id, display_label, remaining_percent):
        self.alerts.append((account_id, display_label, remaining_percent))


def make_account(organization_id="org-1", **kwargs):
    kwargs.setdefault("session_key", f"sk-ant-sid01-{organization_id}-secret")
    return Account(organization_id=organization_id, **kwargs)


def session_cookie(value="sk-ant-sid01-captured", **overrides):
    fields = {
        "name": "sessionKey",
        "domain": ".claude.ai",
        "secure": True,
        "path": "/",
        "value": value,
    }
    fields.update(overrides)
    return CookieEvent(**fields)


def snapshot_with(weekly_remaining=100.0, session_remaining=100.0):
    return UsageSnapshot(
        session=UsageTier(remaining_percent=session_remaining),
        weekly=UsageTier(remaining_percent=weekly_remaining),
    )


async def settle(rounds=5):
    """Let pending tasks and to_thread callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)


@pytest.fixture
def store(tmp_path):
    return SecureStore(str(tmp_path / "store.db"))


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def registry(store, events):
    registry = AccountRegistry(store, events=events)
    registry.load()
    return registry


@pytest.fixture
def client():
    return MagicMock(spec=ClaudeClient)


@pytest.fixture
def surface():
    return FakeLoginSurface()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()
