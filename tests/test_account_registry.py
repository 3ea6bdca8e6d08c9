"""Tests for the account registry."""

import json
import sqlite3
from unittest.mock import patch

import pytest

from conftest import make_account

from usage_agent.account_registry import (
    ACCOUNTS_CHANGED,
    ACCOUNTS_KEY,
    ACTIVE_ACCOUNT_CHANGED,
    ACTIVE_ACCOUNT_KEY,
    MAX_ACCOUNTS,
    AccountRegistry,
)


class TestAddAccount:
    def test_first_account_becomes_active(self, registry):
        account = make_account()
        assert registry.add(account) is True
        assert registry.active_account_id == account.id

    def test_second_account_does_not_switch(self, registry):
        first, second = make_account("org-1"), make_account("org-2")
        registry.add(first)
        registry.add(second)
        assert registry.active_account_id == first.id

    def test_limit_of_five(self, registry):
        for index in range(MAX_ACCOUNTS):
            assert registry.add(make_account(f"org-{index}"))
        assert not registry.can_add_account
        assert registry.add(make_account("org-extra")) is False
        assert len(registry.accounts) == MAX_ACCOUNTS

    def test_duplicate_organization_rejected(self, registry, store):
        registry.add(make_account("org-1"))
        before = store.get(ACCOUNTS_KEY)
        assert registry.add(make_account("org-1")) is False
        assert len(registry.accounts) == 1
        assert store.get(ACCOUNTS_KEY) == before

    def test_events_arrive_after_both_mutations(self, registry, events):
        seen = []
        events.subscribe(
            ACCOUNTS_CHANGED, lambda accounts: seen.append(("accounts", registry.active_account_id))
        )
        events.subscribe(
            ACTIVE_ACCOUNT_CHANGED, lambda account_id: seen.append(("active", len(registry.accounts)))
        )
        account = make_account()
        registry.add(account)
        # Every listener sees the fully applied state
        assert ("accounts", account.id) in seen
        assert ("active", 1) in seen
        assert all(value not in (None, 0) for _, value in seen)


class TestRemoveAccount:
    def test_removing_active_promotes_first_remaining(self, registry):
        first, second, third = (make_account(f"org-{i}") for i in range(3))
        for account in (first, second, third):
            registry.add(account)
        registry.switch_to(second.id)
        registry.remove(second.id)
        assert registry.active_account_id == first.id

    def test_removing_only_account_clears_active(self, registry, store):
        account = make_account()
        registry.add(account)
        registry.remove(account.id)
        assert registry.active_account_id is None
        assert registry.accounts == []
        assert store.get(ACTIVE_ACCOUNT_KEY) is None

    def test_removing_inactive_keeps_active(self, registry, events):
        first, second = make_account("org-1"), make_account("org-2")
        registry.add(first)
        registry.add(second)
        changes = []
        events.subscribe(ACTIVE_ACCOUNT_CHANGED, changes.append)
        registry.remove(second.id)
        assert registry.active_account_id == first.id
        assert changes == []

    def test_remove_unknown_is_noop(self, registry):
        registry.add(make_account())
        registry.remove("missing")
        assert len(registry.accounts) == 1

    def test_remove_all(self, registry, store):
        registry.add(make_account("org-1"))
        registry.add(make_account("org-2"))
        registry.remove_all()
        assert registry.accounts == []
        assert registry.active_account_id is None
        assert json.loads(store.get(ACCOUNTS_KEY)) == []


class TestLoad:
    def test_restores_accounts_and_active(self, store, registry):
        first, second = make_account("org-1"), make_account("org-2")
        registry.add(first)
        registry.add(second)
        registry.switch_to(second.id)

        reloaded = AccountRegistry(store)
        reloaded.load()
        assert [a.id for a in reloaded.accounts] == [first.id, second.id]
        assert reloaded.active_account_id == second.id

    def test_missing_active_selects_first(self, store):
        first, second = make_account("org-1"), make_account("org-2")
        store.set(ACCOUNTS_KEY, json.dumps([first.to_dict(), second.to_dict()]))
        registry = AccountRegistry(store)
        registry.load()
        assert registry.active_account_id == first.id
        assert store.get(ACTIVE_ACCOUNT_KEY) == first.id

    def test_dangling_active_is_repaired(self, store):
        account = make_account()
        store.set(ACCOUNTS_KEY, json.dumps([account.to_dict()]))
        store.set(ACTIVE_ACCOUNT_KEY, "deleted-account")
        registry = AccountRegistry(store)
        registry.load()
        assert registry.active_account_id == account.id

    def test_corrupt_list_starts_empty(self, store):
        store.set(ACCOUNTS_KEY, "{not json")
        registry = AccountRegistry(store)
        registry.load()
        assert registry.accounts == []
        assert registry.active_account_id is None

    def test_unreadable_record_skipped(self, store):
        account = make_account()
        store.set(ACCOUNTS_KEY, json.dumps([{"id": "broken"}, account.to_dict()]))
        registry = AccountRegistry(store)
        registry.load()
        assert [a.id for a in registry.accounts] == [account.id]


class TestFieldUpdates:
    def test_switch_to_unknown_is_ignored(self, registry):
        account = make_account()
        registry.add(account)
        registry.switch_to("missing")
        assert registry.active_account_id == account.id

    def test_nickname_trimmed_and_truncated(self, registry):
        account = make_account()
        registry.add(account)
        registry.update_nickname(account.id, "   " + "x" * 40 + "  ")
        assert registry.get(account.id).nickname == "x" * 30

    def test_blank_nickname_clears(self, registry):
        account = make_account(nickname="Old")
        registry.add(account)
        registry.update_nickname(account.id, "   ")
        assert registry.get(account.id).nickname is None

    def test_threshold_clamped(self, registry):
        account = make_account()
        registry.add(account)
        registry.update_threshold(account.id, 150)
        assert registry.get(account.id).notification_threshold == 100.0
        registry.update_threshold(account.id, -5)
        assert registry.get(account.id).notification_threshold == 0.0

    def test_updates_are_persisted(self, registry, store):
        account = make_account()
        registry.add(account)
        registry.update_session_key(account.id, "sk-ant-new-key")
        registry.update_notify_flag(account.id, True)

        reloaded = AccountRegistry(store)
        reloaded.load()
        restored = reloaded.get(account.id)
        assert restored.session_key == "sk-ant-new-key"
        assert restored.did_notify_below_threshold is True


class TestDisplayLabel:
    def test_prefers_nickname_then_email(self, registry):
        account = make_account(email="dev@example.com")
        registry.add(account)
        assert registry.display_label(account) == "dev@example.com"
        registry.update_nickname(account.id, "Work")
        assert registry.display_label(account) == "Work"

    def test_positional_label_tracks_removals(self, registry):
        first, second = make_account("org-1"), make_account("org-2")
        registry.add(first)
        registry.add(second)
        assert registry.display_label(second) == "Account 2"
        registry.remove(first.id)
        assert registry.display_label(second) == "Account 1"


class TestWriteFailures:
    def test_failed_add_leaves_registry_unchanged(self, registry, store, events):
        changes = []
        events.subscribe(ACCOUNTS_CHANGED, changes.append)
        with patch.object(store, "set", side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(sqlite3.OperationalError):
                registry.add(make_account())
        assert registry.accounts == []
        assert registry.active_account_id is None
        assert changes == []

    def test_failed_switch_keeps_previous_active(self, registry, store):
        first, second = make_account("org-1"), make_account("org-2")
        registry.add(first)
        registry.add(second)
        with patch.object(store, "set", side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(sqlite3.OperationalError):
                registry.switch_to(second.id)
        assert registry.active_account_id == first.id

    def test_failed_session_key_update_is_undone(self, registry, store):
        account = make_account()
        registry.add(account)
        old_key = account.session_key
        with patch.object(store, "set", side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(sqlite3.OperationalError):
                registry.update_session_key(account.id, "sk-ant-new")
        assert registry.get(account.id).session_key == old_key
