"""Tests for the SQLite key/value store."""

import os
import stat

from usage_agent.database import SecureStore


class TestSecureStore:
    def test_get_missing_key_returns_none(self, store):
        assert store.get("absent") is None

    def test_set_then_get(self, store):
        store.set("accounts", "[]")
        assert store.get("accounts") == "[]"

    def test_set_overwrites(self, store):
        store.set("active_account_id", "a")
        store.set("active_account_id", "b")
        assert store.get("active_account_id") == "b"

    def test_delete(self, store):
        store.set("key", "value")
        assert store.delete("key") is True
        assert store.get("key") is None
        assert store.delete("key") is False

    def test_values_survive_reopen(self, tmp_path):
        path = str(tmp_path / "store.db")
        SecureStore(path).set("key", "persisted")
        assert SecureStore(path).get("key") == "persisted"

    def test_file_is_owner_only(self, tmp_path):
        path = tmp_path / "nested" / "store.db"
        SecureStore(str(path))
        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600
