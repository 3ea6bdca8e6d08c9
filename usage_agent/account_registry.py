"""Account collection, active-account pointer and their mutation rules."""

import datetime
import json
import logging
import sqlite3
from typing import List, Optional

from usage_agent.database import SecureStore
from usage_agent.events import EventEmitter
from usage_agent.models import MAX_NICKNAME_LENGTH, Account

ACCOUNTS_KEY = "accounts"
ACTIVE_ACCOUNT_KEY = "active_account_id"
MAX_ACCOUNTS = 5

ACCOUNTS_CHANGED = "accounts_changed"
ACTIVE_ACCOUNT_CHANGED = "active_account_changed"


class AccountRegistry:
    """
    Owns the set of accounts and which one is active.

    Every mutating call re-serializes the whole collection to the store. The
    account list and the active id live under separate keys, so a crash
    between the two writes can leave them out of step; ``load()`` repairs a
    dangling or missing active id.

    When a store write fails in ``add``, ``switch_to`` or ``update_session_key``
    the in-memory change is undone before the sqlite3 error propagates.

    Events:
        accounts_changed(accounts): the collection or an account's fields changed
        active_account_changed(account_id): the active id changed (None when cleared)
    """

    def __init__(self, store: SecureStore, events: Optional[EventEmitter] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.store = store
        self.events = events or EventEmitter()
        self._accounts: List[Account] = []
        self._active_account_id: Optional[str] = None

    # --- Read access ---

    @property
    def accounts(self) -> List[Account]:
        return list(self._accounts)

    @property
    def active_account_id(self) -> Optional[str]:
        return self._active_account_id

    @property
    def active_account(self) -> Optional[Account]:
        if self._active_account_id is None:
            return None
        return self.get(self._active_account_id)

    @property
    def can_add_account(self) -> bool:
        return len(self._accounts) < MAX_ACCOUNTS

    def get(self, account_id: str) -> Optional[Account]:
        for account in self._accounts:
            if account.id == account_id:
                return account
        return None

    def find_by_organization(self, organization_id: str) -> Optional[Account]:
        for account in self._accounts:
            if account.organization_id == organization_id:
                return account
        return None

    def display_label(self, account: Account) -> str:
        """Nickname, then email, then a positional 'Account N' label."""
        if account.nickname:
            return account.nickname
        if account.email:
            return account.email
        for position, candidate in enumerate(self._accounts, start=1):
            if candidate.id == account.id:
                return f"Account {position}"
        return f"Account {len(self._accounts) + 1}"

    # --- Loading ---

    def load(self) -> None:
        """Restore accounts and the active id from the store."""
        self._accounts = self._read_accounts()
        stored_active = self.store.get(ACTIVE_ACCOUNT_KEY)

        if stored_active and self.get(stored_active) is not None:
            self._active_account_id = stored_active
        elif self._accounts:
            if stored_active:
                self.logger.warning(
                    f"Stored active account {stored_active} no longer exists. Selecting first account."
                )
            self._active_account_id = self._accounts[0].id
            self._persist_active()
        else:
            self._active_account_id = None
            if stored_active:
                self._persist_active()

        self.logger.info(
            f"Loaded {len(self._accounts)} account(s). Active: {self._active_account_id or 'none'}"
        )
        with self.events.batch():
            self.events.emit(ACCOUNTS_CHANGED, self.accounts)
            self.events.emit(ACTIVE_ACCOUNT_CHANGED, self._active_account_id)

    def _read_accounts(self) -> List[Account]:
        raw = self.store.get(ACCOUNTS_KEY)
        if not raw:
            return []
        try:
            records = json.loads(raw)
        except json.JSONDecodeError as e:
            self.logger.error(f"Stored account list is not valid JSON: {e}. Starting empty.")
            return []
        if not isinstance(records, list):
            self.logger.error(
                f"Stored account list has unexpected type {type(records).__name__}. Starting empty."
            )
            return []

        accounts = []
        for record in records:
            try:
                accounts.append(Account.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.error(f"Skipping unreadable account record: {e}")
        return accounts[:MAX_ACCOUNTS]

    # --- Mutations ---

    def add(self, account: Account) -> bool:
        """Append a new account; rejected at the limit or for a known organization."""
        if len(self._accounts) >= MAX_ACCOUNTS:
            self.logger.warning(
                f"Cannot add account - limit of {MAX_ACCOUNTS} reached"
            )
            return False
        if self.find_by_organization(account.organization_id) is not None:
            self.logger.warning(
                f"Cannot add account - duplicate organization_id: {account.organization_id}"
            )
            return False

        with self.events.batch():
            self._accounts.append(account)
            try:
                self._persist()
            except sqlite3.Error:
                self._accounts.remove(account)
                raise
            if len(self._accounts) == 1:
                self.switch_to(account.id)

        self.logger.info(f"Added account: {self.display_label(account)} (ID: {account.id})")
        return True

    def remove(self, account_id: str) -> None:
        """Remove an account, promoting the first remaining one if it was active."""
        account = self.get(account_id)
        if account is None:
            self.logger.debug(f"Remove ignored: account {account_id} not found")
            return

        with self.events.batch():
            self._accounts.remove(account)
            if self._active_account_id == account_id:
                self._active_account_id = self._accounts[0].id if self._accounts else None
                self._persist_active()
                self.events.emit(ACTIVE_ACCOUNT_CHANGED, self._active_account_id)
            self._persist()

        self.logger.info(
            f"Removed account {account_id}. Remaining: {len(self._accounts)}"
        )

    def remove_all(self) -> None:
        with self.events.batch():
            had_active = self._active_account_id is not None
            self._accounts = []
            self._active_account_id = None
            self._persist_active()
            self._persist()
            if had_active:
                self.events.emit(ACTIVE_ACCOUNT_CHANGED, None)
        self.logger.info("Removed all accounts.")

    def switch_to(self, account_id: str) -> None:
        """Make account_id the polled account; ignored for unknown ids."""
        if self.get(account_id) is None:
            self.logger.warning(f"Switch ignored: account {account_id} not found")
            return
        previous = self._active_account_id
        self._active_account_id = account_id
        try:
            self._persist_active()
        except sqlite3.Error:
            self._active_account_id = previous
            raise
        self.events.emit(ACTIVE_ACCOUNT_CHANGED, account_id)
        self.logger.info(f"Switched to account {account_id}")

    def update_session_key(
        self,
        account_id: str,
        session_key: str,
        expiration: Optional[datetime.datetime] = None,
    ) -> None:
        account = self.get(account_id)
        if account is None:
            return
        previous = (account.session_key, account.session_key_expiration)
        account.session_key = session_key
        account.session_key_expiration = expiration
        try:
            self._persist()
        except sqlite3.Error:
            account.session_key, account.session_key_expiration = previous
            raise
        self.logger.info(f"Updated session key for account {account_id}")

    def update_nickname(self, account_id: str, nickname: Optional[str]) -> None:
        account = self.get(account_id)
        if account is None:
            return
        trimmed = (nickname or "").strip()[:MAX_NICKNAME_LENGTH]
        account.nickname = trimmed or None
        self._persist()

    def update_notify_flag(self, account_id: str, value: bool) -> None:
        account = self.get(account_id)
        if account is None:
            return
        account.did_notify_below_threshold = value
        self._persist()

    def update_threshold(self, account_id: str, threshold: float) -> None:
        account = self.get(account_id)
        if account is None:
            return
        account.notification_threshold = max(0.0, min(100.0, float(threshold)))
        self._persist()

    # --- Persistence ---

    def _persist(self) -> None:
        payload = json.dumps([account.to_dict() for account in self._accounts])
        self.store.set(ACCOUNTS_KEY, payload)
        self.events.emit(ACCOUNTS_CHANGED, self.accounts)

    def _persist_active(self) -> None:
        if self._active_account_id is None:
            self.store.delete(ACTIVE_ACCOUNT_KEY)
        else:
            self.store.set(ACTIVE_ACCOUNT_KEY, self._active_account_id)
