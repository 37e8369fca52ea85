"""
Account Registry — Roblox accounts managed by multi_roblox
==========================================================

Accounts are plain ``{id, username, label}`` records kept in
``accounts.json``.  Each account owns one Keychain password entry
(service ``multi-roblox-manager``) and at most one session cookie
(service ``multi-roblox-cookie``), both keyed by the account id.  Deleting
an account deletes both secrets.

Usage:
    from multi_roblox.accounts import AccountRegistry

    registry = AccountRegistry()
    account = registry.add("builderman", password="hunter2", label="main")
    registry.delete(account.id)
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from multi_roblox.config import ACCOUNTS_FILE, VAULT_PASSWORD_SERVICE, _load_json, _save_json
from multi_roblox.credential_vault import CredentialVault, SessionCookieStore
from multi_roblox.errors import AccountNotFoundError, SecretNotFoundError

logger = logging.getLogger("accounts")

_ID_PATTERN = re.compile(r"^account_(\d+)$")


@dataclass
class Account:
    id: str
    username: str
    label: str = ""

    @property
    def display_name(self) -> str:
        if self.label:
            return f"{self.label} ({self.username})"
        return self.username

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class AccountRegistry:
    """JSON-backed account list with vault-held passwords."""

    def __init__(
        self,
        path: Optional[Path] = None,
        passwords: Optional[CredentialVault] = None,
        cookies: Optional[SessionCookieStore] = None,
    ):
        self.path = Path(path) if path is not None else ACCOUNTS_FILE
        self.passwords = passwords if passwords is not None else CredentialVault(VAULT_PASSWORD_SERVICE)
        self.cookies = cookies if cookies is not None else SessionCookieStore()
        self._lock = threading.Lock()

    # -- persistence ----------------------------------------------------

    def _load(self) -> list[Account]:
        raw = _load_json(self.path, [])
        if not isinstance(raw, list):
            logger.warning("accounts file %s is not a list; ignoring", self.path)
            return []
        return [Account.from_dict(item) for item in raw if isinstance(item, dict)]

    def _save(self, accounts: list[Account]) -> None:
        _save_json(self.path, [a.to_dict() for a in accounts])

    @staticmethod
    def _next_id(accounts: list[Account]) -> str:
        highest = 0
        for account in accounts:
            match = _ID_PATTERN.match(account.id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"account_{highest + 1}"

    # -- queries --------------------------------------------------------

    def list(self) -> list[Account]:
        return self._load()

    def get(self, account_id: str) -> Account:
        for account in self._load():
            if account.id == account_id:
                return account
        raise AccountNotFoundError(f"No account with id {account_id!r}")

    def find_by_username(self, username: str) -> Optional[Account]:
        wanted = username.casefold()
        for account in self._load():
            if account.username.casefold() == wanted:
                return account
        return None

    def resolve(self, ref: str) -> Account:
        """Look up by id first, then by username."""
        try:
            return self.get(ref)
        except AccountNotFoundError:
            account = self.find_by_username(ref)
            if account is None:
                raise
            return account

    # -- mutations ------------------------------------------------------

    def add(self, username: str, password: str = "", label: str = "") -> Account:
        username = username.strip()
        if not username:
            raise ValueError("username is required")
        with self._lock:
            accounts = self._load()
            account = Account(id=self._next_id(accounts), username=username, label=label)
            if password:
                self.passwords.put(account.id, password)
            accounts.append(account)
            self._save(accounts)
        logger.info("Added account %s (%s)", account.id, account.username)
        return account

    def update_label(self, account_id: str, label: str) -> Account:
        with self._lock:
            accounts = self._load()
            for account in accounts:
                if account.id == account_id:
                    account.label = label
                    self._save(accounts)
                    return account
        raise AccountNotFoundError(f"No account with id {account_id!r}")

    def set_password(self, account_id: str, password: str) -> None:
        self.get(account_id)
        self.passwords.put(account_id, password)

    def get_password(self, account_id: str) -> Optional[str]:
        try:
            return self.passwords.get(account_id)
        except SecretNotFoundError:
            return None

    def delete(self, account_id: str) -> Account:
        """Remove the account plus its password and session cookie."""
        with self._lock:
            accounts = self._load()
            remaining = [a for a in accounts if a.id != account_id]
            if len(remaining) == len(accounts):
                raise AccountNotFoundError(f"No account with id {account_id!r}")
            removed = next(a for a in accounts if a.id == account_id)
            self.passwords.delete(account_id)
            self.cookies.delete(account_id)
            self._save(remaining)
        logger.info("Deleted account %s (%s)", removed.id, removed.username)
        return removed
