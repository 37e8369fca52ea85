"""
Credential Vault — Keychain-backed secret storage per account
=============================================================

Thin layer over the ``keyring`` package (macOS Keychain in production).
Three kinds of secret live there:

    - account passwords      service ``multi-roblox-manager``, key = account id
    - session cookies        service ``multi-roblox-cookie``,  key = account id
    - browser master secret  ``Vivaldi Safe Storage`` (read-only)

Overwrites are a single ``set_password`` call.  When the backend refuses an
update in place, the vault retries as delete-then-set internally and puts
the previous secret back if the retry also fails, so callers never observe
a key with no secret after a failed ``put``.

Usage:
    from multi_roblox.credential_vault import CredentialVault, SessionCookieStore

    cookies = SessionCookieStore(CredentialVault("multi-roblox-cookie"))
    cookies.save("account_1", SessionCookie(value="_|WARNING...", owner_account_id="account_1"))
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Optional

import keyring
import keyring.errors

from multi_roblox.config import (
    BROWSER_SAFE_STORAGE,
    VAULT_COOKIE_SERVICE,
    _mask,
)
from multi_roblox.errors import SecretNotFoundError, VaultUnavailableError

logger = logging.getLogger("credential_vault")


# ---------------------------------------------------------------------------
# Per-key locking
# ---------------------------------------------------------------------------

class KeyedLocks:
    """A lazily-populated registry of one threading.Lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------

class CredentialVault:
    """Named secrets under one keyring service."""

    def __init__(self, service: str, backend: Any = None):
        self.service = service
        self._backend = backend if backend is not None else keyring
        self._locks = KeyedLocks()

    def lock(self, key: str):
        """Context manager serializing read-modify-write on *key*."""
        return self._locks.hold(key)

    def get(self, key: str) -> str:
        try:
            secret = self._backend.get_password(self.service, key)
        except keyring.errors.KeyringError as exc:
            raise VaultUnavailableError(
                f"Keychain read failed for {self.service}/{key}", str(exc)
            ) from exc
        if secret is None:
            raise SecretNotFoundError(f"No secret stored for {self.service}/{key}")
        return secret

    def get_or_none(self, key: str) -> Optional[str]:
        try:
            return self.get(key)
        except SecretNotFoundError:
            return None

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
        except SecretNotFoundError:
            return False
        return True

    def put(self, key: str, secret: str) -> None:
        try:
            self._backend.set_password(self.service, key, secret)
            logger.debug("Stored secret %s/%s", self.service, key)
            return
        except keyring.errors.PasswordSetError as exc:
            logger.warning("In-place update refused for %s/%s, retrying: %s",
                           self.service, key, exc)
        except keyring.errors.KeyringError as exc:
            raise VaultUnavailableError(
                f"Keychain write failed for {self.service}/{key}", str(exc)
            ) from exc
        self._replace(key, secret)

    def _replace(self, key: str, secret: str) -> None:
        """Delete-then-set retry, restoring the old secret if the set fails."""
        try:
            previous = self._backend.get_password(self.service, key)
        except keyring.errors.KeyringError as exc:
            raise VaultUnavailableError(
                f"Keychain read failed for {self.service}/{key}", str(exc)
            ) from exc

        if previous is not None:
            try:
                self._backend.delete_password(self.service, key)
            except keyring.errors.PasswordDeleteError:
                pass
            except keyring.errors.KeyringError as exc:
                raise VaultUnavailableError(
                    f"Keychain delete failed for {self.service}/{key}", str(exc)
                ) from exc

        try:
            self._backend.set_password(self.service, key, secret)
        except keyring.errors.KeyringError as exc:
            if previous is not None:
                try:
                    self._backend.set_password(self.service, key, previous)
                except keyring.errors.KeyringError as restore_exc:
                    logger.error("Could not restore previous secret for %s/%s: %s",
                                 self.service, key, restore_exc)
            raise VaultUnavailableError(
                f"Keychain write failed for {self.service}/{key}", str(exc)
            ) from exc

    def delete(self, key: str) -> None:
        """Remove *key*; a key that does not exist is not an error."""
        try:
            self._backend.delete_password(self.service, key)
            logger.debug("Deleted secret %s/%s", self.service, key)
        except keyring.errors.PasswordDeleteError:
            pass
        except keyring.errors.KeyringError as exc:
            raise VaultUnavailableError(
                f"Keychain delete failed for {self.service}/{key}", str(exc)
            ) from exc


def browser_master_password(backend: Any = None) -> str:
    """Return the browser's safe-storage secret, trying each known service."""
    backend = backend if backend is not None else keyring
    for service, account in BROWSER_SAFE_STORAGE:
        secret = CredentialVault(service, backend).get_or_none(account)
        if secret:
            return secret
    raise SecretNotFoundError("Browser safe-storage key not found in Keychain")


# ---------------------------------------------------------------------------
# Session cookies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionCookie:
    """A captured .ROBLOSECURITY value.  Replaced wholesale, never mutated."""

    value: str
    expires_at: Optional[datetime] = None
    owner_account_id: str = ""

    def to_secret(self) -> str:
        return json.dumps({
            "value": self.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }, separators=(",", ":"))

    @classmethod
    def from_secret(cls, secret: str, owner_account_id: str = "") -> "SessionCookie":
        try:
            data = json.loads(secret)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict) or "value" not in data:
            # Bare token written by an older version
            return cls(value=secret, owner_account_id=owner_account_id)
        expires = data.get("expires_at")
        return cls(
            value=data["value"],
            expires_at=datetime.fromisoformat(expires) if expires else None,
            owner_account_id=owner_account_id,
        )

    def __repr__(self) -> str:
        return (f"SessionCookie(value={_mask(self.value)!r}, "
                f"expires_at={self.expires_at!r}, owner_account_id={self.owner_account_id!r})")


class SessionCookieStore:
    """At most one SessionCookie per account, stored in the vault."""

    def __init__(self, vault: Optional[CredentialVault] = None):
        self.vault = vault if vault is not None else CredentialVault(VAULT_COOKIE_SERVICE)

    def lock(self, account_id: str):
        return self.vault.lock(account_id)

    def load(self, account_id: str) -> Optional[SessionCookie]:
        try:
            secret = self.vault.get(account_id)
        except SecretNotFoundError:
            return None
        return SessionCookie.from_secret(secret, owner_account_id=account_id)

    def has_cookie(self, account_id: str) -> bool:
        return self.vault.exists(account_id)

    def save(self, account_id: str, cookie: SessionCookie) -> None:
        with self.lock(account_id):
            self.vault.put(account_id, cookie.to_secret())
        logger.info("Saved session cookie for %s", account_id)

    def replace_if_changed(self, account_id: str, cookie: SessionCookie) -> bool:
        """Store *cookie* unless the account already holds the same token."""
        with self.lock(account_id):
            current = self.load(account_id)
            if current is not None and current.value == cookie.value:
                logger.debug("Cookie for %s unchanged, skipping write", account_id)
                return False
            self.vault.put(account_id, cookie.to_secret())
        logger.info("Replaced session cookie for %s", account_id)
        return True

    def delete(self, account_id: str) -> None:
        with self.lock(account_id):
            self.vault.delete(account_id)
        logger.info("Deleted session cookie for %s", account_id)
