"""
Tests for the Credential Vault module.

Covers keyed secret storage, the delete-then-set retry with restore,
browser safe-storage lookup and SessionCookie persistence.  The keyring
backend is the in-memory MemoryKeyring from conftest.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from multi_roblox.credential_vault import (
    CredentialVault,
    KeyedLocks,
    SessionCookie,
    SessionCookieStore,
    browser_master_password,
)
from multi_roblox.errors import SecretNotFoundError, VaultUnavailableError


# ===================================================================
# CredentialVault
# ===================================================================

class TestCredentialVault:

    @pytest.mark.unit
    def test_put_then_get(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        vault.put("account_1", "hunter2")
        assert vault.get("account_1") == "hunter2"
        assert memory_keyring.store[("svc", "account_1")] == "hunter2"

    @pytest.mark.unit
    def test_get_missing_raises(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        with pytest.raises(SecretNotFoundError):
            vault.get("nobody")
        assert vault.get_or_none("nobody") is None
        assert vault.exists("nobody") is False

    @pytest.mark.unit
    def test_overwrite_is_single_write(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        vault.put("k", "one")
        vault.put("k", "two")
        assert vault.get("k") == "two"
        assert memory_keyring.writes == 2
        assert memory_keyring.deletes == 0

    @pytest.mark.unit
    def test_refused_update_retries_delete_then_set(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        vault.put("k", "old")
        memory_keyring.refuse_update = True
        vault.put("k", "new")
        assert vault.get("k") == "new"
        assert memory_keyring.deletes == 1

    @pytest.mark.unit
    def test_failed_retry_restores_previous_secret(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        vault.put("k", "old")
        memory_keyring.reject_secrets.add("new")
        with pytest.raises(VaultUnavailableError):
            vault.put("k", "new")
        assert vault.get("k") == "old"

    @pytest.mark.unit
    def test_backend_unavailable(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        memory_keyring.unavailable = True
        with pytest.raises(VaultUnavailableError):
            vault.get("k")
        with pytest.raises(VaultUnavailableError):
            vault.put("k", "v")

    @pytest.mark.unit
    def test_delete_missing_is_noop(self, memory_keyring):
        vault = CredentialVault("svc", memory_keyring)
        vault.delete("ghost")
        vault.put("k", "v")
        vault.delete("k")
        assert not vault.exists("k")


class TestKeyedLocks:

    @pytest.mark.unit
    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")

    @pytest.mark.unit
    def test_hold_excludes_other_threads(self):
        locks = KeyedLocks()
        acquired = []
        with locks.hold("a"):
            t = threading.Thread(target=lambda: acquired.append(locks.get("a").acquire(timeout=0.05)))
            t.start()
            t.join()
        assert acquired == [False]


# ===================================================================
# Browser master secret
# ===================================================================

class TestBrowserMasterPassword:

    @pytest.mark.unit
    def test_prefers_vivaldi(self, memory_keyring):
        memory_keyring.store[("Vivaldi Safe Storage", "Vivaldi")] = "viv"
        memory_keyring.store[("Chrome Safe Storage", "Chrome")] = "chr"
        assert browser_master_password(memory_keyring) == "viv"

    @pytest.mark.unit
    def test_falls_back_to_chrome(self, memory_keyring):
        memory_keyring.store[("Chrome Safe Storage", "Chrome")] = "chr"
        assert browser_master_password(memory_keyring) == "chr"

    @pytest.mark.unit
    def test_missing_raises(self, memory_keyring):
        with pytest.raises(SecretNotFoundError):
            browser_master_password(memory_keyring)


# ===================================================================
# SessionCookie / SessionCookieStore
# ===================================================================

class TestSessionCookie:

    @pytest.mark.unit
    def test_secret_round_trip_keeps_expiry(self):
        expires = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        cookie = SessionCookie(value="_|WARNING|abc", expires_at=expires)
        restored = SessionCookie.from_secret(cookie.to_secret(), owner_account_id="account_1")
        assert restored.value == "_|WARNING|abc"
        assert restored.expires_at == expires
        assert restored.owner_account_id == "account_1"

    @pytest.mark.unit
    def test_bare_token_secret(self):
        cookie = SessionCookie.from_secret("_|WARNING|legacy-token")
        assert cookie.value == "_|WARNING|legacy-token"
        assert cookie.expires_at is None

    @pytest.mark.unit
    def test_repr_masks_value(self):
        cookie = SessionCookie(value="_|WARNING:-DO-NOT-SHARE-THIS|" + "x" * 80)
        assert "x" * 20 not in repr(cookie)


class TestSessionCookieStore:

    @pytest.mark.unit
    def test_load_missing_returns_none(self, cookie_store):
        assert cookie_store.load("account_1") is None
        assert cookie_store.has_cookie("account_1") is False

    @pytest.mark.unit
    def test_save_and_load(self, cookie_store):
        cookie_store.save("account_1", SessionCookie(value="tok"))
        loaded = cookie_store.load("account_1")
        assert loaded.value == "tok"
        assert loaded.owner_account_id == "account_1"

    @pytest.mark.unit
    def test_replace_if_changed_skips_identical(self, cookie_store, memory_keyring):
        cookie_store.save("account_1", SessionCookie(value="tok"))
        writes = memory_keyring.writes
        assert cookie_store.replace_if_changed("account_1", SessionCookie(value="tok")) is False
        assert memory_keyring.writes == writes
        assert cookie_store.replace_if_changed("account_1", SessionCookie(value="tok2")) is True
        assert cookie_store.load("account_1").value == "tok2"

    @pytest.mark.unit
    def test_delete(self, cookie_store):
        cookie_store.save("account_1", SessionCookie(value="tok"))
        cookie_store.delete("account_1")
        assert cookie_store.load("account_1") is None
