"""
Shared fixtures for the multi_roblox test suite.

Provides an in-memory keyring, a scripted identity client, a fake process
inspector, a Chromium-schema cookie database and aiohttp mocks, so that all
tests run WITHOUT the Keychain, the network or real processes.
"""

import sqlite3
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import keyring.errors
import pytest

from multi_roblox.accounts import AccountRegistry
from multi_roblox.browser_cookies import BrowserCookieStore
from multi_roblox.cookie_validator import CookieValidator
from multi_roblox.credential_vault import CredentialVault, SessionCookieStore
from multi_roblox.instance_launcher import InstanceLauncher, ScratchCopyPool
from multi_roblox.instance_tracker import InstanceTracker
from multi_roblox.session_manager import SessionManager
from multi_roblox.errors import AuthError, AuthFailure, NetworkError
from multi_roblox.identity_client import IdentityInfo, LaunchTicket


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------

class MemoryKeyring:
    """Stand-in for the keyring module API with write counters."""

    def __init__(self):
        self.store = {}
        self.writes = 0
        self.deletes = 0
        self.refuse_update = False
        self.reject_secrets = set()
        self.unavailable = False

    def get_password(self, service, key):
        if self.unavailable:
            raise keyring.errors.KeyringError("locked")
        return self.store.get((service, key))

    def set_password(self, service, key, secret):
        if self.unavailable:
            raise keyring.errors.KeyringError("locked")
        if secret in self.reject_secrets:
            raise keyring.errors.PasswordSetError("denied")
        if self.refuse_update and (service, key) in self.store:
            raise keyring.errors.PasswordSetError("item already exists")
        self.writes += 1
        self.store[(service, key)] = secret

    def delete_password(self, service, key):
        if (service, key) not in self.store:
            raise keyring.errors.PasswordDeleteError("not found")
        self.deletes += 1
        del self.store[(service, key)]


@pytest.fixture
def memory_keyring():
    return MemoryKeyring()


@pytest.fixture
def cookie_store(memory_keyring):
    return SessionCookieStore(CredentialVault("multi-roblox-cookie", memory_keyring))


@pytest.fixture
def registry(tmp_path, memory_keyring, cookie_store):
    return AccountRegistry(
        path=tmp_path / "accounts.json",
        passwords=CredentialVault("multi-roblox-manager", memory_keyring),
        cookies=cookie_store,
    )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class ScriptedIdentity:
    """IdentityClient double: tokens map to usernames, or to an exception."""

    def __init__(self):
        self.owners = {}
        self.calls = []
        self.ticket_calls = 0

    async def who_owns(self, token):
        self.calls.append(token)
        owner = self.owners.get(token)
        if owner is None:
            raise AuthError("Cookie expired or invalid", AuthFailure.EXPIRED, 401)
        if isinstance(owner, Exception):
            raise owner
        return IdentityInfo(user_id=1, username=owner)

    async def exchange_for_ticket(self, token):
        self.ticket_calls += 1
        if self.owners.get(token) is None:
            raise AuthError("Cookie expired", AuthFailure.EXPIRED, 401)
        return LaunchTicket(value=f"ticket-for-{token}")

    async def resolve_share_link(self, code, token=None):
        raise NetworkError("share links not scripted")


@pytest.fixture
def identity():
    return ScriptedIdentity()


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------

class FakeInspector:
    def __init__(self):
        self.running = set()
        self.alive = {}
        self.paths = set()
        self.terminated = []

    def is_running(self, name):
        return name in self.running

    def pids(self, name):
        return list(self.alive)

    def open_paths(self, name):
        return set(self.paths)

    def create_time(self, pid):
        return self.alive.get(pid)

    def is_alive(self, pid, create_time=None):
        if pid not in self.alive:
            return False
        return create_time is None or self.alive[pid] == create_time

    def terminate(self, pid):
        self.terminated.append(pid)
        return self.alive.pop(pid, None) is not None


@pytest.fixture
def inspector():
    return FakeInspector()


# ---------------------------------------------------------------------------
# Browser cookie database
# ---------------------------------------------------------------------------

COOKIES_SCHEMA = """
CREATE TABLE meta (key LONGVARCHAR NOT NULL UNIQUE PRIMARY KEY, value LONGVARCHAR);
CREATE TABLE cookies (
    creation_utc INTEGER NOT NULL,
    host_key TEXT NOT NULL,
    top_frame_site_key TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    encrypted_value BLOB NOT NULL,
    path TEXT NOT NULL,
    expires_utc INTEGER NOT NULL,
    is_secure INTEGER NOT NULL,
    is_httponly INTEGER NOT NULL,
    last_access_utc INTEGER NOT NULL,
    has_expires INTEGER NOT NULL,
    is_persistent INTEGER NOT NULL,
    priority INTEGER NOT NULL,
    samesite INTEGER NOT NULL,
    source_scheme INTEGER NOT NULL,
    source_port INTEGER NOT NULL,
    last_update_utc INTEGER NOT NULL,
    source_type INTEGER NOT NULL,
    has_cross_site_ancestor INTEGER NOT NULL
);
"""


def insert_cookie(db_path, host_key, name, value="", encrypted_value=b"",
                  expires_utc=0, last_access_utc=0):
    conn = sqlite3.connect(str(db_path))
    with conn:
        conn.execute(
            "INSERT INTO cookies VALUES (?, ?, '', ?, ?, ?, '/', ?, 1, 1, ?, ?, 1, 1, 0, 2, 443, ?, 0, 0)",
            (last_access_utc, host_key, name, value, encrypted_value, expires_utc,
             last_access_utc, 1 if expires_utc else 0, last_access_utc),
        )
    conn.close()


def all_rows(db_path):
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    rows = [dict(r) for r in conn.execute("SELECT * FROM cookies ORDER BY host_key, name")]
    conn.close()
    return rows


@pytest.fixture
def cookie_db(tmp_path):
    """Empty Chromium cookie database at schema version 23."""
    path = tmp_path / "Cookies"
    conn = sqlite3.connect(str(path))
    conn.executescript(COOKIES_SCHEMA)
    conn.execute("INSERT INTO meta VALUES ('version', '23')")
    conn.commit()
    conn.close()
    return path


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def app_bundle(tmp_path):
    """A minimal Roblox.app layout."""
    bundle = tmp_path / "Applications" / "Roblox.app"
    exe_dir = bundle / "Contents" / "MacOS"
    exe_dir.mkdir(parents=True)
    (exe_dir / "RobloxPlayer").write_text("#!/bin/sh\n")
    (bundle / "Contents" / "Info.plist").write_text("<plist/>")
    return bundle


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    default_resp = mock_aiohttp_response(200, "{}")
    session.get = MagicMock(return_value=default_resp)
    session.post = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


# ---------------------------------------------------------------------------
# Wired components
# ---------------------------------------------------------------------------

MASTER_PASSWORD = "peanuts"
LAUNCHED_PID = 4242


@pytest.fixture
def browser_store(cookie_db, inspector):
    return BrowserCookieStore(cookie_db, inspector, master_password=lambda: MASTER_PASSWORD)


@pytest.fixture
def validator(cookie_store, identity, fixed_now):
    return CookieValidator(cookie_store, identity, clock=lambda: fixed_now)


@pytest.fixture
def fake_popen():
    return MagicMock(return_value=MagicMock(pid=LAUNCHED_PID))


@pytest.fixture
def fake_run():
    return MagicMock(return_value=subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr=""))


@pytest.fixture
def launcher(tmp_path, app_bundle, inspector, fake_popen, fake_run):
    return InstanceLauncher(
        app_bundle=app_bundle,
        inspector=inspector,
        tracker=InstanceTracker(tmp_path / "instance_accounts.json", inspector),
        pool=ScratchCopyPool(app_bundle, tmp_path / "scratch"),
        popen=fake_popen,
        run=fake_run,
    )


@pytest.fixture
def session_manager(tmp_path, registry, cookie_store, identity, browser_store, launcher, validator):
    return SessionManager(
        registry=registry,
        cookies=cookie_store,
        identity=identity,
        browser=browser_store,
        launcher=launcher,
        validator=validator,
        app_cookie_path=tmp_path / "HTTPStorages" / "com.roblox.RobloxPlayer.binarycookies",
    )
