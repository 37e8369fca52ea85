"""
Browser Cookie Store — Vivaldi (Chromium) cookie database access
================================================================

Reads, writes and clears the Roblox session cookie in the browser's
SQLite ``Cookies`` database.

Decryption follows Chromium's macOS scheme:
    - encrypted values carry the 3-byte ``v10`` prefix
    - key  = PBKDF2-HMAC-SHA1(safe-storage secret, b"saltysalt", 1003, 16 bytes)
    - AES-128-CBC, IV = 16 space bytes, PKCS7 padding
    - schema version 24+ prepends SHA-256(host_key) to the plaintext

Timestamps in the database are microseconds since 1601-01-01 UTC.

The database has a single writer, the browser.  Writes are refused while
the browser process is running, and a locked database fails the read
immediately instead of waiting.

Usage:
    from multi_roblox.browser_cookies import BrowserCookieStore

    store = BrowserCookieStore()
    cookie = store.read_session_cookie()
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from multi_roblox.config import (
    BROWSER_COOKIE_DB,
    BROWSER_PROCESS_NAME,
    COOKIE_DOMAIN,
    COOKIE_NAME,
    _mask,
    _now_utc,
)
from multi_roblox.credential_vault import SessionCookie, browser_master_password
from multi_roblox.errors import (
    CookieNotFoundError,
    DecryptionFailedError,
    FormatError,
    SessionSyncError,
    StoreLockedError,
)
from multi_roblox.processes import ProcessInspector

logger = logging.getLogger("browser_cookies")

# ---------------------------------------------------------------------------
# Chromium constants
# ---------------------------------------------------------------------------

ENCRYPTED_PREFIX = b"v10"
KDF_SALT = b"saltysalt"
KDF_ITERATIONS = 1003
KEY_LENGTH = 16
CBC_IV = b" " * 16
BLOCK_SIZE = 16
HOST_DIGEST_LENGTH = 32
HOST_DIGEST_MIN_VERSION = 24

CHROME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
WRITE_LIFETIME = timedelta(days=365)

# Columns introduced by later Chromium releases, filled when present
OPTIONAL_COLUMNS = {
    "top_frame_site_key": "",
    "source_type": 0,
    "has_cross_site_ancestor": 0,
}


# ---------------------------------------------------------------------------
# Time conversion
# ---------------------------------------------------------------------------

def chrome_time(dt: datetime) -> int:
    """Microseconds since 1601-01-01 UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - CHROME_EPOCH) // timedelta(microseconds=1)


def from_chrome_time(micros: int) -> Optional[datetime]:
    if not micros:
        return None
    return CHROME_EPOCH + timedelta(microseconds=micros)


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------

def derive_key(password: str | bytes) -> bytes:
    if isinstance(password, str):
        password = password.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password)


def decrypt_cookie_value(
    encrypted: bytes,
    password: str | bytes,
    *,
    host_key: str = "",
    db_version: int = 0,
) -> str:
    """Decrypt a Chromium ``encrypted_value``; unprefixed input is plaintext."""
    if not encrypted.startswith(ENCRYPTED_PREFIX):
        try:
            return encrypted.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailedError("Unencrypted cookie value is not UTF-8") from exc

    ciphertext = encrypted[len(ENCRYPTED_PREFIX):]
    if not ciphertext or len(ciphertext) % BLOCK_SIZE:
        raise DecryptionFailedError(
            "Ciphertext is not a whole number of AES blocks",
            f"{len(ciphertext)} bytes",
        )

    decryptor = Cipher(algorithms.AES(derive_key(password)), modes.CBC(CBC_IV)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    pad = padded[-1]
    if pad < 1 or pad > BLOCK_SIZE:
        raise DecryptionFailedError("Invalid PKCS7 padding", f"pad byte {pad}")
    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionFailedError("Invalid PKCS7 padding") from exc

    if db_version >= HOST_DIGEST_MIN_VERSION:
        digest = hashlib.sha256(host_key.encode("utf-8")).digest()
        if plaintext[:HOST_DIGEST_LENGTH] != digest:
            raise DecryptionFailedError("Host digest mismatch", host_key)
        plaintext = plaintext[HOST_DIGEST_LENGTH:]

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailedError("Decrypted cookie is not UTF-8; wrong key?") from exc


def encrypt_cookie_value(
    value: str,
    password: str | bytes,
    *,
    host_key: str = "",
    db_version: int = 0,
) -> bytes:
    plaintext = value.encode("utf-8")
    if db_version >= HOST_DIGEST_MIN_VERSION:
        plaintext = hashlib.sha256(host_key.encode("utf-8")).digest() + plaintext
    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(derive_key(password)), modes.CBC(CBC_IV)).encryptor()
    return ENCRYPTED_PREFIX + encryptor.update(padded) + encryptor.finalize()


def _is_locked(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _store_error(exc: sqlite3.Error, message: str) -> SessionSyncError:
    """Map a sqlite3 failure onto the typed error a caller can act on."""
    if _is_locked(exc):
        return StoreLockedError("Browser cookie database is locked", str(exc))
    return FormatError(message, str(exc))


# ---------------------------------------------------------------------------
# BrowserCookieStore
# ---------------------------------------------------------------------------

class BrowserCookieStore:
    """Roblox session cookie access in the browser's cookie database."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        inspector: Optional[ProcessInspector] = None,
        master_password: Optional[Callable[[], str]] = None,
        process_name: str = BROWSER_PROCESS_NAME,
    ):
        self.db_path = Path(db_path) if db_path is not None else BROWSER_COOKIE_DB
        self.inspector = inspector if inspector is not None else ProcessInspector()
        self._master_password = master_password or browser_master_password
        self.process_name = process_name

    def _connect(self, read_only: bool) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise CookieNotFoundError(f"Browser cookie database not found: {self.db_path}")
        if read_only:
            uri = self.db_path.resolve().as_uri() + "?mode=ro"
            return sqlite3.connect(uri, uri=True, timeout=0)
        return sqlite3.connect(str(self.db_path), timeout=0, isolation_level=None)

    def _ensure_browser_closed(self) -> None:
        if self.inspector.is_running(self.process_name):
            raise StoreLockedError(
                f"{self.process_name} is running; quit it before changing its cookies"
            )

    @staticmethod
    def _schema_version(conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT value FROM meta WHERE key = 'version'").fetchone()
        except sqlite3.OperationalError as exc:
            if _is_locked(exc):
                raise
            return 0
        try:
            return int(row[0]) if row else 0
        except (TypeError, ValueError):
            return 0

    def schema_version(self) -> int:
        conn = self._connect(read_only=True)
        try:
            return self._schema_version(conn)
        except sqlite3.Error as exc:
            raise _store_error(exc, "Unexpected browser cookie schema") from exc
        finally:
            conn.close()

    # -- read ---------------------------------------------------------------

    def read_session_cookie(self) -> SessionCookie:
        """Return the browser's current Roblox session cookie."""
        conn = self._connect(read_only=True)
        try:
            version = self._schema_version(conn)
            row = conn.execute(
                "SELECT host_key, value, encrypted_value, expires_utc, has_expires "
                "FROM cookies WHERE name = ? AND host_key LIKE ? "
                "ORDER BY last_access_utc DESC LIMIT 1",
                (COOKIE_NAME, "%roblox.com"),
            ).fetchone()
        except sqlite3.Error as exc:
            raise _store_error(exc, "Unexpected browser cookie schema") from exc
        finally:
            conn.close()

        if row is None:
            raise CookieNotFoundError("No Roblox session in the browser; log in first")

        host_key, value, encrypted_value, expires_utc, has_expires = row
        if not value and encrypted_value:
            value = decrypt_cookie_value(
                bytes(encrypted_value),
                self._master_password(),
                host_key=host_key,
                db_version=version,
            )
        if not value:
            raise CookieNotFoundError("Browser Roblox session cookie is empty")

        expires_at = from_chrome_time(expires_utc) if has_expires else None
        logger.info("Read browser session cookie %s", _mask(value))
        return SessionCookie(value=value, expires_at=expires_at)

    # -- write --------------------------------------------------------------

    def _columns(self, conn: sqlite3.Connection) -> set[str]:
        return {row[1] for row in conn.execute("PRAGMA table_info(cookies)")}

    def write_session_cookie(self, token: str, now: Optional[datetime] = None) -> None:
        """Replace the browser's Roblox session with *token*.  Browser must be closed."""
        self._ensure_browser_closed()
        now_micros = chrome_time(now or _now_utc())
        expires_micros = now_micros + WRITE_LIFETIME // timedelta(microseconds=1)

        row: dict[str, Any] = {
            "creation_utc": now_micros,
            "host_key": COOKIE_DOMAIN,
            "name": COOKIE_NAME,
            "value": token,
            "encrypted_value": b"",
            "path": "/",
            "expires_utc": expires_micros,
            "is_secure": 1,
            "is_httponly": 1,
            "last_access_utc": now_micros,
            "has_expires": 1,
            "is_persistent": 1,
            "priority": 1,
            "samesite": 0,
            "source_scheme": 2,
            "source_port": 443,
            "last_update_utc": now_micros,
        }

        conn = self._connect(read_only=False)
        try:
            columns = self._columns(conn)
            for column, default in OPTIONAL_COLUMNS.items():
                if column in columns:
                    row[column] = default
            names = ", ".join(row)
            placeholders = ", ".join("?" for _ in row)

            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM cookies WHERE host_key = ? AND name = ?",
                    (COOKIE_DOMAIN, COOKIE_NAME),
                )
                conn.execute(
                    f"INSERT INTO cookies ({names}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise _store_error(exc, "Could not write browser cookie row") from exc
        finally:
            conn.close()
        logger.info("Wrote session cookie %s into browser database", _mask(token))

    def clear_domain_cookies(self) -> int:
        """Delete every roblox.com cookie row.  Browser must be closed."""
        self._ensure_browser_closed()
        conn = self._connect(read_only=False)
        try:
            cursor = conn.execute("DELETE FROM cookies WHERE host_key LIKE ?", ("%roblox.com",))
            removed = cursor.rowcount
        except sqlite3.Error as exc:
            raise _store_error(exc, "Could not clear browser cookies") from exc
        finally:
            conn.close()
        logger.info("Cleared %d roblox.com cookie rows from browser", removed)
        return removed
