"""
App Cookie Writer — Roblox client binarycookies cache
=====================================================

Encodes and parses the Apple ``.binarycookies`` format that the Roblox
macOS client reads its web session from
(``~/Library/HTTPStorages/com.roblox.RobloxPlayer.binarycookies``).

Layout:
    file    b"cook" | >I page count | >I page size per page | pages | >I 0 footer
    page    >I 0x00000100 | <I cookie count | <I offset per cookie | records
    record  56-byte header | domain\\0 name\\0 path\\0 value\\0

Record header (little-endian):
    0   record size
    4   unused
    8   flags (1 = secure, 4 = httpOnly)
    12  unused
    16  domain offset   20 name offset   24 path offset   28 value offset
    32  unused (8 bytes)
    40  expiry   (double, seconds since 2001-01-01 UTC)
    48  creation (double, seconds since 2001-01-01 UTC)

Record offsets in the page header count from the start of the page.
"""

from __future__ import annotations

import logging
import os
import shutil
import struct
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from multi_roblox.config import (
    APP_COOKIE_FILE,
    APP_COOKIE_PATHS,
    COOKIE_DOMAIN,
    COOKIE_NAME,
    _mask,
    _now_utc,
)
from multi_roblox.errors import FormatError

logger = logging.getLogger("binary_cookies")

# ---------------------------------------------------------------------------
# Format constants
# ---------------------------------------------------------------------------

MAGIC = b"cook"
PAGE_MARKER = 0x00000100
RECORD_HEADER_SIZE = 56
FLAG_SECURE = 0x1
FLAG_HTTP_ONLY = 0x4

APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
DEFAULT_EXPIRY = datetime(2030, 1, 1, tzinfo=timezone.utc)

_RECORD_HEAD = struct.Struct("<IIIIIIII")
_TIMES = struct.Struct("<dd")


def to_apple_time(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - APPLE_EPOCH).total_seconds()


def from_apple_time(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds + APPLE_EPOCH.timestamp(), tz=timezone.utc)


@dataclass
class AppCookie:
    name: str
    value: str
    domain: str
    path: str = "/"
    secure: bool = True
    http_only: bool = True
    expires_at: datetime = DEFAULT_EXPIRY
    created_at: datetime = field(default_factory=_now_utc)

    @property
    def flags(self) -> int:
        return (FLAG_SECURE if self.secure else 0) | (FLAG_HTTP_ONLY if self.http_only else 0)


def session_app_cookie(token: str, expires_at: Optional[datetime] = None) -> AppCookie:
    """The .ROBLOSECURITY cookie the client expects."""
    return AppCookie(
        name=COOKIE_NAME,
        value=token,
        domain=COOKIE_DOMAIN,
        expires_at=expires_at or DEFAULT_EXPIRY,
    )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _encode_record(cookie: AppCookie) -> bytes:
    strings = [
        (s + "\0").encode("utf-8")
        for s in (cookie.domain, cookie.name, cookie.path, cookie.value)
    ]
    offsets = []
    cursor = RECORD_HEADER_SIZE
    for s in strings:
        offsets.append(cursor)
        cursor += len(s)
    size = cursor

    header = _RECORD_HEAD.pack(size, 0, cookie.flags, 0, *offsets)
    header += b"\x00" * 8
    header += _TIMES.pack(to_apple_time(cookie.expires_at), to_apple_time(cookie.created_at))
    return header + b"".join(strings)


def _encode_page(cookies: list[AppCookie]) -> bytes:
    records = [_encode_record(c) for c in cookies]
    header_size = 8 + 4 * len(records)
    offsets = []
    cursor = header_size
    for record in records:
        offsets.append(cursor)
        cursor += len(record)
    head = struct.pack(">I", PAGE_MARKER) + struct.pack("<I", len(records))
    head += struct.pack(f"<{len(offsets)}I", *offsets)
    return head + b"".join(records)


def encode_binary_cookies(cookies: Iterable[AppCookie]) -> bytes:
    """Encode *cookies* into a single-page binarycookies file."""
    page = _encode_page(list(cookies))
    return MAGIC + struct.pack(">I", 1) + struct.pack(">I", len(page)) + page + struct.pack(">I", 0)


def write_binary_cookies(path: Path, cookie: AppCookie) -> None:
    """Atomically replace *path* with a file holding *cookie*."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = encode_binary_cookies([cookie])
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except Exception:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.info("Wrote %s for %s (%s) to %s",
                cookie.name, cookie.domain, _mask(cookie.value), path)


def write_session_cookie(token: str, path: Path = APP_COOKIE_FILE,
                         expires_at: Optional[datetime] = None) -> None:
    write_binary_cookies(path, session_app_cookie(token, expires_at))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _cstring(record: bytes, offset: int) -> str:
    if offset >= len(record):
        raise FormatError("String offset outside cookie record", str(offset))
    end = record.find(b"\0", offset)
    if end < 0:
        raise FormatError("Unterminated string in cookie record")
    return record[offset:end].decode("utf-8")


def _parse_record(record: bytes) -> AppCookie:
    if len(record) < RECORD_HEADER_SIZE:
        raise FormatError("Cookie record shorter than its header", str(len(record)))
    _size, _, flags, _, domain_off, name_off, path_off, value_off = _RECORD_HEAD.unpack_from(record, 0)
    expiry, creation = _TIMES.unpack_from(record, 40)
    return AppCookie(
        name=_cstring(record, name_off),
        value=_cstring(record, value_off),
        domain=_cstring(record, domain_off),
        path=_cstring(record, path_off),
        secure=bool(flags & FLAG_SECURE),
        http_only=bool(flags & FLAG_HTTP_ONLY),
        expires_at=from_apple_time(expiry),
        created_at=from_apple_time(creation),
    )


def parse_binary_cookies(data: bytes) -> list[AppCookie]:
    """Decode every cookie in a binarycookies blob."""
    if len(data) < 8 or data[:4] != MAGIC:
        raise FormatError("Not a binarycookies file (bad magic)")
    (num_pages,) = struct.unpack_from(">I", data, 4)
    table_end = 8 + 4 * num_pages
    if len(data) < table_end:
        raise FormatError("Truncated page size table")
    page_sizes = struct.unpack_from(f">{num_pages}I", data, 8)

    cookies = []
    cursor = table_end
    for size in page_sizes:
        page = data[cursor:cursor + size]
        if len(page) != size or size < 8:
            raise FormatError("Truncated cookie page")
        cursor += size
        (marker,) = struct.unpack_from(">I", page, 0)
        if marker != PAGE_MARKER:
            raise FormatError("Bad page marker", hex(marker))
        (count,) = struct.unpack_from("<I", page, 4)
        if len(page) < 8 + 4 * count:
            raise FormatError("Truncated record offset table")
        for offset in struct.unpack_from(f"<{count}I", page, 8):
            if offset + 4 > len(page):
                raise FormatError("Record offset outside page", str(offset))
            (record_size,) = struct.unpack_from("<I", page, offset)
            record = page[offset:offset + record_size]
            if len(record) != record_size:
                raise FormatError("Truncated cookie record")
            cookies.append(_parse_record(record))
    return cookies


def read_binary_cookies(path: Path) -> list[AppCookie]:
    return parse_binary_cookies(Path(path).read_bytes())


# ---------------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------------

def clear_app_cookies(paths: Iterable[Path] = APP_COOKIE_PATHS) -> list[Path]:
    """Remove the client's cookie cache and web storage; return what was removed."""
    removed = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            continue
        removed.append(path)
        logger.info("Removed %s", path)
    return removed
