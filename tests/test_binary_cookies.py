"""
Tests for the App Cookie Writer (binarycookies) module.
"""
from __future__ import annotations

import struct
from datetime import datetime, timezone

import pytest

from multi_roblox.binary_cookies import (
    APPLE_EPOCH,
    DEFAULT_EXPIRY,
    AppCookie,
    clear_app_cookies,
    encode_binary_cookies,
    from_apple_time,
    parse_binary_cookies,
    read_binary_cookies,
    session_app_cookie,
    to_apple_time,
    write_session_cookie,
)
from multi_roblox.errors import FormatError

CREATED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ===================================================================
# Layout
# ===================================================================

class TestEncoding:

    @pytest.mark.unit
    def test_file_and_page_headers(self):
        cookie = AppCookie(".ROBLOSECURITY", "tok", ".roblox.com", created_at=CREATED)
        data = encode_binary_cookies([cookie])

        assert data[:4] == b"cook"
        assert struct.unpack_from(">I", data, 4)[0] == 1
        page_size = struct.unpack_from(">I", data, 8)[0]
        assert len(data) == 12 + page_size + 4
        assert data[-4:] == b"\x00\x00\x00\x00"

        page = data[12:12 + page_size]
        assert struct.unpack_from(">I", page, 0)[0] == 0x00000100
        assert struct.unpack_from("<I", page, 4)[0] == 1
        # one record right after an 8 + 4 byte page header
        assert struct.unpack_from("<I", page, 8)[0] == 12

    @pytest.mark.unit
    def test_record_header(self):
        cookie = AppCookie(".ROBLOSECURITY", "tok", ".roblox.com", created_at=CREATED)
        data = encode_binary_cookies([cookie])
        record = data[12 + 12:-4]

        size, _, flags, _, domain_off, name_off, path_off, value_off = struct.unpack_from("<8I", record, 0)
        assert size == len(record)
        assert flags == 0x5
        assert domain_off == 56
        assert name_off == 56 + len(".roblox.com\0")
        assert path_off == name_off + len(".ROBLOSECURITY\0")
        assert value_off == path_off + len("/\0")
        assert record[value_off:] == b"tok\0"

        expiry, creation = struct.unpack_from("<dd", record, 40)
        assert expiry == to_apple_time(DEFAULT_EXPIRY)
        assert creation == to_apple_time(CREATED)

    @pytest.mark.unit
    def test_flags(self):
        assert AppCookie("a", "b", "c", secure=False, http_only=False).flags == 0
        assert AppCookie("a", "b", "c", secure=True, http_only=False).flags == 1
        assert AppCookie("a", "b", "c", secure=False, http_only=True).flags == 4


class TestAppleTime:

    @pytest.mark.unit
    def test_epoch(self):
        assert to_apple_time(APPLE_EPOCH) == 0.0
        assert from_apple_time(0.0) == APPLE_EPOCH

    @pytest.mark.unit
    def test_round_trip(self):
        assert from_apple_time(to_apple_time(CREATED)) == CREATED


# ===================================================================
# Parsing
# ===================================================================

class TestParsing:

    @pytest.mark.unit
    def test_parse_multiple_cookies(self):
        cookies = [
            session_app_cookie("tok-one"),
            AppCookie("RBXEventTrackerV2", "browserid=1", ".roblox.com", secure=False, created_at=CREATED),
        ]
        parsed = parse_binary_cookies(encode_binary_cookies(cookies))
        assert [c.name for c in parsed] == [".ROBLOSECURITY", "RBXEventTrackerV2"]
        assert parsed[0].value == "tok-one"
        assert parsed[0].domain == ".roblox.com"
        assert parsed[0].secure and parsed[0].http_only
        assert parsed[1].secure is False

    @pytest.mark.unit
    def test_bad_magic(self):
        with pytest.raises(FormatError):
            parse_binary_cookies(b"nope\x00\x00\x00\x01")

    @pytest.mark.unit
    def test_truncated_page(self):
        data = encode_binary_cookies([session_app_cookie("tok")])
        with pytest.raises(FormatError):
            parse_binary_cookies(data[:40])

    @pytest.mark.unit
    def test_bad_page_marker(self):
        data = bytearray(encode_binary_cookies([session_app_cookie("tok")]))
        data[12:16] = b"\xff\xff\xff\xff"
        with pytest.raises(FormatError):
            parse_binary_cookies(bytes(data))


# ===================================================================
# Files
# ===================================================================

class TestWriteSessionCookie:

    @pytest.mark.unit
    def test_writes_readable_file(self, tmp_path):
        path = tmp_path / "HTTPStorages" / "com.roblox.RobloxPlayer.binarycookies"
        write_session_cookie("tok", path)
        cookies = read_binary_cookies(path)
        assert len(cookies) == 1
        assert cookies[0].value == "tok"
        assert cookies[0].expires_at == DEFAULT_EXPIRY
        assert path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.unit
    def test_replaces_existing_without_leftovers(self, tmp_path):
        path = tmp_path / "app.binarycookies"
        write_session_cookie("first", path)
        write_session_cookie("second", path)
        assert read_binary_cookies(path)[0].value == "second"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["app.binarycookies"]


class TestClearAppCookies:

    @pytest.mark.unit
    def test_removes_files_and_directories(self, tmp_path):
        cookie_file = tmp_path / "app.binarycookies"
        cookie_file.write_bytes(b"cook")
        webkit = tmp_path / "WebKit" / "com.roblox.RobloxPlayer"
        (webkit / "nested").mkdir(parents=True)
        (webkit / "nested" / "data").write_text("x")
        missing = tmp_path / "Caches" / "com.roblox.RobloxPlayer"

        removed = clear_app_cookies([cookie_file, webkit, missing])

        assert removed == [cookie_file, webkit]
        assert not cookie_file.exists()
        assert not webkit.exists()
