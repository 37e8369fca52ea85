"""
Tests for the command line interface.

Commands run against the wired session_manager fixture, so nothing
touches the real Keychain, browser or client.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import LAUNCHED_PID
from multi_roblox.cli import _format_table, build_parser, main
from multi_roblox.config import REFRESH_INTERVAL
from multi_roblox.credential_vault import SessionCookie


@pytest.fixture
def with_account(registry, cookie_store, identity, fixed_now):
    account = registry.add("builderman", label="main")
    cookie_store.save(account.id, SessionCookie("tok", expires_at=fixed_now + timedelta(days=3)))
    identity.owners["tok"] = "builderman"
    return account


class TestParser:

    @pytest.mark.unit
    def test_daemon_default_interval(self):
        args = build_parser().parse_args(["daemon"])
        assert args.interval == REFRESH_INTERVAL

    @pytest.mark.unit
    def test_launch_account_optional(self):
        args = build_parser().parse_args(["launch", "--place", "1"])
        assert args.account is None
        assert args.place == "1"

    @pytest.mark.unit
    def test_no_command_prints_help(self, capsys, session_manager):
        assert main([], manager=session_manager) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestCommands:

    @pytest.mark.unit
    def test_accounts_empty(self, capsys, session_manager):
        assert main(["accounts"], manager=session_manager) == 0
        assert "(no results)" in capsys.readouterr().out

    @pytest.mark.unit
    def test_add_and_list(self, capsys, session_manager):
        assert main(["add-account", "builderman", "--label", "main"], manager=session_manager) == 0
        assert main(["accounts"], manager=session_manager) == 0
        out = capsys.readouterr().out
        assert "Added account_1 (main (builderman))" in out
        assert "builderman" in out.splitlines()[-1]

    @pytest.mark.unit
    def test_status_shows_expiry_warning(self, capsys, session_manager, with_account):
        assert main(["status"], manager=session_manager) == 0
        out = capsys.readouterr().out
        assert "valid" in out
        assert "expires in 3 day(s)" in out

    @pytest.mark.unit
    def test_launch(self, capsys, session_manager, with_account, inspector):
        inspector.alive[LAUNCHED_PID] = 10.0
        assert main(["launch", "builderman", "--place", "920587237"], manager=session_manager) == 0
        assert f"Launched (ticket), PID {LAUNCHED_PID}" in capsys.readouterr().out

        assert main(["instances"], manager=session_manager) == 0
        assert str(LAUNCHED_PID) in capsys.readouterr().out

    @pytest.mark.unit
    def test_unknown_account_exits_nonzero(self, capsys, session_manager):
        assert main(["launch", "ghost", "--place", "1"], manager=session_manager) == 1
        assert capsys.readouterr().err.startswith("Error:")

    @pytest.mark.unit
    def test_clear_browser_requires_confirm(self, capsys, session_manager):
        assert main(["clear-browser"], manager=session_manager) == 1
        assert main(["clear-browser", "--confirm"], manager=session_manager) == 0
        assert "Removed 0 roblox.com cookie(s)" in capsys.readouterr().out

    @pytest.mark.unit
    def test_delete_account_requires_confirm(self, capsys, session_manager, with_account, registry):
        assert main(["delete-account", "account_1"], manager=session_manager) == 0
        assert registry.list() == [with_account]
        assert main(["delete-account", "account_1", "--confirm"], manager=session_manager) == 0
        assert registry.list() == []

    @pytest.mark.unit
    def test_refresh_without_browser_session(self, capsys, session_manager, with_account):
        assert main(["refresh"], manager=session_manager) == 0
        assert "No usable browser session" in capsys.readouterr().out


class TestFormatTable:

    @pytest.mark.unit
    def test_truncates_long_values(self):
        table = _format_table(["A"], [["x" * 50]], max_col_width=10)
        assert "xxxxxxx..." in table
        assert "x" * 11 not in table
