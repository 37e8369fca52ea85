"""
Command line interface for multi_roblox.

Usage:
    multi-roblox accounts
    multi-roblox add-account builderman --label main
    multi-roblox capture account_1
    multi-roblox status
    multi-roblox launch account_1 --place https://www.roblox.com/games/920587237
    multi-roblox launch account_2 --place 920587237 --link "https://www.roblox.com/share?code=abc&type=Server"
    multi-roblox instances
    multi-roblox daemon
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from typing import Optional

from multi_roblox.config import REFRESH_INTERVAL, setup_logging
from multi_roblox.cookie_validator import CookieStatus
from multi_roblox.errors import SessionSyncError
from multi_roblox.session_manager import SessionManager, get_session_manager

logger = logging.getLogger("cli")

_STATUS_LABELS = {
    CookieStatus.NONE: "no cookie",
    CookieStatus.VALID: "valid",
    CookieStatus.EXPIRED: "EXPIRED - recapture",
    CookieStatus.ERROR: "check failed - retry",
}


def _format_table(headers: list[str], rows: list[list[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"

    truncated_rows = [
        [val[:max_col_width - 3] + "..." if len(val) > max_col_width else val for val in row]
        for row in rows
    ]
    col_widths = [len(h) for h in headers]
    for row in truncated_rows:
        for i, val in enumerate(row):
            col_widths[i] = max(col_widths[i], len(val))

    fmt = "  ".join(f"{{:<{w}}}" for w in col_widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in col_widths)]
    lines.extend(fmt.format(*row) for row in truncated_rows)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_accounts(mgr: SessionManager, args: argparse.Namespace) -> None:
    rows = [
        [a.id, a.username, a.label, "yes" if mgr.cookies.has_cookie(a.id) else "no"]
        for a in mgr.registry.list()
    ]
    print(_format_table(["ID", "Username", "Label", "Cookie"], rows))


def _cmd_add_account(mgr: SessionManager, args: argparse.Namespace) -> None:
    password = ""
    if args.password:
        password = getpass.getpass(f"Password for {args.username}: ")
    account = mgr.registry.add(args.username, password=password, label=args.label)
    print(f"Added {account.id} ({account.display_name})")


def _cmd_delete_account(mgr: SessionManager, args: argparse.Namespace) -> None:
    if not args.confirm:
        print("Deleting removes the account's password and cookie. Re-run with --confirm.")
        return
    account = mgr.registry.delete(mgr.registry.resolve(args.account).id)
    print(f"Deleted {account.id} ({account.username})")


def _cmd_label(mgr: SessionManager, args: argparse.Namespace) -> None:
    account = mgr.registry.update_label(mgr.registry.resolve(args.account).id, args.label)
    print(f"{account.id} is now {account.display_name}")


def _cmd_status(mgr: SessionManager, args: argparse.Namespace) -> None:
    rows = []
    for account, result in mgr.validate_all_sync():
        days = "" if result.days_until_expiry < 0 else str(result.days_until_expiry)
        note = result.error_message
        if result.expires_warning:
            note = f"expires in {result.days_until_expiry} day(s)"
        rows.append([account.id, account.username, _STATUS_LABELS[result.status], days, note])
    print(_format_table(["ID", "Username", "Status", "Days", "Note"], rows, max_col_width=60))


def _cmd_capture(mgr: SessionManager, args: argparse.Namespace) -> None:
    account = mgr.registry.resolve(args.account)
    result = mgr.capture_from_browser_sync(account.id, force=args.force)
    print(f"Captured cookie for {account.display_name}: {_STATUS_LABELS[result.status]}")


def _cmd_refresh(mgr: SessionManager, args: argparse.Namespace) -> None:
    outcomes = mgr.refresh_now_sync()
    if not outcomes:
        print("No usable browser session; nothing to refresh.")
        return
    rows = [
        [o.account_id, o.username, o.status.value, "yes" if o.refreshed else "", o.message]
        for o in outcomes
    ]
    print(_format_table(["ID", "Username", "Status", "Refreshed", "Message"], rows))


def _cmd_switch_browser(mgr: SessionManager, args: argparse.Namespace) -> None:
    account = mgr.switch_browser_account(mgr.registry.resolve(args.account).id)
    print(f"Browser will open logged in as {account.username}")


def _cmd_save_browser(mgr: SessionManager, args: argparse.Namespace) -> None:
    account = mgr.save_current_browser_cookie_sync()
    if account is None:
        print("Browser session does not belong to a managed account.")
    else:
        print(f"Saved browser session to {account.display_name}")


def _cmd_clear_browser(mgr: SessionManager, args: argparse.Namespace) -> None:
    removed = mgr.clear_browser_session(confirm=args.confirm)
    print(f"Removed {removed} roblox.com cookie(s) from the browser")


def _cmd_clear_app(mgr: SessionManager, args: argparse.Namespace) -> None:
    removed = mgr.clear_app_cookies()
    print(f"Removed {len(removed)} client session path(s)")


def _cmd_launch(mgr: SessionManager, args: argparse.Namespace) -> None:
    account_id = mgr.registry.resolve(args.account).id if args.account else None
    result = mgr.launch_sync(account_id, place=args.place, link=args.link)
    pid = result.pid if result.pid is not None else "unknown"
    print(f"Launched ({result.kind.value}), PID {pid}")


def _cmd_instances(mgr: SessionManager, args: argparse.Namespace) -> None:
    tracker = mgr.launcher.tracker
    if args.reconcile:
        print(f"Pruned {tracker.reconcile()} stale entr(ies)")
    names = {a.id: a.username for a in mgr.registry.list()}
    rows = [
        [str(e.pid), e.account_id, names.get(e.account_id, "?"), e.launched_at]
        for e in tracker.entries()
    ]
    print(_format_table(["PID", "Account", "Username", "Launched"], rows))


def _cmd_close(mgr: SessionManager, args: argparse.Namespace) -> None:
    mgr.launcher.close_instance(args.pid)
    print(f"Closed PID {args.pid}")


def _cmd_cleanup_copies(mgr: SessionManager, args: argparse.Namespace) -> None:
    removed = mgr.launcher.cleanup_scratch_copies()
    print(f"Removed {len(removed)} scratch cop(ies)")


def _cmd_daemon(mgr: SessionManager, args: argparse.Namespace) -> None:
    refresh_loop = mgr.refresh_loop(args.interval)
    print(f"Auto-refresh every {args.interval}s. Press Ctrl+C to stop.")

    async def _run() -> None:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)
        await refresh_loop.start()
        try:
            await shutdown.wait()
        finally:
            await refresh_loop.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print("\nShutting down...")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multi-roblox",
        description="Run several Roblox clients logged into different accounts",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp = subparsers.add_parser("accounts", help="List managed accounts")
    sp.set_defaults(func=_cmd_accounts)

    sp = subparsers.add_parser("add-account", help="Add an account")
    sp.add_argument("username")
    sp.add_argument("--label", default="")
    sp.add_argument("--password", action="store_true", help="Prompt for a password to keep in Keychain")
    sp.set_defaults(func=_cmd_add_account)

    sp = subparsers.add_parser("delete-account", help="Delete an account with its secrets")
    sp.add_argument("account", help="Account id or username")
    sp.add_argument("--confirm", action="store_true")
    sp.set_defaults(func=_cmd_delete_account)

    sp = subparsers.add_parser("label", help="Set an account label")
    sp.add_argument("account")
    sp.add_argument("label")
    sp.set_defaults(func=_cmd_label)

    sp = subparsers.add_parser("status", help="Validate every stored cookie")
    sp.set_defaults(func=_cmd_status)

    sp = subparsers.add_parser("capture", help="Save the browser's Roblox session to an account")
    sp.add_argument("account")
    sp.add_argument("--force", action="store_true", help="Save even if the browser user differs")
    sp.set_defaults(func=_cmd_capture)

    sp = subparsers.add_parser("refresh", help="Refresh expired cookies from the browser now")
    sp.set_defaults(func=_cmd_refresh)

    sp = subparsers.add_parser("switch-browser", help="Log the browser in as an account (browser must be closed)")
    sp.add_argument("account")
    sp.set_defaults(func=_cmd_switch_browser)

    sp = subparsers.add_parser("save-browser", help="Save the browser session to its matching account")
    sp.set_defaults(func=_cmd_save_browser)

    sp = subparsers.add_parser("clear-browser", help="Remove roblox.com cookies from the browser")
    sp.add_argument("--confirm", action="store_true")
    sp.set_defaults(func=_cmd_clear_browser)

    sp = subparsers.add_parser("clear-app", help="Sign the Roblox client out")
    sp.set_defaults(func=_cmd_clear_app)

    sp = subparsers.add_parser("launch", help="Launch a client instance")
    sp.add_argument("account", nargs="?", default=None, help="Account id or username")
    sp.add_argument("--place", default=None, help="Place id or game URL")
    sp.add_argument("--link", default=None, help="Private server link or code")
    sp.set_defaults(func=_cmd_launch)

    sp = subparsers.add_parser("instances", help="Show tracked client instances")
    sp.add_argument("--reconcile", action="store_true", help="Prune dead entries first")
    sp.set_defaults(func=_cmd_instances)

    sp = subparsers.add_parser("close", help="Close a tracked instance")
    sp.add_argument("pid", type=int)
    sp.set_defaults(func=_cmd_close)

    sp = subparsers.add_parser("cleanup-copies", help="Remove unused scratch app copies")
    sp.set_defaults(func=_cmd_cleanup_copies)

    sp = subparsers.add_parser("daemon", help="Run the periodic auto-refresh loop")
    sp.add_argument("--interval", type=int, default=REFRESH_INTERVAL, help="Seconds between cycles")
    sp.set_defaults(func=_cmd_daemon)

    return parser


def main(argv: Optional[list[str]] = None, manager: Optional[SessionManager] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    if manager is None:
        setup_logging(args.verbose)
        manager = get_session_manager()
    mgr = manager
    try:
        args.func(mgr, args)
    except SessionSyncError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
