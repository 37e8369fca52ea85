"""
Auto Refresh — recover expired account cookies from the browser session
======================================================================

When the user is logged into Roblox in Vivaldi as one of the managed
accounts, that browser session is a fresh token for the account.  Each
cycle:

    1. read the browser's .ROBLOSECURITY once and resolve its owner once
       (no browser session -> the cycle is skipped, nothing is an error)
    2. validate every account
    3. for each *expired* account whose username matches the browser owner
       (case-insensitive), store the browser token in the vault

Writes go through SessionCookieStore.replace_if_changed under the account
lock, so a repeat cycle with the same browser session writes nothing.

AutoRefreshLoop drives the orchestrator every REFRESH_INTERVAL seconds
(30 minutes by default), starting with an immediate cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from multi_roblox.accounts import Account
from multi_roblox.browser_cookies import BrowserCookieStore
from multi_roblox.config import REFRESH_INTERVAL
from multi_roblox.cookie_validator import CookieStatus, CookieValidator
from multi_roblox.credential_vault import SessionCookie, SessionCookieStore
from multi_roblox.errors import IdentityMismatchError, SessionSyncError
from multi_roblox.identity_client import IdentityClient, _run_sync

logger = logging.getLogger("auto_refresh")

MSG_REFRESHED = "Refreshed from browser session"
MSG_MISMATCH = "browser logged in as a different user"


@dataclass
class RefreshOutcome:
    account_id: str
    username: str
    status: CookieStatus
    refreshed: bool = False
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "username": self.username,
            "status": self.status.value,
            "refreshed": self.refreshed,
            "message": self.message,
        }


def same_user(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


class AutoRefreshOrchestrator:
    def __init__(
        self,
        browser: BrowserCookieStore,
        validator: CookieValidator,
        cookies: SessionCookieStore,
        identity: IdentityClient,
    ):
        self.browser = browser
        self.validator = validator
        self.cookies = cookies
        self.identity = identity

    async def _in_thread(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def _browser_session(self) -> Optional[tuple[SessionCookie, str]]:
        """The browser cookie and its owner, or None if there is no usable session."""
        try:
            cookie = await self._in_thread(self.browser.read_session_cookie)
        except SessionSyncError as exc:
            logger.info("No browser session available: %s", exc)
            return None
        try:
            info = await self.identity.who_owns(cookie.value)
        except SessionSyncError as exc:
            logger.info("Browser session not usable: %s", exc)
            return None
        return cookie, info.username

    async def run(self, accounts: Sequence[Account]) -> list[RefreshOutcome]:
        """One reconciliation cycle over *accounts*."""
        session = await self._browser_session()
        if session is None:
            return []
        browser_cookie, browser_user = session
        logger.info("Browser is logged in as %s", browser_user)

        results = await self.validator.validate_many(a.id for a in accounts)
        outcomes = []
        for account, result in zip(accounts, results):
            outcome = RefreshOutcome(account.id, account.username, result.status)
            if result.status is not CookieStatus.EXPIRED:
                outcomes.append(outcome)
                continue

            if not same_user(browser_user, account.username):
                outcome.message = MSG_MISMATCH
                logger.info("%s expired; %s", account.username, MSG_MISMATCH)
                outcomes.append(outcome)
                continue

            fresh = SessionCookie(
                value=browser_cookie.value,
                expires_at=browser_cookie.expires_at,
                owner_account_id=account.id,
            )
            try:
                wrote = await self._in_thread(self.cookies.replace_if_changed, account.id, fresh)
            except SessionSyncError as exc:
                outcome.message = f"Vault write failed: {exc}"
                logger.error("Could not refresh %s: %s", account.username, exc)
                outcomes.append(outcome)
                continue

            outcome.refreshed = wrote
            outcome.message = MSG_REFRESHED if wrote else "Browser session already stored"
            if wrote:
                self.validator.cache.invalidate(account.id)
                logger.info("Auto-refreshed cookie for %s", account.username)
            outcomes.append(outcome)
        return outcomes

    def run_sync(self, accounts: Sequence[Account]) -> list[RefreshOutcome]:
        return _run_sync(self.run(accounts))

    async def refresh_account(self, account: Account) -> SessionCookie:
        """Explicit refresh of one account from the browser; errors propagate."""
        cookie = await self._in_thread(self.browser.read_session_cookie)
        info = await self.identity.who_owns(cookie.value)
        if not same_user(info.username, account.username):
            raise IdentityMismatchError(account.username, info.username)
        fresh = SessionCookie(
            value=cookie.value,
            expires_at=cookie.expires_at,
            owner_account_id=account.id,
        )
        await self._in_thread(self.cookies.replace_if_changed, account.id, fresh)
        self.validator.cache.invalidate(account.id)
        logger.info("Refreshed cookie for %s from browser", account.username)
        return fresh


# ---------------------------------------------------------------------------
# Periodic loop
# ---------------------------------------------------------------------------

class AutoRefreshLoop:
    """Runs the orchestrator now and then every *interval* seconds."""

    def __init__(
        self,
        orchestrator: AutoRefreshOrchestrator,
        accounts: Callable[[], Iterable[Account]],
        interval: float = REFRESH_INTERVAL,
    ):
        self.orchestrator = orchestrator
        self._accounts = accounts
        self.interval = interval
        self.cycles = 0
        self.last_outcomes: list[RefreshOutcome] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> list[RefreshOutcome]:
        accounts = list(self._accounts())
        outcomes = await self.orchestrator.run(accounts)
        self.cycles += 1
        self.last_outcomes = outcomes
        refreshed = sum(1 for o in outcomes if o.refreshed)
        logger.info("Refresh cycle %d: %d account(s), %d refreshed",
                    self.cycles, len(accounts), refreshed)
        return outcomes

    async def _loop(self) -> None:
        logger.info("Auto-refresh loop started (every %ds)", self.interval)
        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as exc:
                    logger.error("Error in refresh cycle: %s", exc)
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("Auto-refresh loop cancelled.")
            raise

    async def start(self) -> None:
        if self._running:
            logger.warning("Auto-refresh loop is already running.")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Auto-refresh loop stopped.")
