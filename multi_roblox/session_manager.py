"""
Session Manager — end-to-end account session flows
==================================================

Wires the vault, browser store, identity client, validator, refresh
orchestrator and launcher together into the operations a user triggers:

    launch                validate -> refresh if needed -> ticket -> launch -> track
    capture_from_browser  store the browser's session under an account
    switch_browser        put an account's session into the browser
    save_current_browser  store the browser's session under whichever account it is
    clear_*               sign the browser or the client out

Explicit actions raise the typed SessionSyncError subclasses so callers can
tell "cookie expired" from "network unreachable".

Usage:
    from multi_roblox.session_manager import get_session_manager

    mgr = get_session_manager()
    result = await mgr.launch("account_1", place="https://www.roblox.com/games/920587237")
    print(result.pid)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from multi_roblox.accounts import Account, AccountRegistry
from multi_roblox.auto_refresh import AutoRefreshLoop, AutoRefreshOrchestrator, same_user
from multi_roblox.binary_cookies import clear_app_cookies, write_session_cookie
from multi_roblox.browser_cookies import BrowserCookieStore
from multi_roblox.config import APP_COOKIE_FILE, APP_COOKIE_PATHS, REFRESH_INTERVAL, _mask
from multi_roblox.cookie_validator import CookieStatus, CookieValidator, ValidationResult
from multi_roblox.credential_vault import SessionCookie, SessionCookieStore
from multi_roblox.errors import (
    AuthError,
    AuthFailure,
    FormatError,
    IdentityMismatchError,
    NetworkError,
    ProcessLaunchError,
    SecretNotFoundError,
    SessionSyncError,
)
from multi_roblox.identity_client import IdentityClient, _run_sync
from multi_roblox.instance_launcher import (
    InstanceLauncher,
    LaunchKind,
    LaunchPlan,
    LaunchRequest,
    LaunchResult,
    extract_link_code,
    extract_place_id,
    is_share_link,
)

logger = logging.getLogger("session_manager")


class SessionManager:
    def __init__(
        self,
        registry: Optional[AccountRegistry] = None,
        cookies: Optional[SessionCookieStore] = None,
        identity: Optional[IdentityClient] = None,
        browser: Optional[BrowserCookieStore] = None,
        launcher: Optional[InstanceLauncher] = None,
        validator: Optional[CookieValidator] = None,
        app_cookie_path: Path = APP_COOKIE_FILE,
    ):
        self.cookies = cookies if cookies is not None else SessionCookieStore()
        self.registry = registry if registry is not None else AccountRegistry(cookies=self.cookies)
        self.identity = identity if identity is not None else IdentityClient()
        self.browser = browser if browser is not None else BrowserCookieStore()
        self.launcher = launcher if launcher is not None else InstanceLauncher()
        self.validator = validator if validator is not None else CookieValidator(self.cookies, self.identity)
        self.refresher = AutoRefreshOrchestrator(self.browser, self.validator, self.cookies, self.identity)
        self.app_cookie_path = Path(app_cookie_path)

    async def _in_thread(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ------------------------------------------------------------------
    # Pre-launch cookie check
    # ------------------------------------------------------------------

    async def _try_refresh(self, account: Account) -> Optional[str]:
        try:
            fresh = await self.refresher.refresh_account(account)
        except SessionSyncError as exc:
            logger.warning("Browser refresh for %s failed: %s", account.username, exc)
            return None
        return fresh.value

    async def prelaunch_cookie(self, account: Account) -> str:
        """Return a token fit to launch *account*, refreshing from the browser if needed."""
        result = await self.validator.validate(account.id)

        if result.status is CookieStatus.NONE:
            raise SecretNotFoundError(f"No cookie saved for {account.username}; capture one first")
        if result.status is CookieStatus.ERROR:
            raise NetworkError(f"Cookie check failed for {account.username}", detail=result.error_message)

        if result.status is CookieStatus.EXPIRED:
            token = await self._try_refresh(account)
            if token is None:
                raise AuthError(
                    f"Cookie for {account.username} expired and the browser is not "
                    f"logged in as this account - recapture needed",
                    AuthFailure.EXPIRED,
                )
            return token

        if result.expires_warning:
            logger.info("Cookie for %s expires in %d day(s), trying browser refresh",
                        account.username, result.days_until_expiry)
            token = await self._try_refresh(account)
            if token is not None:
                return token

        cookie = await self._in_thread(self.cookies.load, account.id)
        if cookie is None:
            raise SecretNotFoundError(f"Cookie for {account.username} disappeared during launch")
        return cookie.value

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def _resolve_target(
        self, place, link: Optional[str], token: Optional[str],
    ) -> tuple[Optional[int], Optional[str]]:
        place_id = None
        if place not in (None, ""):
            place_id = place if isinstance(place, int) else extract_place_id(str(place))

        link_code = None
        if link:
            if is_share_link(link) and token:
                info = await self.identity.resolve_share_link(extract_link_code(link), token)
                link_code = info.link_code or info.access_code
                place_id = place_id or info.place_id
            else:
                link_code = extract_link_code(link) or None
                if place_id is None and "roblox.com/games/" in link:
                    place_id = extract_place_id(link)
        if place_id is None and link_code:
            raise FormatError("A private server link needs a place id")
        return place_id, link_code

    async def launch(
        self,
        account_id: Optional[str] = None,
        place=None,
        link: Optional[str] = None,
    ) -> LaunchResult:
        """Launch the client, as *account_id* when given."""
        if account_id is None:
            place_id, link_code = await self._resolve_target(place, link, None)
            plan = LaunchRequest(place_id=place_id, link_code=link_code).plan()
            return await self._in_thread(self.launcher.launch, plan, None)

        account = await self._in_thread(self.registry.get, account_id)
        token = await self.prelaunch_cookie(account)
        place_id, link_code = await self._resolve_target(place, link, token)

        if place_id is None:
            return await self._in_thread(self._launch_home, account, token)

        ticket = await self.identity.exchange_for_ticket(token)
        plan = LaunchRequest(place_id=place_id, link_code=link_code, ticket=ticket.value).plan()
        result = await self._in_thread(self.launcher.launch, plan, account.id)
        logger.info("Launched %s into place %d (PID %s)", account.username, place_id, result.pid)
        return result

    def _launch_home(self, account: Account, token: str) -> LaunchResult:
        """Sign the client in as *account* via its cookie cache, then open it."""
        path = self.app_cookie_path
        previous = path.read_bytes() if path.exists() else None
        write_session_cookie(token, path)
        try:
            result = self.launcher.launch(LaunchPlan(LaunchKind.HOME))
        except ProcessLaunchError:
            if previous is None:
                path.unlink(missing_ok=True)
            else:
                tmp = path.with_suffix(".restore")
                tmp.write_bytes(previous)
                tmp.replace(path)
            raise
        result.account_id = account.id
        logger.info("Opened client home screen as %s", account.username)
        return result

    # ------------------------------------------------------------------
    # Browser <-> vault
    # ------------------------------------------------------------------

    async def capture_from_browser(self, account_id: str, force: bool = False) -> ValidationResult:
        """Store the browser's current session as *account_id*'s cookie."""
        account = await self._in_thread(self.registry.get, account_id)
        cookie = await self._in_thread(self.browser.read_session_cookie)
        info = await self.identity.who_owns(cookie.value)
        if not same_user(info.username, account.username):
            if not force:
                raise IdentityMismatchError(account.username, info.username)
            logger.warning("Saving %s's session under %s (forced)", info.username, account.username)

        captured = SessionCookie(value=cookie.value, expires_at=cookie.expires_at,
                                 owner_account_id=account.id)
        await self._in_thread(self.cookies.save, account.id, captured)
        logger.info("Captured cookie %s for %s", _mask(cookie.value), account.username)
        return await self.validator.validate(account.id)

    def switch_browser_account(self, account_id: str) -> Account:
        """Make the browser log in as *account_id*.  The browser must be closed."""
        account = self.registry.get(account_id)
        cookie = self.cookies.load(account.id)
        if cookie is None:
            raise SecretNotFoundError(f"No cookie saved for {account.username}")
        self.browser.write_session_cookie(cookie.value)
        logger.info("Browser switched to %s", account.username)
        return account

    async def save_current_browser_cookie(self) -> Optional[Account]:
        """Store the browser session under the account it belongs to, if any."""
        cookie = await self._in_thread(self.browser.read_session_cookie)
        info = await self.identity.who_owns(cookie.value)
        account = await self._in_thread(self.registry.find_by_username, info.username)
        if account is None:
            logger.info("No managed account for browser user %s", info.username)
            return None
        fresh = SessionCookie(value=cookie.value, expires_at=cookie.expires_at,
                              owner_account_id=account.id)
        await self._in_thread(self.cookies.replace_if_changed, account.id, fresh)
        return account

    def clear_browser_session(self, confirm: bool = False) -> int:
        if not confirm:
            raise SessionSyncError("Clearing the browser session needs explicit confirmation")
        return self.browser.clear_domain_cookies()

    def clear_app_cookies(self) -> list[Path]:
        return clear_app_cookies(APP_COOKIE_PATHS)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def validate_all(self) -> list[tuple[Account, ValidationResult]]:
        accounts = await self._in_thread(self.registry.list)
        results = await self.validator.validate_many(a.id for a in accounts)
        return list(zip(accounts, results))

    def refresh_loop(self, interval: float = REFRESH_INTERVAL) -> AutoRefreshLoop:
        return AutoRefreshLoop(self.refresher, self.registry.list, interval)

    # ------------------------------------------------------------------
    # Sync wrappers
    # ------------------------------------------------------------------

    def launch_sync(self, account_id: Optional[str] = None, place=None,
                    link: Optional[str] = None) -> LaunchResult:
        return _run_sync(self.launch(account_id, place, link))

    def capture_from_browser_sync(self, account_id: str, force: bool = False) -> ValidationResult:
        return _run_sync(self.capture_from_browser(account_id, force))

    def save_current_browser_cookie_sync(self) -> Optional[Account]:
        return _run_sync(self.save_current_browser_cookie())

    def validate_all_sync(self) -> list[tuple[Account, ValidationResult]]:
        return _run_sync(self.validate_all())

    def refresh_now_sync(self):
        return self.refresher.run_sync(self.registry.list())


# ===================================================================
# Singleton
# ===================================================================

_manager_instance: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Return the singleton SessionManager instance."""
    global _manager_instance
    if _manager_instance is None:
        _manager_instance = SessionManager()
    return _manager_instance
