"""
Identity Client — Roblox identity and authentication-ticket APIs
================================================================

Async aiohttp client for the three calls the session engine needs:

    - who_owns(token)             GET  users.roblox.com/v1/users/authenticated
    - exchange_for_ticket(token)  POST auth.roblox.com/v1/authentication-ticket
    - resolve_share_link(code)    POST apis.roblox.com/share-links/v1/resolve-link

The token travels as a ``.ROBLOSECURITY`` cookie header.  Every call uses a
fixed short timeout, and a timeout or transport failure is a NetworkError.
The ticket exchange does the one CSRF challenge/retry round trip Roblox
requires; there are no other retries here.

Usage:
    from multi_roblox.identity_client import IdentityClient

    client = IdentityClient()
    info = await client.who_owns(token)
    ticket = await client.exchange_for_ticket(token)

    # Synchronous wrappers
    info = client.who_owns_sync(token)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Optional

import aiohttp

from multi_roblox.config import COOKIE_NAME, HTTP_TIMEOUT, USER_AGENT, _mask, _now_utc
from multi_roblox.errors import AuthError, AuthFailure, FormatError, NetworkError

logger = logging.getLogger("identity_client")

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

AUTHENTICATED_USER_URL = "https://users.roblox.com/v1/users/authenticated"
AUTH_TICKET_URL = "https://auth.roblox.com/v1/authentication-ticket"
SHARE_LINK_URL = "https://apis.roblox.com/share-links/v1/resolve-link"
REFERER = "https://www.roblox.com/"

CSRF_HEADER = "x-csrf-token"
TICKET_HEADER = "rbx-authentication-ticket"

# Substrings of Roblox error messages that mean the session is dead
_AUTH_ERROR_HINTS = ("authorization has been denied", "unauthorized", "expired", "invalid")

_thread_pool = concurrent.futures.ThreadPoolExecutor(max_workers=2)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class IdentityInfo:
    user_id: int
    username: str
    display_name: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LaunchTicket:
    """Single-use, short-lived.  Never cache across launches."""

    value: str
    issued_at: datetime = field(default_factory=_now_utc)

    def __repr__(self) -> str:
        return f"LaunchTicket(value={_mask(self.value)!r}, issued_at={self.issued_at!r})"


@dataclass
class ShareLinkInfo:
    place_id: int = 0
    link_code: str = ""
    access_code: str = ""
    server_id: str = ""

    @property
    def is_resolved(self) -> bool:
        return bool(self.place_id and (self.link_code or self.access_code))


@dataclass
class _Reply:
    status: int
    headers: dict[str, str]
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.text:
            return {}
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as exc:
            raise FormatError("Response body is not JSON", self.text[:200]) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _run_sync(coro: Awaitable[Any]) -> Any:
    """
    Run an async coroutine synchronously.

    If there is already a running event loop, a new loop is spun up in a
    background thread.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        future = _thread_pool.submit(asyncio.run, coro)
        return future.result(timeout=120)
    return asyncio.run(coro)


def _cookie_header(token: str) -> dict[str, str]:
    return {"Cookie": f"{COOKIE_NAME}={token}"}


def _mentions_auth_failure(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    for error in body.get("errors") or []:
        message = str(error.get("message", "")).lower() if isinstance(error, dict) else ""
        if any(hint in message for hint in _AUTH_ERROR_HINTS):
            return True
    return False


# ---------------------------------------------------------------------------
# IdentityClient
# ---------------------------------------------------------------------------

class IdentityClient:
    """Roblox identity/ticket API client."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = HTTP_TIMEOUT):
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @asynccontextmanager
    async def _open(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None:
            yield self._session
            return
        async with aiohttp.ClientSession(
            timeout=self._timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        ) as session:
            yield session

    async def _call(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        headers: dict[str, str],
        json_body: Optional[dict] = None,
    ) -> _Reply:
        request = session.get if method == "GET" else session.post
        kwargs: dict[str, Any] = {"headers": headers, "timeout": self._timeout}
        if json_body is not None:
            kwargs["json"] = json_body
        logger.debug("%s %s", method, url)
        try:
            async with request(url, **kwargs) as resp:
                text = await resp.text()
                reply_headers = {str(k).lower(): v for k, v in resp.headers.items()}
                return _Reply(resp.status, reply_headers, text)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"Timed out after {self._timeout.total:.0f}s: {url}") from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"Request to {url} failed", detail=str(exc)) from exc

    # -- who owns this token ------------------------------------------------

    async def who_owns(self, token: str) -> IdentityInfo:
        """Return the account the session token belongs to."""
        async with self._open() as session:
            reply = await self._call(session, "GET", AUTHENTICATED_USER_URL, _cookie_header(token))

        if reply.status in (401, 403):
            raise AuthError("Cookie expired or invalid", AuthFailure.EXPIRED, reply.status)
        if not reply.ok:
            raise NetworkError(
                f"Identity lookup returned HTTP {reply.status}",
                status_code=reply.status,
                detail=reply.text[:200],
            )

        body = reply.json()
        if _mentions_auth_failure(body):
            raise AuthError("Cookie expired or invalid", AuthFailure.EXPIRED, reply.status)
        if not isinstance(body, dict) or not body.get("name"):
            raise FormatError("Identity response has no username", reply.text[:200])

        info = IdentityInfo(
            user_id=int(body.get("id") or 0),
            username=body["name"],
            display_name=body.get("displayName") or "",
        )
        logger.debug("Token %s belongs to %s", _mask(token), info.username)
        return info

    # -- ticket exchange ----------------------------------------------------

    async def exchange_for_ticket(self, token: str) -> LaunchTicket:
        """Trade the session token for a one-shot launch ticket."""
        headers = {
            **_cookie_header(token),
            "Content-Type": "application/json",
            "Referer": REFERER,
        }
        async with self._open() as session:
            reply = await self._call(session, "POST", AUTH_TICKET_URL, headers)
            if reply.status == 403 and reply.headers.get(CSRF_HEADER):
                logger.debug("CSRF challenge received, retrying ticket request")
                headers["X-CSRF-TOKEN"] = reply.headers[CSRF_HEADER]
                reply = await self._call(session, "POST", AUTH_TICKET_URL, headers)

        if reply.status == 401:
            raise AuthError("Cookie expired - cannot get launch ticket",
                            AuthFailure.EXPIRED, reply.status)
        if reply.status == 403:
            raise AuthError("Ticket request rejected", AuthFailure.INVALID, reply.status)
        if not reply.ok:
            raise NetworkError(
                f"Ticket request returned HTTP {reply.status}",
                status_code=reply.status,
                detail=reply.text[:200],
            )

        ticket = reply.headers.get(TICKET_HEADER)
        if not ticket:
            raise AuthError("No authentication ticket in response",
                            AuthFailure.INVALID, reply.status)
        logger.info("Obtained launch ticket (%d chars)", len(ticket))
        return LaunchTicket(value=ticket)

    # -- share links --------------------------------------------------------

    async def resolve_share_link(self, code: str, token: Optional[str] = None) -> ShareLinkInfo:
        """Resolve a ``roblox.com/share?code=...&type=Server`` code to a place and link code."""
        if not code:
            raise FormatError("Empty share code")
        headers = {"Content-Type": "application/json"}
        if token:
            headers.update(_cookie_header(token))
        async with self._open() as session:
            reply = await self._call(
                session, "POST", SHARE_LINK_URL, headers,
                json_body={"linkId": code, "linkType": "Server"},
            )

        if reply.status in (401, 403):
            raise AuthError("Share link lookup rejected", AuthFailure.INVALID, reply.status)
        if not reply.ok:
            raise NetworkError(
                f"Share link lookup returned HTTP {reply.status}",
                status_code=reply.status,
                detail=reply.text[:200],
            )
        body = reply.json()
        if not isinstance(body, dict):
            raise FormatError("Unexpected share link response", reply.text[:200])
        return _parse_share_link(body)

    # -- sync wrappers ------------------------------------------------------

    def who_owns_sync(self, token: str) -> IdentityInfo:
        return _run_sync(self.who_owns(token))

    def exchange_for_ticket_sync(self, token: str) -> LaunchTicket:
        return _run_sync(self.exchange_for_ticket(token))

    def resolve_share_link_sync(self, code: str, token: Optional[str] = None) -> ShareLinkInfo:
        return _run_sync(self.resolve_share_link(code, token))


def _parse_share_link(body: dict) -> ShareLinkInfo:
    """Accept both the flat and the ``privateServerInviteData`` response shapes."""
    data = body.get("privateServerInviteData")
    if not isinstance(data, dict):
        data = body

    info = ShareLinkInfo(place_id=int(data.get("placeId") or 0))
    if data.get("privateServerLinkCode"):
        info.link_code = data["privateServerLinkCode"]
    elif data.get("linkCode"):
        info.link_code = data["linkCode"]
    elif data.get("accessCode"):
        info.access_code = data["accessCode"]

    server_id = data.get("privateServerId")
    if server_id:
        info.server_id = str(server_id)
    if not info.place_id:
        raise FormatError("Share link response has no place id", json.dumps(body)[:200])
    return info
