"""
Cookie Validator — classify each account's stored session cookie
================================================================

Four outcomes per account, recomputed on every call:

    none     no cookie stored
    valid    identity lookup succeeded (expires_warning if <= 7 days left)
    expired  identity lookup rejected the token (recapture needed)
    error    vault, network or response failure (retry later, do not recapture)

Results are published into a ValidationCache that hands out a sequence
number when a check starts and only accepts a result that is newer than
the last one accepted, so a slow check finishing late never overwrites a
fresher status.

Usage:
    from multi_roblox.cookie_validator import CookieValidator

    validator = CookieValidator(cookies, identity)
    result = await validator.validate("account_1")
    if result.status is CookieStatus.EXPIRED:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from multi_roblox.config import EXPIRY_WARNING_DAYS, _now_utc
from multi_roblox.credential_vault import SessionCookie, SessionCookieStore
from multi_roblox.errors import AuthError, SessionSyncError
from multi_roblox.identity_client import IdentityClient, _run_sync

logger = logging.getLogger("cookie_validator")

EXPIRED_MESSAGE = "Cookie expired - recapture needed"


class CookieStatus(str, Enum):
    NONE = "none"
    VALID = "valid"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class ValidationResult:
    account_id: str
    status: CookieStatus
    username: str = ""
    error_message: str = ""
    days_until_expiry: int = -1
    expires_warning: bool = False
    checked_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "status": self.status.value,
            "username": self.username,
            "error_message": self.error_message,
            "days_until_expiry": self.days_until_expiry,
            "expires_warning": self.expires_warning,
            "checked_at": self.checked_at.isoformat(),
        }


def days_until(expires_at: Optional[datetime], now: datetime) -> int:
    """Whole days left before *expires_at*; -1 when unknown, never below 0."""
    if expires_at is None:
        return -1
    remaining = expires_at - now
    return max(0, int(remaining.total_seconds() // 86400))


# ---------------------------------------------------------------------------
# ValidationCache
# ---------------------------------------------------------------------------

class ValidationCache:
    """Latest validation result per account, ordered by a per-account sequence."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._issued: dict[str, int] = {}
        self._committed: dict[str, int] = {}
        self._results: dict[str, ValidationResult] = {}

    def begin(self, account_id: str) -> int:
        with self._lock:
            seq = self._issued.get(account_id, 0) + 1
            self._issued[account_id] = seq
            return seq

    def commit(self, account_id: str, seq: int, result: ValidationResult) -> bool:
        with self._lock:
            if seq <= self._committed.get(account_id, 0):
                logger.debug("Dropping stale validation #%d for %s", seq, account_id)
                return False
            self._committed[account_id] = seq
            self._results[account_id] = result
            return True

    def get(self, account_id: str) -> Optional[ValidationResult]:
        with self._lock:
            return self._results.get(account_id)

    def invalidate(self, account_id: str) -> None:
        """Forget the cached result and drop every check already in flight.

        Called after the stored cookie changes, so a check that loaded the
        previous cookie can never commit over the new one.
        """
        with self._lock:
            self._results.pop(account_id, None)
            self._committed[account_id] = self._issued.get(account_id, 0)

    def snapshot(self) -> dict[str, ValidationResult]:
        with self._lock:
            return dict(self._results)


# ---------------------------------------------------------------------------
# CookieValidator
# ---------------------------------------------------------------------------

class CookieValidator:
    """Validates stored cookies against the Roblox identity API."""

    def __init__(
        self,
        cookies: SessionCookieStore,
        identity: IdentityClient,
        cache: Optional[ValidationCache] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.cookies = cookies
        self.identity = identity
        self.cache = cache if cache is not None else ValidationCache()
        self._clock = clock

    async def _load(self, account_id: str) -> Optional[SessionCookie]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.cookies.load, account_id)

    async def classify(self, account_id: str, cookie: Optional[SessionCookie]) -> ValidationResult:
        """Classify an already-loaded cookie without touching the cache."""
        if cookie is None:
            return ValidationResult(account_id, CookieStatus.NONE)

        try:
            info = await self.identity.who_owns(cookie.value)
        except AuthError as exc:
            logger.info("Cookie for %s rejected: %s", account_id, exc)
            return ValidationResult(
                account_id, CookieStatus.EXPIRED,
                error_message=EXPIRED_MESSAGE, days_until_expiry=0,
            )
        except SessionSyncError as exc:
            logger.warning("Could not validate cookie for %s: %s", account_id, exc)
            return ValidationResult(account_id, CookieStatus.ERROR, error_message=str(exc))

        days = days_until(cookie.expires_at, self._clock())
        return ValidationResult(
            account_id, CookieStatus.VALID,
            username=info.username,
            days_until_expiry=days,
            expires_warning=cookie.expires_at is not None and days <= EXPIRY_WARNING_DAYS,
        )

    async def validate(self, account_id: str) -> ValidationResult:
        seq = self.cache.begin(account_id)
        try:
            cookie = await self._load(account_id)
        except SessionSyncError as exc:
            logger.warning("Vault error reading cookie for %s: %s", account_id, exc)
            result = ValidationResult(account_id, CookieStatus.ERROR, error_message=str(exc))
        else:
            result = await self.classify(account_id, cookie)
        self.cache.commit(account_id, seq, result)
        return result

    async def validate_many(self, account_ids: Iterable[str]) -> list[ValidationResult]:
        return list(await asyncio.gather(*(self.validate(a) for a in account_ids)))

    def validate_sync(self, account_id: str) -> ValidationResult:
        return _run_sync(self.validate(account_id))

    def latest(self, account_id: str) -> Optional[ValidationResult]:
        return self.cache.get(account_id)
