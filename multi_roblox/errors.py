"""
Error taxonomy shared by every multi_roblox component.

All failures raised by the vault, the cookie stores, the identity API and
the launcher derive from SessionSyncError, so callers (the CLI, the refresh
loop) can catch one type and still branch on the concrete class.
"""

from __future__ import annotations

from enum import Enum


class SessionSyncError(Exception):
    """Base exception for multi_roblox."""

    def __init__(self, message: str, detail: str = ""):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class VaultUnavailableError(SessionSyncError):
    """The OS secret store could not be reached or refused the operation."""


class NotFoundError(SessionSyncError):
    """Base for lookups that found nothing."""


class SecretNotFoundError(NotFoundError):
    """No vault entry exists for the requested key."""


class AccountNotFoundError(NotFoundError):
    """No account with the requested id."""


class CookieNotFoundError(NotFoundError):
    """The browser database holds no Roblox session cookie."""


class StoreLockedError(SessionSyncError):
    """The browser cookie database is locked or the browser is running."""


class DecryptionFailedError(SessionSyncError):
    """A browser cookie value could not be decrypted."""


class NetworkError(SessionSyncError):
    """Transport failure, timeout or unexpected HTTP status."""

    def __init__(self, message: str, status_code: int = 0, detail: str = ""):
        self.status_code = status_code
        super().__init__(message, detail)


class AuthFailure(str, Enum):
    EXPIRED = "expired"
    INVALID = "invalid"


class AuthError(SessionSyncError):
    """The remote service rejected the session token."""

    def __init__(self, message: str, reason: AuthFailure = AuthFailure.EXPIRED,
                 status_code: int = 0):
        self.reason = reason
        self.status_code = status_code
        super().__init__(message)


class FormatError(SessionSyncError):
    """A binary cookie file, database row or API response had an unexpected shape."""


class ProcessLaunchError(SessionSyncError):
    """The Roblox client process could not be started."""


class IdentityMismatchError(SessionSyncError):
    """The browser session belongs to a different user than the target account."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            "browser logged in as a different user",
            f"expected {expected}, browser has {actual}",
        )
