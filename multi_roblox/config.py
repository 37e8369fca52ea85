"""
Configuration — paths, service names, timeouts and logging setup.

Every path and tunable lives here as a module constant with an optional
environment override, so tests and alternative installs can redirect the
data directory, the browser database or the client bundle without code
changes.  Nothing here touches the filesystem at import time.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("config")

HOME = Path.home()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

DATA_DIR = Path(os.getenv(
    "MULTI_ROBLOX_DATA_DIR",
    str(HOME / "Library" / "Application Support" / "multi_roblox_macos"),
))
ACCOUNTS_FILE = DATA_DIR / "accounts.json"
INSTANCES_FILE = DATA_DIR / "instance_accounts.json"

LOG_DIR = Path(os.getenv(
    "MULTI_ROBLOX_LOG_DIR",
    str(HOME / "Library" / "Logs" / "multi_roblox_macos"),
))
LOG_FILE = LOG_DIR / "preset_launch.log"

# Vivaldi is the only supported browser
BROWSER_COOKIE_DB = Path(os.getenv(
    "MULTI_ROBLOX_BROWSER_DB",
    str(HOME / "Library" / "Application Support" / "Vivaldi" / "Default" / "Cookies"),
))
BROWSER_PROCESS_NAME = os.getenv("MULTI_ROBLOX_BROWSER_PROCESS", "Vivaldi")

# (service, account) pairs tried in order for the Chromium master secret
BROWSER_SAFE_STORAGE = (
    ("Vivaldi Safe Storage", "Vivaldi"),
    ("Chrome Safe Storage", "Chrome"),
)

APP_BUNDLE = Path(os.getenv("MULTI_ROBLOX_APP_BUNDLE", "/Applications/Roblox.app"))
CLIENT_PROCESS_NAME = "RobloxPlayer"
APP_COOKIE_FILE = Path(os.getenv(
    "MULTI_ROBLOX_APP_COOKIES",
    str(HOME / "Library" / "HTTPStorages" / "com.roblox.RobloxPlayer.binarycookies"),
))

# Everything the client keeps its web session in, for a full sign-out
APP_COOKIE_PATHS = (
    APP_COOKIE_FILE,
    HOME / "Library" / "HTTPStorages" / "com.roblox.RobloxPlayer",
    HOME / "Library" / "WebKit" / "com.roblox.RobloxPlayer",
    HOME / "Library" / "Caches" / "com.roblox.RobloxPlayer",
)

SCRATCH_DIR = Path(os.getenv("MULTI_ROBLOX_SCRATCH_DIR", "/tmp"))
SCRATCH_SLOTS = tuple(range(2, 11))

# ---------------------------------------------------------------------------
# Vault service names
# ---------------------------------------------------------------------------

VAULT_PASSWORD_SERVICE = "multi-roblox-manager"
VAULT_COOKIE_SERVICE = "multi-roblox-cookie"

# ---------------------------------------------------------------------------
# Roblox session constants
# ---------------------------------------------------------------------------

COOKIE_NAME = ".ROBLOSECURITY"
COOKIE_DOMAIN = ".roblox.com"

HTTP_TIMEOUT = float(os.getenv("MULTI_ROBLOX_HTTP_TIMEOUT", "10"))
REFRESH_INTERVAL = int(os.getenv("MULTI_ROBLOX_REFRESH_INTERVAL", "1800"))
EXPIRY_WARNING_DAYS = 7

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when the file is missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt JSON in %s: %s", path, exc)
        return default


def _save_json(path: Path, data: Any) -> None:
    """Atomically write *data* as pretty-printed JSON to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        os.replace(tmp, path)
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now_utc().isoformat()


def _mask(token: str, show_chars: int = 6) -> str:
    """Mask a session token for logs, keeping a short prefix for correlation."""
    if not token or len(token) <= show_chars:
        return "****"
    return token[:show_chars] + "..." + f"({len(token)} chars)"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def setup_logging(verbose: bool = False, log_file: Path | None = LOG_FILE) -> None:
    """Configure console logging plus the persistent launch log."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open log file %s: %s", log_file, exc)
            return
        file_handler.setFormatter(
            logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        root.addHandler(file_handler)
