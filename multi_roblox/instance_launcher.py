"""
Instance Launcher — start Roblox client instances
=================================================

Three launch shapes:

    home       ``open -n /Applications/Roblox.app``               (PID unknown)
    deep link  ``open -n roblox://placeId=<id>``                  (PID unknown)
    ticket     ``<bundle>/Contents/MacOS/RobloxPlayer -protocolString roblox-player:1+...``
                                                                  (PID captured and tracked)

A second concurrent ticket launch must not share the running client's
in-memory session, so when RobloxPlayer is already up the bundle is copied
to a numbered scratch path (``/tmp/Roblox2.app`` .. ``/tmp/Roblox10.app``)
and the copy is started instead.  When every slot is taken the whole pool
is purged and slot 2 is reused.

Usage:
    from multi_roblox.instance_launcher import InstanceLauncher, LaunchRequest

    launcher = InstanceLauncher()
    plan = LaunchRequest(place_id=920587237, ticket=ticket.value).plan()
    result = launcher.launch(plan, account_id="account_1")
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import parse_qs, urlparse

from multi_roblox.config import (
    APP_BUNDLE,
    CLIENT_PROCESS_NAME,
    SCRATCH_DIR,
    SCRATCH_SLOTS,
)
from multi_roblox.errors import FormatError, ProcessLaunchError
from multi_roblox.instance_tracker import InstanceTracker
from multi_roblox.processes import ProcessInspector

logger = logging.getLogger("instance_launcher")

PLACE_LAUNCHER_URL = "https://assetgame.roblox.com/game/PlaceLauncher.ashx"
LOCALE = "en_us"
EXECUTABLE_SUBPATH = Path("Contents") / "MacOS" / CLIENT_PROCESS_NAME


# ---------------------------------------------------------------------------
# Protocol strings
# ---------------------------------------------------------------------------

def build_ticket_protocol(
    ticket: str,
    place_id: int,
    link_code: Optional[str] = None,
    launch_time_ms: Optional[int] = None,
) -> str:
    """The ``roblox-player:`` string a browser hands the client on Play."""
    if launch_time_ms is None:
        launch_time_ms = int(time.time() * 1000)
    tracker_id = launch_time_ms % 1_000_000_000

    if link_code:
        placelauncher = (
            f"{PLACE_LAUNCHER_URL}?request=RequestPrivateGame&placeId={place_id}"
            f"&linkCode={link_code}&browserTrackerId={tracker_id}"
        )
    else:
        placelauncher = (
            f"{PLACE_LAUNCHER_URL}?request=RequestGame&browserTrackerId={tracker_id}"
            f"&placeId={place_id}&isPlayTogetherGame=false"
        )

    fields = [
        "roblox-player:1",
        "launchmode:play",
        f"gameinfo:{ticket}",
        f"launchtime:{launch_time_ms}",
        f"placelauncherurl:{placelauncher}",
        f"browsertrackerid:{tracker_id}",
        f"robloxLocale:{LOCALE}",
        f"gameLocale:{LOCALE}",
        "channel:",
    ]
    return "+".join(fields)


def build_deep_link(place_id: int) -> str:
    return f"roblox://placeId={place_id}"


def extract_place_id(url: str) -> int:
    """Place id from ``roblox://...placeId=N`` or ``https://www.roblox.com/games/N/...``."""
    url = url.strip()
    if url.isdigit():
        return int(url)
    if url.startswith("roblox://"):
        match = re.search(r"placeId=(\d+)", url)
        if match:
            return int(match.group(1))
        raise FormatError("Invalid roblox:// URL", url)

    parsed = urlparse(url)
    if "roblox.com" not in parsed.netloc:
        raise FormatError("Not a roblox.com URL", url)
    match = re.search(r"/games/(\d+)", parsed.path)
    if match:
        return int(match.group(1))
    query = parse_qs(parsed.query)
    if query.get("placeId", [""])[0].isdigit():
        return int(query["placeId"][0])
    raise FormatError("Could not extract place id from URL", url)


def extract_link_code(text: str) -> str:
    """Private-server code from a game URL, a share link or a pasted code.  Empty if none."""
    text = text.strip()
    if not any(c in text for c in "/?=") and 10 < len(text) < 50:
        return text
    for param in ("privateServerLinkCode=", "linkCode=", "code="):
        if param in text:
            code = text.split(param, 1)[1].split("&", 1)[0]
            return code.strip()
    return ""


def is_share_link(text: str) -> bool:
    """True for ``roblox.com/share?code=`` style links, which need API resolution."""
    return "/share" in text and "code=" in text and "privateServerLinkCode=" not in text


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class LaunchKind(str, Enum):
    HOME = "home"
    TICKET = "ticket"
    DEEP_LINK = "deep_link"


@dataclass
class LaunchPlan:
    kind: LaunchKind
    target: str = ""

    def __repr__(self) -> str:
        # Ticket plans embed a live credential
        shown = self.target if self.kind is not LaunchKind.TICKET else self.target[:40] + "..."
        return f"LaunchPlan(kind={self.kind.value}, target={shown!r})"


@dataclass
class LaunchRequest:
    place_id: Optional[int] = None
    link_code: Optional[str] = None
    ticket: Optional[str] = None

    def plan(self, launch_time_ms: Optional[int] = None) -> LaunchPlan:
        if self.place_id and self.ticket:
            return LaunchPlan(
                LaunchKind.TICKET,
                build_ticket_protocol(self.ticket, self.place_id, self.link_code, launch_time_ms),
            )
        if self.place_id:
            return LaunchPlan(LaunchKind.DEEP_LINK, build_deep_link(self.place_id))
        return LaunchPlan(LaunchKind.HOME)


@dataclass
class LaunchResult:
    kind: LaunchKind
    pid: Optional[int] = None
    executable: str = ""
    scratch_copy: Optional[Path] = None
    account_id: Optional[str] = None

    @property
    def tracked(self) -> bool:
        return self.pid is not None and self.account_id is not None


# ---------------------------------------------------------------------------
# Scratch copies
# ---------------------------------------------------------------------------

class ScratchCopyPool:
    """Numbered disposable copies of the client bundle.

    A slot is reserved under the pool lock by creating its directory, so
    concurrent launches never pick the same slot.  Copies still being
    filled are never purged or cleaned up.
    """

    def __init__(
        self,
        app_bundle: Path = APP_BUNDLE,
        scratch_dir: Path = SCRATCH_DIR,
        slots: Iterable[int] = SCRATCH_SLOTS,
    ):
        self.app_bundle = Path(app_bundle)
        self.scratch_dir = Path(scratch_dir)
        self.slots = tuple(slots)
        self._lock = threading.Lock()
        self._filling: set[Path] = set()

    def slot_path(self, slot: int) -> Path:
        return self.scratch_dir / f"{self.app_bundle.stem}{slot}.app"

    def paths(self) -> list[Path]:
        return [p for p in (self.slot_path(s) for s in self.slots) if p.exists()]

    def purge(self) -> None:
        with self._lock:
            self._purge_locked()

    def _purge_locked(self) -> None:
        for path in self.paths():
            if path in self._filling:
                continue
            shutil.rmtree(path, ignore_errors=True)
        logger.info("Purged all scratch copies in %s", self.scratch_dir)

    def _reserve(self) -> Path:
        with self._lock:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            for attempt in range(2):
                for slot in self.slots:
                    path = self.slot_path(slot)
                    try:
                        path.mkdir()
                    except FileExistsError:
                        continue
                    self._filling.add(path)
                    return path
                if attempt == 0:
                    self._purge_locked()
        raise ProcessLaunchError(f"No free scratch slot in {self.scratch_dir}")

    def acquire(self) -> Path:
        """Copy the bundle into a free slot and return the copy's path."""
        try:
            dest = self._reserve()
        except OSError as exc:
            raise ProcessLaunchError(f"Could not reserve a scratch slot in {self.scratch_dir}",
                                     str(exc)) from exc
        logger.info("Copying %s to %s for multi-instance", self.app_bundle, dest)
        try:
            shutil.copytree(self.app_bundle, dest, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            shutil.rmtree(dest, ignore_errors=True)
            raise ProcessLaunchError(f"Failed to copy {self.app_bundle}", str(exc)) from exc
        finally:
            with self._lock:
                self._filling.discard(dest)
        return dest

    def release(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)

    def cleanup(self, in_use: Iterable[str] = ()) -> list[Path]:
        """Remove copies no running process was started from."""
        in_use = [str(p) for p in in_use]
        removed = []
        with self._lock:
            for path in self.paths():
                prefix = str(path) + "/"
                if path in self._filling or any(exe.startswith(prefix) for exe in in_use):
                    logger.debug("Skipping %s - still in use", path)
                    continue
                shutil.rmtree(path, ignore_errors=True)
                removed.append(path)
        if removed:
            logger.info("Cleaned up %d scratch copies", len(removed))
        return removed


# ---------------------------------------------------------------------------
# InstanceLauncher
# ---------------------------------------------------------------------------

class InstanceLauncher:
    def __init__(
        self,
        app_bundle: Path = APP_BUNDLE,
        inspector: Optional[ProcessInspector] = None,
        tracker: Optional[InstanceTracker] = None,
        pool: Optional[ScratchCopyPool] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.app_bundle = Path(app_bundle)
        self.inspector = inspector if inspector is not None else ProcessInspector()
        self.tracker = tracker if tracker is not None else InstanceTracker(inspector=self.inspector)
        self.pool = pool if pool is not None else ScratchCopyPool(self.app_bundle)
        self._popen = popen
        self._run = run
        self._direct_lock = threading.Lock()

    def client_running(self) -> bool:
        return self.inspector.is_running(CLIENT_PROCESS_NAME)

    def launch(self, plan: LaunchPlan, account_id: Optional[str] = None) -> LaunchResult:
        if plan.kind is LaunchKind.TICKET:
            return self._launch_direct(plan, account_id)
        target = plan.target or str(self.app_bundle)
        return self._launch_open(plan.kind, target)

    def _launch_open(self, kind: LaunchKind, target: str) -> LaunchResult:
        logger.info("Launching via open -n (%s)", kind.value)
        try:
            proc = self._run(["open", "-n", target], capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ProcessLaunchError("Could not run open", str(exc)) from exc
        if proc.returncode != 0:
            raise ProcessLaunchError(
                f"open exited with status {proc.returncode}", (proc.stderr or "").strip()
            )
        return LaunchResult(kind=kind, executable="open")

    def _launch_direct(self, plan: LaunchPlan, account_id: Optional[str]) -> LaunchResult:
        # Check-then-spawn must not interleave with another launch.
        with self._direct_lock:
            return self._spawn_direct(plan, account_id)

    def _spawn_direct(self, plan: LaunchPlan, account_id: Optional[str]) -> LaunchResult:
        scratch = None
        bundle = self.app_bundle
        if self.client_running():
            scratch = self.pool.acquire()
            bundle = scratch
        executable = bundle / EXECUTABLE_SUBPATH

        try:
            proc = self._popen(
                [str(executable), "-protocolString", plan.target],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            if scratch is not None:
                self.pool.release(scratch)
            raise ProcessLaunchError(f"Failed to start {executable}", str(exc)) from exc

        pid = proc.pid
        logger.info("Launched %s (PID %d)", executable, pid)
        result = LaunchResult(
            kind=LaunchKind.TICKET,
            pid=pid,
            executable=str(executable),
            scratch_copy=scratch,
            account_id=account_id,
        )
        if account_id:
            self.tracker.track(pid, account_id)
        return result

    def cleanup_scratch_copies(self) -> list[Path]:
        return self.pool.cleanup(self.inspector.open_paths(CLIENT_PROCESS_NAME))

    def close_instance(self, pid: int) -> bool:
        """Terminate a tracked client and forget it."""
        try:
            self.inspector.terminate(pid)
        except PermissionError as exc:
            raise ProcessLaunchError(f"Not allowed to stop PID {pid}", str(exc)) from exc
        return self.tracker.untrack(pid)
