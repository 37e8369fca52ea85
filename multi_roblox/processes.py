"""
Process inspection primitives backed by psutil.

Used to decide whether the browser or the Roblox client is running, and to
tell a live tracked process apart from a recycled PID (the recorded start
time must still match).
"""

from __future__ import annotations

import logging
from typing import Optional

import psutil

logger = logging.getLogger("processes")

# psutil reports create_time as a float; allow for rounding across calls
CREATE_TIME_TOLERANCE = 0.01


class ProcessInspector:
    """Query running processes by name or PID."""

    def _iter(self, name: str):
        target = name.lower()
        for proc in psutil.process_iter(["name", "pid", "exe"]):
            proc_name = (proc.info.get("name") or "").lower()
            if proc_name == target:
                yield proc

    def is_running(self, name: str) -> bool:
        for proc in self._iter(name):
            try:
                if proc.status() != psutil.STATUS_ZOMBIE:
                    return True
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return False

    def pids(self, name: str) -> list[int]:
        return [proc.info["pid"] for proc in self._iter(name)]

    def open_paths(self, name: str) -> set[str]:
        """Executable paths of every running process called *name*."""
        paths = set()
        for proc in self._iter(name):
            exe = proc.info.get("exe")
            if exe:
                paths.add(exe)
        return paths

    def create_time(self, pid: int) -> Optional[float]:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
            return None

    def is_alive(self, pid: int, create_time: Optional[float] = None) -> bool:
        """True if *pid* exists, is not a zombie and (if given) started at *create_time*."""
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            if create_time is not None:
                return abs(proc.create_time() - create_time) <= CREATE_TIME_TOLERANCE
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but belongs to another user
            return create_time is None
        except ValueError:
            return False

    def terminate(self, pid: int) -> bool:
        """Send SIGTERM to *pid*; False if it was already gone."""
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            raise PermissionError(f"cannot signal PID {pid}") from exc
        return True
