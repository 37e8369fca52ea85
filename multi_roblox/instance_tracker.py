"""
Instance Tracker — which account owns which running client
==========================================================

Records ``pid -> account`` for every client started with a known PID and
persists it to ``instance_accounts.json``.  The OS recycles PIDs, so an
entry is trusted only while its process is alive *and* still has the start
time recorded at launch; everything else is pruned before any read.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from multi_roblox.config import INSTANCES_FILE, _load_json, _now_iso, _save_json
from multi_roblox.processes import ProcessInspector

logger = logging.getLogger("instance_tracker")


@dataclass
class InstanceOwnership:
    pid: int
    account_id: str
    launched_at: str = field(default_factory=_now_iso)
    create_time: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceOwnership":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class InstanceTracker:
    def __init__(self, path: Optional[Path] = None, inspector: Optional[ProcessInspector] = None):
        self.path = Path(path) if path is not None else INSTANCES_FILE
        self.inspector = inspector if inspector is not None else ProcessInspector()
        self._lock = threading.Lock()

    def _load(self) -> list[InstanceOwnership]:
        raw = _load_json(self.path, [])
        if not isinstance(raw, list):
            return []
        return [InstanceOwnership.from_dict(e) for e in raw if isinstance(e, dict) and "pid" in e]

    def _save(self, entries: list[InstanceOwnership]) -> None:
        _save_json(self.path, [e.to_dict() for e in entries])

    def _alive(self, entry: InstanceOwnership, live_pids: Optional[set[int]]) -> bool:
        if live_pids is not None and entry.pid not in live_pids:
            return False
        return self.inspector.is_alive(entry.pid, entry.create_time)

    def _reconciled(self, live_pids: Optional[Iterable[int]] = None) -> tuple[list[InstanceOwnership], int]:
        live = set(live_pids) if live_pids is not None else None
        entries = self._load()
        kept = [e for e in entries if self._alive(e, live)]
        removed = len(entries) - len(kept)
        if removed:
            self._save(kept)
            logger.info("Pruned %d stale instance mapping(s)", removed)
        return kept, removed

    def reconcile(self, live_pids: Optional[Iterable[int]] = None) -> int:
        """Drop entries whose process is gone or whose PID was reused."""
        with self._lock:
            _, removed = self._reconciled(live_pids)
            return removed

    def track(self, pid: int, account_id: str) -> InstanceOwnership:
        entry = InstanceOwnership(
            pid=pid,
            account_id=account_id,
            create_time=self.inspector.create_time(pid),
        )
        with self._lock:
            entries = [e for e in self._load() if e.pid != pid]
            entries.append(entry)
            self._save(entries)
        logger.info("Tracking PID %d for %s", pid, account_id)
        return entry

    def untrack(self, pid: int) -> bool:
        with self._lock:
            entries = self._load()
            kept = [e for e in entries if e.pid != pid]
            if len(kept) == len(entries):
                return False
            self._save(kept)
        logger.info("Stopped tracking PID %d", pid)
        return True

    def entries(self) -> list[InstanceOwnership]:
        with self._lock:
            kept, _ = self._reconciled()
            return kept

    def account_for(self, pid: int) -> Optional[str]:
        for entry in self.entries():
            if entry.pid == pid:
                return entry.account_id
        return None

    def pids_for(self, account_id: str) -> list[int]:
        return [e.pid for e in self.entries() if e.account_id == account_id]
