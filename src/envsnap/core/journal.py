"""Write-ahead log of applied restore actions.

One JSON object per line::

    {"snapshot": "<hash>", "action": "dotfiles/.zshrc", "status": "applied",
     "reason": "", "ts": "2026-10-19T10:00:00Z"}

Entries are appended and fsynced after each action completes, before the next
one starts. On resume, actions whose latest entry is ``applied`` or
``skipped`` are not run again.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Set

from .models import COMPLETED_STATUSES, ActionOutcome, ActionStatus

logger = logging.getLogger(__name__)


class ResumabilityLog:
    """Append-only log for one restore run, keyed by snapshot hash."""

    def __init__(self, state_dir: Path, snapshot_hash: str) -> None:
        self.snapshot_hash = snapshot_hash
        self.path = Path(state_dir) / "restore-logs" / f"{snapshot_hash[:16]}.jsonl"
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ResumabilityLog({self.path})"

    def exists(self) -> bool:
        return self.path.is_file()

    def start(self) -> None:
        """Begin a new run, dropping entries of any earlier run."""
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("")

    def append(self, outcome: ActionOutcome) -> None:
        """Durably record ``outcome``. Safe to call from several threads."""
        entry = {
            "snapshot": self.snapshot_hash,
            "action": outcome.action_id,
            "status": outcome.status.value,
            "reason": outcome.reason,
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        line = json.dumps(entry, sort_keys=True) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def entries(self) -> Dict[str, ActionStatus]:
        """Return the latest logged status per action id.

        A torn last line (crash mid-write) and entries for other snapshots are
        ignored.
        """
        statuses: Dict[str, ActionStatus] = {}
        if not self.path.is_file():
            return statuses
        with open(self.path, "r") as f:
            for number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    status = ActionStatus(entry["status"])
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.warning("Ignoring unreadable line %d in %s", number, self.path)
                    continue
                if entry.get("snapshot") != self.snapshot_hash:
                    continue
                statuses[entry["action"]] = status
        return statuses

    def completed(self) -> Set[str]:
        """Action ids that a resumed run must skip."""
        return {action for action, status in self.entries().items() if status in COMPLETED_STATUSES}

    def discard(self) -> None:
        """Remove the log after a successful run."""
        with self._lock:
            if self.path.exists():
                self.path.unlink()
                logger.debug("Removed resumability log %s", self.path)
