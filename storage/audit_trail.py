"""Append-only audit trail of healing actions (one JSON object per line)."""

from __future__ import annotations

import json
import os
from pathlib import Path
import threading
from typing import Iterable

from core.logging import logger as LOGGER
from core.models import HealingAction, IssueCategory


_IndexKey = tuple[str, IssueCategory]


class AuditTrail:
    """Durable, append-only record of every attempted action.

    Each append is flushed and fsynced before returning so an action's
    outcome is on disk before the run can report on it. Readers tolerate a
    partially written final line or a malformed row.

    Only the latest action per (node, category) is kept in memory; full
    history queries read the file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._latest: dict[_IndexKey, HealingAction] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def append(self, action: HealingAction) -> None:
        line = json.dumps(action.to_record(), sort_keys=True)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as file:
                file.write(line + "\n")
                file.flush()
                os.fsync(file.fileno())
            if self._latest is not None:
                _index(self._latest, action)
        LOGGER.debug("[Audit] Recorded %s (%s on %s)", action.action_id, action.method, action.node)

    def actions(self) -> list[HealingAction]:
        with self._lock:
            return list(self._read())

    def get(self, action_id: str) -> HealingAction | None:
        for action in self.actions():
            if action.action_id == action_id:
                return action
        return None

    def latest_for(self, node: str, category: IssueCategory) -> HealingAction | None:
        """Most recent action for a node and category, compensations included."""

        with self._lock:
            if self._latest is None:
                latest: dict[_IndexKey, HealingAction] = {}
                for action in self._read():
                    _index(latest, action)
                self._latest = latest
            return self._latest.get((node.lower(), category))

    def since(self, timestamp: float) -> list[HealingAction]:
        return [action for action in self.actions() if action.timestamp >= timestamp]

    def _read(self) -> Iterable[HealingAction]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as file:
            for line_number, line in enumerate(file, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield HealingAction.from_record(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as exc:
                    LOGGER.warning(
                        "[Audit] Skipping unreadable row %d in %s: %s",
                        line_number,
                        self._path,
                        exc,
                    )


def _index(latest: dict[_IndexKey, HealingAction], action: HealingAction) -> None:
    key = (action.node.lower(), action.category)
    current = latest.get(key)
    if current is None or action.timestamp >= current.timestamp:
        latest[key] = action
