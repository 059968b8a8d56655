"""Per-action rollback context records keyed by action id."""

from __future__ import annotations

import json
import os
from pathlib import Path
import tempfile
from typing import Any, Mapping


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            json.dump(payload, file, indent=2, sort_keys=True)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RollbackStore:
    """Small JSON record per action describing how to compensate it."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    def save(self, action_id: str, context: Mapping[str, Any]) -> Path:
        path = self._path(action_id)
        atomic_write_json(path, {"action_id": action_id, **dict(context)})
        return path

    def load(self, action_id: str) -> dict[str, Any] | None:
        path = self._path(action_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _path(self, action_id: str) -> Path:
        safe = "".join(ch for ch in action_id if ch.isalnum() or ch in "-_")
        return self._base_dir / f"{safe}.json"
