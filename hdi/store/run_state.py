from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def _parse_rfc3339(dt: str) -> datetime:
    if dt.endswith("Z"):
        dt = dt[:-1] + "+00:00"
    return datetime.fromisoformat(dt)


def _format_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RunState:
    last_run: Optional[datetime]


class RunStateStore:
    """Persists when the last verification run started."""

    def __init__(self, *, path: Path) -> None:
        self._path = path

    def read(self) -> RunState:
        if not self._path.exists():
            return RunState(last_run=None)
        obj = json.loads(self._path.read_text(encoding="utf-8"))
        last_run = obj.get("last_run")
        if last_run is None:
            return RunState(last_run=None)
        if not isinstance(last_run, str):
            raise ValueError("last_run must be a string or null")
        return RunState(last_run=_parse_rfc3339(last_run))

    def write(self, state: RunState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        value = None if state.last_run is None else _format_datetime(state.last_run)
        tmp.write_text(json.dumps({"last_run": value}, indent=2) + "\n", encoding="utf-8")
        tmp.replace(self._path)
