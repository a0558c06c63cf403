from __future__ import annotations

import threading
from pathlib import Path

from hdi.accounts.directory import parse_id_file
from hdi.errors import TemplateDataError


class TemplateNameResolver:
    """Resolves numeric ids to names from one template's own /etc/passwd and /etc/group.

    Both files are read lazily on first use and memoized; the first name listed
    for an id wins.
    """

    def __init__(self, *, template_dir: Path) -> None:
        self._template_dir = template_dir
        self._lock = threading.Lock()
        self._usernames: dict[int, str] | None = None
        self._groupnames: dict[int, str] | None = None

    def _load(self, name: str) -> dict[int, str]:
        out: dict[int, str] = {}
        with (self._template_dir / "etc" / name).open("r", encoding="utf-8") as f:
            for entry_name, entry_id in parse_id_file(f):
                out.setdefault(entry_id, entry_name)
        return out

    def username(self, uid: int, *, path: str) -> str:
        with self._lock:
            if self._usernames is None:
                self._usernames = self._load("passwd")
            username = self._usernames.get(uid)
        if username is None:
            raise TemplateDataError(f"Unable to find username: {uid} for file {path}")
        return username

    def groupname(self, gid: int, *, path: str) -> str:
        with self._lock:
            if self._groupnames is None:
                self._groupnames = self._load("group")
            groupname = self._groupnames.get(gid)
        if groupname is None:
            raise TemplateDataError(f"Unable to find group name: {gid} for file {path}")
        return groupname
