from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Protocol


def parse_id_file(lines: Iterable[str]) -> list[tuple[str, int]]:
    """Parse name:x:id:... records from an /etc/passwd or /etc/group style file."""
    out: list[tuple[str, int]] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if not line or line.startswith("#"):
            continue
        fields = line.split(":")
        if len(fields) < 3:
            raise ValueError(f"malformed account line: {line!r}")
        out.append((fields[0], int(fields[2])))
    return out


class AccountDirectory(Protocol):
    def has_uid(self, uid: int) -> bool:
        raise NotImplementedError

    def has_gid(self, gid: int) -> bool:
        raise NotImplementedError

    def uid_for_user(self, name: str) -> Optional[int]:
        raise NotImplementedError

    def gid_for_group(self, name: str) -> Optional[int]:
        raise NotImplementedError

    def group_name(self, gid: int) -> Optional[str]:
        raise NotImplementedError


class InMemoryAccountDirectory:
    def __init__(self, *, users: dict[str, int], groups: dict[str, int]) -> None:
        self._users = dict(users)
        self._groups = dict(groups)
        self._uids = frozenset(self._users.values())
        self._names_by_gid: dict[int, str] = {}
        for name, gid in self._groups.items():
            self._names_by_gid.setdefault(gid, name)

    def has_uid(self, uid: int) -> bool:
        return uid in self._uids

    def has_gid(self, gid: int) -> bool:
        return gid in self._names_by_gid

    def uid_for_user(self, name: str) -> Optional[int]:
        return self._users.get(name)

    def gid_for_group(self, name: str) -> Optional[int]:
        return self._groups.get(name)

    def group_name(self, gid: int) -> Optional[str]:
        return self._names_by_gid.get(gid)


class PasswdAccountDirectory(InMemoryAccountDirectory):
    """Account directory backed by a host's /etc/passwd and /etc/group."""

    def __init__(self, *, root: Path) -> None:
        users: dict[str, int] = {}
        groups: dict[str, int] = {}
        with (root / "etc" / "passwd").open("r", encoding="utf-8") as f:
            for name, uid in parse_id_file(f):
                users.setdefault(name, uid)
        with (root / "etc" / "group").open("r", encoding="utf-8") as f:
            for name, gid in parse_id_file(f):
                groups.setdefault(name, gid)
        super().__init__(users=users, groups=groups)
