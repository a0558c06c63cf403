from __future__ import annotations

import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from hdi.digest import is_sha256_hex

SYMLINK_ALTERNATIVE_SEPARATOR = "|"
HOSTNAME_PLACEHOLDER = "$h"


class ContentCheck(Enum):
    NONE = "NONE"
    DIRECT = "DIRECT"
    UNPRELINK = "UNPRELINK"


class DirectoryPolicy(Enum):
    RECURSE = "RECURSE"
    USER = "USER"
    NO_RECURSE = "NO_RECURSE"


class FileType(Enum):
    SYSTEM = "system"
    CONFIG = "config"
    USER = "user"
    NO_RECURSE = "no_recurse"
    PRELINK = "prelink"

    @property
    def content_check(self) -> ContentCheck:
        return _CONTENT_CHECKS[self]

    @property
    def directory_policy(self) -> DirectoryPolicy:
        return _DIRECTORY_POLICIES[self]

    @property
    def stores_size(self) -> bool:
        return self is not FileType.CONFIG

    @property
    def is_boundary(self) -> bool:
        return self.directory_policy is not DirectoryPolicy.RECURSE


_CONTENT_CHECKS = {
    FileType.SYSTEM: ContentCheck.DIRECT,
    FileType.PRELINK: ContentCheck.UNPRELINK,
    FileType.CONFIG: ContentCheck.NONE,
    FileType.USER: ContentCheck.NONE,
    FileType.NO_RECURSE: ContentCheck.NONE,
}

_DIRECTORY_POLICIES = {
    FileType.SYSTEM: DirectoryPolicy.RECURSE,
    FileType.PRELINK: DirectoryPolicy.RECURSE,
    FileType.CONFIG: DirectoryPolicy.RECURSE,
    FileType.USER: DirectoryPolicy.USER,
    FileType.NO_RECURSE: DirectoryPolicy.NO_RECURSE,
}


class DiscrepancyKind(Enum):
    MISSING = "MISSING"
    EXTRA = "EXTRA"
    OWNER_MISMATCH = "OWNER_MISMATCH"
    GROUP_MISMATCH = "GROUP_MISMATCH"
    TYPE = "TYPE"
    PERMISSIONS = "PERMISSIONS"
    SYMLINK = "SYMLINK"
    LENGTH = "LENGTH"
    DIGEST = "DIGEST"
    HIDDEN = "HIDDEN"
    NO_OWNER = "NO_OWNER"
    NO_GROUP = "NO_GROUP"
    SETUID = "SETUID"
    BIG_DIRECTORY = "BIG_DIRECTORY"


def _require_str(obj: Any, *, path: str) -> str:
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string")
    return obj


def _require_int(obj: Any, *, path: str) -> int:
    if not isinstance(obj, int) or isinstance(obj, bool):
        raise ValueError(f"{path} must be an integer")
    return obj


def _optional_int(obj: Any, *, path: str) -> Optional[int]:
    if obj is None:
        return None
    return _require_int(obj, path=path)


@dataclass(frozen=True)
class ManifestEntry:
    os_version: str
    path: str
    type: FileType
    mode: int
    owner: str
    group: str
    optional: bool = False
    size: Optional[int] = None
    sha256: Optional[str] = None
    symlink_target: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.path, self.os_version)

    @property
    def is_regular_file(self) -> bool:
        return stat.S_ISREG(self.mode)

    def symlink_alternatives(self) -> list[str]:
        if self.symlink_target is None:
            return []
        return self.symlink_target.split(SYMLINK_ALTERNATIVE_SEPARATOR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "os_version": self.os_version,
            "path": self.path,
            "type": self.type.value,
            "mode": self.mode,
            "owner": self.owner,
            "group": self.group,
            "optional": self.optional,
            "size": self.size,
            "sha256": self.sha256,
            "symlink_target": self.symlink_target,
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "ManifestEntry":
        if not isinstance(obj, dict):
            raise ValueError("manifest entry must be an object")
        path = _require_str(obj.get("path"), path="path")
        if not path.startswith("/"):
            raise ValueError(f"path must be absolute: {path}")
        try:
            file_type = FileType(obj.get("type"))
        except ValueError as e:
            raise ValueError(f"type is invalid for {path}: {obj.get('type')!r}") from e
        optional = obj.get("optional", False)
        if not isinstance(optional, bool):
            raise ValueError(f"optional must be a boolean for {path}")
        sha256 = obj.get("sha256")
        if sha256 is not None and not is_sha256_hex(sha256):
            raise ValueError(f"sha256 must be 64 lowercase hex characters for {path}")
        symlink_target = obj.get("symlink_target")
        if symlink_target is not None and not isinstance(symlink_target, str):
            raise ValueError(f"symlink_target must be a string for {path}")
        return cls(
            os_version=_require_str(obj.get("os_version"), path="os_version"),
            path=path,
            type=file_type,
            mode=_require_int(obj.get("mode"), path="mode"),
            owner=_require_str(obj.get("owner"), path="owner"),
            group=_require_str(obj.get("group"), path="group"),
            optional=optional,
            size=_optional_int(obj.get("size"), path="size"),
            sha256=sha256,
            symlink_target=symlink_target,
        )


@dataclass(frozen=True)
class DiscrepancyRecord:
    kind: DiscrepancyKind
    path: str
    observed: Optional[str] = None
    expected: Optional[str] = None
    action: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "observed": self.observed,
            "expected": self.expected,
            "action": self.action,
        }


def _format_timestamp(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


@dataclass
class ScanStats:
    start_time: float = 0.0
    end_time: float = 0.0
    scanned: int = 0
    system_count: int = 0
    user_count: int = 0
    no_recurse_count: int = 0
    prelink_files: int = 0
    prelink_bytes: int = 0
    sha256_files: int = 0
    sha256_bytes: int = 0

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    def counts_consistent(self) -> bool:
        return self.scanned == self.system_count + self.user_count + self.no_recurse_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": _format_timestamp(self.start_time),
            "end_time": _format_timestamp(self.end_time),
            "scanned": self.scanned,
            "system_count": self.system_count,
            "user_count": self.user_count,
            "no_recurse_count": self.no_recurse_count,
            "prelink_files": self.prelink_files,
            "prelink_bytes": self.prelink_bytes,
            "sha256_files": self.sha256_files,
            "sha256_bytes": self.sha256_bytes,
        }
