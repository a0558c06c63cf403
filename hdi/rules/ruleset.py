from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from hdi.config import OperatingSystemVersion
from hdi.errors import DuplicateRuleEntry, MalformedRuleLine, OverlappingRuleEntry
from hdi.model import FileType


class RuleKind(Enum):
    CONFIG = "config"
    NEVER = "never"
    NO_RECURSE = "no_recurse"
    OPTIONAL = "optional"
    PRELINK = "prelink"
    USER = "user"

    @property
    def file_extension(self) -> str:
        return _FILE_EXTENSIONS[self]


_FILE_EXTENSIONS = {
    RuleKind.CONFIG: ".configs.txt",
    RuleKind.NEVER: ".nevers.txt",
    RuleKind.NO_RECURSE: ".no_recurses.txt",
    RuleKind.OPTIONAL: ".optionals.txt",
    RuleKind.PRELINK: ".prelinks.txt",
    RuleKind.USER: ".users.txt",
}

# Lists that decide a FileType, highest priority first.
_TYPE_LISTS: tuple[tuple[RuleKind, FileType], ...] = (
    (RuleKind.USER, FileType.USER),
    (RuleKind.NO_RECURSE, FileType.NO_RECURSE),
    (RuleKind.CONFIG, FileType.CONFIG),
    (RuleKind.PRELINK, FileType.PRELINK),
)


def parse_rule_lines(lines: Iterable[str], *, source: str) -> list[str]:
    """Parse one list: blank and '#' lines are skipped, path lines are kept untrimmed."""
    out: list[str] = []
    seen: set[str] = set()
    for lineno, line in enumerate(lines, start=1):
        line = line.rstrip("\r\n")
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        if not line.startswith("/"):
            raise MalformedRuleLine(f"{source}:{lineno}: path must be absolute: {line!r}")
        if line in seen:
            raise DuplicateRuleEntry(list_path=source, path=line)
        seen.add(line)
        out.append(line)
    return out


@dataclass
class ClassificationRuleSet:
    os_version: str
    lists: dict[RuleKind, frozenset[str]]
    _matched: dict[RuleKind, set[str]] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        for kind in RuleKind:
            self.lists.setdefault(kind, frozenset())
            self._matched.setdefault(kind, set())
        self._check_overlaps()

    def _check_overlaps(self) -> None:
        exclusive = [RuleKind.NEVER] + [kind for kind, _ in _TYPE_LISTS]
        owners: dict[str, list[str]] = {}
        for kind in exclusive:
            for p in self.lists[kind]:
                owners.setdefault(p, []).append(kind.value)
        for p in sorted(owners):
            kinds = owners[p]
            if len(kinds) > 1:
                raise OverlappingRuleEntry(os_version=self.os_version, path=p, kinds=kinds)
        never_optional = sorted(self.lists[RuleKind.NEVER] & self.lists[RuleKind.OPTIONAL])
        if never_optional:
            raise OverlappingRuleEntry(
                os_version=self.os_version,
                path=never_optional[0],
                kinds=(RuleKind.NEVER.value, RuleKind.OPTIONAL.value),
            )

    def contains(self, kind: RuleKind, path: str) -> bool:
        """Check list membership, flagging the entry as matched."""
        if path not in self.lists[kind]:
            return False
        with self._lock:
            self._matched[kind].add(path)
        return True

    def classify(self, path: str) -> FileType:
        for kind, file_type in _TYPE_LISTS:
            if self.contains(kind, path):
                return file_type
        return FileType.SYSTEM

    def is_never(self, path: str) -> bool:
        return self.contains(RuleKind.NEVER, path)

    def is_optional(self, path: str) -> bool:
        return self.contains(RuleKind.OPTIONAL, path)

    def unmatched(self, kind: RuleKind) -> list[str]:
        with self._lock:
            return sorted(self.lists[kind] - self._matched[kind])


def load_rule_set(*, template_root: Path, os_version: OperatingSystemVersion) -> ClassificationRuleSet:
    lists: dict[RuleKind, frozenset[str]] = {}
    for kind in RuleKind:
        if kind is RuleKind.PRELINK and not os_version.prelink:
            continue
        path = os_version.rule_list_path(template_root, kind.file_extension)
        with path.open("r", encoding="utf-8") as f:
            lists[kind] = frozenset(parse_rule_lines(f, source=path.as_posix()))
    return ClassificationRuleSet(os_version=os_version.key, lists=lists)


class RuleSetCache:
    """Loads each OS version's rule set once per run."""

    def __init__(self, *, template_root: Path) -> None:
        self._template_root = template_root
        self._lock = threading.Lock()
        self._cache: dict[str, ClassificationRuleSet] = {}

    def get(self, os_version: OperatingSystemVersion) -> ClassificationRuleSet:
        with self._lock:
            rules: Optional[ClassificationRuleSet] = self._cache.get(os_version.key)
            if rules is None:
                rules = load_rule_set(template_root=self._template_root, os_version=os_version)
                self._cache[os_version.key] = rules
            return rules
