from __future__ import annotations

import bisect
from typing import Iterable, Iterator, Optional

from hdi.model import ManifestEntry
from hdi.store.manifest_store import sort_entries


class ManifestSnapshot:
    """Immutable, sorted view of manifest entries for one verification run.

    Lookups are binary searches on (path, os_version); every hit is recorded
    so unseen entries can be reported afterwards.
    """

    def __init__(self, entries: Iterable[ManifestEntry]) -> None:
        self._entries = sort_entries(entries)
        self._keys = [e.key for e in self._entries]
        for prev, cur in zip(self._keys, self._keys[1:]):
            if prev == cur:
                raise ValueError(f"duplicate manifest entry: {cur[0]} ({cur[1]})")
        self._seen = bytearray(len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, path: str, os_version: str) -> Optional[int]:
        key = (path, os_version)
        idx = bisect.bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            return idx
        return None

    def entry(self, index: int) -> ManifestEntry:
        return self._entries[index]

    def mark_seen(self, index: int) -> None:
        self._seen[index] = 1

    def is_seen(self, index: int) -> bool:
        return bool(self._seen[index])

    def unseen(self, os_version: str) -> Iterator[ManifestEntry]:
        for idx, e in enumerate(self._entries):
            if not self._seen[idx] and e.os_version == os_version:
                yield e
