from __future__ import annotations

import json
import threading
from typing import Protocol, TextIO

from hdi.model import ManifestEntry
from hdi.store.manifest_store import ManifestStore, sort_entries


class ManifestSink(Protocol):
    def begin(self, os_version: str) -> None:
        raise NotImplementedError

    def emit(self, entry: ManifestEntry) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError


class JsonLinesSink:
    """Writes one JSON record per line, ordered by (path, os_version), on commit.

    Nothing reaches the stream unless the run completes.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._pending: list[ManifestEntry] = []
        self.count = 0

    def begin(self, os_version: str) -> None:
        pass

    def emit(self, entry: ManifestEntry) -> None:
        with self._lock:
            self._pending.append(entry)

    def commit(self) -> None:
        with self._lock:
            pending = sort_entries(self._pending)
            self._pending = []
            for entry in pending:
                self._stream.write(json.dumps(entry.to_dict(), ensure_ascii=False, sort_keys=True) + "\n")
            self._stream.flush()
            self.count += len(pending)


class StoreSink:
    """Buffers entries per OS version and replaces them in the store on commit."""

    def __init__(self, store: ManifestStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._buffers: dict[str, list[ManifestEntry]] = {}

    def begin(self, os_version: str) -> None:
        with self._lock:
            self._buffers.setdefault(os_version, [])

    def emit(self, entry: ManifestEntry) -> None:
        with self._lock:
            self._buffers.setdefault(entry.os_version, []).append(entry)

    def commit(self) -> None:
        with self._lock:
            buffers = {k: list(v) for k, v in self._buffers.items()}
            self._buffers.clear()
        for os_version in sorted(buffers):
            self._store.replace_version(os_version=os_version, entries=buffers[os_version])
