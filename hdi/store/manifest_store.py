from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from hdi.model import FileType, ManifestEntry


def sort_entries(entries: Iterable[ManifestEntry]) -> tuple[ManifestEntry, ...]:
    return tuple(sorted(entries, key=lambda e: e.key))


def _check_entries(os_version: str, entries: Iterable[ManifestEntry]) -> tuple[ManifestEntry, ...]:
    out = sort_entries(entries)
    prev = None
    for e in out:
        if e.os_version != os_version:
            raise ValueError(f"entry for {e.os_version} cannot be stored under {os_version}: {e.path}")
        if prev is not None and prev.key == e.key:
            raise ValueError(f"duplicate manifest entry: {e.path} ({os_version})")
        prev = e
    return out


class ManifestStore(Protocol):
    def replace_version(self, *, os_version: str, entries: Iterable[ManifestEntry]) -> None:
        raise NotImplementedError

    def load_version(self, *, os_version: str) -> tuple[ManifestEntry, ...]:
        raise NotImplementedError


class InMemoryManifestStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[ManifestEntry, ...]] = {}

    def replace_version(self, *, os_version: str, entries: Iterable[ManifestEntry]) -> None:
        checked = _check_entries(os_version, entries)
        with self._lock:
            self._data[os_version] = checked

    def load_version(self, *, os_version: str) -> tuple[ManifestEntry, ...]:
        with self._lock:
            return self._data.get(os_version, ())


class FileManifestStore:
    """One JSON Lines file per OS version, replaced atomically by rename."""

    def __init__(self, *, base_dir: Path) -> None:
        self._base_dir = base_dir

    def _path_for(self, os_version: str) -> Path:
        if not os_version or "/" in os_version or "\\" in os_version or os_version.startswith("."):
            raise ValueError(f"os_version must be a simple token: {os_version!r}")
        return self._base_dir / f"{os_version}.jsonl"

    def replace_version(self, *, os_version: str, entries: Iterable[ManifestEntry]) -> None:
        checked = _check_entries(os_version, entries)
        path = self._path_for(os_version)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for e in checked:
                f.write(json.dumps(e.to_dict(), ensure_ascii=False, sort_keys=True) + "\n")
        tmp.replace(path)

    def load_version(self, *, os_version: str) -> tuple[ManifestEntry, ...]:
        path = self._path_for(os_version)
        if not path.exists():
            return ()
        out: list[ManifestEntry] = []
        with path.open("r", encoding="utf-8") as f:
            for idx, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    out.append(ManifestEntry.from_dict(json.loads(line)))
                except ValueError as e:
                    raise ValueError(f"{path}:{idx}: {e}") from e
        return sort_entries(out)


@dataclass(frozen=True)
class PostgresManifestStoreConfig:
    dsn: str


_COLUMNS = (
    "os_version",
    "path",
    "optional",
    "type",
    "mode",
    "linux_account",
    "linux_group",
    "size",
    "file_sha256",
    "symlink_target",
)


class PostgresManifestStore:
    def __init__(self, *, config: PostgresManifestStoreConfig) -> None:
        self._config = config

    def _require_psycopg(self):
        try:
            import psycopg  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError("psycopg is required for PostgresManifestStore (pip install hdi[postgres])") from e
        return psycopg

    def migrate(self) -> None:
        from hdi.store.migrate import apply_postgres_migrations

        apply_postgres_migrations(dsn=self._config.dsn)

    def replace_version(self, *, os_version: str, entries: Iterable[ManifestEntry]) -> None:
        checked = _check_entries(os_version, entries)
        psycopg = self._require_psycopg()
        rows = [
            (
                e.os_version,
                e.path,
                e.optional,
                e.type.value,
                e.mode,
                e.owner,
                e.group,
                e.size,
                e.sha256,
                e.symlink_target,
            )
            for e in checked
        ]
        placeholders = ", ".join(["%s"] * len(_COLUMNS))
        # psycopg commits the connection block as one transaction, or rolls it back on error.
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM hdi_distro_files WHERE os_version = %s", (os_version,))
                if rows:
                    cur.executemany(
                        f"INSERT INTO hdi_distro_files({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                        rows,
                    )

    def load_version(self, *, os_version: str) -> tuple[ManifestEntry, ...]:
        psycopg = self._require_psycopg()
        out: list[ManifestEntry] = []
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM hdi_distro_files WHERE os_version = %s ORDER BY path",
                    (os_version,),
                )
                for row in cur.fetchall():
                    out.append(
                        ManifestEntry(
                            os_version=str(row[0]),
                            path=str(row[1]),
                            optional=bool(row[2]),
                            type=FileType(row[3]),
                            mode=int(row[4]),
                            owner=str(row[5]),
                            group=str(row[6]),
                            size=None if row[7] is None else int(row[7]),
                            sha256=row[8],
                            symlink_target=row[9],
                        )
                    )
        return sort_entries(out)
