import stat
import tempfile
import unittest
from pathlib import Path

from hdi.model import FileType, ManifestEntry
from hdi.store.manifest_store import FileManifestStore, InMemoryManifestStore


def _entries(os_version: str) -> list[ManifestEntry]:
    return [
        ManifestEntry(
            os_version=os_version,
            path="/etc/motd",
            type=FileType.CONFIG,
            mode=stat.S_IFREG | 0o644,
            owner="root",
            group="root",
            optional=True,
        ),
        ManifestEntry(
            os_version=os_version,
            path="/bin/ls",
            type=FileType.SYSTEM,
            mode=stat.S_IFREG | 0o755,
            owner="root",
            group="root",
            size=3,
            sha256="a" * 64,
        ),
        ManifestEntry(
            os_version=os_version,
            path="/",
            type=FileType.SYSTEM,
            mode=stat.S_IFDIR | 0o755,
            owner="root",
            group="root",
        ),
        ManifestEntry(
            os_version=os_version,
            path="/bin/sh",
            type=FileType.SYSTEM,
            mode=stat.S_IFLNK | 0o777,
            owner="root",
            group="root",
            symlink_target="bash|dash",
        ),
    ]


class TestManifestStores(unittest.TestCase):
    def _check_store(self, store) -> None:
        store.replace_version(os_version="v1", entries=_entries("v1"))
        store.replace_version(os_version="v2", entries=_entries("v2")[:1])

        loaded = store.load_version(os_version="v1")
        self.assertEqual([e.path for e in loaded], ["/", "/bin/ls", "/bin/sh", "/etc/motd"])
        self.assertEqual(set(loaded), set(_entries("v1")))
        self.assertEqual(len(store.load_version(os_version="v2")), 1)
        self.assertEqual(store.load_version(os_version="v3"), ())

        store.replace_version(os_version="v1", entries=[])
        self.assertEqual(store.load_version(os_version="v1"), ())
        self.assertEqual(len(store.load_version(os_version="v2")), 1)

    def test_in_memory_store(self) -> None:
        self._check_store(InMemoryManifestStore())

    def test_file_store(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = FileManifestStore(base_dir=Path(td) / "manifests")
            self._check_store(store)
            self.assertEqual(sorted(p.name for p in (Path(td) / "manifests").iterdir()), ["v1.jsonl", "v2.jsonl"])

    def test_wrong_os_version_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            InMemoryManifestStore().replace_version(os_version="v1", entries=_entries("v2"))

    def test_duplicate_entries_are_rejected(self) -> None:
        store = InMemoryManifestStore()
        entries = _entries("v1")
        with self.assertRaises(ValueError):
            store.replace_version(os_version="v1", entries=entries + entries[:1])
        self.assertEqual(store.load_version(os_version="v1"), ())

    def test_file_store_rejects_path_like_versions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = FileManifestStore(base_dir=Path(td))
            for bad in ("", "../x", "a/b", ".hidden"):
                with self.assertRaises(ValueError):
                    store.load_version(os_version=bad)

    def test_file_store_reports_corrupt_line(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            (base / "v1.jsonl").write_text('{"path": "relative"}\n', encoding="utf-8")
            with self.assertRaises(ValueError) as cm:
                FileManifestStore(base_dir=base).load_version(os_version="v1")
            self.assertIn("v1.jsonl:1", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
