import stat
import unittest

from hdi.model import FileType, ManifestEntry
from hdi.verifier.snapshot import ManifestSnapshot


def _entry(path: str, os_version: str = "v1", *, optional: bool = False) -> ManifestEntry:
    return ManifestEntry(
        os_version=os_version,
        path=path,
        type=FileType.SYSTEM,
        mode=stat.S_IFDIR | 0o755,
        owner="root",
        group="root",
        optional=optional,
    )


class TestManifestSnapshot(unittest.TestCase):
    def test_find_and_seen_tracking(self) -> None:
        snapshot = ManifestSnapshot([_entry("/etc"), _entry("/"), _entry("/etc", "v2"), _entry("/bin")])
        self.assertEqual(len(snapshot), 4)

        idx = snapshot.find("/etc", "v1")
        assert idx is not None
        self.assertEqual(snapshot.entry(idx).key, ("/etc", "v1"))
        self.assertIsNone(snapshot.find("/etc", "v3"))
        self.assertIsNone(snapshot.find("/usr", "v1"))

        self.assertFalse(snapshot.is_seen(idx))
        snapshot.mark_seen(idx)
        self.assertTrue(snapshot.is_seen(idx))
        self.assertEqual([e.path for e in snapshot.unseen("v1")], ["/", "/bin"])
        self.assertEqual([e.path for e in snapshot.unseen("v2")], ["/etc"])

    def test_duplicates_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ManifestSnapshot([_entry("/etc"), _entry("/etc", optional=True)])


if __name__ == "__main__":
    unittest.main()
