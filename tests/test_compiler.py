import hashlib
import io
import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from hdi.compiler.compiler import CompileContext, ManifestCompiler, format_unmatched_warnings
from hdi.compiler.sink import JsonLinesSink, StoreSink
from hdi.digest import hash_file
from hdi.errors import NeverPathsFound, TemplateDataError
from hdi.model import FileType
from hdi.prelink import PrelinkError
from hdi.rules.ruleset import RuleKind
from hdi.store.manifest_store import InMemoryManifestStore
from tests.distro_fixtures import (
    LIBFOO_BODY,
    LS_BYTES,
    RULE_LISTS,
    TEST_OS_VERSION,
    FailingUnprelinker,
    StripBaseUnprelinker,
    build_template,
    compile_into_store,
)


def _compile_jsonl(template_root: Path, *, threads: int) -> str:
    out = io.StringIO()
    ctx = CompileContext(template_root=template_root, unprelinker=StripBaseUnprelinker(), threads=threads)
    ManifestCompiler(ctx).compile([TEST_OS_VERSION], JsonLinesSink(out))
    return out.getvalue()


class TestManifestCompiler(unittest.TestCase):
    def test_entries_are_classified_and_hashed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            build_template(root)
            store = compile_into_store(root)
            entries = {e.path: e for e in store.load_version(os_version=TEST_OS_VERSION.key)}

            self.assertIn("/", entries)
            self.assertTrue(stat.S_ISDIR(entries["/"].mode))

            ls = entries["/bin/ls"]
            self.assertEqual(ls.type, FileType.SYSTEM)
            self.assertEqual(ls.size, len(LS_BYTES))
            self.assertEqual(ls.sha256, hashlib.sha256(LS_BYTES).hexdigest())
            self.assertEqual(ls.owner, "tester")
            self.assertEqual(stat.S_IMODE(ls.mode), 0o755)

            motd = entries["/etc/motd"]
            self.assertEqual(motd.type, FileType.CONFIG)
            self.assertIsNone(motd.size)
            self.assertIsNone(motd.sha256)

            self.assertEqual(entries["/bin/sh"].symlink_target, "bash")
            self.assertIsNone(entries["/bin/sh"].sha256)

            self.assertEqual(entries["/home"].type, FileType.USER)
            self.assertNotIn("/home/alice", entries)
            self.assertEqual(entries["/var/cache"].type, FileType.NO_RECURSE)
            self.assertNotIn("/var/cache/junk.bin", entries)

            self.assertTrue(entries["/opt/optional.txt"].optional)
            self.assertFalse(entries["/etc/hosts"].optional)
            self.assertIn("/etc/host-$h.conf", entries)

    def test_prelinked_files_record_unprelinked_digest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root_a = Path(td) / "a"
            root_b = Path(td) / "b"
            build_template(root_a, base_address="0x1000")
            build_template(root_b, base_address="0x7f00dead0000")
            unprelinker = StripBaseUnprelinker()
            a = {e.path: e for e in compile_into_store(root_a, unprelinker=unprelinker).load_version(os_version=TEST_OS_VERSION.key)}
            b = {e.path: e for e in compile_into_store(root_b).load_version(os_version=TEST_OS_VERSION.key)}

            lib_a = a["/usr/lib/libfoo.so"]
            self.assertEqual(lib_a.type, FileType.PRELINK)
            self.assertEqual(lib_a.size, len(LIBFOO_BODY))
            self.assertEqual(lib_a.sha256, hashlib.sha256(LIBFOO_BODY).hexdigest())
            self.assertEqual(lib_a.sha256, b["/usr/lib/libfoo.so"].sha256)
            self.assertEqual(unprelinker.calls, [("/usr/lib/libfoo.so", TEST_OS_VERSION.template_dir(root_a))])

    def test_output_is_identical_across_thread_counts(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            build_template(root)
            one = _compile_jsonl(root, threads=1)
            eight = _compile_jsonl(root, threads=8)
            self.assertEqual(one, eight)

            lines = one.splitlines()
            paths = [json.loads(line)["path"] for line in lines]
            self.assertEqual(paths, sorted(paths))
            self.assertEqual(len(paths), len(set(paths)))

    def test_existing_never_paths_abort_before_any_output(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            lists = dict(RULE_LISTS)
            lists[".nevers.txt"] = ["/etc/shadow-", "/root/.bash_history", "/etc/not-present"]
            tdir = build_template(root, lists=lists)
            (tdir / "etc" / "shadow-").write_text("secret\n", encoding="utf-8")
            (tdir / "root").mkdir()
            os.symlink("/nonexistent", tdir / "root" / ".bash_history")

            store = InMemoryManifestStore()
            ctx = CompileContext(template_root=root, unprelinker=StripBaseUnprelinker(), threads=4)
            with self.assertRaises(NeverPathsFound) as cm:
                ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(store))

            self.assertEqual(
                cm.exception.paths,
                tuple(sorted([str(tdir / "etc" / "shadow-"), str(tdir / "root" / ".bash_history")])),
            )
            self.assertEqual(store.load_version(os_version=TEST_OS_VERSION.key), ())

    def test_unknown_owner_aborts_and_commits_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            tdir = build_template(root)
            (tdir / "etc" / "passwd").write_text("nobody:x:65534:65534::/:/sbin/nologin\n", encoding="utf-8")

            store = InMemoryManifestStore()
            out = io.StringIO()
            ctx = CompileContext(template_root=root, unprelinker=StripBaseUnprelinker(), threads=8)
            with self.assertRaises(TemplateDataError):
                ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(store))
            with self.assertRaises(TemplateDataError):
                ManifestCompiler(ctx).compile([TEST_OS_VERSION], JsonLinesSink(out))

            self.assertEqual(store.load_version(os_version=TEST_OS_VERSION.key), ())
            self.assertEqual(out.getvalue(), "")

    def test_short_read_aborts_and_commits_nothing(self) -> None:
        def short_read(path: Path, *, expected_length=None):
            # The file shrank between stat and read.
            return hash_file(path, expected_length=expected_length + 1)

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            build_template(root)
            store = InMemoryManifestStore()
            out = io.StringIO()
            ctx = CompileContext(template_root=root, unprelinker=StripBaseUnprelinker(), threads=4)
            with patch("hdi.compiler.compiler.hash_file", side_effect=short_read):
                with self.assertRaises(OSError) as err:
                    ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(store))
                with self.assertRaises(OSError):
                    ManifestCompiler(ctx).compile([TEST_OS_VERSION], JsonLinesSink(out))

            self.assertIn("readLen != fileLen", str(err.exception))
            self.assertEqual(store.load_version(os_version=TEST_OS_VERSION.key), ())
            self.assertEqual(out.getvalue(), "")

    def test_unreadable_template_file_aborts_and_commits_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            build_template(root)
            store = InMemoryManifestStore()
            ctx = CompileContext(template_root=root, unprelinker=StripBaseUnprelinker(), threads=4)
            with patch("hdi.compiler.compiler.hash_file", side_effect=PermissionError(13, "Permission denied")):
                with self.assertRaises(PermissionError):
                    ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(store))
            self.assertEqual(store.load_version(os_version=TEST_OS_VERSION.key), ())

    def test_prelink_failure_aborts_and_commits_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            build_template(root)
            store = InMemoryManifestStore()
            ctx = CompileContext(template_root=root, unprelinker=FailingUnprelinker(), threads=4)
            with self.assertRaises(PrelinkError):
                ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(store))
            self.assertEqual(store.load_version(os_version=TEST_OS_VERSION.key), ())

    def test_unmatched_rule_entries_are_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            lists = dict(RULE_LISTS)
            lists[".configs.txt"] = ["/etc/motd", "/etc/not-there"]
            build_template(root, lists=lists)

            ctx = CompileContext(template_root=root, unprelinker=StripBaseUnprelinker(), threads=2)
            result = ManifestCompiler(ctx).compile([TEST_OS_VERSION], StoreSink(InMemoryManifestStore()))

            self.assertEqual(result.unmatched, {(TEST_OS_VERSION.key, RuleKind.CONFIG): ["/etc/not-there"]})
            self.assertEqual(result.entries_by_os_version[TEST_OS_VERSION.key], result.total_entries)

            lines = format_unmatched_warnings(result, template_root=root, os_versions=[TEST_OS_VERSION])
            list_path = TEST_OS_VERSION.rule_list_path(root, ".configs.txt")
            self.assertIn(f"* WARNING: These files are listed in {list_path}", lines)
            self.assertEqual(lines[-1], "/etc/not-there")


if __name__ == "__main__":
    unittest.main()
