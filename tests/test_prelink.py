import hashlib
import sys
import unittest
from pathlib import Path

from hdi.prelink import PrelinkError, PrelinkUnprelinker, run_and_hash


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestRunAndHash(unittest.TestCase):
    def test_hashes_standard_output(self) -> None:
        result = run_and_hash(_python("import sys; sys.stdout.write('hello\\n')"))
        self.assertEqual(result.length, 6)
        self.assertEqual(result.sha256, hashlib.sha256(b"hello\n").hexdigest())

    def test_non_zero_exit_raises_with_error_text(self) -> None:
        cmd = _python("import sys; sys.stderr.write('prelinked file was modified\\n'); sys.exit(1)")
        with self.assertRaises(PrelinkError) as ctx:
            run_and_hash(cmd)
        self.assertIsInstance(ctx.exception, OSError)
        self.assertIn("rc=1", str(ctx.exception))
        self.assertIn("prelinked file was modified", str(ctx.exception))

    def test_large_error_output_does_not_block(self) -> None:
        code = (
            "import sys\n"
            "sys.stderr.write('x' * (4 * 1024 * 1024))\n"
            "sys.stderr.write('tail of error\\n')\n"
            "sys.stdout.write('partial')\n"
            "sys.exit(3)\n"
        )
        with self.assertRaises(PrelinkError) as ctx:
            run_and_hash(_python(code))
        message = str(ctx.exception)
        self.assertIn("rc=3", message)
        self.assertIn("tail of error", message)
        self.assertLess(len(message), 16 * 1024)

    def test_large_error_output_with_success(self) -> None:
        code = "import sys; sys.stderr.write('w' * (2 * 1024 * 1024)); sys.stdout.write('ok')"
        result = run_and_hash(_python(code))
        self.assertEqual(result.sha256, hashlib.sha256(b"ok").hexdigest())


class TestPrelinkUnprelinker(unittest.TestCase):
    def test_command_without_chroot(self) -> None:
        unprelinker = PrelinkUnprelinker(prelink_path="/sbin/prelink")
        self.assertEqual(unprelinker.command("/usr/lib/libfoo.so"), ["/sbin/prelink", "--verify", "/usr/lib/libfoo.so"])

    def test_command_with_chroot(self) -> None:
        unprelinker = PrelinkUnprelinker(prelink_path="/sbin/prelink", chroot_path="/sbin/chroot")
        self.assertEqual(
            unprelinker.command("/usr/lib/libfoo.so", chroot=Path("/templates/centos-7")),
            ["/sbin/chroot", "/templates/centos-7", "/sbin/prelink", "--verify", "/usr/lib/libfoo.so"],
        )


if __name__ == "__main__":
    unittest.main()
