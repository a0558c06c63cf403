import unittest

from hdi.model import DiscrepancyKind, DiscrepancyRecord, ScanStats
from hdi.verifier.report import approximate_size, format_duration, format_summary, format_verbose_line


class TestReportFormat(unittest.TestCase):
    def test_approximate_size(self) -> None:
        self.assertEqual(approximate_size(0), "0 bytes")
        self.assertEqual(approximate_size(1), "1 byte")
        self.assertEqual(approximate_size(1023), "1023 bytes")
        self.assertEqual(approximate_size(1024), "1.0kB")
        self.assertEqual(approximate_size(1536), "1.5kB")
        self.assertEqual(approximate_size(150 * 1024 * 1024), "150MB")
        self.assertEqual(approximate_size(3 * (1 << 40)), "3.0TB")

    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(1.5), "1.500 seconds")
        self.assertEqual(format_duration(61), "1 minute 1.000 seconds")
        self.assertEqual(format_duration(7200), "2 hours 0 minutes 0.000 seconds")

    def test_verbose_line_without_action(self) -> None:
        r = DiscrepancyRecord(kind=DiscrepancyKind.MISSING, path="/etc/a b")
        self.assertEqual(format_verbose_line(r), "MISSING '/etc/a b'")

    def test_verbose_line_with_values(self) -> None:
        r = DiscrepancyRecord(kind=DiscrepancyKind.LENGTH, path="/bin/ls", observed="10", expected="12")
        self.assertEqual(format_verbose_line(r), "LENGTH /bin/ls # 10 != 12")
        r = DiscrepancyRecord(kind=DiscrepancyKind.NO_OWNER, path="/home/x", observed="4242")
        self.assertEqual(format_verbose_line(r), "NO_OWNER /home/x # 4242")

    def test_summary_sections(self) -> None:
        stats = ScanStats(start_time=0.0, end_time=2.0, scanned=3, system_count=2, user_count=1, sha256_bytes=2048)
        lines = format_summary(stats)
        for heading in ("Time", "Scan", "Prelink Verify", "SHA-256"):
            self.assertIn(heading, lines)
        self.assertIn("  Total.....: 3", lines)
        self.assertIn("  Duration..: 2.000 seconds", lines)
        self.assertEqual(lines[-1], "  Bytes.....: 2048 (2.0kB)")


if __name__ == "__main__":
    unittest.main()
