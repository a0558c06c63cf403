import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from hdi.store.run_state import RunState, RunStateStore


class TestRunStateStore(unittest.TestCase):
    def test_missing_file_means_never_run(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = RunStateStore(path=Path(td) / "state" / "last_run.json")
            self.assertIsNone(store.read().last_run)

    def test_write_then_read(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state" / "last_run.json"
            store = RunStateStore(path=path)
            started = datetime(2024, 3, 1, 4, 5, 6, 789, tzinfo=timezone(timedelta(hours=2)))
            store.write(RunState(last_run=started))
            self.assertEqual(store.read().last_run, started.replace(microsecond=0))
            self.assertIn("2024-03-01T02:05:06Z", path.read_text(encoding="utf-8"))
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_invalid_value_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "last_run.json"
            path.write_text('{"last_run": 5}\n', encoding="utf-8")
            with self.assertRaises(ValueError):
                RunStateStore(path=path).read()


if __name__ == "__main__":
    unittest.main()
