import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from hdi.observability import metrics
from hdi.observability.config import load_observability_config
from hdi.observability.file_observability_log import FileObservabilityLogger, build_observability_event


class TestObservability(unittest.TestCase):
    def test_metrics_render_includes_distro_series(self) -> None:
        metrics.observe_run(stage="verify", duration_ms=1500, status="ok")
        metrics.inc_discrepancy(kind="MISSING")
        metrics.inc_hashed_bytes(method="sha256", count=10)
        body, content_type = metrics.render_prometheus()
        text = body.decode("utf-8")
        for name in (
            "distro_runs_total",
            "distro_run_latency_ms",
            "distro_discrepancies_total",
            "distro_hashed_bytes_total",
            "distro_manifest_entries_total",
            "distro_last_verify_success_timestamp_seconds",
        ):
            self.assertIn(name, text)
        self.assertIn('kind="MISSING"', text)
        self.assertTrue(content_type.startswith("text/plain"))

    def test_events_are_appended_per_run(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            logger = FileObservabilityLogger(base_dir=Path(td))
            for status in ("started", "ok"):
                logger.append(
                    build_observability_event(
                        event_type="VERIFY_COMPLETED",
                        stage="verify",
                        subject="web1",
                        run_id="r1",
                        occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                        duration_ms=5,
                        status=status,
                        fields={"discrepancies": 0},
                    )
                )
            path = Path(td) / "observability" / "web1" / "r1.jsonl"
            lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
            self.assertEqual([e["status"] for e in lines], ["started", "ok"])
            self.assertEqual(lines[0]["occurred_at"], "2024-01-01T00:00:00Z")
            self.assertEqual(lines[0]["trace_id"], "r1")

    def test_dev_config_observability_section(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        obs = load_observability_config(path=repo_root / "configs" / "dev.yaml")
        self.assertFalse(obs.metrics_enabled)
        self.assertEqual(obs.log_level, "INFO")
        self.assertEqual(obs.events_dir, (repo_root / "configs" / ".." / "var"))


if __name__ == "__main__":
    unittest.main()
