from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

import jsonschema

from hdi.model import DiscrepancyRecord, ScanStats

SCHEMA_PATH = Path(__file__).resolve().parent / "distro_report.schema.json"


@lru_cache(maxsize=1)
def _report_schema() -> dict[str, Any]:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    schema_id = schema.get("$id")
    if not isinstance(schema_id, str) or not schema_id:
        raise ValueError("distro_report.schema.json missing $id")
    return schema


def _format_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def build_report(
    *,
    hostname: str,
    run_id: str,
    records: Sequence[DiscrepancyRecord],
    stats: ScanStats,
    created_at: Optional[datetime] = None,
) -> dict[str, Any]:
    schema = _report_schema()
    schema_id = schema["$id"]
    counts = Counter(r.kind.value for r in records)
    return {
        "schema_id": schema_id,
        "schema_version": schema_id.rsplit(":", 1)[-1],
        "hostname": hostname,
        "run_id": run_id,
        "created_at": _format_datetime(created_at or datetime.now(timezone.utc)),
        "stats": stats.to_dict(),
        "discrepancy_counts": dict(sorted(counts.items())),
        "records": [r.to_dict() for r in records],
    }


def validate_report(report: dict[str, Any]) -> None:
    validator = jsonschema.Draft202012Validator(_report_schema())
    errors = sorted(validator.iter_errors(report), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        loc = "/".join(str(p) for p in first.path) or "<root>"
        raise ValueError(f"report failed schema validation at {loc}: {first.message}")


class ReportSink(Protocol):
    def deliver(
        self, *, hostname: str, run_id: str, records: Sequence[DiscrepancyRecord], stats: ScanStats
    ) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class DeliveredReport:
    hostname: str
    run_id: str
    records: tuple[DiscrepancyRecord, ...]
    stats: ScanStats


class InMemoryReportSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reports: list[DeliveredReport] = []

    def deliver(
        self, *, hostname: str, run_id: str, records: Sequence[DiscrepancyRecord], stats: ScanStats
    ) -> None:
        with self._lock:
            self.reports.append(DeliveredReport(hostname=hostname, run_id=run_id, records=tuple(records), stats=stats))


class FileReportSink:
    """Writes one validated JSON report per run to <base_dir>/<hostname>/<run_id>.json."""

    def __init__(self, *, base_dir: Path) -> None:
        self._base_dir = base_dir

    def path_for(self, *, hostname: str, run_id: str) -> Path:
        for name, value in (("hostname", hostname), ("run_id", run_id)):
            if not value or "/" in value or "\\" in value or value.startswith("."):
                raise ValueError(f"{name} must be a simple token: {value!r}")
        return self._base_dir / hostname / f"{run_id}.json"

    def deliver(
        self, *, hostname: str, run_id: str, records: Sequence[DiscrepancyRecord], stats: ScanStats
    ) -> None:
        report = build_report(hostname=hostname, run_id=run_id, records=records, stats=stats)
        validate_report(report)
        path = self.path_for(hostname=hostname, run_id=run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(report, ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)
