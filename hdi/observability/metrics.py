from __future__ import annotations

try:
    from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
except Exception as e:  # pragma: no cover
    raise RuntimeError("prometheus_client is required (pip install hdi)") from e


runs_total = Counter(
    "distro_runs_total",
    "Compile and verification runs by stage and status.",
    labelnames=("stage", "status"),
)

run_latency_ms = Histogram(
    "distro_run_latency_ms",
    "Run latency in milliseconds.",
    labelnames=("stage", "status"),
    buckets=(
        1000,
        10000,
        60000,
        300000,
        900000,
        1800000,
        3600000,
        7200000,
        14400000,
        43200000,
    ),
)

manifest_entries_total = Counter(
    "distro_manifest_entries_total",
    "Manifest entries emitted by the compiler, by OS version.",
    labelnames=("os_version",),
)

discrepancies_total = Counter(
    "distro_discrepancies_total",
    "Discrepancies reported by the verifier, by kind.",
    labelnames=("kind",),
)

hashed_bytes_total = Counter(
    "distro_hashed_bytes_total",
    "Bytes hashed, by method (sha256 for direct reads, prelink for unprelinked output).",
    labelnames=("method",),
)

skipped_entries_total = Counter(
    "distro_skipped_entries_total",
    "Live entries skipped by the verifier after an I/O error.",
)

last_verify_success_timestamp = Gauge(
    "distro_last_verify_success_timestamp_seconds",
    "Unix time of the last successful verification run.",
)

watchdog_alerts_total = Counter(
    "distro_watchdog_alerts_total",
    "Alerts raised because a run exceeded its maximum duration.",
)


def observe_run(*, stage: str, duration_ms: int, status: str) -> None:
    if duration_ms < 0:
        return
    runs_total.labels(stage=stage, status=status).inc()
    run_latency_ms.labels(stage=stage, status=status).observe(duration_ms)


def inc_manifest_entries(*, os_version: str, count: int = 1) -> None:
    if count <= 0:
        return
    manifest_entries_total.labels(os_version=os_version).inc(count)


def inc_discrepancy(*, kind: str) -> None:
    discrepancies_total.labels(kind=kind).inc()


def inc_hashed_bytes(*, method: str, count: int) -> None:
    if count <= 0:
        return
    hashed_bytes_total.labels(method=method).inc(count)


def inc_skipped() -> None:
    skipped_entries_total.inc()


def render_prometheus() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
