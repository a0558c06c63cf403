from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from functools import partial
from pathlib import Path

from hdi.config import load_config
from hdi.observability import tracing
from hdi.observability.config import load_observability_config
from hdi.observability.file_observability_log import FileObservabilityLogger
from hdi.runtime.config import validate_config_file
from hdi.runtime.paths import discover_repo_root, resolve_repo_path
from hdi.runtime.services import build_manifest_store, build_report_sink, build_run_state_store, build_verifier
from hdi.scheduler.trigger import DistroScheduler


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="hdi-scheduler")
    parser.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative unless absolute).")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and exit.")
    parser.add_argument("--run-now", action="store_true", help="Request an immediate run on the first check.")
    parser.add_argument("--no-user", action="store_true", help="Count user directories without walking them on every run.")
    args = parser.parse_args(argv)

    cfg_path = Path(args.config)
    if not cfg_path.is_absolute():
        cfg_path = resolve_repo_path(discover_repo_root(Path(__file__).resolve()), args.config)
    validate_config_file(path=cfg_path)

    if args.dry_run:
        print("HDI_SCHEDULER_DRY_RUN_OK")
        return 0

    cfg = load_config(path=cfg_path)
    obs = load_observability_config(path=cfg_path)
    logging.basicConfig(level=obs.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    tracing.init_tracing(enabled=obs.tracing_enabled, service_name="hdi-scheduler")
    if obs.metrics_enabled:
        try:
            from prometheus_client import start_http_server

            host = os.environ.get("HDI_METRICS_HOST", "0.0.0.0")
            port = int(os.environ.get("HDI_SCHEDULER_METRICS_PORT", "9100"))
            start_http_server(port, addr=host)
            print(f"HDI_SCHEDULER_METRICS_OK: http://{host}:{port}/metrics")
        except Exception as e:
            print(f"HDI_SCHEDULER_METRICS_FAILED: {e}")
            return 70

    store = build_manifest_store(cfg)
    scheduler = DistroScheduler(
        hostname=cfg.host.hostname,
        distro_hour=cfg.host.distro_hour,
        config=cfg.scheduler,
        verifier_factory=lambda cancel: build_verifier(cfg, store=store, cancel=cancel),
        state_store=build_run_state_store(cfg),
        report_sink=build_report_sink(cfg),
        include_user=cfg.verify.include_user and not args.no_user,
        event_logger=FileObservabilityLogger(base_dir=obs.events_dir) if obs.events_dir is not None else None,
    )

    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, partial(_request_stop, stop))
    if args.run_now:
        scheduler.request_run()

    scheduler.run_forever(stop)
    return 0


def _request_stop(stop: threading.Event, signum: int, frame: object) -> None:
    stop.set()


if __name__ == "__main__":
    raise SystemExit(main())
