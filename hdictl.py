#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from hdi.compiler.compiler import ManifestCompiler, format_unmatched_warnings
from hdi.compiler.sink import JsonLinesSink, StoreSink
from hdi.config import HDIConfig, load_config
from hdi.errors import EXIT_CONFIG, EXIT_OK, EXIT_SOFTWARE, NeverPathsFound, exit_code_for
from hdi.observability import tracing
from hdi.observability.config import ObservabilityConfig, load_observability_config
from hdi.observability.file_observability_log import FileObservabilityLogger, build_observability_event
from hdi.runtime.config import validate_config_file
from hdi.runtime.paths import resolve_repo_path
from hdi.runtime.services import build_compile_context, build_manifest_store, build_report_sink, build_verifier
from hdi.verifier.report import format_summary
from hdi.version import read_repo_version


def _load(args: argparse.Namespace, *, service_name: str) -> tuple[HDIConfig, ObservabilityConfig]:
    repo_root = Path(__file__).resolve().parent
    cfg_path = resolve_repo_path(repo_root, args.config)
    cfg = load_config(path=cfg_path)
    obs = load_observability_config(path=cfg_path)
    logging.basicConfig(level=obs.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    tracing.init_tracing(enabled=obs.tracing_enabled, service_name=service_name)
    return cfg, obs


def cmd_version(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    try:
        version = read_repo_version(repo_root=repo_root)
    except Exception as e:
        print(f"VERSION_FAILED: {e}")
        return EXIT_SOFTWARE
    print(version)
    return EXIT_OK


def cmd_config_validate(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    cfg_path = resolve_repo_path(repo_root, args.config)
    try:
        validate_config_file(path=cfg_path)
    except Exception as e:
        print(f"CONFIG_VALIDATE_FAILED: {e}")
        return EXIT_CONFIG
    print("CONFIG_VALIDATE_OK")
    return EXIT_OK


def _print_nevers(e: NeverPathsFound, out: TextIO) -> None:
    print("Files exist but are listed in nevers:", file=out)
    for p in e.paths:
        print(p, file=out)


def cmd_manifest_compile(args: argparse.Namespace) -> int:
    status_out = sys.stderr if args.out == "-" else sys.stdout
    try:
        cfg, obs = _load(args, service_name="hdi-compile")
        if args.os_version:
            os_versions = [cfg.distro.get_os_version(k) for k in args.os_version]
        else:
            os_versions = list(cfg.distro.operating_system_versions)
        ctx = build_compile_context(cfg, threads=args.threads)
    except Exception as e:
        print(f"MANIFEST_COMPILE_FAILED: invalid config: {e}", file=status_out)
        return EXIT_CONFIG

    compiler = ManifestCompiler(ctx)
    run_id = str(uuid.uuid4())
    started = time.monotonic()
    tmp_out: Path | None = None
    try:
        if args.out == "-":
            result = compiler.compile(os_versions, JsonLinesSink(sys.stdout))
        elif args.out:
            out_path = Path(args.out)
            tmp_out = out_path.with_suffix(out_path.suffix + ".tmp")
            with tmp_out.open("w", encoding="utf-8") as f:
                result = compiler.compile(os_versions, JsonLinesSink(f))
            tmp_out.replace(out_path)
            tmp_out = None
        else:
            result = compiler.compile(os_versions, StoreSink(build_manifest_store(cfg)))
    except NeverPathsFound as e:
        _print_nevers(e, sys.stderr)
        print(f"MANIFEST_COMPILE_FAILED: {e}", file=status_out)
        return e.exit_code
    except Exception as e:
        print(f"MANIFEST_COMPILE_FAILED: {e}", file=status_out)
        return exit_code_for(e)
    finally:
        if tmp_out is not None and tmp_out.exists():
            tmp_out.unlink()

    for line in format_unmatched_warnings(result, template_root=cfg.distro.template_root, os_versions=os_versions):
        print(line, file=sys.stderr)
    if obs.events_dir is not None:
        events = FileObservabilityLogger(base_dir=obs.events_dir)
        duration_ms = int((time.monotonic() - started) * 1000)
        for key, count in sorted(result.entries_by_os_version.items()):
            events.append(
                build_observability_event(
                    event_type="MANIFEST_COMPILED",
                    stage="compile",
                    subject=key,
                    run_id=run_id,
                    occurred_at=datetime.now(timezone.utc),
                    duration_ms=duration_ms,
                    status="ok",
                    fields={"entries": count, "threads": ctx.threads},
                )
            )
    counts = ", ".join(f"{k}={v}" for k, v in sorted(result.entries_by_os_version.items()))
    print(f"MANIFEST_COMPILE_OK: {counts}", file=status_out)
    return EXIT_OK


def cmd_verify_run(args: argparse.Namespace) -> int:
    try:
        cfg, _ = _load(args, service_name="hdi-verify")
    except Exception as e:
        print(f"VERIFY_RUN_FAILED: invalid config: {e}", file=sys.stderr)
        return EXIT_CONFIG

    include_user = cfg.verify.include_user and not args.no_user
    try:
        verifier = build_verifier(cfg, verbose_out=None if args.quiet else sys.stdout)
        result = verifier.verify(include_user=include_user)
    except Exception as e:
        sys.stdout.flush()
        print(f"VERIFY_RUN_FAILED: {e}", file=sys.stderr)
        return exit_code_for(e)
    finally:
        sys.stdout.flush()

    for line in format_summary(result.stats):
        print(line)

    if args.report:
        run_id = str(uuid.uuid4())
        try:
            build_report_sink(cfg).deliver(
                hostname=cfg.host.hostname, run_id=run_id, records=result.records, stats=result.stats
            )
        except Exception as e:
            print(f"VERIFY_REPORT_FAILED: {e}", file=sys.stderr)
            return exit_code_for(e)
        print(f"VERIFY_REPORT_OK: {run_id}")
    return EXIT_OK


def _resolve_pg_dsn(args: argparse.Namespace) -> str | None:
    v = getattr(args, "pg_dsn", None)
    if isinstance(v, str) and v.strip():
        return v.strip()
    env = os.getenv("HDI_PG_DSN")
    if isinstance(env, str) and env.strip():
        return env.strip()
    return None


def cmd_store_migrate(args: argparse.Namespace) -> int:
    pg_dsn = _resolve_pg_dsn(args)
    if pg_dsn is None:
        print("STORE_MIGRATE_FAILED: missing --pg-dsn (or HDI_PG_DSN env var)")
        return EXIT_CONFIG

    try:
        from hdi.store.migrate import apply_postgres_migrations

        applied = apply_postgres_migrations(dsn=pg_dsn)
    except Exception as e:
        print(f"STORE_MIGRATE_FAILED: {e}")
        return exit_code_for(e)

    print(f"STORE_MIGRATE_OK: applied={applied}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="hdictl")
    sub = parser.add_subparsers(dest="command", required=True)

    version = sub.add_parser("version")
    version.set_defaults(func=cmd_version)

    config = sub.add_parser("config")
    config_sub = config.add_subparsers(dest="config_command", required=True)

    cfg_validate = config_sub.add_parser("validate")
    cfg_validate.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    cfg_validate.set_defaults(func=cmd_config_validate)

    manifest = sub.add_parser("manifest")
    manifest_sub = manifest.add_subparsers(dest="manifest_command", required=True)

    compile_ = manifest_sub.add_parser("compile")
    compile_.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    compile_.add_argument(
        "--os-version",
        action="append",
        default=[],
        help="OS version key to compile (repeatable; default: all configured versions).",
    )
    compile_.add_argument("--threads", default=None, type=int, help="Worker threads (default: distro.threads).")
    compile_.add_argument(
        "--out",
        default=None,
        help="Write JSON Lines to this path ('-' for stdout) instead of replacing the manifest store.",
    )
    compile_.set_defaults(func=cmd_manifest_compile)

    verify = sub.add_parser("verify")
    verify_sub = verify.add_subparsers(dest="verify_command", required=True)

    verify_run = verify_sub.add_parser("run")
    verify_run.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    verify_run.add_argument("--no-user", action="store_true", help="Count user directories without walking them.")
    verify_run.add_argument("--quiet", action="store_true", help="Do not print each discrepancy as it is found.")
    verify_run.add_argument("--report", action="store_true", help="Also write a JSON report to verify.report_dir.")
    verify_run.set_defaults(func=cmd_verify_run)

    store = sub.add_parser("store")
    store_sub = store.add_subparsers(dest="store_command", required=True)

    store_migrate = store_sub.add_parser("migrate")
    store_migrate.add_argument(
        "--pg-dsn",
        default=None,
        help="Postgres DSN (defaults to HDI_PG_DSN env var).",
    )
    store_migrate.set_defaults(func=cmd_store_migrate)

    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
