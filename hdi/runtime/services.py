from __future__ import annotations

import threading
from typing import Optional, TextIO

from hdi.accounts.directory import PasswdAccountDirectory
from hdi.compiler.compiler import CompileContext
from hdi.config import HDIConfig
from hdi.errors import ManifestDataError
from hdi.prelink import PrelinkUnprelinker
from hdi.report.sink import FileReportSink
from hdi.store.manifest_store import (
    FileManifestStore,
    ManifestStore,
    PostgresManifestStore,
    PostgresManifestStoreConfig,
)
from hdi.store.run_state import RunStateStore
from hdi.verifier.snapshot import ManifestSnapshot
from hdi.verifier.verifier import DistroVerifier, VerifierContext


def build_manifest_store(cfg: HDIConfig) -> ManifestStore:
    if cfg.store.kind == "file":
        assert cfg.store.path is not None
        return FileManifestStore(base_dir=cfg.store.path)
    assert cfg.store.dsn is not None
    return PostgresManifestStore(config=PostgresManifestStoreConfig(dsn=cfg.store.dsn))


def build_compile_context(cfg: HDIConfig, *, threads: Optional[int] = None) -> CompileContext:
    return CompileContext(
        template_root=cfg.distro.template_root,
        unprelinker=PrelinkUnprelinker(prelink_path=cfg.verify.prelink_path),
        threads=threads if threads is not None else cfg.distro.threads,
    )


def build_verifier(
    cfg: HDIConfig,
    *,
    store: Optional[ManifestStore] = None,
    cancel: Optional[threading.Event] = None,
    verbose_out: Optional[TextIO] = None,
) -> DistroVerifier:
    """Load a fresh manifest snapshot and wire a verifier for this host."""
    store = store if store is not None else build_manifest_store(cfg)
    entries = store.load_version(os_version=cfg.host.os_version)
    if not entries:
        raise ManifestDataError(f"no manifest entries stored for {cfg.host.os_version}")
    return DistroVerifier(
        VerifierContext(
            hostname=cfg.host.hostname,
            os_version=cfg.host.os_version,
            uid_min=cfg.host.uid_min,
            gid_min=cfg.host.gid_min,
            accounts=PasswdAccountDirectory(root=cfg.host.account_root),
            snapshot=ManifestSnapshot(entries),
            unprelinker=PrelinkUnprelinker(prelink_path=cfg.verify.prelink_path),
            root=cfg.verify.root,
            max_sleep_seconds=cfg.verify.max_sleep_seconds,
            big_directory_threshold=cfg.verify.big_directory_threshold,
            cancel=cancel if cancel is not None else threading.Event(),
            verbose_out=verbose_out,
        )
    )


def build_report_sink(cfg: HDIConfig) -> FileReportSink:
    return FileReportSink(base_dir=cfg.verify.report_dir)


def build_run_state_store(cfg: HDIConfig) -> RunStateStore:
    return RunStateStore(path=cfg.scheduler.state_path)
