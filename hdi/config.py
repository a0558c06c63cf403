from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

DEFAULT_MIN_THREADS = 4
DEFAULT_THREADS_PER_PROCESSOR = 2


def _sha256_prefixed(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _require_str(obj: Any, *, path: str) -> str:
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string")
    return obj


def _require_bool(obj: Any, *, path: str) -> bool:
    if not isinstance(obj, bool):
        raise ValueError(f"{path} must be a boolean")
    return obj


def _require_int(obj: Any, *, path: str) -> int:
    if not isinstance(obj, int) or isinstance(obj, bool):
        raise ValueError(f"{path} must be an integer")
    return obj


def _require_float(obj: Any, *, path: str) -> float:
    if isinstance(obj, (int, float)) and not isinstance(obj, bool):
        return float(obj)
    raise ValueError(f"{path} must be a number")


def _resolve_path(base_dir: Path, value: str) -> Path:
    p = Path(value)
    return p if p.is_absolute() else (base_dir / p)


def default_thread_count() -> int:
    return max(DEFAULT_MIN_THREADS, (os.cpu_count() or 1) * DEFAULT_THREADS_PER_PROCESSOR)


@dataclass(frozen=True)
class OperatingSystemVersion:
    key: str
    name: str
    version: str
    architecture: str
    prelink: bool

    def template_dir(self, template_root: Path) -> Path:
        return template_root / self.name / self.version / self.architecture

    def rule_list_path(self, template_root: Path, extension: str) -> Path:
        return template_root / self.name / self.version / (self.architecture + extension)


@dataclass(frozen=True)
class HostConfig:
    hostname: str
    os_version: str
    distro_hour: int
    uid_min: int
    gid_min: int
    account_root: Path


@dataclass(frozen=True)
class DistroConfig:
    template_root: Path
    threads: int
    operating_system_versions: Sequence[OperatingSystemVersion]

    def get_os_version(self, key: str) -> OperatingSystemVersion:
        for osv in self.operating_system_versions:
            if osv.key == key:
                return osv
        raise ValueError(f"Unsupported operating system version: {key}")


@dataclass(frozen=True)
class StoreConfig:
    kind: str
    path: Optional[Path]
    dsn: Optional[str]


@dataclass(frozen=True)
class VerifyConfig:
    root: Path
    include_user: bool
    max_sleep_seconds: float
    big_directory_threshold: int
    report_dir: Path
    prelink_path: str


@dataclass(frozen=True)
class SchedulerConfig:
    prerun_delay_seconds: float
    min_interval_hours: float
    watchdog_max_seconds: float
    watchdog_interval_seconds: float
    failure_backoff_seconds: float
    state_path: Path


@dataclass(frozen=True)
class HDIConfig:
    system_id: str
    config_path: str
    config_sha256: str
    host: HostConfig
    distro: DistroConfig
    store: StoreConfig
    verify: VerifyConfig
    scheduler: SchedulerConfig


def _load_os_versions(raw: Any) -> tuple[OperatingSystemVersion, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("distro.operating_system_versions must be a non-empty list")
    out: list[OperatingSystemVersion] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw):
        p = f"distro.operating_system_versions[{idx}]"
        item = _require_dict(item, path=p)
        version_raw = item.get("version")
        if isinstance(version_raw, int) and not isinstance(version_raw, bool):
            # YAML reads an unquoted 7 as an integer
            version_raw = str(version_raw)
        osv = OperatingSystemVersion(
            key=_require_str(item.get("key"), path=f"{p}.key"),
            name=_require_str(item.get("name"), path=f"{p}.name"),
            version=_require_str(version_raw, path=f"{p}.version"),
            architecture=_require_str(item.get("architecture"), path=f"{p}.architecture"),
            prelink=_require_bool(item.get("prelink", False), path=f"{p}.prelink"),
        )
        if osv.key in seen:
            raise ValueError(f"{p}.key: duplicate {osv.key}")
        seen.add(osv.key)
        out.append(osv)
    return tuple(out)


def load_config(*, path: Path) -> HDIConfig:
    data_bytes = path.read_bytes()
    cfg = yaml.safe_load(data_bytes.decode("utf-8"))
    cfg = _require_dict(cfg, path="config")
    base_dir = path.resolve().parent

    pack = _require_dict(cfg.get("pack"), path="pack")
    system_id = _require_str(pack.get("system_id"), path="pack.system_id")

    host = _require_dict(cfg.get("host"), path="host")
    distro_hour = _require_int(host.get("distro_hour"), path="host.distro_hour")
    if not 0 <= distro_hour <= 23:
        raise ValueError("host.distro_hour must be between 0 and 23")
    host_cfg = HostConfig(
        hostname=_require_str(host.get("hostname"), path="host.hostname"),
        os_version=_require_str(host.get("os_version"), path="host.os_version"),
        distro_hour=distro_hour,
        uid_min=_require_int(host.get("uid_min", 1000), path="host.uid_min"),
        gid_min=_require_int(host.get("gid_min", 1000), path="host.gid_min"),
        account_root=_resolve_path(base_dir, _require_str(host.get("account_root", "/"), path="host.account_root")),
    )

    distro = _require_dict(cfg.get("distro"), path="distro")
    threads_raw = distro.get("threads")
    threads = default_thread_count() if threads_raw is None else _require_int(threads_raw, path="distro.threads")
    if threads <= 0:
        raise ValueError("distro.threads must be positive")
    distro_cfg = DistroConfig(
        template_root=_resolve_path(base_dir, _require_str(distro.get("template_root"), path="distro.template_root")),
        threads=threads,
        operating_system_versions=_load_os_versions(distro.get("operating_system_versions")),
    )
    # The host's own OS version must be one the compiler knows about.
    distro_cfg.get_os_version(host_cfg.os_version)

    store = _require_dict(cfg.get("store"), path="store")
    store_kind = _require_str(store.get("kind"), path="store.kind")
    if store_kind not in {"file", "postgres"}:
        raise ValueError("store.kind must be file or postgres")
    store_path: Optional[Path] = None
    store_dsn: Optional[str] = None
    if store_kind == "file":
        store_path = _resolve_path(base_dir, _require_str(store.get("path"), path="store.path"))
    else:
        store_dsn = store.get("dsn") or os.getenv("HDI_PG_DSN")
        store_dsn = _require_str(store_dsn, path="store.dsn")
    store_cfg = StoreConfig(kind=store_kind, path=store_path, dsn=store_dsn)

    verify = _require_dict(cfg.get("verify") or {}, path="verify")
    max_sleep_seconds = _require_float(verify.get("max_sleep_seconds", 300), path="verify.max_sleep_seconds")
    big_directory_threshold = _require_int(
        verify.get("big_directory_threshold", 100000), path="verify.big_directory_threshold"
    )
    if max_sleep_seconds < 0 or big_directory_threshold <= 0:
        raise ValueError("verify.max_sleep_seconds must be >= 0 and verify.big_directory_threshold > 0")
    verify_cfg = VerifyConfig(
        root=_resolve_path(base_dir, _require_str(verify.get("root", "/"), path="verify.root")),
        include_user=_require_bool(verify.get("include_user", True), path="verify.include_user"),
        max_sleep_seconds=max_sleep_seconds,
        big_directory_threshold=big_directory_threshold,
        report_dir=_resolve_path(base_dir, _require_str(verify.get("report_dir", "var/reports"), path="verify.report_dir")),
        prelink_path=_require_str(verify.get("prelink_path", "/usr/sbin/prelink"), path="verify.prelink_path"),
    )

    scheduler = _require_dict(cfg.get("scheduler") or {}, path="scheduler")
    scheduler_cfg = SchedulerConfig(
        prerun_delay_seconds=_require_float(
            scheduler.get("prerun_delay_seconds", 600), path="scheduler.prerun_delay_seconds"
        ),
        min_interval_hours=_require_float(scheduler.get("min_interval_hours", 12), path="scheduler.min_interval_hours"),
        watchdog_max_seconds=_require_float(
            scheduler.get("watchdog_max_seconds", 12 * 60 * 60), path="scheduler.watchdog_max_seconds"
        ),
        watchdog_interval_seconds=_require_float(
            scheduler.get("watchdog_interval_seconds", 60 * 60), path="scheduler.watchdog_interval_seconds"
        ),
        failure_backoff_seconds=_require_float(
            scheduler.get("failure_backoff_seconds", 300), path="scheduler.failure_backoff_seconds"
        ),
        state_path=_resolve_path(
            base_dir, _require_str(scheduler.get("state_path", "var/state/last_run.json"), path="scheduler.state_path")
        ),
    )

    return HDIConfig(
        system_id=system_id,
        config_path=path.as_posix(),
        config_sha256=_sha256_prefixed(data_bytes),
        host=host_cfg,
        distro=distro_cfg,
        store=store_cfg,
        verify=verify_cfg,
        scheduler=scheduler_cfg,
    )
