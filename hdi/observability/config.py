from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _require_bool(obj: Any, *, path: str) -> bool:
    if not isinstance(obj, bool):
        raise ValueError(f"{path} must be a boolean")
    return obj


@dataclass(frozen=True)
class ObservabilityConfig:
    metrics_enabled: bool
    tracing_enabled: bool
    events_dir: Optional[Path]
    log_level: str


def load_observability_config(*, path: Path) -> ObservabilityConfig:
    try:
        import yaml
    except Exception as e:  # pragma: no cover
        raise RuntimeError(f"PyYAML dependency unavailable: {e}") from e

    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    doc = _require_dict(doc, path="config")

    obs = doc.get("observability") or {}
    obs = _require_dict(obs, path="observability")

    events_dir_raw = obs.get("events_dir")
    events_dir: Optional[Path] = None
    if events_dir_raw is not None:
        if not isinstance(events_dir_raw, str) or not events_dir_raw:
            raise ValueError("observability.events_dir must be a non-empty string")
        events_dir = Path(events_dir_raw)
        if not events_dir.is_absolute():
            events_dir = path.resolve().parent / events_dir

    log_level = obs.get("log_level", "INFO")
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        raise ValueError("observability.log_level must be DEBUG, INFO, WARNING or ERROR")

    return ObservabilityConfig(
        metrics_enabled=_require_bool(obs.get("metrics_enabled", False), path="observability.metrics_enabled"),
        tracing_enabled=_require_bool(obs.get("tracing_enabled", False), path="observability.tracing_enabled"),
        events_dir=events_dir,
        log_level=log_level,
    )
