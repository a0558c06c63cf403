from __future__ import annotations

from pathlib import Path


def discover_repo_root(start: Path) -> Path:
    for p in [start] + list(start.parents):
        if (p / "VERSION").is_file() and (p / "pyproject.toml").is_file():
            return p
    raise RuntimeError(f"repo root not found from: {start}")


def resolve_repo_path(repo_root: Path, value: str) -> Path:
    p = Path(value)
    return p if p.is_absolute() else (repo_root / p)
