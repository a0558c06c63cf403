from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    sql: str


def _split_sql(sql: str) -> list[str]:
    # Migrations in this repo must avoid procedural SQL blocks that include semicolons.
    out: list[str] = []
    for chunk in sql.split(";"):
        stmt = chunk.strip()
        if stmt:
            out.append(stmt)
    return out


def load_migrations(*, migrations_dir: Optional[Path] = None) -> list[Migration]:
    mig_dir = migrations_dir or _MIGRATIONS_DIR
    out: list[Migration] = []
    for path in sorted(mig_dir.glob("*.sql")):
        out.append(Migration(version=path.name, sql=path.read_text(encoding="utf-8")))
    return out


def apply_postgres_migrations(*, dsn: str, migrations_dir: Optional[Path] = None) -> list[str]:
    try:
        import psycopg  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("psycopg is required for Postgres migrations (pip install hdi[postgres])") from e

    migrations = load_migrations(migrations_dir=migrations_dir)
    applied: list[str] = []
    if not migrations:
        return applied

    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "CREATE TABLE IF NOT EXISTS hdi_schema_migrations (version TEXT PRIMARY KEY, applied_at TIMESTAMPTZ NOT NULL DEFAULT now())"
            )

            for mig in migrations:
                cur.execute("SELECT 1 FROM hdi_schema_migrations WHERE version = %s", (mig.version,))
                if cur.fetchone() is not None:
                    continue

                for stmt in _split_sql(mig.sql):
                    cur.execute(stmt)

                cur.execute("INSERT INTO hdi_schema_migrations(version) VALUES (%s)", (mig.version,))
                applied.append(mig.version)
    return applied
