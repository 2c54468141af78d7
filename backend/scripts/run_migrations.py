from __future__ import annotations

import argparse
import logging
from pathlib import Path

from sqlalchemy import create_engine, text

from paydue.config import settings

logger = logging.getLogger("paydue.migrations")

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "db" / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    in_dollar = False
    for line in sql.splitlines(keepends=True):
        stripped = line.strip()
        if "$$" in line:
            in_dollar = not in_dollar
        if not current and stripped.startswith("--"):
            continue
        current.append(line)
        if not in_dollar and stripped.endswith(";"):
            statements.append("".join(current).strip())
            current = []
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if s]


def pending_migrations(applied: set[str], migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    return [f for f in sorted(migrations_dir.glob("*.sql")) if f.name not in applied]


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply pending SQL migrations for the postgres backend.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--dry-run", action="store_true", help="list pending migrations without applying them")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    engine = create_engine(args.database_url, future=True, pool_pre_ping=True)
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                create table if not exists schema_migrations (
                  filename text primary key,
                  applied_at timestamptz not null default now()
                )
                """
            )
        )
        applied = {row[0] for row in conn.execute(text("select filename from schema_migrations")).fetchall()}
        pending = pending_migrations(applied)
        if not pending:
            logger.info("No pending migrations in %s", MIGRATIONS_DIR)
            return

        for file in pending:
            if args.dry_run:
                logger.info("Pending: %s", file.name)
                continue
            for stmt in split_sql_statements(file.read_text(encoding="utf-8")):
                conn.execute(text(stmt))
            conn.execute(
                text("insert into schema_migrations (filename) values (:filename)"),
                {"filename": file.name},
            )
            logger.info("Applied: %s", file.name)

    logger.info("Migration run finished.")


if __name__ == "__main__":
    main()
