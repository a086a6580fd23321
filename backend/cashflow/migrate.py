from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import settings

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "db" / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    """Split a migration file on trailing semicolons, keeping ``$$`` bodies whole."""
    statements: list[str] = []
    buffer: list[str] = []
    inside_body = False
    for line in sql.splitlines(keepends=True):
        if line.count("$$") % 2 == 1:
            inside_body = not inside_body
        buffer.append(line)
        if not inside_body and line.rstrip().endswith(";"):
            statements.append("".join(buffer).strip())
            buffer = []
    remainder = "".join(buffer).strip()
    if remainder:
        statements.append(remainder)
    cleaned = []
    for statement in statements:
        body = "\n".join(l for l in statement.splitlines() if not l.strip().startswith("--")).strip()
        if body:
            cleaned.append(body)
    return cleaned


def apply_migrations(engine: Engine, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    files = sorted(migrations_dir.glob("*.sql"))
    if not files:
        logger.warning("No migration files found in %s", migrations_dir)
        return []

    applied_now: list[str] = []
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                create table if not exists schema_migrations (
                  filename varchar(255) primary key,
                  applied_at timestamp not null default current_timestamp
                )
                """
            )
        )
        done = {row[0] for row in conn.execute(text("select filename from schema_migrations"))}
        for path in files:
            if path.name in done:
                logger.debug("Skipping already applied migration %s", path.name)
                continue
            for statement in split_sql_statements(path.read_text(encoding="utf-8")):
                conn.execute(text(statement))
            conn.execute(text("insert into schema_migrations (filename) values (:filename)"), {"filename": path.name})
            logger.info("Applied migration %s", path.name)
            applied_now.append(path.name)
    return applied_now


def main() -> None:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
    applied = apply_migrations(engine)
    logger.info("Migration run finished; %d file(s) applied", len(applied))


if __name__ == "__main__":
    main()
