#!/usr/bin/env python3
"""
Payment ledger migration runner.

Usage:
    python3 -m db.migrate [--dry-run]

Reads DATABASE_URL from the environment and applies every db/migrations/*.sql
file whose numeric prefix is not yet recorded in schema_migrations, in order.
Each file runs in its own transaction. Exits non-zero on the first failure.
"""

import argparse
import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

from services.shared.logging import configure_logging

logger = logging.getLogger("payments.migrator")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     TEXT        NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    files: list[tuple[str, Path]] = []
    for file_path in directory.glob("*.sql"):
        match = re.match(r"^(\d+)", file_path.name)
        if match:
            files.append((match.group(1), file_path))
    return sorted(files, key=lambda item: int(item[0]))


def applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
        cur.execute("SELECT version FROM schema_migrations")
        versions = {row[0] for row in cur.fetchall()}
    conn.commit()
    return versions


def run_migrations(conn, *, dry_run: bool = False, directory: Path = MIGRATIONS_DIR) -> int:
    conn.autocommit = False
    done = applied_versions(conn)
    pending = [(v, path) for v, path in migration_files(directory) if v not in done]
    if not pending:
        logger.info("migrations_up_to_date", extra={"applied": len(done)})
        return 0

    for version, file_path in pending:
        if dry_run:
            logger.info("migration_pending", extra={"migration": file_path.name})
            continue
        logger.info("migration_applying", extra={"migration": file_path.name})
        try:
            with conn.cursor() as cur:
                cur.execute(file_path.read_text(encoding="utf-8"))
                cur.execute(
                    "INSERT INTO schema_migrations (version, filename) VALUES (%s, %s)",
                    (version, file_path.name),
                )
            conn.commit()
        except psycopg2.Error as exc:
            conn.rollback()
            logger.error("migration_failed", extra={"migration": file_path.name, "error": str(exc)})
            raise
    return 0 if dry_run else len(pending)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply payment ledger migrations")
    parser.add_argument("--dry-run", action="store_true", help="list pending migrations only")
    args = parser.parse_args(argv)

    configure_logging("payment-migrator")
    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL environment variable is not set")
        return 1

    conn = psycopg2.connect(db_url)
    try:
        applied = run_migrations(conn, dry_run=args.dry_run)
    except psycopg2.Error:
        return 1
    finally:
        conn.close()
    logger.info("migrations_complete", extra={"applied": applied})
    return 0


if __name__ == "__main__":
    sys.exit(main())
