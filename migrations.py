# migrations.py
# Schema versioning and migrations for the calibration lifecycle store.
# Run after base schema creation (which also adds any missing columns);
# migrations rewrite stored data and are applied in order.

import sqlite3
import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION_TABLE = "schema_version"
CURRENT_SCHEMA_VERSION = 1


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return current schema version (0 if table or row missing)."""
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (SCHEMA_VERSION_TABLE,),
    )
    if cur.fetchone() is None:
        return 0
    cur = conn.execute(f"SELECT MAX(version) AS v FROM {SCHEMA_VERSION_TABLE}")
    row = cur.fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Set schema version (replaces any existing row)."""
    conn.execute(f"DELETE FROM {SCHEMA_VERSION_TABLE}")
    conn.execute(f"INSERT INTO {SCHEMA_VERSION_TABLE} (version) VALUES (?)", (version,))
    conn.commit()


def find_reference_collisions(conn: sqlite3.Connection) -> list[list[str]]:
    """Groups of instrument references that are equal once trimmed and upper-cased."""
    cur = conn.execute(
        """
        SELECT UPPER(TRIM(reference)) AS canonical, reference
        FROM instruments
        WHERE UPPER(TRIM(reference)) IN (
            SELECT UPPER(TRIM(reference)) FROM instruments
            GROUP BY UPPER(TRIM(reference)) HAVING COUNT(*) > 1
        )
        ORDER BY canonical, id
        """
    )
    groups: dict[str, list[str]] = {}
    for canonical, reference in cur.fetchall():
        groups.setdefault(canonical, []).append(reference)
    return list(groups.values())


def migrate_1_canonical_keys(conn: sqlite3.Connection) -> None:
    """
    Normalize stored instrument references and record keys to the canonical
    form (trimmed, upper-case). Records that were linked by numeric instrument
    id are rewritten to the instrument's reference.

    Raises RuntimeError, before changing anything, when two references differ
    only by case or surrounding whitespace.
    """
    collisions = find_reference_collisions(conn)
    if collisions:
        clashes = "; ".join(", ".join(repr(r) for r in group) for group in collisions)
        raise RuntimeError(
            f"Instrument references clash once trimmed and upper-cased: {clashes}. "
            "Rename or merge these instruments, then start again."
        )
    try:
        conn.execute("BEGIN")
        conn.execute(
            """
            UPDATE calibration_records
            SET instrument_key = (
                SELECT i.reference FROM instruments i
                WHERE CAST(i.id AS TEXT) = TRIM(calibration_records.instrument_key)
            )
            WHERE TRIM(instrument_key) GLOB '[0-9]*'
              AND TRIM(instrument_key) NOT GLOB '*[^0-9]*'
              AND EXISTS (
                SELECT 1 FROM instruments i
                WHERE CAST(i.id AS TEXT) = TRIM(calibration_records.instrument_key)
              )
            """
        )
        conn.execute("UPDATE instruments SET reference = UPPER(TRIM(reference))")
        for table in ("calibration_records", "archived_calibration_records"):
            conn.execute(f"UPDATE {table} SET instrument_key = UPPER(TRIM(instrument_key))")
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("Migration 1 applied: canonical instrument keys")


def _migration_lock_path(db_path) -> Path | None:
    """Path to advisory lock file next to the database."""
    if db_path is None or str(db_path) == ":memory:":
        return None
    return Path(db_path).parent / ".migrating"


def run_migrations(conn: sqlite3.Connection, db_path=None) -> None:
    """Run all pending migrations in order. Uses advisory lock file to prevent concurrent migration."""
    lock_path = _migration_lock_path(db_path)
    if lock_path:
        # Wait briefly if another process is migrating
        for _ in range(30):
            if not lock_path.exists():
                break
            time.sleep(0.2)
        if lock_path.exists():
            raise RuntimeError(
                "Another process appears to be running migrations. "
                "Wait for it to finish or remove the .migrating file if it crashed."
            )
        try:
            lock_path.write_text(str(time.time()), encoding="utf-8")
        except OSError:
            pass

    try:
        _run_migrations_impl(conn)
    finally:
        if lock_path and lock_path.exists():
            try:
                lock_path.unlink()
            except OSError:
                pass


def _run_migrations_impl(conn: sqlite3.Connection) -> None:
    """Internal: run migrations without lock."""
    version = get_schema_version(conn)
    if version < 1:
        migrate_1_canonical_keys(conn)
        set_schema_version(conn, 1)
