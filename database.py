# database.py - sqlite3 record store for instruments, calibration records and archives
#
# CalibrationRepository is the record-store boundary consumed by the services:
# rows are converted to domain dataclasses here and nowhere else.

import logging
import sqlite3
import time
from datetime import date
from pathlib import Path
from typing import Iterable

from config import load_db_path
from domain.errors import NotFoundError
from domain.instrument_types import parse_instrument_type
from domain.models import (
    CalibrationRecord,
    FrequencyConfig,
    Instrument,
    canonical_key,
)

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

# -----------------------------------------------------------------------------
# Connection helpers
# -----------------------------------------------------------------------------

def get_connection(db_path: Path | str | None = None, timeout: float = 30.0, retries: int = 3,
                   check_same_thread: bool = True):
    """
    Open the database (":memory:" allowed). Creates the parent folder if needed.
    timeout: seconds to wait for locks.
    retries: number of retries on SQLITE_BUSY / database is locked (with exponential backoff).
    """
    if db_path is None:
        db_path = load_db_path()
    if str(db_path) != MEMORY_DB:
        db_path = Path(db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass

    last_err = None
    for attempt in range(max(1, retries)):
        try:
            conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=check_same_thread)
            break
        except sqlite3.OperationalError as e:
            last_err = e
            err_lower = str(e).lower()
            if "unable to open database file" in err_lower:
                raise sqlite3.OperationalError(
                    f"Could not open database at:\n{db_path}\n\n"
                    "Check that the folder exists (or that the app can create it) "
                    "and that you have read and write permission for that location."
                ) from e
            if ("database is locked" in err_lower or "sqlite_busy" in err_lower) and attempt < retries - 1:
                time.sleep(0.1 * (2 ** attempt))
                continue
            raise
    else:
        if last_err:
            raise last_err
        raise RuntimeError("Failed to connect to database")

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

# -----------------------------------------------------------------------------
# Schema initialization
# -----------------------------------------------------------------------------

def run_integrity_check(conn: sqlite3.Connection) -> str | None:
    """
    Run PRAGMA integrity_check. Returns None if OK, or an error message string if failed.
    """
    cur = conn.execute("PRAGMA integrity_check")
    row = cur.fetchone()
    if row is None:
        return None
    result = row[0]
    if result == "ok":
        return None
    return result


def initialize_db(conn: sqlite3.Connection, db_path: Path | None = None) -> sqlite3.Connection:
    """
    Create the base schema and run pending migrations.
    On read-only error, raises with a clear message.
    Runs integrity check after init; on failure logs a warning (does not block startup).
    """
    try:
        _initialize_db_core(conn, db_path)
        err = run_integrity_check(conn)
        if err:
            logger.warning("Database integrity check failed: %s", err)
        return conn
    except sqlite3.OperationalError as e:
        err = str(e).lower()
        if "readonly" in err or "attempt to write" in err:
            raise sqlite3.OperationalError(
                f"The database at {db_path or '(unknown)'} is read-only. "
                "Ensure the folder and file have write permission for your user, then try again."
            ) from e
        raise


def _initialize_db_core(conn: sqlite3.Connection, db_path: Path | None = None) -> None:
    """Internal: base tables and missing columns, then migrations rewrite stored data."""
    cur = conn.cursor()

    cur.execute("PRAGMA foreign_keys = ON")
    if db_path is not None and str(db_path) != MEMORY_DB:
        cur.execute("PRAGMA journal_mode = WAL")
        cur.execute("PRAGMA synchronous = NORMAL")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS instruments (
            id                    INTEGER PRIMARY KEY AUTOINCREMENT,
            reference             TEXT NOT NULL UNIQUE,
            instrument_type       TEXT NOT NULL,
            section               TEXT,
            brand_model           TEXT,
            status                TEXT NOT NULL DEFAULT 'active'
                                  CHECK (status IN ('active', 'calibration-due', 'out-of-service')),
            calibration_frequency INTEGER,
            last_calibration      TEXT,
            calibration_due       TEXT,
            notes                 TEXT,
            created_at            TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at            TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_instruments_type ON instruments(instrument_type)")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS frequency_configs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            instrument_type TEXT NOT NULL UNIQUE,
            frequency_value INTEGER NOT NULL CHECK (frequency_value > 0),
            frequency_unit  TEXT NOT NULL DEFAULT 'months' CHECK (frequency_unit IN ('months', 'years')),
            updated_by      TEXT,
            updated_at      TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS calibration_records (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            instrument_key    TEXT NOT NULL,
            instrument_type   TEXT NOT NULL,
            calibration_date  TEXT NOT NULL,
            outcome           TEXT,
            operator          TEXT,
            notes             TEXT,
            next_calibration  TEXT,
            test_results_json TEXT NOT NULL DEFAULT '[]',
            details_json      TEXT NOT NULL DEFAULT '{}',
            archived_at       TEXT,
            archived_by       TEXT,
            restored_at       TEXT,
            restored_by       TEXT,
            created_at        TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_cal_records_key_date "
        "ON calibration_records(instrument_type, instrument_key, calibration_date)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_cal_records_archived ON calibration_records(archived_at)")
    # Databases created before restore support
    cur.execute("PRAGMA table_info(calibration_records)")
    cols = [r[1] for r in cur.fetchall()]
    if "restored_at" not in cols:
        cur.execute("ALTER TABLE calibration_records ADD COLUMN restored_at TEXT")
    if "restored_by" not in cols:
        cur.execute("ALTER TABLE calibration_records ADD COLUMN restored_by TEXT")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS archived_calibration_records (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            original_id       INTEGER,
            instrument_key    TEXT NOT NULL,
            instrument_type   TEXT NOT NULL,
            calibration_date  TEXT NOT NULL,
            outcome           TEXT,
            operator          TEXT,
            notes             TEXT,
            next_calibration  TEXT,
            test_results_json TEXT NOT NULL DEFAULT '[]',
            details_json      TEXT NOT NULL DEFAULT '{}',
            archived_at       TEXT NOT NULL DEFAULT (datetime('now')),
            archived_by       TEXT,
            reason_for_archiving TEXT DEFAULT 'new_calibration',
            created_at        TEXT
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_archived_key "
        "ON archived_calibration_records(instrument_type, instrument_key)"
    )
    cur.execute("PRAGMA table_info(archived_calibration_records)")
    cols = [r[1] for r in cur.fetchall()]
    if "reason_for_archiving" not in cols:
        cur.execute(
            "ALTER TABLE archived_calibration_records "
            "ADD COLUMN reason_for_archiving TEXT DEFAULT 'new_calibration'"
        )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL CHECK (entity_type IN ('instrument', 'calibration', 'frequency')),
            entity_id   INTEGER NOT NULL,
            action      TEXT NOT NULL,
            field       TEXT,
            old_value   TEXT,
            new_value   TEXT,
            actor       TEXT,
            reason      TEXT,
            ts          TEXT NOT NULL DEFAULT (datetime('now'))
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity_type, entity_id)")

    cur.execute(
        "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
    )
    conn.commit()

    from migrations import run_migrations
    try:
        run_migrations(conn, db_path)
    except Exception as e:
        logger.error("Schema migration failed: %s", e, exc_info=True)
        raise RuntimeError(
            f"Database schema migration failed. Your database may be incompatible with this version.\n\n"
            f"Error: {e}"
        ) from e
    conn.commit()


def _type_value(instrument_type) -> str:
    return parse_instrument_type(instrument_type).value


def _placeholders(values: list) -> str:
    return ",".join("?" * len(values))


# Columns copied verbatim into archived_calibration_records
_RECORD_COPY_COLUMNS = (
    "instrument_key", "instrument_type", "calibration_date", "outcome", "operator",
    "notes", "next_calibration", "test_results_json", "details_json", "created_at",
)

_ACTIVE = "(archived_at IS NULL OR archived_at = '')"

# -----------------------------------------------------------------------------
# Repository
# -----------------------------------------------------------------------------

class CalibrationRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ---------- Settings ----------

    def get_setting(self, key: str, default=None):
        cur = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str):
        self.conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        self.conn.commit()

    # ---------- Audit log ----------

    def _get_actor(self):
        return self.get_setting("operator_name", None)

    def log_audit(self, entity_type: str, entity_id: int, action: str,
                  field: str | None = None,
                  old_value: str | None = None,
                  new_value: str | None = None,
                  reason: str | None = None,
                  actor: str | None = None,
                  _commit: bool = True):
        self.conn.execute(
            """
            INSERT INTO audit_log
                (entity_type, entity_id, action, field, old_value, new_value, actor, reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entity_type, entity_id, action, field, old_value, new_value,
             actor or self._get_actor(), reason),
        )
        if _commit:
            self.conn.commit()

    def get_audit_for_calibration(self, record_id: int):
        cur = self.conn.execute(
            """
            SELECT *
            FROM audit_log
            WHERE entity_type = 'calibration'
              AND entity_id = ?
            ORDER BY ts DESC, id DESC
            """,
            (record_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    # ---------- Instruments ----------

    def add_instrument(self, instrument: Instrument) -> int:
        data = instrument.to_dict()
        cur = self.conn.execute(
            """
            INSERT INTO instruments (
                reference, instrument_type, section, brand_model, status,
                calibration_frequency, last_calibration, calibration_due, notes
            ) VALUES (
                :reference, :instrument_type, :section, :brand_model, :status,
                :calibration_frequency, :last_calibration, :calibration_due, :notes
            )
            """,
            data,
        )
        self.conn.commit()
        return cur.lastrowid

    def get_instrument(self, instrument_id: int) -> Instrument | None:
        cur = self.conn.execute("SELECT * FROM instruments WHERE id = ?", (instrument_id,))
        row = cur.fetchone()
        return Instrument.from_row(row) if row else None

    def find_instrument(self, instrument_key: str) -> Instrument | None:
        cur = self.conn.execute(
            "SELECT * FROM instruments WHERE reference = ?", (canonical_key(instrument_key),)
        )
        row = cur.fetchone()
        return Instrument.from_row(row) if row else None

    def get_instrument_by_key(self, instrument_key: str) -> Instrument:
        """Raises NotFoundError if no instrument has this reference."""
        inst = self.find_instrument(instrument_key)
        if inst is None:
            raise NotFoundError(f"Instrument not found: {instrument_key!r}")
        return inst

    def resolve_instrument_key(self, ref_or_id) -> str:
        """
        Map either a database id (int) or a reference string to the canonical key.
        Raises NotFoundError for an unknown id.
        """
        if isinstance(ref_or_id, int) and not isinstance(ref_or_id, bool):
            inst = self.get_instrument(ref_or_id)
            if inst is None:
                raise NotFoundError(f"Instrument id not found: {ref_or_id}")
            return inst.key
        return canonical_key(ref_or_id)

    def list_instruments(self, instrument_type=None) -> list[Instrument]:
        sql = "SELECT * FROM instruments"
        params: list = []
        if instrument_type is not None:
            sql += " WHERE instrument_type = ?"
            params.append(_type_value(instrument_type))
        sql += " ORDER BY instrument_type ASC, reference ASC"
        cur = self.conn.execute(sql, params)
        return [Instrument.from_row(r) for r in cur.fetchall()]

    def update_instrument_summary(self, instrument_key: str,
                                  last_calibration: date | None,
                                  calibration_due: date | None) -> None:
        key = canonical_key(instrument_key)
        last_str = last_calibration.isoformat() if last_calibration else None
        due_str = calibration_due.isoformat() if calibration_due else None
        cur = self.conn.execute(
            """
            UPDATE instruments
            SET last_calibration = ?, calibration_due = ?, updated_at = CURRENT_TIMESTAMP
            WHERE reference = ?
            """,
            (last_str, due_str, key),
        )
        if cur.rowcount == 0:
            self.conn.rollback()
            raise NotFoundError(f"Instrument not found: {instrument_key!r}")
        self.conn.commit()

    def set_instrument_status(self, instrument_key: str, status: str, reason: str | None = None) -> None:
        inst = self.get_instrument_by_key(instrument_key)
        self.conn.execute(
            "UPDATE instruments SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status, inst.id),
        )
        self.log_audit("instrument", inst.id, "set_status", field="status",
                       old_value=inst.status.value, new_value=status, reason=reason)

    def set_frequency_for_type(self, instrument_type, months: int) -> int:
        """Store months as the override on every instrument of the type. Returns rows updated."""
        cur = self.conn.execute(
            """
            UPDATE instruments
            SET calibration_frequency = ?, updated_at = CURRENT_TIMESTAMP
            WHERE instrument_type = ?
            """,
            (months, _type_value(instrument_type)),
        )
        self.conn.commit()
        return cur.rowcount

    # ---------- Frequency configs ----------

    def get_frequency_config(self, instrument_type) -> FrequencyConfig | None:
        cur = self.conn.execute(
            "SELECT * FROM frequency_configs WHERE instrument_type = ?",
            (_type_value(instrument_type),),
        )
        row = cur.fetchone()
        return FrequencyConfig.from_row(row) if row else None

    def list_frequency_configs(self) -> list[FrequencyConfig]:
        cur = self.conn.execute("SELECT * FROM frequency_configs ORDER BY instrument_type ASC")
        return [FrequencyConfig.from_row(r) for r in cur.fetchall()]

    def upsert_frequency_config(self, cfg: FrequencyConfig) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                """
                INSERT INTO frequency_configs (instrument_type, frequency_value, frequency_unit, updated_by)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(instrument_type) DO UPDATE SET
                    frequency_value = excluded.frequency_value,
                    frequency_unit  = excluded.frequency_unit,
                    updated_by      = excluded.updated_by,
                    updated_at      = CURRENT_TIMESTAMP
                """,
                (cfg.instrument_type.value, cfg.frequency_value, cfg.frequency_unit.value, cfg.updated_by),
            )
            row = cur.execute(
                "SELECT id FROM frequency_configs WHERE instrument_type = ?",
                (cfg.instrument_type.value,),
            ).fetchone()
            self.log_audit(
                "frequency", row["id"], "save",
                field="frequency",
                new_value=f"{cfg.frequency_value} {cfg.frequency_unit.value}",
                actor=cfg.updated_by,
                _commit=False,
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def delete_frequency_config(self, instrument_type) -> bool:
        cur = self.conn.execute(
            "DELETE FROM frequency_configs WHERE instrument_type = ?",
            (_type_value(instrument_type),),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ---------- Calibration records ----------

    def insert_calibration(self, record: CalibrationRecord) -> CalibrationRecord:
        data = record.to_dict()
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                """
                INSERT INTO calibration_records
                    (instrument_key, instrument_type, calibration_date, outcome, operator,
                     notes, next_calibration, test_results_json, details_json)
                VALUES
                    (:instrument_key, :instrument_type, :calibration_date, :outcome, :operator,
                     :notes, :next_calibration, :test_results_json, :details_json)
                """,
                data,
            )
            rec_id = cur.lastrowid
            self.log_audit(
                "calibration",
                rec_id,
                "create",
                new_value=f"instrument={data['instrument_key']}, date={data['calibration_date']}",
                actor=record.operator,
                _commit=False,
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_calibration(rec_id)

    def get_calibration(self, record_id: int) -> CalibrationRecord | None:
        cur = self.conn.execute("SELECT * FROM calibration_records WHERE id = ?", (record_id,))
        row = cur.fetchone()
        return CalibrationRecord.from_row(row) if row else None

    def list_calibrations(self, instrument_key: str, active_only: bool = True,
                          instrument_type=None) -> list[CalibrationRecord]:
        """Records for one instrument, newest first."""
        sql = "SELECT * FROM calibration_records WHERE instrument_key = ?"
        params: list = [canonical_key(instrument_key)]
        if instrument_type is not None:
            sql += " AND instrument_type = ?"
            params.append(_type_value(instrument_type))
        if active_only:
            sql += f" AND {_ACTIVE}"
        sql += " ORDER BY calibration_date DESC, id DESC"
        cur = self.conn.execute(sql, params)
        return [CalibrationRecord.from_row(r) for r in cur.fetchall()]

    def list_calibration_rows_for_type(self, instrument_type,
                                       instrument_keys: Iterable[str] | None = None,
                                       active_only: bool = True) -> list[dict]:
        """
        Raw rows for every instrument of a type in one query (bulk list views).
        Rows are returned undecoded so one malformed row does not fail the batch.
        """
        sql = "SELECT * FROM calibration_records WHERE instrument_type = ?"
        params: list = [_type_value(instrument_type)]
        if instrument_keys is not None:
            keys = [canonical_key(k) for k in instrument_keys]
            if not keys:
                return []
            sql += f" AND instrument_key IN ({_placeholders(keys)})"
            params.extend(keys)
        if active_only:
            sql += f" AND {_ACTIVE}"
        sql += " ORDER BY instrument_key ASC, calibration_date DESC, id DESC"
        cur = self.conn.execute(sql, params)
        return [dict(r) for r in cur.fetchall()]

    def list_calibrations_for_instrument_type(self, instrument_type, active_only: bool = True):
        return [
            CalibrationRecord.from_row(r)
            for r in self.list_calibration_rows_for_type(instrument_type, active_only=active_only)
        ]

    def list_active_before(self, instrument_key: str, instrument_type, before: date) -> list[CalibrationRecord]:
        """Active records for the instrument with calibration_date strictly before the given date."""
        cur = self.conn.execute(
            f"""
            SELECT * FROM calibration_records
            WHERE instrument_key = ? AND instrument_type = ?
              AND date(calibration_date) < date(?)
              AND {_ACTIVE}
            ORDER BY calibration_date ASC, id ASC
            """,
            (canonical_key(instrument_key), _type_value(instrument_type), before.isoformat()),
        )
        return [CalibrationRecord.from_row(r) for r in cur.fetchall()]

    def update_next_calibration(self, record_id: int, next_calibration: date | None) -> None:
        self.conn.execute(
            "UPDATE calibration_records SET next_calibration = ? WHERE id = ?",
            (next_calibration.isoformat() if next_calibration else None, record_id),
        )
        self.conn.commit()

    # ---------- Archive: copy-then-delete ----------

    def move_to_archive(self, record_ids: list[int], archived_by: str | None,
                        reason: str = "new_calibration") -> int:
        """
        Copy the records into archived_calibration_records and delete the
        originals in one transaction. Returns number moved.
        """
        if not record_ids:
            return 0
        cols = ", ".join(_RECORD_COPY_COLUMNS)
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                f"""
                INSERT INTO archived_calibration_records
                    (original_id, {cols}, archived_by, reason_for_archiving)
                SELECT id, {cols}, ?, ?
                FROM calibration_records
                WHERE id IN ({_placeholders(record_ids)})
                """,
                [archived_by, reason] + list(record_ids),
            )
            copied = cur.rowcount
            cur.execute(
                f"DELETE FROM calibration_records WHERE id IN ({_placeholders(record_ids)})",
                list(record_ids),
            )
            if cur.rowcount != copied:
                raise sqlite3.IntegrityError(
                    f"Archive copy/delete mismatch: copied {copied}, deleted {cur.rowcount}"
                )
            for rid in record_ids:
                self.log_audit("calibration", rid, "archive", field="location",
                               new_value="archived_calibration_records",
                               reason=reason, actor=archived_by, _commit=False)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return copied

    def list_archived_copies(self, instrument_type, instrument_key: str | None = None) -> list[CalibrationRecord]:
        sql = "SELECT * FROM archived_calibration_records WHERE instrument_type = ?"
        params: list = [_type_value(instrument_type)]
        if instrument_key is not None:
            sql += " AND instrument_key = ?"
            params.append(canonical_key(instrument_key))
        sql += " ORDER BY archived_at DESC, calibration_date DESC, id DESC"
        cur = self.conn.execute(sql, params)
        return [CalibrationRecord.from_row(r) for r in cur.fetchall()]

    def archived_copy_stats(self, instrument_type) -> dict:
        cur = self.conn.execute(
            """
            SELECT COUNT(*) AS total, MIN(archived_at) AS oldest, MAX(archived_at) AS newest
            FROM archived_calibration_records
            WHERE instrument_type = ?
            """,
            (_type_value(instrument_type),),
        )
        return dict(cur.fetchone())

    # ---------- Archive: soft-tag ----------

    def tag_archived(self, record_ids: list[int], archived_by: str | None,
                     reason: str = "new_calibration") -> int:
        """Set archived_at/archived_by in place. Returns number tagged."""
        if not record_ids:
            return 0
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                f"""
                UPDATE calibration_records
                SET archived_at = datetime('now'), archived_by = ?
                WHERE id IN ({_placeholders(record_ids)}) AND {_ACTIVE}
                """,
                [archived_by] + list(record_ids),
            )
            tagged = cur.rowcount
            for rid in record_ids:
                self.log_audit("calibration", rid, "archive", field="archived_at",
                               new_value="archived", reason=reason,
                               actor=archived_by, _commit=False)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return tagged

    def restore_tagged(self, record_id: int, restored_by: str | None) -> CalibrationRecord:
        """Clear the archival marker and record who/when restored. Raises NotFoundError."""
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                """
                UPDATE calibration_records
                SET archived_at = NULL, archived_by = NULL,
                    restored_at = datetime('now'), restored_by = ?
                WHERE id = ?
                """,
                (restored_by, record_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Calibration record not found: {record_id}")
            self.log_audit("calibration", record_id, "restore", field="archived_at",
                           old_value="archived", new_value=None,
                           actor=restored_by, _commit=False)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_calibration(record_id)

    def list_tagged_archived(self, instrument_type, instrument_key: str | None = None) -> list[CalibrationRecord]:
        sql = (
            "SELECT * FROM calibration_records "
            "WHERE instrument_type = ? AND archived_at IS NOT NULL AND archived_at != ''"
        )
        params: list = [_type_value(instrument_type)]
        if instrument_key is not None:
            sql += " AND instrument_key = ?"
            params.append(canonical_key(instrument_key))
        sql += " ORDER BY archived_at DESC, calibration_date DESC, id DESC"
        cur = self.conn.execute(sql, params)
        return [CalibrationRecord.from_row(r) for r in cur.fetchall()]

    def tagged_archive_stats(self, instrument_type) -> dict:
        cur = self.conn.execute(
            """
            SELECT COUNT(*) AS total, MIN(archived_at) AS oldest, MAX(archived_at) AS newest
            FROM calibration_records
            WHERE instrument_type = ? AND archived_at IS NOT NULL AND archived_at != ''
            """,
            (_type_value(instrument_type),),
        )
        return dict(cur.fetchone())

    def count_active(self, instrument_type) -> int:
        cur = self.conn.execute(
            f"SELECT COUNT(*) AS c FROM calibration_records WHERE instrument_type = ? AND {_ACTIVE}",
            (_type_value(instrument_type),),
        )
        return cur.fetchone()["c"]

    def purge_tagged_archived(self, instrument_type, archived_before: str, deleted_by: str | None) -> int:
        """Permanently delete soft-tagged records archived before the given 'YYYY-MM-DD HH:MM:SS'."""
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            ids = [
                r["id"] for r in cur.execute(
                    """
                    SELECT id FROM calibration_records
                    WHERE instrument_type = ? AND archived_at IS NOT NULL AND archived_at != ''
                      AND datetime(archived_at) < datetime(?)
                    """,
                    (_type_value(instrument_type), archived_before),
                ).fetchall()
            ]
            if ids:
                cur.execute(f"DELETE FROM calibration_records WHERE id IN ({_placeholders(ids)})", ids)
                for rid in ids:
                    self.log_audit("calibration", rid, "purge", reason="archive retention",
                                   actor=deleted_by, _commit=False)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return len(ids)
