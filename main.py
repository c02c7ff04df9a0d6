# main.py - Command-line entry point

import argparse
import logging
import sqlite3
import sys
from datetime import date
from pathlib import Path

from config import get_user_data_dir, load_db_path, load_engine_settings
from crash_log import configure_logging, install_global_excepthook, log_current_exception, logger
from database import CalibrationRepository, get_connection, initialize_db
from domain.errors import LifecycleError
from domain.models import parse_iso_date
from services import (
    archive_service,
    calibration_service,
    frequency_service,
    instrument_service,
    status_service,
)
from status_export import export_status


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calibration-lifecycle",
        description="Calibration lifecycle: instrument status, archiving and frequencies",
    )
    parser.add_argument("--db", type=str, default=None, help="Path to SQLite database (overrides config)")
    parser.add_argument("--log-dir", type=str, default=None, help="Directory for calibration_lifecycle.log")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("status", help="Evaluate and print instrument statuses")
    p.add_argument("--type", dest="instrument_type", default=None, help="Only this instrument type")
    p.add_argument("--export", default=None, help="Write the report to PATH (.csv or .xlsx)")
    p.add_argument("--today", default=None, help="Evaluate as of this date (YYYY-MM-DD)")

    p = sub.add_parser("add-instrument", help="Register an instrument")
    p.add_argument("reference")
    p.add_argument("instrument_type")
    p.add_argument("--section", default=None)
    p.add_argument("--brand-model", default=None)
    p.add_argument("--frequency", type=int, default=None, help="Calibration frequency override (months)")

    p = sub.add_parser("calibrate", help="Record a calibration event")
    p.add_argument("reference")
    p.add_argument("date", help="Calibration date (YYYY-MM-DD)")
    p.add_argument("--outcome", default=None, help="Pass / Fail")
    p.add_argument("--operator", default=None)
    p.add_argument("--notes", default=None)
    p.add_argument("--next-due", default=None, help="Explicit next calibration date")

    p = sub.add_parser("archive", help="Archive records dated before DATE for an instrument")
    p.add_argument("reference")
    p.add_argument("date", help="New record date (YYYY-MM-DD)")
    p.add_argument("--actor", default=None)

    p = sub.add_parser("restore", help="Restore a soft-archived calibration record")
    p.add_argument("instrument_type")
    p.add_argument("record_id", type=int)
    p.add_argument("--actor", default=None)

    p = sub.add_parser("set-frequency", help="Set the calibration frequency for an instrument type")
    p.add_argument("instrument_type")
    p.add_argument("value", type=int)
    p.add_argument("unit", choices=["months", "years"])
    p.add_argument("--actor", default=None)
    return parser


def _print_reports(reports) -> None:
    if not reports:
        print("No instruments.")
        return
    for r in reports:
        due = r.calibration_due.isoformat() if r.calibration_due else "-"
        label = f" ({r.due_label})" if r.due_label else ""
        print(f"{r.instrument_key:<16} {r.instrument_type.value:<28} {r.status.value:<20} due {due}{label}")


def _run_command(args, repo: CalibrationRepository, settings) -> int:
    if args.command == "status":
        today = parse_iso_date(args.today, "today") or date.today()
        reports = status_service.evaluate_instruments(repo, args.instrument_type, today, settings)
        if args.export:
            count = export_status(reports, Path(args.export))
            print(f"Exported {count} row(s) to {args.export}")
        else:
            _print_reports(reports)
        return 0

    if args.command == "add-instrument":
        inst_id = instrument_service.add_instrument(
            repo, args.reference, args.instrument_type,
            section=args.section, brand_model=args.brand_model,
            calibration_frequency=args.frequency, settings=settings,
        )
        print(f"Added instrument {inst_id}")
        return 0

    if args.command == "calibrate":
        created = calibration_service.create_calibration_record(
            repo, args.reference, args.date,
            outcome=args.outcome, operator=args.operator, notes=args.notes,
            next_calibration=args.next_due, settings=settings,
        )
        rec = created.record
        due = rec.next_calibration.isoformat() if rec.next_calibration else "never"
        print(f"Recorded calibration {rec.id} for {rec.instrument_key}, next due {due}")
        if created.archive.archived_count:
            print(f"Archived {created.archive.archived_count} earlier record(s)")
        if created.backdated:
            print("A newer calibration is already on file; this record was archived")
        if not created.archive.ok:
            print(f"Warning: archiving failed: {created.archive.error}", file=sys.stderr)
        return 0

    if args.command == "archive":
        result = archive_service.archive_superseded(repo, args.reference, args.date, actor=args.actor)
        if not result.ok:
            print(f"Archiving failed: {result.error}", file=sys.stderr)
            return 1
        print(f"Archived {result.archived_count} record(s) for {result.instrument_key}")
        return 0

    if args.command == "restore":
        record = archive_service.restore_calibration(
            repo, args.record_id, actor=args.actor, instrument_type=args.instrument_type
        )
        print(f"Restored calibration record {record.id} ({record.instrument_key})")
        return 0

    if args.command == "set-frequency":
        cfg = frequency_service.save_frequency_config(
            repo, args.instrument_type, args.value, args.unit, actor=args.actor, settings=settings,
        )
        print(f"{cfg.instrument_type.value}: every {cfg.months} month(s)")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None) -> int:
    # Install global hook so any uncaught exception is logged
    install_global_excepthook()
    args = _build_parser().parse_args(argv)

    log_dir = Path(args.log_dir) if args.log_dir else get_user_data_dir() / "logs"
    configure_logging(log_dir, logging.INFO)

    db_path = args.db or load_db_path()
    logger.info("Program start. command=%s db=%s", args.command, db_path)

    try:
        settings = load_engine_settings()
        conn = get_connection(db_path)
        try:
            initialize_db(conn, db_path)
            repo = CalibrationRepository(conn)
            return _run_command(args, repo, settings)
        finally:
            conn.close()
    except LifecycleError as e:
        logger.warning("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except sqlite3.OperationalError as e:
        log_current_exception("Database error in main()")
        print(str(e), file=sys.stderr)
        return 1
    except RuntimeError as e:
        err_msg = str(e).lower()
        if "migration" in err_msg or "schema" in err_msg:
            log_current_exception("Migration/schema error in main()")
            print(str(e), file=sys.stderr)
            return 1
        raise


if __name__ == "__main__":
    sys.exit(main())
