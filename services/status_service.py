# services/status_service.py - Operational status of instruments
#
# Status is recomputed on every read from the manual flag and calibration
# history; nothing about it is stored.

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable, Optional

from config import DEFAULT_SETTINGS, EngineSettings
from domain.instrument_types import InstrumentType, get_profile
from domain.models import (
    CalibrationRecord,
    CalibrationSummary,
    Instrument,
    InstrumentStatus,
    ManualStatus,
    StatusReport,
)
from services import aggregation_service

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)

LABEL_OVERDUE = "Overdue"
LABEL_DUE_TODAY = "Due Today"
LABEL_DUE_SOON = "Due Soon"
LABEL_OK = "OK"


def days_until_due(due: Optional[date], today: Optional[date] = None) -> Optional[int]:
    """Whole days from today to the due date; 0 = due today, negative = overdue."""
    if due is None:
        return None
    today = today or date.today()
    if isinstance(today, datetime):
        today = today.date()
    if isinstance(due, datetime):
        due = due.date()
    return (due - today).days


def due_label(days: Optional[int], due_soon_days: int = DEFAULT_SETTINGS.due_soon_days) -> Optional[str]:
    if days is None:
        return None
    if days < 0:
        return LABEL_OVERDUE
    if days == 0:
        return LABEL_DUE_TODAY
    if days <= due_soon_days:
        return LABEL_DUE_SOON
    return LABEL_OK


def most_recent_record(history: Iterable[CalibrationRecord]) -> Optional[CalibrationRecord]:
    """Latest active record by calibration date (ties: highest id)."""
    active = [r for r in history if not r.is_archived]
    if not active:
        return None
    return max(active, key=lambda r: (r.calibration_date, r.id or 0))


def effective_summary(instrument: Instrument, history: Iterable[CalibrationRecord]) -> CalibrationSummary:
    """
    Stored summary for types that write it back (when present), otherwise
    computed from the history.
    """
    if get_profile(instrument.instrument_type).summary_stored and instrument.last_calibration:
        return CalibrationSummary(instrument.last_calibration, instrument.calibration_due)
    return aggregation_service.summarize(history)


def _all_tests_failed(record: Optional[CalibrationRecord]) -> bool:
    if record is None or not record.test_results:
        return False
    return all(not r.passed for r in record.test_results)


def evaluate_status(
    instrument: Instrument,
    history: Iterable[CalibrationRecord],
    today: Optional[date] = None,
    summary: Optional[CalibrationSummary] = None,
) -> InstrumentStatus:
    """
    First matching rule wins:
      1. manual out-of-service flag
      2. no calibration date or no due date
      3. air pump whose latest calibration failed every flow test
      4. due date before today -> overdue
      5. active
    """
    history = list(history)
    if instrument.status == ManualStatus.OUT_OF_SERVICE:
        return InstrumentStatus.OUT_OF_SERVICE

    if summary is None:
        summary = effective_summary(instrument, history)
    if summary.last_calibration is None or summary.calibration_due is None:
        return InstrumentStatus.OUT_OF_SERVICE

    if instrument.instrument_type == InstrumentType.AIR_PUMP and _all_tests_failed(most_recent_record(history)):
        return InstrumentStatus.OUT_OF_SERVICE

    days = days_until_due(summary.calibration_due, today)
    if days < 0:
        return InstrumentStatus.OVERDUE
    return InstrumentStatus.ACTIVE


def build_report(
    instrument: Instrument,
    history: Iterable[CalibrationRecord],
    today: Optional[date] = None,
    summary: Optional[CalibrationSummary] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> StatusReport:
    history = list(history)
    today = today or date.today()
    if summary is None:
        summary = effective_summary(instrument, history)
    status = evaluate_status(instrument, history, today, summary)
    days = days_until_due(summary.calibration_due, today)
    return StatusReport(
        instrument_key=instrument.key,
        instrument_type=instrument.instrument_type,
        status=status,
        last_calibration=summary.last_calibration,
        calibration_due=summary.calibration_due,
        days_until_due=days,
        due_label=due_label(days, settings.due_soon_days),
        section=instrument.section,
    )


def evaluate_instruments(
    repo: "CalibrationRepository",
    instrument_type=None,
    today: Optional[date] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> list[StatusReport]:
    """
    Bulk read path: one aggregation pass per instrument type, then a status
    report for every instrument. Instruments whose history could not be read
    are evaluated with no calibration data.
    """
    instruments = repo.list_instruments(instrument_type)
    by_type: dict[InstrumentType, list[Instrument]] = {}
    for inst in instruments:
        by_type.setdefault(inst.instrument_type, []).append(inst)

    reports = []
    for t, members in by_type.items():
        keys = [i.key for i in members]
        agg = aggregation_service.aggregate_summary(repo, keys, t)
        histories = aggregation_service.group_by_key(agg.records)
        for inst in members:
            summary = agg.get(inst.key)
            history = histories.get(inst.key, [])
            if get_profile(t).summary_stored and inst.last_calibration:
                summary = CalibrationSummary(inst.last_calibration, inst.calibration_due)
            reports.append(build_report(inst, history, today, summary, settings))
        if agg.failures:
            logger.warning(
                "Status for %d %s instrument(s) may be stale: %s",
                len(agg.failures), t.value, ", ".join(f.instrument_key for f in agg.failures),
            )
    return reports
