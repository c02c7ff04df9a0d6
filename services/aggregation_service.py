# services/aggregation_service.py - Last calibration / next due computed from history
#
# Used for instrument types that do not store the summary on the instrument.
# Records are joined to instruments by canonical key (see domain.models.canonical_key).

import logging
import sqlite3
from typing import TYPE_CHECKING, Iterable

from domain.errors import AggregationPartialFailure, ValidationError
from domain.instrument_types import get_profile, parse_instrument_type
from domain.models import AggregationResult, CalibrationRecord, CalibrationSummary, canonical_key

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)


def summarize(records: Iterable[CalibrationRecord]) -> CalibrationSummary:
    """
    last_calibration = latest event date; calibration_due = latest due date
    among records that have one (a later-recorded due date always wins).
    """
    last = None
    due = None
    for r in records:
        if r.calibration_date is not None and (last is None or r.calibration_date > last):
            last = r.calibration_date
        if r.next_calibration is not None and (due is None or r.next_calibration > due):
            due = r.next_calibration
    return CalibrationSummary(last, due)


def group_by_key(records: Iterable[CalibrationRecord]) -> dict[str, list[CalibrationRecord]]:
    grouped: dict[str, list[CalibrationRecord]] = {}
    for r in records:
        grouped.setdefault(canonical_key(r.instrument_key), []).append(r)
    return grouped


def aggregate_one(repo: "CalibrationRepository", instrument_key: str, instrument_type=None) -> CalibrationSummary:
    """
    Summary for a single instrument. Raises NotFoundError only when the type
    must be looked up and the instrument does not exist; a failed history
    read is logged and yields an empty summary.
    """
    key = canonical_key(instrument_key)
    if instrument_type is None:
        instrument_type = repo.get_instrument_by_key(key).instrument_type
    try:
        records = repo.list_calibrations(key, active_only=True, instrument_type=instrument_type)
    except (sqlite3.Error, ValidationError, ValueError) as e:
        logger.warning("Could not read calibration history for %s: %s", key, e)
        return CalibrationSummary()
    return summarize(records)


def aggregate_summary(
    repo: "CalibrationRepository",
    instrument_keys,
    instrument_type=None,
):
    """
    aggregate_summary(repo, "REF") -> CalibrationSummary
    aggregate_summary(repo, ["REF1", "REF2"], type) -> AggregationResult

    The list form reads all records for the type in one query. Instruments
    whose rows cannot be read or decoded are listed in
    AggregationResult.failures and get an empty summary; the rest proceed.
    """
    if isinstance(instrument_keys, str):
        return aggregate_one(repo, instrument_keys, instrument_type)

    keys = list(dict.fromkeys(canonical_key(k) for k in instrument_keys))
    if instrument_type is not None:
        return _aggregate_bulk(repo, keys, parse_instrument_type(instrument_type))

    # No type given: group keys by each instrument's own type
    result = AggregationResult()
    by_type: dict = {}
    for key in keys:
        inst = repo.find_instrument(key)
        if inst is None:
            result.summaries[key] = CalibrationSummary()
            result.failures.append(AggregationPartialFailure(key, "instrument not found"))
            continue
        by_type.setdefault(inst.instrument_type, []).append(key)
    for t, members in by_type.items():
        part = _aggregate_bulk(repo, members, t)
        result.summaries.update(part.summaries)
        result.failures.extend(part.failures)
        result.records.extend(part.records)
    return result


def _aggregate_bulk(repo: "CalibrationRepository", keys: list[str], instrument_type) -> AggregationResult:
    result = AggregationResult()
    if not keys:
        return result

    try:
        rows = repo.list_calibration_rows_for_type(instrument_type, keys, active_only=True)
    except sqlite3.Error as e:
        logger.warning(
            "Bulk calibration read for %s failed (%s); reading instruments one by one",
            instrument_type.value, e,
        )
        return _aggregate_each(repo, keys, instrument_type)

    decoded: dict[str, list[CalibrationRecord]] = {k: [] for k in keys}
    failed: dict[str, AggregationPartialFailure] = {}
    for row in rows:
        key = canonical_key(row.get("instrument_key"))
        if key in failed or key not in decoded:
            continue
        try:
            decoded[key].append(CalibrationRecord.from_row(row))
        except (ValidationError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable calibration record id=%s for %s: %s", row.get("id"), key, e)
            failed[key] = AggregationPartialFailure(key, e)

    for key in keys:
        if key in failed:
            result.summaries[key] = CalibrationSummary()
            result.failures.append(failed[key])
            continue
        records = decoded[key]
        result.summaries[key] = summarize(records)
        result.records.extend(records)
    return result


def _aggregate_each(repo: "CalibrationRepository", keys: list[str], instrument_type) -> AggregationResult:
    result = AggregationResult()
    for key in keys:
        try:
            records = repo.list_calibrations(key, active_only=True, instrument_type=instrument_type)
        except (sqlite3.Error, ValidationError, ValueError) as e:
            logger.warning("Could not read calibration history for %s: %s", key, e)
            result.summaries[key] = CalibrationSummary()
            result.failures.append(AggregationPartialFailure(key, e))
            continue
        result.summaries[key] = summarize(records)
        result.records.extend(records)
    return result



def refresh_stored_summary(repo: "CalibrationRepository", instrument_key: str, instrument_type) -> bool:
    """
    Recompute the summary from history and write it to the instrument, for
    types whose summary is stored there. Returns True when written; store
    errors are logged.
    """
    t = parse_instrument_type(instrument_type)
    if not get_profile(t).summary_stored:
        return False
    key = canonical_key(instrument_key)
    summary = aggregate_one(repo, key, t)
    try:
        repo.update_instrument_summary(key, summary.last_calibration, summary.calibration_due)
    except sqlite3.Error as e:
        logger.error("Could not update calibration summary for %s: %s", key, e, exc_info=True)
        return False
    return True
