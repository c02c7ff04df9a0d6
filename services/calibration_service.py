# services/calibration_service.py - Calibration record creation orchestration
#
# create_calibration_record is the one write path for new calibration events:
#   lock(instrument) -> archive superseded -> fill due date -> insert -> summary write-back
# Type-specific derived outcomes (air pump, acetone vaporiser, bubble flowmeter)
# are computed here before the record is stored.

import logging
import math
from typing import TYPE_CHECKING, Optional

from config import DEFAULT_SETTINGS, EngineSettings
from domain.errors import ValidationError
from domain.instrument_types import InstrumentType
from domain.models import CalibrationRecord, CreatedCalibration, FlowTestResult, parse_iso_date
from services import aggregation_service, archive_service, frequency_service
from services.identity import resolve_actor
from services.locks import InstrumentLockRegistry, instrument_locks

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)

OUTCOME_PASS = "Pass"
OUTCOME_FAIL = "Fail"

AIR_PUMP_SET_FLOWRATES = (1000, 1500, 2000, 3000, 4000)
AIR_PUMP_MAX_ERROR_PERCENT = 5.0

ACETONE_MIN_TEMPERATURE = 65.0
ACETONE_MAX_TEMPERATURE = 100.0

FLOWMETER_VOLUMES = (500, 1000)
FLOWMETER_MAX_DIFFERENCE_PERCENT = 5.0


def _number(value, field_name: str, allow_zero: bool = True) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number, not {value!r}") from None
    if math.isnan(n) or math.isinf(n):
        raise ValidationError(f"{field_name} must be a finite number")
    if n < 0 or (n == 0 and not allow_zero):
        raise ValidationError(f"{field_name} must be {'>= 0' if allow_zero else '> 0'}")
    return n


# -----------------------------------------------------------------------------
# Derived outcomes
# -----------------------------------------------------------------------------

def evaluate_flow_test(set_flowrate, actual_flowrate) -> FlowTestResult:
    """Percent error = |actual - set| / set x 100; passes below 5 %."""
    set_rate = _number(set_flowrate, "Set flowrate", allow_zero=False)
    if set_rate not in AIR_PUMP_SET_FLOWRATES:
        raise ValidationError(
            f"Set flowrate must be one of {', '.join(str(r) for r in AIR_PUMP_SET_FLOWRATES)} mL/min"
        )
    actual = _number(actual_flowrate, "Actual flowrate")
    error = round(abs(actual - set_rate) / set_rate * 100, 2)
    return FlowTestResult(
        set_flowrate=set_rate,
        actual_flowrate=actual,
        percent_error=error,
        passed=error < AIR_PUMP_MAX_ERROR_PERCENT,
    )


def derive_air_pump_outcome(test_results: list[FlowTestResult]) -> str:
    """Pass if at least one flowrate passed; no tests at all is a Fail."""
    if any(r.passed for r in test_results):
        return OUTCOME_PASS
    return OUTCOME_FAIL


def derive_acetone_outcome(temperature) -> str:
    t = _number(temperature, "Temperature")
    return OUTCOME_PASS if ACETONE_MIN_TEMPERATURE <= t <= ACETONE_MAX_TEMPERATURE else OUTCOME_FAIL


def derive_flowmeter_values(flow_rate, volume, runtimes) -> dict:
    """
    Bubble flowmeter check. flow_rate in L/min, volume in mL, runtimes in seconds.
    Returns average_runtime, expected_time, equivalent_flowrate (mL/min), difference (%).
    Values that cannot be computed are None.
    """
    rate = _number(flow_rate, "Flow rate", allow_zero=False)
    vol = _number(volume, "Bubble flow volume", allow_zero=False)
    if vol not in FLOWMETER_VOLUMES:
        raise ValidationError("Bubble flow volume must be 500 or 1000 mL")
    times = [_number(r, "Runtime") for r in (runtimes or [])]

    values = {
        "average_runtime": None,
        "expected_time": round(vol / (rate * 1000) * 60, 2),
        "equivalent_flowrate": None,
        "difference": None,
    }
    if len(times) != 3 or not all(times):
        return values
    average = sum(times) / 3
    rate_ml = rate * 1000
    equivalent = (vol / rate_ml * 60) / average * rate_ml
    values["average_runtime"] = round(average, 2)
    values["equivalent_flowrate"] = round(equivalent, 2)
    values["difference"] = round(abs((equivalent - rate_ml) / rate_ml * 100), 2)
    return values


def _apply_derived_fields(instrument_type: InstrumentType, record: CalibrationRecord) -> None:
    if instrument_type == InstrumentType.AIR_PUMP:
        if record.test_results:
            record.test_results = [
                evaluate_flow_test(r.set_flowrate, r.actual_flowrate) for r in record.test_results
            ]
            record.outcome = derive_air_pump_outcome(record.test_results)
        elif record.outcome is None:
            # no flow tests and nothing entered
            record.outcome = OUTCOME_FAIL
    elif instrument_type == InstrumentType.ACETONE_VAPORISER and "temperature" in record.details:
        record.outcome = derive_acetone_outcome(record.details["temperature"])
    elif instrument_type == InstrumentType.BUBBLE_FLOWMETER and "flow_rate" in record.details:
        values = derive_flowmeter_values(
            record.details.get("flow_rate"),
            record.details.get("volume"),
            record.details.get("runtimes"),
        )
        record.details.update(values)
        if values["difference"] is not None and record.outcome is None:
            record.outcome = (
                OUTCOME_PASS if values["difference"] < FLOWMETER_MAX_DIFFERENCE_PERCENT else OUTCOME_FAIL
            )


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------

def create_calibration_record(
    repo: "CalibrationRepository",
    instrument,
    calibration_date,
    outcome: Optional[str] = None,
    operator: Optional[str] = None,
    notes: Optional[str] = None,
    next_calibration=None,
    test_results: Optional[list] = None,
    details: Optional[dict] = None,
    actor: Optional[str] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    locks: InstrumentLockRegistry = instrument_locks,
) -> CreatedCalibration:
    """
    Validate and store a calibration event for an instrument (reference or
    database id). Earlier records are archived first; an archiving failure
    is logged and returned in the result, it never blocks the insert.

    Raises ValidationError on bad input, NotFoundError for an unknown instrument.
    """
    key = repo.resolve_instrument_key(instrument)
    inst = repo.get_instrument_by_key(key)
    cal_date = parse_iso_date(calibration_date, "calibration date")
    if cal_date is None:
        raise ValidationError("Calibration date is required")
    next_due = parse_iso_date(next_calibration, "next calibration date")
    if next_due is not None and next_due < cal_date:
        raise ValidationError("Next calibration date cannot be before the calibration date")

    results = []
    for r in test_results or []:
        results.append(r if isinstance(r, FlowTestResult) else FlowTestResult.from_dict(r))
    record = CalibrationRecord(
        instrument_key=key,
        instrument_type=inst.instrument_type,
        calibration_date=cal_date,
        outcome=outcome,
        operator=operator,
        notes=(notes or "").strip() or None,
        next_calibration=next_due,
        test_results=results,
        details=dict(details or {}),
    )
    _apply_derived_fields(inst.instrument_type, record)
    actor = resolve_actor(repo, actor or operator)

    with locks.hold(key):
        archived = archive_service.archive_superseded(
            repo, key, cal_date, actor=actor, instrument_type=inst.instrument_type
        )
        if not archived.ok:
            logger.warning("Saving %s calibration despite archive failure: %s", key, archived.error)

        if record.next_calibration is None:
            months = frequency_service.resolve_frequency_for(
                repo, inst.instrument_type, inst.calibration_frequency, settings
            )
            record.next_calibration = frequency_service.compute_next_due(cal_date, months, settings)

        stored = repo.insert_calibration(record)
        logger.info(
            "Created %s calibration %d for %s dated %s (next due %s)",
            inst.instrument_type.value, stored.id, key, cal_date.isoformat(),
            stored.next_calibration.isoformat() if stored.next_calibration else "never",
        )

        backdated = archive_service.retire_if_backdated(repo, stored, actor)
        if backdated:
            stored = repo.get_calibration(stored.id) or stored

        aggregation_service.refresh_stored_summary(repo, key, inst.instrument_type)

    return CreatedCalibration(record=stored, archive=archived, backdated=backdated)
