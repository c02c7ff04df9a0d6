# fibre_service.py - Fibre counting and airborne fibre concentration
#
# Grid totals, filter countability, sample duration, graticule constant
# resolution and the reported concentration for air-sample analyses.

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Optional

from config import DEFAULT_SETTINGS
from domain.errors import ValidationError
from domain.instrument_types import InstrumentType
from domain.models import (
    CalibrationRecord,
    ConcentrationInputs,
    ConcentrationResult,
    SampleAnalysis,
)

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)

GRID_ROWS = 5
GRID_COLUMNS = 20
HALF_FIBRE = "0.5"
HALF_FIBRE_SHORTHAND = "/"

MIN_FIBRES_FOR_CALCULATION = 10
REPORTING_THRESHOLD = 0.0149
BELOW_LIMIT_LABEL = "<0.01"
UNCOUNTABLE_LABEL = "UDD"
NOT_APPLICABLE_LABEL = "N/A"

FILTER_25MM = "25mm"
FILTER_13MM = "13mm"

PASS = "pass"
FAIL = "fail"


# -----------------------------------------------------------------------------
# Grid
# -----------------------------------------------------------------------------

def normalize_cell(value) -> str:
    """Cell text as stored: "" for empty, "0.5" for the "/" shorthand."""
    if value is None:
        return ""
    text = str(value).strip()
    if text == HALF_FIBRE_SHORTHAND:
        return HALF_FIBRE
    return text


def cell_value(value) -> Optional[float]:
    """Numeric value of a cell, None when empty. Raises ValidationError for bad input."""
    text = normalize_cell(value)
    if text == "":
        return None
    try:
        n = float(text)
    except ValueError:
        raise ValidationError(f"Fibre count must be a number, not {value!r}") from None
    if math.isnan(n) or math.isinf(n) or n < 0:
        raise ValidationError(f"Fibre count must be a non-negative number, not {value!r}")
    return n


def _check_shape(grid) -> None:
    if len(grid) != GRID_ROWS or any(len(row) != GRID_COLUMNS for row in grid):
        raise ValidationError(f"Fibre count grid must be {GRID_ROWS} rows of {GRID_COLUMNS} fields")


def count_totals(grid) -> tuple[float, int]:
    """(fibres counted, fields counted). Fibres rounded to 1 decimal; a field is any non-empty cell."""
    _check_shape(grid)
    fibres = 0.0
    fields = 0
    for row in grid:
        for cell in row:
            n = cell_value(cell)
            if n is None:
                continue
            fibres += n
            fields += 1
    return round(fibres, 1), fields


def zero_filled_grid() -> list[list[str]]:
    return [["0"] * GRID_COLUMNS for _ in range(GRID_ROWS)]


def build_sample_analysis(
    fibre_counts,
    edges_distribution: Optional[str] = None,
    background_dust: Optional[str] = None,
    uncountable_due_to_dust: bool = False,
) -> SampleAnalysis:
    """Normalize the grid and derive totals. A failed background dust check forces UDD."""
    grid = [[normalize_cell(c) for c in row] for row in fibre_counts]
    fibres, fields = count_totals(grid)
    dust = (background_dust or "").strip().lower() or None
    edges = (edges_distribution or "").strip().lower() or None
    return SampleAnalysis(
        fibre_counts=grid,
        fibres_counted=fibres,
        fields_counted=fields,
        edges_distribution=edges,
        background_dust=dust,
        uncountable_due_to_dust=bool(uncountable_due_to_dust) or dust == FAIL,
    )


def is_filter_uncountable(analysis: SampleAnalysis) -> bool:
    return (
        analysis.edges_distribution == FAIL
        or analysis.background_dust == FAIL
        or analysis.uncountable_due_to_dust
    )


# -----------------------------------------------------------------------------
# Sample duration
# -----------------------------------------------------------------------------

def _parse_clock(value: str, field_name: str) -> datetime:
    text = (value or "").strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValidationError(f"{field_name} must be HH:MM, not {value!r}")


def sample_duration_minutes(start_time: str, end_time: str) -> int:
    """Minutes between two clock times; an end before the start is on the next day."""
    start = _parse_clock(start_time, "Start time")
    end = _parse_clock(end_time, "End time")
    if end < start:
        end += timedelta(days=1)
    return round((end - start).total_seconds() / 60)


# -----------------------------------------------------------------------------
# Graticule constant
# -----------------------------------------------------------------------------

def resolve_graticule_constant(
    graticule_records: Iterable[CalibrationRecord],
    microscope_reference: Optional[str],
    filter_size: Optional[str],
    default: float = DEFAULT_SETTINGS.default_graticule_constant,
) -> tuple[float, str]:
    """
    Constant for a microscope and filter size from graticule calibrations.
    Records match on details["microscope_reference"] (case-insensitive).
    Passing records are preferred; if none passed, all matches are used.
    The latest record per graticule is taken, then the latest overall.
    Returns (constant, source description).
    """
    records = list(graticule_records)
    if not microscope_reference or not filter_size or not records:
        return default, f"Default ({default:g})"

    wanted = microscope_reference.strip().lower()
    matching = [
        r for r in records
        if str(r.details.get("microscope_reference") or "").strip().lower() == wanted
    ]
    if not matching:
        return default, f"Default (no graticule calibration for {microscope_reference})"

    passing = [r for r in matching if (r.outcome or "").lower() == PASS]
    candidates = passing or matching

    latest_by_graticule: dict[str, CalibrationRecord] = {}
    for r in candidates:
        current = latest_by_graticule.get(r.instrument_key)
        if current is None or r.calibration_date > current.calibration_date:
            latest_by_graticule[r.instrument_key] = r
    latest = max(latest_by_graticule.values(), key=lambda r: r.calibration_date)
    graticule = latest.instrument_key

    if filter_size == FILTER_25MM:
        constant = latest.details.get("constant_25mm")
    elif filter_size == FILTER_13MM:
        constant = latest.details.get("constant_13mm")
    else:
        return default, "Default (invalid filter size)"
    if not constant:
        return default, f"Default (no constant{filter_size} for {graticule})"
    constant = float(constant)
    return constant, f"Graticule {graticule} - {filter_size} ({constant:g})"


def resolve_graticule_constant_for(
    repo: "CalibrationRepository",
    microscope_reference: Optional[str],
    filter_size: Optional[str],
    default: float = DEFAULT_SETTINGS.default_graticule_constant,
) -> tuple[float, str]:
    """resolve_graticule_constant over the active graticule calibrations in the store."""
    records = repo.list_calibrations_for_instrument_type(InstrumentType.GRATICULE, active_only=True)
    constant, source = resolve_graticule_constant(records, microscope_reference, filter_size, default)
    if source.startswith("Default"):
        logger.info("Using default graticule constant for %s %s: %s", microscope_reference, filter_size, source)
    return constant, source


# -----------------------------------------------------------------------------
# Concentration
# -----------------------------------------------------------------------------

def _validate_inputs(inputs: ConcentrationInputs) -> None:
    for name in ("graticule_constant", "fibres_counted", "fields_counted", "flow_rate", "minutes"):
        value = getattr(inputs, name)
        try:
            n = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be a number, not {value!r}") from None
        if math.isnan(n) or math.isinf(n) or n < 0:
            raise ValidationError(f"{name} must be a non-negative number, not {value!r}")


def concentration_value(inputs: ConcentrationInputs) -> Optional[float]:
    """
    constant x (max(fibres, 10) / fields) x 1 / (flow_rate x 1000 x minutes), 4 decimals.
    None when fields, flow rate or minutes is zero.
    """
    _validate_inputs(inputs)
    if not inputs.fields_counted or not inputs.flow_rate or not inputs.minutes:
        return None
    fibres = max(float(inputs.fibres_counted), MIN_FIBRES_FOR_CALCULATION)
    value = (
        inputs.graticule_constant
        * (fibres / inputs.fields_counted)
        * (1 / (inputs.flow_rate * 1000 * inputs.minutes))
    )
    return round(value, 4)


def calculate_concentration(inputs: ConcentrationInputs) -> ConcentrationResult:
    """
    Reported label, in order: "N/A" for a failed sample, "UDD" when
    uncountable due to dust, "N/A" when not computable, "<0.01" when the
    value is below 0.0149 with fewer than 10 raw fibres, else 2 decimals.
    """
    if inputs.sample_failed:
        return ConcentrationResult(None, NOT_APPLICABLE_LABEL, inputs.is_blank)
    if inputs.uncountable_due_to_dust:
        # counts are not meaningful, so they are not validated
        return ConcentrationResult(None, UNCOUNTABLE_LABEL, inputs.is_blank)
    value = concentration_value(inputs)
    if value is None:
        return ConcentrationResult(None, NOT_APPLICABLE_LABEL, inputs.is_blank)
    if value < REPORTING_THRESHOLD and inputs.fibres_counted < MIN_FIBRES_FOR_CALCULATION:
        return ConcentrationResult(value, BELOW_LIMIT_LABEL, inputs.is_blank)
    return ConcentrationResult(value, f"{value:.2f}", inputs.is_blank)


def batch_passes(results: Iterable[ConcentrationResult]) -> bool:
    """A batch passes only if every non-blank sample reports "<0.01"."""
    return all(r.reported_label == BELOW_LIMIT_LABEL for r in results if not r.is_blank)
