# domain/models.py - Domain entities (dataclasses)
#
# Typed models for cross-layer data. Conversion from sqlite3.Row/dict
# happens at the repository boundary only. Dates are datetime.date in the
# domain and ISO-8601 text in the database.

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from domain.errors import ValidationError
from domain.instrument_types import ArchiveStrategy, InstrumentType, parse_instrument_type


def canonical_key(reference: Any) -> str:
    """Canonical instrument identity: the human-readable reference, trimmed and upper-cased."""
    return str(reference if reference is not None else "").strip().upper()


def parse_iso_date(value: Any, field_name: str = "date") -> Optional[date]:
    """
    Parse a date from date/datetime/ISO text. Empty values return None.
    Raises ValidationError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        # Accept "YYYY-MM-DD" and full timestamps ("YYYY-MM-DDTHH:MM:SS", "YYYY-MM-DD HH:MM:SS")
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from None


def _iso(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


class ManualStatus(str, Enum):
    ACTIVE = "active"
    CALIBRATION_DUE = "calibration-due"
    OUT_OF_SERVICE = "out-of-service"

    @classmethod
    def parse(cls, value: Any) -> "ManualStatus":
        if isinstance(value, cls):
            return value
        text = (value or "active").strip().lower().replace(" ", "-")
        for s in cls:
            if s.value == text:
                return s
        raise ValidationError(f"Unknown instrument status flag: {value!r}")


class InstrumentStatus(str, Enum):
    ACTIVE = "Active"
    OVERDUE = "Calibration Overdue"
    OUT_OF_SERVICE = "Out-of-Service"


class FrequencyUnit(str, Enum):
    MONTHS = "months"
    YEARS = "years"


@dataclass
class Instrument:
    """Calibration-tracked equipment. Identity is the reference string."""

    id: Optional[int]
    reference: str
    instrument_type: InstrumentType
    section: Optional[str] = None
    brand_model: Optional[str] = None
    status: ManualStatus = ManualStatus.ACTIVE
    calibration_frequency: Optional[int] = None
    last_calibration: Optional[date] = None
    calibration_due: Optional[date] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> str:
        return canonical_key(self.reference)

    @classmethod
    def from_row(cls, row: Any) -> "Instrument":
        """Build Instrument from sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d.get("id"),
            reference=d.get("reference") or "",
            instrument_type=parse_instrument_type(d.get("instrument_type")),
            section=d.get("section"),
            brand_model=d.get("brand_model"),
            status=ManualStatus.parse(d.get("status")),
            calibration_frequency=d.get("calibration_frequency"),
            last_calibration=parse_iso_date(d.get("last_calibration"), "last_calibration"),
            calibration_due=parse_iso_date(d.get("calibration_due"), "calibration_due"),
            notes=d.get("notes"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __str__(self) -> str:
        """String representation for audit logs."""
        return f"id={self.id}, ref={self.reference}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for repository write operations."""
        return {
            "id": self.id,
            "reference": self.key,
            "instrument_type": self.instrument_type.value,
            "section": self.section,
            "brand_model": self.brand_model,
            "status": self.status.value,
            "calibration_frequency": self.calibration_frequency,
            "last_calibration": _iso(self.last_calibration),
            "calibration_due": _iso(self.calibration_due),
            "notes": self.notes,
        }


@dataclass
class FrequencyConfig:
    instrument_type: InstrumentType
    frequency_value: int
    frequency_unit: FrequencyUnit = FrequencyUnit.MONTHS
    updated_by: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def months(self) -> int:
        if self.frequency_unit == FrequencyUnit.YEARS:
            return int(self.frequency_value) * 12
        return int(self.frequency_value)

    @classmethod
    def from_row(cls, row: Any) -> "FrequencyConfig":
        d = dict(row)
        return cls(
            instrument_type=parse_instrument_type(d["instrument_type"]),
            frequency_value=int(d["frequency_value"]),
            frequency_unit=FrequencyUnit(d.get("frequency_unit") or "months"),
            updated_by=d.get("updated_by"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class FlowTestResult:
    """One air pump flowrate test point (mL/min)."""

    set_flowrate: float
    actual_flowrate: float
    percent_error: Optional[float] = None
    passed: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "set_flowrate": self.set_flowrate,
            "actual_flowrate": self.actual_flowrate,
            "percent_error": self.percent_error,
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FlowTestResult":
        return cls(
            set_flowrate=d["set_flowrate"],
            actual_flowrate=d["actual_flowrate"],
            percent_error=d.get("percent_error"),
            passed=d.get("passed"),
        )


@dataclass
class CalibrationRecord:
    """
    Shared shape for every instrument type's calibration record.
    Type-specific measurements live in details (stored as JSON).
    """

    instrument_key: str
    instrument_type: InstrumentType
    calibration_date: date
    outcome: Optional[str] = None
    operator: Optional[str] = None
    notes: Optional[str] = None
    next_calibration: Optional[date] = None
    test_results: list[FlowTestResult] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    archived_at: Optional[str] = None
    archived_by: Optional[str] = None
    restored_at: Optional[str] = None
    restored_by: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_archived(self) -> bool:
        return bool(self.archived_at)

    @classmethod
    def from_row(cls, row: Any) -> "CalibrationRecord":
        d = dict(row)
        results = json.loads(d.get("test_results_json") or "[]")
        return cls(
            id=d.get("id"),
            instrument_key=d.get("instrument_key") or "",
            instrument_type=parse_instrument_type(d.get("instrument_type")),
            calibration_date=parse_iso_date(d.get("calibration_date"), "calibration_date"),
            outcome=d.get("outcome"),
            operator=d.get("operator"),
            notes=d.get("notes"),
            next_calibration=parse_iso_date(d.get("next_calibration"), "next_calibration"),
            test_results=[FlowTestResult.from_dict(r) for r in results],
            details=json.loads(d.get("details_json") or "{}"),
            archived_at=d.get("archived_at") or None,
            archived_by=d.get("archived_by"),
            restored_at=d.get("restored_at"),
            restored_by=d.get("restored_by"),
            created_at=d.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Column values for INSERT (id and timestamps are assigned by the store)."""
        return {
            "instrument_key": canonical_key(self.instrument_key),
            "instrument_type": self.instrument_type.value,
            "calibration_date": _iso(self.calibration_date),
            "outcome": self.outcome,
            "operator": self.operator,
            "notes": self.notes,
            "next_calibration": _iso(self.next_calibration),
            "test_results_json": json.dumps([r.to_dict() for r in self.test_results]),
            "details_json": json.dumps(self.details, sort_keys=True),
        }


@dataclass(frozen=True)
class CalibrationSummary:
    last_calibration: Optional[date] = None
    calibration_due: Optional[date] = None


@dataclass
class StatusReport:
    instrument_key: str
    instrument_type: InstrumentType
    status: InstrumentStatus
    last_calibration: Optional[date]
    calibration_due: Optional[date]
    days_until_due: Optional[int]
    due_label: Optional[str]
    section: Optional[str] = None

    def to_row(self) -> list[Any]:
        """Flat row for CSV/XLSX export (see status_export.HEADERS)."""
        return [
            self.instrument_key,
            self.instrument_type.value,
            self.section or "",
            self.status.value,
            _iso(self.last_calibration) or "",
            _iso(self.calibration_due) or "",
            "" if self.days_until_due is None else self.days_until_due,
            self.due_label or "",
        ]


@dataclass
class ArchiveResult:
    instrument_key: str
    strategy: ArchiveStrategy
    archived_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AggregationResult:
    summaries: dict[str, CalibrationSummary] = field(default_factory=dict)
    failures: list = field(default_factory=list)
    # Decoded records the summaries were computed from (reused for status evaluation)
    records: list[CalibrationRecord] = field(default_factory=list)

    def get(self, instrument_key: str) -> CalibrationSummary:
        return self.summaries.get(canonical_key(instrument_key), CalibrationSummary())


@dataclass
class SampleAnalysis:
    """
    Fibre count for one air sample. fibre_counts is 5 rows x 20 fields of
    raw cell text; totals are derived from it by fibre_service.
    """

    fibre_counts: list[list[str]]
    fibres_counted: float = 0.0
    fields_counted: int = 0
    edges_distribution: Optional[str] = None
    background_dust: Optional[str] = None
    uncountable_due_to_dust: bool = False


@dataclass
class ConcentrationInputs:
    graticule_constant: float
    fibres_counted: float
    fields_counted: int
    flow_rate: float
    minutes: float
    uncountable_due_to_dust: bool = False
    sample_failed: bool = False
    is_blank: bool = False


@dataclass(frozen=True)
class ConcentrationResult:
    value: Optional[float]
    reported_label: str
    is_blank: bool = False


@dataclass
class CreatedCalibration:
    """Outcome of create_calibration_record: the stored record plus what archiving did."""

    record: CalibrationRecord
    archive: ArchiveResult
    # True when a newer active record already existed and this one was archived on entry
    backdated: bool = False
