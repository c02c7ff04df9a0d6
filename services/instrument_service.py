# services/instrument_service.py - Instrument registration and manual status
#
# Thin layer: validates input, delegates to repository.
# References are stored in canonical form (trimmed, upper-case).

from typing import TYPE_CHECKING, Optional

from config import DEFAULT_SETTINGS, EngineSettings
from domain.errors import ValidationError
from domain.instrument_types import SECTIONS, parse_instrument_type
from domain.models import Instrument, ManualStatus, canonical_key, parse_iso_date

if TYPE_CHECKING:
    from database import CalibrationRepository


def add_instrument(
    repo: "CalibrationRepository",
    reference: str,
    instrument_type,
    section: Optional[str] = None,
    brand_model: Optional[str] = None,
    status="active",
    calibration_frequency: Optional[int] = None,
    last_calibration=None,
    calibration_due=None,
    notes: Optional[str] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> int:
    """Validate and add instrument. Returns new instrument ID. Raises ValidationError on invalid input."""
    key = canonical_key(reference)
    if not key:
        raise ValidationError("Reference is required")
    if repo.find_instrument(key) is not None:
        raise ValidationError(f"An instrument with reference {key} already exists")
    if section is not None and section not in SECTIONS:
        raise ValidationError(f"Section must be one of: {', '.join(SECTIONS)}")
    if calibration_frequency is not None:
        try:
            calibration_frequency = int(calibration_frequency)
        except (TypeError, ValueError):
            raise ValidationError("Calibration frequency must be a whole number of months") from None
        if not 1 <= calibration_frequency <= settings.max_frequency_months:
            raise ValidationError(
                f"Calibration frequency must be between 1 and {settings.max_frequency_months} months"
            )
    inst = Instrument(
        id=None,
        reference=key,
        instrument_type=parse_instrument_type(instrument_type),
        section=section,
        brand_model=(brand_model or "").strip() or None,
        status=ManualStatus.parse(status),
        calibration_frequency=calibration_frequency,
        last_calibration=parse_iso_date(last_calibration, "last calibration"),
        calibration_due=parse_iso_date(calibration_due, "calibration due"),
        notes=notes,
    )
    return repo.add_instrument(inst)


def set_status(repo: "CalibrationRepository", reference: str, status, reason: str | None = None) -> None:
    """Change the manual status flag (active / calibration-due / out-of-service)."""
    repo.set_instrument_status(reference, ManualStatus.parse(status).value, reason=reason)
