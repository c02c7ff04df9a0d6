# domain/instrument_types.py - Closed instrument type enumeration and per-type rules
#
# One profile per instrument type replaces the per-type copies of the
# frequency/due-date/archive logic. Everything type-specific lives here.

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from domain.errors import ValidationError


class InstrumentType(str, Enum):
    ACETONE_VAPORISER = "Acetone Vaporiser"
    AIR_PUMP = "Air pump"
    BUBBLE_FLOWMETER = "Bubble flowmeter"
    EFFECTIVE_FILTER_AREA = "Effective Filter Area"
    FILTER_HOLDER = "Filter Holder"
    FUME_HOOD = "Fume Hood"
    FURNACE = "Furnace"
    GRATICULE = "Graticule"
    HSE_TEST_SLIDE = "HSE Test Slide"
    MICROMETER = "Micrometer"
    PHASE_CONTRAST_MICROSCOPE = "Phase Contrast Microscope"
    PNEUMATIC_TESTER = "Pneumatic tester"
    POLARISED_LIGHT_MICROSCOPE = "Polarised Light Microscope"
    RI_LIQUIDS = "RI Liquids"
    SITE_FLOWMETER = "Site flowmeter"
    STEREOMICROSCOPE = "Stereomicroscope"


SECTIONS = ("Air Monitoring", "Fibre ID")


class ArchiveStrategy(str, Enum):
    """How superseded calibration records leave the active set."""

    COPY_DELETE = "copy_delete"
    SOFT_TAG = "soft_tag"


@dataclass(frozen=True)
class InstrumentTypeProfile:
    instrument_type: InstrumentType
    archive_strategy: ArchiveStrategy = ArchiveStrategy.SOFT_TAG
    # True when lastCalibration/calibrationDue are written back to the instrument
    summary_stored: bool = False
    # Used only when neither a FrequencyConfig nor an instrument override exists
    default_frequency_months: Optional[int] = None


_PROFILES = {
    InstrumentType.AIR_PUMP: InstrumentTypeProfile(
        InstrumentType.AIR_PUMP,
        archive_strategy=ArchiveStrategy.COPY_DELETE,
        summary_stored=True,
        default_frequency_months=12,
    ),
    InstrumentType.GRATICULE: InstrumentTypeProfile(
        InstrumentType.GRATICULE,
        archive_strategy=ArchiveStrategy.COPY_DELETE,
        default_frequency_months=12,
    ),
    InstrumentType.RI_LIQUIDS: InstrumentTypeProfile(
        InstrumentType.RI_LIQUIDS,
        default_frequency_months=6,
    ),
    InstrumentType.HSE_TEST_SLIDE: InstrumentTypeProfile(
        InstrumentType.HSE_TEST_SLIDE,
        default_frequency_months=60,
    ),
}


def parse_instrument_type(value) -> InstrumentType:
    """Accept an InstrumentType or its display name (case-insensitive). Raises ValidationError."""
    if isinstance(value, InstrumentType):
        return value
    text = (value or "").strip().lower()
    for t in InstrumentType:
        if t.value.lower() == text:
            return t
    raise ValidationError(f"Unknown instrument type: {value!r}")


def get_profile(instrument_type) -> InstrumentTypeProfile:
    t = parse_instrument_type(instrument_type)
    return _PROFILES.get(t) or InstrumentTypeProfile(t)
