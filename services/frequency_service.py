# services/frequency_service.py - Calibration interval resolution and due-date arithmetic
#
# resolve_frequency / compute_next_due are pure. The maintenance functions
# (save/delete config, recalculate) go through the repository.

import logging
import math
from datetime import date, timedelta
from typing import TYPE_CHECKING, Optional

from dateutil.relativedelta import relativedelta

from config import DEFAULT_SETTINGS, MONTH_OVERFLOW_CLAMP, MONTH_OVERFLOW_ROLLOVER, EngineSettings
from domain.errors import ValidationError
from domain.instrument_types import get_profile, parse_instrument_type
from domain.models import FrequencyConfig, FrequencyUnit, canonical_key
from services import aggregation_service
from services.identity import resolve_actor

if TYPE_CHECKING:
    from database import CalibrationRepository

logger = logging.getLogger(__name__)


def _check_months(months, settings: EngineSettings, source: str) -> int:
    if isinstance(months, bool) or not isinstance(months, (int, float)):
        raise ValidationError(f"{source} must be a whole number of months, not {months!r}")
    if isinstance(months, float) and (math.isnan(months) or not months.is_integer()):
        raise ValidationError(f"{source} must be a whole number of months, not {months!r}")
    months = int(months)
    if months < 1 or months > settings.max_frequency_months:
        raise ValidationError(
            f"{source} must be between 1 and {settings.max_frequency_months} months, not {months}"
        )
    return months


def resolve_frequency(
    instrument_type,
    instrument_override: Optional[int] = None,
    config: Optional[FrequencyConfig] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> Optional[int]:
    """
    Calibration interval in months, first match wins:
    the type's FrequencyConfig, the instrument's own override, the type's hard
    fallback. None means indefinite (never due).
    """
    t = parse_instrument_type(instrument_type)
    if config is not None:
        return _check_months(config.months, settings, f"Frequency config for {t.value}")
    if instrument_override is not None:
        return _check_months(instrument_override, settings, "Instrument calibration frequency")
    fallback = get_profile(t).default_frequency_months
    if fallback is None:
        logger.debug("No calibration frequency for %s; treating as indefinite", t.value)
    return fallback


def resolve_frequency_for(
    repo: "CalibrationRepository",
    instrument_type,
    instrument_override: Optional[int] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> Optional[int]:
    """resolve_frequency with the config looked up from the repository."""
    return resolve_frequency(
        instrument_type,
        instrument_override,
        config=repo.get_frequency_config(instrument_type),
        settings=settings,
    )


def add_months(start: date, months: int, overflow: str = MONTH_OVERFLOW_CLAMP) -> date:
    """
    Advance start by whole calendar months.
    clamp: Jan 31 + 1 month -> Feb 28 (29 in leap years).
    rollover: Jan 31 + 1 month -> Mar 3 (Mar 2 in leap years); the surplus days carry forward.
    """
    if overflow == MONTH_OVERFLOW_CLAMP:
        return start + relativedelta(months=months)
    if overflow == MONTH_OVERFLOW_ROLLOVER:
        first_of_target = start.replace(day=1) + relativedelta(months=months)
        return first_of_target + timedelta(days=start.day - 1)
    raise ValidationError(f"Unknown month overflow rule: {overflow!r}")


def compute_next_due(
    event_date: date,
    months: Optional[int],
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> Optional[date]:
    """Due date for a calibration event. None when the interval is indefinite."""
    if event_date is None:
        raise ValidationError("Calibration date is required to compute a due date")
    if months is None:
        return None
    return add_months(event_date, int(months), settings.month_overflow)


def to_months(value, unit) -> int:
    """Convert a (value, unit) pair to months. Raises ValidationError."""
    try:
        unit = FrequencyUnit((unit or "").strip().lower())
    except (ValueError, AttributeError):
        raise ValidationError(f"Frequency unit must be 'months' or 'years', not {unit!r}") from None
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Frequency value must be a whole number, not {value!r}") from None
    if n <= 0:
        raise ValidationError("Frequency value must be greater than zero")
    return n * 12 if unit == FrequencyUnit.YEARS else n


# -----------------------------------------------------------------------------
# Frequency configuration maintenance
# -----------------------------------------------------------------------------

def save_frequency_config(
    repo: "CalibrationRepository",
    instrument_type,
    value,
    unit="months",
    actor: str | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> FrequencyConfig:
    """
    Validate and store the type's interval, then push it to every instrument
    of the type and recalculate their records' due dates. Propagation
    failures are logged; the saved config stands.
    """
    t = parse_instrument_type(instrument_type)
    months = _check_months(to_months(value, unit), settings, f"Frequency for {t.value}")
    cfg = FrequencyConfig(
        instrument_type=t,
        frequency_value=int(value),
        frequency_unit=FrequencyUnit(unit.strip().lower()),
        updated_by=resolve_actor(repo, actor),
    )
    repo.upsert_frequency_config(cfg)
    logger.info("Saved calibration frequency for %s: %d months", t.value, months)

    try:
        updated = repo.set_frequency_for_type(t, months)
        logger.info("Applied %d-month frequency to %d %s instrument(s)", months, updated, t.value)
    except Exception as e:
        logger.error("Could not propagate frequency to %s instruments: %s", t.value, e, exc_info=True)
        return repo.get_frequency_config(t)

    for inst in repo.list_instruments(t):
        try:
            recalculate_due_dates(repo, inst.key, months, instrument_type=t, settings=settings)
        except Exception as e:
            logger.error("Could not recalculate due dates for %s: %s", inst.key, e, exc_info=True)
    return repo.get_frequency_config(t)


def delete_frequency_config(repo: "CalibrationRepository", instrument_type) -> bool:
    """Remove the type's config; resolution falls back to instrument override / type default."""
    t = parse_instrument_type(instrument_type)
    removed = repo.delete_frequency_config(t)
    if removed:
        logger.info("Deleted calibration frequency config for %s", t.value)
    return removed


def recalculate_due_dates(
    repo: "CalibrationRepository",
    instrument_key: str,
    months: Optional[int],
    instrument_type=None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> int:
    """
    Recompute next_calibration for every record of the instrument. Types that
    store their summary on the instrument get it rewritten. Returns records changed.
    """
    key = canonical_key(instrument_key)
    changed = 0
    for rec in repo.list_calibrations(key, active_only=False, instrument_type=instrument_type):
        new_due = compute_next_due(rec.calibration_date, months, settings)
        if new_due != rec.next_calibration:
            repo.update_next_calibration(rec.id, new_due)
            changed += 1
    if changed:
        logger.info("Recalculated %d due date(s) for %s", changed, key)
        if instrument_type is None:
            inst = repo.find_instrument(key)
            instrument_type = inst.instrument_type if inst is not None else None
        if instrument_type is not None:
            aggregation_service.refresh_stored_summary(repo, key, instrument_type)
    return changed
