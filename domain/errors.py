# domain/errors.py - Error kinds raised or reported by the lifecycle engine
#
# Validation and lookup errors propagate to the caller. Archival and
# aggregation failures are caught by the services and reported in results.


class LifecycleError(Exception):
    """Base class for calibration lifecycle errors."""


class ValidationError(LifecycleError, ValueError):
    """Malformed input: bad date, negative/NaN count, frequency out of bounds."""


class NotFoundError(LifecycleError, LookupError):
    """Instrument (or record) referenced by key does not exist."""


class ArchivalFailure(LifecycleError):
    """Retiring superseded calibration records failed. Never blocks creation."""

    def __init__(self, instrument_key: str, message: str):
        super().__init__(f"{instrument_key}: {message}")
        self.instrument_key = instrument_key


class AggregationPartialFailure(LifecycleError):
    """History for one instrument could not be read during a bulk aggregation."""

    def __init__(self, instrument_key: str, cause: BaseException | str):
        super().__init__(f"{instrument_key}: {cause}")
        self.instrument_key = instrument_key
        self.cause = cause
