# services - Calibration lifecycle orchestration
from services import (
    aggregation_service,
    archive_service,
    calibration_service,
    frequency_service,
    instrument_service,
    status_service,
)

__all__ = [
    "aggregation_service",
    "archive_service",
    "calibration_service",
    "frequency_service",
    "instrument_service",
    "status_service",
]
