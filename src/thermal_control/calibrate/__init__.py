"""
Calibration module: duty sweep and spline fitting of the fan response.
"""

from .calibrator import (
    CalibrationCancelled,
    CalibrationEngine,
    CalibrationError,
    CalibrationTimeout,
    StabilizationPolicy,
    StabilityWindow,
)
from .spline import CalibrationPoint, CalibrationTable, fit_spline

__all__ = [
    "CalibrationCancelled",
    "CalibrationEngine",
    "CalibrationError",
    "CalibrationTimeout",
    "StabilizationPolicy",
    "StabilityWindow",
    "CalibrationPoint",
    "CalibrationTable",
    "fit_spline",
]
