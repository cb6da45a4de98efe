"""
Control module: curve evaluation, mode state machines, reapplication and
profile selection. The threaded service lives in ``control.controller``.
"""

from .curve import Curve, CurveEvaluator, CurvePoint, driving_value, interpolate, step_toward
from .modes import CurveMode, Disabled, FanStateMachine, Manual, Mode, SettingStateMachine
from .profiles import ProfileSelector
from .reapply import IntervalReapplier, ReapplicationController, ReapplyPolicy

__all__ = [
    "Curve",
    "CurveEvaluator",
    "CurvePoint",
    "driving_value",
    "interpolate",
    "step_toward",
    "CurveMode",
    "Disabled",
    "FanStateMachine",
    "Manual",
    "Mode",
    "SettingStateMachine",
    "ProfileSelector",
    "IntervalReapplier",
    "ReapplicationController",
    "ReapplyPolicy",
]
