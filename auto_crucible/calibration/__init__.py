"""Outcome tracking and self-calibration of the triage gate."""

from .tracker import OutcomeTracker, accuracy_of
from .calibrator import CalibrationStore, Calibrator

__all__ = [
    "OutcomeTracker",
    "accuracy_of",
    "CalibrationStore",
    "Calibrator",
]
