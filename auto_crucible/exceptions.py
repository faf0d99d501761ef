"""
Custom exceptions for the crucible engine
"""

from typing import Optional


class CrucibleError(Exception):
    """Base exception for the crucible engine"""
    pass


class ConfigurationError(CrucibleError):
    """Startup configuration errors (missing scorer plugin, bad thresholds)"""
    pass


class ScoringError(CrucibleError):
    """A dimension scorer plugin failed for one candidate"""
    def __init__(self, message: str, dimension: Optional[str] = None):
        super().__init__(message)
        self.dimension = dimension


class EvolverError(CrucibleError):
    """The evolver raised or returned something that is not a candidate"""
    def __init__(self, message: str, iteration: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration


class EvolverTimeout(EvolverError):
    """The evolver did not answer within the configured wait"""
    def __init__(self, timeout: float, iteration: Optional[int] = None):
        super().__init__(f"Evolver did not respond within {timeout:.1f}s", iteration)
        self.timeout = timeout


class CalibrationError(CrucibleError):
    """A calibration pass produced an invalid state or failed outright"""
    pass
