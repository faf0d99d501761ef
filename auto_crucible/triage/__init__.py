"""Layer 0: decide how much scrutiny a request deserves."""

from .factors import FactorScorer, load_indicators, resolve_level
from .gate import TriageGate, weighted_total

__all__ = [
    "FactorScorer",
    "load_indicators",
    "resolve_level",
    "TriageGate",
    "weighted_total",
]
