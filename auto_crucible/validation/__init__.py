"""Layer 1: score candidates on quality dimensions and improve them."""

from .dimensions import (
    DimensionScorer,
    ScorerRegistry,
    default_registry,
    DEFAULT_SCORERS,
)
from .evolver import Evolver, EvolverAdapter
from .loop import ValidationLoop, best_of

__all__ = [
    "DimensionScorer",
    "ScorerRegistry",
    "default_registry",
    "DEFAULT_SCORERS",
    "Evolver",
    "EvolverAdapter",
    "ValidationLoop",
    "best_of",
]
