"""
Dimension scorer registry and the default quality plugins
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from auto_crucible.exceptions import ConfigurationError, ScoringError
from auto_crucible.models import SCORE_MAX, SCORE_MIN, Candidate, DimensionScore
from auto_crucible.monitoring_metrics import SCORER_FAILURES

logger = logging.getLogger(__name__)

# A plugin is a pure function (candidate, context) -> (score 0..10, rationale)
ScorerFn = Callable[[Candidate, Mapping[str, Any]], Tuple[float, str]]


@dataclass
class ScorerMetadata:
    """Metadata for a registered dimension scorer"""
    name: str
    function: ScorerFn
    description: str = ""


class ScorerRegistry:
    """Registry of dimension scorer plugins, keyed by dimension name"""

    def __init__(self):
        self._scorers: Dict[str, ScorerMetadata] = {}

    def register(self, name: str, function: ScorerFn, description: str = "") -> None:
        if name in self._scorers:
            raise ValueError(f"Scorer '{name}' is already registered")
        if not callable(function):
            raise TypeError(f"Scorer '{name}' must be callable")
        self._scorers[name] = ScorerMetadata(name=name, function=function, description=description)
        logger.debug(f"Registered dimension scorer: {name}")

    def replace(self, name: str, function: ScorerFn, description: str = "") -> None:
        self._scorers.pop(name, None)
        self.register(name, function, description)

    def get(self, name: str) -> Optional[ScorerMetadata]:
        return self._scorers.get(name)

    def names(self) -> List[str]:
        return list(self._scorers)

    def __contains__(self, name: str) -> bool:
        return name in self._scorers


# ---------------------------------------------------------------------------
# Default plugins. They only look at candidate.content and the caller context.
# ---------------------------------------------------------------------------

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_WORD = re.compile(r"\b\w+\b")
_UNRESOLVED = re.compile(r"\b(TODO|FIXME|XXX|HACK|TBD)\b|\bnot sure\b|\?\?\?", re.IGNORECASE)


def score_correctness(candidate: Candidate, context: Mapping[str, Any]) -> Tuple[float, str]:
    """Fraction of caller-supplied checks the content passes.

    ``context["checks"]`` maps a check name to a predicate over the content.
    """
    checks = context.get("checks") or {}
    if not checks:
        return 8.0, "no correctness checks supplied; assumed plausible"
    failed = [name for name, check in checks.items() if not check(candidate.content)]
    passed = len(checks) - len(failed)
    score = SCORE_MAX * passed / len(checks)
    if failed:
        return score, f"failed checks: {', '.join(sorted(failed))}"
    return score, f"all {len(checks)} checks pass"


def score_completeness(candidate: Candidate, context: Mapping[str, Any]) -> Tuple[float, str]:
    """Share of required terms present in the content."""
    requirements = context.get("requirements") or []
    text = candidate.content.lower()
    if not requirements:
        if text.strip():
            return float(SCORE_MAX), "no explicit requirements; content present"
        return float(SCORE_MIN), "empty content"
    missing = [r for r in requirements if str(r).lower() not in text]
    score = SCORE_MAX * (len(requirements) - len(missing)) / len(requirements)
    if missing:
        return score, f"missing requirements: {', '.join(map(str, missing))}"
    return score, "all requirements covered"


def score_clarity(candidate: Candidate, context: Mapping[str, Any]) -> Tuple[float, str]:
    """Penalize long sentences: full marks up to the word limit, -0.5 per extra word on average."""
    limit = int(context.get("max_sentence_words", 20))
    sentences = [s for s in _SENTENCE_SPLIT.split(candidate.content) if s.strip()]
    if not sentences:
        return float(SCORE_MIN), "no sentences to assess"
    avg_words = sum(len(_WORD.findall(s)) for s in sentences) / len(sentences)
    if avg_words <= limit:
        return float(SCORE_MAX), f"average sentence length {avg_words:.1f} words"
    score = max(float(SCORE_MIN), SCORE_MAX - 0.5 * (avg_words - limit))
    return score, f"average sentence length {avg_words:.1f} words exceeds {limit}"


def score_robustness(candidate: Candidate, context: Mapping[str, Any]) -> Tuple[float, str]:
    """Unresolved markers (TODO, FIXME, 'not sure', ...) cost two points each."""
    markers = _UNRESOLVED.findall(candidate.content)
    count = len(markers)
    if count == 0:
        return float(SCORE_MAX), "no unresolved markers"
    return max(float(SCORE_MIN), SCORE_MAX - 2.0 * count), f"{count} unresolved marker(s)"


def score_efficiency(candidate: Candidate, context: Mapping[str, Any]) -> Tuple[float, str]:
    """Stay within ``context["max_length"]`` characters."""
    max_length = context.get("max_length")
    length = len(candidate.content)
    if not max_length or length <= max_length:
        return float(SCORE_MAX), f"{length} chars within budget"
    return SCORE_MAX * max_length / length, f"{length} chars exceeds budget of {max_length}"


DEFAULT_SCORERS: Dict[str, Tuple[ScorerFn, str]] = {
    "correctness": (score_correctness, "caller-supplied predicate checks"),
    "completeness": (score_completeness, "required terms covered"),
    "clarity": (score_clarity, "sentence length"),
    "robustness": (score_robustness, "unresolved markers"),
    "efficiency": (score_efficiency, "length budget"),
}


def default_registry() -> ScorerRegistry:
    registry = ScorerRegistry()
    for name, (fn, description) in DEFAULT_SCORERS.items():
        registry.register(name, fn, description)
    return registry


class DimensionScorer:
    """Scores a candidate on every declared dimension.

    The engine does not care how a plugin arrives at its number. A plugin that
    raises scores 0 for that iteration; the failure is logged and counted.
    """

    def __init__(self, registry: ScorerRegistry, dimensions: Sequence[str]):
        missing = [d for d in dimensions if d not in registry]
        if missing:
            raise ConfigurationError(f"No scorer registered for dimension(s): {missing}")
        self.registry = registry
        self.dimensions = list(dimensions)

    def _score_one(self, name: str, candidate: Candidate, context: Mapping[str, Any]) -> DimensionScore:
        meta = self.registry.get(name)
        try:
            value, rationale = meta.function(candidate, context)
            value = float(value)
        except Exception as e:
            error = ScoringError(f"{type(e).__name__}: {e}", dimension=name)
            logger.warning(f"Scorer '{name}' failed on iteration {candidate.iteration}: {error}")
            SCORER_FAILURES.labels(dimension=name).inc()
            return DimensionScore(name=name, score=0.0, rationale=f"scorer failed: {error}", failed=True)

        if not (SCORE_MIN <= value <= SCORE_MAX):
            logger.debug(f"Clamping {name} score {value} into [{SCORE_MIN}, {SCORE_MAX}]")
            value = min(float(SCORE_MAX), max(float(SCORE_MIN), value))
        return DimensionScore(name=name, score=round(value, 4), rationale=str(rationale))

    def score(self, candidate: Candidate, context: Optional[Mapping[str, Any]] = None) -> Dict[str, DimensionScore]:
        context = context or {}
        return {name: self._score_one(name, candidate, context) for name in self.dimensions}
