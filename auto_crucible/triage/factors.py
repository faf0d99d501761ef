"""Layer 0 factor scoring from configurable indicator patterns."""

from __future__ import annotations

import logging
import re
import unicodedata
from collections import Counter
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Pattern, Tuple, Union

import yaml

from auto_crucible.exceptions import ConfigurationError
from auto_crucible.models import FACTORS, Clarify, FactorScores, Mode, Request

logger = logging.getLogger(__name__)

LEVELS: Tuple[int, ...] = (0, 1, 2)

IndicatorTable = Dict[str, Dict[int, List[Pattern[str]]]]


def _default_indicators_path() -> Path:
    return Path(__file__).resolve().parents[1] / "resources" / "triage_indicators.yaml"


def _norm(s: str) -> str:
    """Normalize string for consistent matching."""
    return unicodedata.normalize("NFKC", s or "").lower().strip()


def load_indicators(path: Optional[Union[str, Path]] = None) -> IndicatorTable:
    """Load and compile indicator patterns.

    Unlike optional routing hints, indicators are required for triage, so a
    missing or malformed file is a configuration error rather than a warning.
    """
    config_path = Path(path) if path else _default_indicators_path()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot load triage indicators from {config_path}: {e}") from e

    table: IndicatorTable = {}
    for factor in FACTORS:
        levels = raw.get(factor) or {}
        compiled: Dict[int, List[Pattern[str]]] = {}
        for level in LEVELS:
            patterns = levels.get(level) or levels.get(str(level)) or []
            try:
                compiled[level] = [re.compile(p, re.IGNORECASE) for p in patterns]
            except re.error as e:
                raise ConfigurationError(f"Bad indicator pattern for {factor}/{level}: {e}") from e
        table[factor] = compiled

    unknown = sorted(set(raw) - set(FACTORS))
    if unknown:
        logger.warning(f"Ignoring indicators for unknown factors: {unknown}")
    return table


def resolve_level(hits: Mapping[int, int]) -> int:
    """Pick the level with the most hits; ties go to the lower level, no hits to 0."""
    best_level, best_hits = 0, 0
    for level in LEVELS:
        count = hits.get(level, 0)
        if count > best_hits:
            best_level, best_hits = level, count
    return best_level


class FactorScorer:
    """Scores complexity, stakes, novelty, user signal and ambiguity for a request.

    Each factor resolves independently. Callers can pin a factor through
    ``declared_context["factors"]``; pinned values win over pattern matches.
    """

    def __init__(self, indicators: Optional[IndicatorTable] = None):
        self.indicators = indicators if indicators is not None else load_indicators()

    def _scan_text(self, request: Request) -> str:
        tags = " ".join(request.tags())
        return _norm(f"{request.text()}\n{tags}")

    def hits_for(self, factor: str, text: str) -> Dict[int, int]:
        hits: Counter = Counter()
        for level, patterns in self.indicators.get(factor, {}).items():
            for pattern in patterns:
                if pattern.search(text):
                    hits[level] += 1
        return dict(hits)

    def _overrides(self, request: Request) -> Dict[str, int]:
        raw = (request.declared_context or {}).get("factors") or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Factor overrides must be a mapping of factor to level, got {type(raw).__name__}")
        overrides = {}
        for name, value in raw.items():
            if name not in FACTORS:
                raise ValueError(f"Unknown factor override '{name}'")
            if isinstance(value, bool) or not isinstance(value, int) or value not in LEVELS:
                raise ValueError(f"Factor override {name}={value!r} must be 0, 1 or 2")
            overrides[name] = value
        return overrides

    def score(self, request: Request, mode: Mode = Mode.SILENT) -> Union[FactorScores, Clarify]:
        text = self._scan_text(request)
        overrides = self._overrides(request)

        values = {}
        for factor in FACTORS:
            if factor in overrides:
                values[factor] = overrides[factor]
                continue
            values[factor] = resolve_level(self.hits_for(factor, text))

        scores = FactorScores(**values)
        logger.debug(f"Factor scores for {request.id}: {scores.as_dict()}")

        # RAW mode answers directly and never asks back
        if mode != Mode.RAW and scores.needs_clarification():
            return Clarify(
                request_id=request.id,
                reason="Request is ambiguous and carries no other signal; ask a clarifying question first",
            )
        return scores
