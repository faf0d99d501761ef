from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Tuple, Union, Mapping
from datetime import datetime, timezone
from enum import Enum
import uuid


FACTORS: Tuple[str, ...] = ("complexity", "stakes", "novelty", "user_signal", "ambiguity")

SCORE_MIN = 0
SCORE_MAX = 10

WEIGHT_MIN = 0.1
WEIGHT_MAX = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Depth of validation applied to a request"""
    SKIP = "skip"
    LIGHT = "light"
    FULL = "full"
    DEEP = "deep"


class Mode(str, Enum):
    """Process-wide operating mode"""
    SILENT = "silent"
    TRANSPARENT = "transparent"
    COLLABORATIVE = "collaborative"
    RAW = "raw"
    AGGRESSIVE = "aggressive"
    PERMISSIVE = "permissive"


class Verbosity(str, Enum):
    SILENT = "silent"
    NORMAL = "normal"
    VERBOSE = "verbose"


class OutcomeSignal(str, Enum):
    """Observed correctness of a triage decision"""
    CORRECT = "correct"
    OVER_APPLIED = "over_applied"
    UNDER_APPLIED = "under_applied"
    UNKNOWN = "unknown"


class LoopState(str, Enum):
    SCORING = "scoring"
    EVOLVING = "evolving"
    DONE = "done"
    BUDGET_EXHAUSTED = "budget_exhausted"


class Request(BaseModel):
    """An incoming unit of work: a question, a proposed change, an artifact."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payload: Union[str, Dict[str, Any]]
    declared_context: Optional[Dict[str, Any]] = None

    def text(self) -> str:
        """Flatten the payload into the text scanned by factor indicators."""
        if isinstance(self.payload, str):
            return self.payload
        parts = []
        for key, value in self.payload.items():
            parts.append(f"{key}: {value}")
        return "\n".join(parts)

    def tags(self) -> List[str]:
        ctx = self.declared_context or {}
        tags = ctx.get("tags") or []
        if isinstance(tags, str):
            return [tags]
        if not isinstance(tags, (list, tuple, set, frozenset)):
            raise ValueError(f"Declared tags must be a string or a list of strings, got {type(tags).__name__}")
        return [str(t) for t in tags]

    def context(self) -> Dict[str, Any]:
        return dict(self.declared_context or {})


class FactorScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    complexity: int = Field(0, ge=0, le=2)
    stakes: int = Field(0, ge=0, le=2)
    novelty: int = Field(0, ge=0, le=2)
    user_signal: int = Field(0, ge=0, le=2)
    ambiguity: int = Field(0, ge=0, le=2)

    def as_dict(self) -> Dict[str, int]:
        return {f: getattr(self, f) for f in FACTORS}

    def needs_clarification(self) -> bool:
        """Ambiguity maxed out with nothing else to go on."""
        return self.ambiguity == 2 and all(
            getattr(self, f) == 0 for f in FACTORS if f != "ambiguity"
        )


class Clarify(BaseModel):
    """Returned by the factor scorer instead of scores: ask before triaging."""
    model_config = ConfigDict(frozen=True)

    request_id: str
    reason: str


class CalibrationState(BaseModel):
    """Triage weights and tier thresholds; validated on construction."""
    model_config = ConfigDict(frozen=True)

    weights: Dict[str, float] = Field(default_factory=lambda: {f: 1.0 for f in FACTORS})
    thresholds: Tuple[float, float, float] = (3.0, 5.0, 8.0)
    version: int = Field(1, ge=1)
    last_calibrated_at: Optional[datetime] = None
    sample_count_since_calibration: int = Field(0, ge=0)

    @field_validator("thresholds")
    @classmethod
    def thresholds_strictly_increasing(cls, v):
        t1, t2, t3 = v
        if not (SCORE_MIN < t1 < t2 < t3 <= SCORE_MAX):
            raise ValueError(
                f"thresholds must satisfy 0 < t1 < t2 < t3 <= 10, got {list(v)}"
            )
        return v

    @model_validator(mode="after")
    def weights_in_range(self):
        missing = [f for f in FACTORS if f not in self.weights]
        extra = [f for f in self.weights if f not in FACTORS]
        if missing or extra:
            raise ValueError(f"weights must cover exactly {list(FACTORS)} (missing={missing}, extra={extra})")
        for name, w in self.weights.items():
            if not (WEIGHT_MIN <= w <= WEIGHT_MAX):
                raise ValueError(
                    f"weight for {name}={w} outside [{WEIGHT_MIN}, {WEIGHT_MAX}]"
                )
        return self

    def tier_for(self, total_score: float, t3_shift: float = 0.0) -> Tier:
        """Locate the tier for a total score. The partition is total: every score maps to one tier."""
        t1, t2, t3 = self.thresholds
        if t3_shift:
            # Keep clear of t2, but never move t3 against the shift
            t3 = min(max(t3 + t3_shift, min(t3, t2 + 0.5)), float(SCORE_MAX))
        if total_score < t1:
            return Tier.SKIP
        if total_score < t2:
            return Tier.LIGHT
        if total_score < t3:
            return Tier.FULL
        return Tier.DEEP


class TriageDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    request_id: str
    total_score: int = Field(ge=SCORE_MIN, le=SCORE_MAX)
    tier: Tier
    weights_version: int
    factor_scores: FactorScores
    mode: Mode
    created_at: datetime = Field(default_factory=_utcnow)

    def same_decision(self, other: "TriageDecision") -> bool:
        """Equality ignoring the wall-clock timestamp."""
        return self.model_dump(exclude={"created_at"}) == other.model_dump(exclude={"created_at"})


class DimensionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: float = Field(ge=SCORE_MIN, le=SCORE_MAX)
    rationale: str = ""
    failed: bool = False


class WeakDimension(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: float
    rationale: str


class Candidate(BaseModel):
    """The artifact under validation. Owned by one validation loop run."""
    content: str
    iteration: int = Field(1, ge=1)
    dimension_scores: Dict[str, float] = Field(default_factory=dict)
    rationales: Dict[str, str] = Field(default_factory=dict)
    composite_score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def weak_dimensions(self, pass_bar: float) -> List[WeakDimension]:
        return [
            WeakDimension(name=name, score=score, rationale=self.rationales.get(name, ""))
            for name, score in self.dimension_scores.items()
            if score < pass_bar
        ]


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    triage_decision_id: str
    observed_correctness: OutcomeSignal
    timestamp: datetime = Field(default_factory=_utcnow)


class OutcomeRecord(BaseModel):
    """One entry of the outcome log."""
    model_config = ConfigDict(frozen=True)

    seq: int
    decision: TriageDecision
    outcome: Outcome

    @property
    def signal(self) -> OutcomeSignal:
        return self.outcome.observed_correctness


class ModeParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    pass_bar: float = Field(ge=SCORE_MIN, le=SCORE_MAX)
    max_iterations_multiplier: float = Field(ge=0)
    tier_threshold_shift: float = 0.0
    verbosity: Verbosity = Verbosity.NORMAL


class LoopResult(BaseModel):
    final_candidate: Candidate
    history: List[Candidate]
    converged: bool
    state: LoopState
    reason: Optional[str] = None

    @property
    def iterations(self) -> int:
        return len(self.history)


class EvaluationResult(BaseModel):
    request_id: str
    decision_id: Optional[str] = None
    tier: Optional[Tier] = None
    total_score: Optional[int] = None
    needs_clarification: bool = False
    clarification_reason: Optional[str] = None
    candidate: Optional[Candidate] = None
    converged: Optional[bool] = None
    history: Optional[List[Candidate]] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def composite_of(dimension_scores: Mapping[str, float], weights: Optional[Mapping[str, float]] = None) -> float:
    """Weighted arithmetic mean of dimension scores (equal weights by default).

    The aggregation is fixed; historical calibration data depends on it.
    """
    if not dimension_scores:
        return 0.0
    weights = weights or {}
    total_weight = 0.0
    acc = 0.0
    for name, score in dimension_scores.items():
        w = float(weights.get(name, 1.0))
        acc += w * score
        total_weight += w
    if total_weight <= 0:
        return 0.0
    return round(acc / total_weight, 4)
