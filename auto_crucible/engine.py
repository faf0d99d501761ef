"""
Crucible engine: the public facade composing triage, validation and calibration.

Flow per request:
1. Snapshot the mode and the calibration state (never re-read mid-request)
2. Score the five triage factors, or hand back a clarification request
3. Decide the tier; SKIP returns immediately
4. LIGHT/FULL/DEEP run the validation loop against the scorer plugins
5. Register the decision with the outcome tracker and journal it

Outcome signals arrive later through ``report_outcome``. Decisions left silent
past the outcome timeout are counted as correct whenever a request or an
outcome comes in. Every full window of new outcomes triggers one calibration
pass.
"""

import itertools
import threading
from collections import Counter
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from .calibration import CalibrationStore, Calibrator, OutcomeTracker
from .config import Settings
from .exceptions import ConfigurationError
from .journal import JournalSink, JsonlJournal, NullJournal, journal_entry, safe_append
from .models import (
    CalibrationState, Candidate, Clarify, EvaluationResult, Mode,
    OutcomeRecord, OutcomeSignal, Request, Tier, TriageDecision, Verbosity,
)
from .modes import ModeController, ModeState
from .monitoring_metrics import CLARIFICATIONS, TRIAGE_DECISIONS
from .triage import FactorScorer, TriageGate, load_indicators
from .validation import DimensionScorer, EvolverAdapter, ScorerRegistry, ValidationLoop, default_registry

logger = structlog.get_logger()


class CrucibleEngine:
    """
    Adaptive triage + validation engine.

    The constructor raises ConfigurationError; ``evaluate`` raises only
    ValueError for a malformed declared context
    (factor overrides or tags). A request that cannot be fully validated is
    still answered with ``converged=False``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        evolver: Any = None,
        registry: Optional[ScorerRegistry] = None,
        journal: Optional[JournalSink] = None,
        calibration: Optional[CalibrationState] = None,
    ):
        try:
            self.settings = settings or Settings()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e
        s = self.settings

        self.modes = ModeController(
            base_pass_bar=s.PASS_BAR,
            base_iterations={
                Tier.LIGHT: s.MAX_ITERATIONS_LIGHT,
                Tier.FULL: s.MAX_ITERATIONS_FULL,
                Tier.DEEP: s.MAX_ITERATIONS_DEEP,
            },
        )
        self.mode_state = ModeState(s.DEFAULT_MODE)

        self.factor_scorer = FactorScorer(load_indicators(s.INDICATORS_PATH))
        self.gate = TriageGate(self.modes)

        self.dimension_scorer = DimensionScorer(registry or default_registry(), s.DIMENSIONS)
        adapter = None
        if evolver is not None:
            adapter = EvolverAdapter(evolver, timeout=s.EVOLVER_TIMEOUT_SEC, max_attempts=s.EVOLVER_MAX_ATTEMPTS)
        self.loop = ValidationLoop(self.dimension_scorer, self.modes, adapter, s.DIMENSION_WEIGHTS)

        try:
            initial = calibration or CalibrationState(weights=s.FACTOR_WEIGHTS, thresholds=s.TIER_THRESHOLDS)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid initial calibration: {e}") from e
        if s.CALIBRATION_STATE_PATH:
            self.store = CalibrationStore.load(s.CALIBRATION_STATE_PATH, initial)
        else:
            self.store = CalibrationStore(initial)

        self.tracker = OutcomeTracker(timeout_seconds=s.OUTCOME_TIMEOUT_SEC)
        self.calibrator = Calibrator(
            self.store,
            window=s.CALIBRATION_WINDOW,
            accuracy_window=s.ACCURACY_WINDOW,
            accuracy_target=s.ACCURACY_TARGET,
            weight_step=s.WEIGHT_STEP,
            threshold_step=s.THRESHOLD_STEP,
        )

        if journal is not None:
            self.journal = journal
        elif s.JOURNAL_PATH:
            self.journal = JsonlJournal(s.JOURNAL_PATH)
        else:
            self.journal = NullJournal()

        self._tier_counts: Counter = Counter()
        self._stats_lock = threading.Lock()
        # Suffix for tracked decision ids; the same request may be evaluated twice
        self._evaluation_seq = itertools.count(1)

    # ------------------------------------------------------------------ mode

    def set_mode(self, mode: Union[Mode, str]) -> Mode:
        return self.mode_state.set(Mode(mode))

    def get_mode(self) -> Mode:
        return self.mode_state.get()

    # -------------------------------------------------------------- evaluate

    def _initial_candidate(self, request: Request) -> Candidate:
        ctx = request.declared_context or {}
        content = ctx.get("candidate")
        if not isinstance(content, str):
            content = request.text()
        return Candidate(content=content, iteration=1)

    def _note_decision(self, decision: TriageDecision) -> None:
        with self._stats_lock:
            self._tier_counts[decision.tier] += 1
        TRIAGE_DECISIONS.labels(tier=decision.tier.value, mode=decision.mode.value).inc()
        self.tracker.register(decision)
        safe_append(self.journal, journal_entry("triage_decision", **decision.model_dump(mode="json")))

    async def evaluate(self, request: Union[Request, str], mode: Optional[Union[Mode, str]] = None) -> EvaluationResult:
        if isinstance(request, str):
            request = Request(payload=request)
        self._after_outcomes(self.tracker.expire_pending())
        # Read once; a concurrent set_mode() does not reach this request
        mode = Mode(mode) if mode is not None else self.mode_state.get()
        snapshot = self.store.snapshot()
        log = logger.bind(request_id=request.id, mode=mode.value, weights_version=snapshot.version)

        scored = self.factor_scorer.score(request, mode)
        if isinstance(scored, Clarify):
            CLARIFICATIONS.inc()
            log.info("triage_clarify", reason=scored.reason)
            safe_append(self.journal, journal_entry("clarification", request_id=request.id, reason=scored.reason))
            return EvaluationResult(
                request_id=request.id,
                needs_clarification=True,
                clarification_reason=scored.reason,
            )

        decision = self.gate.decide(scored, snapshot, mode, request.id)
        decision = decision.model_copy(update={"id": f"{decision.id}-{next(self._evaluation_seq)}"})
        self._note_decision(decision)
        log.info("triage_decision", decision_id=decision.id, tier=decision.tier.value,
                 total_score=decision.total_score)

        if decision.tier == Tier.SKIP:
            return EvaluationResult(
                request_id=request.id,
                decision_id=decision.id,
                tier=decision.tier,
                total_score=decision.total_score,
            )

        result = await self.loop.run(self._initial_candidate(request), decision.tier, mode, request.context())
        log.info("validation_result", decision_id=decision.id, converged=result.converged,
                 iterations=result.iterations, composite=result.final_candidate.composite_score,
                 reason=result.reason)
        safe_append(self.journal, journal_entry(
            "validation_result",
            decision_id=decision.id,
            tier=decision.tier.value,
            converged=result.converged,
            state=result.state.value,
            iterations=result.iterations,
            composite_score=result.final_candidate.composite_score,
            reason=result.reason,
        ))

        verbose = self.modes.get_parameters(mode).verbosity == Verbosity.VERBOSE
        return EvaluationResult(
            request_id=request.id,
            decision_id=decision.id,
            tier=decision.tier,
            total_score=decision.total_score,
            candidate=result.final_candidate,
            converged=result.converged,
            history=result.history if verbose else None,
            reason=result.reason,
        )

    # -------------------------------------------------------------- outcomes

    def _after_outcomes(self, records: List[OutcomeRecord]) -> Optional[CalibrationState]:
        for record in records:
            safe_append(self.journal, journal_entry(
                "outcome",
                seq=record.seq,
                decision_id=record.decision.id,
                tier=record.decision.tier.value,
                signal=record.signal.value,
            ))
        if not records:
            return None

        new_state = self.calibrator.maybe_calibrate(
            self.tracker.history(since_seq=self.calibrator.last_seq),
            recent=self.tracker.recent_history(self.calibrator.accuracy_window),
        )
        if new_state is not None:
            logger.info("calibration_applied", version=new_state.version,
                        weights=new_state.weights, thresholds=list(new_state.thresholds))
            safe_append(self.journal, journal_entry("calibration", **new_state.model_dump(mode="json")))
            if self.settings.CALIBRATION_STATE_PATH:
                try:
                    self.store.save(self.settings.CALIBRATION_STATE_PATH)
                except OSError as e:
                    logger.error("calibration_save_failed", error=str(e))
        return new_state

    def report_outcome(self, decision_id: str, signal: Union[OutcomeSignal, str]) -> OutcomeRecord:
        """Feed back whether a triage decision was right. Unknown ids raise KeyError."""
        record = self.tracker.report(decision_id, OutcomeSignal(signal))
        self._after_outcomes([record] + self.tracker.expire_pending())
        return record

    def expire_pending(self, now=None) -> List[OutcomeRecord]:
        """Count silent decisions older than the outcome timeout as correct."""
        records = self.tracker.expire_pending(now)
        self._after_outcomes(records)
        return records

    # ------------------------------------------------------------ inspection

    def calibration_snapshot(self) -> CalibrationState:
        snapshot = self.store.snapshot()
        pending = len(self.tracker.history(since_seq=self.calibrator.last_seq))
        return snapshot.model_copy(update={"sample_count_since_calibration": pending})

    def rederive(self, decision_id: str) -> TriageDecision:
        """What would today's calibration decide for a past request?"""
        decision = self.tracker.get_decision(decision_id)
        if decision is None:
            raise KeyError(f"Unknown decision id: {decision_id}")
        return self.gate.decide(decision.factor_scores, self.store.snapshot(), decision.mode, decision.request_id)

    def tier_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            counts = {tier.value: self._tier_counts.get(tier, 0) for tier in Tier}
        total = sum(counts.values())
        percentages = {
            tier: (count / total * 100 if total else 0.0) for tier, count in counts.items()
        }
        return {"total": total, "counts": counts, "percentages": percentages}
