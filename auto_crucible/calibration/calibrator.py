"""Self-calibration of triage weights and thresholds from observed outcomes.

The calibrator may only move numbers: one factor weight by a bounded step and
one threshold by a bounded step per pass. Every proposal is built off to the
side, validated as a fresh ``CalibrationState`` and swapped in atomically;
readers holding an older snapshot keep using it undisturbed.
"""

import logging
import math
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from auto_crucible.exceptions import CalibrationError
from auto_crucible.models import (
    FACTORS, WEIGHT_MAX, WEIGHT_MIN,
    CalibrationState, OutcomeRecord, OutcomeSignal, Tier,
)
from auto_crucible.monitoring_metrics import CALIBRATIONS, WEIGHTS_VERSION
from auto_crucible.calibration.tracker import accuracy_of
from auto_crucible.utils.file_ops import atomic_write_json, read_json

logger = logging.getLogger(__name__)

# Seconds a caller waits for a concurrent pass before deferring
PASS_LOCK_TIMEOUT = 1.0


class CalibrationStore:
    """Single owner of the mutable calibration slot (read-copy-update)."""

    def __init__(self, initial: CalibrationState):
        self._state = initial
        self._lock = threading.Lock()
        WEIGHTS_VERSION.set(initial.version)

    def snapshot(self) -> CalibrationState:
        """Copy-on-read: callers get their own immutable copy."""
        return self._state.model_copy(deep=True)

    @property
    def version(self) -> int:
        return self._state.version

    def swap(self, expected_version: int, new_state: CalibrationState) -> bool:
        """Install ``new_state`` if nobody else swapped since ``expected_version`` was read."""
        with self._lock:
            if self._state.version != expected_version:
                logger.warning(
                    f"Calibration swap rejected: expected v{expected_version}, found v{self._state.version}"
                )
                return False
            self._state = new_state
        WEIGHTS_VERSION.set(new_state.version)
        return True

    def save(self, path: Union[str, Path]) -> None:
        atomic_write_json(path, self._state.model_dump(mode="json"))

    @classmethod
    def load(cls, path: Union[str, Path], default: CalibrationState) -> "CalibrationStore":
        """Restore a saved state; fall back to ``default`` when absent or invalid."""
        p = Path(path)
        if not p.exists():
            return cls(default)
        try:
            state = CalibrationState.model_validate(read_json(p))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable calibration state at {p}: {e}")
            return cls(default)
        logger.info(f"Loaded calibration state v{state.version} from {p}")
        return cls(state)


def _clamp_weight(w: float) -> float:
    return round(min(WEIGHT_MAX, max(WEIGHT_MIN, w)), 4)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _contribution(record: OutcomeRecord, factor: str, weights: Dict[str, float]) -> float:
    return weights[factor] * getattr(record.decision.factor_scores, factor)


def unreachable_tiers(thresholds: Sequence[float]) -> List[str]:
    """Interior tiers no whole-number total can land in.

    Totals are integers in 0..10, so a tier whose band [lo, hi) holds no
    integer can never be chosen.
    """
    t1, t2, t3 = thresholds
    empty = []
    if math.ceil(t1) >= t2:
        empty.append(Tier.LIGHT.value)
    if math.ceil(t2) >= t3:
        empty.append(Tier.FULL.value)
    return empty


class Calibrator:
    """Recomputes triage weights/thresholds every ``window`` new outcomes."""

    def __init__(
        self,
        store: CalibrationStore,
        window: int = 50,
        accuracy_window: int = 50,
        accuracy_target: float = 0.80,
        weight_step: float = 0.05,
        threshold_step: float = 0.5,
    ):
        self.store = store
        self.window = window
        self.accuracy_window = accuracy_window
        self.accuracy_target = accuracy_target
        self.weight_step = weight_step
        self.threshold_step = threshold_step
        self._last_seq = 0
        self._pass_lock = threading.Lock()

    def samples_since_last_pass(self, outcome_history: Sequence[OutcomeRecord]) -> int:
        return sum(1 for r in outcome_history if r.seq > self._last_seq)

    def most_correlated_factor(
        self, wrong: List[OutcomeRecord], correct: List[OutcomeRecord], weights: Dict[str, float]
    ) -> Optional[str]:
        """Factor whose contribution is most elevated in misjudged decisions vs correct ones."""
        best, best_gap = None, 0.0
        for factor in FACTORS:
            gap = (
                _mean([_contribution(r, factor, weights) for r in wrong])
                - _mean([_contribution(r, factor, weights) for r in correct])
            )
            if gap > best_gap:
                best, best_gap = factor, gap
        return best

    def propose(self, current: CalibrationState, records: Sequence[OutcomeRecord]) -> CalibrationState:
        """Build a corrected state for the given window or raise CalibrationError."""
        correct = [r for r in records if r.signal == OutcomeSignal.CORRECT]
        over = [r for r in records if r.signal == OutcomeSignal.OVER_APPLIED]
        under = [r for r in records if r.signal == OutcomeSignal.UNDER_APPLIED]
        if not over and not under:
            raise CalibrationError("No misclassifications to learn from")

        # Ties lean toward less scrutiny
        over_applied = len(over) >= len(under)
        wrong = over if over_applied else under
        direction = -1.0 if over_applied else 1.0

        weights = dict(current.weights)
        factor = self.most_correlated_factor(wrong, correct, weights)
        new_weights = dict(weights)
        if factor is not None:
            new_weights[factor] = _clamp_weight(weights[factor] + direction * self.weight_step)

        mean_total = _mean([r.decision.total_score for r in wrong])
        nearest = min(range(3), key=lambda i: abs(current.thresholds[i] - mean_total))
        new_thresholds = list(current.thresholds)
        # Over-applied: raise the cut so those scores fall a tier lower; under-applied: lower it
        new_thresholds[nearest] = round(new_thresholds[nearest] - direction * self.threshold_step, 4)

        proposals: List[Tuple[Dict[str, float], Tuple[float, ...]]] = [
            (new_weights, tuple(new_thresholds)),
            (new_weights, tuple(current.thresholds)),
            (weights, tuple(new_thresholds)),
        ]
        rejected = []
        for w, t in proposals:
            thresholds_moved = tuple(t) != tuple(current.thresholds)
            if w == weights and not thresholds_moved:
                continue
            if thresholds_moved:
                empty = unreachable_tiers(t)
                if empty:
                    rejected.append(f"thresholds {list(t)} leave {', '.join(empty)} with no whole-number total")
                    continue
            try:
                state = CalibrationState(
                    weights=w,
                    thresholds=t,
                    version=current.version + 1,
                    last_calibrated_at=datetime.now(timezone.utc),
                    sample_count_since_calibration=0,
                )
            except ValueError as e:
                rejected.append(str(e).splitlines()[0])
                continue
            logger.info(
                f"Calibration proposal v{state.version}: "
                f"direction={'over_applied' if over_applied else 'under_applied'} factor={factor} "
                f"weights={state.weights} thresholds={list(state.thresholds)}"
            )
            return state
        raise CalibrationError(f"Every calibration proposal was invalid or unchanged: {rejected}")

    @property
    def last_seq(self) -> int:
        """Sequence number of the newest outcome consumed by a pass."""
        return self._last_seq

    def maybe_calibrate(
        self,
        outcome_history: Sequence[OutcomeRecord],
        recent: Optional[Sequence[OutcomeRecord]] = None,
    ) -> Optional[CalibrationState]:
        """Run one pass if a full window of new outcomes has accumulated.

        ``outcome_history`` only needs to hold the records after ``last_seq``.
        ``recent`` is the accuracy window; when omitted it is taken from the
        tail of ``outcome_history``.

        Returns the newly installed state, or None when nothing changed.
        """
        # Wait out a pass in progress; it may have been a sub-window check
        if not self._pass_lock.acquire(timeout=PASS_LOCK_TIMEOUT):
            logger.warning("Calibration pass lock busy, deferring to the next outcome")
            return None
        try:
            fresh = [r for r in outcome_history if r.seq > self._last_seq]
            if len(fresh) < self.window:
                return None
            # One pass per window, whatever it concludes
            self._last_seq = max(r.seq for r in fresh)

            if recent is None:
                recent = sorted(outcome_history, key=lambda r: r.seq)[-self.accuracy_window:]
            accuracy = accuracy_of(recent)
            if accuracy >= self.accuracy_target:
                CALIBRATIONS.labels(result="noop").inc()
                logger.info(f"Calibration skipped: accuracy {accuracy:.2f} >= target {self.accuracy_target:.2f}")
                return None

            current = self.store.snapshot()
            try:
                proposal = self.propose(current, recent)
            except CalibrationError as e:
                CALIBRATIONS.labels(result="rejected").inc()
                logger.warning(f"Calibration pass failed, keeping v{current.version}: {e}")
                return None

            if not self.store.swap(current.version, proposal):
                CALIBRATIONS.labels(result="conflict").inc()
                return None
            CALIBRATIONS.labels(result="applied").inc()
            logger.info(
                f"Calibration applied: accuracy {accuracy:.2f} < {self.accuracy_target:.2f}, "
                f"v{current.version} -> v{proposal.version}"
            )
            return proposal
        finally:
            self._pass_lock.release()
