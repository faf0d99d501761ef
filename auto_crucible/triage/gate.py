"""Layer 0 triage gate: factor scores -> tier."""

import logging
import math

from auto_crucible.models import (
    FACTORS, SCORE_MAX, SCORE_MIN,
    CalibrationState, FactorScores, Mode, Tier, TriageDecision,
)
from auto_crucible.modes import ModeController
from auto_crucible.utils.ids import decision_id

logger = logging.getLogger(__name__)


def weighted_total(factor_scores: FactorScores, snapshot: CalibrationState) -> int:
    """round-half-up(sum(weight[f] * score[f])), clamped to 0..10."""
    raw = sum(snapshot.weights[f] * getattr(factor_scores, f) for f in FACTORS)
    total = int(math.floor(raw + 0.5))
    return max(SCORE_MIN, min(SCORE_MAX, total))


class TriageGate:
    """Combines factor scores into a tier decision.

    ``decide`` is pure: the same factor scores, calibration snapshot, mode and
    request id always produce the same decision (timestamps aside), which is
    what makes re-deriving old decisions against new weights meaningful.
    """

    def __init__(self, modes: ModeController):
        self.modes = modes

    def decide(
        self,
        factor_scores: FactorScores,
        snapshot: CalibrationState,
        mode: Mode,
        request_id: str,
    ) -> TriageDecision:
        mode = Mode(mode)
        total = weighted_total(factor_scores, snapshot)

        if mode == Mode.RAW:
            tier = Tier.SKIP
        else:
            shift = self.modes.get_parameters(mode).tier_threshold_shift
            tier = snapshot.tier_for(total, t3_shift=shift)

        decision = TriageDecision(
            id=decision_id(request_id, snapshot.version, mode.value),
            request_id=request_id,
            total_score=total,
            tier=tier,
            weights_version=snapshot.version,
            factor_scores=factor_scores,
            mode=mode,
        )
        logger.debug(f"Triage {request_id}: total={total} tier={tier.value} mode={mode.value} weights_v={snapshot.version}")
        return decision
