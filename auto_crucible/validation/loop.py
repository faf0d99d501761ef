"""Layer 1 validation loop: score, evolve, repeat until the bar or the budget."""

import logging
from typing import Any, List, Mapping, Optional

from auto_crucible.exceptions import EvolverError
from auto_crucible.models import Candidate, LoopResult, LoopState, Mode, Tier, composite_of
from auto_crucible.modes import ModeController
from auto_crucible.monitoring_metrics import LOOP_ITERATIONS, LOOP_RESULTS
from auto_crucible.validation.dimensions import DimensionScorer
from auto_crucible.validation.evolver import EvolverAdapter

logger = logging.getLogger(__name__)


def best_of(history: List[Candidate]) -> Candidate:
    """Highest composite across history; the earliest candidate wins ties."""
    best = history[0]
    for candidate in history[1:]:
        if (candidate.composite_score or 0.0) > (best.composite_score or 0.0):
            best = candidate
    return best


class ValidationLoop:
    """Drives a candidate through SCORING -> EVOLVING -> SCORING ...

    Terminal states are DONE (composite reached the pass bar) and
    BUDGET_EXHAUSTED (iteration budget spent, or the evolver failed twice).
    Each ``run`` owns its candidates; nothing is shared between runs, so one
    loop instance can serve many concurrent requests.
    """

    def __init__(
        self,
        scorer: DimensionScorer,
        modes: ModeController,
        evolver: Optional[EvolverAdapter] = None,
        dimension_weights: Optional[Mapping[str, float]] = None,
    ):
        self.scorer = scorer
        self.modes = modes
        self.evolver = evolver
        self.dimension_weights = dict(dimension_weights or {})

    def _score(self, candidate: Candidate, context: Mapping[str, Any]) -> Candidate:
        results = self.scorer.score(candidate, context)
        scores = {name: r.score for name, r in results.items()}
        return candidate.model_copy(update={
            "dimension_scores": scores,
            "rationales": {name: r.rationale for name, r in results.items()},
            "composite_score": composite_of(scores, self.dimension_weights),
        })

    def _finish(self, tier: Tier, history: List[Candidate], state: LoopState,
                final: Candidate, reason: Optional[str]) -> LoopResult:
        converged = state == LoopState.DONE
        LOOP_ITERATIONS.labels(tier=tier.value).observe(len(history))
        LOOP_RESULTS.labels(state=state.value).inc()
        logger.info(
            f"Validation loop finished: tier={tier.value} state={state.value} "
            f"iterations={len(history)} composite={final.composite_score or 0.0:.2f}"
        )
        return LoopResult(
            final_candidate=final, history=history, converged=converged, state=state, reason=reason,
        )

    async def run(
        self,
        candidate0: Candidate,
        tier: Tier,
        mode: Mode,
        context: Optional[Mapping[str, Any]] = None,
    ) -> LoopResult:
        if tier == Tier.SKIP:
            raise ValueError("SKIP-tier requests are never validated")

        context = context or {}
        pass_bar = self.modes.pass_bar(tier, mode)
        max_iterations = self.modes.max_iterations(tier, mode)
        can_evolve = tier != Tier.LIGHT and self.evolver is not None

        history: List[Candidate] = []
        current = candidate0.model_copy(deep=True)
        state = LoopState.SCORING
        reason: Optional[str] = None

        while True:
            if state == LoopState.SCORING:
                current = self._score(current, context)
                history.append(current)
                logger.debug(f"Iteration {current.iteration} composite={current.composite_score:.2f} (bar {pass_bar:.1f})")
                if current.composite_score >= pass_bar:
                    return self._finish(tier, history, LoopState.DONE, current, None)
                if not can_evolve:
                    reason = "scoring only" if tier == Tier.LIGHT else "no evolver configured"
                    state = LoopState.BUDGET_EXHAUSTED
                elif len(history) >= max_iterations:
                    reason = f"iteration budget of {max_iterations} exhausted"
                    state = LoopState.BUDGET_EXHAUSTED
                else:
                    state = LoopState.EVOLVING

            elif state == LoopState.EVOLVING:
                weak = current.weak_dimensions(pass_bar)
                try:
                    current = await self.evolver.revise(current, weak)
                except EvolverError as e:
                    reason = f"evolver failed after retry: {e}"
                    state = LoopState.BUDGET_EXHAUSTED
                else:
                    state = LoopState.SCORING

            else:
                return self._finish(tier, history, LoopState.BUDGET_EXHAUSTED, best_of(history), reason)
