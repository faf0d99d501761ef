"""Tests for layer 1: dimension scoring, the evolver adapter and the validation loop."""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from auto_crucible.exceptions import ConfigurationError, EvolverError
from auto_crucible.models import Candidate, LoopState, Mode, Tier, WeakDimension
from auto_crucible.modes import ModeController
from auto_crucible.validation import (
    DimensionScorer, EvolverAdapter, ScorerRegistry, ValidationLoop, best_of, default_registry,
)


def _quality(candidate, context):
    """9 once the draft has been improved, 6 before."""
    if "improved" in candidate.content:
        return 9.0, "reads well"
    return 6.0, "needs work"


def _zero(candidate, context):
    return 0.0, "never good enough"


def _registry(**scorers):
    registry = ScorerRegistry()
    for name, fn in scorers.items():
        registry.register(name, fn)
    return registry


def _loop(evolver=None, timeout=1.0, **scorers):
    scorers = scorers or {"quality": _quality}
    scorer = DimensionScorer(_registry(**scorers), list(scorers))
    adapter = EvolverAdapter(evolver, timeout=timeout) if evolver is not None else None
    return ValidationLoop(scorer, ModeController(), adapter)


def _async_evolver(*results):
    evolver = Mock()
    evolver.revise = AsyncMock(side_effect=list(results))
    return evolver


class SlowEvolver:
    def __init__(self):
        self.calls = 0

    async def revise(self, candidate, weak):
        self.calls += 1
        await asyncio.sleep(5)
        return "improved"


class TestScorerRegistry:
    """Plugin registration."""

    def test_duplicate_registration_fails(self):
        registry = _registry(quality=_quality)
        with pytest.raises(ValueError):
            registry.register("quality", _quality)

    def test_replace(self):
        registry = _registry(quality=_quality)
        registry.replace("quality", _zero)
        assert registry.get("quality").function is _zero

    def test_non_callable_rejected(self):
        with pytest.raises(TypeError):
            ScorerRegistry().register("quality", "not a function")

    def test_default_registry_has_five_dimensions(self):
        assert set(default_registry().names()) == {
            "correctness", "completeness", "clarity", "robustness", "efficiency",
        }


class TestDimensionScorer:
    """Scoring a candidate on every dimension."""

    def test_missing_plugin_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            DimensionScorer(_registry(quality=_quality), ["quality", "style"])

    def test_failing_plugin_scores_zero(self):
        def broken(candidate, context):
            raise RuntimeError("plugin crashed")

        scorer = DimensionScorer(_registry(quality=_quality, style=broken), ["quality", "style"])
        scores = scorer.score(Candidate(content="draft"))
        assert scores["quality"].score == 6.0
        assert scores["style"].score == 0.0
        assert scores["style"].failed
        assert "plugin crashed" in scores["style"].rationale

    def test_out_of_range_scores_clamped(self):
        scorer = DimensionScorer(_registry(high=lambda c, ctx: (14, "too high")), ["high"])
        assert scorer.score(Candidate(content="x"))["high"].score == 10.0

    def test_default_plugins_read_context(self):
        scorer = DimensionScorer(default_registry(), ["completeness", "correctness", "robustness"])
        context = {
            "requirements": ["retry", "timeout"],
            "checks": {"mentions_retry": lambda text: "retry" in text},
        }
        scores = scorer.score(Candidate(content="Retry with backoff. TODO: timeout"), context)
        assert scores["completeness"].score == 10.0
        assert scores["correctness"].score == 0.0
        assert scores["robustness"].score == 8.0


class TestEvolverAdapter:
    """Normalizing evolver output."""

    def test_parse_string(self):
        adapter = EvolverAdapter(Mock())
        nxt = adapter.parse("new text", Candidate(content="old", iteration=2))
        assert nxt.content == "new text"
        assert nxt.iteration == 3

    def test_parse_mapping_keeps_metadata(self):
        adapter = EvolverAdapter(Mock())
        nxt = adapter.parse({"content": "new", "author": "bot"}, Candidate(content="old"))
        assert nxt.metadata == {"author": "bot"}

    def test_parse_rejects_garbage(self):
        adapter = EvolverAdapter(Mock())
        with pytest.raises(EvolverError):
            adapter.parse(42, Candidate(content="old"))

    def test_plain_callable_accepted(self):
        adapter = EvolverAdapter(lambda candidate, weak: "x")
        assert adapter.parse("x", Candidate(content="y")).content == "x"

    @pytest.mark.asyncio
    async def test_evolver_gets_a_copy(self):
        """Mutating the candidate inside the evolver leaves the loop's copy alone."""
        def mutate(candidate, weak):
            candidate.metadata["touched"] = True
            return "improved"

        original = Candidate(content="draft")
        adapter = EvolverAdapter(mutate)
        await adapter.revise(original, [])
        assert original.metadata == {}


class TestValidationLoop:
    """Score, evolve, repeat."""

    @pytest.mark.asyncio
    async def test_converges_after_one_revision(self):
        """FULL tier: 6 then 9 converges with two candidates in history."""
        evolver = _async_evolver("improved draft")
        result = await _loop(evolver).run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)

        assert result.converged
        assert result.state == LoopState.DONE
        assert len(result.history) == 2
        assert result.final_candidate.composite_score == 9.0
        assert result.final_candidate.iteration == 2

    @pytest.mark.asyncio
    async def test_weak_dimensions_passed_to_evolver(self):
        evolver = _async_evolver("improved draft")
        await _loop(evolver).run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)

        candidate, weak = evolver.revise.call_args.args
        assert candidate.content == "draft"
        assert weak == [WeakDimension(name="quality", score=6.0, rationale="needs work")]

    @pytest.mark.asyncio
    async def test_evolver_fails_twice(self):
        """Two failures return the first candidate unconverged with a reason."""
        evolver = Mock()
        evolver.revise = Mock(side_effect=RuntimeError("model offline"))
        result = await _loop(evolver).run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)

        assert not result.converged
        assert result.state == LoopState.BUDGET_EXHAUSTED
        assert result.final_candidate.iteration == 1
        assert result.final_candidate.content == "draft"
        assert "model offline" in result.reason
        assert evolver.revise.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_recovers_from_unparseable_result(self):
        evolver = _async_evolver(42, "improved draft")
        result = await _loop(evolver).run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)
        assert result.converged
        assert evolver.revise.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout_counts_as_attempt(self):
        evolver = SlowEvolver()
        result = await _loop(evolver, timeout=0.05).run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)
        assert not result.converged
        assert evolver.calls == 2
        assert "did not respond" in result.reason

    @pytest.mark.asyncio
    async def test_cancellation_reaches_the_caller(self):
        """Cancelling a request mid-evolve is not retried or turned into a result."""
        evolver = SlowEvolver()
        loop = _loop(evolver, timeout=10.0)
        task = asyncio.create_task(loop.run(Candidate(content="draft"), Tier.FULL, Mode.SILENT))
        while evolver.calls == 0:
            await asyncio.sleep(0.01)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert evolver.calls == 1

    @pytest.mark.asyncio
    async def test_never_exceeds_budget_when_everything_scores_zero(self):
        evolver = Mock()
        evolver.revise = Mock(return_value="another try")
        loop = _loop(evolver, zero=_zero)
        for tier, mode in [(Tier.FULL, Mode.SILENT), (Tier.DEEP, Mode.SILENT), (Tier.DEEP, Mode.AGGRESSIVE)]:
            budget = loop.modes.max_iterations(tier, mode)
            result = await loop.run(Candidate(content="draft"), tier, mode)
            assert len(result.history) == budget
            assert not result.converged
            assert result.final_candidate.iteration == 1

    @pytest.mark.asyncio
    async def test_light_scores_once(self):
        evolver = _async_evolver("improved draft")
        result = await _loop(evolver).run(Candidate(content="draft"), Tier.LIGHT, Mode.SILENT)
        assert len(result.history) == 1
        assert not result.converged
        assert result.reason == "scoring only"
        evolver.revise.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_evolver_is_scoring_only(self):
        result = await _loop().run(Candidate(content="draft"), Tier.DEEP, Mode.SILENT)
        assert len(result.history) == 1
        assert result.reason == "no evolver configured"

    @pytest.mark.asyncio
    async def test_permissive_bar_converges_immediately(self):
        result = await _loop().run(Candidate(content="draft"), Tier.FULL, Mode.PERMISSIVE)
        assert result.converged
        assert result.final_candidate.composite_score >= 6.0

    @pytest.mark.asyncio
    async def test_converged_implies_pass_bar(self):
        evolver = _async_evolver("improved draft")
        loop = _loop(evolver)
        result = await loop.run(Candidate(content="draft"), Tier.FULL, Mode.SILENT)
        assert result.converged
        assert result.final_candidate.composite_score >= loop.modes.pass_bar(Tier.FULL, Mode.SILENT)

    @pytest.mark.asyncio
    async def test_skip_is_rejected(self):
        with pytest.raises(ValueError):
            await _loop().run(Candidate(content="draft"), Tier.SKIP, Mode.SILENT)

    @pytest.mark.asyncio
    async def test_dimension_weights_shape_composite(self):
        scorer = DimensionScorer(_registry(quality=_quality, zero=_zero), ["quality", "zero"])
        loop = ValidationLoop(scorer, ModeController(), dimension_weights={"quality": 3.0, "zero": 1.0})
        result = await loop.run(Candidate(content="draft"), Tier.LIGHT, Mode.SILENT)
        assert result.final_candidate.composite_score == 4.5


class TestBestOf:
    def test_earliest_wins_ties(self):
        history = [
            Candidate(content="a", iteration=1, composite_score=5.0),
            Candidate(content="b", iteration=2, composite_score=7.0),
            Candidate(content="c", iteration=3, composite_score=7.0),
        ]
        assert best_of(history).content == "b"
