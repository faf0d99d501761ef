"""End-to-end tests for the crucible engine facade."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from auto_crucible.config import Settings
from auto_crucible.engine import CrucibleEngine
from auto_crucible.exceptions import ConfigurationError
from auto_crucible.journal import MemoryJournal
from auto_crucible.models import Mode, OutcomeSignal, Request, Tier
from auto_crucible.validation import ScorerRegistry


def _quality(candidate, context):
    if "improved" in candidate.content:
        return 9.0, "reads well"
    return 6.0, "needs work"


def _registry():
    registry = ScorerRegistry()
    registry.register("quality", _quality, "test scorer")
    return registry


def _settings(**overrides):
    overrides.setdefault("DIMENSIONS", ["quality"])
    return Settings(**overrides)


def _engine(evolver=None, journal=None, **overrides):
    return CrucibleEngine(
        _settings(**overrides),
        evolver=evolver,
        registry=_registry(),
        journal=journal if journal is not None else MemoryJournal(),
    )


def _evolver(result="improved draft"):
    evolver = Mock()
    evolver.revise = AsyncMock(return_value=result)
    return evolver


def _strategic_request():
    return Request(
        payload="What is the best approach here?",
        declared_context={"tags": ["strategic", "high-stakes", "novel", "clear"]},
    )


class TestEngineSetup:
    """Startup validation."""

    def test_missing_plugin_is_fatal(self):
        with pytest.raises(ConfigurationError):
            CrucibleEngine(_settings(), registry=ScorerRegistry())

    def test_invalid_env_settings_are_fatal(self, monkeypatch):
        monkeypatch.setenv("CRUCIBLE_TIER_THRESHOLDS", "[5, 4, 3]")
        with pytest.raises(ConfigurationError):
            CrucibleEngine()

    def test_default_mode_from_settings(self):
        assert _engine(DEFAULT_MODE=Mode.PERMISSIVE).get_mode() == Mode.PERMISSIVE


class TestEvaluate:
    """Triage plus validation."""

    @pytest.mark.asyncio
    async def test_quick_question_skips(self):
        journal = MemoryJournal()
        result = await _engine(journal=journal).evaluate("What's 2+2?")

        assert result.tier == Tier.SKIP
        assert result.total_score == 0
        assert result.candidate is None
        assert len(journal.of_kind("triage_decision")) == 1
        assert journal.of_kind("validation_result") == []

    @pytest.mark.asyncio
    async def test_strategic_request_validated(self):
        evolver = _evolver()
        journal = MemoryJournal()
        result = await _engine(evolver=evolver, journal=journal).evaluate(_strategic_request())

        assert result.tier == Tier.FULL
        assert result.total_score == 7
        assert result.converged
        assert result.candidate.content == "improved draft"
        # SILENT mode keeps the history to itself
        assert result.history is None
        entry = journal.of_kind("validation_result")[0]
        assert entry["iterations"] == 2
        assert entry["state"] == "done"

    @pytest.mark.asyncio
    async def test_transparent_mode_returns_history(self):
        result = await _engine(evolver=_evolver()).evaluate(_strategic_request(), mode=Mode.TRANSPARENT)
        assert [c.iteration for c in result.history] == [1, 2]

    @pytest.mark.asyncio
    async def test_clarification(self):
        journal = MemoryJournal()
        result = await _engine(journal=journal).evaluate("do something with the stuff")

        assert result.needs_clarification
        assert result.decision_id is None
        assert len(journal.of_kind("clarification")) == 1

    @pytest.mark.asyncio
    async def test_raw_mode_answers_directly(self):
        result = await _engine().evaluate("do something with the stuff", mode="raw")
        assert not result.needs_clarification
        assert result.tier == Tier.SKIP

    @pytest.mark.asyncio
    async def test_mode_read_once_per_request(self):
        """Switching modes mid-request does not reach the running request."""
        async def switch_then_improve(candidate, weak):
            engine.set_mode(Mode.SILENT)
            return "improved draft"

        evolver = Mock()
        evolver.revise = AsyncMock(side_effect=switch_then_improve)
        engine = _engine(evolver=evolver)
        engine.set_mode(Mode.TRANSPARENT)

        result = await engine.evaluate(_strategic_request())

        assert engine.get_mode() == Mode.SILENT
        assert result.history is not None
        assert len(result.history) == 2

    @pytest.mark.asyncio
    async def test_candidate_from_context(self):
        request = Request(
            payload="What is the best approach here?",
            declared_context={
                "tags": ["strategic", "high-stakes", "novel", "clear"],
                "candidate": "an improved plan",
            },
        )
        result = await _engine().evaluate(request)
        assert result.converged
        assert result.candidate.content == "an improved plan"

    @pytest.mark.asyncio
    async def test_evolver_failure_degrades(self):
        evolver = Mock()
        evolver.revise = AsyncMock(side_effect=RuntimeError("offline"))
        result = await _engine(evolver=evolver).evaluate(_strategic_request())

        assert result.converged is False
        assert result.candidate.iteration == 1
        assert "offline" in result.reason

    @pytest.mark.asyncio
    async def test_tier_statistics(self):
        engine = _engine(evolver=_evolver())
        await engine.evaluate("What's 2+2?")
        await engine.evaluate(_strategic_request())

        stats = engine.tier_statistics()
        assert stats["total"] == 2
        assert stats["counts"]["skip"] == 1
        assert stats["counts"]["full"] == 1
        assert stats["percentages"]["full"] == 50.0
        assert stats["percentages"]["deep"] == 0.0


class TestOutcomesAndCalibration:
    """Feedback loop from outcomes to the triage gate."""

    async def _skip_decisions(self, engine, count):
        ids = []
        for _ in range(count):
            result = await engine.evaluate(Request(payload="What's 2+2?"))
            ids.append(result.decision_id)
        return ids

    def test_unknown_decision(self):
        with pytest.raises(KeyError):
            _engine().report_outcome("nope", OutcomeSignal.CORRECT)

    @pytest.mark.asyncio
    async def test_outcome_journaled(self):
        journal = MemoryJournal()
        engine = _engine(journal=journal)
        [decision_id] = await self._skip_decisions(engine, 1)

        record = engine.report_outcome(decision_id, "under_applied")

        assert record.signal == OutcomeSignal.UNDER_APPLIED
        assert journal.of_kind("outcome")[0]["decision_id"] == decision_id

    @pytest.mark.asyncio
    async def test_full_window_recalibrates(self, tmp_path):
        state_path = tmp_path / "calibration.json"
        journal = MemoryJournal()
        engine = _engine(
            journal=journal,
            CALIBRATION_WINDOW=5,
            ACCURACY_WINDOW=5,
            CALIBRATION_STATE_PATH=str(state_path),
        )
        borderline = await engine.evaluate(Request(
            payload="What's 2+2?", declared_context={"factors": {"stakes": 2, "complexity": 1}},
        ))
        assert borderline.tier == Tier.LIGHT

        for decision_id in await self._skip_decisions(engine, 5):
            engine.report_outcome(decision_id, OutcomeSignal.OVER_APPLIED)

        snapshot = engine.calibration_snapshot()
        assert snapshot.version == 2
        assert snapshot.thresholds == (3.5, 5.0, 8.0)
        assert snapshot.sample_count_since_calibration == 0
        assert len(journal.of_kind("calibration")) == 1
        assert state_path.exists()

        # The same factor scores land a tier lower under the new thresholds
        rederived = engine.rederive(borderline.decision_id)
        assert rederived.tier == Tier.SKIP
        assert rederived.weights_version == 2

        restarted = _engine(CALIBRATION_STATE_PATH=str(state_path))
        assert restarted.calibration_snapshot().version == 2

    @pytest.mark.asyncio
    async def test_samples_counted_between_passes(self):
        engine = _engine(CALIBRATION_WINDOW=10)
        for decision_id in await self._skip_decisions(engine, 3):
            engine.report_outcome(decision_id, OutcomeSignal.CORRECT)
        assert engine.calibration_snapshot().sample_count_since_calibration == 3

    @pytest.mark.asyncio
    async def test_expire_pending(self):
        engine = _engine()
        await self._skip_decisions(engine, 2)
        later = datetime.now(timezone.utc) + timedelta(hours=2)

        records = engine.expire_pending(now=later)

        assert len(records) == 2
        assert all(r.signal == OutcomeSignal.CORRECT for r in records)
        assert engine.tracker.pending_count() == 0

    def test_rederive_unknown(self):
        with pytest.raises(KeyError):
            _engine().rederive("nope")

    @pytest.mark.asyncio
    async def test_silent_decisions_count_before_complaints(self):
        """Decisions nobody complained about are counted as correct without an explicit sweep."""
        engine = _engine(OUTCOME_TIMEOUT_SEC=0.5, CALIBRATION_WINDOW=5, ACCURACY_WINDOW=50)
        await self._skip_decisions(engine, 45)
        await asyncio.sleep(0.6)

        complaints = await self._skip_decisions(engine, 5)
        assert engine.tracker.pending_count() == 5
        for decision_id in complaints:
            engine.report_outcome(decision_id, OutcomeSignal.OVER_APPLIED)

        assert engine.tracker.pending_count() == 0
        assert len(engine.tracker) == 50
        assert engine.tracker.accuracy(50) == pytest.approx(0.9)
        assert engine.calibration_snapshot().version == 1

    @pytest.mark.asyncio
    async def test_report_sweeps_timed_out_decisions(self):
        engine = _engine(OUTCOME_TIMEOUT_SEC=0.2)
        silent, reported = await self._skip_decisions(engine, 2)
        await asyncio.sleep(0.3)

        engine.report_outcome(reported, OutcomeSignal.UNDER_APPLIED)

        assert engine.tracker.pending_count() == 0
        signals = [(r.decision.id, r.signal) for r in engine.tracker.history()]
        assert signals == [(reported, OutcomeSignal.UNDER_APPLIED), (silent, OutcomeSignal.CORRECT)]

    @pytest.mark.asyncio
    async def test_same_request_evaluated_twice_is_tracked_twice(self):
        engine = _engine()
        request = Request(payload="What's 2+2?")
        first = await engine.evaluate(request)
        second = await engine.evaluate(request)

        assert first.decision_id != second.decision_id
        assert engine.tracker.pending_count() == 2
        assert engine.tier_statistics()["total"] == 2

        engine.report_outcome(first.decision_id, OutcomeSignal.CORRECT)
        engine.report_outcome(second.decision_id, OutcomeSignal.OVER_APPLIED)
        assert len(engine.tracker) == 2
        assert engine.rederive(second.decision_id).request_id == request.id

    @pytest.mark.asyncio
    async def test_outcomes_read_only_the_unseen_tail(self):
        engine = _engine(CALIBRATION_WINDOW=3)
        ids = await self._skip_decisions(engine, 5)
        for decision_id in ids[:3]:
            engine.report_outcome(decision_id, OutcomeSignal.CORRECT)
        assert engine.calibrator.last_seq == 3

        with patch.object(engine.tracker, "history", wraps=engine.tracker.history) as history:
            engine.report_outcome(ids[3], OutcomeSignal.CORRECT)

        history.assert_called_once_with(since_seq=3)
        assert engine.calibration_snapshot().sample_count_since_calibration == 1

    @pytest.mark.asyncio
    async def test_in_flight_request_keeps_its_snapshot_across_calibration(self):
        """A calibration pass landing mid-evolve does not touch the running request."""
        async def calibrate_then_improve(candidate, weak):
            for decision_id in complaints:
                engine.report_outcome(decision_id, OutcomeSignal.OVER_APPLIED)
            return "improved draft"

        evolver = Mock()
        evolver.revise = AsyncMock(side_effect=calibrate_then_improve)
        engine = _engine(evolver=evolver, CALIBRATION_WINDOW=5, ACCURACY_WINDOW=5)
        complaints = await self._skip_decisions(engine, 5)

        result = await engine.evaluate(_strategic_request())

        assert engine.store.version == 2
        assert result.converged
        decision = engine.tracker.get_decision(result.decision_id)
        assert decision.weights_version == 1
        assert decision.tier == Tier.FULL

        after = await engine.evaluate("What's 2+2?")
        assert engine.tracker.get_decision(after.decision_id).weights_version == 2
