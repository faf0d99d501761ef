"""Append-only log of triage decisions and their observed correctness."""

import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from auto_crucible.models import Outcome, OutcomeRecord, OutcomeSignal, TriageDecision

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 50


def accuracy_of(records: Iterable[OutcomeRecord]) -> float:
    """correct / (correct + over + under). Unknown outcomes are not counted.

    With nothing classified there is no evidence of misjudgment, so 1.0.
    """
    correct = wrong = 0
    for record in records:
        if record.signal == OutcomeSignal.CORRECT:
            correct += 1
        elif record.signal in (OutcomeSignal.OVER_APPLIED, OutcomeSignal.UNDER_APPLIED):
            wrong += 1
    classified = correct + wrong
    if classified == 0:
        return 1.0
    return correct / classified


class OutcomeTracker:
    """Records each triage decision plus its eventual correctness signal.

    Appends are serialized by a lock and stamped with a monotonic sequence
    number, so concurrent writers never interleave and the calibrator can ask
    for everything after a given sequence.
    """

    def __init__(self, timeout_seconds: float = 3600.0):
        self.timeout = timedelta(seconds=timeout_seconds)
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._records: List[OutcomeRecord] = []
        self._pending: Dict[str, TriageDecision] = {}
        self._recorded: set = set()

    def __len__(self) -> int:
        return len(self._records)

    def register(self, decision: TriageDecision) -> None:
        """Start waiting for a signal about this decision."""
        with self._lock:
            if decision.id in self._recorded or decision.id in self._pending:
                logger.debug(f"Decision {decision.id} already tracked")
                return
            self._pending[decision.id] = decision

    def pending_count(self) -> int:
        return len(self._pending)

    def record(self, decision: TriageDecision, signal: OutcomeSignal,
               timestamp: Optional[datetime] = None) -> OutcomeRecord:
        signal = OutcomeSignal(signal)
        with self._lock:
            if decision.id in self._recorded:
                raise ValueError(f"Outcome for decision {decision.id} already recorded")
            outcome = Outcome(
                triage_decision_id=decision.id,
                observed_correctness=signal,
                timestamp=timestamp or datetime.now(timezone.utc),
            )
            record = OutcomeRecord(seq=next(self._seq), decision=decision, outcome=outcome)
            self._records.append(record)
            self._recorded.add(decision.id)
            self._pending.pop(decision.id, None)
        logger.debug(f"Outcome #{record.seq}: decision={decision.id} tier={decision.tier.value} signal={signal.value}")
        return record

    def report(self, decision_id: str, signal: OutcomeSignal) -> OutcomeRecord:
        """Record a signal for a previously registered decision."""
        decision = self._pending.get(decision_id)
        if decision is None:
            if decision_id in self._recorded:
                raise ValueError(f"Outcome for decision {decision_id} already recorded")
            raise KeyError(f"Unknown decision id: {decision_id}")
        return self.record(decision, signal)

    def expire_pending(self, now: Optional[datetime] = None) -> List[OutcomeRecord]:
        """Decisions nobody complained about within the timeout count as correct."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [d for d in self._pending.values() if now - d.created_at >= self.timeout]
        records = []
        for decision in expired:
            try:
                records.append(self.record(decision, OutcomeSignal.CORRECT, timestamp=now))
            except ValueError:
                # A late signal won the race
                continue
        if records:
            logger.info(f"Assumed correct after timeout: {len(records)} decision(s)")
        return records

    def recent_history(self, n: int = DEFAULT_WINDOW) -> List[OutcomeRecord]:
        if n <= 0:
            return []
        with self._lock:
            return list(self._records[-n:])

    def history(self, since_seq: int = 0) -> List[OutcomeRecord]:
        """Records with ``seq > since_seq``, oldest first."""
        with self._lock:
            # seq n lives at index n - 1
            return list(self._records[max(since_seq, 0):])

    def accuracy(self, window: int = DEFAULT_WINDOW) -> float:
        return accuracy_of(self.recent_history(window))

    def get_decision(self, decision_id: str) -> Optional[TriageDecision]:
        decision = self._pending.get(decision_id)
        if decision is not None:
            return decision
        with self._lock:
            for record in reversed(self._records):
                if record.decision.id == decision_id:
                    return record.decision
        return None
