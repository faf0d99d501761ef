"""
Adapter around the external evolver collaborator.

The evolver may be a person behind a queue, a model behind an HTTP API or a
deterministic rewriter. All the loop needs is a new candidate; this adapter
bounds each attempt with a timeout, normalizes the return value and retries a
failed attempt once with identical input.
"""

import asyncio
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from auto_crucible.exceptions import EvolverError, EvolverTimeout
from auto_crucible.models import Candidate, WeakDimension
from auto_crucible.monitoring_metrics import EVOLVER_FAILURES

logger = logging.getLogger(__name__)

RevisionResult = Union[Candidate, str, Mapping[str, Any]]


class Evolver(Protocol):
    def revise(
        self, candidate: Candidate, weak_dimensions: List[WeakDimension]
    ) -> Union[RevisionResult, Awaitable[RevisionResult]]:
        ...


def _revise_callable(evolver: Any) -> Callable:
    revise = getattr(evolver, "revise", None)
    if revise is None and callable(evolver):
        revise = evolver
    if revise is None:
        raise TypeError(f"{type(evolver).__name__} has no revise() and is not callable")
    return revise


class EvolverAdapter:
    """Calls ``Evolver.revise`` with a bounded wait and a retry-once policy."""

    def __init__(self, evolver: Any, timeout: float = 60.0, max_attempts: int = 2):
        self._revise = _revise_callable(evolver)
        self.timeout = timeout
        self.max_attempts = max_attempts

    def parse(self, raw: Any, previous: Candidate) -> Candidate:
        """Normalize whatever the evolver returned into the next candidate."""
        next_iteration = previous.iteration + 1
        if isinstance(raw, Candidate):
            return Candidate(content=raw.content, iteration=next_iteration, metadata=dict(raw.metadata))
        if isinstance(raw, str):
            return Candidate(content=raw, iteration=next_iteration)
        if isinstance(raw, Mapping) and isinstance(raw.get("content"), str):
            metadata = {k: v for k, v in raw.items() if k != "content"}
            return Candidate(content=raw["content"], iteration=next_iteration, metadata=metadata)
        raise EvolverError(
            f"Unparseable revision of type {type(raw).__name__}", iteration=next_iteration
        )

    async def _attempt(self, candidate: Candidate, weak: List[WeakDimension]) -> Candidate:
        # The evolver gets its own copy; the loop keeps ownership of the original
        snapshot = candidate.model_copy(deep=True)
        if inspect.iscoroutinefunction(self._revise):
            pending = self._revise(snapshot, list(weak))
        else:
            # Sync evolvers run off the event loop; on timeout their result is discarded
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, functools.partial(self._revise, snapshot, list(weak)))

        try:
            raw = await asyncio.wait_for(pending, timeout=self.timeout)
            if inspect.isawaitable(raw):
                raw = await asyncio.wait_for(raw, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise EvolverTimeout(self.timeout, iteration=candidate.iteration + 1) from e
        except EvolverError:
            raise
        except Exception as e:
            raise EvolverError(f"{type(e).__name__}: {e}", iteration=candidate.iteration + 1) from e
        return self.parse(raw, candidate)

    def _after_failure(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        kind = "timeout" if isinstance(error, EvolverTimeout) else "error"
        EVOLVER_FAILURES.labels(kind=kind).inc()
        logger.warning(
            f"Evolve attempt {retry_state.attempt_number}/{self.max_attempts} failed: {error}"
        )

    async def revise(self, candidate: Candidate, weak: List[WeakDimension]) -> Candidate:
        """Produce the next candidate or raise the last EvolverError."""
        result: Optional[Candidate] = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(EvolverError),
            after=self._after_failure,
            reraise=True,
        ):
            with attempt:
                result = await self._attempt(candidate, weak)
        return result
