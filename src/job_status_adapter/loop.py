from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from opentelemetry import context as otel_context
from opentelemetry import trace
from sqlalchemy.engine import Engine

from job_status_adapter.batching import chunked
from job_status_adapter.logging_config import StructuredLogger, get_logger
from job_status_adapter.propagator import PropagationError, Propagator
from job_status_adapter.stats import PropagationStats
from job_status_adapter.store import AttemptLedger, fetch_unpropagated

CandidateQuery = Callable[[Engine, int], list[str]]


@dataclass(frozen=True)
class CycleSummary:
    candidates: int
    batches: int
    succeeded: int
    failed: int


class PropagationLoop:
    def __init__(
        self,
        *,
        engine: Engine,
        propagator: Propagator,
        max_retries: int,
        batch_size: int,
        poll_seconds: float = 0.0,
        stats: PropagationStats | None = None,
        ledger: AttemptLedger | None = None,
        logger: StructuredLogger | None = None,
        tracer: trace.Tracer | None = None,
        query: CandidateQuery = fetch_unpropagated,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._engine = engine
        self._propagator = propagator
        self._max_retries = max_retries
        self._batch_size = batch_size
        self._poll_seconds = max(0.0, poll_seconds)
        self._stats = stats or PropagationStats()
        self._ledger = ledger
        self._logger = logger or get_logger(__name__)
        self._tracer = tracer or trace.get_tracer("job_status_adapter")
        self._query = query

    @property
    def stats(self) -> PropagationStats:
        return self._stats

    async def run_forever(self, stop_event: asyncio.Event, *, max_cycles: int | None = None) -> None:
        """Run cycles back to back until ``stop_event`` is set.

        A ``QueryError`` from candidate discovery is not handled here; it ends
        the loop and is left for the entrypoint to treat as fatal.
        """
        completed = 0
        while not stop_event.is_set():
            await self.run_cycle()
            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                return
            await self._pause(stop_event)

    async def run_cycle(self) -> CycleSummary:
        with self._tracer.start_as_current_span("propagation cycle") as span:
            # cancelling the cycle abandons this await; the worker thread still runs the query to completion
            candidates = await asyncio.to_thread(self._query, self._engine, self._max_retries)
            batches = chunked(candidates, self._batch_size)
            span.set_attribute("propagation.candidates", len(candidates))
            span.set_attribute("propagation.batches", len(batches))

            parent = trace.set_span_in_context(span)
            succeeded = 0
            failed = 0
            for batch in batches:
                outcomes = await asyncio.gather(
                    *(self._dispatch(external_id, parent) for external_id in batch),
                    return_exceptions=True,
                )
                for external_id, outcome in zip(batch, outcomes):
                    if outcome is True:
                        succeeded += 1
                        continue
                    failed += 1
                    if isinstance(outcome, BaseException):
                        self._stats.record_failure("unexpected")
                        self._logger.error(
                            "unexpected error while propagating job status",
                            external_id=external_id,
                            error=repr(outcome),
                        )

            self._stats.record_cycle(candidates=len(candidates), batches=len(batches))

        summary = CycleSummary(
            candidates=len(candidates),
            batches=len(batches),
            succeeded=succeeded,
            failed=failed,
        )
        if candidates:
            self._logger.info(
                "propagation cycle complete",
                candidates=summary.candidates,
                batches=summary.batches,
                succeeded=summary.succeeded,
                failed=summary.failed,
            )
        else:
            self._logger.debug("propagation cycle found no candidates")
        return summary

    async def _dispatch(self, external_id: str, parent: otel_context.Context) -> bool:
        with self._tracer.start_as_current_span("propagate job status", context=parent) as span:
            span.set_attribute("job.external_id", external_id)
            try:
                result = await self._propagator.propagate(external_id)
            except PropagationError as exc:
                span.record_exception(exc)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(exc)))
                self._stats.record_failure(exc.kind)
                self._logger.error(
                    f"job status propagation failed: {exc.kind} error",
                    external_id=external_id,
                    kind=exc.kind,
                    error=str(exc),
                )
                delivered = False
            else:
                self._stats.record_success()
                self._logger.info(
                    "job status propagated",
                    external_id=external_id,
                    status_code=result.status_code,
                )
                delivered = True

        await self._record_attempt(external_id)
        return delivered

    async def _record_attempt(self, external_id: str) -> None:
        if self._ledger is None:
            return
        try:
            await asyncio.to_thread(self._ledger.record_attempt, external_id)
        except Exception:
            self._logger.exception("recording propagation attempt failed", external_id=external_id)

    async def _pause(self, stop_event: asyncio.Event) -> None:
        if self._poll_seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._poll_seconds)
        except asyncio.TimeoutError:
            pass
