"""WASIM v1.0 – Wait/Timeout Controller.

Blocks after dispatch until every tracked unit is resolved, the wait deadline
passes, or the run is cancelled. Wakes on the tracker's change signal and
re-checks at least every ``poll_interval_ms``.

Deadline and cancellation end the wait differently: on deadline every ``sent``
unit becomes ``no_response``; on cancellation nothing is touched.
"""

from __future__ import annotations

import asyncio

import structlog

from app.stress.correlation import CorrelationTracker
from app.stress.models import RunOutcome, RunResult

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL_MS = 100


class CompletionController:
    def __init__(
        self,
        tracker: CorrelationTracker,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self._tracker = tracker
        self._poll_interval = max(poll_interval_ms, 1) / 1000
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """User-initiated stop. Takes effect immediately."""
        self._cancelled.set()
        self._tracker.wake()

    async def await_completion(self, deadline_ms: int) -> tuple[RunOutcome, list[RunResult]]:
        """Wait for the run to settle.

        Args:
            deadline_ms: Wait budget, counted from this call.

        Returns:
            (outcome, results). Results are the tracker's live objects.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_ms / 1000
        changed = self._tracker.changed

        while True:
            changed.clear()
            if self._cancelled.is_set():
                logger.info("stress.wait.cancelled", unresolved=self._tracker.unresolved_count)
                return RunOutcome.CANCELLED, self._tracker.results
            if self._tracker.is_complete:
                logger.info("stress.wait.completed")
                return RunOutcome.COMPLETED, self._tracker.results

            remaining = deadline - loop.time()
            if remaining <= 0:
                expired = self._tracker.expire_unresolved()
                logger.info("stress.wait.timed_out", expired=expired)
                return RunOutcome.TIMED_OUT, self._tracker.results

            try:
                await asyncio.wait_for(changed.wait(), timeout=min(self._poll_interval, remaining))
            except asyncio.TimeoutError:
                pass
