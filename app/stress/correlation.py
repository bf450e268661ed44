"""WASIM v1.0 – Reply Correlation.

Binds inbound replies from the message log to the RunResult of the synthetic
phone id they were sent to. First reply wins, untracked phones are ignored,
and a reply that shows up while its webhook call is still in flight is held
until the call is acknowledged.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Iterable

import structlog

from app.core.instrumentation import STRESS_REPLY_LATENCY
from app.gateway.schemas import Direction, MessageRecord
from app.stress.models import RunResult, RunStatus

logger = structlog.get_logger()

ERROR_MARKERS: tuple[str, ...] = ("error", "fail")

UpdateCallback = Callable[[RunResult], None]


def is_error_reply(body: str, markers: Iterable[str] = ERROR_MARKERS) -> bool:
    """Case-insensitive substring check for failure wording in a reply."""
    lowered = (body or "").lower()
    return any(marker in lowered for marker in markers)


class CorrelationTracker:
    """Tracked phone ids of one run and their reply bindings.

    All methods run on the event loop thread; no locking needed.
    """

    def __init__(
        self,
        on_update: UpdateCallback | None = None,
        error_markers: Iterable[str] = ERROR_MARKERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._results: dict[str, RunResult] = {}
        self._held: dict[str, tuple[str, float]] = {}
        self._unresolved = 0
        self._on_update = on_update
        self._error_markers = tuple(m.lower() for m in error_markers)
        self._clock = clock
        self.changed = asyncio.Event()
        self.ignored_untracked = 0
        self.ignored_duplicates = 0

    # ──────────────────────────────────────────
    # Registration
    # ──────────────────────────────────────────

    def track(self, result: RunResult) -> None:
        if result.phone_id in self._results:
            raise ValueError(f"phone id already tracked in this run: {result.phone_id}")
        self._results[result.phone_id] = result
        if not result.is_terminal:
            self._unresolved += 1

    @property
    def tracked_ids(self) -> frozenset[str]:
        return frozenset(self._results)

    @property
    def results(self) -> list[RunResult]:
        return list(self._results.values())

    @property
    def unresolved_count(self) -> int:
        return self._unresolved

    @property
    def is_complete(self) -> bool:
        return bool(self._results) and self._unresolved == 0

    # ──────────────────────────────────────────
    # Send-phase notifications (from the dispatch loop)
    # ──────────────────────────────────────────

    def send_acknowledged(self, result: RunResult) -> None:
        """Called after ``result.mark_sent``; applies a reply that raced the ack."""
        held = self._held.pop(result.phone_id, None)
        if held is not None:
            body, observed_at = held
            self._bind(result, body, observed_at)
        else:
            self._notify(result)

    def send_failed(self, result: RunResult) -> None:
        """Called after ``result.mark_send_failed``; a held reply is dropped."""
        if self._held.pop(result.phone_id, None) is not None:
            logger.info("stress.correlation.reply_dropped", phone=result.phone_id, reason="send_failed")
        self._resolved(result)

    # ──────────────────────────────────────────
    # Store subscription
    # ──────────────────────────────────────────

    def on_records(self, records: list[MessageRecord]) -> None:
        """Subscription callback for the message log."""
        observed_at = self._clock()
        for record in records:
            if record.direction is not Direction.INBOUND:
                continue
            result = self._results.get(record.phone)
            if result is None:
                self.ignored_untracked += 1
                continue
            if result.is_terminal:
                self.ignored_duplicates += 1
                continue
            if result.status is RunStatus.PENDING:
                if record.phone in self._held:
                    self.ignored_duplicates += 1
                else:
                    self._held[record.phone] = (record.message, observed_at)
                continue
            self._bind(result, record.message, observed_at)

    def _bind(self, result: RunResult, body: str, observed_at: float) -> None:
        sent = result.sent_monotonic if result.sent_monotonic is not None else observed_at
        latency_ms = int(round((observed_at - sent) * 1000))
        if latency_ms < 0:
            logger.warning("stress.correlation.negative_latency", phone=result.phone_id, latency_ms=latency_ms)
            latency_ms = 0
        is_error = is_error_reply(body, self._error_markers)
        result.bind_reply(body, latency_ms, is_error)
        STRESS_REPLY_LATENCY.observe(latency_ms / 1000)
        logger.debug(
            "stress.correlation.matched",
            phone=result.phone_id,
            status=result.status.value,
            latency_ms=latency_ms,
        )
        self._resolved(result)

    # ──────────────────────────────────────────
    # Finalization
    # ──────────────────────────────────────────

    def expire_unresolved(self) -> int:
        """Move every ``sent`` result to ``no_response``. Returns how many moved."""
        expired = 0
        for result in self._results.values():
            if result.status is RunStatus.SENT:
                result.expire()
                self._resolved(result)
                expired += 1
        return expired

    def wake(self) -> None:
        self.changed.set()

    def _resolved(self, result: RunResult) -> None:
        self._unresolved -= 1
        self._notify(result)

    def _notify(self, result: RunResult) -> None:
        self.changed.set()
        if self._on_update is None:
            return
        try:
            self._on_update(result)
        except Exception:
            logger.exception("stress.correlation.update_callback_failed", phone=result.phone_id)
