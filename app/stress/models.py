"""WASIM v1.0 – Stress Test Domain Models.

@BACKEND: Run configuration, dispatch units and the per-unit RunResult
state machine:

    pending ──► sent ──► success | error | no_response
       │
       └──────► error            (send failed, never reaches sent)

``pending`` and ``sent`` are transient, everything else is terminal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from app.stress.errors import InvalidConfig, InvalidTransition


class RunStatus(str, Enum):
    """Per-unit status."""

    PENDING = "pending"
    SENT = "sent"
    SUCCESS = "success"
    ERROR = "error"
    NO_RESPONSE = "no_response"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.NO_RESPONSE})

_ALLOWED: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.SENT, RunStatus.ERROR}),
    RunStatus.SENT: frozenset({RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.NO_RESPONSE}),
}


class HttpOutcome(str, Enum):
    """Result of the outbound webhook call for one unit."""

    ACCEPTED = "accepted"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"


class RunOutcome(str, Enum):
    """How a run ended."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunConfig:
    """Parameters of one stress test run."""

    user_count: int
    messages_per_user: int
    webhook_url: str
    inter_batch_delay_ms: int = 0
    wait_deadline_ms: int = 10 * 60 * 1000

    @property
    def total_units(self) -> int:
        return self.user_count * self.messages_per_user

    def validate(self, max_users: int, max_messages_per_user: int) -> None:
        """Raise InvalidConfig if any parameter is missing or out of bounds."""
        if (
            not isinstance(self.user_count, int)
            or isinstance(self.user_count, bool)
            or not 1 <= self.user_count <= max_users
        ):
            raise InvalidConfig("userCount", f"must be between 1 and {max_users}")
        if (
            not isinstance(self.messages_per_user, int)
            or isinstance(self.messages_per_user, bool)
            or not 1 <= self.messages_per_user <= max_messages_per_user
        ):
            raise InvalidConfig(
                "messagesPerUser", f"must be between 1 and {max_messages_per_user}"
            )
        url = (self.webhook_url or "").strip()
        if not url:
            raise InvalidConfig("webhookUrl", "is required")
        if not url.lower().startswith(("http://", "https://")):
            raise InvalidConfig("webhookUrl", "must be an http(s) URL")
        if self.inter_batch_delay_ms < 0:
            raise InvalidConfig("interUserBatchDelayMs", "must be >= 0")
        if self.wait_deadline_ms <= 0:
            raise InvalidConfig("waitDeadlineMs", "must be > 0")


@dataclass(frozen=True)
class SyntheticIdentity:
    phone_id: str
    display_name: str


@dataclass(frozen=True)
class DispatchUnit:
    """One (synthetic user, message) pair = one outbound webhook call."""

    identity: SyntheticIdentity
    message_body: str
    sequence_index: int
    message_index: int


@dataclass
class RunResult:
    """Outcome of one DispatchUnit.

    Only the transition methods below change ``status``; a terminal result
    raises InvalidTransition on any further change.
    """

    phone_id: str
    display_name: str
    sent_message: str
    sequence_index: int
    message_index: int = 0
    status: RunStatus = RunStatus.PENDING
    http_outcome: HttpOutcome | None = None
    http_status: int | None = None
    error_detail: str | None = None
    matched_reply: str | None = None
    latency_ms: int | None = None
    send_duration_ms: int | None = None
    sent_at: datetime | None = None
    replied_at: datetime | None = None
    sent_monotonic: float | None = field(default=None, repr=False)

    @classmethod
    def for_unit(cls, unit: DispatchUnit) -> "RunResult":
        return cls(
            phone_id=unit.identity.phone_id,
            display_name=unit.identity.display_name,
            sent_message=unit.message_body,
            sequence_index=unit.sequence_index,
            message_index=unit.message_index,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _move(self, target: RunStatus) -> None:
        if target not in _ALLOWED.get(self.status, frozenset()):
            raise InvalidTransition(self.phone_id, self.status.value, target.value)
        self.status = target

    def begin_send(self) -> float:
        """Stamp the send time at the moment the HTTP call is issued."""
        if self.status is not RunStatus.PENDING:
            raise InvalidTransition(self.phone_id, self.status.value, "sending")
        self.sent_at = datetime.now(timezone.utc)
        self.sent_monotonic = time.monotonic()
        return self.sent_monotonic

    def mark_sent(self, http_status: int, duration_ms: int) -> None:
        self._move(RunStatus.SENT)
        self.http_outcome = HttpOutcome.ACCEPTED
        self.http_status = http_status
        self.send_duration_ms = duration_ms

    def mark_send_failed(
        self,
        outcome: HttpOutcome,
        detail: str,
        duration_ms: int,
        http_status: int | None = None,
    ) -> None:
        self._move(RunStatus.ERROR)
        self.http_outcome = outcome
        self.http_status = http_status
        self.error_detail = detail
        self.send_duration_ms = duration_ms

    def bind_reply(self, body: str, latency_ms: int, is_error: bool) -> None:
        self._move(RunStatus.ERROR if is_error else RunStatus.SUCCESS)
        self.matched_reply = body
        self.latency_ms = latency_ms
        self.replied_at = datetime.now(timezone.utc)

    def expire(self) -> None:
        self._move(RunStatus.NO_RESPONSE)


@dataclass(frozen=True)
class RunSummary:
    total_dispatched: int
    success_count: int
    error_count: int
    no_response_count: int
    pending_count: int
    latency_bands: dict[str, int]
    min_latency_ms: int | None
    avg_latency_ms: float | None
    p50_latency_ms: int | None
    p95_latency_ms: int | None
    max_latency_ms: int | None
    wall_clock_duration_ms: int
    outcome: RunOutcome | None = None
    persistence_degraded: bool = False
