"""WASIM v1.0 – Gateway Schemas.

@BACKEND: Pydantic Models
Defines the message log record and the request/response bodies of the
simulator API. API bodies use camelCase on the wire (``userCount``) and
accept snake_case too.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.integrations.whatsapp import MessageType
from app.stress.models import HttpOutcome, RunOutcome, RunStatus


class Direction(str, Enum):
    """Direction relative to the simulated WhatsApp user.

    ``outbound`` = simulated user → flow under test (what we dispatch).
    ``inbound``  = flow under test → simulated user (the reply).
    """

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageRecord(BaseModel):
    """One entry of the message log."""

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    phone: str = Field(..., description="Synthetic phone id (correlation key)")
    message: str = Field(..., description="Message text")
    direction: Direction
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Wall-clock time the record was written (UTC)",
    )
    sent_at_ms: int | None = Field(default=None, description="Epoch ms of the webhook call")
    message_id: str | None = Field(default=None, description="wamid of the simulated message")
    run_id: str | None = Field(default=None, description="Stress run that produced the record")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────
# Stress test
# ──────────────────────────────────────────


class StressTestRequest(_CamelModel):
    user_count: int = 100
    messages_per_user: int = 1
    webhook_url: str = ""
    inter_user_batch_delay_ms: int = 0
    wait_deadline_ms: int | None = None


class RunResultOut(_CamelModel):
    phone_id: str
    display_name: str
    sent_message: str
    sequence_index: int
    message_index: int
    status: RunStatus
    http_outcome: HttpOutcome | None = None
    http_status: int | None = None
    error_detail: str | None = None
    matched_reply: str | None = None
    latency_ms: int | None = None
    send_duration_ms: int | None = None
    sent_at: datetime | None = None
    replied_at: datetime | None = None


class RunSummaryOut(_CamelModel):
    total_dispatched: int
    success_count: int
    error_count: int
    no_response_count: int
    pending_count: int
    latency_bands: dict[str, int]
    min_latency_ms: int | None = None
    avg_latency_ms: float | None = None
    p50_latency_ms: int | None = None
    p95_latency_ms: int | None = None
    max_latency_ms: int | None = None
    wall_clock_duration_ms: int
    outcome: RunOutcome | None = None
    persistence_degraded: bool = False


class StressTestResponse(_CamelModel):
    run_id: str
    state: str
    outcome: RunOutcome | None = None
    total_dispatched: int
    success_count: int
    error_count: int
    summary: RunSummaryOut
    results: list[RunResultOut] = Field(default_factory=list)
    results_truncated: bool = False


class RunStartedResponse(_CamelModel):
    run_id: str
    state: str
    total_units: int


# ──────────────────────────────────────────
# Single message simulation
# ──────────────────────────────────────────


class SendWebhookRequest(_CamelModel):
    webhook_url: str
    message_type: MessageType = "text"
    content: str = ""
    phone: str = Field(..., alias="from")
    contact_name: str


class SendToN8nRequest(_CamelModel):
    webhook_url: str
    message: str
    phone: str
    name: str


class InboundReply(BaseModel):
    """Reply posted back by the flow under test."""

    phone: str
    message: str

