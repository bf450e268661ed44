"""WASIM v1.0 – Dispatch Loop.

Enumerates the user × message matrix **message-major**: message #1 for every
user, then (after ``inter_batch_delay_ms``, if set) message #2 for every user,
and so on. Each unit gets its own synthetic phone id.

Per unit: RunResult registered with the tracker → payload built → outbound
record queued → send time stamped → webhook POST → ``sent`` or ``error``.
Calls run concurrently under a semaphore; a failing unit never affects the
others and nothing is retried.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from app.core.instrumentation import STRESS_DISPATCH_TOTAL
from app.gateway.schemas import Direction, MessageRecord
from app.integrations.webhook_client import WebhookClient, WebhookTransportError
from app.integrations.whatsapp import BusinessAccount, build_text_payload
from app.stress.correlation import CorrelationTracker
from app.stress.identity import IdentityGenerator
from app.stress.models import DispatchUnit, HttpOutcome, RunConfig, RunResult
from app.stress.store import MessageLog

logger = structlog.get_logger()

SAMPLE_MESSAGES: tuple[str, ...] = (
    "Hola! ¿Cómo estás?",
    "Probando el sistema",
    "Test de estrés en progreso",
    "¿Todo funciona bien?",
    "Mensaje de prueba número 1",
    "Mensaje de prueba número 2",
    "Sistema en ejecución",
    "Validando rendimiento",
    "Test completado",
    "Listo para producción",
)


@dataclass
class DispatchReport:
    dispatched: int = 0
    accepted: int = 0
    send_errors: int = 0
    persisted: int = 0
    persistence_failures: int = 0
    duration_ms: int = 0

    @property
    def persistence_degraded(self) -> bool:
        return self.persistence_failures > 0


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


class Dispatcher:
    """Sends every unit of one run and records outbound messages in bulk."""

    def __init__(
        self,
        *,
        client: WebhookClient,
        store: MessageLog,
        tracker: CorrelationTracker,
        identities: IdentityGenerator,
        account: BusinessAccount,
        concurrency: int = 100,
        persist_batch_size: int = 500,
        run_id: str | None = None,
        messages: tuple[str, ...] = SAMPLE_MESSAGES,
    ) -> None:
        self._client = client
        self._store = store
        self._tracker = tracker
        self._identities = identities
        self._account = account
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))
        self._batch_size = max(persist_batch_size, 1)
        self._run_id = run_id
        self._messages = messages or SAMPLE_MESSAGES
        self._queued: list[MessageRecord] = []
        self._inflight: set[asyncio.Task] = set()
        self._flushes: set[asyncio.Task] = set()
        self.report = DispatchReport()

    # ──────────────────────────────────────────
    # Enumeration
    # ──────────────────────────────────────────

    def units(self, config: RunConfig):
        """Yield DispatchUnits in message-major order."""
        sequence = 0
        for m in range(config.messages_per_user):
            body = self._messages[m % len(self._messages)]
            for u in range(config.user_count):
                yield DispatchUnit(
                    identity=self._identities.next_identity(u + 1),
                    message_body=body,
                    sequence_index=sequence,
                    message_index=m,
                )
                sequence += 1

    async def run(self, config: RunConfig) -> DispatchReport:
        """Dispatch every unit. Outbound records are persisted before returning."""
        start = time.monotonic()
        url = config.webhook_url.strip()
        logger.info(
            "stress.dispatch.started",
            users=config.user_count,
            messages_per_user=config.messages_per_user,
            total=config.total_units,
            phone_digits=self._identities.digits,
        )
        try:
            current_wave = 0
            for unit in self.units(config):
                if unit.message_index != current_wave:
                    current_wave = unit.message_index
                    if config.inter_batch_delay_ms > 0:
                        await self._drain()
                        await asyncio.sleep(config.inter_batch_delay_ms / 1000)

                result = RunResult.for_unit(unit)
                self._tracker.track(result)
                await self._semaphore.acquire()
                task = asyncio.create_task(self._dispatch_one(unit, result, url))
                self._inflight.add(task)
                task.add_done_callback(self._unit_done)

            await self._drain()
        except asyncio.CancelledError:
            for task in self._inflight:
                task.cancel()
            await asyncio.gather(*self._inflight, return_exceptions=True)
            await self._flush()
            logger.info("stress.dispatch.cancelled", dispatched=self.report.dispatched)
            raise

        await self._flush()
        if self._flushes:
            await asyncio.gather(*self._flushes)
        self.report.duration_ms = _elapsed_ms(start)
        logger.info(
            "stress.dispatch.finished",
            dispatched=self.report.dispatched,
            accepted=self.report.accepted,
            phone_ids=self._identities.issued_count,
            send_errors=self.report.send_errors,
            persistence_failures=self.report.persistence_failures,
            duration_ms=self.report.duration_ms,
        )
        return self.report

    def _unit_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._semaphore.release()

    async def _drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ──────────────────────────────────────────
    # One unit
    # ──────────────────────────────────────────

    async def _dispatch_one(self, unit: DispatchUnit, result: RunResult, url: str) -> None:
        message_id = self._identities.next_message_id()
        payload = build_text_payload(
            account=self._account,
            phone_id=unit.identity.phone_id,
            display_name=unit.identity.display_name,
            message_body=unit.message_body,
            message_id=message_id,
            run_timestamp=datetime.now(timezone.utc),
        )
        body = payload.to_wire()

        started = result.begin_send()
        self._queue(
            MessageRecord(
                phone=unit.identity.phone_id,
                message=unit.message_body,
                direction=Direction.OUTBOUND,
                timestamp=result.sent_at,
                sent_at_ms=int(result.sent_at.timestamp() * 1000),
                message_id=message_id,
                run_id=self._run_id,
            )
        )
        self.report.dispatched += 1

        try:
            response = await self._client.post_json(url, body)
        except WebhookTransportError as exc:
            self._fail(result, HttpOutcome.NETWORK_ERROR, str(exc), _elapsed_ms(started))
            return
        except Exception as exc:
            logger.exception("stress.dispatch.unexpected_error", phone=result.phone_id)
            self._fail(result, HttpOutcome.NETWORK_ERROR, f"{exc.__class__.__name__}: {exc}", _elapsed_ms(started))
            return

        duration_ms = _elapsed_ms(started)
        if response.ok:
            result.mark_sent(response.status_code, duration_ms)
            self.report.accepted += 1
            STRESS_DISPATCH_TOTAL.labels(outcome=HttpOutcome.ACCEPTED.value).inc()
            self._tracker.send_acknowledged(result)
        else:
            detail = f"HTTP {response.status_code}: {response.reason}".rstrip(": ")
            self._fail(result, HttpOutcome.HTTP_ERROR, detail, duration_ms, response.status_code)

    def _fail(
        self,
        result: RunResult,
        outcome: HttpOutcome,
        detail: str,
        duration_ms: int,
        http_status: int | None = None,
    ) -> None:
        result.mark_send_failed(outcome, detail, duration_ms, http_status)
        self.report.send_errors += 1
        STRESS_DISPATCH_TOTAL.labels(outcome=outcome.value).inc()
        logger.warning(
            "stress.dispatch.send_failed",
            phone=result.phone_id,
            outcome=outcome.value,
            http_status=http_status,
            detail=detail,
        )
        self._tracker.send_failed(result)

    # ──────────────────────────────────────────
    # Outbound persistence
    # ──────────────────────────────────────────

    def _queue(self, record: MessageRecord) -> None:
        self._queued.append(record)
        if len(self._queued) >= self._batch_size:
            task = asyncio.create_task(self._flush())
            self._flushes.add(task)
            task.add_done_callback(self._flushes.discard)

    async def _flush(self) -> None:
        if not self._queued:
            return
        batch, self._queued = self._queued, []
        try:
            await self._store.append_many(batch)
        except Exception as exc:
            self.report.persistence_failures += len(batch)
            logger.error("stress.dispatch.persist_failed", count=len(batch), error=str(exc))
            return
        self.report.persisted += len(batch)
