"""WASIM v1.0 – Stress Test Engine.

Wires identity generation, dispatch, correlation, the wait controller and
metrics into one run with a defined lifecycle:

    open()      validate config, subscribe to the message log
    execute()   dispatch → wait → finalize → RunReport
    cancel()    user stop: abort in-flight calls, stop waiting, keep results

Invalid configs and an unreachable store are the only run-level errors; both
are raised before anything is dispatched.

Usage:
    engine = StressTestEngine(store=store, settings=settings)
    report = await engine.run(RunConfig(user_count=10, messages_per_user=1,
                                        webhook_url="http://localhost:5678/webhook/wa"))
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from uuid import uuid4

import httpx
import structlog

from app.core.instrumentation import STRESS_RUNS_TOTAL
from app.integrations.webhook_client import WebhookClient
from app.integrations.whatsapp import BusinessAccount
from app.stress.controller import CompletionController
from app.stress.correlation import CorrelationTracker
from app.stress.dispatch import DispatchReport, Dispatcher
from app.stress.errors import PersistenceFailure
from app.stress.identity import IdentityGenerator
from app.stress.metrics import aggregate
from app.stress.models import RunConfig, RunOutcome, RunResult, RunSummary
from app.stress.store import MessageLog, Subscription
from config.settings import Settings

logger = structlog.get_logger()

MAX_RUN_HISTORY = 20


class RunState(str, Enum):
    CREATED = "created"
    DISPATCHING = "dispatching"
    WAITING = "waiting"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class RunReport:
    run_id: str
    state: RunState
    outcome: RunOutcome | None
    summary: RunSummary
    results: list[RunResult] = field(default_factory=list)
    dispatch: DispatchReport | None = None


class StressTestRun:
    """One stress test run. Create through ``StressTestEngine``."""

    def __init__(
        self,
        config: RunConfig,
        *,
        store: MessageLog,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        on_update: Callable[[RunResult], None] | None = None,
    ) -> None:
        self.run_id = uuid4().hex[:12]
        self.config = config
        self.state = RunState.CREATED
        self.outcome: RunOutcome | None = None
        self._store = store
        self._settings = settings
        self._transport = transport
        self._tracker = CorrelationTracker(on_update=on_update)
        self._controller = CompletionController(
            self._tracker, poll_interval_ms=settings.stress_poll_interval_ms
        )
        self._subscription: Subscription | None = None
        self._dispatcher: Dispatcher | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self.task: asyncio.Task | None = None

    @property
    def is_finished(self) -> bool:
        return self.state in (RunState.FINISHED, RunState.FAILED)

    async def open(self) -> None:
        """Subscribe to the message log before the first webhook call."""
        with structlog.contextvars.bound_contextvars(run_id=self.run_id):
            try:
                self._subscription = await self._store.subscribe_all(self._tracker.on_records)
            except Exception as exc:
                self.state = RunState.FAILED
                logger.error("stress.run.store_unavailable", error=str(exc))
                raise PersistenceFailure(f"Message store unavailable: {exc}") from exc

    async def execute(self) -> RunReport:
        if self._subscription is None:
            await self.open()

        with structlog.contextvars.bound_contextvars(run_id=self.run_id):
            self._started_at = time.monotonic()
            logger.info("stress.run.started", total_units=self.config.total_units)
            try:
                await self._dispatch()
                if self._controller.cancelled:
                    self.outcome = RunOutcome.CANCELLED
                else:
                    self.state = RunState.WAITING
                    self.outcome, _ = await self._controller.await_completion(
                        self.config.wait_deadline_ms
                    )
                self.state = RunState.FINISHED
            except BaseException:
                self.state = RunState.FAILED
                raise
            finally:
                self._finished_at = time.monotonic()
                await self._teardown()

            report = self.snapshot()
            STRESS_RUNS_TOTAL.labels(outcome=self.outcome.value).inc()
            logger.info(
                "stress.run.finished",
                outcome=self.outcome.value,
                success=report.summary.success_count,
                errors=report.summary.error_count,
                no_response=report.summary.no_response_count,
                ignored_untracked=self._tracker.ignored_untracked,
                ignored_duplicates=self._tracker.ignored_duplicates,
                duration_ms=report.summary.wall_clock_duration_ms,
            )
            return report

    async def _dispatch(self) -> None:
        if self._controller.cancelled:
            return
        self.state = RunState.DISPATCHING
        client = WebhookClient(
            timeout=self._settings.webhook_timeout_seconds,
            max_connections=self._settings.stress_dispatch_concurrency,
            app_secret=self._settings.wa_app_secret,
            transport=self._transport,
        )
        self._dispatcher = Dispatcher(
            client=client,
            store=self._store,
            tracker=self._tracker,
            identities=IdentityGenerator(
                expected_units=self.config.total_units,
                prefix=self._settings.phone_prefix,
            ),
            account=BusinessAccount(
                account_id=self._settings.wa_business_account_id,
                phone_number_id=self._settings.wa_phone_number_id,
                display_phone_number=self._settings.wa_display_phone_number,
            ),
            concurrency=self._settings.stress_dispatch_concurrency,
            persist_batch_size=self._settings.stress_persist_batch_size,
            run_id=self.run_id,
        )
        self._dispatch_task = asyncio.create_task(self._dispatcher.run(self.config))
        try:
            await self._dispatch_task
        except asyncio.CancelledError:
            if not self._controller.cancelled:
                raise
        finally:
            await client.aclose()

    def cancel(self) -> bool:
        """Stop the run. Returns False if it had already finished."""
        if self.is_finished:
            return False
        logger.info("stress.run.cancel_requested", run_id=self.run_id, state=self.state.value)
        self._controller.cancel()
        if self._dispatch_task is not None and not self._dispatch_task.done():
            self._dispatch_task.cancel()
        return True

    async def _teardown(self) -> None:
        if self._subscription is not None:
            await self._subscription.aclose()
            self._subscription = None

    def elapsed_ms(self) -> int:
        if self._started_at is None:
            return 0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return int(round((end - self._started_at) * 1000))

    def snapshot(self) -> RunReport:
        """Current state of the run; final once ``is_finished``."""
        results = self._tracker.results
        dispatch = self._dispatcher.report if self._dispatcher else None
        summary = aggregate(
            results,
            wall_clock_duration_ms=self.elapsed_ms(),
            outcome=self.outcome,
            persistence_degraded=bool(dispatch and dispatch.persistence_degraded),
        )
        return RunReport(
            run_id=self.run_id,
            state=self.state,
            outcome=self.outcome,
            summary=summary,
            results=results,
            dispatch=dispatch,
        )


class StressTestEngine:
    """Creates, tracks and cancels stress runs against one message store.

    Constructed once at process start and injected wherever runs are started.
    """

    def __init__(
        self,
        *,
        store: MessageLog,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._transport = transport
        self._runs: OrderedDict[str, StressTestRun] = OrderedDict()

    def validate(self, config: RunConfig) -> None:
        config.validate(
            max_users=self._settings.stress_max_users,
            max_messages_per_user=self._settings.stress_max_messages_per_user,
        )

    async def prepare(
        self,
        config: RunConfig,
        on_update: Callable[[RunResult], None] | None = None,
    ) -> StressTestRun:
        """Validate and subscribe. Raises InvalidConfig / PersistenceFailure."""
        self.validate(config)
        run = StressTestRun(
            config,
            store=self._store,
            settings=self._settings,
            transport=self._transport,
            on_update=on_update,
        )
        await run.open()
        self._remember(run)
        return run

    async def start(
        self,
        config: RunConfig,
        on_update: Callable[[RunResult], None] | None = None,
    ) -> StressTestRun:
        """Prepare a run and execute it in the background."""
        run = await self.prepare(config, on_update=on_update)
        run.task = asyncio.create_task(run.execute())
        run.task.add_done_callback(self._log_task_failure)
        return run

    async def run(
        self,
        config: RunConfig,
        on_update: Callable[[RunResult], None] | None = None,
    ) -> RunReport:
        """Prepare and execute a run, returning its final report."""
        run = await self.prepare(config, on_update=on_update)
        return await run.execute()

    def get(self, run_id: str) -> StressTestRun | None:
        return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return run.cancel() if run else False

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to settle."""
        tasks = []
        for run in self._runs.values():
            if run.cancel() and run.task is not None:
                tasks.append(run.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _remember(self, run: StressTestRun) -> None:
        self._runs[run.run_id] = run
        # active runs are never evicted; drop the oldest finished one instead
        while len(self._runs) > MAX_RUN_HISTORY:
            finished_id = next((rid for rid, r in self._runs.items() if r.is_finished), None)
            if finished_id is None:
                break
            del self._runs[finished_id]

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("stress.run.failed", error=str(exc), error_type=exc.__class__.__name__)
