"""WASIM v1.0 – Pytest Configuration.

Shared fixtures for all tests: an in-memory message log for engine tests, a
fakeredis-backed RedisMessageStore for store/API tests, and webhook
transports that play the flow under test.
"""

import asyncio
import json
import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["WA_APP_SECRET"] = ""

import fakeredis.aioredis
import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from app.gateway.dependencies import get_app_settings, get_message_store, get_stress_engine
from app.gateway.main import app
from app.gateway.message_store import RedisMessageStore
from app.gateway.routers.simulator import get_webhook_client
from app.gateway.schemas import Direction, MessageRecord
from app.integrations.webhook_client import WebhookClient
from app.stress.engine import StressTestEngine
from config.settings import Settings

WEBHOOK_URL = "http://flow.test/webhook/whatsapp"


class MemorySubscription:
    def __init__(self, log: "MemoryMessageLog", callback) -> None:
        self._log = log
        self._callback = callback
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True
        if self._callback in self._log.callbacks:
            self._log.callbacks.remove(self._callback)


class MemoryMessageLog:
    """Message log double: callbacks fire synchronously on append."""

    def __init__(self, fail_appends: bool = False, fail_subscribe: bool = False) -> None:
        self.records: list[MessageRecord] = []
        self.callbacks: list = []
        self.subscriptions: list[MemorySubscription] = []
        self.fail_appends = fail_appends
        self.fail_subscribe = fail_subscribe

    async def append_many(self, records: list[MessageRecord]) -> list[str]:
        if self.fail_appends:
            raise ConnectionError("store down")
        self.records.extend(records)
        self._deliver(list(records))
        return [r.record_id for r in records]

    async def subscribe_all(self, callback) -> MemorySubscription:
        if self.fail_subscribe:
            raise ConnectionError("store down")
        self.callbacks.append(callback)
        subscription = MemorySubscription(self, callback)
        self.subscriptions.append(subscription)
        return subscription

    def push_reply(self, phone: str, message: str) -> None:
        """The flow under test answering ``phone``."""
        record = MessageRecord(phone=phone, message=message, direction=Direction.INBOUND)
        self.records.append(record)
        self._deliver([record])

    def outbound(self) -> list[MessageRecord]:
        return [r for r in self.records if r.direction is Direction.OUTBOUND]

    def _deliver(self, records: list[MessageRecord]) -> None:
        for callback in list(self.callbacks):
            callback(records)


def sender_of(request: httpx.Request) -> str:
    """Phone id of the simulated user in a webhook request."""
    payload = json.loads(request.content)
    return payload["entry"][0]["changes"][0]["value"]["messages"][0]["from"]


def text_of(request: httpx.Request) -> str:
    payload = json.loads(request.content)
    return payload["entry"][0]["changes"][0]["value"]["messages"][0]["text"]["body"]


def replying_transport(
    log: MemoryMessageLog,
    reply: str = "Hola, ¿en qué te ayudo?",
    delay: float = 0.0,
    status_code: int = 200,
) -> httpx.MockTransport:
    """Flow double: accepts the webhook and replies to the sender.

    ``delay=0`` replies before the HTTP response is returned, i.e. while the
    unit is still ``pending``.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        phone = sender_of(request)
        if delay:
            asyncio.get_running_loop().call_later(delay, log.push_reply, phone, reply)
        else:
            log.push_reply(phone, reply)
        return httpx.Response(status_code, json={"ok": True})

    return httpx.MockTransport(handler)


def silent_transport(status_code: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, text="accepted"))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        stress_poll_interval_ms=10,
        stress_wait_deadline_ms=2000,
        stress_dispatch_concurrency=8,
        stress_persist_batch_size=4,
        stress_results_preview_limit=50,
    )


@pytest.fixture
def memory_log() -> MemoryMessageLog:
    return MemoryMessageLog()


@pytest.fixture
async def redis_store():
    """RedisMessageStore with a fakeredis backend."""
    store = RedisMessageStore(key_prefix="wasim-test")
    store._client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield store
    await store.disconnect()


@pytest.fixture
async def client(redis_store: RedisMessageStore, memory_log: MemoryMessageLog, settings: Settings):
    """Async test client for the gateway.

    Simulator routes use the fakeredis store; stress routes run against the
    in-memory log with a flow that replies to every message.
    """
    engine = StressTestEngine(
        store=memory_log,
        settings=settings,
        transport=replying_transport(memory_log),
    )

    async def webhook_client():
        async with WebhookClient(transport=silent_transport()) as wc:
            yield wc

    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_message_store] = lambda: redis_store
    app.dependency_overrides[get_stress_engine] = lambda: engine
    app.dependency_overrides[get_webhook_client] = webhook_client
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await engine.shutdown()
    app.dependency_overrides.clear()
