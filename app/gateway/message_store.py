"""WASIM v1.0 – Redis Message Store.

@BACKEND: Append-only message log on Redis.
Every simulated and replied message passes through here.

Keys:
    - `wasim:messages`       – list of JSON MessageRecords (append order)
    - `wasim:messages:live`  – pub/sub channel, one JSON array per append
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
from datetime import datetime

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from app.gateway.schemas import Direction, MessageRecord
from app.stress.store import RecordsCallback

logger = structlog.get_logger()


class RedisSubscription:
    """Handle returned by ``subscribe_all``. ``aclose()`` tears the listener down."""

    def __init__(self, pubsub: redis.client.PubSub, task: asyncio.Task) -> None:
        self._pubsub = pubsub
        self._task = task
        self._closed = False

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            logger.warning("store.unsubscribe_failed", error=str(exc))
        logger.debug("store.unsubscribed")


class RedisMessageStore:
    """Async message log backed by a Redis list plus a pub/sub channel."""

    def __init__(
        self,
        redis_url: str = "redis://127.0.0.1:6379/0",
        key_prefix: str = "wasim",
    ) -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None
        self._subscriptions: set[RedisSubscription] = set()
        self.messages_key = f"{key_prefix}:messages"
        self.live_channel = f"{key_prefix}:messages:live"

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("store.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        """Close open subscriptions and the Redis connection."""
        for sub in list(self._subscriptions):
            await sub.aclose()
        self._subscriptions.clear()
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("store.disconnected")

    async def health_check(self) -> bool:
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("store.health_check_failed")
            return False

    @property
    def client(self) -> redis.Redis:
        """Direct access to Redis client for advanced operations."""
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client

    # ──────────────────────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────────────────────

    async def append(self, record: MessageRecord) -> str:
        ids = await self.append_many([record])
        return ids[0]

    async def append_many(self, records: list[MessageRecord]) -> list[str]:
        """Append records in one round trip and notify live subscribers.

        Returns:
            The record ids, in input order.
        """
        if not records:
            return []
        client = self.client
        encoded = [record.model_dump_json() for record in records]
        async with client.pipeline(transaction=True) as pipe:
            pipe.rpush(self.messages_key, *encoded)
            pipe.publish(self.live_channel, "[" + ",".join(encoded) + "]")
            await pipe.execute()
        logger.debug("store.appended", count=len(records))
        return [record.record_id for record in records]

    async def clear(self) -> int:
        """Drop the whole log. Returns the number of deleted keys."""
        deleted = await self.client.delete(self.messages_key)
        logger.info("store.cleared")
        return deleted

    # ──────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────

    async def count(self) -> int:
        return await self.client.llen(self.messages_key)

    async def list_messages(
        self,
        phone: str | None = None,
        direction: Direction | None = None,
        since: datetime | None = None,
        limit: int = 500,
    ) -> list[MessageRecord]:
        """Return matching records in append order (the last ``limit`` of them)."""
        raw_items = await self.client.lrange(self.messages_key, 0, -1)
        matched: list[MessageRecord] = []
        for raw in raw_items:
            record = self._decode_one(raw)
            if record is None:
                continue
            if phone is not None and record.phone != phone:
                continue
            if direction is not None and record.direction != direction:
                continue
            if since is not None and record.timestamp < since:
                continue
            matched.append(record)
        return matched[-limit:] if limit > 0 else matched

    async def subscribe_all(self, callback: RecordsCallback) -> RedisSubscription:
        """Deliver every record appended from now on to ``callback``.

        The channel subscription is confirmed before this returns, so no append
        made afterwards is missed. ``callback`` may be sync or async and gets
        one list per append call.
        """
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.live_channel)
        task = asyncio.create_task(self._listen(pubsub, callback))
        subscription = RedisSubscription(pubsub, task)
        self._subscriptions.add(subscription)
        task.add_done_callback(lambda _t: self._subscriptions.discard(subscription))
        logger.info("store.subscribed", channel=self.live_channel)
        return subscription

    async def _listen(self, pubsub: redis.client.PubSub, callback: RecordsCallback) -> None:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            records = self._decode_batch(message["data"])
            if not records:
                continue
            try:
                result = callback(records)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("store.subscriber_callback_failed", count=len(records))

    @staticmethod
    def _decode_one(raw: str) -> MessageRecord | None:
        try:
            return MessageRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("store.record_invalid", error=str(exc))
            return None

    @staticmethod
    def _decode_batch(raw: str) -> list[MessageRecord]:
        try:
            items = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("store.batch_invalid")
            return []
        records: list[MessageRecord] = []
        for item in items if isinstance(items, list) else [items]:
            try:
                records.append(MessageRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning("store.record_invalid", error=str(exc))
        return records
