"""Message log contract the stress engine runs against.

``RedisMessageStore`` (app/gateway/message_store.py) is the production
implementation; anything with these two coroutines works.
"""

from typing import Any, Awaitable, Callable, Protocol, Union

from app.gateway.schemas import MessageRecord

RecordsCallback = Callable[[list[MessageRecord]], Union[Awaitable[Any], Any]]


class Subscription(Protocol):
    async def aclose(self) -> None: ...


class MessageLog(Protocol):
    async def append_many(self, records: list[MessageRecord]) -> list[str]: ...

    async def subscribe_all(self, callback: RecordsCallback) -> Subscription: ...
