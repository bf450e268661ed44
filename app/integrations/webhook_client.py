"""WASIM v1.0 – Outbound Webhook Client.

POSTs simulated WhatsApp payloads to the flow under test (n8n, Make, a bot
backend…). A single pooled ``httpx.AsyncClient`` is shared by a whole stress
run; the pool size follows the dispatch concurrency cap.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from app.integrations.whatsapp import sign_payload

logger = structlog.get_logger()

MAX_BODY_CHARS = 2000


class WebhookTransportError(Exception):
    """The request never produced an HTTP response (DNS, refused, timeout…)."""


@dataclass(frozen=True)
class WebhookResponse:
    ok: bool
    status_code: int
    body_text: str
    reason: str = ""


class WebhookClient:
    """Thin async JSON poster.

    Usage:
        async with WebhookClient(timeout=15.0, max_connections=100) as client:
            resp = await client.post_json(url, payload)
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_connections: int = 100,
        app_secret: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._app_secret = app_secret
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
            transport=transport,
        )

    async def __aenter__(self) -> "WebhookClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post_json(self, url: str, body: dict[str, Any]) -> WebhookResponse:
        """POST ``body`` as JSON.

        Returns:
            WebhookResponse, ``ok`` is True for 2xx.

        Raises:
            WebhookTransportError: no HTTP response was received.
        """
        raw = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self._app_secret:
            headers["X-Hub-Signature-256"] = sign_payload(raw, self._app_secret)

        try:
            response = await self._client.post(url, content=raw, headers=headers)
        except httpx.HTTPError as exc:
            detail = str(exc) or exc.__class__.__name__
            logger.debug("webhook.transport_error", url=url, error=detail)
            raise WebhookTransportError(detail) from exc

        return WebhookResponse(
            ok=response.is_success,
            status_code=response.status_code,
            body_text=response.text[:MAX_BODY_CHARS],
            reason=response.reason_phrase,
        )
