"""WASIM v1.0 – Simulator Router.

Single-message simulation and the reply ingress used by flows under test:

    POST   /api/send-webhook        simulate one text / voice note / image message
    POST   /api/send-to-n8n         simulate one text message (chat view)
    POST   /api/receive-from-n8n    flow under test posts its reply here
    GET    /api/receive-from-n8n    replies stored for a phone
    POST   /api/debug-webhook       echo whatever was posted
    GET    /api/messages            transcript
    DELETE /api/messages            clear the transcript
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from app.gateway.dependencies import get_app_settings, get_business_account, get_message_store
from app.gateway.message_store import RedisMessageStore
from app.gateway.schemas import (
    Direction,
    InboundReply,
    MessageRecord,
    SendToN8nRequest,
    SendWebhookRequest,
)
from app.integrations.webhook_client import WebhookClient, WebhookTransportError
from app.integrations.whatsapp import (
    BusinessAccount,
    WebhookEnvelope,
    build_media_payload,
    verify_webhook_signature,
)
from app.stress.identity import generate_message_id
from config.settings import Settings

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["simulator"])

STORE_ERRORS = (RedisError, RuntimeError)


async def get_webhook_client(settings: Settings = Depends(get_app_settings)) -> AsyncIterator[WebhookClient]:
    async with WebhookClient(
        timeout=settings.webhook_timeout_seconds,
        max_connections=10,
        app_secret=settings.wa_app_secret,
    ) as client:
        yield client


def _store_unavailable(exc: Exception) -> HTTPException:
    logger.error("simulator.store_unavailable", error=str(exc))
    return HTTPException(status_code=503, detail="Message store unavailable")


async def _record_outbound(store: RedisMessageStore, phone: str, text: str, message_id: str) -> None:
    """Best-effort transcript entry; the webhook call doesn't depend on it."""
    now = datetime.now(timezone.utc)
    try:
        await store.append(
            MessageRecord(
                phone=phone,
                message=text,
                direction=Direction.OUTBOUND,
                timestamp=now,
                sent_at_ms=int(now.timestamp() * 1000),
                message_id=message_id,
            )
        )
    except STORE_ERRORS as exc:
        logger.warning("simulator.outbound_not_recorded", error=str(exc))


def _build(
    account: BusinessAccount,
    message_type: str,
    content: str,
    phone: str,
    name: str,
) -> WebhookEnvelope:
    return build_media_payload(
        account=account,
        message_type=message_type,
        content=content,
        phone_id=phone,
        display_name=name,
        message_id=generate_message_id(),
        media_id=generate_message_id().removeprefix("wamid."),
        run_timestamp=datetime.now(timezone.utc),
    )


# ──────────────────────────────────────────
# Simulated inbound (user → flow)
# ──────────────────────────────────────────


@router.post("/send-webhook")
async def send_webhook(
    body: SendWebhookRequest,
    client: WebhookClient = Depends(get_webhook_client),
    store: RedisMessageStore = Depends(get_message_store),
    account: BusinessAccount = Depends(get_business_account),
) -> Any:
    """Send one simulated WhatsApp message to ``webhookUrl``."""
    if not body.webhook_url.strip():
        raise HTTPException(status_code=400, detail="Webhook URL is required")
    if not body.phone or not body.contact_name:
        raise HTTPException(status_code=400, detail="from and contactName are required")

    payload = _build(account, body.message_type, body.content, body.phone, body.contact_name)
    wire = payload.to_wire()
    try:
        response = await client.post_json(body.webhook_url.strip(), wire)
    except WebhookTransportError as exc:
        logger.warning("simulator.send_webhook.transport_error", error=str(exc))
        return JSONResponse(status_code=502, content={"error": str(exc)})

    if not response.ok:
        logger.info("simulator.send_webhook.upstream_error", status=response.status_code)
        return JSONResponse(
            status_code=502,
            content={"error": f"Webhook failed: {response.status_code}", "responseBody": response.body_text},
        )

    await _record_outbound(store, body.phone, body.content or f"[{body.message_type}]", payload.message.id)
    logger.info("simulator.send_webhook.sent", type=body.message_type)
    return {"success": True, "message": "Webhook sent successfully", "sentPayload": wire}


@router.post("/send-to-n8n")
async def send_to_n8n(
    body: SendToN8nRequest,
    client: WebhookClient = Depends(get_webhook_client),
    store: RedisMessageStore = Depends(get_message_store),
    account: BusinessAccount = Depends(get_business_account),
) -> Any:
    """Chat-view variant: text only, always recorded in the transcript."""
    for field_name in ("webhook_url", "message", "phone", "name"):
        if not getattr(body, field_name).strip():
            raise HTTPException(status_code=400, detail=f"{field_name} required")

    payload = _build(account, "text", body.message, body.phone, body.name)
    await _record_outbound(store, body.phone, body.message, payload.message.id)
    try:
        response = await client.post_json(body.webhook_url.strip(), payload.to_wire())
    except WebhookTransportError as exc:
        return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})

    if not response.ok:
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "error": "upstream error",
                "status": response.status_code,
                "body": response.body_text,
            },
        )
    return {"success": True}


# ──────────────────────────────────────────
# Replies (flow → simulated user)
# ──────────────────────────────────────────


@router.post("/receive-from-n8n")
async def receive_reply(
    body: InboundReply,
    request: Request,
    store: RedisMessageStore = Depends(get_message_store),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Store a reply from the flow under test. Stress runs correlate on ``phone``.

    With ``wa_app_secret`` set the body must carry a valid ``X-Hub-Signature-256``.
    """
    if settings.wa_app_secret:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not verify_webhook_signature(await request.body(), signature, settings.wa_app_secret):
            logger.warning("simulator.reply_signature_invalid", phone=body.phone)
            raise HTTPException(status_code=401, detail="Invalid signature")
    if not body.phone.strip() or not body.message:
        raise HTTPException(status_code=400, detail="message and phone required")
    record = MessageRecord(phone=body.phone.strip(), message=body.message, direction=Direction.INBOUND)
    try:
        record_id = await store.append(record)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    logger.debug("simulator.reply_received", phone=record.phone)
    return {"success": True, "id": record_id}


@router.get("/receive-from-n8n")
async def list_replies(
    phone: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    store: RedisMessageStore = Depends(get_message_store),
) -> dict[str, Any]:
    if not phone:
        raise HTTPException(status_code=400, detail="phone query required")
    try:
        records = await store.list_messages(phone=phone, direction=Direction.INBOUND, since=since)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return {"success": True, "messages": [r.model_dump(mode="json") for r in records]}


# ──────────────────────────────────────────
# Transcript & debugging
# ──────────────────────────────────────────


@router.get("/messages")
async def list_messages(
    phone: str | None = Query(default=None),
    limit: int = Query(default=0, ge=0),
    store: RedisMessageStore = Depends(get_message_store),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    try:
        records = await store.list_messages(phone=phone, limit=limit or settings.store_list_limit)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return {"messages": [r.model_dump(mode="json") for r in records]}


@router.delete("/messages")
async def clear_messages(store: RedisMessageStore = Depends(get_message_store)) -> dict[str, Any]:
    try:
        await store.clear()
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return {"success": True}


@router.post("/debug-webhook")
async def debug_webhook(request: Request) -> dict[str, Any]:
    """Echo the raw request, handy to point a flow's HTTP node at."""
    raw = (await request.body()).decode("utf-8", errors="replace")
    content_type = request.headers.get("content-type")
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError:
        parsed = raw
    logger.info("simulator.debug_webhook", content_type=content_type, size=len(raw))
    return {
        "success": True,
        "debug": {
            "rawText": raw[:500],
            "contentType": content_type,
            "parsedBody": parsed,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
