"""WASIM v1.0 – Gateway Unit Tests.

Tests: health, stress test API, simulator endpoints, metrics.
"""

import asyncio
import json

import pytest
from conftest import WEBHOOK_URL, MemoryMessageLog
from httpx import AsyncClient

from app.gateway.dependencies import get_app_settings
from app.gateway.main import app
from app.gateway.message_store import RedisMessageStore
from app.gateway.schemas import Direction, MessageRecord
from app.integrations.whatsapp import sign_payload
from config.settings import Settings


# ──────────────────────────────────────────
# Health Endpoint
# ──────────────────────────────────────────


class TestHealthEndpoint:
    @pytest.mark.anyio
    async def test_health_contains_required_fields(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "wasim-gateway"
        assert data["version"] == "1.0.0"
        # Status is either "ok" (Redis up) or "degraded" (Redis down)
        assert data["status"] in ("ok", "degraded")
        assert "timestamp" in data

    @pytest.mark.anyio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "wasim_http_requests_total" in response.text


# ──────────────────────────────────────────
# Stress Test API
# ──────────────────────────────────────────


class TestStressTestApi:
    @pytest.mark.anyio
    async def test_describe(self, client: AsyncClient) -> None:
        response = await client.get("/api/stress-test")
        data = response.json()
        assert data["method"] == "POST"
        assert data["parameters"]["webhookUrl"]["required"] is True
        assert data["parameters"]["messagesPerUser"]["max"] == 10

    @pytest.mark.anyio
    async def test_run_to_completion(self, client: AsyncClient, memory_log: MemoryMessageLog) -> None:
        response = await client.post(
            "/api/stress-test",
            json={"userCount": 3, "messagesPerUser": 2, "webhookUrl": WEBHOOK_URL},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "completed"
        assert data["state"] == "finished"
        assert data["totalDispatched"] == 6
        assert data["successCount"] == 6
        assert data["errorCount"] == 0
        assert data["summary"]["latencyBands"]["lt_1s"] == 6
        assert data["resultsTruncated"] is False
        first = data["results"][0]
        assert first["status"] == "success"
        assert first["phoneId"].startswith("54911")
        assert first["displayName"] == "User1"
        assert first["httpOutcome"] == "accepted"
        assert len(memory_log.outbound()) == 6

    @pytest.mark.anyio
    async def test_results_preview_is_truncated(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/stress-test",
            json={"userCount": 60, "messagesPerUser": 1, "webhookUrl": WEBHOOK_URL},
        )
        data = response.json()
        assert data["totalDispatched"] == 60
        assert len(data["results"]) == 50
        assert data["resultsTruncated"] is True

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "body",
        [
            {"userCount": 0, "webhookUrl": WEBHOOK_URL},
            {"userCount": 10, "messagesPerUser": 11, "webhookUrl": WEBHOOK_URL},
            {"userCount": 10},
            {"userCount": 10, "webhookUrl": "not-a-url"},
            {"userCount": 10, "webhookUrl": WEBHOOK_URL, "interUserBatchDelayMs": -5},
            {"userCount": 1, "webhookUrl": WEBHOOK_URL, "waitDeadlineMs": 0},
        ],
    )
    async def test_invalid_config_returns_400(self, client: AsyncClient, body: dict) -> None:
        response = await client.post("/api/stress-test", json=body)
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_zero_deadline_rejected_for_background_runs(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/stress-test/runs",
            json={"userCount": 1, "webhookUrl": WEBHOOK_URL, "waitDeadlineMs": 0},
        )
        assert response.status_code == 400
        assert "waitDeadlineMs" in response.json()["detail"]

    @pytest.mark.anyio
    async def test_store_unavailable_returns_503(self, client: AsyncClient, memory_log: MemoryMessageLog) -> None:
        memory_log.fail_subscribe = True
        response = await client.post("/api/stress-test", json={"userCount": 1, "webhookUrl": WEBHOOK_URL})
        assert response.status_code == 503

    @pytest.mark.anyio
    async def test_background_run_lifecycle(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/stress-test/runs",
            json={"userCount": 2, "messagesPerUser": 1, "webhookUrl": WEBHOOK_URL},
        )
        assert response.status_code == 202
        started = response.json()
        assert started["totalUnits"] == 2
        run_id = started["runId"]

        data = {}
        for _ in range(200):
            data = (await client.get(f"/api/stress-test/runs/{run_id}")).json()
            if data["state"] == "finished":
                break
            await asyncio.sleep(0.01)
        assert data["state"] == "finished"
        assert data["successCount"] == 2

        stop = await client.delete(f"/api/stress-test/runs/{run_id}")
        assert stop.json()["stopped"] is False

    @pytest.mark.anyio
    async def test_unknown_run_returns_404(self, client: AsyncClient) -> None:
        assert (await client.get("/api/stress-test/runs/missing")).status_code == 404
        assert (await client.delete("/api/stress-test/runs/missing")).status_code == 404


# ──────────────────────────────────────────
# Simulator Endpoints
# ──────────────────────────────────────────


class TestSimulator:
    @pytest.mark.anyio
    async def test_send_webhook_text(self, client: AsyncClient, redis_store: RedisMessageStore) -> None:
        response = await client.post(
            "/api/send-webhook",
            json={
                "webhookUrl": WEBHOOK_URL,
                "messageType": "text",
                "content": "Hola",
                "from": "5491112345678",
                "contactName": "Ana",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        message = data["sentPayload"]["entry"][0]["changes"][0]["value"]["messages"][0]
        assert message["from"] == "5491112345678"
        assert message["text"]["body"] == "Hola"

        records = await redis_store.list_messages(phone="5491112345678")
        assert [(r.message, r.direction) for r in records] == [("Hola", Direction.OUTBOUND)]

    @pytest.mark.anyio
    async def test_send_webhook_audio(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/send-webhook",
            json={"webhookUrl": WEBHOOK_URL, "messageType": "audio", "from": "5491112345678", "contactName": "Ana"},
        )
        message = response.json()["sentPayload"]["entry"][0]["changes"][0]["value"]["messages"][0]
        assert message["type"] == "audio"
        assert message["audio"]["voice"] is True

    @pytest.mark.anyio
    async def test_send_webhook_requires_url(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/send-webhook",
            json={"webhookUrl": " ", "from": "5491112345678", "contactName": "Ana"},
        )
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_send_to_n8n(self, client: AsyncClient, redis_store: RedisMessageStore) -> None:
        response = await client.post(
            "/api/send-to-n8n",
            json={"webhookUrl": WEBHOOK_URL, "message": "Hola", "phone": "5491112345678", "name": "Ana"},
        )
        assert response.json() == {"success": True}
        assert await redis_store.count() == 1

    @pytest.mark.anyio
    async def test_send_to_n8n_requires_fields(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/send-to-n8n",
            json={"webhookUrl": WEBHOOK_URL, "message": " ", "phone": "5491112345678", "name": "Ana"},
        )
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_receive_and_list_replies(self, client: AsyncClient, redis_store: RedisMessageStore) -> None:
        response = await client.post("/api/receive-from-n8n", json={"phone": "5491112345678", "message": "Hola!"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        stored = await redis_store.list_messages(phone="5491112345678", direction=Direction.INBOUND)
        assert stored[0].message == "Hola!"

        listed = await client.get("/api/receive-from-n8n", params={"phone": "5491112345678"})
        assert [m["message"] for m in listed.json()["messages"]] == ["Hola!"]

    @pytest.mark.anyio
    async def test_receive_requires_phone_and_message(self, client: AsyncClient) -> None:
        response = await client.post("/api/receive-from-n8n", json={"phone": "", "message": "Hola"})
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_receive_checks_signature_when_secret_set(
        self, client: AsyncClient, redis_store: RedisMessageStore, settings: Settings
    ) -> None:
        app.dependency_overrides[get_app_settings] = lambda: settings.model_copy(update={"wa_app_secret": "s3cret"})
        raw = json.dumps({"phone": "5491112345678", "message": "Hola!"}).encode("utf-8")
        headers = {"Content-Type": "application/json"}

        unsigned = await client.post("/api/receive-from-n8n", content=raw, headers=headers)
        assert unsigned.status_code == 401

        forged = await client.post(
            "/api/receive-from-n8n",
            content=raw,
            headers={**headers, "X-Hub-Signature-256": sign_payload(raw, "other")},
        )
        assert forged.status_code == 401
        assert await redis_store.count() == 0

        signed = await client.post(
            "/api/receive-from-n8n",
            content=raw,
            headers={**headers, "X-Hub-Signature-256": sign_payload(raw, "s3cret")},
        )
        assert signed.status_code == 200
        assert await redis_store.count() == 1

    @pytest.mark.anyio
    async def test_list_replies_requires_phone(self, client: AsyncClient) -> None:
        assert (await client.get("/api/receive-from-n8n")).status_code == 400

    @pytest.mark.anyio
    async def test_messages_transcript_and_clear(self, client: AsyncClient, redis_store: RedisMessageStore) -> None:
        await redis_store.append_many(
            [
                MessageRecord(phone="5491100000001", message="hola", direction=Direction.OUTBOUND),
                MessageRecord(phone="5491100000001", message="buenas", direction=Direction.INBOUND),
            ]
        )
        listed = (await client.get("/api/messages")).json()["messages"]
        assert [m["direction"] for m in listed] == ["outbound", "inbound"]

        assert (await client.delete("/api/messages")).json() == {"success": True}
        assert (await client.get("/api/messages")).json()["messages"] == []

    @pytest.mark.anyio
    async def test_store_down_returns_503(self, client: AsyncClient, redis_store: RedisMessageStore) -> None:
        redis_store._client = None
        response = await client.post("/api/receive-from-n8n", json={"phone": "5491112345678", "message": "Hola"})
        assert response.status_code == 503

    @pytest.mark.anyio
    async def test_debug_webhook_echoes(self, client: AsyncClient) -> None:
        response = await client.post("/api/debug-webhook", json={"hello": "world"})
        debug = response.json()["debug"]
        assert debug["parsedBody"] == {"hello": "world"}
        assert debug["contentType"] == "application/json"

    @pytest.mark.anyio
    async def test_debug_webhook_plain_text(self, client: AsyncClient) -> None:
        response = await client.post("/api/debug-webhook", content=b"not json")
        assert response.json()["debug"]["parsedBody"] == "not json"
