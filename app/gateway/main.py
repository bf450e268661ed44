"""WASIM v1.0 – Simulator Gateway.

@BACKEND: FastAPI app wiring the message store, the stress engine and the
simulator routers. Run with ``uvicorn app.gateway.main:app``.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.instrumentation import router as metrics_router
from app.core.instrumentation import setup_instrumentation
from app.gateway.dependencies import message_store, settings, stress_engine
from app.gateway.routers.simulator import router as simulator_router
from app.gateway.routers.stress_test import router as stress_test_router

logger = structlog.get_logger()

VERSION = "1.0.0"


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: connect the store on startup, stop runs on shutdown."""
    logger.info("wasim.gateway.startup", version=VERSION, env=settings.environment)
    try:
        await message_store.connect()
    except Exception as exc:
        logger.warning("wasim.gateway.store_unavailable", error=str(exc), msg="Starting without Redis")

    yield
    await stress_engine.shutdown()
    await message_store.disconnect()
    logger.info("wasim.gateway.shutdown")


app = FastAPI(
    title="WASIM Gateway",
    description="WhatsApp Business webhook simulator – FastAPI + Redis message log",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, log_level=settings.log_level)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(metrics_router)
app.include_router(stress_test_router)
app.include_router(simulator_router)


# ──────────────────────────────────────────
# Health Endpoint
# ──────────────────────────────────────────


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – ``ok`` with Redis, ``degraded`` without."""
    redis_ok = await message_store.health_check()
    return {
        "status": "ok" if redis_ok else "degraded",
        "service": "wasim-gateway",
        "version": VERSION,
        "redis": "connected" if redis_ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.gateway.main:app", host=settings.gateway_host, port=settings.gateway_port)
