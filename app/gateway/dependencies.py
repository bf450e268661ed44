"""Shared dependencies for the Gateway routers.

Avoids circular imports by centralizing singleton initialization. The
message store and the stress engine are built once here and handed to
routers through FastAPI ``Depends`` so tests can override them.
"""

import structlog

from app.gateway.message_store import RedisMessageStore
from app.integrations.whatsapp import BusinessAccount
from app.stress.engine import StressTestEngine
from config.settings import Settings, get_settings

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
message_store = RedisMessageStore(
    redis_url=settings.redis_url,
    key_prefix=settings.store_key_prefix,
)
stress_engine = StressTestEngine(store=message_store, settings=settings)


def get_app_settings() -> Settings:
    return settings


def get_message_store() -> RedisMessageStore:
    return message_store


def get_stress_engine() -> StressTestEngine:
    return stress_engine


def get_business_account() -> BusinessAccount:
    return BusinessAccount(
        account_id=settings.wa_business_account_id,
        phone_number_id=settings.wa_phone_number_id,
        display_phone_number=settings.wa_display_phone_number,
    )
