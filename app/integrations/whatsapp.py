"""WASIM v1.0 – WhatsApp Webhook Payload Synthesizer.

Builds inbound-message webhooks in the shape the WhatsApp Cloud API (and
360dialog) deliver them, so flows under test can't tell them apart from real
traffic:

    object: whatsapp_business_account
    entry[0].changes[0].value
        ├── metadata  (display_phone_number, phone_number_id)
        ├── contacts  [{profile.name, wa_id}]
        └── messages  [{from, id, timestamp, type, text|audio|image}]

Envelopes are frozen pydantic models. ``to_wire()`` gives the JSON body.
Signature helpers mirror Meta's ``X-Hub-Signature-256`` header.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["text", "audio", "image"]

VOICE_NOTE_MIME = "audio/ogg; codecs=opus"
DEFAULT_IMAGE_URL = "https://example.com/image.jpg"
DEFAULT_AUDIO_URL = "https://example.com/audio.ogg"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class BusinessAccount(_Frozen):
    """The fake business number the simulated users are writing to."""

    account_id: str
    phone_number_id: str
    display_phone_number: str


class TextContent(_Frozen):
    body: str


class MediaContent(_Frozen):
    id: str
    mime_type: str
    sha256: str
    url: str
    voice: bool | None = None


class WaMessage(_Frozen):
    from_: str = Field(alias="from")
    id: str
    timestamp: str
    type: MessageType
    text: TextContent | None = None
    audio: MediaContent | None = None
    image: MediaContent | None = None


class ContactProfile(_Frozen):
    name: str


class Contact(_Frozen):
    profile: ContactProfile
    wa_id: str


class ValueMetadata(_Frozen):
    display_phone_number: str
    phone_number_id: str


class ChangeValue(_Frozen):
    messaging_product: str = "whatsapp"
    metadata: ValueMetadata
    contacts: tuple[Contact, ...]
    messages: tuple[WaMessage, ...]


class Change(_Frozen):
    value: ChangeValue
    field: str = "messages"


class Entry(_Frozen):
    id: str
    changes: tuple[Change, ...]


class WebhookEnvelope(_Frozen):
    """Complete inbound webhook document."""

    object: str = "whatsapp_business_account"
    entry: tuple[Entry, ...]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def message(self) -> WaMessage:
        return self.entry[0].changes[0].value.messages[0]


def _epoch_seconds(ts: datetime) -> str:
    return str(int(ts.timestamp()))


def _envelope(
    account: BusinessAccount,
    phone_id: str,
    display_name: str,
    message: WaMessage,
) -> WebhookEnvelope:
    value = ChangeValue(
        metadata=ValueMetadata(
            display_phone_number=account.display_phone_number,
            phone_number_id=account.phone_number_id,
        ),
        contacts=(Contact(profile=ContactProfile(name=display_name), wa_id=phone_id),),
        messages=(message,),
    )
    return WebhookEnvelope(entry=(Entry(id=account.account_id, changes=(Change(value=value),)),))


def build_text_payload(
    *,
    account: BusinessAccount,
    phone_id: str,
    display_name: str,
    message_body: str,
    message_id: str,
    run_timestamp: datetime,
) -> WebhookEnvelope:
    """Build a single text message webhook. Every argument is required."""
    message = WaMessage(
        from_=phone_id,
        id=message_id,
        timestamp=_epoch_seconds(run_timestamp),
        type="text",
        text=TextContent(body=message_body),
    )
    return _envelope(account, phone_id, display_name, message)


def build_media_payload(
    *,
    account: BusinessAccount,
    message_type: MessageType,
    content: str,
    phone_id: str,
    display_name: str,
    message_id: str,
    media_id: str,
    run_timestamp: datetime,
) -> WebhookEnvelope:
    """Build a text, voice note or image webhook.

    For images ``content`` is the media URL; audio is always a voice note
    pointing at a placeholder file.
    """
    if message_type == "text":
        return build_text_payload(
            account=account,
            phone_id=phone_id,
            display_name=display_name,
            message_body=content,
            message_id=message_id,
            run_timestamp=run_timestamp,
        )

    fields: dict[str, Any] = {}
    if message_type == "audio":
        fields["audio"] = MediaContent(
            id=media_id,
            mime_type=VOICE_NOTE_MIME,
            sha256=hashlib.sha256(media_id.encode("utf-8")).hexdigest(),
            url=DEFAULT_AUDIO_URL,
            voice=True,
        )
    elif message_type == "image":
        url = content or DEFAULT_IMAGE_URL
        fields["image"] = MediaContent(
            id=media_id,
            mime_type="image/jpeg",
            sha256=hashlib.sha256(url.encode("utf-8")).hexdigest(),
            url=url,
        )
    else:
        raise ValueError(f"Unsupported message type: {message_type}")

    message = WaMessage(
        from_=phone_id,
        id=message_id,
        timestamp=_epoch_seconds(run_timestamp),
        type=message_type,
        **fields,
    )
    return _envelope(account, phone_id, display_name, message)


# ──────────────────────────────────────────────────────────────
# Webhook signatures
# ──────────────────────────────────────────────────────────────


def sign_payload(payload_body: bytes, app_secret: str) -> str:
    """Return the ``X-Hub-Signature-256`` header value for a body."""
    digest = hmac.new(app_secret.encode("utf-8"), payload_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(payload_body: bytes, signature_header: str, app_secret: str) -> bool:
    """Verify a Meta-style HMAC-SHA256 webhook signature.

    Args:
        payload_body: Raw request body bytes.
        signature_header: ``X-Hub-Signature-256`` header value.
        app_secret: Shared secret.

    Returns:
        True if signature is valid, False otherwise.
    """
    if not app_secret:
        return False
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = sign_payload(payload_body, app_secret)
    return hmac.compare_digest(expected, signature_header)
