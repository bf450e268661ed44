"""WASIM v1.0 – Log Record Filter.

structlog processor applied before rendering: redacts secrets and clips long
values so payload dumps and reply bodies don't flood the log.
"""

import re
from typing import Any

SENSITIVE_KEYS = frozenset({
    "app_secret",
    "authorization",
    "password",
    "secret",
    "signature",
    "token",
    "x-hub-signature-256",
})

MAX_VALUE_CHARS = 500

_SIGNATURE = re.compile(r"sha256=[0-9a-f]{16,}")


def redact_value(value: str, max_chars: int = MAX_VALUE_CHARS) -> str:
    """Mask embedded webhook signatures and clip to ``max_chars``."""
    result = _SIGNATURE.sub("sha256=****", value)
    if len(result) > max_chars:
        result = result[:max_chars] + f"…(+{len(result) - max_chars})"
    return result


def filter_log_record(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "****"
        elif isinstance(value, str) and key != "exception":
            event_dict[key] = redact_value(value)
    return event_dict
