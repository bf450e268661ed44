"""WASIM v1.0 – Synthetic Identity Generator.

Phone ids follow ``<prefix><N random digits>``. N widens with the run size so
the id space stays at least 10^4 times larger than the number of units, and
ids already issued in the run are redrawn, which keeps them unique per run.
"""

from __future__ import annotations

import random
import string
import time

from app.stress.models import SyntheticIdentity

DEFAULT_PHONE_PREFIX = "54911"
MIN_RANDOM_DIGITS = 8
HEADROOM_DIGITS = 4
MAX_REDRAWS = 1000

_BASE36 = string.digits + string.ascii_lowercase


def random_digits_for(expected_units: int) -> int:
    """Digit width that keeps the phone id space >> ``expected_units``."""
    return max(MIN_RANDOM_DIGITS, len(str(max(expected_units, 1))) + HEADROOM_DIGITS)


def generate_message_id(rng: random.Random | None = None) -> str:
    """Provider-style opaque id, e.g. ``wamid.1718000000000_k3j9x0a1b2c3d``."""
    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(_BASE36) for _ in range(13))
    return f"wamid.{int(time.time() * 1000)}_{suffix}"


class IdentityGenerator:
    """Issues synthetic identities for one run.

    Usage:
        gen = IdentityGenerator(expected_units=config.total_units)
        identity = gen.next_identity(ordinal=1)
    """

    def __init__(
        self,
        expected_units: int = 1,
        prefix: str = DEFAULT_PHONE_PREFIX,
        rng: random.Random | None = None,
    ) -> None:
        self._prefix = prefix
        self._digits = random_digits_for(expected_units)
        self._rng = rng or random.SystemRandom()
        self._issued: set[str] = set()

    @property
    def digits(self) -> int:
        return self._digits

    @property
    def issued_count(self) -> int:
        return len(self._issued)

    def next_phone_id(self) -> str:
        for _ in range(MAX_REDRAWS):
            digits = "".join(self._rng.choice(string.digits) for _ in range(self._digits))
            phone_id = f"{self._prefix}{digits}"
            if phone_id not in self._issued:
                self._issued.add(phone_id)
                return phone_id
        raise RuntimeError(f"Phone id space exhausted after {MAX_REDRAWS} redraws")

    @staticmethod
    def next_display_name(ordinal: int) -> str:
        return f"User{ordinal}"

    def next_message_id(self) -> str:
        return generate_message_id(self._rng)

    def next_identity(self, ordinal: int) -> SyntheticIdentity:
        return SyntheticIdentity(
            phone_id=self.next_phone_id(),
            display_name=self.next_display_name(ordinal),
        )
