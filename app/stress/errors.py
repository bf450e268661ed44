"""WASIM v1.0 – Stress Test Errors.

Run-level failures only. Per-unit send failures are recorded on the unit's
RunResult and never raised; timeouts and cancellations are run outcomes.
"""


class StressTestError(Exception):
    """Base class for stress test failures."""


class InvalidConfig(StressTestError):
    """Run parameters are missing or out of bounds. Raised before any dispatch."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class PersistenceFailure(StressTestError):
    """The message store cannot be reached or subscribed to."""


class InvalidTransition(StressTestError):
    """A RunResult was asked to leave a terminal state or skip a state."""

    def __init__(self, phone_id: str, current: str, requested: str) -> None:
        super().__init__(f"{phone_id}: cannot move from '{current}' to '{requested}'")
        self.phone_id = phone_id
        self.current = current
        self.requested = requested
