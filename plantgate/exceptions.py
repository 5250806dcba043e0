"""
Error taxonomy for the entitlement engine.

Services translate storage and provider exceptions into these classes at
their boundary, so the gate and the API layer never see a raw httpx,
postgrest or filesystem error. Each class maps to its own user-facing
message: running out of free scans and failing to reach the server are
never reported the same way.
"""


class PlantGateError(Exception):
    """Base class for all entitlement-engine errors."""


class PolicyDenied(PlantGateError):
    """An action is not allowed by the current plan. Expected, not a failure."""


class GardenCapacityExceeded(PolicyDenied):
    """The garden already holds as many plants as the plan allows."""

    def __init__(self, capacity: int):
        super().__init__(f"Garden capacity of {capacity} plants reached")
        self.capacity = capacity


class TransientStorageFailure(PlantGateError):
    """A counter or subscription store could not be reached."""


class ExternalServiceRateLimited(PlantGateError):
    """The identification provider is saturated. Not the user's own quota."""


class ExternalServiceUnavailable(PlantGateError):
    """The identification provider failed for reasons unrelated to quota."""


class IdentificationTimeout(ExternalServiceUnavailable):
    """The identification provider did not answer in time."""


class NoPlantIdentified(PlantGateError):
    """The provider answered but recognised no plant in the image."""


class InvalidSubscriptionError(PlantGateError):
    """A subscription event or command is malformed for the current state."""


class ConfigurationError(PlantGateError):
    """Required secrets or tier tables are missing or inconsistent."""
