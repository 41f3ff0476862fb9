"""Domain models and errors for atvbridge.

Session records with their state machines, the read-only views the
registry hands out, and the error taxonomy shared with the API layer.
"""

from atvbridge.domain.errors import (
    BridgeError,
    DeviceTimeoutError,
    NotFoundError,
    ProviderError,
    RegistryClosedError,
    ValidationError,
)
from atvbridge.domain.models import (
    ConnectedRecord,
    ConnectionState,
    DeviceStatus,
    DeviceSummary,
    PairingRecord,
    PairingState,
    RegistryHealth,
)

__all__ = [
    "BridgeError",
    "ConnectedRecord",
    "ConnectionState",
    "DeviceStatus",
    "DeviceSummary",
    "DeviceTimeoutError",
    "NotFoundError",
    "PairingRecord",
    "PairingState",
    "ProviderError",
    "RegistryClosedError",
    "RegistryHealth",
    "ValidationError",
]
