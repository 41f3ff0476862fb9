"""Error taxonomy for the bridge.

Every error carries the HTTP status the API layer answers with, so the
exception handlers stay a single lookup.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for errors surfaced to bridge clients."""

    status_code = 500

    def __init__(self, message: str, device_id: str | None = None) -> None:
        super().__init__(message)
        self.device_id = device_id


class ValidationError(BridgeError):
    """Malformed or missing request input."""

    status_code = 400


class NotFoundError(BridgeError):
    """Operation on an unknown or disconnected device."""

    status_code = 404


class ProviderError(BridgeError):
    """The remote session failed or reported an error."""

    status_code = 502


class DeviceTimeoutError(BridgeError):
    """A provider signal did not arrive within its deadline."""

    status_code = 504


class RegistryClosedError(BridgeError):
    """The registry was closed while the bridge shuts down."""

    status_code = 503
