"""Session records and registry views.

Records are the registry's mutable bookkeeping for one device: which
session object it owns, what state the handshake is in, and the last
thing the TV told us. State changes only through ``handle()``, which
the registry wires to the session's event stream.

Views are the immutable snapshots handed back to the API layer.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from atvbridge.remote.base import RemoteSession

logger = logging.getLogger(__name__)

PAIRING_PREFIX = "pairing_"


def now_ms() -> int:
    return int(time.time() * 1000)


def pairing_key(device_id: str) -> str:
    """Registry key for a device's in-flight pairing record."""
    return f"{PAIRING_PREFIX}{device_id}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PairingState(str, enum.Enum):
    """Progress of the two-step pairing handshake."""

    PENDING = "pending"  # start issued, no code seen yet
    CODE_DISPLAYED = "code_displayed"
    PAIRED = "paired"
    FAILED = "failed"


class ConnectionState(str, enum.Enum):
    """Lifecycle of a paired remote channel."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    """Common bookkeeping for a record owning one RemoteSession.

    Callers wait for provider signals with ``expect()``; the returned
    future resolves with the name of whichever expected signal fires
    first. Register the waiter before triggering the action so a
    signal emitted synchronously inside the action is not missed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    device_id: str
    host: str
    session: RemoteSession
    last_error: str | None = None

    _waiters: list[tuple[frozenset[str], asyncio.Future[str]]] = PrivateAttr(
        default_factory=list
    )

    def expect(self, *signals: str) -> asyncio.Future[str]:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters.append((frozenset(signals), future))
        return future

    def forget(self, future: asyncio.Future[str]) -> None:
        self._waiters = [(s, f) for s, f in self._waiters if f is not future]

    def handle(self, event: str, payload: Any = None) -> None:
        """Apply a provider event, then wake anyone waiting for it."""
        logger.debug("[%s] %s event: %r", self.device_id, event, payload)
        if event == "error":
            self.last_error = str(payload) if payload is not None else "Unknown session error"
            logger.error("[%s] Session error: %s", self.device_id, self.last_error)
        self._transition(event, payload)
        for signals, future in list(self._waiters):
            if event in signals and not future.done():
                future.set_result(event)

    def _transition(self, event: str, payload: Any) -> None:
        """Update record state for one event. Subclasses override; the base ignores events."""


class PairingRecord(SessionRecord):
    """A pairing handshake in flight."""

    created_at: int = Field(default_factory=now_ms)
    state: PairingState = PairingState.PENDING
    code_displayed: bool = False
    ready: bool = False

    def _transition(self, event: str, payload: Any) -> None:
        if event == "secret":
            self.code_displayed = True
            self.state = PairingState.CODE_DISPLAYED
            logger.info("[%s] Pairing code displayed on TV", self.device_id)
        elif event == "ready":
            self.ready = True
            self.state = PairingState.PAIRED
        elif event == "error":
            self.state = PairingState.FAILED
        elif event == "unpaired":
            logger.info("[%s] Device unpaired, waiting for pairing code", self.device_id)

    def is_expired(self, ttl_seconds: float, now: int | None = None) -> bool:
        now = now_ms() if now is None else now
        return now - self.created_at > ttl_seconds * 1000


class ConnectedRecord(SessionRecord):
    """A paired device with a remote channel."""

    certificate: str | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    last_activity: int = Field(default_factory=now_ms)
    powered: bool | None = None
    volume: dict[str, Any] | None = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_live(self) -> bool:
        """Connected, and the session still reaches the TV."""
        return self.connected and self.session.is_connected

    def touch(self) -> None:
        self.last_activity = now_ms()

    def _transition(self, event: str, payload: Any) -> None:
        if event == "ready":
            self.state = ConnectionState.CONNECTED
        elif event == "unpaired":
            self.state = ConnectionState.DISCONNECTED
            logger.warning("[%s] Device is unpaired, needs pairing", self.device_id)
        elif event == "error" and self.state == ConnectionState.CONNECTING:
            self.state = ConnectionState.DISCONNECTED
        elif event == "powered":
            self.powered = bool(payload)
            logger.info("[%s] TV powered: %s", self.device_id, self.powered)
        elif event == "volume":
            self.volume = dict(payload or {})


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class _View(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )


class DeviceStatus(_View):
    device_id: str
    connected: bool = False
    last_activity: int | None = None


class DeviceSummary(_View):
    device_id: str = Field(description="Registry key, pairing_-prefixed for pairing records")
    type: Literal["pairing", "connected"]
    host: str = "unknown"
    connected: bool = False
    last_activity: int | None = None


class RegistryHealth(_View):
    connected_devices: int = 0
    pairing_in_progress: int = 0
    total_devices: int = 0
    uptime: int = 0
