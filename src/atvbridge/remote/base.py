"""Abstract base class for remote-control sessions with a TV.

A RemoteSession is the bridge's only view of the device protocol. The
registry creates one per pairing attempt or connection, subscribes to
its events, and drives it through start/send_code/send_key. Concrete
implementations own the sockets and certificate handling.

Events emitted through ``on()`` subscribers:

    secret     the TV is displaying a pairing code
    ready      the remote channel is connected and accepting commands
    error      the session failed; payload is a message string
    unpaired   the TV rejected our certificate or pairing is required
    powered    power state changed; payload is a bool
    volume     volume info changed; payload is a dict
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

SESSION_EVENTS = frozenset({"secret", "ready", "error", "unpaired", "powered", "volume"})

EventCallback = Callable[[Any], None]


class CertificateBundle(BaseModel):
    """Client certificate and private key, PEM encoded.

    Serialized as JSON text for callers to store between sessions.
    """

    model_config = ConfigDict(frozen=True)

    cert: str = Field(min_length=1, description="PEM client certificate")
    key: str = Field(min_length=1, description="PEM private key")

    def serialize(self) -> str:
        return self.model_dump_json()

    @classmethod
    def parse(cls, text: str) -> CertificateBundle:
        """Parse serialized material.

        Raises:
            ValueError: If the text is not a serialized bundle.
        """
        return cls.model_validate_json(text)


class RemoteSession(ABC):
    """Abstract interface for one remote-control channel to one TV.

    Example usage::

        session = AndroidTVRemoteSession(host="192.168.1.50", name="Hubitat")
        session.on("secret", lambda _: print("code on screen"))
        await session.start()
        await session.send_code("AB12CD")
        await session.send_key(26)
        await session.close()
    """

    def __init__(self) -> None:
        self._observers: dict[str, list[EventCallback]] = defaultdict(list)

    def on(self, event: str, callback: EventCallback) -> None:
        """Subscribe to a session event."""
        if event not in SESSION_EVENTS:
            raise ValueError(f"Unknown session event: {event}")
        self._observers[event].append(callback)

    def clear_observers(self) -> None:
        self._observers.clear()

    def _emit(self, event: str, payload: Any = None) -> None:
        """Deliver an event to subscribers.

        Subscriber failures are logged and dropped so a broken observer
        can never tear down the provider's own I/O.
        """
        for callback in list(self._observers.get(event, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("Observer for %r event failed", event)

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the remote channel is currently usable."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the session.

        With certificate material this connects to the remote port and
        emits ``ready`` (or ``unpaired`` if the TV rejects it). Without
        it, pairing is started and ``secret`` is emitted once the TV
        shows its code.

        Raises:
            RemoteSessionError: If the TV cannot be reached.
        """
        ...

    @abstractmethod
    async def send_code(self, code: str) -> None:
        """Submit the pairing code shown on the TV.

        Emits ``ready`` once the paired session is connected.

        Raises:
            RemoteSessionError: If the code is rejected or the TV drops
                the connection.
        """
        ...

    @abstractmethod
    async def send_key(self, key_code: int, direction: str = "SHORT") -> None:
        """Send a key event (Android KEYCODE_* integer)."""
        ...

    @abstractmethod
    async def send_app_link(self, url: str) -> None:
        """Ask the TV to open an app deep link."""
        ...

    @abstractmethod
    def get_certificate(self) -> CertificateBundle | None:
        """Return the client certificate material, or None if absent."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and release resources. Safe to call twice."""
        ...


class RemoteSessionError(Exception):
    """Raised when the remote session fails."""

    def __init__(self, message: str, host: str = "") -> None:
        super().__init__(message)
        self.host = host
