"""Device session registry.

Tracks which devices are mid-pairing and which are connected, and runs
every lifecycle operation for a device under that device's lock so the
handshake steps of concurrent requests cannot interleave.

Records live in one mapping. Connected records are keyed by the plain
device id, pairing records by ``pairing_<deviceId>``, so a device can
be re-paired while its old connection is still up.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from functools import partial
from typing import Callable

from atvbridge.domain.errors import (
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
    PAIRING_PREFIX,
    PairingRecord,
    RegistryHealth,
    SessionRecord,
    pairing_key,
)
from atvbridge.remote.base import (
    SESSION_EVENTS,
    CertificateBundle,
    RemoteSession,
    RemoteSessionError,
)

logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(r"([0-9]{1,3}\.){3}[0-9]{1,3}")
PAIRING_CODE_PATTERN = re.compile(r"[A-Z0-9]{6}", re.IGNORECASE | re.ASCII)

TEXT_INPUT_UNSUPPORTED = "Text input not fully implemented in the Android TV remote protocol client"

# (host, display name, certificate) -> session
SessionFactory = Callable[[str, str, "CertificateBundle | None"], RemoteSession]


class DeviceRegistry:
    """Maps device ids to their pairing and connected sessions.

    Example usage::

        registry = DeviceRegistry(session_factory=create_session)
        await registry.start_pairing("tv1", "192.168.1.50")
        cert = await registry.complete_pairing("tv1", "ab12cd")
        await registry.send_key("tv1", 26)
        await registry.close()
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        client_name: str = "Hubitat",
        session_start_timeout: float = 10.0,
        code_display_timeout: float = 1.0,
        pairing_complete_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        pairing_ttl: float | None = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self._client_name = client_name
        self._session_start_timeout = session_start_timeout
        self._code_display_timeout = code_display_timeout
        self._pairing_complete_timeout = pairing_complete_timeout
        self._connect_timeout = connect_timeout
        self._pairing_ttl = pairing_ttl
        self._records: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._closed = False
        self._started_at = time.monotonic()

    # -------------------------------------------------------------------
    # Pairing
    # -------------------------------------------------------------------

    async def start_pairing(
        self, device_id: str | None, host: str | None, device_name: str | None = None
    ) -> bool:
        """Start pairing and report whether the TV showed its code.

        Returns:
            True if the ``secret`` signal arrived within the code display
            window. False still leaves the pairing in progress; the code
            may show up a moment later.
        """
        device_id = _require(device_id, "deviceId")
        host = _require(host, "host (TV IP address)")
        if not IPV4_PATTERN.fullmatch(host):
            raise ValidationError(f"Invalid IP address format: {host}", device_id)
        name = device_name or self._client_name

        async with self._device_lock(device_id):
            self._check_open(device_id)
            await self._discard(pairing_key(device_id))

            session = self._session_factory(host, name, None)
            record = PairingRecord(device_id=device_id, host=host, session=session)
            self._observe(record)
            # Stored before start so events fired during start land on it
            self._records[pairing_key(device_id)] = record
            logger.info("[%s] Starting pairing with %s as %r", device_id, host, name)

            code_shown = record.expect("secret", "error")
            try:
                await self._bounded(
                    session.start(), self._session_start_timeout, device_id, "session start"
                )
                signal = await asyncio.wait_for(
                    asyncio.shield(code_shown), self._code_display_timeout
                )
            except asyncio.TimeoutError:
                signal = None
            except Exception:
                await self._discard(pairing_key(device_id))
                raise
            finally:
                record.forget(code_shown)

            if signal == "error":
                await self._discard(pairing_key(device_id))
                raise ProviderError(f"Pairing failed: {record.last_error}", device_id)

            logger.info("[%s] Pairing initiated, code displayed: %s", device_id, record.code_displayed)
            return record.code_displayed

    async def complete_pairing(self, device_id: str | None, code: str | None) -> str:
        """Submit the on-screen code and return serialized certificate material."""
        device_id = _require(device_id, "deviceId")
        code = _require(code, "code")
        if not PAIRING_CODE_PATTERN.fullmatch(code):
            raise ValidationError(
                "Code must be exactly 6 characters (letters or numbers)", device_id
            )
        code = code.upper()

        async with self._device_lock(device_id):
            self._check_open(device_id)
            record = self._records.get(pairing_key(device_id))
            if not isinstance(record, PairingRecord):
                raise NotFoundError(
                    f"No pairing in progress for device: {device_id}. Run /pair/start first.",
                    device_id,
                )

            logger.info("[%s] Sending pairing code to TV", device_id)
            try:
                signal = await self._run_until_signal(
                    record,
                    record.session.send_code(code),
                    self._pairing_complete_timeout,
                    "pairing to complete",
                    extra=("unpaired",),
                )
                if signal != "ready":
                    raise ProviderError("Device did not accept the pairing", device_id)
                certificate = record.session.get_certificate()
                if certificate is None:
                    raise ProviderError("Pairing finished without certificate material", device_id)
            except Exception:
                await self._discard(pairing_key(device_id))
                raise

            del self._records[pairing_key(device_id)]
            await self._discard(device_id)
            record.session.clear_observers()
            serialized = certificate.serialize()
            connected = ConnectedRecord(
                device_id=device_id,
                host=record.host,
                session=record.session,
                certificate=serialized,
                state=ConnectionState.CONNECTED,
            )
            self._observe(connected)
            self._records[device_id] = connected
            logger.info("[%s] Pairing completed successfully", device_id)
            return serialized

    # -------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------

    async def connect(
        self, device_id: str | None, host: str | None, certificate: str | None = None
    ) -> bool:
        """Connect with stored certificate material.

        Returns:
            True if a new session was created, False if a live one was reused.
        """
        device_id = _require(device_id, "deviceId")
        host = _require(host, "host")

        async with self._device_lock(device_id):
            self._check_open(device_id)
            existing = self._records.get(device_id)
            if isinstance(existing, ConnectedRecord) and existing.is_live:
                logger.info("[%s] Already connected, reusing connection", device_id)
                return False
            await self._discard(device_id)

            bundle = None
            if certificate:
                try:
                    bundle = CertificateBundle.parse(certificate)
                    logger.info("[%s] Using stored certificate", device_id)
                except ValueError:
                    logger.warning("[%s] Invalid certificate format, needs pairing", device_id)

            session = self._session_factory(host, self._client_name, bundle)
            record = ConnectedRecord(
                device_id=device_id,
                host=host,
                session=session,
                certificate=bundle.serialize() if bundle else None,
            )
            self._observe(record)
            logger.info("[%s] Connecting to %s", device_id, host)
            try:
                signal = await self._run_until_signal(
                    record,
                    session.start(),
                    self._connect_timeout,
                    "connection",
                    extra=("unpaired", "secret"),
                )
                if signal != "ready":
                    raise ProviderError(
                        f"Device {device_id} is not paired. Run /pair/start first.", device_id
                    )
            except Exception:
                await _close_quietly(session, device_id)
                raise

            self._records[device_id] = record
            logger.info("[%s] Connected successfully", device_id)
            return True

    async def disconnect(self, device_id: str | None) -> bool:
        """Drop and close the device's connection. Returns whether one existed."""
        device_id = _require(device_id, "deviceId")
        async with self._device_lock(device_id):
            removed = await self._discard(device_id)
        if removed:
            logger.info("[%s] Disconnected", device_id)
        else:
            logger.info("[%s] Not connected, nothing to do", device_id)
        return removed

    async def unpair(self, device_id: str | None) -> None:
        """Forget both the connection and any pairing in progress.

        The TV keeps its side of the pairing until it is cleared on the TV.
        """
        device_id = _require(device_id, "deviceId")
        async with self._device_lock(device_id):
            await self._discard(device_id)
            await self._discard(pairing_key(device_id))
        logger.info("[%s] Unpaired and removed from bridge", device_id)

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------

    async def send_key(
        self, device_id: str | None, key_code: int | str | None, key_name: str | None = None
    ) -> None:
        device_id = _require(device_id, "deviceId")
        try:
            code = int(key_code)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError(
                f"Missing or invalid keyCode: {key_code!r}", device_id
            ) from None

        async with self._device_lock(device_id):
            self._check_open(device_id)
            record = self._connected(device_id)
            logger.debug("[%s] Sending key: %s (%d)", device_id, key_name or "unknown", code)
            record.touch()
            await self._forward(record, record.session.send_key(code, "SHORT"))

    async def launch_app(self, device_id: str | None, app_url: str | None) -> None:
        device_id = _require(device_id, "deviceId")
        app_url = _require(app_url, "appUrl")
        async with self._device_lock(device_id):
            self._check_open(device_id)
            record = self._connected(device_id)
            logger.info("[%s] Launching app: %s", device_id, app_url)
            record.touch()
            await self._forward(record, record.session.send_app_link(app_url))

    async def send_text(self, device_id: str | None, text: str | None) -> str:
        """Accept a text request without acting on it.

        Text injection is not available through the remote protocol
        client, so this only checks preconditions and explains.
        """
        device_id = _require(device_id, "deviceId")
        text = _require(text, "text")
        self._check_open(device_id)
        self._connected(device_id)
        logger.info("[%s] Text input requested (%d chars), not supported", device_id, len(text))
        return TEXT_INPUT_UNSUPPORTED

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def status(self, device_id: str) -> DeviceStatus:
        record = self._records.get(device_id)
        if not isinstance(record, ConnectedRecord):
            return DeviceStatus(device_id=device_id)
        return DeviceStatus(
            device_id=device_id,
            connected=record.is_live,
            last_activity=record.last_activity,
        )

    def list_devices(self) -> list[DeviceSummary]:
        summaries = []
        for key, record in self._records.items():
            if isinstance(record, ConnectedRecord):
                summaries.append(
                    DeviceSummary(
                        device_id=key,
                        type="connected",
                        host=record.host,
                        connected=record.is_live,
                        last_activity=record.last_activity,
                    )
                )
            else:
                summaries.append(DeviceSummary(device_id=key, type="pairing", host=record.host))
        return summaries

    def health(self) -> RegistryHealth:
        pairing = sum(1 for key in self._records if key.startswith(PAIRING_PREFIX))
        return RegistryHealth(
            connected_devices=len(self._records) - pairing,
            pairing_in_progress=pairing,
            total_devices=len(self._records),
            uptime=int(time.monotonic() - self._started_at),
        )

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def prune_expired_pairings(self) -> int:
        """Close pairing records older than the pairing TTL."""
        if self._pairing_ttl is None:
            return 0
        candidates = [
            record.device_id
            for record in self._records.values()
            if isinstance(record, PairingRecord) and record.is_expired(self._pairing_ttl)
        ]
        pruned = 0
        for device_id in candidates:
            async with self._device_lock(device_id):
                record = self._records.get(pairing_key(device_id))
                if isinstance(record, PairingRecord) and record.is_expired(self._pairing_ttl):
                    await self._discard(pairing_key(device_id))
                    pruned += 1
                    logger.info("[%s] Pairing expired without completion", device_id)
        return pruned

    async def close(self) -> None:
        """Close every session and empty the registry.

        Each device is closed under its lock, so an operation already in
        flight finishes first and its session is closed here. Operations
        that reach the lock afterwards fail with RegistryClosedError.
        """
        self._closed = True
        device_ids = {record.device_id for record in self._records.values()}
        device_ids.update(self._locks)
        for device_id in device_ids:
            async with self._device_lock(device_id):
                await self._discard(device_id)
                await self._discard(pairing_key(device_id))
        logger.info("Device registry closed")

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    @asynccontextmanager
    async def _device_lock(self, device_id: str) -> AsyncIterator[None]:
        """Hold the device's lock; the lock is dropped once nobody uses it."""
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        self._lock_users[device_id] = self._lock_users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[device_id] -= 1
            if not self._lock_users[device_id]:
                del self._lock_users[device_id]
                del self._locks[device_id]

    def _check_open(self, device_id: str) -> None:
        if self._closed:
            raise RegistryClosedError("Bridge is shutting down", device_id)

    def _observe(self, record: SessionRecord) -> None:
        for event in SESSION_EVENTS:
            record.session.on(event, partial(record.handle, event))

    def _connected(self, device_id: str) -> ConnectedRecord:
        record = self._records.get(device_id)
        if not isinstance(record, ConnectedRecord):
            raise NotFoundError(f"Device {device_id} not connected. Run /connect first.", device_id)
        return record

    async def _discard(self, key: str) -> bool:
        record = self._records.pop(key, None)
        if record is None:
            return False
        await _close_quietly(record.session, record.device_id)
        return True

    async def _bounded(
        self, action: Awaitable[None], timeout: float, device_id: str, what: str
    ) -> None:
        try:
            await asyncio.wait_for(action, timeout)
        except asyncio.TimeoutError:
            raise DeviceTimeoutError(
                f"Timed out after {timeout:g}s waiting for {what}", device_id
            ) from None
        except RemoteSessionError as e:
            raise ProviderError(str(e), device_id) from e

    async def _run_until_signal(
        self,
        record: SessionRecord,
        action: Awaitable[None],
        timeout: float,
        what: str,
        extra: tuple[str, ...] = (),
    ) -> str:
        """Run a session action, then wait for ``ready`` or a failure signal."""
        waiter = record.expect("ready", "error", *extra)

        async def _drive() -> str:
            await action
            return await waiter

        try:
            await self._bounded(_drive(), timeout, record.device_id, what)
        finally:
            record.forget(waiter)
        signal = waiter.result()
        if signal == "error":
            raise ProviderError(record.last_error or "Session error", record.device_id)
        return signal

    async def _forward(self, record: ConnectedRecord, action: Awaitable[None]) -> None:
        try:
            await action
        except RemoteSessionError as e:
            record.last_error = str(e)
            raise ProviderError(str(e), record.device_id) from e


def _require(value: str | None, name: str) -> str:
    if not value:
        raise ValidationError(f"Missing required parameter: {name}")
    return value


async def _close_quietly(session: RemoteSession, device_id: str) -> None:
    try:
        await session.close()
    except Exception:
        logger.exception("[%s] Failed to close session", device_id)
