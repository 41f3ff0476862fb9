"""Android TV Remote protocol v2 session backed by androidtvremote2.

androidtvremote2 reads the client certificate and key from PEM files.
Each session keeps them in its own temporary directory so certificate
material only lives in memory and in the caller's storage; the directory
is removed when the session closes.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, NoReturn

from androidtvremote2 import AndroidTVRemote, CannotConnect, ConnectionClosed, InvalidAuth

from atvbridge.remote.base import CertificateBundle, RemoteSession, RemoteSessionError

logger = logging.getLogger(__name__)

DEFAULT_PAIRING_PORT = 6467
DEFAULT_REMOTE_PORT = 6466

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "key.pem"


class AndroidTVRemoteSession(RemoteSession):
    """Remote session to one Android TV using androidtvremote2."""

    def __init__(
        self,
        host: str,
        name: str = "Hubitat",
        certificate: CertificateBundle | None = None,
        pairing_port: int = DEFAULT_PAIRING_PORT,
        remote_port: int = DEFAULT_REMOTE_PORT,
    ) -> None:
        super().__init__()
        self._host = host
        self._name = name
        self._certificate = certificate
        self._workdir = Path(tempfile.mkdtemp(prefix="atvbridge-"))
        self._certfile = self._workdir / CERT_FILENAME
        self._keyfile = self._workdir / KEY_FILENAME
        self._connected = False
        self._closed = False
        self._remote = AndroidTVRemote(
            client_name=name,
            certfile=str(self._certfile),
            keyfile=str(self._keyfile),
            host=host,
            api_port=remote_port,
            pair_port=pairing_port,
        )
        self._remote.add_is_on_updated_callback(self._on_is_on_updated)
        self._remote.add_volume_info_updated_callback(self._on_volume_updated)
        self._remote.add_is_available_updated_callback(self._on_available_updated)

    @property
    def host(self) -> str:
        return self._host

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    async def start(self) -> None:
        """Connect with the stored certificate, or begin pairing without one."""
        await self._prepare_certificate()
        if self._certificate is not None:
            await self._connect()
            return

        self._emit("unpaired")
        try:
            await self._remote.async_start_pairing()
        except (CannotConnect, ConnectionClosed) as e:
            self._fail(f"Failed to start pairing with {self._host}: {e}", e)
        logger.info("Pairing started with %s, code should be on screen", self._host)
        self._emit("secret")

    async def send_code(self, code: str) -> None:
        """Finish pairing with the on-screen code, then connect."""
        try:
            await self._remote.async_finish_pairing(code)
        except InvalidAuth as e:
            self._fail(f"Pairing code rejected by {self._host}", e)
        except ConnectionClosed as e:
            self._fail(f"Connection closed while pairing with {self._host}", e)
        self._certificate = self._read_certificate()
        await self._connect()

    async def send_key(self, key_code: int, direction: str = "SHORT") -> None:
        try:
            self._remote.send_key_command(key_code, direction)
        except (ConnectionClosed, ValueError) as e:
            raise RemoteSessionError(f"Failed to send key {key_code}: {e}", host=self._host) from e

    async def send_app_link(self, url: str) -> None:
        try:
            self._remote.send_launch_app_command(url)
        except ConnectionClosed as e:
            raise RemoteSessionError(f"Failed to launch {url}: {e}", host=self._host) from e

    def get_certificate(self) -> CertificateBundle | None:
        return self._certificate

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        self._remote.disconnect()
        shutil.rmtree(self._workdir, ignore_errors=True)
        logger.info("Session to %s closed", self._host)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    async def _prepare_certificate(self) -> None:
        """Write the supplied certificate to disk, or generate a fresh one."""
        if self._certificate is not None:
            self._certfile.write_text(self._certificate.cert)
            self._keyfile.write_text(self._certificate.key)
            return
        await self._remote.async_generate_cert_if_missing()
        logger.debug("Generated client certificate for %s", self._host)

    async def _connect(self) -> None:
        try:
            await self._remote.async_connect()
        except InvalidAuth:
            logger.warning("%s rejected our certificate, pairing required", self._host)
            self._emit("unpaired")
            return
        except (CannotConnect, ConnectionClosed) as e:
            self._fail(f"Failed to connect to {self._host}: {e}", e)
        self._connected = True
        self._remote.keep_reconnecting(self._on_invalid_auth)
        logger.info("Connected to %s", self._host)
        self._emit("ready")

    def _read_certificate(self) -> CertificateBundle:
        return CertificateBundle(
            cert=self._certfile.read_text(),
            key=self._keyfile.read_text(),
        )

    def _fail(self, message: str, cause: Exception) -> NoReturn:
        self._emit("error", message)
        raise RemoteSessionError(message, host=self._host) from cause

    def _on_is_on_updated(self, is_on: bool) -> None:
        self._emit("powered", is_on)

    def _on_volume_updated(self, volume_info: dict[str, Any]) -> None:
        self._emit("volume", volume_info)

    def _on_available_updated(self, is_available: bool) -> None:
        logger.debug("%s available: %s", self._host, is_available)
        self._connected = is_available

    def _on_invalid_auth(self) -> None:
        self._connected = False
        self._emit("unpaired")


def create_session(
    host: str,
    name: str,
    certificate: CertificateBundle | None = None,
    pairing_port: int = DEFAULT_PAIRING_PORT,
    remote_port: int = DEFAULT_REMOTE_PORT,
) -> AndroidTVRemoteSession:
    """Session factory used by the registry."""
    return AndroidTVRemoteSession(
        host=host,
        name=name,
        certificate=certificate,
        pairing_port=pairing_port,
        remote_port=remote_port,
    )
