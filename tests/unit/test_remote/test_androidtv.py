"""Tests for the androidtvremote2-backed session."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from androidtvremote2 import CannotConnect, ConnectionClosed, InvalidAuth

from conftest import FAKE_CERTIFICATE

from atvbridge.remote.androidtv import AndroidTVRemoteSession, create_session
from atvbridge.remote.base import RemoteSessionError


@pytest.fixture
def mock_remote() -> MagicMock:
    """A mock AndroidTVRemote with its coroutine methods stubbed."""
    remote = MagicMock()
    remote.async_generate_cert_if_missing = AsyncMock(return_value=True)
    remote.async_start_pairing = AsyncMock()
    remote.async_finish_pairing = AsyncMock()
    remote.async_connect = AsyncMock()
    return remote


@pytest.fixture
def remote_cls(mock_remote: MagicMock) -> Iterator[MagicMock]:
    with patch("atvbridge.remote.androidtv.AndroidTVRemote", return_value=mock_remote) as cls:
        yield cls


def _record_events(session: AndroidTVRemoteSession) -> list[tuple[str, object]]:
    events: list[tuple[str, object]] = []
    for name in ("secret", "ready", "error", "unpaired", "powered", "volume"):
        session.on(name, lambda payload, name=name: events.append((name, payload)))
    return events


@pytest.fixture
def paired_session(remote_cls: MagicMock) -> Iterator[AndroidTVRemoteSession]:
    session = AndroidTVRemoteSession("192.168.1.50", certificate=FAKE_CERTIFICATE)
    yield session
    shutil.rmtree(session._workdir, ignore_errors=True)


@pytest.fixture
def new_session(remote_cls: MagicMock) -> Iterator[AndroidTVRemoteSession]:
    session = AndroidTVRemoteSession("192.168.1.50", name="Den Hub")
    yield session
    shutil.rmtree(session._workdir, ignore_errors=True)


class TestConstruction:
    def test_remote_configured_from_arguments(self, remote_cls: MagicMock) -> None:
        session = create_session(
            "10.0.0.7", "Kitchen", pairing_port=7467, remote_port=7466
        )
        kwargs = remote_cls.call_args.kwargs
        assert kwargs["client_name"] == "Kitchen"
        assert kwargs["host"] == "10.0.0.7"
        assert kwargs["pair_port"] == 7467
        assert kwargs["api_port"] == 7466
        assert Path(kwargs["certfile"]).parent == session._workdir
        assert Path(kwargs["keyfile"]).parent == session._workdir
        assert session.host == "10.0.0.7"
        assert session.is_connected is False
        shutil.rmtree(session._workdir, ignore_errors=True)

    def test_defaults(self, remote_cls: MagicMock, new_session: AndroidTVRemoteSession) -> None:
        kwargs = remote_cls.call_args.kwargs
        assert kwargs["pair_port"] == 6467
        assert kwargs["api_port"] == 6466
        assert new_session.get_certificate() is None


class TestConnectWithCertificate:
    @pytest.mark.asyncio
    async def test_start_writes_pems_and_connects(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        events = _record_events(paired_session)
        await paired_session.start()

        assert paired_session._certfile.read_text() == FAKE_CERTIFICATE.cert
        assert paired_session._keyfile.read_text() == FAKE_CERTIFICATE.key
        mock_remote.async_generate_cert_if_missing.assert_not_awaited()
        mock_remote.async_connect.assert_awaited_once()
        mock_remote.keep_reconnecting.assert_called_once()
        assert events == [("ready", None)]
        assert paired_session.is_connected is True

    @pytest.mark.asyncio
    async def test_rejected_certificate_emits_unpaired(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        mock_remote.async_connect.side_effect = InvalidAuth()
        events = _record_events(paired_session)
        await paired_session.start()
        assert events == [("unpaired", None)]
        assert paired_session.is_connected is False

    @pytest.mark.asyncio
    async def test_unreachable_tv_raises(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        mock_remote.async_connect.side_effect = CannotConnect("no route to host")
        events = _record_events(paired_session)
        with pytest.raises(RemoteSessionError, match="Failed to connect"):
            await paired_session.start()
        assert events[0][0] == "error"

    @pytest.mark.asyncio
    async def test_reconnect_auth_failure_emits_unpaired(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        await paired_session.start()
        events = _record_events(paired_session)
        invalid_auth_callback = mock_remote.keep_reconnecting.call_args.args[0]
        invalid_auth_callback()
        assert events == [("unpaired", None)]
        assert paired_session.is_connected is False


class TestPairing:
    @pytest.mark.asyncio
    async def test_start_without_certificate_begins_pairing(
        self, new_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        events = _record_events(new_session)
        await new_session.start()
        mock_remote.async_generate_cert_if_missing.assert_awaited_once()
        mock_remote.async_start_pairing.assert_awaited_once()
        mock_remote.async_connect.assert_not_awaited()
        assert events == [("unpaired", None), ("secret", None)]

    @pytest.mark.asyncio
    async def test_start_pairing_failure(
        self, new_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        mock_remote.async_start_pairing.side_effect = ConnectionClosed("closed")
        events = _record_events(new_session)
        with pytest.raises(RemoteSessionError, match="Failed to start pairing"):
            await new_session.start()
        assert ("secret", None) not in events
        assert events[-1][0] == "error"

    @pytest.mark.asyncio
    async def test_send_code_reads_generated_certificate(
        self, new_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        def finish_pairing(code: str) -> None:
            new_session._certfile.write_text(FAKE_CERTIFICATE.cert)
            new_session._keyfile.write_text(FAKE_CERTIFICATE.key)

        mock_remote.async_finish_pairing.side_effect = finish_pairing
        await new_session.start()
        events = _record_events(new_session)

        await new_session.send_code("AB12CD")

        mock_remote.async_finish_pairing.assert_awaited_once_with("AB12CD")
        assert new_session.get_certificate() == FAKE_CERTIFICATE
        assert events == [("ready", None)]
        assert new_session.is_connected is True

    @pytest.mark.asyncio
    async def test_send_code_rejected(
        self, new_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        mock_remote.async_finish_pairing.side_effect = InvalidAuth()
        events = _record_events(new_session)
        with pytest.raises(RemoteSessionError, match="rejected"):
            await new_session.send_code("AB12CD")
        assert events == [("error", "Pairing code rejected by 192.168.1.50")]
        assert new_session.get_certificate() is None


class TestCommands:
    @pytest.mark.asyncio
    async def test_send_key(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        await paired_session.send_key(26)
        mock_remote.send_key_command.assert_called_once_with(26, "SHORT")

    @pytest.mark.asyncio
    async def test_send_key_on_closed_connection(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        mock_remote.send_key_command.side_effect = ConnectionClosed("Called send_key_command after disconnect")
        with pytest.raises(RemoteSessionError, match="Failed to send key 26"):
            await paired_session.send_key(26)

    @pytest.mark.asyncio
    async def test_send_app_link(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        await paired_session.send_app_link("https://www.netflix.com/title")
        mock_remote.send_launch_app_command.assert_called_once_with("https://www.netflix.com/title")

    @pytest.mark.asyncio
    async def test_state_callbacks_become_events(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        events = _record_events(paired_session)
        on_is_on = mock_remote.add_is_on_updated_callback.call_args.args[0]
        on_volume = mock_remote.add_volume_info_updated_callback.call_args.args[0]
        on_is_on(True)
        on_volume({"level": 10, "max": 100, "muted": False})
        assert events == [
            ("powered", True),
            ("volume", {"level": 10, "max": 100, "muted": False}),
        ]


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(
        self, paired_session: AndroidTVRemoteSession, mock_remote: MagicMock
    ) -> None:
        await paired_session.start()
        workdir = paired_session._workdir
        await paired_session.close()
        await paired_session.close()
        mock_remote.disconnect.assert_called_once()
        assert not workdir.exists()
        assert paired_session.is_connected is False
