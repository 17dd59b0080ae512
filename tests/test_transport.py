"""
Tests for TransportSocket against real local sockets.

Tests verify:
- Refused connections are reported through on_error, after every address was tried
- Bytes relay between the engine socket and the server, and are counted
- Server EOF fires on_disconnected, close() does not
- Socket ownership passes to the engine
- SSHSession retries refused connects the configured number of times
"""
from __future__ import annotations

import asyncio
import socket
from typing import Any, AsyncGenerator

import pytest

from sshlink.config import ConnectPolicy
from sshlink.connection import SessionState, SSHSession
from sshlink.errors import ErrorKind
from sshlink.events import EventCollector, EventType
from sshlink.keepalive import KeepaliveConfig
from sshlink.testing import ScriptedEngineFactory
from sshlink.transport import TransportSocket


@pytest.fixture
async def echo_server() -> AsyncGenerator[int, None]:
    """Local TCP server echoing everything it receives. Yields its port."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield port
    server.close()
    await server.wait_closed()


@pytest.fixture
async def hangup_server() -> AsyncGenerator[int, None]:
    """Local TCP server that closes every connection straight away."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield port
    server.close()
    await server.wait_closed()


def stub_resolver(
    monkeypatch: pytest.MonkeyPatch,
    loop: asyncio.AbstractEventLoop,
    addresses: list[tuple[str, int]],
) -> None:
    """Make every name on loop resolve to addresses, in order."""

    async def getaddrinfo(host: str, port: int, **kwargs: Any) -> list[tuple[Any, ...]]:
        return [
            (socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", addr)
            for addr in addresses
        ]

    monkeypatch.setattr(loop, "getaddrinfo", getaddrinfo)


class TestTransportConnect:
    """Connect outcomes."""

    @pytest.mark.asyncio
    async def test_refused_reported(self, closed_port: int) -> None:
        loop = asyncio.get_running_loop()
        failed: asyncio.Future[BaseException] = loop.create_future()
        transport = TransportSocket(on_error=failed.set_result)

        transport.connect_to_host("127.0.0.1", closed_port)
        exc = await asyncio.wait_for(failed, timeout=5.0)

        assert isinstance(exc, ConnectionRefusedError)
        assert not transport.is_connected
        transport.close()

    @pytest.mark.asyncio
    async def test_refused_address_falls_through(
        self,
        closed_port: int,
        echo_server: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        loop = asyncio.get_running_loop()
        addresses = [("127.0.0.1", closed_port), ("127.0.0.1", echo_server)]
        stub_resolver(monkeypatch, loop, addresses)
        connected = asyncio.Event()
        errors: list[BaseException] = []
        transport = TransportSocket(on_connected=connected.set, on_error=errors.append)

        transport.connect_to_host("server.example.com", 22)
        await asyncio.wait_for(connected.wait(), timeout=5.0)

        assert transport.is_connected
        assert errors == []
        transport.close()

    @pytest.mark.asyncio
    async def test_refused_only_when_every_address_refuses(
        self,
        closed_port: int,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        loop = asyncio.get_running_loop()
        stub_resolver(monkeypatch, loop, [("127.0.0.1", closed_port)] * 2)
        failed: asyncio.Future[BaseException] = loop.create_future()
        errors: list[BaseException] = []

        def on_error(exc: BaseException) -> None:
            errors.append(exc)
            if not failed.done():
                failed.set_result(exc)

        transport = TransportSocket(on_error=on_error)

        transport.connect_to_host("server.example.com", 22)
        exc = await asyncio.wait_for(failed, timeout=5.0)
        await asyncio.sleep(0.05)

        assert isinstance(exc, ConnectionRefusedError)
        assert len(errors) == 1
        transport.close()

    @pytest.mark.asyncio
    async def test_single_use(self, echo_server: int) -> None:
        transport = TransportSocket()
        transport.connect_to_host("127.0.0.1", echo_server)

        with pytest.raises(AssertionError):
            transport.connect_to_host("127.0.0.1", echo_server)

        assert transport.connect_attempts == 1
        transport.close()


class TestTransportRelay:
    """Byte relay and accounting."""

    @pytest.mark.asyncio
    async def test_bytes_relayed_and_counted(self, echo_server: int) -> None:
        loop = asyncio.get_running_loop()
        connected = asyncio.Event()
        counts = {"sent": 0, "received": 0, "ready_read": 0}

        def on_sent(n: int) -> None:
            counts["sent"] += n

        def on_received(n: int) -> None:
            counts["received"] += n

        def on_ready_read() -> None:
            counts["ready_read"] += 1

        transport = TransportSocket(
            on_connected=connected.set,
            on_ready_read=on_ready_read,
            on_bytes_sent=on_sent,
            on_bytes_received=on_received,
        )
        transport.connect_to_host("127.0.0.1", echo_server)
        await asyncio.wait_for(connected.wait(), timeout=5.0)
        assert transport.is_connected

        engine_sock = transport.engine_socket()
        await loop.sock_sendall(engine_sock, b"SSH-2.0-test\r\n")

        echoed = b""
        while len(echoed) < 14:
            chunk = await asyncio.wait_for(loop.sock_recv(engine_sock, 1024), timeout=5.0)
            assert chunk
            echoed += chunk

        assert echoed == b"SSH-2.0-test\r\n"
        assert counts["sent"] == 14
        assert counts["received"] == 14
        assert counts["ready_read"] >= 1

        transport.close()
        engine_sock.close()

    @pytest.mark.asyncio
    async def test_server_eof_fires_disconnected(self, hangup_server: int) -> None:
        disconnected = asyncio.Event()
        transport = TransportSocket(on_disconnected=disconnected.set)

        transport.connect_to_host("127.0.0.1", hangup_server)
        await asyncio.wait_for(disconnected.wait(), timeout=5.0)

        assert transport.is_closed

    @pytest.mark.asyncio
    async def test_close_is_silent_and_idempotent(self, echo_server: int) -> None:
        connected = asyncio.Event()
        disconnects: list[bool] = []
        transport = TransportSocket(
            on_connected=connected.set,
            on_disconnected=lambda: disconnects.append(True),
        )
        transport.connect_to_host("127.0.0.1", echo_server)
        await asyncio.wait_for(connected.wait(), timeout=5.0)

        transport.close()
        transport.close()
        await asyncio.sleep(0.05)

        assert transport.is_closed
        assert disconnects == []

    @pytest.mark.asyncio
    async def test_engine_socket_survives_close(self, echo_server: int) -> None:
        """Once handed to the engine, the socket is the engine's to close."""
        connected = asyncio.Event()
        transport = TransportSocket(on_connected=connected.set)
        transport.connect_to_host("127.0.0.1", echo_server)
        await asyncio.wait_for(connected.wait(), timeout=5.0)

        engine_sock = transport.engine_socket()
        transport.close()

        assert engine_sock.fileno() != -1
        engine_sock.close()


class TestSessionOverRealTransport:
    """SSHSession with the real transport and a scripted engine."""

    @pytest.mark.asyncio
    async def test_refused_port_retried(self, closed_port: int) -> None:
        """retries=2 against a closed port: three attempts, CONNECTION_REFUSED."""
        collector = EventCollector()
        session = SSHSession(
            strict_host_key_checking=False,
            connect_policy=ConnectPolicy(timeout_sec=5.0, retries=2),
            keepalive=KeepaliveConfig(interval_sec=60.0, rate_interval_sec=60.0),
            event_collector=collector,
            engine_factory=ScriptedEngineFactory(password="secret"),
        )
        try:
            kind = await asyncio.wait_for(
                session.connect_to_host("alice", "127.0.0.1", closed_port, password="secret"),
                timeout=10.0,
            )
        finally:
            session.close()

        assert kind == ErrorKind.CONNECTION_REFUSED
        assert session.connect_attempts == 3
        assert session.state == SessionState.IDLE
        errors = collector.get_by_type(EventType.ERROR)
        assert [e.data["kind"] for e in errors] == ["connection_refused"] * 3

    @pytest.mark.asyncio
    async def test_scripted_engine_over_real_socket(self, echo_server: int) -> None:
        collector = EventCollector()
        session = SSHSession(
            strict_host_key_checking=False,
            keepalive=KeepaliveConfig(interval_sec=60.0, rate_interval_sec=60.0),
            event_collector=collector,
            engine_factory=ScriptedEngineFactory(password="secret"),
        )
        try:
            kind = await asyncio.wait_for(
                session.connect_to_host("alice", "127.0.0.1", echo_server, password="secret"),
                timeout=10.0,
            )
            assert kind == ErrorKind.NO_ERROR
            assert session.is_ready
        finally:
            session.close()
