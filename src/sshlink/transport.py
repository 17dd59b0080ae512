"""
Non-blocking TCP transport with byte accounting.

TransportSocket connects to the server with asyncio's low-level socket
API and relays bytes between the network socket and an in-process
socketpair. The engine gets the far end of the pair, so every byte it
reads or writes passes through the relay and is counted.

    engine <-> engine_sock ==socketpair== relay_sock <-> net_sock <-> server

Callbacks (all optional, all invoked on the event loop):
- on_connected(): TCP connection established
- on_ready_read(): bytes from the server were handed to the engine
- on_disconnected(): the connection closed (server EOF or engine close)
- on_error(exc): connect or I/O failure
- on_bytes_sent(n) / on_bytes_received(n): traffic accounting
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable

logger = logging.getLogger(__name__)

_CHUNK = 65536


class TransportSocket:
    """
    Duplex byte stream between the engine and one TCP server.

    Usage:
        transport = TransportSocket(on_connected=..., on_ready_read=...)
        transport.connect_to_host("example.com", 22)
        ...
        engine.begin_handshake(transport.engine_socket(), ...)
        ...
        transport.close()
    """

    def __init__(
        self,
        on_connected: Callable[[], None] | None = None,
        on_ready_read: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        on_bytes_sent: Callable[[int], None] | None = None,
        on_bytes_received: Callable[[int], None] | None = None,
    ) -> None:
        self._on_connected = on_connected
        self._on_ready_read = on_ready_read
        self._on_disconnected = on_disconnected
        self._on_error = on_error
        self._on_bytes_sent = on_bytes_sent
        self._on_bytes_received = on_bytes_received

        self._net_sock: socket.socket | None = None
        self._relay_sock: socket.socket | None = None
        self._engine_sock: socket.socket | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._engine_owned = False
        self._connected = False
        self._closed = False
        self.connect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    def connect_to_host(self, host: str, port: int) -> None:
        """Start connecting. Completion is reported through the callbacks."""
        assert self._connect_task is None and not self._closed, (
            "TransportSocket is single use; create a new one per connection"
        )
        self.connect_attempts += 1
        self._connect_task = asyncio.get_running_loop().create_task(
            self._connect(host, port)
        )

    def engine_socket(self) -> socket.socket:
        """
        Socket the engine reads from and writes to.

        Ownership passes to the caller: close() no longer closes it.
        """
        assert self._engine_sock is not None, "Transport is not connected"
        self._engine_owned = True
        return self._engine_sock

    async def _connect(self, host: str, port: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except OSError as e:
            self._report_error(e)
            return

        refused: ConnectionRefusedError | None = None
        last_error: OSError | None = None
        for family, type_, proto, _, addr in infos:
            sock = socket.socket(family, type_, proto)
            sock.setblocking(False)
            try:
                await loop.sock_connect(sock, addr)
            except ConnectionRefusedError as e:
                sock.close()
                logger.debug("Connect to %s refused", addr)
                refused = e
                continue
            except OSError as e:
                sock.close()
                logger.debug("Connect to %s failed: %s", addr, e)
                last_error = e
                continue
            except asyncio.CancelledError:
                sock.close()
                raise
            self._net_sock = sock
            break

        if self._net_sock is None:
            # Refused only when no address failed any other way.
            error = last_error or refused
            if error is not None:
                self._report_error(error)
            return

        self._relay_sock, self._engine_sock = socket.socketpair()
        self._relay_sock.setblocking(False)
        self._engine_sock.setblocking(False)
        self._connected = True

        self._pumps = [
            loop.create_task(self._pump_inbound()),
            loop.create_task(self._pump_outbound()),
        ]

        if self._on_connected is not None:
            self._on_connected()

    async def _pump_inbound(self) -> None:
        """Server to engine."""
        loop = asyncio.get_running_loop()
        assert self._net_sock is not None and self._relay_sock is not None
        try:
            while True:
                data = await loop.sock_recv(self._net_sock, _CHUNK)
                if not data:
                    break
                if self._on_bytes_received is not None:
                    self._on_bytes_received(len(data))
                await loop.sock_sendall(self._relay_sock, data)
                if self._on_ready_read is not None:
                    self._on_ready_read()
        except asyncio.CancelledError:
            raise
        except OSError as e:
            if not self._closed:
                self._report_error(e)
        self._handle_eof()

    async def _pump_outbound(self) -> None:
        """Engine to server."""
        loop = asyncio.get_running_loop()
        assert self._net_sock is not None and self._relay_sock is not None
        try:
            while True:
                data = await loop.sock_recv(self._relay_sock, _CHUNK)
                if not data:
                    break
                if self._on_bytes_sent is not None:
                    self._on_bytes_sent(len(data))
                await loop.sock_sendall(self._net_sock, data)
        except asyncio.CancelledError:
            raise
        except OSError as e:
            if not self._closed:
                self._report_error(e)
        self._handle_eof()

    def _report_error(self, exc: BaseException) -> None:
        logger.debug("Transport error: %r", exc)
        if self._on_error is not None:
            self._on_error(exc)

    def _handle_eof(self) -> None:
        if self._closed:
            return
        self._teardown()
        if self._on_disconnected is not None:
            self._on_disconnected()

    def _teardown(self) -> None:
        self._closed = True
        self._connected = False
        current = asyncio.current_task()
        for task in [self._connect_task, *self._pumps]:
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._pumps = []
        socks = [self._net_sock, self._relay_sock]
        if not self._engine_owned:
            socks.append(self._engine_sock)
        for sock in socks:
            if sock is not None:
                sock.close()

    def close(self) -> None:
        """Close the transport without firing on_disconnected. Idempotent."""
        if self._closed:
            return
        self._teardown()
