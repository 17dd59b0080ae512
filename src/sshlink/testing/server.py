"""
In-process asyncssh server for end-to-end session tests.

Provides:
- ServerConfig: Which credentials the server accepts
- LocalSSHServer: Async context manager running the server on a free port

The server binds 127.0.0.1 port 0, so tests run in parallel without port
conflicts. Its host key is generated per server and never touches disk.

Example:
    async with LocalSSHServer(ServerConfig(password="secret")) as server:
        session = SSHSession(strict_host_key_checking=False)
        kind = await session.connect_to_host(
            "test", "127.0.0.1", server.port, password="secret"
        )
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import asyncssh

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """
    Credentials accepted by LocalSSHServer.

    Attributes:
        username: Only user allowed to log in
        password: Accepted password; None disables password auth
        authorized_key: Accepted client key; None disables public key auth
        no_auth: Let the user in without any authentication
        sftp: Serve SFTP over the local filesystem
    """
    username: str = "test"
    password: str | None = "test"
    authorized_key: asyncssh.SSHKey | None = None
    no_auth: bool = False
    sftp: bool = False


class _ServerProtocol(asyncssh.SSHServer):
    """asyncssh server callbacks checking credentials against a ServerConfig."""

    def __init__(self, server: "LocalSSHServer") -> None:
        self._server = server
        self._config = server.config

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._server._connections.append(conn)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.debug("Server side connection lost: %r", exc)

    def begin_auth(self, username: str) -> bool:
        # False lets the client in without authentication.
        return not self._config.no_auth

    def password_auth_supported(self) -> bool:
        return self._config.password is not None

    def validate_password(self, username: str, password: str) -> bool:
        valid = username == self._config.username and password == self._config.password
        self._server.auth_attempts.append(("password", valid))
        return valid

    def public_key_auth_supported(self) -> bool:
        return self._config.authorized_key is not None

    def validate_public_key(self, username: str, key: asyncssh.SSHKey) -> bool:
        authorized = self._config.authorized_key
        valid = (
            authorized is not None
            and username == self._config.username
            and key.public_data == authorized.public_data
        )
        self._server.auth_attempts.append(("publickey", valid))
        return valid


class LocalSSHServer:
    """
    Async context manager running an asyncssh server on localhost.

    Usage:
        async with LocalSSHServer(config) as server:
            ...connect to 127.0.0.1:server.port...
            assert server.auth_attempts == [("password", True)]
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig()
        self.host_key = asyncssh.generate_private_key("ssh-ed25519")
        self.auth_attempts: list[tuple[str, bool]] = []
        self._connections: list[asyncssh.SSHServerConnection] = []
        self._server: asyncssh.SSHAcceptor | None = None
        self._port = 0

    @property
    def port(self) -> int:
        """Return the assigned port (only valid after entering context)."""
        assert self._port > 0, "Port not assigned - server not started"
        return self._port

    @property
    def host_key_blob(self) -> bytes:
        """The server's public host key as an SSH wire-format blob."""
        return self.host_key.public_data

    async def __aenter__(self) -> "LocalSSHServer":
        options: dict[str, Any] = {"server_host_keys": [self.host_key]}
        if self.config.sftp:
            options["sftp_factory"] = True

        self._server = await asyncssh.create_server(
            lambda: _ServerProtocol(self),
            "127.0.0.1",
            0,
            **options,
        )
        self._port = self._server.sockets[0].getsockname()[1]
        logger.debug("Test SSH server listening on 127.0.0.1:%d", self._port)
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.drop_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def drop_connections(self) -> None:
        """Abort every client connection from the server side."""
        for conn in self._connections:
            conn.abort()
        self._connections.clear()
