"""
Protocol engine: non-blocking handshake and authentication primitives.

Provides:
- EngineStatus / EngineResult: Outcome of one engine call
- ProtocolEngine: Abstract contract the session drives
- AsyncSSHEngine: Concrete engine on top of asyncssh
- engine_init(): Process-wide one-time engine initialisation

Every primitive returns immediately. SUSPENDED means "no progress without
more I/O": the caller re-issues the identical call when it is re-entered
(transport readiness or the engine's wakeup callback). Calls are safe to
repeat until they stop returning SUSPENDED.

asyncssh drives the handshake and authentication in its own task. The
engine bridges it onto the polling contract: asyncssh's client callbacks
park on futures that the session's next authenticate_* call resolves, and
every state change asyncssh reports wakes the session up.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import asyncssh

from sshlink.auth import AuthMethod
from sshlink.host_key import HostIdentity
from sshlink.keepalive import KeepaliveConfig

logger = logging.getLogger(__name__)

# SSH disconnect reason codes (RFC 4253 section 11.1) used in last_error().
CODE_NONE = 0
CODE_PROTOCOL_ERROR = 2
CODE_KEY_EXCHANGE_FAILED = 3
CODE_CONNECTION_LOST = 10
CODE_BY_APPLICATION = 11
CODE_NO_MORE_AUTH_METHODS = 14


class EngineStatus(str, Enum):
    """Status of a non-blocking engine call."""
    SUSPENDED = "suspended"
    SUCCESS = "success"
    FAILURE = "failure"
    ALREADY_AUTHENTICATED = "already_authenticated"


@dataclass(frozen=True)
class EngineResult:
    """
    Outcome of one engine call.

    - status: What happened
    - value: Call-specific payload (list_auth_methods: method names)
    - code: Engine error code on FAILURE
    """
    status: EngineStatus
    value: Any = None
    code: int = CODE_NONE

    @property
    def suspended(self) -> bool:
        return self.status == EngineStatus.SUSPENDED


SUSPENDED = EngineResult(EngineStatus.SUSPENDED)
SUCCESS = EngineResult(EngineStatus.SUCCESS)


def failure(code: int = CODE_NONE) -> EngineResult:
    return EngineResult(EngineStatus.FAILURE, code=code)


_init_lock = threading.Lock()
_initialised = False


def engine_init(log_level: int | str = logging.WARNING) -> bool:
    """
    Initialise the engine library once per process.

    Safe to call from any thread and any number of times.

    Returns:
        True if this call performed the initialisation
    """
    global _initialised
    with _init_lock:
        if _initialised:
            return False
        asyncssh.set_log_level(log_level)
        _initialised = True
        logger.debug("Protocol engine initialised (asyncssh %s)", asyncssh.__version__)
        return True


def engine_initialised() -> bool:
    return _initialised


class ProtocolEngine(abc.ABC):
    """
    Non-blocking SSH handshake/auth primitives.

    One engine serves one TCP connection. The session frees it on reset and
    builds a fresh one, so no state leaks into a retry.
    """

    def __init__(self, wakeup: Callable[[], None] | None = None) -> None:
        self._wakeup_cb = wakeup

    def _wakeup(self) -> None:
        """Ask the owner to re-enter and poll again."""
        if self._wakeup_cb is not None:
            self._wakeup_cb()

    @abc.abstractmethod
    def begin_handshake(
        self,
        sock: socket.socket,
        host: str,
        port: int,
        username: str,
    ) -> EngineResult:
        """Start or continue the transport handshake over sock."""

    @abc.abstractmethod
    def host_identity(self) -> HostIdentity | None:
        """Server host key, available once the handshake succeeded."""

    @abc.abstractmethod
    def list_auth_methods(self, username: str) -> EngineResult:
        """Methods the server advertises for username (value: list[str])."""

    @abc.abstractmethod
    def authenticate_with_password(self, username: str, secret: str) -> EngineResult:
        """Attempt password authentication."""

    @abc.abstractmethod
    def authenticate_with_key_pair(
        self,
        username: str,
        public_key: bytes,
        private_key: bytes,
        passphrase: str | None,
    ) -> EngineResult:
        """Attempt public key authentication with in-memory key material."""

    @abc.abstractmethod
    def send_keep_alive(self) -> None:
        """
        Send a protocol-level keep-alive.

        Raises:
            ConnectionError: If the connection is already known to be dead
        """

    @abc.abstractmethod
    def last_error(self) -> tuple[int, str]:
        """Most recent (code, message)."""

    @abc.abstractmethod
    def disconnect(self, description: str = "") -> None:
        """Close the SSH connection if one is open."""

    @abc.abstractmethod
    def free(self) -> None:
        """Release every resource. The engine is unusable afterwards."""

    @property
    def connection(self) -> Any:
        """Underlying channel-capable connection, if any."""
        return None


@dataclass
class _CredentialRequest:
    """An asyncssh auth callback parked until the session answers it."""
    method: AuthMethod
    future: asyncio.Future[Any]


class _EngineClient(asyncssh.SSHClient):
    """
    asyncssh client that forwards every callback to its engine.

    Host keys are always accepted here: the session verifies the captured
    identity against its own trust store after the handshake.
    """

    def __init__(self, engine: "AsyncSSHEngine") -> None:
        super().__init__()
        self._engine = engine

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self._engine._on_connection_made(conn)

    def connection_lost(self, exc: Exception | None) -> None:
        self._engine._on_connection_lost(exc)

    def validate_host_public_key(
        self,
        host: str,
        addr: tuple[str, int],
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        self._engine._on_host_key(key)
        return True

    def auth_completed(self) -> None:
        self._engine._on_auth_completed()

    async def public_key_auth_requested(self) -> asyncssh.SSHKey | None:
        return await self._engine._request_credential(AuthMethod.PUBLIC_KEY)

    async def password_auth_requested(self) -> str | None:
        return await self._engine._request_credential(AuthMethod.PASSWORD)


class AsyncSSHEngine(ProtocolEngine):
    """
    ProtocolEngine backed by asyncssh.

    The handshake runs asyncssh.connect() over the socket the transport
    hands in, so every byte goes through the session's transport.
    Advertised auth methods are the ones the live connection learned from
    the server's userauth failure, merged with the methods asyncssh asks
    credentials for.

    Keep-alive requests that want a reply are asyncssh's own
    (keepalive@openssh.com, armed once authenticated). A peer that misses
    keepalive.max_count of them in a row is disconnected by asyncssh.

    Known limitation: asyncssh walks auth methods in a fixed order, so once
    the session moves past public key (by answering a password request) a
    key cannot be offered again on the same connection.

    Usage:
        engine = AsyncSSHEngine(wakeup=session.request_reentry)
        result = engine.begin_handshake(sock, "example.com", 22, "alice")
        if result.suspended:
            return  # wait for the next wakeup
    """

    def __init__(
        self,
        wakeup: Callable[[], None] | None = None,
        keepalive: KeepaliveConfig | None = None,
    ) -> None:
        super().__init__(wakeup)
        self._keepalive = keepalive or KeepaliveConfig()

        self._connect_task: asyncio.Task[Any] | None = None
        self._conn: asyncssh.SSHClientConnection | None = None
        self._sock: socket.socket | None = None

        self._server_key: asyncssh.SSHKey | None = None
        self._identity: HostIdentity | None = None
        self._observed_methods: set[AuthMethod] = set()
        self._request: _CredentialRequest | None = None
        self._attempt: AuthMethod | None = None
        self._attempt_status: EngineStatus | None = None
        self._authenticated = False
        self._closed = False
        self._freed = False
        self._error: tuple[int, str] = (CODE_NONE, "")

    # ------------------------------------------------------------------
    # asyncssh callbacks
    # ------------------------------------------------------------------

    def _on_connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn

    def _on_connection_lost(self, exc: Exception | None) -> None:
        self._closed = True
        if exc is not None:
            self._record_exception(exc)
        elif self._error[0] == CODE_NONE:
            self._error = (CODE_CONNECTION_LOST, "Connection closed")
        self._settle_attempt(EngineStatus.FAILURE)
        self._cancel_request()
        self._wakeup()

    def _on_host_key(self, key: asyncssh.SSHKey) -> None:
        self._capture_identity(key)
        self._wakeup()

    def _capture_identity(self, key: asyncssh.SSHKey | None = None) -> None:
        """Record the server host key once per TCP connection."""
        if self._identity is not None:
            return
        if key is None and self._conn is not None:
            # asyncssh skips validate_host_public_key for keys it already trusts
            key = self._conn.get_server_host_key()
        if key is not None:
            self._server_key = key
            self._identity = HostIdentity.from_public_blob(key.public_data)

    def _on_auth_completed(self) -> None:
        self._capture_identity()
        self._authenticated = True
        self._settle_attempt(EngineStatus.SUCCESS)
        self._wakeup()

    async def _request_credential(self, method: AuthMethod) -> Any:
        if self._freed or self._closed:
            return None
        self._capture_identity()
        self._observed_methods.add(method)
        # A fresh request means the credential we supplied last was rejected.
        self._settle_attempt(EngineStatus.FAILURE)
        self._cancel_request()
        future = asyncio.get_running_loop().create_future()
        self._request = _CredentialRequest(method, future)
        self._wakeup()
        return await future

    def _settle_attempt(self, status: EngineStatus) -> None:
        if self._attempt is not None and self._attempt_status is None:
            self._attempt_status = status
            if status == EngineStatus.FAILURE and not self._closed:
                self._error = (
                    CODE_NO_MORE_AUTH_METHODS,
                    f"{self._attempt.value} authentication rejected",
                )

    def _cancel_request(self) -> None:
        if self._request is not None:
            if not self._request.future.done():
                self._request.future.set_result(None)
            self._request = None

    def _record_exception(self, exc: BaseException) -> None:
        if isinstance(exc, asyncssh.DisconnectError):
            self._error = (exc.code, exc.reason)
        elif isinstance(exc, OSError):
            self._error = (CODE_CONNECTION_LOST, str(exc) or exc.__class__.__name__)
        else:
            self._error = (CODE_PROTOCOL_ERROR, str(exc) or exc.__class__.__name__)

    def _on_connect_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("asyncssh connect ended: %r", exc)
            self._record_exception(exc)
            self._closed = True
            self._settle_attempt(EngineStatus.FAILURE)
            self._cancel_request()
        else:
            self._conn = task.result()
            self._capture_identity()
        self._wakeup()

    def connect_options(self, username: str) -> dict[str, Any]:
        """
        Keyword arguments for asyncssh.connect().

        asyncssh never reads ssh_config, known_hosts, an agent or default
        keys here: the session owns all of that.
        """
        options: dict[str, Any] = {
            "config": None,
            "username": username,
            "client_factory": lambda: _EngineClient(self),
            "known_hosts": (),
            "client_keys": [],
            "agent_path": None,
            "preferred_auth": ["publickey", "password"],
            "public_key_auth": True,
            "password_auth": True,
            "kbdint_auth": False,
            "gss_auth": False,
            "login_timeout": 0,
        }
        options.update(self._keepalive.to_asyncssh_options())
        return options

    async def _connect(
        self,
        sock: socket.socket,
        host: str,
        port: int,
        username: str,
    ) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(host, port, sock=sock, **self.connect_options(username))

    # ------------------------------------------------------------------
    # ProtocolEngine
    # ------------------------------------------------------------------

    def begin_handshake(
        self,
        sock: socket.socket,
        host: str,
        port: int,
        username: str,
    ) -> EngineResult:
        assert not self._freed, "Engine used after free()"

        if self._connect_task is None:
            self._sock = sock
            self._connect_task = asyncio.get_running_loop().create_task(
                self._connect(sock, host, port, username)
            )
            self._connect_task.add_done_callback(self._on_connect_done)
            return SUSPENDED

        if self._identity is not None and (
            self._request is not None or self._authenticated or self._connect_task.done()
        ):
            return SUCCESS

        if self._connect_task.done() or self._closed:
            if self._identity is None and self._error[0] in (CODE_NONE, CODE_PROTOCOL_ERROR):
                self._error = (
                    CODE_KEY_EXCHANGE_FAILED,
                    self._error[1] or "Handshake failed",
                )
            return failure(self._error[0])

        return SUSPENDED

    def host_identity(self) -> HostIdentity | None:
        return self._identity

    def list_auth_methods(self, username: str) -> EngineResult:
        if self._authenticated:
            return EngineResult(EngineStatus.ALREADY_AUTHENTICATED)

        names: list[str] = []
        if self._conn is not None:
            # "none" until the server's first userauth failure names the rest
            names = [m for m in self._conn.get_server_auth_methods() if m != "none"]
        names.extend(m.value for m in self._observed_methods if m.value not in names)

        if names:
            return EngineResult(EngineStatus.SUCCESS, value=names)
        if self._closed:
            return failure(self._error[0] or CODE_CONNECTION_LOST)
        # Nothing learned yet; the live connection has not asked for credentials.
        return SUSPENDED

    def _authenticate(self, method: AuthMethod, answer: Callable[[], Any]) -> EngineResult:
        if self._attempt == method:
            if self._attempt_status is None:
                return SUSPENDED
            status = self._attempt_status
            self._attempt = None
            self._attempt_status = None
            if status == EngineStatus.SUCCESS:
                return SUCCESS
            return failure(self._error[0])

        if self._authenticated:
            return SUCCESS
        if self._closed:
            return failure(self._error[0] or CODE_CONNECTION_LOST)

        request = self._request
        if request is None:
            return SUSPENDED

        if request.method != method:
            if method == AuthMethod.PUBLIC_KEY:
                self._error = (
                    CODE_NO_MORE_AUTH_METHODS,
                    "publickey is no longer offered on this connection",
                )
                return failure(CODE_NO_MORE_AUTH_METHODS)
            # Decline the key request so asyncssh moves on to password.
            self._cancel_request()
            return SUSPENDED

        try:
            value = answer()
        except (asyncssh.KeyImportError, ValueError) as e:
            self._error = (CODE_NONE, f"Invalid key material: {e}")
            return failure(CODE_NONE)

        self._request = None
        self._attempt = method
        self._attempt_status = None
        request.future.set_result(value)
        return SUSPENDED

    def authenticate_with_password(self, username: str, secret: str) -> EngineResult:
        return self._authenticate(AuthMethod.PASSWORD, lambda: secret)

    def authenticate_with_key_pair(
        self,
        username: str,
        public_key: bytes,
        private_key: bytes,
        passphrase: str | None,
    ) -> EngineResult:
        def load() -> asyncssh.SSHKey:
            key = asyncssh.import_private_key(private_key, passphrase)
            if public_key:
                public = asyncssh.import_public_key(public_key)
                if public.public_data != key.public_data:
                    raise ValueError("public key does not match private key")
            return key

        return self._authenticate(AuthMethod.PUBLIC_KEY, load)

    def send_keep_alive(self) -> None:
        """
        Nudge the connection with an SSH debug message.

        Reply-wanted requests run inside asyncssh on the keep-alive interval;
        this raises once asyncssh has given up on the peer.
        """
        if self._conn is None:
            return
        if self._closed:
            raise ConnectionResetError(self._error[1] or "Connection closed")
        self._conn.send_debug("keepalive", always_display=False)

    def last_error(self) -> tuple[int, str]:
        return self._error

    def disconnect(self, description: str = "") -> None:
        self._cancel_request()
        if self._conn is not None and not self._closed:
            self._conn.disconnect(
                asyncssh.DISC_BY_APPLICATION,
                description or "Disconnected by application",
            )
        self._closed = True

    def free(self) -> None:
        if self._freed:
            return
        self.disconnect()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        if self._conn is None and self._sock is not None:
            # asyncssh never took ownership of the socket.
            self._sock.close()
        self._freed = True
        self._wakeup_cb = None
        self._conn = None
        self._sock = None
        self._server_key = None

    @property
    def connection(self) -> asyncssh.SSHClientConnection | None:
        return self._conn if self._authenticated else None
