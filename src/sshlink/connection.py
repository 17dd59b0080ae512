"""
SSH session: the connection and authentication state machine.

Provides:
- SessionState: States of one session
- SSHSession: Connects, verifies the host, authenticates and then hands
  DATA_READY notifications to channel consumers

The session is single threaded and re-entrant. Every readiness event
(transport bytes, engine wakeup, credential update) lands in _ready_read(),
which drives the engine as far as it can go and returns the moment the
engine reports SUSPENDED. Nothing here ever blocks the event loop.

State transitions:
    IDLE -> TCP_CONNECTING (connect request)
    TCP_CONNECTING -> TCP_CONNECTED (transport connected)
    TCP_CONNECTED -> HANDSHAKE_IN_PROGRESS
    HANDSHAKE_IN_PROGRESS -> AUTH_METHODS_QUERIED (handshake done, host checked)
    AUTH_METHODS_QUERIED -> CHOOSING_AUTH_METHOD | CHANNELS_READY (none auth)
    CHOOSING_AUTH_METHOD -> AUTH_ATTEMPT_IN_PROGRESS
    AUTH_ATTEMPT_IN_PROGRESS -> CHOOSING_AUTH_METHOD (rejected) | CHANNELS_READY
    any -> IDLE (reset)

All activity is reported as events:
- STATE_CHANGE: Every transition
- HOST_KEY: Host identity and trust store verdict
- AUTH: Each attempt's outcome
- CONNECTED / DATA_READY: Authentication complete, channels usable
- AUTH_REQUIRED: No qualifying auth method, waiting for credentials
- ERROR: Any error, with its ErrorKind
- RESET / DISCONNECTED: Teardown
- XFER_RATE / KEEPALIVE_SENT: Timers
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from sshlink.auth import AuthMethod, choose_auth_method, parse_auth_methods, read_key_pair
from sshlink.config import ConnectPolicy, SSHConfig, default_known_hosts_path
from sshlink.credentials import Credentials, SecretBuffer
from sshlink.engine import (
    AsyncSSHEngine,
    EngineResult,
    EngineStatus,
    ProtocolEngine,
    engine_init,
)
from sshlink.errors import (
    RETRYABLE_KINDS,
    ErrorContext,
    ErrorKind,
    error_for_kind,
)
from sshlink.events import EventCallback, EventCollector, EventEmitter, EventType
from sshlink.host_key import HostIdentity, TrustResult, TrustStore, format_host
from sshlink.keepalive import KeepaliveConfig, PeriodicTimer, TrafficCounter
from sshlink.transport import TransportSocket
from sshlink.validation import validate_host, validate_port, validate_username

if TYPE_CHECKING:
    from sshlink.channel import Channel

logger = logging.getLogger(__name__)

EngineFactory = Callable[[Callable[[], None]], ProtocolEngine]
HostKeyCallback = Callable[[str, HostIdentity, TrustResult], bool]


class SessionState(str, Enum):
    """States of the connection and authentication state machine."""
    IDLE = "idle"
    TCP_CONNECTING = "tcp_connecting"
    TCP_CONNECTED = "tcp_connected"
    HANDSHAKE_IN_PROGRESS = "handshake_in_progress"
    AUTH_METHODS_QUERIED = "auth_methods_queried"
    CHOOSING_AUTH_METHOD = "choosing_auth_method"
    AUTH_ATTEMPT_IN_PROGRESS = "auth_attempt_in_progress"
    CHANNELS_READY = "channels_ready"


_VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.TCP_CONNECTING},
    SessionState.TCP_CONNECTING: {SessionState.TCP_CONNECTED},
    SessionState.TCP_CONNECTED: {SessionState.HANDSHAKE_IN_PROGRESS},
    SessionState.HANDSHAKE_IN_PROGRESS: {SessionState.AUTH_METHODS_QUERIED},
    SessionState.AUTH_METHODS_QUERIED: {
        SessionState.CHOOSING_AUTH_METHOD,
        SessionState.CHANNELS_READY,
    },
    SessionState.CHOOSING_AUTH_METHOD: {SessionState.AUTH_ATTEMPT_IN_PROGRESS},
    SessionState.AUTH_ATTEMPT_IN_PROGRESS: {
        SessionState.CHOOSING_AUTH_METHOD,
        SessionState.CHANNELS_READY,
    },
    SessionState.CHANNELS_READY: set(),
}

# States in which a credential update re-enters the state machine.
_PAST_TCP_CONNECT = frozenset(_VALID_TRANSITIONS) - {
    SessionState.IDLE,
    SessionState.TCP_CONNECTING,
}


def _default_engine_factory(keepalive: KeepaliveConfig) -> EngineFactory:
    def factory(wakeup: Callable[[], None]) -> ProtocolEngine:
        return AsyncSSHEngine(wakeup=wakeup, keepalive=keepalive)
    return factory


class SSHSession:
    """
    Asynchronous SSH client session.

    Usage:
        # Await the outcome
        session = SSHSession(strict_host_key_checking=False)
        session.set_password("secret")
        kind = await session.connect_to_host("alice", "example.com", 22)
        if kind != ErrorKind.NO_ERROR:
            ...

        # Context manager: raises the matching SSHError on failure
        async with SSHSession(host="example.com", username="alice",
                              password="secret") as session:
            sftp = SFTPChannel(session)
            await sftp.ready()

        # Event driven: react to AUTH_REQUIRED with new credentials
        session.subscribe(on_auth_required, EventType.AUTH_REQUIRED)
        session.start_connect("alice", "example.com")

    Credential material is copied into SecretBuffers owned by the session
    and wiped by disconnect_from_host() and close().
    """

    def __init__(
        self,
        host: str | None = None,
        port: int = 22,
        username: str | None = None,
        password: str | bytes | SecretBuffer | None = None,
        public_key: bytes | str | None = None,
        private_key: str | bytes | SecretBuffer | None = None,
        known_hosts: Path | str | None = None,
        strict_host_key_checking: bool = True,
        host_key_callback: HostKeyCallback | None = None,
        keepalive: KeepaliveConfig | None = None,
        connect_policy: ConnectPolicy | None = None,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
        engine_factory: EngineFactory | None = None,
        transport_factory: Callable[..., TransportSocket] | None = None,
    ) -> None:
        """
        Initialise a session. Nothing connects until connect_to_host().

        Args:
            host, port, username: Target used by ``async with``
            password: Password, also used as private key passphrase
            public_key: Public key material (may be omitted)
            private_key: Private key material (OpenSSH or PEM text)
            known_hosts: known_hosts file loaded into the trust store on
                every reset; first-use keys are saved back to it
            strict_host_key_checking: False enables trust on first use
            host_key_callback: Called with (hostname, identity, result) when
                the host key is unknown under strict checking or mismatched;
                returning False aborts the connection, accepting an unknown
                key adds it to the trust store
            keepalive: Keep-alive and traffic sample periods
            connect_policy: TCP connect timeout and retry budget
            event_collector: Optional collector for in-memory event capture
            event_log_path: Optional path for JSONL event log
            engine_factory: Builds a ProtocolEngine from a wakeup callback
            transport_factory: Builds a TransportSocket from callbacks
        """
        engine_init()

        self._target_host = host
        self._target_port = port
        self._target_username = username

        self._known_hosts = Path(known_hosts).expanduser() if known_hosts else None
        self._strict = strict_host_key_checking
        self._host_key_callback = host_key_callback
        self._keepalive_config = keepalive or KeepaliveConfig()
        self._policy = connect_policy or ConnectPolicy()
        self._engine_factory = engine_factory or _default_engine_factory(self._keepalive_config)
        self._transport_factory = transport_factory or TransportSocket

        self._emitter = EventEmitter(
            collector=event_collector,
            jsonl_path=event_log_path,
        )

        self._credentials = Credentials()
        if password is not None:
            self._credentials.set_password(password)
        if private_key is not None:
            self._credentials.set_keys(public_key, private_key)

        self._host = ""
        self._port = 22
        self._username = ""

        self._state = SessionState.IDLE
        self._generation = 0
        self._engine: ProtocolEngine = self._engine_factory(self.request_reentry)
        self._trust_store = self._new_trust_store()
        self._transport: TransportSocket | None = None
        self._host_identity: HostIdentity | None = None

        self._available: set[AuthMethod] = set()
        self._failed: set[AuthMethod] = set()
        self._current_method: AuthMethod | None = None
        self._auth_required_reported = False

        self._last_error = ErrorKind.NO_ERROR
        self._last_error_code = 0
        self._last_error_message = ""
        self.connect_result: ErrorKind | None = None
        self.connect_error_message = ""

        self._loop: asyncio.AbstractEventLoop | None = None
        self._outcome: asyncio.Future[ErrorKind] | None = None
        self._attempts_left = 0
        self.connect_attempts = 0
        self._connect_timer: asyncio.TimerHandle | None = None
        self._reentry_handle: asyncio.Handle | None = None
        self._in_ready_read = False
        self._reentry_pending = False

        self._traffic = TrafficCounter()
        self._keepalive_timer = PeriodicTimer(
            self._keepalive_config.interval_sec, self._send_keep_alive, name="keepalive"
        )
        self._rate_timer = PeriodicTimer(
            self._keepalive_config.rate_interval_sec, self._sample_rate, name="xfer-rate"
        )
        self._channels: list[tuple["Channel", Callable[[], None]]] = []
        self._closed = False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass  # Rate sampler starts on the first connect instead
        else:
            self._rate_timer.start()

    @classmethod
    def from_config(
        cls,
        host: str,
        ssh_config: SSHConfig | None = None,
        username: str | None = None,
        password: str | bytes | SecretBuffer | None = None,
        **kwargs: Any,
    ) -> "SSHSession":
        """
        Build a session from ssh_config settings for host.

        HostName, Port and User pick the target; ConnectTimeout and
        ConnectionAttempts the connect policy; ServerAliveInterval the
        keep-alive period; StrictHostKeyChecking and UserKnownHostsFile the
        trust store; the first readable IdentityFile the key pair.
        Explicit keyword arguments win over the config.
        """
        if ssh_config is None:
            ssh_config = SSHConfig()
        host_config = ssh_config.lookup(host)

        kwargs.setdefault("connect_policy", host_config.connect_policy())
        if host_config.server_alive_interval:
            kwargs.setdefault(
                "keepalive",
                KeepaliveConfig(interval_sec=float(host_config.server_alive_interval)),
            )
        if host_config.strict_host_key_checking is not None:
            kwargs.setdefault("strict_host_key_checking", host_config.strict_host_key_checking)
        kwargs.setdefault(
            "known_hosts", host_config.user_known_hosts_file or default_known_hosts_path()
        )

        session = cls(
            host=host_config.get_hostname(host),
            port=host_config.get_port(),
            username=username or host_config.get_user(),
            password=password,
            **kwargs,
        )

        if "private_key" not in kwargs:
            for identity in host_config.identity_file:
                if identity.exists():
                    session.set_keys_from_files(identity)
                    break

        return session

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def username(self) -> str:
        return self._username

    @property
    def last_error(self) -> ErrorKind:
        """Last error kind since the most recent reset."""
        return self._last_error

    @property
    def last_error_code(self) -> int:
        return self._last_error_code

    @property
    def last_error_message(self) -> str:
        return self._last_error_message

    @property
    def available_methods(self) -> frozenset[AuthMethod]:
        return frozenset(self._available)

    @property
    def failed_methods(self) -> frozenset[AuthMethod]:
        return frozenset(self._failed)

    @property
    def host_identity(self) -> HostIdentity | None:
        return self._host_identity

    @property
    def engine(self) -> ProtocolEngine:
        return self._engine

    @property
    def trust_store(self) -> TrustStore:
        return self._trust_store

    @property
    def connection(self) -> Any:
        """The engine's channel-capable connection once CHANNELS_READY."""
        if self._state != SessionState.CHANNELS_READY:
            return None
        return self._engine.connection

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.CHANNELS_READY

    @property
    def events(self) -> EventEmitter:
        return self._emitter

    def subscribe(
        self,
        callback: EventCallback,
        event_type: str | EventType | None = None,
    ) -> Callable[[], None]:
        """
        Register an event observer. Returns an unsubscribe function.

        Observers run synchronously inside the state machine and may call
        back into the session (set_password, disconnect_from_host).
        """
        return self._emitter.subscribe(callback, event_type)

    # ------------------------------------------------------------------
    # Channel consumers
    # ------------------------------------------------------------------

    def add_channel(self, channel: "Channel") -> None:
        """Deliver DATA_READY notifications to channel."""
        if any(c is channel for c, _ in self._channels):
            return
        unsubscribe = self._emitter.subscribe(
            lambda event: channel.on_data_ready(), EventType.DATA_READY
        )
        self._channels.append((channel, unsubscribe))

    def remove_channel(self, channel: "Channel") -> None:
        for entry in list(self._channels):
            if entry[0] is channel:
                entry[1]()
                self._channels.remove(entry)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def set_password(self, password: str | bytes | SecretBuffer | None) -> None:
        """
        Supply (or replace) the password.

        The password is also the private key passphrase, so both methods
        become eligible again.
        """
        self._credentials.set_password(password)
        self._failed.discard(AuthMethod.PASSWORD)
        self._failed.discard(AuthMethod.PUBLIC_KEY)
        self._credentials_changed()

    def set_keys(
        self,
        public_key: bytes | str | None,
        private_key: str | bytes | SecretBuffer | None,
    ) -> None:
        """Supply (or replace) the key pair as in-memory material."""
        self._credentials.set_keys(public_key, private_key)
        self._failed.discard(AuthMethod.PUBLIC_KEY)
        self._credentials_changed()

    def set_keys_from_files(
        self,
        private_key_path: Path | str,
        public_key_path: Path | str | None = None,
    ) -> None:
        """
        Read a key pair from disk and supply it.

        Raises:
            KeyLoadError: If a key file cannot be read
        """
        public_key, private_key = read_key_pair(private_key_path, public_key_path)
        self.set_keys(public_key, private_key)

    def _credentials_changed(self) -> None:
        self._auth_required_reported = False
        if self._state in _PAST_TCP_CONNECT:
            self.request_reentry()

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def start_connect(
        self,
        username: str,
        host: str,
        port: int = 22,
        *,
        password: str | bytes | SecretBuffer | None = None,
        public_key: bytes | str | None = None,
        private_key: str | bytes | SecretBuffer | None = None,
    ) -> "asyncio.Task[ErrorKind]":
        """
        Begin connecting and return immediately.

        Progress is reported through events. The returned task resolves to
        the ErrorKind of the connect operation: NO_ERROR once channels are
        ready, otherwise the error that ended it.

        Raises:
            ValueError: If host, port or username are invalid
            RuntimeError: If the session was closed
        """
        if self._closed:
            raise RuntimeError("Session is closed")
        host = validate_host(host)
        port = validate_port(port)
        username = validate_username(username)

        loop = asyncio.get_running_loop()
        self._loop = loop

        if self._state != SessionState.IDLE:
            self._reset()
        self._finish(ErrorKind.UNEXPECTED_SHUTDOWN, "Superseded by a new connect request")

        self._host = host
        self._port = port
        self._username = username
        if password is not None:
            self._credentials.set_password(password)
        if private_key is not None:
            self._credentials.set_keys(public_key, private_key)

        if not self._rate_timer.is_running:
            self._rate_timer.start()

        self._attempts_left = self._policy.retries
        self.connect_attempts = 0
        self.connect_result = None
        self.connect_error_message = ""
        outcome: asyncio.Future[ErrorKind] = loop.create_future()
        self._outcome = outcome

        self._begin_attempt()
        return loop.create_task(self._wait_outcome(outcome))

    async def connect_to_host(
        self,
        username: str,
        host: str,
        port: int = 22,
        *,
        password: str | bytes | SecretBuffer | None = None,
        public_key: bytes | str | None = None,
        private_key: str | bytes | SecretBuffer | None = None,
        wait: bool = True,
    ) -> ErrorKind:
        """
        Connect and authenticate.

        With wait=True (default) returns the final ErrorKind of the connect
        operation. With wait=False returns NO_ERROR as soon as the attempt
        has started; progress is reported through events.
        """
        task = self.start_connect(
            username,
            host,
            port,
            password=password,
            public_key=public_key,
            private_key=private_key,
        )
        if not wait:
            return ErrorKind.NO_ERROR
        return await task

    async def wait_ready(self) -> ErrorKind:
        """
        Wait for the session to reach CHANNELS_READY or fail.

        Useful after supplying new credentials in reaction to AUTH_REQUIRED.
        """
        if self._state == SessionState.CHANNELS_READY:
            return ErrorKind.NO_ERROR
        if self._state == SessionState.IDLE:
            return self.connect_result or ErrorKind.UNEXPECTED_SHUTDOWN
        if self._outcome is None or self._outcome.done():
            assert self._loop is not None
            self._outcome = self._loop.create_future()
        return await self._wait_outcome(self._outcome)

    @staticmethod
    async def _wait_outcome(outcome: "asyncio.Future[ErrorKind]") -> ErrorKind:
        return await asyncio.shield(outcome)

    def disconnect_from_host(self) -> None:
        """
        Disconnect, reset to IDLE and wipe credential material. Idempotent.
        """
        was_active = self._state != SessionState.IDLE
        self._reset()
        self._credentials.wipe()
        self._finish(ErrorKind.UNEXPECTED_SHUTDOWN, "Disconnected by caller")
        if was_active:
            self._emitter.emit(
                EventType.DISCONNECTED,
                host=self._host,
                port=self._port,
                reason="requested",
            )

    def close(self) -> None:
        """Disconnect and stop every timer. The session is unusable afterwards."""
        if self._closed:
            return
        self.disconnect_from_host()
        self._rate_timer.stop()
        for _, unsubscribe in self._channels:
            unsubscribe()
        self._channels.clear()
        self._engine.free()
        self._closed = True
        self._emitter.close()

    def reset(self) -> None:
        """Return to IDLE with a fresh engine and trust store. Idempotent."""
        self._reset()

    async def __aenter__(self) -> "SSHSession":
        if not self._target_host:
            raise ValueError("SSHSession(host=...) is required for 'async with'")
        if not self._target_username:
            raise ValueError("SSHSession(username=...) is required for 'async with'")
        kind = await self.connect_to_host(
            self._target_username, self._target_host, self._target_port
        )
        if kind != ErrorKind.NO_ERROR:
            context = ErrorContext(
                host=self._host,
                port=self._port,
                username=self._username,
            )
            message = self.connect_error_message or f"Connection failed: {kind.value}"
            self.close()
            raise error_for_kind(kind, message, context)
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if new_state != SessionState.IDLE:
            assert new_state in _VALID_TRANSITIONS[old_state], \
                f"Invalid state transition: {old_state.value} -> {new_state.value}"
        self._state = new_state
        logger.debug("%s:%s %s -> %s", self._host, self._port, old_state.value, new_state.value)
        self._emitter.emit(
            EventType.STATE_CHANGE,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def request_reentry(self) -> None:
        """Schedule one _ready_read() on the event loop (deduplicated)."""
        if self._closed or self._reentry_handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._reentry_handle = loop.call_soon(self._scheduled_reentry)

    def _scheduled_reentry(self) -> None:
        self._reentry_handle = None
        self._ready_read()

    def _ready_read(self) -> None:
        """
        Drive the state machine as far as the engine allows.

        Nested calls (from event observers) are deferred to the next loop
        iteration so the machine never runs inside itself.
        """
        if self._in_ready_read:
            self._reentry_pending = True
            return

        self._in_ready_read = True
        try:
            self._advance()
        finally:
            self._in_ready_read = False

        if self._reentry_pending:
            self._reentry_pending = False
            self.request_reentry()

    def _advance(self) -> None:
        generation = self._generation

        # Observers may reset the session from inside any emit; a bumped
        # generation means this run is stale.
        while generation == self._generation:
            state = self._state

            if state in (SessionState.IDLE, SessionState.TCP_CONNECTING):
                return

            if state == SessionState.TCP_CONNECTED:
                self._set_state(SessionState.HANDSHAKE_IN_PROGRESS)

            elif state == SessionState.HANDSHAKE_IN_PROGRESS:
                assert self._transport is not None
                result = self._engine_step(
                    "Handshake",
                    self._engine.begin_handshake,
                    self._transport.engine_socket(), self._host, self._port, self._username,
                )
                if result is None or result.suspended:
                    return
                if result.status == EngineStatus.FAILURE:
                    code, message = self._engine.last_error()
                    self._fail(
                        ErrorKind.UNEXPECTED_SHUTDOWN,
                        f"Handshake failed: {message or 'unknown error'}",
                        code=code,
                    )
                    return
                if not self._check_host_key() or generation != self._generation:
                    return
                self._set_state(SessionState.AUTH_METHODS_QUERIED)

            elif state == SessionState.AUTH_METHODS_QUERIED:
                result = self._engine_step(
                    "Auth method query", self._engine.list_auth_methods, self._username
                )
                if result is None or result.suspended:
                    return
                if result.status == EngineStatus.ALREADY_AUTHENTICATED:
                    self._auth_succeeded(None)
                    return
                if result.status == EngineStatus.FAILURE:
                    code, message = self._engine.last_error()
                    self._fail(
                        ErrorKind.UNEXPECTED_SHUTDOWN,
                        f"Could not list auth methods: {message or 'unknown error'}",
                        code=code,
                        disconnected=True,
                    )
                    return
                self._available |= parse_auth_methods(result.value or [])
                logger.debug("Server advertises %s", sorted(m.value for m in self._available))
                self._set_state(SessionState.CHOOSING_AUTH_METHOD)

            elif state == SessionState.CHOOSING_AUTH_METHOD:
                method = choose_auth_method(self._available, self._failed, self._credentials)
                if method is None:
                    self._auth_required()
                    return
                self._current_method = method
                self._set_state(SessionState.AUTH_ATTEMPT_IN_PROGRESS)

            elif state == SessionState.AUTH_ATTEMPT_IN_PROGRESS:
                assert self._current_method is not None
                method = self._current_method
                result = self._engine_step(
                    f"{method.value} authentication", self._attempt_auth, method
                )
                if result is None or result.suspended:
                    return
                if result.status in (EngineStatus.SUCCESS, EngineStatus.ALREADY_AUTHENTICATED):
                    self._auth_succeeded(method)
                    return
                self._auth_failed(method)
                if generation == self._generation:
                    self._set_state(SessionState.CHOOSING_AUTH_METHOD)

            elif state == SessionState.CHANNELS_READY:
                self._emitter.emit(EventType.DATA_READY)
                return

    def _engine_step(
        self,
        what: str,
        call: Callable[..., EngineResult],
        *args: Any,
    ) -> EngineResult | None:
        """
        Run one engine primitive.

        An exception from the engine ends the attempt like a dropped
        connection and returns None.
        """
        try:
            return call(*args)
        except Exception as e:
            logger.exception("%s:%s engine raised during %s", self._host, self._port, what)
            self._fail(
                ErrorKind.UNEXPECTED_SHUTDOWN,
                f"{what} failed: {str(e) or e.__class__.__name__}",
                disconnected=True,
            )
            return None

    def _check_host_key(self) -> bool:
        """
        Verify the captured host identity against the trust store.

        Returns:
            False if the host key callback rejected the host
        """
        identity = self._engine.host_identity()
        self._host_identity = identity
        hostname = format_host(self._host, self._port)

        if identity is None:
            result = TrustResult.NOT_FOUND
        else:
            result = self._trust_store.verify(hostname, identity)

        self._emitter.emit(
            EventType.HOST_KEY,
            host=self._host,
            port=self._port,
            key_type=identity.key_type.value if identity else None,
            fingerprint=identity.fingerprint_sha256 if identity else None,
            result=result.value,
        )

        kind: ErrorKind | None = None
        if result == TrustResult.NOT_FOUND:
            if self._strict or identity is None:
                kind = ErrorKind.HOST_KEY_UNKNOWN
            else:
                self._trust_new_host(hostname, identity)
        elif result == TrustResult.MISMATCH:
            kind = ErrorKind.HOST_KEY_MISMATCH

        if kind is None:
            return True

        if result == TrustResult.NOT_FOUND:
            message = f"Host key for {hostname} is not trusted"
        else:
            message = f"Host key for {hostname} differs from the trusted key"

        generation = self._generation
        self._report_error(
            kind,
            message,
            extra={
                "fingerprint": identity.fingerprint_sha256 if identity else None,
                "strict": self._strict,
            },
        )
        if generation != self._generation:
            return False

        if self._host_key_callback is not None and identity is not None:
            if not self._host_key_callback(hostname, identity, result):
                logger.warning("Host key for %s rejected by callback", hostname)
                self._reset()
                self._finish(kind, f"Host key for {hostname} rejected")
                return False
            if generation == self._generation and result == TrustResult.NOT_FOUND:
                self._trust_new_host(hostname, identity)
        return generation == self._generation

    def _trust_new_host(self, hostname: str, identity: HostIdentity) -> None:
        if not self._trust_store.add(hostname, identity):
            logger.warning("Cannot trust %s key for %s", identity.key_type.value, hostname)
            return
        logger.info(
            "Permanently added %s (%s) to the list of known hosts",
            hostname, identity.key_type.value,
        )
        if self._known_hosts is not None:
            self._trust_store.save(self._known_hosts)

    def _attempt_auth(self, method: AuthMethod) -> EngineResult:
        creds = self._credentials
        if method == AuthMethod.PUBLIC_KEY:
            assert creds.private_key is not None
            return self._engine.authenticate_with_key_pair(
                self._username,
                creds.public_key or b"",
                creds.private_key.reveal_bytes(),
                creds.password.reveal() if creds.has_password else None,
            )
        assert creds.password is not None
        return self._engine.authenticate_with_password(
            self._username, creds.password.reveal()
        )

    def _auth_failed(self, method: AuthMethod) -> None:
        code, message = self._engine.last_error()
        self._last_error_code = code
        self._last_error_message = message
        self._failed.add(method)
        self._current_method = None
        self._auth_required_reported = False
        logger.info("%s authentication for %s failed: %s", method.value, self._username, message)
        self._emitter.emit(
            EventType.AUTH,
            status="failed",
            method=method.value,
            username=self._username,
            code=code,
            message=message,
        )

    def _auth_required(self) -> None:
        if self._auth_required_reported:
            return
        self._auth_required_reported = True
        available = sorted(m.value for m in self._available)
        generation = self._generation
        self._report_error(
            ErrorKind.AUTHENTICATION_ERROR,
            "No qualifying authentication method",
            extra={
                "available_methods": available,
                "failed_methods": sorted(m.value for m in self._failed),
            },
        )
        if generation != self._generation:
            return
        self.connect_error_message = self._last_error_message
        self._emitter.emit(
            EventType.AUTH_REQUIRED,
            host=self._host,
            port=self._port,
            username=self._username,
            available_methods=available,
        )
        self._finish(ErrorKind.AUTHENTICATION_ERROR, self._last_error_message)

    def _auth_succeeded(self, method: AuthMethod | None) -> None:
        self._current_method = None
        self._set_state(SessionState.CHANNELS_READY)
        if self._state != SessionState.CHANNELS_READY:
            return
        self._keepalive_timer.start()
        self._emitter.emit(
            EventType.AUTH,
            status="success",
            method=method.value if method else "none",
            username=self._username,
        )
        self._emitter.emit(
            EventType.CONNECTED,
            host=self._host,
            port=self._port,
            username=self._username,
            auth_method=method.value if method else "none",
        )
        self._finish(ErrorKind.NO_ERROR)
        if self._state == SessionState.CHANNELS_READY:
            self._emitter.emit(EventType.DATA_READY)

    # ------------------------------------------------------------------
    # Errors, retries and reset
    # ------------------------------------------------------------------

    def _report_error(
        self,
        kind: ErrorKind,
        message: str,
        code: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._last_error = kind
        self._last_error_message = message
        if code is not None:
            self._last_error_code = code

        context = ErrorContext(
            host=self._host or None,
            port=self._port,
            username=self._username or None,
            engine_code=code,
            extra={k: v for k, v in (extra or {}).items() if v is not None},
        )
        error = error_for_kind(kind, message, context)
        logger.warning("%s:%s %s: %s", self._host, self._port, kind.value, message)
        self._emitter.emit(EventType.ERROR, **error.to_dict())

    def _fail(
        self,
        kind: ErrorKind,
        message: str,
        code: int | None = None,
        disconnected: bool = False,
    ) -> None:
        """Report an error, reset, then retry or end the connect operation."""
        self._report_error(kind, message, code)
        self._reset()
        if disconnected:
            self._emitter.emit(
                EventType.DISCONNECTED,
                host=self._host,
                port=self._port,
                reason=kind.value,
            )

        if self._state != SessionState.IDLE:
            return  # An observer already started something new

        if (
            self._outcome is not None
            and not self._outcome.done()
            and kind in RETRYABLE_KINDS
            and self._attempts_left > 0
        ):
            self._attempts_left -= 1
            logger.info(
                "Retrying %s:%s (%d retries left)", self._host, self._port, self._attempts_left
            )
            self._begin_attempt()
            return

        self._finish(kind, message)

    def _finish(self, kind: ErrorKind, message: str = "") -> None:
        """Resolve the pending connect operation, if any."""
        if self._outcome is None or self._outcome.done():
            return
        self.connect_result = kind
        self.connect_error_message = message
        self._outcome.set_result(kind)

    def _reset(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self._keepalive_timer.stop()

        active = self._state != SessionState.IDLE
        self._generation += 1
        if active:
            self._emitter.emit(EventType.RESET, host=self._host, port=self._port)

        self._engine.disconnect("Session reset")
        self._engine.free()
        self._trust_store.clear()

        self._available.clear()
        self._failed.clear()
        self._current_method = None
        self._auth_required_reported = False
        self._host_identity = None
        self._last_error = ErrorKind.NO_ERROR
        self._last_error_code = 0
        self._last_error_message = ""

        self._engine = self._engine_factory(self.request_reentry)
        self._trust_store = self._new_trust_store()

        if self._transport is not None:
            self._transport.close()
            self._transport = None

        if active:
            self._set_state(SessionState.IDLE)

    def _new_trust_store(self) -> TrustStore:
        store = TrustStore()
        if self._known_hosts is not None and self._known_hosts.exists():
            store.load(self._known_hosts)
        return store

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _begin_attempt(self) -> None:
        assert self._loop is not None
        self.connect_attempts += 1
        self._set_state(SessionState.TCP_CONNECTING)
        logger.debug(
            "Connecting to %s:%s (attempt %d)", self._host, self._port, self.connect_attempts
        )

        self._transport = self._transport_factory(
            on_connected=self._on_transport_connected,
            on_ready_read=self._ready_read,
            on_disconnected=self._on_transport_disconnected,
            on_error=self._on_transport_error,
            on_bytes_sent=self._traffic.add_sent,
            on_bytes_received=self._traffic.add_received,
        )
        self._connect_timer = self._loop.call_later(
            self._policy.timeout_sec, self._on_connect_timeout
        )
        self._transport.connect_to_host(self._host, self._port)

    def _on_transport_connected(self) -> None:
        if self._state != SessionState.TCP_CONNECTING:
            return
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self._set_state(SessionState.TCP_CONNECTED)
        self._ready_read()

    def _on_transport_error(self, exc: BaseException) -> None:
        if self._state == SessionState.TCP_CONNECTING and isinstance(exc, ConnectionRefusedError):
            self._fail(
                ErrorKind.CONNECTION_REFUSED,
                f"Connection to {self._host}:{self._port} refused",
            )
            return
        # Anything else is left to the connect timeout or the disconnect
        # that follows it.
        logger.warning("Transport error on %s:%s: %s", self._host, self._port, exc)

    def _on_transport_disconnected(self) -> None:
        if self._state in (SessionState.IDLE, SessionState.TCP_CONNECTING):
            return
        self._fail(
            ErrorKind.UNEXPECTED_SHUTDOWN,
            f"Connection to {self._host}:{self._port} closed unexpectedly",
            disconnected=True,
        )

    def _on_connect_timeout(self) -> None:
        self._connect_timer = None
        if self._state != SessionState.TCP_CONNECTING:
            return
        self._fail(
            ErrorKind.TIMEOUT,
            f"Connection to {self._host}:{self._port} timed out "
            f"after {self._policy.timeout_sec}s",
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _send_keep_alive(self) -> None:
        if self._state != SessionState.CHANNELS_READY:
            return
        try:
            self._engine.send_keep_alive()
        except Exception as e:
            logger.info("Keep-alive to %s:%s failed: %s", self._host, self._port, e)
            return
        self._emitter.emit(EventType.KEEPALIVE_SENT, host=self._host, port=self._port)

    def _sample_rate(self) -> None:
        sent, received = self._traffic.sample()
        self._emitter.emit(
            EventType.XFER_RATE,
            bytes_sent=sent,
            bytes_received=received,
            interval_sec=self._keepalive_config.rate_interval_sec,
        )
