"""sshlink: event-driven asynchronous SSH session client."""

__version__ = "0.1.0"

from sshlink.auth import (
    AUTH_PRIORITY,
    AuthMethod,
    choose_auth_method,
    parse_auth_methods,
    read_key_material,
    read_key_pair,
)
from sshlink.channel import Channel, SFTPChannel
from sshlink.config import (
    ConnectPolicy,
    SSHConfig,
    SSHHostConfig,
    default_known_hosts_path,
)
from sshlink.connection import SessionState, SSHSession
from sshlink.credentials import Credentials, SecretBuffer, SecretWiped
from sshlink.engine import (
    AsyncSSHEngine,
    EngineResult,
    EngineStatus,
    ProtocolEngine,
    engine_init,
)
from sshlink.errors import (
    AuthenticationError,
    AuthFailed,
    ChannelError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    ErrorKind,
    HostKeyError,
    HostKeyMismatch,
    HostKeyUnknown,
    KeyLoadError,
    SSHConnectionError,
    SSHError,
    UnexpectedShutdown,
    error_for_kind,
)
from sshlink.events import Event, EventCollector, EventEmitter, EventType
from sshlink.host_key import (
    HostIdentity,
    KeyType,
    TrustEntry,
    TrustResult,
    TrustStore,
    format_host,
)
from sshlink.keepalive import KeepaliveConfig, PeriodicTimer, TrafficCounter
from sshlink.transport import TransportSocket
from sshlink.validation import validate_host, validate_port, validate_username

__all__ = [
    # Session
    "SSHSession",
    "SessionState",
    "ConnectPolicy",
    "KeepaliveConfig",
    # Config
    "SSHConfig",
    "SSHHostConfig",
    "default_known_hosts_path",
    # Auth
    "AUTH_PRIORITY",
    "AuthMethod",
    "Credentials",
    "SecretBuffer",
    "SecretWiped",
    "choose_auth_method",
    "parse_auth_methods",
    "read_key_material",
    "read_key_pair",
    # Host keys
    "HostIdentity",
    "KeyType",
    "TrustEntry",
    "TrustResult",
    "TrustStore",
    "format_host",
    # Engine and transport
    "AsyncSSHEngine",
    "EngineResult",
    "EngineStatus",
    "ProtocolEngine",
    "TransportSocket",
    "engine_init",
    # Channels
    "Channel",
    "SFTPChannel",
    # Timers
    "PeriodicTimer",
    "TrafficCounter",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Errors
    "AuthFailed",
    "AuthenticationError",
    "ChannelError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "ErrorContext",
    "ErrorKind",
    "HostKeyError",
    "HostKeyMismatch",
    "HostKeyUnknown",
    "KeyLoadError",
    "SSHConnectionError",
    "SSHError",
    "UnexpectedShutdown",
    "error_for_kind",
    # Validation
    "validate_host",
    "validate_port",
    "validate_username",
]
