"""
SSH session error taxonomy with structured data for JSONL logging.

Every failure the session can report has an ErrorKind. The kind travels
on ERROR events; the exception classes carry the same kind plus structured
context for callers that prefer raising (``async with SSHSession(...)``).

Error hierarchy:
- SSHError (base)
  - SSHConnectionError
    - ConnectionRefused
    - ConnectionTimeout
    - UnexpectedShutdown
  - HostKeyError
    - HostKeyUnknown
    - HostKeyMismatch
  - AuthenticationError
    - AuthFailed (no qualifying method left)
    - KeyLoadError (private key material unusable)
  - ChannelError (channel consumer operation failed)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Kinds of error a session reports through its ERROR events."""
    NO_ERROR = "no_error"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    HOST_KEY_UNKNOWN = "host_key_unknown"
    HOST_KEY_MISMATCH = "host_key_mismatch"
    AUTHENTICATION_ERROR = "authentication_error"
    UNEXPECTED_SHUTDOWN = "unexpected_shutdown"


# Kinds that consume the connect retry budget.
RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.UNEXPECTED_SHUTDOWN,
})


@dataclass
class ErrorContext:
    """
    Structured context for SSH errors.

    Carries what is needed to debug the failure and to log it as JSONL.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    engine_code: int | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                collisions = ({f.name for f in fields(self)} - {"extra"}) & value.keys()
                assert not collisions, (
                    f"Extra keys collide with context fields: {collisions}"
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all session errors.

    Subclasses pin ``kind``; the base class reports UNEXPECTED_SHUTDOWN
    since an unclassified failure always ends the session.
    """
    kind: ErrorKind = ErrorKind.UNEXPECTED_SHUTDOWN

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "kind": self.kind.value,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for transport and handshake failures."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the TCP connection."""
    kind = ErrorKind.CONNECTION_REFUSED


class ConnectionTimeout(SSHConnectionError):
    """TCP connect did not complete within the connect window."""
    kind = ErrorKind.TIMEOUT


class UnexpectedShutdown(SSHConnectionError):
    """Handshake failed or the connection dropped mid-session."""
    kind = ErrorKind.UNEXPECTED_SHUTDOWN


# ---------------------------------------------------------------------------
# Host Key Errors
# ---------------------------------------------------------------------------

class HostKeyError(SSHError):
    """Base class for host identity problems."""
    pass


class HostKeyUnknown(HostKeyError):
    """Strict checking is on and the host is not in the trust store."""
    kind = ErrorKind.HOST_KEY_UNKNOWN


class HostKeyMismatch(HostKeyError):
    """
    The server's host key differs from the trusted one.

    This could indicate a man-in-the-middle attack or a reinstalled server.
    """
    kind = ErrorKind.HOST_KEY_MISMATCH


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """Base class for authentication failures."""
    kind = ErrorKind.AUTHENTICATION_ERROR


class AuthFailed(AuthenticationError):
    """
    No qualifying authentication method is left.

    Raised when every advertised method with credentials has been rejected,
    or when the server advertises nothing the caller has credentials for.
    """
    pass


class KeyLoadError(AuthenticationError):
    """
    Private key material could not be read or decoded.

    ``reason`` is one of file_not_found, permission_denied,
    wrong_passphrase, invalid_format, key_mismatch.
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        if context is None:
            context = ErrorContext()
        if key_path:
            context.extra["key_path"] = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Channel Errors
# ---------------------------------------------------------------------------

class ChannelError(SSHError):
    """
    A channel consumer operation failed.

    Raised by channel consumers (file transfer) on top of a ready session;
    the session itself stays usable.
    """
    pass


_KIND_TO_ERROR: dict[ErrorKind, type[SSHError]] = {
    ErrorKind.TIMEOUT: ConnectionTimeout,
    ErrorKind.CONNECTION_REFUSED: ConnectionRefused,
    ErrorKind.UNEXPECTED_SHUTDOWN: UnexpectedShutdown,
    ErrorKind.HOST_KEY_UNKNOWN: HostKeyUnknown,
    ErrorKind.HOST_KEY_MISMATCH: HostKeyMismatch,
    ErrorKind.AUTHENTICATION_ERROR: AuthFailed,
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    context: ErrorContext | None = None,
) -> SSHError:
    """
    Build the exception matching an ErrorKind.

    Raises:
        ValueError: For NO_ERROR, which has no exception.
    """
    if kind == ErrorKind.NO_ERROR:
        raise ValueError("NO_ERROR has no matching exception")
    return _KIND_TO_ERROR[kind](message, context)
