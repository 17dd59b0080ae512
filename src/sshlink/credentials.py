"""
Credential material for a session.

Provides:
- SecretBuffer: A wipeable byte buffer that never prints its contents
- Credentials: The password and key pair a session authenticates with

The session keeps its own SecretBuffer copies of everything the caller
supplies and wipes them on disconnect. Python cannot guarantee that no
other copy of a secret exists (the caller's str, asyncssh's own objects),
so wiping narrows the exposure window rather than closing it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class SecretWiped(Exception):
    """Raised when accessing a SecretBuffer after wipe()."""
    pass


class SecretBuffer:
    """
    A bytes-like secret held in a mutable buffer that can be zeroed.

    Usage:
        password = SecretBuffer(getpass.getpass())
        engine.authenticate_with_password(user, password.reveal())
        password.wipe()
    """

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, value: str | bytes | bytearray) -> None:
        assert isinstance(value, (str, bytes, bytearray)), (
            f"SecretBuffer requires str or bytes, got {type(value).__name__}"
        )
        data = value.encode("utf-8") if isinstance(value, str) else value
        self._buffer = bytearray(data)
        self._wiped = False

    @classmethod
    def coerce(cls, value: "str | bytes | SecretBuffer | None") -> "SecretBuffer | None":
        """Return value as a fresh SecretBuffer (None stays None)."""
        if value is None:
            return None
        if isinstance(value, SecretBuffer):
            return cls(value.reveal_bytes())
        return cls(value)

    def _check_wiped(self) -> None:
        if self._wiped:
            raise SecretWiped("SecretBuffer has been wiped and cannot be accessed")

    def reveal(self) -> str:
        """Explicitly reveal the secret as a string."""
        self._check_wiped()
        return self._buffer.decode("utf-8")

    def reveal_bytes(self) -> bytes:
        """Explicitly reveal the secret as bytes."""
        self._check_wiped()
        return bytes(self._buffer)

    def wipe(self) -> None:
        """Zero the buffer. Idempotent."""
        if not self._wiped:
            for i in range(len(self._buffer)):
                self._buffer[i] = 0
            self._buffer = bytearray()
            self._wiped = True

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def __len__(self) -> int:
        self._check_wiped()
        return len(self._buffer)

    def __bool__(self) -> bool:
        return not self._wiped and len(self._buffer) > 0

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, SecretBuffer):
            return self.reveal_bytes() == other.reveal_bytes()
        if isinstance(other, str):
            return self.reveal() == other
        if isinstance(other, (bytes, bytearray)):
            return self.reveal_bytes() == bytes(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        return "<wiped>" if self._wiped else "<hidden>"

    def __repr__(self) -> str:
        return f"SecretBuffer({self})"


@dataclass
class Credentials:
    """
    Password and key pair material for one session.

    The password doubles as the private key passphrase, so encrypted keys
    are usable once a password has been supplied.

    Attributes:
        password: Password (and key passphrase)
        public_key: Public key material (OpenSSH or PEM text), may be empty
            when the public half can be derived from the private key
        private_key: Private key material (OpenSSH or PEM text)
    """
    password: SecretBuffer | None = None
    public_key: bytes | None = None
    private_key: SecretBuffer | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    @property
    def has_key_pair(self) -> bool:
        return bool(self.private_key)

    def set_password(self, password: str | bytes | SecretBuffer | None) -> None:
        if self.password is not None:
            self.password.wipe()
        self.password = SecretBuffer.coerce(password)

    def set_keys(
        self,
        public_key: bytes | str | None,
        private_key: str | bytes | SecretBuffer | None,
    ) -> None:
        if isinstance(public_key, str):
            public_key = public_key.encode("utf-8")
        if self.private_key is not None:
            self.private_key.wipe()
        self.public_key = public_key
        self.private_key = SecretBuffer.coerce(private_key)

    def wipe(self) -> None:
        """Destroy all held material."""
        if self.password is not None:
            self.password.wipe()
        if self.private_key is not None:
            self.private_key.wipe()
        self.password = None
        self.private_key = None
        self.public_key = None
