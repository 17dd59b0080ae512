"""
Authentication method selection and key material loading.

Provides:
- AuthMethod enum: PUBLIC_KEY, PASSWORD
- AUTH_PRIORITY: The fixed order methods are tried in
- parse_auth_methods(): Server method names to AuthMethod values
- choose_auth_method(): Pick the next method to attempt
- read_key_material(): Load key files with proper error handling
"""
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Iterable

from sshlink.credentials import Credentials
from sshlink.errors import KeyLoadError

logger = logging.getLogger(__name__)


class AuthMethod(str, Enum):
    """Authentication methods the session can negotiate."""
    PUBLIC_KEY = "publickey"
    PASSWORD = "password"


# Public key is always tried before password.
AUTH_PRIORITY: tuple[AuthMethod, ...] = (AuthMethod.PUBLIC_KEY, AuthMethod.PASSWORD)


def parse_auth_methods(names: Iterable[str]) -> set[AuthMethod]:
    """
    Convert server-advertised method names into AuthMethod values.

    Unrecognised names (keyboard-interactive, gssapi-with-mic, ...) are
    ignored.
    """
    methods: set[AuthMethod] = set()
    for name in names:
        try:
            methods.add(AuthMethod(name.strip()))
        except ValueError:
            logger.debug("Ignoring unsupported auth method %r", name)
    return methods


def has_credentials_for(method: AuthMethod, credentials: Credentials) -> bool:
    """Return True if credentials hold material usable with method."""
    if method == AuthMethod.PUBLIC_KEY:
        return credentials.has_key_pair
    return credentials.has_password


def choose_auth_method(
    available: set[AuthMethod],
    failed: set[AuthMethod],
    credentials: Credentials,
) -> AuthMethod | None:
    """
    Pick the first method in AUTH_PRIORITY that qualifies.

    A method qualifies when the server advertises it, the caller supplied
    matching credentials and it has not already failed.

    Returns:
        The method to attempt, or None if nothing qualifies
    """
    for method in AUTH_PRIORITY:
        if method not in available or method in failed:
            continue
        if has_credentials_for(method, credentials):
            return method
    return None


def read_key_material(key_path: Path | str) -> bytes:
    """
    Read a key file into memory.

    Args:
        key_path: Path to a private or public key file (~ is expanded)

    Returns:
        The file contents

    Raises:
        KeyLoadError: If the file is missing or unreadable
    """
    key_path = Path(key_path).expanduser()

    if not key_path.exists():
        raise KeyLoadError(
            f"Key file not found: {key_path}",
            key_path=str(key_path),
            reason="file_not_found",
        )

    if not os.access(key_path, os.R_OK):
        raise KeyLoadError(
            f"Key file not readable: {key_path}",
            key_path=str(key_path),
            reason="permission_denied",
        )

    try:
        return key_path.read_bytes()
    except OSError as e:
        raise KeyLoadError(
            f"Failed to read key file {key_path}: {e}",
            key_path=str(key_path),
            reason="permission_denied",
        ) from e


def read_key_pair(
    private_key_path: Path | str,
    public_key_path: Path | str | None = None,
) -> tuple[bytes, bytes]:
    """
    Read a private key and its public half.

    When public_key_path is None the conventional ``<private>.pub`` is
    used if present; otherwise the public half is left empty and derived
    from the private key at authentication time.

    Returns:
        (public_key, private_key) material

    Raises:
        KeyLoadError: If the private key (or an explicit public key) cannot be read
    """
    private_key = read_key_material(private_key_path)

    if public_key_path is not None:
        return read_key_material(public_key_path), private_key

    default_pub = Path(str(Path(private_key_path).expanduser()) + ".pub")
    if default_pub.exists():
        return read_key_material(default_pub), private_key
    return b"", private_key
