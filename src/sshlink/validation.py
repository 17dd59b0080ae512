"""
Input validation for session connect parameters.

Hosts, usernames and ports reach known_hosts files and log lines, so
control characters and shell metacharacters are rejected outright.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32

FORBIDDEN_CHARS: Final[frozenset[str]] = frozenset(
    "\x00\n\r\t"
    "`$(){}|;&<>\\'\""
)

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9_]([a-zA-Z0-9_-]*[a-zA-Z0-9_])?$"
)

# POSIX-style names, plus dots as many directory services allow them
_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*$"
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}


def _check_forbidden_chars(value: str, field_name: str) -> None:
    for char in value:
        if char in FORBIDDEN_CHARS:
            desc = _CHAR_NAMES.get(char, repr(char))
            raise ValueError(f"{field_name} contains forbidden character: {desc}")


def validate_host(host: str) -> str:
    """
    Validate a hostname (RFC 952/1123) or an IPv4/IPv6 literal.

    Returns:
        The normalised host (lowercase; IP literals in compressed form)

    Raises:
        ValueError: If the host is invalid
    """
    if not isinstance(host, str):
        raise ValueError(f"host must be a string, got {type(host).__name__}")
    if not host:
        raise ValueError("host must not be empty")

    _check_forbidden_chars(host, "host")

    literal = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    try:
        return str(ipaddress.ip_address(literal))
    except ValueError:
        pass

    if len(host) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"host exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(host)})"
        )

    for label in host.split("."):
        if not label:
            raise ValueError("host must not contain empty labels")
        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"host label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters"
            )
        if not _LABEL_PATTERN.match(label):
            if label.startswith("-") or label.endswith("-"):
                raise ValueError(
                    f"host label '{label}' must not start or end with a hyphen"
                )
            raise ValueError(
                f"host label '{label}' contains invalid characters"
            )

    return host.lower()


def validate_username(username: str) -> str:
    """
    Validate a username.

    Raises:
        ValueError: If the username is invalid
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")
    if not username:
        raise ValueError("username must not be empty")

    _check_forbidden_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )
    if not _USERNAME_PATTERN.match(username):
        raise ValueError(
            f"username {username!r} must start with a letter or underscore and "
            "contain only alphanumerics, '.', '_' and '-'"
        )
    return username


def validate_port(port: int) -> int:
    """
    Validate a TCP port number.

    Raises:
        ValueError: If the port is not an int in 1-65535
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")
    if not 1 <= port <= 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    return port
