"""
Session configuration: connect policy and OpenSSH config lookup.

Provides:
- ConnectPolicy: TCP connect timeout and retry budget
- SSHHostConfig: Resolved settings for one host
- SSHConfig: Parser for ~/.ssh/config and /etc/ssh/ssh_config
- default_known_hosts_path(): The user's known_hosts file

Supported ssh_config options:
HostName, Port, User, IdentityFile, ConnectTimeout, ConnectionAttempts,
ServerAliveInterval, StrictHostKeyChecking, UserKnownHostsFile.
"""
from __future__ import annotations

import fnmatch
import getpass
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

USER_CONFIG_PATH = Path("~/.ssh/config")
SYSTEM_CONFIG_PATH = Path("/etc/ssh/ssh_config")


def default_known_hosts_path() -> Path:
    """Return the user's known_hosts path (~/.ssh/known_hosts)."""
    return Path("~/.ssh/known_hosts").expanduser()


@dataclass
class ConnectPolicy:
    """
    Budget for the TCP connect phase.

    - timeout_sec: Wall-clock window for one connect attempt
    - retries: Extra attempts after the first one fails with a
      timeout, refusal or unexpected shutdown

    Usage:
        # One attempt, 10s window
        policy = ConnectPolicy()

        # Flaky network: three attempts, 5s each
        policy = ConnectPolicy(timeout_sec=5.0, retries=2)
    """
    timeout_sec: float = 10.0
    retries: int = 0

    def __post_init__(self) -> None:
        assert self.timeout_sec > 0, \
            f"timeout_sec must be positive, got {self.timeout_sec}"
        assert self.retries >= 0, \
            f"retries must be non-negative, got {self.retries}"

    @property
    def max_attempts(self) -> int:
        return self.retries + 1


@dataclass
class SSHHostConfig:
    """
    Resolved ssh_config settings for a specific host.

    Unset options stay None so callers can tell "not configured" from a
    configured default.
    """
    hostname: str | None = None
    port: int | None = None
    user: str | None = None
    identity_file: list[Path] = field(default_factory=list)
    connect_timeout: int | None = None
    connection_attempts: int | None = None
    server_alive_interval: int | None = None
    strict_host_key_checking: bool | None = None
    user_known_hosts_file: Path | None = None

    def get_hostname(self, original_host: str) -> str:
        """Get the real hostname to connect to."""
        return self.hostname if self.hostname else original_host

    def get_port(self, default: int = 22) -> int:
        """Get the port to connect to."""
        return self.port if self.port is not None else default

    def get_user(self, default: str | None = None) -> str:
        """Get the username for authentication."""
        if self.user:
            return self.user
        if default:
            return default
        return getpass.getuser()

    def connect_policy(self) -> ConnectPolicy:
        """
        ConnectPolicy from ConnectTimeout and ConnectionAttempts.

        ConnectionAttempts counts every attempt, so retries is one less.
        """
        policy = ConnectPolicy()
        if self.connect_timeout:
            policy.timeout_sec = float(self.connect_timeout)
        if self.connection_attempts:
            policy.retries = max(self.connection_attempts - 1, 0)
        return policy


@dataclass
class _HostBlock:
    patterns: list[str]
    options: dict[str, str | list[str]]
    is_match: bool = False


def _parse_int(value: str, option: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        logger.debug("Ignoring non-integer %s value %r", option, value)
        return None


class SSHConfig:
    """
    Parser for SSH config files.

    Matches OpenSSH behaviour:
    - Reads user config (~/.ssh/config) then system config (/etc/ssh/ssh_config)
    - First match wins for single-value options
    - Host patterns support * and ? wildcards and ! negation
    - Match blocks are skipped

    Usage:
        config = SSHConfig()
        host_config = config.lookup("myserver")

        config = SSHConfig(config_files=["/path/to/config"])
    """

    MULTI_VALUE_OPTIONS = frozenset({"identityfile"})

    def __init__(
        self,
        config_files: list[Path | str] | None = None,
        load_system_config: bool = True,
    ) -> None:
        self._host_blocks: list[_HostBlock] = []
        self._global_options: dict[str, str | list[str]] = {}

        if config_files is not None:
            for config_file in config_files:
                self._load_file(Path(config_file).expanduser())
        else:
            self._load_file(USER_CONFIG_PATH.expanduser())
            if load_system_config:
                self._load_file(SYSTEM_CONFIG_PATH)

    @classmethod
    def from_string(cls, content: str) -> "SSHConfig":
        """Build a config from literal ssh_config text."""
        config = cls(config_files=[])
        config._parse(content)
        return config

    def _load_file(self, config_path: Path) -> None:
        if not config_path.exists():
            return

        try:
            with open(config_path, "r", encoding="utf-8", errors="replace") as f:
                self._parse(f.read())
        except OSError as e:
            logger.debug("Skipping unreadable ssh config %s: %s", config_path, e)

    def _parse(self, content: str) -> None:
        current_block: _HostBlock | None = None

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            comment_idx = line.find(" #")
            if comment_idx >= 0:
                line = line[:comment_idx].rstrip()

            # Both "Option Value" and "Option=Value" are allowed
            if "=" in line and " " not in line.split("=", 1)[0]:
                option, value = line.split("=", 1)
            else:
                parts = line.split(None, 1)
                if len(parts) < 2:
                    continue
                option, value = parts

            option = option.strip().lower()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]

            if option in ("host", "match"):
                if current_block:
                    self._host_blocks.append(current_block)
                if option == "host":
                    current_block = _HostBlock(patterns=value.split(), options={})
                else:
                    current_block = _HostBlock(patterns=[], options={}, is_match=True)
                continue

            target = current_block.options if current_block else self._global_options
            self._set_option(target, option, value)

        if current_block:
            self._host_blocks.append(current_block)

    def _set_option(
        self,
        options: dict[str, str | list[str]],
        name: str,
        value: str,
    ) -> None:
        if name in self.MULTI_VALUE_OPTIONS:
            values = options.setdefault(name, [])
            assert isinstance(values, list)
            values.append(value)
        elif name not in options:
            options[name] = value

    @staticmethod
    def _matches_host_block(host: str, patterns: list[str]) -> bool:
        """
        A host must match at least one positive pattern and no negated one.
        """
        matched = False
        for pattern in patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(host.lower(), pattern[1:].lower()):
                    return False
            elif fnmatch.fnmatch(host.lower(), pattern.lower()):
                matched = True
        return matched

    @staticmethod
    def _expand_tokens(value: str, host: str, user: str | None, port: int) -> str:
        """Expand %h, %p, %r, %u, %n and %% tokens."""
        local_user = getpass.getuser()
        result = value.replace("%%", "\x00")
        result = result.replace("%h", host)
        result = result.replace("%p", str(port))
        result = result.replace("%n", host)
        result = result.replace("%r", user or local_user)
        result = result.replace("%u", local_user)
        return result.replace("\x00", "%")

    def lookup(self, host: str) -> SSHHostConfig:
        """
        Resolve settings for host (as typed by the user).

        Global options apply first, then matching Host blocks in file order.
        """
        merged: dict[str, str | list[str]] = {}

        blocks = [self._global_options] + [
            b.options for b in self._host_blocks
            if not b.is_match and self._matches_host_block(host, b.patterns)
        ]
        for options in blocks:
            for key, value in options.items():
                for v in (value if isinstance(value, list) else [value]):
                    self._set_option(merged, key, v)

        return self._build_host_config(merged, host)

    def _build_host_config(
        self,
        options: dict[str, str | list[str]],
        host: str,
    ) -> SSHHostConfig:
        config = SSHHostConfig()

        if "user" in options:
            config.user = str(options["user"])
        if "port" in options:
            config.port = _parse_int(str(options["port"]), "Port")
        port = config.get_port()

        if "hostname" in options:
            config.hostname = self._expand_tokens(
                str(options["hostname"]), host, config.user, port
            )

        if "connecttimeout" in options:
            config.connect_timeout = _parse_int(
                str(options["connecttimeout"]), "ConnectTimeout"
            )
        if "connectionattempts" in options:
            config.connection_attempts = _parse_int(
                str(options["connectionattempts"]), "ConnectionAttempts"
            )
        if "serveraliveinterval" in options:
            config.server_alive_interval = _parse_int(
                str(options["serveraliveinterval"]), "ServerAliveInterval"
            )

        if "stricthostkeychecking" in options:
            # accept-new trusts unknown hosts; changed keys are reported either way
            val = str(options["stricthostkeychecking"]).lower()
            config.strict_host_key_checking = val not in ("no", "off", "accept-new")

        if "userknownhostsfile" in options:
            first = str(options["userknownhostsfile"]).split()[0]
            if first.lower() != "none":
                config.user_known_hosts_file = Path(
                    self._expand_tokens(first, host, config.user, port)
                ).expanduser()

        identity_files = options.get("identityfile", [])
        if isinstance(identity_files, str):
            identity_files = [identity_files]
        for path_str in identity_files:
            expanded = self._expand_tokens(path_str, host, config.user, port)
            config.identity_file.append(Path(expanded).expanduser())

        return config

    def get_hosts(self) -> list[str]:
        """Explicitly named hosts (no wildcards or negations)."""
        return [
            pattern
            for block in self._host_blocks
            for pattern in block.patterns
            if "*" not in pattern and "?" not in pattern and not pattern.startswith("!")
        ]
