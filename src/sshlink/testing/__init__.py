"""
Testing utilities for sshlink.

Provides scripted engine and transport doubles so the session state
machine can be exercised without a network or an SSH server, and an
in-process asyncssh server for end-to-end tests.
"""
from sshlink.testing.fakes import (
    CONNECT,
    DEFAULT_HOST_IDENTITY,
    HANG,
    REFUSE,
    FakeTransport,
    FakeTransportFactory,
    ScriptedEngine,
    ScriptedEngineFactory,
    make_host_key_blob,
)
from sshlink.testing.server import LocalSSHServer, ServerConfig

__all__ = [
    "CONNECT",
    "DEFAULT_HOST_IDENTITY",
    "HANG",
    "REFUSE",
    "FakeTransport",
    "FakeTransportFactory",
    "LocalSSHServer",
    "ScriptedEngine",
    "ScriptedEngineFactory",
    "ServerConfig",
    "make_host_key_blob",
]
