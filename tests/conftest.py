"""
Pytest fixtures for sshlink tests.

Provides:
- Scripted engine and fake transport factories (no network, no server)
- Event capture fixture for asserting event sequences
- A session fixture wired to both, closed after every test
- A free local port with nothing listening, for refusal tests
"""
from __future__ import annotations

import socket
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest

from sshlink.config import ConnectPolicy
from sshlink.connection import SSHSession
from sshlink.events import EventCollector
from sshlink.keepalive import KeepaliveConfig
from sshlink.testing import FakeTransportFactory, ScriptedEngineFactory


@pytest.fixture
def event_collector() -> EventCollector:
    """Fresh EventCollector for capturing session events."""
    return EventCollector()


@pytest.fixture
def engines() -> ScriptedEngineFactory:
    """Engine factory accepting password 'secret' and offering both methods."""
    return ScriptedEngineFactory(password="secret")


@pytest.fixture
def transports() -> FakeTransportFactory:
    """Transport factory whose connects always succeed."""
    return FakeTransportFactory()


@pytest.fixture
def known_hosts_path(tmp_path: Path) -> Path:
    """Path for a known_hosts file that does not exist yet."""
    return tmp_path / "ssh" / "known_hosts"


@pytest.fixture
async def make_session(
    event_collector: EventCollector,
) -> AsyncGenerator[Callable[..., SSHSession], None]:
    """
    Factory for sessions wired to test doubles.

    Defaults to trust-on-first-use with no known_hosts file and slow
    timers, so tests only see the events they provoke. Every session built
    is closed at teardown.
    """
    sessions: list[SSHSession] = []

    def factory(
        engine_factory: ScriptedEngineFactory,
        transport_factory: FakeTransportFactory | None = None,
        **kwargs,
    ) -> SSHSession:
        kwargs.setdefault("strict_host_key_checking", False)
        kwargs.setdefault("keepalive", KeepaliveConfig(interval_sec=60.0, rate_interval_sec=60.0))
        kwargs.setdefault("connect_policy", ConnectPolicy(timeout_sec=5.0))
        kwargs.setdefault("event_collector", event_collector)
        session = SSHSession(
            engine_factory=engine_factory,
            transport_factory=transport_factory or FakeTransportFactory(),
            **kwargs,
        )
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        session.close()


@pytest.fixture
def closed_port() -> int:
    """A localhost port that was free a moment ago and has no listener."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
