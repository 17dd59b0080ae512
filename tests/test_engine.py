"""
Tests for the protocol engine contract and the asyncssh-backed engine.

Tests verify:
- engine_init() initialises once per process
- EngineResult helpers
- AsyncSSHEngine polling behaviour before and after a failed handshake
- asyncssh connect options, keep-alive included
- free() is idempotent and the engine refuses use afterwards
"""
from __future__ import annotations

import asyncio
import socket

import pytest

from sshlink.engine import (
    CODE_CONNECTION_LOST,
    CODE_NONE,
    SUCCESS,
    SUSPENDED,
    AsyncSSHEngine,
    EngineResult,
    EngineStatus,
    engine_init,
    engine_initialised,
    failure,
)
from sshlink.keepalive import KeepaliveConfig


class TestEngineInit:
    def test_once_per_process(self) -> None:
        engine_init()

        assert engine_initialised()
        assert engine_init() is False


class TestEngineResult:
    def test_suspended(self) -> None:
        assert SUSPENDED.suspended
        assert not SUCCESS.suspended

    def test_failure_carries_code(self) -> None:
        result = failure(14)

        assert result.status == EngineStatus.FAILURE
        assert result.code == 14
        assert not result.suspended

    def test_value(self) -> None:
        result = EngineResult(EngineStatus.SUCCESS, ["publickey"])
        assert result.value == ["publickey"]


class TestAsyncSSHEngine:
    """Behaviour that needs no SSH server."""

    def test_no_identity_before_handshake(self) -> None:
        engine = AsyncSSHEngine()

        assert engine.host_identity() is None
        assert engine.connection is None
        assert engine.last_error() == (CODE_NONE, "")

    def test_auth_suspends_without_a_request(self) -> None:
        engine = AsyncSSHEngine()

        assert engine.authenticate_with_password("alice", "secret").suspended

    def test_auth_fails_after_disconnect(self) -> None:
        engine = AsyncSSHEngine()
        engine.disconnect()

        result = engine.authenticate_with_password("alice", "secret")

        assert result.status == EngineStatus.FAILURE
        assert result.code == CODE_CONNECTION_LOST

    def test_keepalive_without_connection_is_noop(self) -> None:
        AsyncSSHEngine().send_keep_alive()

    def test_connect_options_carry_keepalive(self) -> None:
        engine = AsyncSSHEngine(keepalive=KeepaliveConfig(interval_sec=7.0, max_count=2))

        options = engine.connect_options("alice")

        assert options["username"] == "alice"
        assert options["keepalive_interval"] == 7.0
        assert options["keepalive_count_max"] == 2
        assert options["known_hosts"] == ()
        assert options["client_keys"] == []
        assert options["config"] is None

    def test_method_listing_waits_for_the_server(self) -> None:
        engine = AsyncSSHEngine()

        assert engine.list_auth_methods("alice").suspended

        engine.disconnect()
        result = engine.list_auth_methods("alice")

        assert result.status == EngineStatus.FAILURE
        assert result.code == CODE_CONNECTION_LOST

    def test_free_is_idempotent(self) -> None:
        engine = AsyncSSHEngine()

        engine.free()
        engine.free()

        a, b = socket.socketpair()
        try:
            with pytest.raises(AssertionError):
                engine.begin_handshake(a, "example.com", 22, "alice")
        finally:
            a.close()
            b.close()

    @pytest.mark.asyncio
    async def test_handshake_fails_when_peer_closes(self) -> None:
        """A peer that hangs up before the version exchange fails the handshake."""
        woken = asyncio.Event()
        engine = AsyncSSHEngine(woken.set)
        ours, theirs = socket.socketpair()
        ours.setblocking(False)

        try:
            assert engine.begin_handshake(ours, "example.com", 22, "alice").suspended
            theirs.close()

            result = SUSPENDED
            for _ in range(100):
                await asyncio.wait_for(woken.wait(), timeout=5.0)
                woken.clear()
                result = engine.begin_handshake(ours, "example.com", 22, "alice")
                if not result.suspended:
                    break

            assert result.status == EngineStatus.FAILURE
            assert engine.host_identity() is None
            assert engine.last_error()[0] != CODE_NONE
        finally:
            engine.free()
