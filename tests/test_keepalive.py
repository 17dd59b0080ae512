"""
Tests for keep-alive configuration, periodic timers and traffic counting.

Tests:
1. KeepaliveConfig validation and asyncssh options
2. PeriodicTimer fires, stops and survives callback errors
3. TrafficCounter samples and resets
"""
from __future__ import annotations

import asyncio

import pytest

from sshlink.keepalive import KeepaliveConfig, PeriodicTimer, TrafficCounter


class TestKeepaliveConfig:
    """Tests for KeepaliveConfig dataclass validation."""

    def test_default_values(self) -> None:
        config = KeepaliveConfig()

        assert config.interval_sec == 10.0
        assert config.max_count == 3
        assert config.rate_interval_sec == 1.0

    def test_total_timeout(self) -> None:
        config = KeepaliveConfig(interval_sec=5.0, max_count=4)

        assert config.total_timeout_sec == 20.0

    def test_to_asyncssh_options(self) -> None:
        config = KeepaliveConfig(interval_sec=15.0, max_count=2)

        assert config.to_asyncssh_options() == {
            "keepalive_interval": 15.0,
            "keepalive_count_max": 2,
        }

    def test_max_count_must_be_positive(self) -> None:
        with pytest.raises(AssertionError, match="max_count must be positive"):
            KeepaliveConfig(max_count=0)

    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(AssertionError, match="interval_sec must be positive"):
            KeepaliveConfig(interval_sec=0)

        with pytest.raises(AssertionError, match="interval_sec must be positive"):
            KeepaliveConfig(interval_sec=-1)

    def test_rate_interval_must_be_positive(self) -> None:
        with pytest.raises(AssertionError, match="rate_interval_sec must be positive"):
            KeepaliveConfig(rate_interval_sec=0)


class TestPeriodicTimer:
    """PeriodicTimer on the running loop."""

    def test_period_must_be_positive(self) -> None:
        with pytest.raises(AssertionError):
            PeriodicTimer(0, lambda: None)

    @pytest.mark.asyncio
    async def test_fires_repeatedly(self) -> None:
        fired: list[int] = []
        timer = PeriodicTimer(0.01, lambda: fired.append(1), name="test")

        timer.start()
        await asyncio.sleep(0.1)
        timer.stop()

        assert len(fired) >= 3
        assert timer.ticks == len(fired)
        assert not timer.is_running

    @pytest.mark.asyncio
    async def test_stop_prevents_further_ticks(self) -> None:
        fired: list[int] = []
        timer = PeriodicTimer(0.01, lambda: fired.append(1))

        timer.start()
        assert timer.is_running
        timer.stop()
        timer.stop()
        await asyncio.sleep(0.05)

        assert fired == []

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_timer(self) -> None:
        calls: list[int] = []

        def flaky() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")

        timer = PeriodicTimer(0.01, flaky, name="flaky")
        timer.start()
        await asyncio.sleep(0.1)
        timer.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_restart_resets_ticks(self) -> None:
        timer = PeriodicTimer(0.01, lambda: None)
        timer.start()
        await asyncio.sleep(0.05)
        assert timer.ticks > 0

        timer.start()

        assert timer.ticks == 0
        assert timer.is_running
        timer.stop()


class TestTrafficCounter:
    def test_sample_resets(self) -> None:
        counter = TrafficCounter()
        counter.add_sent(100)
        counter.add_sent(20)
        counter.add_received(7)

        assert counter.sample() == (120, 7)
        assert counter.sample() == (0, 0)
