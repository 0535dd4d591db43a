"""Tests for the heartbeat and watchdog timers."""

from __future__ import annotations

import asyncio

import pytest

from turnwright.ai.orchestration.liveness import LivenessMonitor


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hangs() -> list[float]:
    return []


@pytest.fixture
def watchdogs() -> list[bool]:
    return []


@pytest.fixture
def monitor(clock: FakeClock, hangs: list[float], watchdogs: list[bool]) -> LivenessMonitor:
    return LivenessMonitor(
        on_hang=hangs.append,
        on_watchdog=lambda: watchdogs.append(True),
        heartbeat_seconds=60.0,
        watchdog_seconds=120.0,
        clock=clock,
    )


class TestLivenessMonitor:
    """Tests for LivenessMonitor."""

    def test_bounds_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            LivenessMonitor(on_hang=lambda idle: None, on_watchdog=lambda: None, heartbeat_seconds=0)

    @pytest.mark.asyncio
    async def test_heartbeat_reports_idle_time_and_rearms(
        self, monitor: LivenessMonitor, clock: FakeClock, hangs: list[float]
    ) -> None:
        monitor.start()
        clock.now += 61
        monitor.expire_heartbeat()
        assert hangs == [61.0]
        assert monitor.hang_count == 1
        assert monitor.has_pending_timers
        clock.now += 60
        monitor.expire_heartbeat()
        assert hangs == [61.0, 121.0]
        monitor.stop()

    @pytest.mark.asyncio
    async def test_touch_resets_idle_time(self, monitor: LivenessMonitor, clock: FakeClock) -> None:
        monitor.start()
        clock.now += 30
        monitor.touch()
        assert monitor.idle_seconds == 0.0
        monitor.stop()

    @pytest.mark.asyncio
    async def test_watchdog_fires_once_per_arming(
        self, monitor: LivenessMonitor, watchdogs: list[bool]
    ) -> None:
        monitor.start()
        monitor.expire_watchdog()
        monitor.expire_watchdog()
        assert watchdogs == [True]
        assert monitor.fired

        monitor.reset_watchdog()
        assert not monitor.fired
        monitor.expire_watchdog()
        assert watchdogs == [True, True]
        monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_silences_expiry(
        self, monitor: LivenessMonitor, hangs: list[float], watchdogs: list[bool]
    ) -> None:
        monitor.start()
        monitor.stop()
        monitor.stop()
        assert not monitor.running
        assert not monitor.has_pending_timers
        monitor.expire_heartbeat()
        monitor.expire_watchdog()
        assert hangs == []
        assert watchdogs == []

    @pytest.mark.asyncio
    async def test_hang_callback_errors_are_contained(self, clock: FakeClock) -> None:
        def broken(idle: float) -> None:
            raise RuntimeError("sink down")

        monitor = LivenessMonitor(on_hang=broken, on_watchdog=lambda: None, clock=clock)
        monitor.start()
        monitor.expire_heartbeat()
        assert monitor.hang_count == 1
        monitor.stop()

    @pytest.mark.asyncio
    async def test_real_timers_fire(self) -> None:
        fired = asyncio.Event()
        hangs: list[float] = []
        monitor = LivenessMonitor(
            on_hang=hangs.append,
            on_watchdog=fired.set,
            heartbeat_seconds=0.01,
            watchdog_seconds=0.05,
        )
        monitor.start()
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        monitor.stop()
        assert hangs
        assert monitor.fired
