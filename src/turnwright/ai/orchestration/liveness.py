"""Heartbeat and watchdog timers for one turn.

Both timers are ``loop.call_later`` handles owned by the monitor instance,
so concurrent sessions never share timers. ``stop`` cancels both and is
safe to call on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

__all__ = ["LivenessMonitor"]

LOGGER = logging.getLogger(__name__)


class LivenessMonitor:
    """Detects a stalled stream and a zombie turn.

    The heartbeat fires ``on_hang(idle_seconds)`` when no activity was
    observed within ``heartbeat_seconds``; it is non-fatal and re-arms
    itself. The watchdog fires ``on_watchdog()`` when the turn has run for
    ``watchdog_seconds`` since start or the last ``reset_watchdog``; it fires
    at most once per arming.
    """

    def __init__(
        self,
        *,
        on_hang: Callable[[float], None],
        on_watchdog: Callable[[], None],
        heartbeat_seconds: float = 60.0,
        watchdog_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if heartbeat_seconds <= 0 or watchdog_seconds <= 0:
            raise ValueError("Liveness bounds must be positive")
        self._on_hang = on_hang
        self._on_watchdog = on_watchdog
        self._heartbeat_seconds = heartbeat_seconds
        self._watchdog_seconds = watchdog_seconds
        self._clock = clock
        self._loop: asyncio.AbstractEventLoop | None = None
        self._heartbeat: asyncio.TimerHandle | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._last_activity = 0.0
        self._armed_at = 0.0
        self._running = False
        self._fired = False
        self._hang_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def fired(self) -> bool:
        """Whether the watchdog fired during the current arming."""
        return self._fired

    @property
    def hang_count(self) -> int:
        return self._hang_count

    @property
    def idle_seconds(self) -> float:
        return max(0.0, self._clock() - self._last_activity)

    @property
    def has_pending_timers(self) -> bool:
        return self._heartbeat is not None or self._watchdog is not None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm both timers. Must be called from a running event loop."""
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._hang_count = 0
        now = self._clock()
        self._last_activity = now
        self._arm_heartbeat()
        self._arm_watchdog()
        LOGGER.debug(
            "Liveness monitor armed (heartbeat=%ss, watchdog=%ss)",
            self._heartbeat_seconds,
            self._watchdog_seconds,
        )

    def touch(self) -> None:
        """Record stream activity and restart the heartbeat."""
        self._last_activity = self._clock()
        if self._running:
            self._arm_heartbeat()

    def reset_watchdog(self) -> None:
        """Restart the watchdog bound and allow it to fire again."""
        if self._running:
            self._fired = False
            self._arm_watchdog()

    def stop(self) -> None:
        """Cancel both timers. Idempotent."""
        self._running = False
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_heartbeat(self) -> None:
        """Handle heartbeat expiry; also callable directly."""
        self._heartbeat = None
        if not self._running:
            return
        idle = self.idle_seconds
        self._hang_count += 1
        LOGGER.warning("No stream activity for %.1fs; possible reasoning hang", idle)
        try:
            self._on_hang(idle)
        except Exception:
            LOGGER.debug("Hang callback failed", exc_info=True)
        if self._running:
            self._arm_heartbeat()

    def expire_watchdog(self) -> None:
        """Handle watchdog expiry; a second expiry before re-arming is ignored."""
        self._watchdog = None
        if not self._running or self._fired:
            return
        self._fired = True
        held = self._clock() - self._armed_at
        LOGGER.error("Watchdog fired after %.1fs; recovering zombie turn", held)
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        self._on_watchdog()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _arm_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        assert self._loop is not None
        self._heartbeat = self._loop.call_later(self._heartbeat_seconds, self.expire_heartbeat)

    def _arm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
        assert self._loop is not None
        self._armed_at = self._clock()
        self._watchdog = self._loop.call_later(self._watchdog_seconds, self.expire_watchdog)
