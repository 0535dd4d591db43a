"""Session exclusivity lock for turns.

Only one turn may run per session at a time. The lock records who holds
it and since when, and can be force-released by the watchdog when the
holder is a zombie turn that never finished.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, AsyncIterator, Protocol

from ..errors import LockTimeoutFault

__all__ = ["LockState", "LockSession", "LockStateListener", "TurnLock"]

LOGGER = logging.getLogger(__name__)


class LockState(Enum):
    UNLOCKED = auto()
    LOCKED = auto()


class LockStateListener(Protocol):
    def __call__(self, state: LockState, session: LockSession | None) -> None:
        ...


@dataclass(slots=True)
class LockSession:
    """An active hold on the lock."""

    session_id: str
    owner: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def held_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.acquired_at).total_seconds()


class TurnLock:
    """Async exclusivity lock with owner tracking and forced release.

    ``release`` only releases the session that currently holds the lock, so
    a zombie turn finishing after a forced release cannot free the lock of
    the turn that replaced it.
    """

    def __init__(self, *, on_state_change: LockStateListener | None = None) -> None:
        self._lock = asyncio.Lock()
        self._active: LockSession | None = None
        self._on_state_change = on_state_change
        self._forced_releases = 0

    @property
    def state(self) -> LockState:
        return LockState.LOCKED if self._active is not None else LockState.UNLOCKED

    @property
    def is_locked(self) -> bool:
        return self._active is not None

    @property
    def active_session(self) -> LockSession | None:
        return self._active

    @property
    def forced_releases(self) -> int:
        return self._forced_releases

    async def acquire(
        self,
        owner: str,
        *,
        timeout: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LockSession:
        """Wait for the lock and return the new session.

        Raises:
            LockTimeoutFault: If ``timeout`` elapses first.
        """
        try:
            if timeout is None:
                await self._lock.acquire()
            else:
                await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError as exc:
            if self._lock.locked() and self._active is None:
                # Before Python 3.12 wait_for can time out after the inner acquire already succeeded.
                self._lock.release()
            holder = self._active.owner if self._active else None
            raise LockTimeoutFault(
                message=f"Timed out after {timeout}s waiting for the turn lock",
                details={"owner": owner, "holder": holder},
            ) from exc
        session = LockSession(
            session_id=uuid.uuid4().hex[:12],
            owner=owner,
            metadata=dict(metadata or {}),
        )
        self._active = session
        LOGGER.debug("Turn lock acquired by %s (session=%s)", owner, session.session_id)
        self._notify(LockState.LOCKED, session)
        return session

    def release(self, session: LockSession) -> bool:
        """Release ``session`` if it still holds the lock."""
        if self._active is not session:
            LOGGER.debug("Ignoring release of stale lock session %s", session.session_id)
            return False
        self._active = None
        self._lock.release()
        LOGGER.debug("Turn lock released by %s", session.owner)
        self._notify(LockState.UNLOCKED, None)
        return True

    def force_release(self, reason: str = "watchdog") -> LockSession | None:
        """Release the lock regardless of who holds it.

        Returns:
            The session that was evicted, or None if the lock was free.
        """
        session = self._active
        if session is None:
            return None
        self._active = None
        self._lock.release()
        self._forced_releases += 1
        LOGGER.error(
            "Turn lock force-released (%s); evicted %s after %.1fs",
            reason,
            session.owner,
            session.held_seconds,
        )
        self._notify(LockState.UNLOCKED, None)
        return session

    @asynccontextmanager
    async def hold(self, owner: str, *, timeout: float | None = None) -> AsyncIterator[LockSession]:
        session = await self.acquire(owner, timeout=timeout)
        try:
            yield session
        finally:
            self.release(session)

    def _notify(self, state: LockState, session: LockSession | None) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(state, session)
        except Exception:
            LOGGER.debug("Lock state listener failed", exc_info=True)
