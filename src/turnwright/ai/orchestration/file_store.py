"""Transactional file store used to undo a turn's file effects.

Every mutating tool backs up its target path before the first write of a
backup epoch. On failure the engine calls ``rollback_all`` to restore
every touched path; on success it calls ``clear_backups`` to accept the
changes.

All persistence, including backup and rollback bookkeeping, is funnelled
through a ``SerialWriteQueue`` so at most one operation is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar, runtime_checkable

from ..errors import ErrorCode, FileStoreError
from .types import CancellationToken

__all__ = [
    "FileProgress",
    "ProgressCallback",
    "SerialWriteQueue",
    "TransactionalFileStore",
    "BaseFileStore",
    "LocalFileStore",
    "InMemoryFileStore",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class _Missing:
    """Backup marker for a path that did not exist when it was backed up."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "<did not exist>"


_MISSING = _Missing()


# -----------------------------------------------------------------------------
# Progress
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FileProgress:
    path: str
    bytes_written: int
    total_bytes: int

    @property
    def done(self) -> bool:
        return self.bytes_written >= self.total_bytes


ProgressCallback = Callable[[FileProgress], None]


# -----------------------------------------------------------------------------
# Serial Write Queue
# -----------------------------------------------------------------------------


class SerialWriteQueue:
    """FIFO queue allowing one in-flight persistence operation.

    Each submitted operation waits for the one submitted before it. A caller
    cancelled while waiting still keeps its place in the chain so the
    operation after it cannot start early. Once started, an operation runs
    to completion even if its caller is cancelled, and the slot stays held
    until it does.
    """

    def __init__(self) -> None:
        self._tail: asyncio.Future[None] | None = None
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        previous = self._tail
        done: asyncio.Future[None] = loop.create_future()
        self._tail = done
        self._pending += 1
        work: asyncio.Future[T] | None = None
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            work = asyncio.ensure_future(operation())
            work.add_done_callback(lambda _work: self._settle(done, _work))
            return await asyncio.shield(work)
        finally:
            if work is None:
                self._pending -= 1
                if previous is not None and not previous.done():
                    previous.add_done_callback(lambda _future: self._settle(done))
                else:
                    self._settle(done)

    def _settle(self, done: asyncio.Future[None], work: asyncio.Future[Any] | None = None) -> None:
        if work is not None:
            self._pending -= 1
            # Retrieve the outcome so an abandoned operation's error is not reported as unhandled.
            if not work.cancelled() and work.exception() is not None:
                LOGGER.debug("Write queue operation failed: %r", work.exception())
        if not done.done():
            done.set_result(None)
        if self._tail is done:
            self._tail = None


# -----------------------------------------------------------------------------
# Port
# -----------------------------------------------------------------------------


@runtime_checkable
class TransactionalFileStore(Protocol):
    """Capability port for file access with first-touch backup and rollback."""

    kind: str

    async def read_file(self, path: str, *, cancel_token: CancellationToken | None = None) -> str:
        ...

    async def write_file(
        self,
        path: str,
        content: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        ...

    async def append_file(
        self,
        path: str,
        content: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        ...

    async def delete_file(
        self,
        path: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        ...

    async def backup_file(self, path: str) -> bool:
        ...

    async def restore_file(self, path: str) -> bool:
        ...

    async def rollback_all(self) -> list[str]:
        ...

    def clear_backups(self) -> None:
        ...

    def has_backup(self, path: str) -> bool:
        ...

    @property
    def backed_up_paths(self) -> tuple[str, ...]:
        ...


# -----------------------------------------------------------------------------
# Shared Backup Bookkeeping
# -----------------------------------------------------------------------------


class BaseFileStore:
    """Backup bookkeeping shared by every backend.

    Subclasses implement the storage primitives ``_normalize``, ``_exists``,
    ``_read``, ``_write`` and ``_remove``; everything here is storage
    agnostic.
    """

    kind = "base"

    def __init__(self, *, queue: SerialWriteQueue | None = None) -> None:
        self._queue = queue or SerialWriteQueue()
        self._backups: dict[str, str | _Missing] = {}

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    def _normalize(self, path: str) -> str:
        raise NotImplementedError

    async def _exists(self, key: str) -> bool:
        raise NotImplementedError

    async def _read(self, key: str) -> str:
        raise NotImplementedError

    async def _write(self, key: str, content: str, *, append: bool = False) -> None:
        raise NotImplementedError

    async def _remove(self, key: str) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    async def read_file(self, path: str, *, cancel_token: CancellationToken | None = None) -> str:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        key = self._normalize(path)
        if not await self._exists(key):
            raise FileStoreError(message=f"File not found: {path}", path=path)
        return await self._read(key)

    async def write_file(
        self,
        path: str,
        content: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        await self._mutate(path, content, append=False, cancel_token=cancel_token, on_progress=on_progress)

    async def append_file(
        self,
        path: str,
        content: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        await self._mutate(path, content, append=True, cancel_token=cancel_token, on_progress=on_progress)

    async def delete_file(
        self,
        path: str,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        key = self._normalize(path)

        async def _delete() -> None:
            if not await self._exists(key):
                raise FileStoreError(message=f"File not found: {path}", path=path)
            await self._remove(key)

        await self._queue.run(_delete)
        if on_progress is not None:
            on_progress(FileProgress(path, 0, 0))

    async def _mutate(
        self,
        path: str,
        content: str,
        *,
        append: bool,
        cancel_token: CancellationToken | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        key = self._normalize(path)
        total = len(content.encode("utf-8"))
        if on_progress is not None:
            on_progress(FileProgress(path, 0, total))
        await self._queue.run(lambda: self._write(key, content, append=append))
        if on_progress is not None:
            on_progress(FileProgress(path, total, total))

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    @property
    def backed_up_paths(self) -> tuple[str, ...]:
        return tuple(self._backups)

    def has_backup(self, path: str) -> bool:
        return self._normalize(path) in self._backups

    async def backup_file(self, path: str) -> bool:
        """Record the current content of ``path``.

        Returns:
            True if a new record was created, False if one already existed.
        """
        key = self._normalize(path)

        async def _backup() -> bool:
            if key in self._backups:
                return False
            if await self._exists(key):
                self._backups[key] = await self._read(key)
            else:
                self._backups[key] = _MISSING
            LOGGER.debug("Backed up %s (%s)", key, self.kind)
            return True

        return await self._queue.run(_backup)

    async def restore_file(self, path: str) -> bool:
        """Revert one path to its backup and drop the record."""
        key = self._normalize(path)
        return await self._queue.run(lambda: self._restore_key(key))

    async def rollback_all(self) -> list[str]:
        """Restore every backed-up path, then clear all records.

        A path that fails to restore is logged and skipped so the remaining
        paths are still restored.

        Returns:
            The paths that were restored.
        """

        async def _rollback() -> list[str]:
            restored: list[str] = []
            for key in list(self._backups):
                try:
                    if await self._restore_key(key):
                        restored.append(key)
                except Exception:
                    LOGGER.exception("Failed to restore %s during rollback", key)
            self._backups.clear()
            return restored

        restored = await self._queue.run(_rollback)
        if restored:
            LOGGER.info("Rolled back %s file(s): %s", len(restored), ", ".join(restored))
        return restored

    def clear_backups(self) -> None:
        if self._backups:
            LOGGER.debug("Clearing %s backup record(s)", len(self._backups))
        self._backups.clear()

    async def _restore_key(self, key: str) -> bool:
        if key not in self._backups:
            return False
        original = self._backups[key]
        if isinstance(original, _Missing):
            if await self._exists(key):
                await self._remove(key)
        else:
            await self._write(key, original)
        del self._backups[key]
        return True


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------


class LocalFileStore(BaseFileStore):
    """Direct filesystem backend rooted at a workspace directory.

    Relative paths resolve against ``root``; paths escaping it are rejected.
    Blocking I/O runs in worker threads.
    """

    kind = "local"

    def __init__(self, root: str | os.PathLike[str], *, queue: SerialWriteQueue | None = None) -> None:
        super().__init__(queue=queue)
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _normalize(self, path: str) -> str:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self._root / candidate
        resolved = candidate.resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise FileStoreError(
                error_code=ErrorCode.PATH_OUTSIDE_WORKSPACE,
                message=f"Path '{path}' is outside the workspace {self._root}",
                path=path,
            )
        return str(resolved)

    async def _exists(self, key: str) -> bool:
        return await asyncio.to_thread(os.path.isfile, key)

    async def _read(self, key: str) -> str:
        return await asyncio.to_thread(Path(key).read_text, encoding="utf-8")

    async def _write(self, key: str, content: str, *, append: bool = False) -> None:
        await asyncio.to_thread(_write_text, Path(key), content, append)

    async def _remove(self, key: str) -> None:
        await asyncio.to_thread(os.remove, key)


def _write_text(path: Path, content: str, append: bool) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a" if append else "w", encoding="utf-8", newline="") as handle:
        handle.write(content)


class InMemoryFileStore(BaseFileStore):
    """Workspace-style backend holding documents in a mapping."""

    kind = "memory"

    def __init__(
        self,
        initial: Mapping[str, str] | None = None,
        *,
        queue: SerialWriteQueue | None = None,
    ) -> None:
        super().__init__(queue=queue)
        self._files: dict[str, str] = {}
        for path, content in (initial or {}).items():
            self._files[self._normalize(path)] = content

    def snapshot(self) -> dict[str, str]:
        return dict(self._files)

    def _normalize(self, path: str) -> str:
        parts: list[str] = []
        for part in PurePosixPath(path.replace("\\", "/")).parts:
            if part in ("/", "."):
                continue
            if part == "..":
                if not parts:
                    raise FileStoreError(
                        error_code=ErrorCode.PATH_OUTSIDE_WORKSPACE,
                        message=f"Path '{path}' is outside the workspace",
                        path=path,
                    )
                parts.pop()
                continue
            parts.append(part)
        if not parts:
            raise FileStoreError(message=f"Invalid path: {path!r}", path=path)
        return "/".join(parts)

    async def _exists(self, key: str) -> bool:
        return key in self._files

    async def _read(self, key: str) -> str:
        return self._files[key]

    async def _write(self, key: str, content: str, *, append: bool = False) -> None:
        if append:
            self._files[key] = self._files.get(key, "") + content
        else:
            self._files[key] = content

    async def _remove(self, key: str) -> None:
        self._files.pop(key, None)
