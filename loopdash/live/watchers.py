"""Filesystem watch backend for live tailing, built on watchfiles.

Each ``watch()`` call runs its own non-recursive ``awatch`` task and reports
changed paths to a plain callback on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Protocol

from watchfiles import awatch

logger = logging.getLogger("loopdash.watcher")

ChangeCallback = Callable[[list[Path]], None]


class WatchHandle(Protocol):
    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


class Watcher(Protocol):
    def watch(self, path: Path, on_change: ChangeCallback) -> WatchHandle: ...


class WatchfilesHandle:
    """One running ``awatch`` task; ``close()`` is idempotent."""

    def __init__(self, path: Path, task: asyncio.Task, stop_event: asyncio.Event):
        self.path = path
        self._task = task
        self._stop_event = stop_event

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()

    def close(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self._task.cancel()

    async def wait_closed(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class WatchfilesWatcher:
    """Watch single files or directories with ``watchfiles.awatch``."""

    def __init__(self, debounce_ms: int = 50, step_ms: int = 25):
        self._debounce_ms = debounce_ms
        self._step_ms = step_ms

    def watch(self, path: Path, on_change: ChangeCallback) -> WatchfilesHandle:
        stop_event = asyncio.Event()
        task = asyncio.create_task(self._watch_loop(path, on_change, stop_event))
        logger.debug("Watching %s", path)
        return WatchfilesHandle(path, task, stop_event)

    async def _watch_loop(self, path: Path, on_change: ChangeCallback, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(
                path,
                stop_event=stop_event,
                watch_filter=None,
                recursive=False,
                debounce=self._debounce_ms,
                step=self._step_ms,
            ):
                changed = [Path(raw_path) for _, raw_path in changes]
                try:
                    on_change(changed)
                except Exception:  # noqa: BLE001
                    logger.exception("Change handler failed for %s", path)
        except asyncio.CancelledError:
            logger.debug("Watch on %s cancelled", path)
        except Exception as exc:  # noqa: BLE001
            logger.error("Watcher for %s stopped: %s", path, exc)
        finally:
            stop_event.set()
