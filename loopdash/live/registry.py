"""Per-loop tail state: which files are watched, how far they were read, who listens."""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Hashable, Iterator, Optional

from loopdash.file_finder import CHECKLIST_SUFFIX, ITERATIONS_SUFFIX
from loopdash.live.timers import DebounceTimer
from loopdash.live.watchers import WatchHandle

ITERATIONS_CHANNEL = "iterations"
CHECKLIST_CHANNEL = "checklist"

CHANNEL_SUFFIXES = {
    ITERATIONS_CHANNEL: ITERATIONS_SUFFIX,
    CHECKLIST_CHANNEL: CHECKLIST_SUFFIX,
}


class ChannelState(str, enum.Enum):
    AWAITING_CREATION = "awaiting_creation"
    WATCHING_FILE = "watching_file"


@dataclass
class TailChannel:
    """One watched file of a loop.

    Starts out watching the transcripts directory until the file appears,
    then watches the file itself. ``last_read_offset`` only grows for a given
    file; it goes back to 0 only when the file shrinks.
    """

    name: str
    suffix: str
    state: ChannelState = ChannelState.AWAITING_CREATION
    resolved_path: Optional[Path] = None
    last_read_offset: int = 0
    watch: Optional[WatchHandle] = None
    timer: Optional[DebounceTimer] = None

    def close_watch(self) -> Optional[WatchHandle]:
        handle, self.watch = self.watch, None
        if handle is not None:
            handle.close()
        return handle

    def close(self) -> Optional[WatchHandle]:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        return self.close_watch()


def _default_channels() -> dict[str, TailChannel]:
    return {name: TailChannel(name=name, suffix=suffix) for name, suffix in CHANNEL_SUFFIXES.items()}


@dataclass
class TailWatchEntry:
    """Everything held for one loop key while it has subscribers."""

    loop_id: str
    subscribers: set[Hashable] = field(default_factory=set)
    channels: dict[str, TailChannel] = field(default_factory=_default_channels)
    outbox: "asyncio.Queue[dict[str, Any]]" = field(default_factory=asyncio.Queue)
    pump: Optional[asyncio.Task] = None
    closed: bool = False


class TailRegistry:
    """Map of loop key to ``TailWatchEntry``.

    An entry is present exactly while it has at least one subscriber; the
    broadcast service owning the registry enforces that.
    """

    def __init__(self):
        self._entries: dict[str, TailWatchEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, loop_id: str) -> bool:
        return loop_id in self._entries

    def __iter__(self) -> Iterator[TailWatchEntry]:
        return iter(list(self._entries.values()))

    def get(self, loop_id: str) -> TailWatchEntry | None:
        return self._entries.get(loop_id)

    def create(self, loop_id: str) -> TailWatchEntry:
        if loop_id in self._entries:
            raise KeyError(f"Tail entry already exists for {loop_id}")
        entry = TailWatchEntry(loop_id=loop_id)
        self._entries[loop_id] = entry
        return entry

    def remove(self, loop_id: str) -> TailWatchEntry | None:
        return self._entries.pop(loop_id, None)

    def keys_for(self, connection: Hashable) -> set[str]:
        return {loop_id for loop_id, entry in self._entries.items() if connection in entry.subscribers}
