"""Tail per-loop transcript files and push new content to live subscribers.

For each subscribed loop two files are followed: the iterations JSONL stream
and the checklist document. When a file does not exist yet the transcripts
directory is watched instead, and the service switches over to the file as
soon as it is created. File events are debounced per channel; a timer firing
reads what changed and queues one message on the loop's outbox, which a
single task drains so subscribers see messages in order.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Hashable, Optional, Protocol

from loopdash import config
from loopdash.file_finder import find_file_by_loop_id, matches_loop_file, validate_loop_id
from loopdash.live.admission import AdmissionControl
from loopdash.live.registry import (
    CHECKLIST_CHANNEL,
    ITERATIONS_CHANNEL,
    ChannelState,
    TailChannel,
    TailRegistry,
    TailWatchEntry,
)
from loopdash.live.timers import DebounceTimer
from loopdash.live.watchers import Watcher, WatchfilesWatcher
from loopdash.models import Checklist, ChecklistMessage, ChecklistProgress, IterationsMessage
from loopdash.observability import record_broadcast, record_parse_failure, record_subscription, start_span
from loopdash.services.checklist import get_checklist_progress, load_checklist

logger = logging.getLogger("loopdash.live")

FileFinder = Callable[[str, str], Optional[Path]]
ChecklistLoader = Callable[[Path], tuple[Optional[Checklist], Optional[ChecklistProgress]]]


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(frozen=True)
class SubscribeResult:
    success: bool
    loop_id: str
    error: Optional[str] = None


def load_checklist_with_progress(path: Path) -> tuple[Optional[Checklist], Optional[ChecklistProgress]]:
    checklist = load_checklist(path)
    if checklist is None:
        return None, None
    return checklist, get_checklist_progress(checklist)


class TailBroadcastService:
    def __init__(
        self,
        registry: Optional[TailRegistry] = None,
        *,
        watcher: Optional[Watcher] = None,
        admission: Optional[AdmissionControl] = None,
        file_finder: Optional[FileFinder] = None,
        checklist_loader: Optional[ChecklistLoader] = None,
        watch_dir: Optional[Path] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.registry = registry if registry is not None else TailRegistry()
        self._watcher = watcher if watcher is not None else WatchfilesWatcher()
        self.admission = admission if admission is not None else AdmissionControl()
        self._find_file = file_finder if file_finder is not None else find_file_by_loop_id
        self._load_checklist = checklist_loader if checklist_loader is not None else load_checklist_with_progress
        self._watch_dir = watch_dir if watch_dir is not None else config.TRANSCRIPTS_DIR
        self._debounce = debounce_seconds if debounce_seconds is not None else config.DEBOUNCE_MS / 1000

    # ── subscriptions ───────────────────────────────────────────────

    def subscribe(self, loop_id: str, connection: Connection) -> SubscribeResult:
        """Start streaming ``loop_id`` to ``connection``.

        A rejected request leaves the registry and the watches untouched.
        """
        if not validate_loop_id(loop_id):
            record_subscription("invalid")
            return SubscribeResult(False, loop_id, f"Invalid loop_id format: {loop_id}")

        decision = self.admission.check(self.registry, connection, loop_id)
        if not decision.allowed:
            record_subscription("rejected")
            logger.info("Subscription to %s rejected: %s", loop_id, decision.reason)
            return SubscribeResult(False, loop_id, decision.reason)

        entry = self.registry.get(loop_id)
        if entry is None:
            entry = self.registry.create(loop_id)
            self._start_entry(entry)
        entry.subscribers.add(connection)
        record_subscription("accepted")
        return SubscribeResult(True, loop_id)

    def unsubscribe(self, loop_id: str, connection: Connection) -> bool:
        entry = self.registry.get(loop_id)
        if entry is None or connection not in entry.subscribers:
            return False
        entry.subscribers.discard(connection)
        if not entry.subscribers:
            self._teardown(entry)
        return True

    def unsubscribe_all(self, connection: Connection) -> int:
        loop_ids = self.registry.keys_for(connection)
        for loop_id in loop_ids:
            self.unsubscribe(loop_id, connection)
        return len(loop_ids)

    async def cleanup_all(self) -> None:
        """Tear down every entry and wait for the watch tasks to finish."""
        pending: list[Any] = []
        for entry in self.registry:
            pending.extend(self._teardown(entry))
        waits = [
            item if isinstance(item, asyncio.Task) else item.wait_closed()
            for item in pending
        ]
        if waits:
            await asyncio.gather(*waits, return_exceptions=True)
        logger.info("Live tail service stopped (%d watch resources released)", len(pending))

    def active_watch_count(self) -> int:
        return len(self.registry)

    def count_subscriptions(self, connection: Connection) -> int:
        return self.admission.count(self.registry, connection)

    def can_subscribe(self, connection: Connection) -> bool:
        return self.admission.can_subscribe(self.registry, connection)

    # ── entry lifecycle ─────────────────────────────────────────────

    def _start_entry(self, entry: TailWatchEntry) -> None:
        entry.pump = asyncio.create_task(self._pump(entry), name=f"loopdash-tail-{entry.loop_id}")
        for channel in entry.channels.values():
            self._arm_channel(entry, channel)
        logger.info("Started tailing loop %s", entry.loop_id)

    def _teardown(self, entry: TailWatchEntry) -> list[Any]:
        if entry.closed:
            return []
        entry.closed = True
        self.registry.remove(entry.loop_id)

        released: list[Any] = []
        for channel in entry.channels.values():
            handle = channel.close()
            if handle is not None:
                released.append(handle)
        if entry.pump is not None and entry.pump is not asyncio.current_task():
            entry.pump.cancel()
            released.append(entry.pump)
        logger.info("Stopped tailing loop %s", entry.loop_id)
        return released

    def _arm_channel(self, entry: TailWatchEntry, channel: TailChannel) -> None:
        path = self._find_file(entry.loop_id, channel.suffix)
        if path is not None:
            self._watch_file(entry, channel, path, offset=self._file_size(path))
        else:
            self._await_creation(entry, channel)

    def _await_creation(self, entry: TailWatchEntry, channel: TailChannel) -> None:
        directory = self._watch_dir
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create transcripts directory %s: %s", directory, exc)
        if not directory.is_dir():
            logger.warning("No %s file for loop %s and %s is unavailable", channel.suffix, entry.loop_id, directory)
            return

        channel.state = ChannelState.AWAITING_CREATION
        channel.resolved_path = None
        channel.last_read_offset = 0
        channel.watch = self._watcher.watch(
            directory,
            lambda paths: self._on_directory_change(entry, channel, paths),
        )
        logger.info("Waiting for %s file of loop %s in %s", channel.name, entry.loop_id, directory)

        # The file may have been created before the directory watch was armed.
        path = self._find_file(entry.loop_id, channel.suffix)
        if path is not None:
            self._switch_to_file(entry, channel, path)

    def _watch_file(self, entry: TailWatchEntry, channel: TailChannel, path: Path, *, offset: int) -> None:
        channel.state = ChannelState.WATCHING_FILE
        channel.resolved_path = path
        channel.last_read_offset = offset
        if channel.timer is None:
            channel.timer = DebounceTimer(self._debounce, lambda: self._flush_channel(entry, channel))
        channel.watch = self._watcher.watch(path, lambda paths: self._on_file_change(entry, channel))
        logger.info("Watching %s for loop %s", path, entry.loop_id)

    # ── change handling ─────────────────────────────────────────────

    def _on_directory_change(self, entry: TailWatchEntry, channel: TailChannel, paths: list[Path]) -> None:
        if entry.closed or channel.state is not ChannelState.AWAITING_CREATION:
            return
        created = next(
            (
                path for path in paths
                if matches_loop_file(path.name, entry.loop_id, channel.suffix) and path.is_file()
            ),
            None,
        )
        if created is None:
            return

        self._switch_to_file(entry, channel, created)

    def _switch_to_file(self, entry: TailWatchEntry, channel: TailChannel, path: Path) -> None:
        channel.close_watch()
        logger.info("%s file for loop %s appeared: %s", channel.name.capitalize(), entry.loop_id, path)
        self._watch_file(entry, channel, path, offset=0)
        channel.timer.trigger()

    def _on_file_change(self, entry: TailWatchEntry, channel: TailChannel) -> None:
        if entry.closed or channel.timer is None:
            return
        channel.timer.trigger()

    def _flush_channel(self, entry: TailWatchEntry, channel: TailChannel) -> None:
        if entry.closed or channel.resolved_path is None:
            return
        with start_span("loopdash.live.flush", {"loop_id": entry.loop_id, "channel": channel.name}) as span:
            if channel.name == ITERATIONS_CHANNEL:
                message = self._read_iterations(entry, channel)
            elif channel.name == CHECKLIST_CHANNEL:
                message = self._read_checklist(entry, channel)
            else:
                message = None
            if span is not None:
                span.set_attribute("queued", message is not None)
        if message is not None:
            entry.outbox.put_nowait(message)

    @staticmethod
    def _file_size(path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError:
            return 0

    def _read_iterations(self, entry: TailWatchEntry, channel: TailChannel) -> dict[str, Any] | None:
        """Read complete lines appended since the last read."""
        path = channel.resolved_path
        try:
            size = path.stat().st_size
            if size < channel.last_read_offset:
                logger.info("%s shrank, reading from the start", path)
                channel.last_read_offset = 0
            if size == channel.last_read_offset:
                return None
            with path.open("rb") as handle:
                handle.seek(channel.last_read_offset)
                chunk = handle.read(size - channel.last_read_offset)
        except OSError as exc:
            logger.error("Failed to read %s: %s", path, exc)
            return None

        # A trailing partial line is left for the next read.
        complete = chunk[: chunk.rfind(b"\n") + 1]
        if not complete:
            return None
        channel.last_read_offset += len(complete)

        iterations: list[Any] = []
        for line in complete.decode("utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                iterations.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed iteration line for %s: %s", entry.loop_id, line[:50])
                record_parse_failure("iterations")
        if not iterations:
            return None
        return IterationsMessage(loopId=entry.loop_id, iterations=iterations).model_dump(mode="json")

    def _read_checklist(self, entry: TailWatchEntry, channel: TailChannel) -> dict[str, Any] | None:
        checklist, progress = self._load_checklist(channel.resolved_path)
        if checklist is None:
            logger.debug("Checklist for %s not readable yet", entry.loop_id)
            return None
        return ChecklistMessage(loopId=entry.loop_id, checklist=checklist, progress=progress).model_dump(mode="json")

    # ── delivery ────────────────────────────────────────────────────

    async def _pump(self, entry: TailWatchEntry) -> None:
        while not entry.closed:
            message = await entry.outbox.get()
            await self._deliver(entry, message)

    async def _deliver(self, entry: TailWatchEntry, message: dict[str, Any]) -> None:
        delivered = 0
        failed: list[Hashable] = []
        for connection in list(entry.subscribers):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.info("Dropping subscriber of %s after failed send: %s", entry.loop_id, exc)
                failed.append(connection)
        record_broadcast(message.get("type", "unknown"), delivered, len(failed))

        for connection in failed:
            entry.subscribers.discard(connection)
        if failed and not entry.subscribers:
            self._teardown(entry)
