"""Mutations of the sessions.jsonl event log: rotation, deletion, archive and cancel.

The loop hooks only ever append to the log. Anything that removes lines
rewrites the whole file to a temporary sibling and renames it over the
original, so a concurrent reader sees either the old or the new file, never a
partial one. Lines this module cannot decode are carried over verbatim.
"""
from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from loopdash import config
from loopdash.date_utils import elapsed_seconds, format_utc, iso_to_epoch, utc_now
from loopdash.models import CompletionEvent, Session, StartEvent
from loopdash.observability import record_rotation, start_span
from loopdash.parsers.events import AnyLogEvent, parse_log_line
from loopdash.sessions import (
    StateReader,
    group_entries,
    is_group_active,
    read_state_snapshot,
    reconstruct_sessions,
)

logger = logging.getLogger("loopdash.log_store")

_REWRITE_ATTEMPTS = 3
_ARCHIVED_OUTCOMES = {"orphaned", "archived"}


class LogIntegrityError(RuntimeError):
    """A computed rewrite would lose an active loop's record or empty the log."""


@dataclass
class RotationResult:
    purged_count: int = 0
    refused: bool = False
    reason: str = ""


@dataclass
class MutationResult:
    success: bool
    loop_id: str
    message: str
    error: Optional[str] = None  # NOT_FOUND | INVALID_STATE | CANCEL_FAILED | WRITE_FAILED
    actual_status: Optional[str] = None
    expected_status: Optional[str] = None


_ParsedLine = tuple[str, Optional[AnyLogEvent]]
_RewritePlan = Callable[[list[_ParsedLine]], Optional[tuple[list[str], object]]]


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve(strict=False).relative_to(root.resolve(strict=False))
        return True
    except ValueError:
        return False


class EventLogStore:
    """Owns reads and writes of one event log file."""

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        state_reader: StateReader = read_state_snapshot,
        clock: Callable[[], datetime] = utc_now,
        loops_dir: Optional[Path] = None,
    ):
        self.path = Path(path) if path is not None else config.LOG_FILE
        self._state_reader = state_reader
        self._clock = clock
        self._loops_dir = loops_dir if loops_dir is not None else config.LOOPS_DIR

    # ── reads ───────────────────────────────────────────────────────

    def read_lines(self) -> list[str]:
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def _parse(self, lines: list[str]) -> list[_ParsedLine]:
        return [(raw, parse_log_line(raw)) for raw in lines]

    def entry_count(self) -> int:
        return sum(1 for line in self.read_lines() if line.strip())

    def sessions(self) -> list[Session]:
        events = [event for _, event in self._parse(self.read_lines()) if event is not None]
        return reconstruct_sessions(events, now=self._clock(), state_reader=self._state_reader)

    def find_session(self, loop_id: str) -> Session | None:
        for session in self.sessions():
            if session.loop_id == loop_id:
                return session
        return None

    # ── low-level writes ────────────────────────────────────────────

    def _signature(self) -> tuple[int, int] | None:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return st.st_size, st.st_mtime_ns

    def _replace_if_unchanged(self, lines: list[str], before: tuple[int, int] | None) -> bool:
        """Write ``lines`` to a temp sibling and rename it over the log.

        Returns False without touching the log if it changed since ``before``.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = "".join(f"{line}\n" for line in lines)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            if before is not None:
                os.chmod(tmp_path, stat.S_IMODE(self.path.stat().st_mode))
            if self._signature() != before:
                tmp_path.unlink(missing_ok=True)
                return False
            os.replace(tmp_path, self.path)
            return True
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def _rewrite(self, plan: _RewritePlan) -> tuple[bool, object]:
        """Apply ``plan`` to the current lines and atomically swap in the result.

        ``plan`` returns ``(new_lines, detail)`` or None for "nothing to do".
        The plan is recomputed if an append lands between read and swap.
        """
        for _ in range(_REWRITE_ATTEMPTS):
            before = self._signature()
            planned = plan(self._parse(self.read_lines()))
            if planned is None:
                return False, None
            new_lines, detail = planned
            if self._replace_if_unchanged(new_lines, before):
                return True, detail
            logger.info("Event log %s changed during rewrite, retrying", self.path)
        raise OSError(f"Event log {self.path} kept changing during rewrite")

    def append_event(self, event: StartEvent | CompletionEvent) -> None:
        """Append one entry as a single JSON line followed by a newline."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
        prefix = ""
        try:
            with self.path.open("rb") as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() > 0:
                    handle.seek(-1, os.SEEK_END)
                    if handle.read(1) != b"\n":
                        prefix = "\n"
        except FileNotFoundError:
            pass
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{line}\n")

    # ── rotation ────────────────────────────────────────────────────

    def rotate(self, max_entries: int) -> RotationResult:
        """Purge the oldest fully completed loops until at most ``max_entries`` remain.

        Active loops and undecodable lines are never removed, and a non-empty
        log is never emptied, so the result may stay above ``max_entries``.
        """
        max_entries = max(0, int(max_entries))
        with start_span("loopdash.log.rotate", {"log.path": str(self.path), "max_entries": max_entries}) as span:
            result = self._rotate(max_entries)
            if span is not None:
                span.set_attribute("purged_count", result.purged_count)
                span.set_attribute("refused", result.refused)
        return result

    def _rotate(self, max_entries: int) -> RotationResult:
        try:
            written, purged = self._rewrite(lambda parsed: self._plan_rotation(parsed, max_entries))
        except LogIntegrityError as exc:
            logger.error("Refusing to rotate %s: %s", self.path, exc)
            record_rotation(0, refused=True)
            return RotationResult(purged_count=0, refused=True, reason=str(exc))
        except OSError as exc:
            logger.error("Failed to rotate %s: %s", self.path, exc)
            return RotationResult(purged_count=0, refused=True, reason=str(exc))

        if not written:
            return RotationResult()
        logger.info("Rotated %s: purged %d entries", self.path, purged)
        record_rotation(purged, refused=False)
        return RotationResult(purged_count=purged)

    def _plan_rotation(self, parsed: list[_ParsedLine], max_entries: int) -> tuple[list[str], int] | None:
        entry_count = sum(1 for raw, _ in parsed if raw.strip())
        if entry_count <= max_entries:
            return None

        groups = group_entries(event for _, event in parsed if event is not None)
        line_counts: dict[str, int] = {}
        for _, event in parsed:
            if event is not None:
                line_counts[event.key] = line_counts.get(event.key, 0) + 1

        active_keys = {
            key for key, group in groups.items()
            if group.start is not None and is_group_active(group.start, group.completion)
        }
        candidates = [
            key for key, group in groups.items()
            if group.start is not None and group.completion is not None and key not in active_keys
        ]
        candidates.sort(key=lambda key: iso_to_epoch(groups[key].start.started_at))

        remaining = entry_count
        purge: set[str] = set()
        for key in candidates:
            if remaining <= max_entries:
                break
            count = line_counts.get(key, 0)
            if remaining - count < 1:
                break
            purge.add(key)
            remaining -= count

        if not purge:
            return None

        new_lines = [raw for raw, event in parsed if event is None or event.key not in purge]
        self._check_rotation_safety(parsed, new_lines, active_keys)
        return new_lines, entry_count - remaining

    def _check_rotation_safety(
        self,
        parsed: list[_ParsedLine],
        new_lines: list[str],
        active_keys: set[str],
    ) -> None:
        if any(raw.strip() for raw, _ in parsed) and not any(line.strip() for line in new_lines):
            raise LogIntegrityError("rotation would leave an empty log")
        kept = set(new_lines)
        for raw, event in parsed:
            if isinstance(event, StartEvent) and event.key in active_keys and raw not in kept:
                raise LogIntegrityError(f"rotation would drop the start entry of active loop {event.key}")

    # ── deletion ────────────────────────────────────────────────────

    def delete_run(self, loop_id: str) -> bool:
        """Remove every entry for ``loop_id``. Returns False if none existed."""

        def plan(parsed: list[_ParsedLine]):
            matching = [event for _, event in parsed if event is not None and event.key == loop_id]
            if not matching:
                return None
            new_lines = [raw for raw, event in parsed if event is None or event.key != loop_id]
            return new_lines, matching

        try:
            with start_span("loopdash.log.delete_run", {"log.path": str(self.path), "loop_id": loop_id}):
                deleted, matching = self._rewrite(plan)
        except OSError as exc:
            logger.error("Failed to delete loop %s from %s: %s", loop_id, self.path, exc)
            return False
        if not deleted:
            return False

        group = group_entries(matching).get(loop_id)
        if group and group.start and group.start.state_file_path and is_group_active(group.start, group.completion):
            try:
                Path(group.start.state_file_path).unlink()
            except OSError as exc:
                logger.debug("State file for deleted loop %s not removed: %s", loop_id, exc)

        logger.info("Deleted loop %s from %s", loop_id, self.path)
        return True

    def delete_archived_runs(self) -> int:
        """Remove every loop that finished as orphaned or archived; returns the loop count."""

        def plan(parsed: list[_ParsedLine]):
            groups = group_entries(event for _, event in parsed if event is not None)
            doomed = {
                key for key, group in groups.items()
                if group.completion is not None
                and group.completion.outcome in _ARCHIVED_OUTCOMES
                and (group.start is None or not is_group_active(group.start, group.completion))
            }
            if not doomed:
                return None
            new_lines = [raw for raw, event in parsed if event is None or event.key not in doomed]
            return new_lines, len(doomed)

        try:
            deleted, count = self._rewrite(plan)
        except OSError as exc:
            logger.error("Failed to delete archived loops from %s: %s", self.path, exc)
            return 0
        return int(count) if deleted else 0

    # ── state transitions ───────────────────────────────────────────

    def _completion_for(self, session: Session, outcome: str, iterations: Optional[int]) -> CompletionEvent:
        now = self._clock()
        return CompletionEvent(
            loop_id=session.loop_id,
            session_id=session.session_id,
            status="completed",
            outcome=outcome,
            ended_at=format_utc(now),
            duration_seconds=elapsed_seconds(session.started_at, now),
            iterations=iterations,
        )

    def archive_run(self, loop_id: str) -> MutationResult:
        """Mark an orphaned loop as resolved by appending an ``orphaned`` completion."""
        session = self.find_session(loop_id)
        if session is None:
            return MutationResult(False, loop_id, f"Loop not found: {loop_id}", error="NOT_FOUND")
        if session.status != "orphaned":
            return MutationResult(
                False,
                loop_id,
                f"Cannot archive loop: status is '{session.status}', expected 'orphaned'",
                error="INVALID_STATE",
                actual_status=session.status,
                expected_status="orphaned",
            )
        if session.ended_at is not None:
            return MutationResult(True, loop_id, f"Loop {loop_id} is already archived")

        try:
            self.append_event(self._completion_for(session, "orphaned", session.iterations))
        except OSError as exc:
            logger.error("Failed to archive loop %s: %s", loop_id, exc)
            return MutationResult(False, loop_id, f"Failed to archive loop: {exc}", error="WRITE_FAILED")
        logger.info("Archived orphaned loop %s", loop_id)
        return MutationResult(True, loop_id, f"Successfully archived orphaned loop {loop_id}")

    def _is_allowed_state_path(self, state_file: Path, session: Session) -> bool:
        roots = [self._loops_dir]
        if session.project:
            roots.append(Path(session.project) / ".claude")
        return any(_is_under(state_file, root) for root in roots)

    def cancel_run(self, loop_id: str) -> MutationResult:
        """Stop an active loop by deleting its state file and logging a cancellation."""
        session = self.find_session(loop_id)
        if session is None:
            return MutationResult(False, loop_id, f"Loop not found: {loop_id}", error="NOT_FOUND")
        if session.status != "active":
            return MutationResult(
                False,
                loop_id,
                f"Cannot cancel loop: status is '{session.status}', expected 'active'",
                error="INVALID_STATE",
                actual_status=session.status,
                expected_status="active",
            )
        if not session.state_file_path:
            return MutationResult(False, loop_id, f"No state file found for loop {loop_id}", error="CANCEL_FAILED")

        state_file = Path(session.state_file_path)
        if not self._is_allowed_state_path(state_file, session):
            return MutationResult(False, loop_id, f"Invalid state file path for loop {loop_id}", error="CANCEL_FAILED")
        if not state_file.exists():
            return MutationResult(
                False, loop_id, f"State file no longer exists for loop {loop_id}", error="CANCEL_FAILED"
            )

        try:
            state_file.unlink()
            self.append_event(self._completion_for(session, "cancelled", session.iterations or 0))
        except OSError as exc:
            logger.error("Failed to cancel loop %s: %s", loop_id, exc)
            return MutationResult(False, loop_id, f"Failed to cancel loop {loop_id}", error="CANCEL_FAILED")
        logger.info("Cancelled loop %s", loop_id)
        return MutationResult(True, loop_id, f"Successfully cancelled loop {loop_id}")
