"""Reconstruct point-in-time loop sessions from the sessions.jsonl event log.

Every call reads the log afresh; sessions have no identity beyond the log
itself. Grouping is by ``loop_id``, falling back to ``session_id`` for legacy
entries written before loop ids existed.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from loopdash import config
from loopdash.date_utils import elapsed_seconds, iso_to_epoch
from loopdash.models import CompletionEvent, Session, StartEvent
from loopdash.parsers.events import AnyLogEvent, read_log_entries
from loopdash.parsers.state_file import read_iteration_from_state_file
from loopdash.services.checklist import format_progress_summary, get_checklist_with_progress

logger = logging.getLogger("loopdash.sessions")

# First word only: a quoted multi-word promise yields just its first token.
_COMPLETION_PROMISE_RE = re.compile(r"--completion-promise=[\"']?([^\"'\s]+)[\"']?")
_COMPLETION_PROMISE_STRIP_RE = re.compile(
    r"\s*--completion-promise=(?:\"[^\"]*\"?|'[^']*'?|\S+)\s*"
)

UNKNOWN_ORIGIN_TASK = "(origin unknown)"


@dataclass(frozen=True)
class StateSnapshot:
    """What the reconstructor needs to know about a loop's state file."""

    exists: bool
    iteration: Optional[int] = None


StateReader = Callable[[str], StateSnapshot]


def read_state_snapshot(path: str) -> StateSnapshot:
    state_path = Path(path)
    if not state_path.exists():
        return StateSnapshot(exists=False)
    iteration = read_iteration_from_state_file(state_path, max_retries=config.STATE_READ_RETRIES)
    return StateSnapshot(exists=True, iteration=iteration)


def extract_completion_promise(task: str | None) -> tuple[str | None, str | None]:
    """Split ``--completion-promise=VALUE`` out of a task description.

    Returns ``(cleaned_task, promise)``; promise is None when the flag is absent.
    """
    if not task:
        return task, None
    match = _COMPLETION_PROMISE_RE.search(task)
    if not match:
        return task, None
    cleaned = _COMPLETION_PROMISE_STRIP_RE.sub(" ", task).strip()
    return cleaned, match.group(1)


@dataclass
class _EntryGroup:
    start: Optional[StartEvent] = None
    completion: Optional[CompletionEvent] = None


def group_entries(entries: Iterable[AnyLogEvent]) -> dict[str, _EntryGroup]:
    """Group entries by identity, keeping the latest start and completion of each."""
    groups: dict[str, _EntryGroup] = {}
    for entry in entries:
        key = entry.key
        if not key:
            continue
        group = groups.setdefault(key, _EntryGroup())
        if isinstance(entry, StartEvent):
            group.start = entry
        elif isinstance(entry, CompletionEvent):
            group.completion = entry
    return groups


def is_group_active(start: StartEvent, completion: Optional[CompletionEvent]) -> bool:
    """A loop is active without a completion, or when a legacy restart supersedes it.

    Legacy keys (terminal session ids) can be reused by a restarted loop; a
    start newer than the last completion then wins. This compares wall-clock
    timestamps and is only an approximation under clock skew.
    """
    if completion is None:
        return True
    if start.is_legacy:
        return iso_to_epoch(start.started_at) > iso_to_epoch(completion.ended_at)
    return False


def _build_session(
    key: str,
    start: StartEvent,
    completion: Optional[CompletionEvent],
    now: Optional[datetime],
    state_reader: StateReader,
) -> Session:
    active = is_group_active(start, completion)
    if active:
        completion = None

    status = "active" if active else completion.outcome
    iterations = completion.iterations if completion else None
    if active and start.state_file_path:
        snapshot = state_reader(start.state_file_path)
        if snapshot.exists:
            iterations = snapshot.iteration
        else:
            # Controller disappeared without logging a completion.
            status = "orphaned"

    if active:
        duration = elapsed_seconds(start.started_at, now)
    else:
        duration = completion.duration_seconds or 0

    cleaned_task, extracted_promise = extract_completion_promise(start.task)
    outcome = completion.outcome if completion else None

    return Session(
        loop_id=key,
        session_id=start.session_id or key,
        status=status,
        outcome=outcome,
        project=start.project,
        project_name=start.project_name,
        state_file_path=start.state_file_path,
        task=cleaned_task if cleaned_task is not None else start.task,
        started_at=start.started_at,
        ended_at=completion.ended_at if completion else None,
        duration_seconds=duration,
        iterations=iterations,
        max_iterations=start.max_iterations,
        completion_promise=start.completion_promise or extracted_promise,
        error_reason=completion.error_reason if outcome == "error" else None,
    )


def _build_unmatched_session(key: str, completion: CompletionEvent) -> Session:
    return Session(
        loop_id=key,
        session_id=completion.session_id or key,
        status="orphaned",
        outcome=completion.outcome,
        task=UNKNOWN_ORIGIN_TASK,
        started_at=completion.ended_at,
        ended_at=completion.ended_at,
        duration_seconds=completion.duration_seconds or 0,
        iterations=completion.iterations,
        error_reason=completion.error_reason if completion.outcome == "error" else None,
    )


def sort_sessions(sessions: list[Session]) -> list[Session]:
    """Active sessions first in their original order, the rest newest first."""
    active = [s for s in sessions if s.status == "active"]
    rest = [s for s in sessions if s.status != "active"]
    rest.sort(key=lambda s: iso_to_epoch(s.started_at), reverse=True)
    return active + rest


def reconstruct_sessions(
    entries: Iterable[AnyLogEvent],
    *,
    now: Optional[datetime] = None,
    state_reader: StateReader = read_state_snapshot,
    include_unmatched: bool = False,
) -> list[Session]:
    """Derive one Session per loop from decoded log entries.

    Groups without a start entry are dropped unless ``include_unmatched`` is
    set, in which case they become standalone orphaned sessions of unknown
    origin.
    """
    sessions: list[Session] = []
    for key, group in group_entries(entries).items():
        if group.start is None:
            if include_unmatched and group.completion is not None:
                sessions.append(_build_unmatched_session(key, group.completion))
            continue
        try:
            sessions.append(_build_session(key, group.start, group.completion, now, state_reader))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping session %s: %s", key, exc)
    return sort_sessions(sessions)


def _attach_checklist(session: Session) -> Session:
    try:
        checklist, progress = get_checklist_with_progress(session.loop_id)
    except ValueError:
        return session
    if checklist is None or progress is None:
        return session
    session.has_checklist = True
    session.checklist_progress = format_progress_summary(progress)
    return session


def list_sessions(log_path: Optional[Path] = None, *, with_checklists: bool = True) -> list[Session]:
    """Snapshot of every loop in the log, read fresh on each call."""
    entries = read_log_entries(log_path or config.LOG_FILE)
    sessions = reconstruct_sessions(entries)
    if with_checklists:
        sessions = [_attach_checklist(session) for session in sessions]
    return sessions


def get_session(loop_id: str, log_path: Optional[Path] = None) -> Session | None:
    for session in list_sessions(log_path, with_checklists=False):
        if session.loop_id == loop_id:
            return _attach_checklist(session)
    return None
