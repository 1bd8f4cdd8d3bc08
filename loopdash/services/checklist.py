"""Read loop checklist documents and summarize their progress."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from loopdash.file_finder import CHECKLIST_SUFFIX, find_file_by_loop_id, validate_loop_id
from loopdash.models import Checklist, ChecklistProgress

logger = logging.getLogger("loopdash.checklist")


def get_checklist_path(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> Path | None:
    if not validate_loop_id(loop_id):
        raise ValueError(f"Invalid loop_id format: {loop_id}")
    return find_file_by_loop_id(loop_id, CHECKLIST_SUFFIX, search_dirs)


def has_checklist(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> bool:
    try:
        path = get_checklist_path(loop_id, search_dirs)
    except ValueError:
        return False
    return path is not None and path.exists()


def load_checklist(path: Path) -> Checklist | None:
    """Parse a checklist file; unreadable or structurally invalid files yield None."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(raw, dict) or not raw.get("loop_id"):
        return None
    try:
        return Checklist.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Invalid checklist %s: %s", path, exc.error_count())
        return None


def get_checklist(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> Checklist | None:
    path = get_checklist_path(loop_id, search_dirs)
    if path is None:
        return None
    return load_checklist(path)


def get_checklist_progress(checklist: Checklist) -> ChecklistProgress:
    tasks_total = len(checklist.task_checklist)
    tasks_completed = sum(1 for item in checklist.task_checklist if item.status == "completed")
    criteria_total = len(checklist.completion_criteria)
    criteria_completed = sum(1 for item in checklist.completion_criteria if item.status == "completed")
    return ChecklistProgress(
        tasks=f"{tasks_completed}/{tasks_total} tasks",
        criteria=f"{criteria_completed}/{criteria_total} criteria",
        tasksCompleted=tasks_completed,
        tasksTotal=tasks_total,
        criteriaCompleted=criteria_completed,
        criteriaTotal=criteria_total,
    )


def format_progress_summary(progress: ChecklistProgress) -> str:
    """Compact one-line summary shown next to a session, e.g. ``3/5 tasks • 1/2 criteria``."""
    if progress.tasksTotal == 0:
        return progress.criteria
    return f"{progress.tasks} • {progress.criteria}"


def get_checklist_with_progress(
    loop_id: str,
    search_dirs: Optional[Sequence[Path]] = None,
) -> tuple[Checklist | None, ChecklistProgress | None]:
    checklist = get_checklist(loop_id, search_dirs)
    if checklist is None:
        return None, None
    return checklist, get_checklist_progress(checklist)
