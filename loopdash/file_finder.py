"""Locate per-loop transcript files on disk.

Two naming schemes are in use:

- current: ``{session_id}-{loop_id}-{suffix}``
- legacy:  ``{loop_id}-{suffix}``

The current transcripts directory is searched first, then the legacy one.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Sequence

from loopdash import config

ITERATIONS_SUFFIX = "iterations.jsonl"
FULL_TRANSCRIPT_SUFFIX = "full.jsonl"
CHECKLIST_SUFFIX = "checklist.json"

_LOOP_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,256}$")


def validate_loop_id(loop_id: str) -> bool:
    """Only letters, digits, dots, dashes and underscores; never ``..``."""
    if not isinstance(loop_id, str) or not _LOOP_ID_PATTERN.match(loop_id):
        return False
    return ".." not in loop_id


def transcript_dirs() -> list[Path]:
    return [config.TRANSCRIPTS_DIR, config.LEGACY_TRANSCRIPTS_DIR]


def matches_loop_file(filename: str, loop_id: str, suffix: str) -> bool:
    return filename.endswith(f"-{loop_id}-{suffix}") or filename == f"{loop_id}-{suffix}"


def find_file_by_loop_id(
    loop_id: str,
    suffix: str,
    search_dirs: Optional[Sequence[Path]] = None,
) -> Path | None:
    """Return the first file matching ``loop_id``/``suffix`` in the transcript dirs."""
    for directory in search_dirs if search_dirs is not None else transcript_dirs():
        try:
            names = sorted(entry.name for entry in directory.iterdir() if entry.is_file())
        except (FileNotFoundError, NotADirectoryError):
            continue
        for name in names:
            if matches_loop_file(name, loop_id, suffix):
                return directory / name
    return None


def file_exists_for_loop_id(loop_id: str, suffix: str) -> bool:
    return find_file_by_loop_id(loop_id, suffix) is not None
