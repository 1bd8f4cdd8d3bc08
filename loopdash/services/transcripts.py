"""Read per-loop transcript files (iteration summaries and the full Claude transcript)."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from loopdash.file_finder import FULL_TRANSCRIPT_SUFFIX, ITERATIONS_SUFFIX, find_file_by_loop_id
from loopdash.models import IterationEntry, TranscriptMessage

logger = logging.getLogger("loopdash.transcripts")


def _read_jsonl(path: Path) -> list[dict] | None:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to read transcript %s: %s", path, exc)
        return None

    rows: list[dict] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed transcript entry: %s", line[:50])
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def has_iterations(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> bool:
    return find_file_by_loop_id(loop_id, ITERATIONS_SUFFIX, search_dirs) is not None


def has_full_transcript(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> bool:
    return find_file_by_loop_id(loop_id, FULL_TRANSCRIPT_SUFFIX, search_dirs) is not None


def get_iterations(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> list[IterationEntry] | None:
    """Return every iteration summary for a loop, or None if there is no file."""
    path = find_file_by_loop_id(loop_id, ITERATIONS_SUFFIX, search_dirs)
    if path is None:
        return None
    rows = _read_jsonl(path)
    if rows is None:
        return None
    entries: list[IterationEntry] = []
    for row in rows:
        try:
            entries.append(IterationEntry.model_validate(row))
        except ValidationError:
            logger.warning("Skipping invalid iteration entry in %s", path)
    return entries


def _message_text(content) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ]
    return "\n".join(parts)


def get_full_transcript(loop_id: str, search_dirs: Optional[Sequence[Path]] = None) -> list[TranscriptMessage] | None:
    """Extract user/assistant text messages from the Claude transcript JSONL."""
    path = find_file_by_loop_id(loop_id, FULL_TRANSCRIPT_SUFFIX, search_dirs)
    if path is None:
        return None
    rows = _read_jsonl(path)
    if rows is None:
        return None

    messages: list[TranscriptMessage] = []
    for row in rows:
        message = row.get("message")
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        text = _message_text(message.get("content"))
        if text:
            messages.append(TranscriptMessage(role=role, content=text))
    return messages
