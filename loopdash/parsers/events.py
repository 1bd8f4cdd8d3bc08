"""Decode lines of the sessions.jsonl event log into typed log entries."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Union

from pydantic import TypeAdapter, ValidationError

from loopdash.models import CompletionEvent, LogEvent, StartEvent
from loopdash.observability import record_parse_failure

logger = logging.getLogger("loopdash.sessions")

_LOG_EVENT_ADAPTER: TypeAdapter = TypeAdapter(LogEvent)

AnyLogEvent = Union[StartEvent, CompletionEvent]


def decode_log_event(raw: object) -> AnyLogEvent | None:
    """Validate an already-parsed JSON value against the start/completion shapes."""
    if not isinstance(raw, dict):
        return None
    try:
        return _LOG_EVENT_ADAPTER.validate_python(raw)
    except ValidationError:
        return None


def parse_log_line(line: str) -> AnyLogEvent | None:
    """Parse one log line; blank, malformed or unrecognized lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        raw = json.loads(stripped)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed log entry: %s", stripped[:50])
        record_parse_failure("event_log")
        return None
    event = decode_log_event(raw)
    if event is None:
        logger.debug("Skipping unrecognized log entry: %s", stripped[:50])
        record_parse_failure("event_log")
    return event


def parse_log_lines(lines: Iterable[str]) -> list[AnyLogEvent]:
    entries: list[AnyLogEvent] = []
    for line in lines:
        event = parse_log_line(line)
        if event is not None:
            entries.append(event)
    return entries


def read_log_lines(path: Path) -> list[str]:
    """Return the raw lines of the log (without line terminators)."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    return text.splitlines()


def read_log_entries(path: Path) -> list[AnyLogEvent]:
    """Read and decode every parseable entry of the event log at ``path``."""
    return parse_log_lines(read_log_lines(path))
