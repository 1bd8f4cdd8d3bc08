"""Read loop state files (markdown with YAML frontmatter) written by the stop hook.

The hook rewrites the state file on every iteration, so a reader can observe a
half-written file. Only a frontmatter block that is syntactically complete is
trusted; anything else is treated as "no data yet".
"""
from __future__ import annotations

import logging
import re
import time
from pathlib import Path

import yaml

logger = logging.getLogger("loopdash.sessions")

# Opening delimiter must be the very first line; the closing one a later line.
_FRONTMATTER_RE = re.compile(r"\A---\n(.*?)\n---(?:\n|\Z)", re.DOTALL)
_REQUIRED_KEYS = ("session_id", "iteration")
_RETRY_DELAY_SECONDS = 0.01


def extract_frontmatter(text: str) -> dict | None:
    """Return the frontmatter mapping, or None if the block is missing or invalid."""
    match = _FRONTMATTER_RE.match(text.replace("\r\n", "\n"))
    if not match:
        return None
    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def parse_iteration(text: str) -> int | None:
    """Parse the iteration counter from state file content.

    Returns None if the frontmatter is incomplete or the counter is not a
    non-negative integer.
    """
    frontmatter = extract_frontmatter(text)
    if frontmatter is None:
        return None
    if any(key not in frontmatter for key in _REQUIRED_KEYS):
        return None
    if not frontmatter.get("session_id"):
        return None

    iteration = frontmatter.get("iteration")
    if isinstance(iteration, bool) or not isinstance(iteration, int):
        return None
    if iteration < 0:
        return None
    return iteration


def read_iteration_from_state_file(path: str | Path, max_retries: int = 2) -> int | None:
    """Read the current iteration for an active loop.

    A missing file returns None immediately. Malformed content (a write in
    progress) is retried after a short delay, up to ``max_retries`` attempts.
    """
    state_path = Path(path)
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            content = state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Could not read state file %s: %s", state_path, exc)
            content = None

        if content is not None:
            iteration = parse_iteration(content)
            if iteration is not None:
                return iteration

        if attempt < attempts - 1:
            time.sleep(_RETRY_DELAY_SECONDS)

    return None
