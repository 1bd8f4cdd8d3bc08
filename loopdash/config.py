"""loopdash backend configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


# Loop plugin data lives under the user-level ~/.claude/ directory
CLAUDE_DIR = _env_path("LOOPDASH_CLAUDE_DIR", Path.home() / ".claude")
BASE_DIR = _env_path("LOOPDASH_BASE_DIR", CLAUDE_DIR / "ralph-wiggum-pro")
LOOPS_DIR = BASE_DIR / "loops"
TRANSCRIPTS_DIR = _env_path("LOOPDASH_TRANSCRIPTS_DIR", BASE_DIR / "transcripts")

# Older plugin releases wrote logs and transcripts here
LEGACY_LOGS_DIR = CLAUDE_DIR / "ralph-wiggum-pro-logs"
LEGACY_TRANSCRIPTS_DIR = LEGACY_LOGS_DIR / "transcripts"

# Event log
LOG_FILE = _env_path("LOOPDASH_LOG_FILE", LEGACY_LOGS_DIR / "sessions.jsonl")
MAX_LOG_ENTRIES = _env_int("LOOPDASH_MAX_LOG_ENTRIES", 1000)
ROTATE_ON_STARTUP = _env_bool("LOOPDASH_ROTATE_ON_STARTUP", True)
STATE_READ_RETRIES = _env_int("LOOPDASH_STATE_READ_RETRIES", 2)

# Live updates
DEBOUNCE_MS = _env_int("LOOPDASH_DEBOUNCE_MS", 100)
MAX_SUBSCRIPTIONS_PER_CLIENT = _env_int("LOOPDASH_MAX_SUBSCRIPTIONS_PER_CLIENT", 10)

# Observability
OTEL_ENABLED = _env_bool("LOOPDASH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("LOOPDASH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("LOOPDASH_OTEL_SERVICE_NAME", "loopdash-backend")
PROM_PORT = _env_int("LOOPDASH_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("LOOPDASH_HOST", "localhost")
PORT = _env_int("LOOPDASH_PORT", 3847)

# CORS
FRONTEND_ORIGIN = os.getenv("LOOPDASH_FRONTEND_ORIGIN", "http://localhost:5173")
