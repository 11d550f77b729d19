"""Simple runtime configuration for the Dayflow occurrence service.

Control flags are read from environment variables to allow toggling in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./dayflow.db')

# When true, the app is considered to be running in development mode.
# Materializing a date the recurrence rule would never produce raises in
# development and is logged and skipped otherwise.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# Safety cap on occurrences emitted by a single generation call. A daily
# rule requested over decades is truncated here and flagged in the response.
MAX_OCCURRENCES_PER_REQUEST = _int_env('MAX_OCCURRENCES_PER_REQUEST', 5000)

# Window length used by the occurrence endpoints when `end` is omitted.
DEFAULT_WINDOW_DAYS = _int_env('DEFAULT_WINDOW_DAYS', 90)

# Completion records for instances older than this are purged by the
# maintenance endpoint/script.
COMPLETION_RETENTION_DAYS = _int_env('COMPLETION_RETENTION_DAYS', 90)

# Default look-back used by completion statistics.
COMPLETION_STATS_DAYS = _int_env('COMPLETION_STATS_DAYS', 30)

# Status given to occurrences of a template marked done at the template level
# when the occurrence itself has no completion record.
DEFAULT_OPEN_STATUS = os.getenv('DEFAULT_OPEN_STATUS', 'backlog')

# Optional local overrides: define variables in dayflow/local_config.py to
# extend or override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass
