from dataclasses import dataclass
import os
from pathlib import Path

from dotenv import load_dotenv

from taskmatrix.constants import (
    BOOTSTRAP_POLL_INTERVAL_MS,
    BOOTSTRAP_TIMEOUT_MS,
    BULK_DEBOUNCE_WINDOW_MS,
    ECHO_SUPPRESSION_WINDOW_MS,
    LOCAL_ACTOR_ID,
)

load_dotenv()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    actor_id: str
    remote_enabled: bool
    echo_window_ms: int
    debounce_window_ms: int
    bootstrap_timeout_ms: int
    bootstrap_poll_ms: int
    log_level: str
    firestore_project: str = ""
    firestore_database: str = "(default)"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise RuntimeError(f"{name} must not be negative")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise RuntimeError(f"{name} must be a boolean, got {raw!r}")


def load_settings() -> Settings:
    db_raw = os.getenv("TASKMATRIX_DB_PATH", "data/taskmatrix.db").strip()
    actor_id = os.getenv("TASKMATRIX_ACTOR_ID", LOCAL_ACTOR_ID).strip() or LOCAL_ACTOR_ID
    log_level = os.getenv("TASKMATRIX_LOG_LEVEL", "INFO").strip().upper() or "INFO"

    poll_ms = _int_env("TASKMATRIX_BOOTSTRAP_POLL_MS", BOOTSTRAP_POLL_INTERVAL_MS)
    if poll_ms == 0:
        raise RuntimeError("TASKMATRIX_BOOTSTRAP_POLL_MS must be positive")

    # db_path stays relative; main resolves the directory
    return Settings(
        db_path=Path(db_raw),
        actor_id=actor_id,
        remote_enabled=_bool_env("TASKMATRIX_REMOTE", False),
        echo_window_ms=_int_env("TASKMATRIX_ECHO_WINDOW_MS", ECHO_SUPPRESSION_WINDOW_MS),
        debounce_window_ms=_int_env("TASKMATRIX_DEBOUNCE_MS", BULK_DEBOUNCE_WINDOW_MS),
        bootstrap_timeout_ms=_int_env("TASKMATRIX_BOOTSTRAP_TIMEOUT_MS", BOOTSTRAP_TIMEOUT_MS),
        bootstrap_poll_ms=poll_ms,
        log_level=log_level,
        firestore_project=os.getenv("TASKMATRIX_FIRESTORE_PROJECT", "").strip(),
        firestore_database=os.getenv("TASKMATRIX_FIRESTORE_DATABASE", "(default)").strip() or "(default)",
    )
