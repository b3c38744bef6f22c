"""
Constants for quadrants, task status, history actions and sync windows.
"""
from __future__ import annotations

# Quadrant ids (matrix order, backlog last)
QUADRANT_URGENT_IMPORTANT = "urgent-important"
QUADRANT_NOT_URGENT_IMPORTANT = "not-urgent-important"
QUADRANT_URGENT_NOT_IMPORTANT = "urgent-not-important"
QUADRANT_NOT_URGENT_NOT_IMPORTANT = "not-urgent-not-important"
QUADRANT_BACKLOG = "backlog"

# Move target alias used by the drag-and-drop surface for the backlog row
MOVE_TARGET_TOMORROW = "tomorrow"

IMPORTANT_TAG = "important"
URGENT_PRIORITY_MAX = 2  # priority <= 2 counts as urgent

# Task status
TASK_STATUS_TODO = "todo"
TASK_STATUS_COMPLETED = "completed"

# scheduledFor values
SCHEDULED_TODAY = "today"
SCHEDULED_TOMORROW = "tomorrow"

# Defaults applied when a stored record lacks a value
DEFAULT_PRIORITY = 4
NEW_TASK_PRIORITY = 3
MIN_PRIORITY = 1
MAX_PRIORITY = 5

# History actions (stored in HistoryEntry.action)
ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"
ACTION_COMPLETE = "COMPLETE"
ACTION_REOPEN = "REOPEN"

# Synthetic change field added when the classified quadrant changes
QUADRANT_CHANGE_FIELD = "Quadrant"

# Identity sentinel when no identity system is configured
LOCAL_ACTOR_ID = "local-user"

# Sync windows (milliseconds)
ECHO_SUPPRESSION_WINDOW_MS = 1000
BULK_DEBOUNCE_WINDOW_MS = 1000

# Backend selection bootstrap (milliseconds)
BOOTSTRAP_TIMEOUT_MS = 3000
BOOTSTRAP_POLL_INTERVAL_MS = 100

# Retry queue for failed writes (seconds)
RETRY_BASE_DELAY = 0.5
RETRY_BACKOFF_FACTOR = 2.0
RETRY_MAX_DELAY = 30.0
RETRY_MAX_ATTEMPTS = 5
RETRY_POLL_INTERVAL = 1.0  # how often the coordinator checks for due retries

# Local store blob key
LOCAL_BLOB_KEY = "taskMatrix"
