"""SQLite storage layer for deploykit.

Persists deployment runs, per-step outcomes, run logs and the set of
steps known to be applied on each host.
DB file: ~/.deploykit/state.db (auto-created on first use).
"""

from deploykit.storage.db import get_db, init_db, set_db_path
from deploykit.storage.tracker import RunDetails, StateTracker

__all__ = ["RunDetails", "StateTracker", "get_db", "init_db", "set_db_path"]
