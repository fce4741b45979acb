"""Run log for a single deployment.

Provides:
- Run status tracking
- Append-only log entries (INFO, WARN, ERROR, SUCCESS)
- Optional listeners so the console and the state database see every
  entry as it is written
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class RunStatus(str, Enum):
    """Deployment run status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class RunLog:
    """Single log entry."""
    timestamp: datetime
    level: str  # INFO, WARN, ERROR, SUCCESS
    message: str


LogListener = Callable[[RunLog], None]


@dataclass
class DeployRun:
    """One execution of a plan against a host, with logging."""
    host: str
    app: str
    dry_run: bool = False
    id: Optional[int] = None
    status: RunStatus = RunStatus.RUNNING
    logs: List[RunLog] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    listeners: List[LogListener] = field(default_factory=list, repr=False)

    def log(self, message: str, level: str = "INFO") -> None:
        """Add a log entry and notify listeners."""
        entry = RunLog(timestamp=datetime.now(), level=level, message=message)
        self.logs.append(entry)
        for listener in self.listeners:
            listener(entry)

    def log_info(self, message: str) -> None:
        self.log(message, "INFO")

    def log_warn(self, message: str) -> None:
        self.log(message, "WARN")

    def log_error(self, message: str) -> None:
        self.log(message, "ERROR")

    def log_success(self, message: str) -> None:
        self.log(message, "SUCCESS")

    def finish(self, status: RunStatus) -> None:
        self.status = status
        self.completed_at = datetime.now()

    @property
    def duration(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()
