"""Engine package - executes plans and keeps the run log."""

from deploykit.engine.executor import ExecutionReport, StepExecutor, StepOutcome, StepStatus
from deploykit.engine.jobs import DeployRun, RunStatus

__all__ = [
    "DeployRun",
    "ExecutionReport",
    "RunStatus",
    "StepExecutor",
    "StepOutcome",
    "StepStatus",
]
