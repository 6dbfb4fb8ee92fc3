"""waypoint: Resumable task orchestration with retries, approval gates and reboots."""

from .approval import ApprovalGateCoordinator
from .bodies import CommandBody
from .config import WaypointConfig, load_config
from .context import ProgressMode, TaskExecutionContext
from .contracts import (
    ApprovalDecision,
    ErrorAction,
    EventKind,
    RunOutcome,
    RunResult,
    TaskKind,
    TaskStatus,
    WorkflowEvent,
    WorkflowRun,
    WorkflowTask,
)
from .data_store import SharedDataStore
from .events import InMemoryEventBus, get_event_sink
from .orchestrator import TaskOrchestrator
from .persistence import CheckpointManager, get_checkpoint_store
from .skip import SkipConditionEvaluator

__version__ = "0.1.0"
__all__ = [
    "ApprovalDecision",
    "ApprovalGateCoordinator",
    "CheckpointManager",
    "CommandBody",
    "ErrorAction",
    "EventKind",
    "InMemoryEventBus",
    "ProgressMode",
    "RunOutcome",
    "RunResult",
    "SharedDataStore",
    "SkipConditionEvaluator",
    "TaskExecutionContext",
    "TaskKind",
    "TaskOrchestrator",
    "TaskStatus",
    "WaypointConfig",
    "WorkflowEvent",
    "WorkflowRun",
    "WorkflowTask",
    "get_checkpoint_store",
    "get_event_sink",
    "load_config",
]
