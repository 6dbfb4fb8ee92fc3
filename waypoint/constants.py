"""Shared constants for waypoint."""

AUTO_PROGRESS_START = 5
AUTO_PROGRESS_STEP = 10
AUTO_PROGRESS_CAP = 90

DEFAULT_RETRY_DELAY_SECONDS = 5.0

CHECKPOINT_DIRNAME = "waypoint"
CHECKPOINT_FILENAME = "workflow_state.json"
CHECKPOINT_SCHEMA_VERSION = "1"

WORKFLOW_DATA_BINDING = "WorkflowData"
