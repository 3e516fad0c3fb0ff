STATE_DIR_NAME = ".lane_board"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
TASKS_LOCK_FILE = "tasks.lock"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_BOARD_ID = "00000000-0000-0000-0000-000000000001"
DEFAULT_BOARD_NAME = "default"
BOARD_SCHEMA_VERSION = "2.0.0"

LANE_BACKLOG = "backlog"
LANE_TODO = "todo"
LANE_IN_PROGRESS = "in_progress"
LANE_DONE = "done"
LANE_RECOVERY = "recovery"

# Flattening order for Board.all_tasks() and stats output.
LANE_ORDER = (
    LANE_BACKLOG,
    LANE_TODO,
    LANE_IN_PROGRESS,
    LANE_DONE,
    LANE_RECOVERY,
)

PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"
PRIORITY_CRITICAL = "critical"

PRIORITY_ORDER = (
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    PRIORITY_HIGH,
    PRIORITY_CRITICAL,
)

DEFAULT_LANE = LANE_BACKLOG
DEFAULT_PRIORITY = PRIORITY_MEDIUM
DEFAULT_STATUS = "pending"

MAX_LENGTHS = {
    "string": 1000,
    "title": 200,
    "description": 5000,
    "task_id": 50,
    "tag": 100,
    "status": 50,
    "assignee": 100,
    "enum": 50,
    "goal": 1000,
    "context": 2000,
    "query": 500,
}

MAX_TAGS = 50
MIN_ESTIMATED_HOURS = 0
MAX_ESTIMATED_HOURS = 1000
MAX_BATCH_SIZE = 100

DEFAULT_CACHE_TTL_SECONDS = 5.0
DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_SEND_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_WS_CLIENTS = 100

ENV_PRODUCTION = "production"
ENV_DEVELOPMENT = "development"
