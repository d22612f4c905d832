STATE_DIR_NAME = ".ralph-dev"
STATE_FILE = "state.json"
CIRCUIT_BREAKER_FILE = "circuit-breaker.json"
SAGA_LOG_FILE = "saga.log"
CONFIG_FILE = "config.yaml"
TASKS_DIR = "tasks"
TASK_INDEX_FILE = "index.json"
BACKUPS_DIR = "backups"
PRD_FILE = "prd.md"

INDEX_SCHEMA_VERSION = "1.0.0"

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_SUCCESS_THRESHOLD = 2
DEFAULT_RESET_TIMEOUT_MS = 60_000
DEFAULT_LOG_LEVEL = "INFO"

WORKSPACE_ENV = "RALPH_DEV_WORKSPACE"

# Appended once to the project .gitignore during breakdown setup.
GITIGNORE_MARKER = "# Ralph-dev temporary files"
GITIGNORE_ENTRIES = (
    f"{STATE_DIR_NAME}/{STATE_FILE}",
    f"{STATE_DIR_NAME}/progress.log",
    f"{STATE_DIR_NAME}/debug.log",
    f"{STATE_DIR_NAME}/{SAGA_LOG_FILE}",
    f"{STATE_DIR_NAME}/{CIRCUIT_BREAKER_FILE}",
    f"{STATE_DIR_NAME}/{BACKUPS_DIR}/",
    f"!{STATE_DIR_NAME}/{PRD_FILE}",
    f"!{STATE_DIR_NAME}/{TASKS_DIR}/",
)

FEATURE_BRANCH_PREFIX = "ralph-dev/"
DELIVER_COMMIT_MESSAGE = "feat: deliver ralph-dev tasks"
