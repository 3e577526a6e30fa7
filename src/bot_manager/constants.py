"""Shared constants for the bot manager."""

DATA_DIR_NAME = "data"
USERS_FILE = "users.yaml"
TASKS_FILE = "tasks.yaml"
CONFIG_FILE = "config.yaml"
CREDENTIALS_DIR = "credentials"
LOCK_FILE = ".lock"
SCHEMA_VERSION = 1

LOG_CAPACITY = 100
OUTBOX_CAPACITY = 1000
DEFAULT_DELAY_SECONDS = 5
DEFAULT_FLUSH_INTERVAL_SECONDS = 30.0
DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_TOKEN_EXPIRE_MINUTES = 24 * 60
DEFAULT_PASSWORD_ROUNDS = 10
DEFAULT_ADMIN_PASSWORD = "admin"
DEFAULT_SECRET_KEY = "dev-secret-change-me-before-production-use"

SESSION_COOKIE = "bot_manager_session"

TASK_STATUS_STOPPED = "stopped"
TASK_STATUS_RUNNING = "running"
TASK_STATUSES = (TASK_STATUS_STOPPED, TASK_STATUS_RUNNING)

LOG_TYPES = ("info", "success", "error", "warning")

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

# (username, password, role); the admin password comes from configuration.
SEED_ACCOUNTS = (
    ("user1", "password1", ROLE_USER),
    ("user2", "password2", ROLE_USER),
    ("user3", "password3", ROLE_USER),
    ("user4", "password4", ROLE_USER),
)
