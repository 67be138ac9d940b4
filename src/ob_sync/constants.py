import os
from pathlib import Path

"""Global constants and configuration path definitions for ob.

This module defines the filesystem layout (adhering to XDG standards where applicable),
the default remote tracking branch, and the scheduling defaults used across the
application.
"""

# --- Identity ---
APP_NAME = "ob"
"""str: The application name, also used as the logger name."""

SERVICE_NAME = "ob.service"
"""str: The systemd user unit name used for boot integration."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / APP_NAME
"""Path: The directory for runtime state data (logs, pid file)."""

LOG_FILE = STATE_DIR / "ob.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "ob.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config" / APP_NAME
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The optional settings file."""

VAULT_PATH_FILE: Path = CONFIG_DIR / "vault.path"
"""Path: The file storing the absolute path of the synchronized vault."""

# --- Git / Logic Constants ---
DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH = "main"

SETTLE_INTERVAL = 60
"""int: Seconds between local settle (commit-only) runs."""

RECONCILE_INTERVAL = 12 * 3600
"""int: Seconds between full reconciliation runs."""

SQUASH_THRESHOLD = 25
"""int: Unpushed commits required before a scheduled cycle squashes and pushes."""

MANUAL_THRESHOLD = 0
"""int: Threshold used by manual syncs; anything ahead is squashed and pushed."""

GIT_LOCK_FILES = [
    "index.lock",
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
]
"""
list[str]: Git internal files indicating an
active operation that blocks a sync cycle.
"""
