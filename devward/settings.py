"""
This module contains the default configuration settings for devward.
It defines the tool's home directory layout, lifecycle timeouts and console
settings. Values can be overridden through environment variables or a `.env`
file, and the whitelisted ones at runtime through the 'config' command.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
DEVWARD_HOME = pathlib.Path(os.getenv("DEVWARD_HOME", pathlib.Path.home() / ".devward")).expanduser()
PID_DIR = DEVWARD_HOME / "pidFiles"
LOG_DIR = DEVWARD_HOME / "logs"
TOOL_LOG_PATH = DEVWARD_HOME / "devward.log"
OVERRIDES_JSON_PATH = DEVWARD_HOME / "overrides.json"

#* --- Service Configuration Discovery ---
CONFIG_FILE_NAMES = ("devward.yaml", "devward.yml", "devward.json")
CONFIG_FILE_ENV = os.getenv("DEVWARD_CONFIG", "")
CURRENT_CONFIG_VERSION = 2

#* --- Tool Log Settings ---
TOOL_LOG_MAX_BYTES = 5 * 1024 * 1024
TOOL_LOG_BACKUP_COUNT = 3

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Stopping
    "STOP_GRACE_PERIOD", "STOP_POLL_INTERVAL", "KILL_CONFIRM_TIMEOUT",
    # Launching
    "LAUNCH_TIMEOUT", "LAUNCH_POLL_INTERVAL", "WARMUP_TIMEOUT",
    # Console
    "MAX_PARALLEL_OPERATIONS", "LOG_HISTORY_COUNT", "WATCH_DEBOUNCE_SECONDS",
}

#* --- Default Values for Modifiable Settings ---
STOP_GRACE_PERIOD = float(os.getenv("DEVWARD_STOP_GRACE_PERIOD", "5"))  # seconds before SIGKILL
STOP_POLL_INTERVAL = 0.1
KILL_CONFIRM_TIMEOUT = 1.0
LAUNCH_TIMEOUT = float(os.getenv("DEVWARD_LAUNCH_TIMEOUT", "30"))
LAUNCH_POLL_INTERVAL = 0.25
WARMUP_TIMEOUT = 10
MAX_PARALLEL_OPERATIONS = int(os.getenv("DEVWARD_MAX_PARALLEL", "0")) or (os.cpu_count() or 1) * 2
LOG_HISTORY_COUNT = 50
WATCH_DEBOUNCE_SECONDS = 1.0
