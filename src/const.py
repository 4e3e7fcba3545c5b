"""Application constants."""

import os
from pathlib import Path

APP_NAME = "Bastion"
APP_SLUG = "bastion"
APP_VERSION = "1.0.0"
LOGGER_PREFIX = "bastion"
ENV_PREFIX = "BASTION_"

# Paths
# src/const.py -> src/ -> root
BASE_DIR = Path(__file__).parent.parent.absolute()
LOG_DIR = Path(os.getenv("BASTION_LOG_DIR", str(BASE_DIR / "logs")))
LOG_FILE = str(LOG_DIR / "bastion.log")
CONFIG_DIR = BASE_DIR / "config"
DEFAULT_CONFIG = str(CONFIG_DIR / "config.yaml")

DATA_DIR = BASE_DIR / "data"
STATE_FILE = str(DATA_DIR / "blocks.json")
STATE_LOCK_FILE = str(DATA_DIR / "blocks.lock")
PID_FILE = str(DATA_DIR / "bastion.pid")

# Time constants (seconds)
SECONDS_IN_MINUTE = 60
SECONDS_IN_HOUR = 3600
SECONDS_IN_DAY = 86400
SECONDS_IN_YEAR = 31536000  # 365 days

# Exit codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG_ERROR = 2

# State file schema
STATE_SCHEMA_VERSION = "1.0"

# Defaults for every setting the daemon reads
DEFAULT_SETTINGS = {
    "daemon": {
        "enabled": True,
        "interval": 10,
        "read_budget_bytes": 1024 * 1024,
        "reader_threads": 1,
        "list_check_interval": 60,
        "pid_file": PID_FILE,
    },
    "state": {
        "path": STATE_FILE,
        "lock_path": STATE_LOCK_FILE,
        "lock_timeout": 10,
    },
    "sources": [],
    "rules": {},
    "rules_file": None,
    "classifications": {
        "default": {
            "threshold": 5,
            "window": SECONDS_IN_HOUR,
            "duration": SECONDS_IN_HOUR,
            "permanent": False,
            "ports": None,
            "enabled": True,
        },
    },
    "lists": {
        "allow": [],
        "ignore": [],
        "deny": [],
    },
    "blocking": {
        "select_ports": False,
        "permblock_count": 0,
        "permblock_interval": SECONDS_IN_DAY,
    },
    "firewall": {
        "backend": "iptables",
        "chain": "BASTION",
        "timeout": 10,
        "dry_run": False,
    },
    "alerts": {
        "enabled": True,
        "webhook_url": None,
        "timeout": 5,
    },
}

# Log spam guards
STATE_ERROR_LOG_INTERVAL = 300  # one loud line per 5 minutes
MISSING_SOURCE_LOG_INTERVAL = SECONDS_IN_HOUR
