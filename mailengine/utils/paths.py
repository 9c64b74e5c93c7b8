"""Centralized path definitions for mailengine.

Single source of truth for on-disk locations. Every directory can be moved
with the MAILENGINE_HOME environment variable.
"""

import os
from pathlib import Path

# Base application directory
MAILENGINE_DIR = Path(os.getenv("MAILENGINE_HOME", Path.home() / ".mailengine"))

# Subdirectories
DATA_DIR = MAILENGINE_DIR / "data"
LOGS_DIR = MAILENGINE_DIR / "logs"

# Specific files
DATABASE_PATH = DATA_DIR / "mailengine.db"
CONFIG_PATH = MAILENGINE_DIR / "config.json"
