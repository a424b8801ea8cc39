"""Runtime configuration for the waiting-room service.

Everything is read from environment variables once, at import time.
Defaults are chosen so that the service runs locally with nothing set:
a SQLite file next to this module, no Redis, and INFO logging.
"""

from __future__ import annotations

import logging
import os
import sys

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
# Heroku/Railway style URLs still use the legacy scheme.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)

REDIS_URL = os.getenv("REDIS_URL")
NOTIFICATION_QUEUE_KEY = os.getenv("NOTIFICATION_QUEUE_KEY", "queue_notifications")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

FEED_HEARTBEAT_SECONDS = float(os.getenv("FEED_HEARTBEAT_SECONDS", "15"))

SELF_SERVICE_RATE_LIMIT = int(os.getenv("SELF_SERVICE_RATE_LIMIT", "5"))
SELF_SERVICE_RATE_WINDOW = int(os.getenv("SELF_SERVICE_RATE_WINDOW", "300"))

DEFAULT_AVERAGE_WAIT_MINUTES = int(os.getenv("DEFAULT_AVERAGE_WAIT_MINUTES", "15"))


def configure_logging() -> None:
    """Install the process-wide logging handler."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
