"""
Runtime configuration, read from the environment (and a local .env file).

See .env.template for every option.
"""

import os
import logging

from dotenv import load_dotenv
import pytz

from .exceptions import ConfigError

# Load environment variables
load_dotenv()


# ═══════════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════════

def get_database_url():
    """Build database URL from environment variables."""
    url = os.getenv('DATABASE_URL')
    if url:
        return url

    host = os.getenv('DB_HOST', 'localhost')
    port = os.getenv('DB_PORT', '5432')
    name = os.getenv('DB_NAME', 'medbox')
    user = os.getenv('DB_USER', 'medbox')
    password = os.getenv('DB_PASSWORD', 'medbox')

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"

DATABASE_URL = get_database_url()
DB_POOL_MIN = int(os.getenv('DB_POOL_MIN_CONN', 1))
DB_POOL_MAX = int(os.getenv('DB_POOL_MAX_CONN', 5))
DB_POOL_TIMEOUT = float(os.getenv('DB_POOL_TIMEOUT', 10))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv('DB_STATEMENT_TIMEOUT_MS', 15000))


# ═══════════════════════════════════════════════════════════════════════════════
# Ingestion & queries
# ═══════════════════════════════════════════════════════════════════════════════

INGEST_MODE_BEST_EFFORT = 'best-effort'
INGEST_MODE_TRANSACTIONAL = 'transactional'
INGEST_MODES = (INGEST_MODE_BEST_EFFORT, INGEST_MODE_TRANSACTIONAL)

INGEST_MODE = os.getenv('INGEST_MODE', INGEST_MODE_BEST_EFFORT).strip().lower()
HISTORY_WINDOW_HOURS = int(os.getenv('HISTORY_WINDOW_HOURS', 24))
# One row per physical compartment; a box has four.
MAX_COMPARTMENTS = int(os.getenv('MAX_COMPARTMENTS', 4))


def ingest_transactional(mode=None):
    """Map an INGEST_MODE value to the transactional flag used by ingestion."""
    mode = (mode or INGEST_MODE).strip().lower()
    if mode not in INGEST_MODES:
        raise ConfigError(
            f"Invalid INGEST_MODE {mode!r} (expected one of: {', '.join(INGEST_MODES)})"
        )
    return mode == INGEST_MODE_TRANSACTIONAL


# ═══════════════════════════════════════════════════════════════════════════════
# Server
# ═══════════════════════════════════════════════════════════════════════════════

PORT = int(os.getenv('PORT', 3000))
HOST = os.getenv('HOST', '0.0.0.0')
DEBUG = os.getenv('DEBUG', 'false').lower() == 'true'

# Timezone
TIMEZONE = os.getenv('TIMEZONE', 'UTC')
try:
    LOCAL_TZ = pytz.timezone(TIMEZONE)
except pytz.exceptions.UnknownTimeZoneError:
    LOCAL_TZ = pytz.UTC

# CORS
CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')


# ═══════════════════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════════════════

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE', '')
LOG_REQUESTS = os.getenv('LOG_REQUESTS', 'false').lower() == 'true'


def setup_logging():
    log_handlers = [logging.StreamHandler()]
    if LOG_FILE:
        log_handlers.append(logging.FileHandler(LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=log_handlers
    )
