import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MIN = _int_env("DB_POOL_MIN", 1)
DB_POOL_MAX = _int_env("DB_POOL_MAX", 10)
DB_SSLMODE = os.getenv("DB_SSLMODE", "require")
DB_CONNECT_TIMEOUT = _int_env("DB_CONNECT_TIMEOUT", 10)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

DEFAULT_TENANT = "default"

STALE_PROFILE_DAYS = _int_env("STALE_PROFILE_DAYS", 180)
VOTE_RATE_WINDOW_MINUTES = _int_env("VOTE_RATE_WINDOW_MINUTES", 10)
VOTE_RATE_LIMIT = _int_env("VOTE_RATE_LIMIT", 200)
ANOMALY_WINDOW_MINUTES = _int_env("ANOMALY_WINDOW_MINUTES", 60)
ANOMALY_BURST_THRESHOLD = _int_env("ANOMALY_BURST_THRESHOLD", 50)
SNAPSHOT_HISTORY_LIMIT = _int_env("SNAPSHOT_HISTORY_LIMIT", 30)

CRON_SECRET = os.getenv("CRON_SECRET")

ALGOD_ADDRESS = os.getenv("ALGOD_ADDRESS", "http://localhost:4001")
ALGOD_TOKEN = os.getenv("ALGOD_TOKEN", "a" * 64)
INDEXER_ADDRESS = os.getenv("INDEXER_ADDRESS", "http://localhost:8980")
INDEXER_TOKEN = os.getenv("INDEXER_TOKEN", "a" * 64)
ANCHOR_SENDER = os.getenv("ANCHOR_SENDER", "").strip()
ANCHOR_PRIVATE_KEY = os.getenv("ANCHOR_PRIVATE_KEY", "").strip()
ANCHOR_MNEMONIC = os.getenv("ANCHOR_MNEMONIC", "").strip()

_logging_configured = False


def configure_logging():
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    _logging_configured = True
