import threading

from psycopg2 import pool as pg_pool

import config

_POOL = None
_POOL_LOCK = threading.Lock()


def _get_pool():
    global _POOL
    if _POOL is None:
        with _POOL_LOCK:
            if _POOL is None:
                if not config.DATABASE_URL:
                    raise RuntimeError("DATABASE_URL environment variable is not set")
                _POOL = pg_pool.ThreadedConnectionPool(
                    config.DB_POOL_MIN,
                    config.DB_POOL_MAX,
                    dsn=config.DATABASE_URL,
                    sslmode=config.DB_SSLMODE,
                    connect_timeout=config.DB_CONNECT_TIMEOUT,
                )
    return _POOL


def get_connection():
    return _get_pool().getconn()


def release_connection(conn):
    if conn:
        _get_pool().putconn(conn)
