from typing import Optional

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from facturas.core import config

pool: Optional[ConnectionPool] = None


def init_pool() -> None:
    global pool
    if pool is not None:
        return
    if not config.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")

    # API and worker each hold their own small pool.
    pool = ConnectionPool(
        conninfo=config.DATABASE_URL,
        min_size=1,
        max_size=5,
        max_idle=5,
        timeout=10,
        kwargs={"row_factory": dict_row},
    )


def close_pool() -> None:
    global pool
    if pool is not None:
        pool.close()
        pool = None


def get_pool() -> ConnectionPool:
    if pool is None:
        raise RuntimeError("Database pool is not initialized")
    return pool
