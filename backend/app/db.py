from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Request
from psycopg import Connection
from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .logs import json_log


def create_pool(
    conninfo: Optional[str] = None,
    *,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
) -> ConnectionPool:
    # Opened by the application lifespan, never at import time.
    # row_factory=dict_row: handlers and helpers index rows by column name.
    return ConnectionPool(
        conninfo=conninfo or settings.db_url,
        min_size=settings.db_pool_min if min_size is None else min_size,
        max_size=settings.db_pool_max if max_size is None else max_size,
        kwargs={"row_factory": dict_row},
        open=False,
    )


@contextmanager
def pooled_conn(pool: ConnectionPool) -> Iterator[Connection]:
    # - commit on success
    # - rollback on exception
    # - connection always goes back to the pool
    with pool.connection() as conn:
        yield conn


def get_db(request: Request) -> Iterator[Connection]:
    """
    Request-scoped Ledger Store handle.

    The pool lives on `app.state.db_pool`; each request borrows exactly one
    connection and returns it when the response is done, even on errors.
    """
    with pooled_conn(request.app.state.db_pool) as conn:
        yield conn


def ping(pool: ConnectionPool, timeout: float = 5.0) -> None:
    with pool.connection(timeout=timeout) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1 AS ok")
            cur.fetchone()


def close_pool_safely(pool: Optional[ConnectionPool]) -> None:
    # Shutdown hook; a failing close must not mask the shutdown itself.
    if pool is None:
        return
    try:
        pool.close()
    except Exception as exc:
        json_log("warning", "shutdown.db_pool_close_failed", error=str(exc))
