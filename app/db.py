"""Postgres access for the USE_DB=1 stores."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool

_logger = logging.getLogger("agentc2.db")
_query_logger = logging.getLogger("agentc2.db.query")

_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_ACTIVE_CONN: contextvars.ContextVar[Any | None] = contextvars.ContextVar("agentc2_db_active_conn", default=None)
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("agentc2_db_stats", default=None)
_SLOW_MS = float(os.getenv("AGENTC2_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("AGENTC2_QUERY_LOG", "").strip() == "1"


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _empty_stats() -> dict:
    return {"queries": 0, "acquire_ms": 0.0, "total_ms": 0.0, "names": []}


def reset_db_stats() -> None:
    _DB_STATS.set(_empty_stats())


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        stats = _empty_stats()
        _DB_STATS.set(stats)
    return stats


def _record(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    stats = get_db_stats()
    stats["queries"] += 1
    stats["total_ms"] += elapsed_ms
    stats["names"].append(query_name or "unnamed")
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning(
            "db_slow_query query=%s ms=%.2f rowcount=%s params=%s",
            query_name or "unnamed",
            elapsed_ms,
            rowcount,
            _redact_params(params),
        )
    else:
        _query_logger.info("db_query query=%s ms=%.2f rowcount=%s", query_name or "unnamed", elapsed_ms, rowcount)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        if minconn is None:
            minconn = int(os.getenv("AGENTC2_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("AGENTC2_DB_POOL_MAX", "10"))
        _POOL = SimpleConnectionPool(minconn, maxconn, dsn=get_db_url())
        _logger.info("db_pool_ready min=%s max=%s", minconn, maxconn)


def _get_pool() -> SimpleConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def set_active_conn(conn) -> None:
    _ACTIVE_CONN.set(conn)


def clear_active_conn() -> None:
    _ACTIVE_CONN.set(None)


@contextmanager
def get_conn():
    """Borrow a pooled connection; commit on success, rollback on error.

    Nested use inside ``set_active_conn`` reuses the outer connection so that
    several store calls can share one transaction.
    """
    active = _ACTIVE_CONN.get()
    if active is not None:
        yield active
        return
    pool = _get_pool()
    start = time.perf_counter()
    conn = pool.getconn()
    get_db_stats()["acquire_ms"] += (time.perf_counter() - start) * 1000
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def transaction():
    with get_conn() as conn:
        set_active_conn(conn)
        try:
            yield conn
        finally:
            clear_active_conn()


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        row = cur.fetchone()
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return dict(row) if row else None


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        rows = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return rows


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return rowcount
