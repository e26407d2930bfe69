
import psycopg2
from psycopg2.pool import SimpleConnectionPool
from contextlib import contextmanager
from contextvars import ContextVar
from settings import settings
import psycopg2.extras
_pool: SimpleConnectionPool | None = None

# connection bound by transaction(); nested get_conn() calls reuse it
_active_conn: ContextVar = ContextVar("active_conn", default=None)


def init_pool():
    """
    Initialize the PostgreSQL connection pool.
    Called once at app startup.
    """
    psycopg2.extras.register_uuid()
    global _pool
    if _pool is None:
        if not (settings.DATABASE_URL or "").strip():
            raise RuntimeError("DATABASE_URL is not set.")
        _pool = SimpleConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=settings.DATABASE_URL,
            connect_timeout=5,
        )


def close_pool():
    """
    Gracefully close all pooled connections.
    """
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    Provides a transactional DB connection.
    Auto-commits on success, rolls back on error.

    Inside transaction() the bound connection is yielded as-is and the
    outermost block decides commit/rollback.
    """
    active = _active_conn.get()
    if active is not None:
        yield active
        return

    if _pool is None:
        init_pool()

    conn = _pool.getconn()

    try:
        # Safety: never allow long-running queries
        with conn.cursor() as cur:
            cur.execute("SET statement_timeout = '5000ms';")
            cur.execute("SET idle_in_transaction_session_timeout = '5000ms';")
            cur.execute("SET application_name = 'cashout_core';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)


@contextmanager
def transaction():
    """
    One isolated unit of work: every get_conn() in the block shares the
    same connection, committed once at the end.
    """
    if _active_conn.get() is not None:
        yield _active_conn.get()
        return

    with get_conn() as conn:
        token = _active_conn.set(conn)
        try:
            yield conn
        finally:
            _active_conn.reset(token)


@contextmanager
def savepoint(conn, name: str):
    """
    Isolate a best-effort write so its failure does not poison the
    surrounding transaction.
    """
    with conn.cursor() as cur:
        cur.execute(f"SAVEPOINT {name};")
    try:
        yield
    except Exception:
        with conn.cursor() as cur:
            cur.execute(f"ROLLBACK TO SAVEPOINT {name};")
        raise
    else:
        with conn.cursor() as cur:
            cur.execute(f"RELEASE SAVEPOINT {name};")
