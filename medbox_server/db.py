"""
PostgreSQL connection pool.

Wraps psycopg2's ThreadedConnectionPool so that:
  - acquisition waits for a free slot (up to a timeout) instead of raising
    PoolError when every connection is checked out;
  - psycopg2 errors raised while a connection is borrowed come back out as
    StoreError / StoreUnavailableError;
  - every borrowed connection goes back to the pool with no open transaction,
    on every exit path.
"""

import logging
import threading
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2 import pool

from . import config
from .exceptions import StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)


class ConnectionPool:
    """Bounded pool of RealDictCursor connections.

    Handlers receive an instance explicitly; use ``connection()`` as a
    context manager to borrow exactly one connection for a request.
    """

    def __init__(self, dsn, minconn=1, maxconn=5, acquire_timeout=10.0, statement_timeout_ms=0):
        connect_kwargs = {'cursor_factory': RealDictCursor}
        if statement_timeout_ms:
            connect_kwargs['options'] = f"-c statement_timeout={int(statement_timeout_ms)}"

        try:
            self._pool = pool.ThreadedConnectionPool(minconn, maxconn, dsn, **connect_kwargs)
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Could not open connection pool: {e}") from e

        self._slots = threading.BoundedSemaphore(maxconn)
        self.minconn = minconn
        self.maxconn = maxconn
        self.acquire_timeout = acquire_timeout

    @contextmanager
    def connection(self):
        """Borrow one connection; wait for a free slot when the pool is exhausted."""
        if not self._slots.acquire(timeout=self.acquire_timeout):
            raise StoreUnavailableError(
                f"No database connection available after {self.acquire_timeout:g}s "
                f"({self.maxconn} in use)"
            )

        conn = None
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as e:
                raise StoreUnavailableError(f"Could not get a database connection: {e}") from e

            try:
                yield conn
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                raise StoreUnavailableError(str(e).strip()) from e
            except psycopg2.Error as e:
                raise StoreError(str(e).strip()) from e
        finally:
            if conn is not None:
                self._release(conn)
            self._slots.release()

    def _release(self, conn):
        # Ends any open transaction (no-op after commit) so NOW() is fresh
        # for the next borrower.
        discard = bool(conn.closed)
        if not discard:
            try:
                conn.rollback()
            except psycopg2.Error as e:
                logger.warning(f"Discarding connection that could not be reset: {e}")
                discard = True
        self._pool.putconn(conn, close=discard)

    def closeall(self):
        self._pool.closeall()
        logger.info("Database pool closed")


class UnavailablePool:
    """Stand-in used when the real pool could not be created at startup.

    Every request fails with StoreUnavailableError instead of crashing the
    server, so /health keeps answering.
    """

    def __init__(self, reason):
        self.reason = reason

    @contextmanager
    def connection(self):
        raise StoreUnavailableError(f"Database pool is not initialized: {self.reason}")
        yield  # pragma: no cover

    def closeall(self):
        pass


def init_db_pool():
    """Create the process-wide pool from configuration."""
    try:
        db_pool = ConnectionPool(
            config.DATABASE_URL,
            minconn=config.DB_POOL_MIN,
            maxconn=config.DB_POOL_MAX,
            acquire_timeout=config.DB_POOL_TIMEOUT,
            statement_timeout_ms=config.DB_STATEMENT_TIMEOUT_MS,
        )
        logger.info(f"✓ Database pool initialized (min={config.DB_POOL_MIN}, max={config.DB_POOL_MAX})")
        return db_pool
    except StoreUnavailableError as e:
        logger.error(f"✗ Database pool initialization failed: {e}")
        return UnavailablePool(str(e))


def init_db(db_pool):
    """Check database connection on startup."""
    try:
        with db_pool.connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT 1")
            cur.close()
        logger.info("✓ Database connection successful")
        return True
    except StoreError as e:
        logger.error(f"✗ Database connection failed: {e}")
        return False
