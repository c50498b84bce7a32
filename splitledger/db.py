from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

import mysql.connector
from mysql.connector import errorcode, pooling

from .config import config
from .errors import (
    ConstraintViolationError,
    DuplicateEntryError,
    ForeignKeyViolationError,
    LedgerError,
    TransientIOError,
)
from .log import get_logger

log = get_logger(__name__)

# MySQL 5.7.8+ error for statements killed by max_execution_time
ER_QUERY_TIMEOUT = 3024

_TRANSIENT_CODES = {
    errorcode.ER_LOCK_WAIT_TIMEOUT,
    errorcode.ER_LOCK_DEADLOCK,
    ER_QUERY_TIMEOUT,
    errorcode.CR_SERVER_GONE_ERROR,
    errorcode.CR_SERVER_LOST,
    errorcode.CR_CONN_HOST_ERROR,
}


def translate_error(exc: mysql.connector.Error) -> Optional[LedgerError]:
    """Map a driver error onto the ledger taxonomy, or None for programming errors."""
    if exc.errno == errorcode.ER_DUP_ENTRY:
        return DuplicateEntryError(exc.msg)
    if exc.errno in (errorcode.ER_NO_REFERENCED_ROW_2, errorcode.ER_NO_REFERENCED_ROW):
        return ForeignKeyViolationError(exc.msg)
    if exc.errno in (errorcode.ER_BAD_NULL_ERROR, errorcode.ER_CHECK_CONSTRAINT_VIOLATED):
        return ConstraintViolationError(exc.msg)
    if exc.errno in _TRANSIENT_CODES or isinstance(
        exc, (mysql.connector.errors.OperationalError, mysql.connector.errors.InterfaceError)
    ):
        return TransientIOError(exc.msg or str(exc))
    return None


def _reraise(exc: mysql.connector.Error):
    error = translate_error(exc)
    if error is None:
        raise exc
    raise error from exc


class Database:
    def __init__(self, timeout_seconds: int = None) -> None:
        self.timeout_seconds = timeout_seconds or config.QUERY_TIMEOUT_SECONDS
        self._pool = None

    @property
    def pool(self) -> pooling.MySQLConnectionPool:
        # Created on first use so importing the app never dials the server
        if self._pool is None:
            try:
                self._pool = pooling.MySQLConnectionPool(
                    pool_name="splitledger_pool",
                    pool_size=config.DB_POOL_SIZE,
                    host=config.DB_HOST,
                    port=config.DB_PORT,
                    user=config.DB_USER,
                    password=config.DB_PASSWORD,
                    database=config.DB_NAME,
                    connection_timeout=self.timeout_seconds,
                    auth_plugin="mysql_native_password",
                )
            except mysql.connector.Error as exc:
                log.error("db_pool_unavailable", host=config.DB_HOST, errno=exc.errno)
                raise TransientIOError(str(exc)) from exc
        return self._pool

    def _limit_session(self, conn) -> None:
        cursor = conn.cursor()
        try:
            cursor.execute("SET SESSION max_execution_time = %s", (self.timeout_seconds * 1000,))
            cursor.execute("SET SESSION innodb_lock_wait_timeout = %s", (max(1, self.timeout_seconds),))
        finally:
            cursor.close()

    @contextmanager
    def connection(self):
        try:
            conn = self.pool.get_connection()
        except mysql.connector.Error as exc:
            raise TransientIOError(str(exc)) from exc
        try:
            try:
                self._limit_session(conn)
            except mysql.connector.Error as exc:
                raise TransientIOError(str(exc)) from exc
            yield conn
        finally:
            # Back to the pool even when the session setup failed
            conn.close()

    @contextmanager
    def cursor(self, dictionary: bool = True):
        """One transaction: commit when the block exits cleanly, rollback otherwise."""
        with self.connection() as conn:
            cursor = conn.cursor(dictionary=dictionary)
            try:
                yield cursor
                conn.commit()
            except mysql.connector.Error as exc:
                conn.rollback()
                log.warning("db_statement_failed", errno=exc.errno, sqlstate=exc.sqlstate)
                _reraise(exc)
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def execute_rowcount(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.rowcount


db = Database()
