"""
SQLite storage gateway with separate writer and reader pools.

- One writer connection (read-write), many readers (mode=ro).
- WAL + synchronous=NORMAL + busy_timeout, applied once per connection.
- Every statement runs under its own deadline; BEGIN does not.
- WAL checkpoint (TRUNCATE) on close.
"""

import os
from pathlib import Path
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union
from urllib.parse import quote

from loguru import logger

from edev.db.errors import (
    ConfigurationError,
    NoRowsError,
    NotInitializedError,
    OpenError,
    PingError,
    TransactionStateError,
)
from edev.db.pool import ConnectionPool, Deadline, PooledConnection

Params = Union[Sequence[Any], Mapping[str, Any]]


@dataclass(frozen=True)
class GatewayOptions:
    # busy_timeout is longer than the write budget so lock waits end as timeouts, not SQLITE_BUSY
    busy_timeout: float = 15.0
    write_timeout: float = 8.0
    read_timeout: float = 5.0
    checkpoint_timeout: float = 3.0
    writer_max_lifetime: Optional[float] = 120.0
    reader_max_lifetime: Optional[float] = 300.0
    reader_pool_minimum: int = 4
    reader_pool_size: Optional[int] = None
    cache_size_kib: int = 20000

    def reader_capacity(self) -> int:
        if self.reader_pool_size:
            return int(self.reader_pool_size)
        return max(int(self.reader_pool_minimum), os.cpu_count() or 1)


class CheckpointResult(NamedTuple):
    busy: int
    log_frames: int
    checkpointed_frames: int


def _bind(params: Tuple[Any, ...]) -> Params:
    if len(params) == 1 and isinstance(params[0], Mapping):
        return params[0]
    return params


def _database_uri(path: str, query: str) -> str:
    if path.startswith("file:"):
        sep = "&" if "?" in path else "?"
        return f"{path}{sep}{query}"
    return f"file:{quote(path)}?{query}"


class Lease:
    """
    Ties an open cursor to its deadline and, outside transactions, to the
    pooled connection it runs on. release() runs exactly once.
    """

    def __init__(
        self,
        conn: PooledConnection,
        deadline: Deadline,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.conn = conn
        self.deadline = deadline
        self._pool = pool
        self._cursor: Optional[sqlite3.Cursor] = None
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def execute(self, sql: str, params: Params) -> sqlite3.Cursor:
        self._cursor = self.deadline.call(self.conn.raw.execute, sql, params)
        return self._cursor

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self.deadline.release()
        try:
            if self._cursor is not None:
                self._cursor.close()
        except sqlite3.Error as e:
            logger.debug("cursor close: {}", e)
        finally:
            if self._pool is not None:
                self._pool.release(self.conn)


class Rows:
    """Cursor over a result set; the lease is released on exhaustion, close() or exit."""

    def __init__(self, cursor: sqlite3.Cursor, lease: Lease) -> None:
        self._cursor = cursor
        self._lease = lease

    @property
    def description(self):
        return self._cursor.description

    def __iter__(self) -> Iterator[sqlite3.Row]:
        return self

    def __next__(self) -> sqlite3.Row:
        row = self.fetchone()
        if row is None:
            raise StopIteration
        return row

    def fetchone(self) -> Optional[sqlite3.Row]:
        if self._lease.released:
            return None
        try:
            row = self._lease.deadline.call(self._cursor.fetchone)
        except BaseException:
            self.close()
            raise
        if row is None:
            self.close()
        return row

    def fetchall(self) -> List[sqlite3.Row]:
        try:
            return list(self)
        finally:
            self.close()

    def close(self) -> None:
        self._lease.release()

    def __enter__(self) -> "Rows":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __del__(self) -> None:
        lease = getattr(self, "_lease", None)
        if lease is not None:
            lease.release()


class Row:
    """
    Single-row result. The deadline stays armed until scan(), err() or close()
    is called, so a value that is already materialized is never reported as
    canceled.
    """

    def __init__(
        self,
        cursor: Optional[sqlite3.Cursor] = None,
        lease: Optional[Lease] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self._cursor = cursor
        self._lease = lease
        self._error = error
        self._row: Optional[sqlite3.Row] = None
        self._scanned = False

    def _release(self) -> None:
        if self._lease is not None:
            self._lease.release()

    def _materialize(self) -> None:
        if self._scanned:
            return
        self._scanned = True
        try:
            if self._error is not None:
                return
            if self._cursor is None or self._lease is None:
                self._error = NoRowsError("nil row")
            elif self._lease.released:
                self._error = NoRowsError("row closed")
            else:
                self._row = self._lease.deadline.call(self._cursor.fetchone)
        except Exception as e:
            self._error = e
        finally:
            self._release()

    def scan(self) -> sqlite3.Row:
        """Return the first row. Raises NoRowsError when the result is empty."""
        self._materialize()
        if self._error is not None:
            raise self._error
        if self._row is None:
            raise NoRowsError()
        return self._row

    def scalar(self) -> Any:
        return self.scan()[0]

    def err(self) -> Optional[BaseException]:
        """Error from running the query, if any (an empty result is not an error)."""
        self._materialize()
        return self._error

    def close(self) -> None:
        self._release()

    def __enter__(self) -> "Row":
        return self

    def __exit__(self, *exc: Any) -> None:
        self._release()

    def __del__(self) -> None:
        lease = getattr(self, "_lease", None)
        if lease is not None:
            lease.release()


class Transaction:
    """
    Write transaction holding the writer pool's only connection.

    Statements inside run with the same budgets as outside, on the
    transaction's connection, so they observe its uncommitted writes.

    A statement that runs out of budget aborts the whole transaction: SQLite
    rolls an interrupted write back on its own, so nothing after it may run
    in autocommit mode on the same handle. Further statements and commit()
    raise TransactionStateError("transaction aborted"); rollback() just
    hands the connection back.

    Starting a statement disarms the deadlines of result sets still open on
    the transaction, so a stale cursor never interrupts a later statement.
    """

    def __init__(self, pool: ConnectionPool, conn: PooledConnection, options: GatewayOptions) -> None:
        self._pool = pool
        self._conn: Optional[PooledConnection] = conn
        self._options = options
        self._leases: List[Lease] = []
        self._aborted = False

    @property
    def active(self) -> bool:
        return self._conn is not None

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _settle(self) -> None:
        open_leases = []
        for lease in self._leases:
            if not lease.released:
                lease.deadline.release()
                open_leases.append(lease)
            # an expired deadline has already interrupted this connection
            if lease.deadline.expired:
                self._aborted = True
        self._leases = open_leases

    def _close_leases(self) -> None:
        leases, self._leases = self._leases, []
        for lease in leases:
            lease.release()
            if lease.deadline.expired:
                self._aborted = True

    def _require(self) -> PooledConnection:
        conn = self._conn
        if conn is None:
            raise TransactionStateError("no active transaction")
        self._settle()
        if not conn.raw.in_transaction:
            self._aborted = True
        if self._aborted:
            raise TransactionStateError("transaction aborted")
        return conn

    def _start(self, budget: float, sql: str, params: Tuple[Any, ...]) -> Tuple[sqlite3.Cursor, Lease]:
        conn = self._require()
        lease = Lease(conn, Deadline(budget))
        lease.deadline.arm(conn.raw)
        try:
            cursor = lease.execute(sql, _bind(params))
        except BaseException:
            lease.release()
            if lease.deadline.expired or not conn.raw.in_transaction:
                self._aborted = True
            raise
        return cursor, lease

    def _finish(self) -> None:
        self._close_leases()
        conn, self._conn = self._conn, None
        if conn is not None:
            self._pool.release(conn)

    def execute(self, sql: str, *params: Any) -> int:
        cursor, lease = self._start(self._options.write_timeout, sql, params)
        try:
            return int(cursor.rowcount)
        finally:
            lease.release()

    def query(self, sql: str, *params: Any) -> Rows:
        cursor, lease = self._start(self._options.read_timeout, sql, params)
        self._leases.append(lease)
        return Rows(cursor, lease)

    def query_one(self, sql: str, *params: Any) -> Row:
        try:
            cursor, lease = self._start(self._options.read_timeout, sql, params)
        except Exception as e:
            return Row(error=e)
        self._leases.append(lease)
        return Row(cursor, lease)

    def commit(self) -> None:
        conn = self._conn
        if conn is None:
            raise TransactionStateError("no active transaction")
        # open cursors keep a pending interrupt alive; close them before COMMIT/ROLLBACK
        self._close_leases()
        if self._aborted or not conn.raw.in_transaction:
            self.rollback()
            raise TransactionStateError("transaction aborted")
        try:
            conn.raw.execute("COMMIT")
        except sqlite3.Error:
            try:
                if conn.raw.in_transaction:
                    conn.raw.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.warning("rollback after failed commit: {}", e)
            self._finish()
            raise
        self._finish()

    def rollback(self) -> None:
        conn = self._conn
        if conn is None:
            return
        try:
            self._close_leases()
            # an interrupted statement may already have rolled the transaction back
            if conn.raw.in_transaction:
                conn.raw.execute("ROLLBACK")
        finally:
            self._finish()

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self.active:
            self.commit()
        else:
            self.rollback()


class SQLite:
    """Storage gateway. Build it with SQLite.open() and pass it to whoever needs storage."""

    def __init__(
        self,
        path: str,
        writer: ConnectionPool,
        reader: ConnectionPool,
        options: GatewayOptions,
    ) -> None:
        self.path = path
        self.options = options
        self._rw: Optional[ConnectionPool] = writer
        self._ro: Optional[ConnectionPool] = reader

    @classmethod
    def open(cls, path: str, options: Optional[GatewayOptions] = None) -> "SQLite":
        if not path:
            raise ConfigurationError("database path required")
        opts = options or GatewayOptions()
        busy_ms = int(opts.busy_timeout * 1000)
        if not path.startswith("file:"):
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        rw_uri = _database_uri(path, "mode=rwc")
        ro_uri = _database_uri(path, "mode=ro")

        def _writer() -> sqlite3.Connection:
            conn = _connect(rw_uri, opts.busy_timeout)
            try:
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.execute("PRAGMA synchronous = NORMAL;")
                conn.execute(f"PRAGMA busy_timeout = {busy_ms};")
                conn.execute("PRAGMA foreign_keys = ON;")
                conn.execute("PRAGMA automatic_index = ON;")
                conn.execute("PRAGMA temp_store = MEMORY;")
                conn.execute(f"PRAGMA cache_size = -{int(opts.cache_size_kib)};")
            except BaseException:
                conn.close()
                raise
            return conn

        def _reader() -> sqlite3.Connection:
            conn = _connect(ro_uri, opts.busy_timeout)
            try:
                conn.execute(f"PRAGMA busy_timeout = {busy_ms};")
                conn.execute("PRAGMA foreign_keys = ON;")
            except BaseException:
                conn.close()
                raise
            return conn

        rw = ConnectionPool("writer", _writer, max_open=1, max_lifetime=opts.writer_max_lifetime)
        try:
            rw.prime()
        except Exception as e:
            rw.close()
            raise OpenError(f"open writer: {e}") from e
        try:
            _ping(rw, opts.write_timeout)
        except Exception as e:
            rw.close()
            raise PingError(f"ping writer: {e}") from e

        ro = ConnectionPool("reader", _reader, max_open=opts.reader_capacity(), max_lifetime=opts.reader_max_lifetime)
        try:
            ro.prime()
        except Exception as e:
            ro.close()
            rw.close()
            raise OpenError(f"open reader: {e}") from e
        try:
            _ping(ro, opts.read_timeout)
        except Exception as e:
            ro.close()
            rw.close()
            raise PingError(f"ping reader: {e}") from e

        logger.debug("sqlite opened: {} (readers={})", path, ro.max_open)
        return cls(path, rw, ro, opts)

    @property
    def writer(self) -> ConnectionPool:
        if self._rw is None or self._rw.closed:
            raise NotInitializedError()
        return self._rw

    @property
    def reader(self) -> ConnectionPool:
        if self._ro is None or self._ro.closed:
            raise NotInitializedError()
        return self._ro

    def _start(self, pool: ConnectionPool, budget: float, sql: str, params: Tuple[Any, ...]) -> Tuple[sqlite3.Cursor, Lease]:
        deadline = Deadline(budget)
        conn = pool.acquire(timeout=deadline.remaining())
        lease = Lease(conn, deadline, pool)
        deadline.arm(conn.raw)
        try:
            cursor = lease.execute(sql, _bind(params))
        except BaseException:
            lease.release()
            raise
        return cursor, lease

    def begin_transaction(self) -> Transaction:
        # no deadline here: a timeout firing between BEGIN and the first
        # statement would leave the caller with an already-closed transaction
        pool = self.writer
        conn = pool.acquire(timeout=None)
        try:
            conn.raw.execute("BEGIN IMMEDIATE")
        except BaseException:
            pool.release(conn)
            raise
        return Transaction(pool, conn, self.options)

    def execute(self, sql: str, *params: Any) -> int:
        """Run a write statement on the writer pool (autocommit). Returns rowcount."""
        cursor, lease = self._start(self.writer, self.options.write_timeout, sql, params)
        try:
            return int(cursor.rowcount)
        finally:
            lease.release()

    def query(self, sql: str, *params: Any) -> Rows:
        cursor, lease = self._start(self.reader, self.options.read_timeout, sql, params)
        return Rows(cursor, lease)

    def query_one(self, sql: str, *params: Any) -> Row:
        try:
            pool = self.reader
            deadline = Deadline(self.options.read_timeout)
            conn = pool.acquire(timeout=deadline.remaining())
        except Exception as e:
            return Row(error=e)
        lease = Lease(conn, deadline, pool)
        deadline.arm(conn.raw)
        try:
            cursor = lease.execute(sql, _bind(params))
        except Exception as e:
            return Row(lease=lease, error=e)
        return Row(cursor, lease)

    def query_on_writer(self, sql: str, *params: Any) -> Rows:
        """
        Same as query() but on the writer connection. Waits for any open
        transaction to finish, so it only ever sees committed state.
        """
        cursor, lease = self._start(self.writer, self.options.read_timeout, sql, params)
        return Rows(cursor, lease)

    def checkpoint_wal(self) -> CheckpointResult:
        cursor, lease = self._start(self.writer, self.options.checkpoint_timeout, "PRAGMA wal_checkpoint(TRUNCATE);", ())
        try:
            row = lease.deadline.call(cursor.fetchone)
        finally:
            lease.release()
        return CheckpointResult(int(row[0]), int(row[1]), int(row[2]))

    def close(self) -> None:
        if self._rw is None and self._ro is None:
            return
        if self._rw is not None and not self._rw.closed:
            try:
                self.checkpoint_wal()
            except Exception as e:
                logger.warning("wal checkpoint: {}", e)
        ro, self._ro = self._ro, None
        rw, self._rw = self._rw, None
        if ro is not None:
            ro.close()
        if rw is not None:
            rw.close()
        logger.debug("sqlite closed: {}", self.path)

    def __enter__(self) -> "SQLite":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def _connect(uri: str, busy_timeout: float) -> sqlite3.Connection:
    conn = sqlite3.connect(
        uri,
        uri=True,
        timeout=busy_timeout,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    return conn


def _ping(pool: ConnectionPool, budget: float) -> None:
    deadline = Deadline(budget)
    conn = pool.acquire(timeout=deadline.remaining())
    lease = Lease(conn, deadline, pool)
    deadline.arm(conn.raw)
    try:
        lease.execute("SELECT 1;", ()).fetchone()
    finally:
        lease.release()
