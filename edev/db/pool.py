"""
Bounded sqlite3 connection pool and per-operation deadlines.

The pool hands out at most `max_open` connections at a time; a writer pool
built with max_open=1 is what serializes all writes.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from loguru import logger

from edev.db.errors import NotInitializedError, OperationTimeoutError


@dataclass
class PooledConnection:
    raw: sqlite3.Connection
    created_at: float = field(default_factory=time.monotonic)

    def age(self) -> float:
        return time.monotonic() - self.created_at


@dataclass(frozen=True)
class PoolStats:
    max_open: int
    open: int
    in_use: int
    idle: int


class Deadline:
    """
    Cancellation scope for a single operation.

    Once armed with a connection, the statement running on it is interrupted
    when the budget runs out. release() stops the timer; it is idempotent and
    after it returns the connection is never interrupted by this deadline.
    """

    def __init__(self, seconds: float) -> None:
        self._seconds = float(seconds)
        self._expires_at = time.monotonic() + self._seconds
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._released = False
        self.expired = False

    @property
    def seconds(self) -> float:
        return self._seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def arm(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            if self._released:
                return
            self._conn = conn
            self._timer = threading.Timer(self.remaining(), self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._released:
                return
            self.expired = True
            if self._conn is not None:
                self._conn.interrupt()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            if self._timer is not None:
                self._timer.cancel()

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run fn, reporting an interrupt caused by this deadline as a timeout."""
        if self.expired:
            raise OperationTimeoutError(f"operation timed out after {self._seconds:g}s")
        try:
            return fn(*args)
        except sqlite3.OperationalError as e:
            if self.expired and "interrupt" in str(e).lower():
                raise OperationTimeoutError(f"operation timed out after {self._seconds:g}s") from e
            raise


class ConnectionPool:
    def __init__(
        self,
        name: str,
        factory: Callable[[], sqlite3.Connection],
        max_open: int,
        max_lifetime: Optional[float] = None,
    ) -> None:
        if max_open < 1:
            raise ValueError("max_open must be >= 1")
        self.name = name
        self._factory = factory
        self._max_open = int(max_open)
        self._max_lifetime = max_lifetime
        self._slots = threading.BoundedSemaphore(self._max_open)
        self._lock = threading.Lock()
        self._idle: List[PooledConnection] = []
        self._open = 0
        self._in_use = 0
        self._closed = False

    @property
    def max_open(self) -> int:
        return self._max_open

    @property
    def closed(self) -> bool:
        return self._closed

    def prime(self) -> None:
        """Open one idle connection up front so open failures surface at startup."""
        with self._lock:
            if self._closed:
                raise NotInitializedError()
            if self._open:
                return
        pc = PooledConnection(self._factory())
        with self._lock:
            self._idle.append(pc)
            self._open += 1

    def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """Take a connection, waiting up to `timeout` seconds (forever when None)."""
        if self._closed:
            raise NotInitializedError()
        if not self._slots.acquire(timeout=timeout):
            raise OperationTimeoutError(f"{self.name}: timed out waiting for a connection")

        with self._lock:
            if self._closed:
                self._slots.release()
                raise NotInitializedError()
            pc = self._idle.pop() if self._idle else None
            if pc is None:
                self._open += 1
            self._in_use += 1

        if pc is not None:
            return pc
        try:
            return PooledConnection(self._factory())
        except BaseException:
            with self._lock:
                self._open -= 1
                self._in_use -= 1
            self._slots.release()
            raise

    def release(self, pc: PooledConnection, discard: bool = False) -> None:
        retire = discard or self._closed
        replacement: Optional[PooledConnection] = None
        if not retire and self._max_lifetime is not None and pc.age() > self._max_lifetime:
            # open the replacement first so the pool never drops to zero connections
            try:
                replacement = PooledConnection(self._factory())
                retire = True
            except Exception as e:
                logger.warning("{}: connection recycle failed, keeping old one: {}", self.name, e)

        leftover: Optional[PooledConnection] = None
        with self._lock:
            self._in_use -= 1
            keep = replacement if retire else pc
            if keep is None:
                self._open -= 1
            elif self._closed:
                self._open -= 1
                leftover = keep
            else:
                self._idle.append(keep)

        if retire:
            _close_quietly(pc.raw, self.name)
        if leftover is not None:
            _close_quietly(leftover.raw, self.name)
        self._slots.release()

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                max_open=self._max_open,
                open=self._open,
                in_use=self._in_use,
                idle=len(self._idle),
            )

    def close(self) -> None:
        """Close idle connections now; connections still leased are closed on release."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            self._open -= len(idle)
        for pc in idle:
            _close_quietly(pc.raw, self.name)


def _close_quietly(conn: sqlite3.Connection, name: str) -> None:
    try:
        conn.close()
    except Exception as e:
        logger.warning("{}: close connection failed: {}", name, e)
