import gc
import os
import sqlite3
import threading
import time

import pytest
from loguru import logger

from edev.db import sqlite as sqlite_mod
from edev.db.errors import (
    ConfigurationError,
    NoRowsError,
    NotInitializedError,
    OpenError,
    OperationTimeoutError,
    PingError,
    TransactionStateError,
)
from edev.db.pool import ConnectionPool
from edev.db.sqlite import GatewayOptions, SQLite

from conftest import FAST

ENDLESS = "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT count(*) FROM c"


def _count(storage, table):
    return storage.query_one(f"SELECT COUNT(*) FROM {table}").scalar()


def test_open_applies_writer_pragmas(storage):
    def pragma(name):
        with storage.query_on_writer(f"PRAGMA {name}") as rows:
            return rows.fetchone()[0]

    assert pragma("journal_mode") == "wal"
    assert pragma("synchronous") == 1
    assert pragma("foreign_keys") == 1
    assert pragma("busy_timeout") == 15000
    assert pragma("automatic_index") == 1
    assert pragma("temp_store") == 2
    assert pragma("cache_size") == -20000


def test_reader_pool_is_read_only(storage):
    assert storage.query_one("PRAGMA foreign_keys").scalar() == 1
    with pytest.raises(sqlite3.OperationalError):
        storage.query("CREATE TABLE nope(x)")


def test_reader_pool_sized_to_cpus():
    assert GatewayOptions().reader_capacity() == max(4, os.cpu_count() or 1)
    assert GatewayOptions(reader_pool_size=2).reader_capacity() == 2


def test_empty_path_rejected():
    with pytest.raises(ConfigurationError):
        SQLite.open("")


def test_open_failure_is_reported_as_open_error(tmp_path):
    # a directory cannot be opened as a database file
    with pytest.raises(OpenError) as ei:
        SQLite.open(str(tmp_path), FAST)
    assert str(ei.value).startswith("open writer:")


def test_ping_failure_releases_everything(db_path, monkeypatch):
    closed = []
    real_close = ConnectionPool.close

    def spy_close(self):
        closed.append(self.name)
        real_close(self)

    real_ping = sqlite_mod._ping

    def failing_ping(pool, budget):
        if pool.name == "reader":
            raise sqlite3.OperationalError("boom")
        real_ping(pool, budget)

    monkeypatch.setattr(ConnectionPool, "close", spy_close)
    monkeypatch.setattr(sqlite_mod, "_ping", failing_ping)

    with pytest.raises(PingError) as ei:
        SQLite.open(db_path, FAST)
    assert str(ei.value).startswith("ping reader:")
    assert sorted(closed) == ["reader", "writer"]


def test_exec_and_query(storage):
    storage.execute("CREATE TABLE IF NOT EXISTS items(id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
    for i in range(3):
        assert storage.execute("INSERT INTO items(name) VALUES(?)", f"n{i}") == 1

    with storage.query("SELECT COUNT(*) FROM items") as rows:
        assert rows.fetchone()[0] == 3

    assert storage.query_one("SELECT name FROM items WHERE id = 2").scan()["name"] == "n1"
    assert [r["name"] for r in storage.query("SELECT name FROM items ORDER BY id")] == ["n0", "n1", "n2"]


def test_named_params(storage):
    storage.execute("CREATE TABLE kv(k TEXT PRIMARY KEY, v TEXT NOT NULL)")
    storage.execute("INSERT INTO kv(k, v) VALUES(:k, :v)", {"k": "a", "v": "1"})
    assert storage.query_one("SELECT v FROM kv WHERE k = :k", {"k": "a"}).scalar() == "1"


def test_query_one_distinguishes_no_rows_timeout_and_sql_errors(db_path):
    s = SQLite.open(db_path, GatewayOptions(read_timeout=0.2))
    try:
        s.execute("CREATE TABLE t(x INTEGER)")

        with pytest.raises(NoRowsError):
            s.query_one("SELECT x FROM t WHERE x = 1").scan()

        with pytest.raises(sqlite3.OperationalError) as ei:
            s.query_one("SELEC x FROM t").scan()
        assert not isinstance(ei.value, NoRowsError)

        row = s.query_one(ENDLESS)
        err = row.err()
        assert isinstance(err, OperationTimeoutError)
        assert isinstance(err, TimeoutError)
        with pytest.raises(OperationTimeoutError):
            row.scan()
    finally:
        s.close()


def test_query_times_out(db_path):
    s = SQLite.open(db_path, GatewayOptions(read_timeout=0.2))
    try:
        with pytest.raises(OperationTimeoutError):
            s.query(ENDLESS)
        # the connection went back to the pool and is usable again
        assert s.reader.stats().in_use == 0
        assert s.query_one("SELECT 1").scalar() == 1
    finally:
        s.close()


def test_row_handle_released_exactly_once(storage):
    row = storage.query_one("SELECT 42")
    assert storage.reader.stats().in_use == 1
    assert row.err() is None
    assert storage.reader.stats().in_use == 0
    assert row.scalar() == 42
    assert row.err() is None
    assert storage.reader.stats().in_use == 0


def test_abandoned_handles_return_their_connections(storage):
    storage.execute("CREATE TABLE t(x INTEGER)")
    storage.execute("INSERT INTO t(x) VALUES (1), (2), (3)")

    row = storage.query_one("SELECT x FROM t")
    rows = storage.query("SELECT x FROM t")
    assert rows.fetchone()[0] == 1
    assert storage.reader.stats().in_use == 2

    del row, rows
    gc.collect()
    assert storage.reader.stats().in_use == 0

    with storage.query_one("SELECT x FROM t") as r:
        assert r.scalar() == 1
    assert storage.reader.stats().in_use == 0


def test_reader_pool_allows_four_concurrent_reads(storage):
    storage.execute("CREATE TABLE t(x INTEGER)")
    storage.execute("INSERT INTO t(x) VALUES (1), (2)")

    barrier = threading.Barrier(4, timeout=5)
    results = []
    errors = []

    def reader():
        try:
            rows = storage.query("SELECT x FROM t ORDER BY x")
            first = rows.fetchone()[0]
            # all four hold a reader connection at this point
            barrier.wait()
            results.append([first] + [r[0] for r in rows])
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert results == [[1, 2]] * 4
    assert storage.reader.stats().in_use == 0


def test_writer_pool_never_opens_more_than_one_connection(db_path):
    storage = SQLite.open(db_path)
    storage.execute("CREATE TABLE c(n INTEGER)")
    seen = []
    stop = threading.Event()

    def sampler():
        while not stop.wait(0.001):
            st = storage.writer.stats()
            seen.append((st.open, st.in_use))

    def writer(i):
        for j in range(20):
            storage.execute("INSERT INTO c(n) VALUES(?)", i * 100 + j)

    sampling = threading.Thread(target=sampler)
    sampling.start()
    workers = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in workers:
        t.start()
    for t in workers:
        t.join(timeout=30)
    stop.set()
    sampling.join(timeout=5)

    try:
        assert _count(storage, "c") == 160
        assert storage.writer.max_open == 1
        assert all(o <= 1 and u <= 1 for o, u in seen)
    finally:
        storage.close()


def test_writes_queue_behind_open_transaction(db_path):
    s = SQLite.open(db_path, GatewayOptions(write_timeout=0.2, read_timeout=0.2))
    try:
        s.execute("CREATE TABLE t(x INTEGER)")
        tx = s.begin_transaction()
        tx.execute("INSERT INTO t(x) VALUES (1)")

        errors = []

        def other_writer():
            try:
                s.execute("INSERT INTO t(x) VALUES (2)")
            except Exception as e:
                errors.append(e)

        t = threading.Thread(target=other_writer)
        t.start()
        t.join(timeout=5)
        assert len(errors) == 1 and isinstance(errors[0], OperationTimeoutError)

        # the writer-side read path waits for the transaction as well
        with pytest.raises(OperationTimeoutError):
            s.query_on_writer("SELECT COUNT(*) FROM t")

        tx.commit()
        s.execute("INSERT INTO t(x) VALUES (2)")
        assert _count(s, "t") == 2
    finally:
        s.close()


def test_transaction_commit_and_rollback(storage):
    storage.execute("CREATE TABLE kv(k TEXT PRIMARY KEY, v TEXT NOT NULL)")

    tx = storage.begin_transaction()
    tx.execute("INSERT INTO kv(k, v) VALUES(?, ?)", "a", "1")
    tx.commit()
    assert storage.query_one("SELECT v FROM kv WHERE k = ?", "a").scalar() == "1"

    tx2 = storage.begin_transaction()
    tx2.execute("INSERT INTO kv(k, v) VALUES(?, ?)", "b", "2")
    tx2.rollback()
    with pytest.raises(NoRowsError):
        storage.query_one("SELECT v FROM kv WHERE k = ?", "b").scan()


def test_transaction_reads_its_own_writes(storage):
    storage.execute("CREATE TABLE t(x INTEGER)")
    tx = storage.begin_transaction()
    try:
        tx.execute("INSERT INTO t(x) VALUES (7)")
        assert tx.query_one("SELECT COUNT(*) FROM t").scalar() == 1
        assert [r[0] for r in tx.query("SELECT x FROM t")] == [7]
        # readers only see committed data
        assert _count(storage, "t") == 0
        tx.commit()
    finally:
        tx.rollback()
    assert _count(storage, "t") == 1


def test_double_commit_errors_and_double_rollback_is_noop(storage):
    storage.execute("CREATE TABLE t(x INTEGER)")

    tx = storage.begin_transaction()
    tx.execute("INSERT INTO t(x) VALUES (1)")
    tx.commit()
    with pytest.raises(TransactionStateError):
        tx.commit()
    with pytest.raises(TransactionStateError):
        tx.execute("INSERT INTO t(x) VALUES (2)")
    assert isinstance(tx.query_one("SELECT 1").err(), TransactionStateError)
    assert _count(storage, "t") == 1

    tx2 = storage.begin_transaction()
    tx2.rollback()
    tx2.rollback()
    assert not tx2.active
    assert storage.writer.stats().in_use == 0


def test_failed_commit_rolls_back_and_resolves(storage):
    storage.execute("CREATE TABLE parent(id INTEGER PRIMARY KEY)")
    storage.execute(
        "CREATE TABLE child(id INTEGER PRIMARY KEY, "
        "parent_id INTEGER REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
    )

    tx = storage.begin_transaction()
    tx.execute("INSERT INTO child(parent_id) VALUES (99)")
    with pytest.raises(sqlite3.IntegrityError):
        tx.commit()
    assert not tx.active
    with pytest.raises(TransactionStateError):
        tx.commit()
    tx.rollback()

    assert _count(storage, "child") == 0
    assert storage.writer.stats().in_use == 0


def test_transaction_context_manager(storage):
    storage.execute("CREATE TABLE t(x INTEGER)")

    with storage.begin_transaction() as tx:
        tx.execute("INSERT INTO t(x) VALUES (1)")
    assert _count(storage, "t") == 1

    with pytest.raises(RuntimeError):
        with storage.begin_transaction() as tx:
            tx.execute("INSERT INTO t(x) VALUES (2)")
            raise RuntimeError("abort")
    assert _count(storage, "t") == 1


def test_constraint_errors_surface_verbatim(storage):
    storage.execute("CREATE TABLE u(name TEXT UNIQUE)")
    storage.execute("CREATE TABLE p(id INTEGER PRIMARY KEY)")
    storage.execute("CREATE TABLE c(p_id INTEGER NOT NULL REFERENCES p(id))")
    storage.execute("INSERT INTO u(name) VALUES ('a')")

    with pytest.raises(sqlite3.IntegrityError):
        storage.execute("INSERT INTO u(name) VALUES ('a')")
    with pytest.raises(sqlite3.IntegrityError):
        storage.execute("INSERT INTO c(p_id) VALUES (1)")


def test_three_rows_then_rolled_back_fourth(storage):
    storage.execute("CREATE TABLE t(id INTEGER PRIMARY KEY, v TEXT)")
    for v in ("a", "b", "c"):
        storage.execute("INSERT INTO t(v) VALUES(?)", v)
    with storage.query("SELECT COUNT(*) FROM t") as rows:
        assert rows.fetchone()[0] == 3

    tx = storage.begin_transaction()
    tx.execute("INSERT INTO t(v) VALUES(?)", "d")
    tx.rollback()

    with storage.query("SELECT COUNT(*) FROM t") as rows:
        assert rows.fetchone()[0] == 3


def test_committed_row_survives_reopen(db_path):
    s = SQLite.open(db_path, FAST)
    s.execute("CREATE TABLE t(v TEXT)")
    tx = s.begin_transaction()
    tx.execute("INSERT INTO t(v) VALUES ('kept')")
    tx.commit()
    s.close()

    s2 = SQLite.open(db_path, FAST)
    try:
        assert s2.query_one("SELECT v FROM t").scalar() == "kept"
    finally:
        s2.close()


def test_checkpoint_truncates_wal_without_losing_data(db_path):
    s = SQLite.open(db_path, FAST)
    s.execute("CREATE TABLE t(x INTEGER)")
    for i in range(100):
        s.execute("INSERT INTO t(x) VALUES(?)", i)

    wal = db_path + "-wal"
    assert os.path.getsize(wal) > 0

    res = s.checkpoint_wal()
    assert res.busy == 0
    assert os.path.getsize(wal) == 0
    s.close()

    s2 = SQLite.open(db_path, FAST)
    try:
        assert _count(s2, "t") == 100
        assert s2.query_one("SELECT SUM(x) FROM t").scalar() == sum(range(100))
    finally:
        s2.close()


def test_close_is_idempotent_and_blocks_further_use(db_path):
    s = SQLite.open(db_path, FAST)
    s.close()
    s.close()

    with pytest.raises(NotInitializedError):
        s.execute("SELECT 1")
    with pytest.raises(NotInitializedError):
        s.query("SELECT 1")
    with pytest.raises(NotInitializedError):
        s.begin_transaction()
    assert isinstance(s.query_one("SELECT 1").err(), NotInitializedError)


def test_close_logs_checkpoint_failure(db_path, monkeypatch):
    s = SQLite.open(db_path, FAST)
    messages = []
    sink = logger.add(lambda m: messages.append(str(m)), level="WARNING")

    def broken_checkpoint():
        raise sqlite3.OperationalError("disk on fire")

    monkeypatch.setattr(s, "checkpoint_wal", broken_checkpoint)
    try:
        s.close()
    finally:
        logger.remove(sink)

    assert any("wal checkpoint" in m and "disk on fire" in m for m in messages)
    with pytest.raises(NotInitializedError):
        s.execute("SELECT 1")


ENDLESS_INSERT = (
    "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) "
    "INSERT INTO t(x) SELECT count(*) FROM c"
)


def test_statement_timeout_aborts_transaction(db_path):
    s = SQLite.open(db_path, GatewayOptions(write_timeout=0.3, read_timeout=0.3))
    try:
        s.execute("CREATE TABLE t(x INTEGER)")
        tx = s.begin_transaction()
        tx.execute("INSERT INTO t(x) VALUES (1)")

        with pytest.raises(OperationTimeoutError):
            tx.execute(ENDLESS_INSERT)
        assert tx.aborted

        # nothing may run in autocommit mode on the aborted handle
        with pytest.raises(TransactionStateError, match="transaction aborted"):
            tx.execute("INSERT INTO t(x) VALUES (999)")
        with pytest.raises(TransactionStateError):
            tx.query("SELECT x FROM t")
        assert isinstance(tx.query_one("SELECT 1").err(), TransactionStateError)

        tx.rollback()
        assert not tx.active
        assert s.writer.stats().in_use == 0
        assert s.query("SELECT x FROM t").fetchall() == []

        s.execute("INSERT INTO t(x) VALUES (2)")
        assert [r[0] for r in s.query("SELECT x FROM t")] == [2]
    finally:
        s.close()


def test_read_timeout_inside_transaction_blocks_commit(db_path):
    s = SQLite.open(db_path, GatewayOptions(write_timeout=0.3, read_timeout=0.3))
    try:
        s.execute("CREATE TABLE t(x INTEGER)")
        tx = s.begin_transaction()
        tx.execute("INSERT INTO t(x) VALUES (1)")

        assert isinstance(tx.query_one(ENDLESS).err(), OperationTimeoutError)
        with pytest.raises(TransactionStateError, match="transaction aborted"):
            tx.commit()

        assert not tx.active
        assert s.writer.stats().in_use == 0
        assert _count(s, "t") == 0
    finally:
        s.close()


def test_expired_open_cursor_aborts_transaction(db_path):
    s = SQLite.open(db_path, GatewayOptions(write_timeout=0.2, read_timeout=0.2))
    try:
        s.execute("CREATE TABLE t(x INTEGER)")
        s.execute("INSERT INTO t(x) VALUES (1), (2), (3)")

        tx = s.begin_transaction()
        tx.execute("INSERT INTO t(x) VALUES (4)")
        rows = tx.query("SELECT x FROM t ORDER BY x")
        assert rows.fetchone()[0] == 1
        # the cursor's budget runs out while it is still open
        time.sleep(0.5)

        with pytest.raises(TransactionStateError, match="transaction aborted"):
            tx.execute("INSERT INTO t(x) VALUES (5)")
        tx.rollback()

        assert s.writer.stats().in_use == 0
        assert [r[0] for r in s.query("SELECT x FROM t ORDER BY x")] == [1, 2, 3]
        # the writer connection is clean for the next caller
        s.execute("INSERT INTO t(x) VALUES (6)")
        assert _count(s, "t") == 4
    finally:
        s.close()


def test_open_cursor_does_not_interrupt_later_statements(db_path):
    s = SQLite.open(db_path, GatewayOptions(write_timeout=0.2, read_timeout=0.2))
    try:
        s.execute("CREATE TABLE src(x INTEGER)")
        s.execute("CREATE TABLE dst(x INTEGER)")
        s.execute("INSERT INTO src(x) VALUES (1), (2)")

        with s.begin_transaction() as tx:
            rows = tx.query("SELECT x FROM src ORDER BY x")
            first = rows.fetchone()[0]
            tx.execute("INSERT INTO dst(x) VALUES (?)", first)
            time.sleep(0.4)
            tx.execute("INSERT INTO dst(x) VALUES (?)", rows.fetchone()[0])
            assert not tx.aborted

        assert [r[0] for r in s.query("SELECT x FROM dst ORDER BY x")] == [1, 2]
        assert s.writer.stats().in_use == 0
    finally:
        s.close()
