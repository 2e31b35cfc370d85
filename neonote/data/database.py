from __future__ import annotations

import fcntl
import logging
import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

from neonote.data.errors import StorageUnavailable
from neonote.data.schema import DB_FILENAME, PRAGMAS_SQL, SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)

LOCK_FILENAME = "LOCK"


class NotesDatabase:
    """Process-wide handle on the embedded database directory.

    Open it once at startup and close it once at shutdown, either
    explicitly or with ``with``. Each thread gets its own SQLite connection
    so readers never wait on each other. Connections left behind by threads
    that have exited are closed the next time a new thread connects.
    ``close()`` refuses new work and waits for in-flight operations before
    closing every connection.

    The directory is locked with ``flock`` while open, so a second handle
    (in this process or another one) cannot open it at the same time.
    """

    def __init__(self, directory: str | Path, busy_timeout: float = 5.0) -> None:
        self._directory = Path(directory)
        self._busy_timeout = busy_timeout
        self._state = threading.Condition()
        self._open = False
        self._in_flight = 0
        self._connections: dict[threading.Thread, sqlite3.Connection] = {}
        self._local = threading.local()
        self._lock_fd: int | None = None

    @property
    def db_path(self) -> Path:
        return self._directory / DB_FILENAME

    @property
    def is_open(self) -> bool:
        with self._state:
            return self._open

    @property
    def connection_count(self) -> int:
        with self._state:
            return len(self._connections)

    def open(self) -> NotesDatabase:
        with self._state:
            if self._open:
                return self
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageUnavailable(
                    f"Cannot create database directory {self._directory}: {exc}"
                ) from exc
            self._acquire_directory_lock()
            try:
                conn = self._connect()
                self._init_schema(conn)
            except BaseException:
                self._release_directory_lock()
                raise
            self._local = threading.local()
            self._local.conn = conn
            self._connections = {threading.current_thread(): conn}
            self._open = True
        logger.info(f"Opened notes database at {self.db_path}")
        return self

    def close(self) -> None:
        with self._state:
            if not self._open:
                return
            self._open = False
            while self._in_flight:
                logger.debug(
                    f"Waiting for {self._in_flight} in-flight operation(s) to finish"
                )
                self._state.wait()
            connections = list(self._connections.values())
            self._connections = {}
            self._local = threading.local()
        for conn in connections:
            conn.close()
        self._release_directory_lock()
        logger.info(f"Closed notes database at {self.db_path}")

    def __enter__(self) -> NotesDatabase:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield this thread's connection for the duration of one operation."""
        with self._state:
            if not self._open:
                raise StorageUnavailable("Notes database is closed")
            self._in_flight += 1
        try:
            yield self._thread_connection()
        finally:
            with self._state:
                self._in_flight -= 1
                if not self._in_flight:
                    self._state.notify_all()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body inside a write transaction.

        The transaction commits when the body returns and rolls back when
        it raises. Database errors surface as ``StorageUnavailable``; any
        other exception is re-raised unchanged after the rollback.
        """
        with self.connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Cannot start transaction: {exc}") from exc
            try:
                yield conn
            except BaseException as exc:
                self._rollback(conn)
                if isinstance(exc, sqlite3.Error):
                    raise StorageUnavailable(f"Write failed: {exc}") from exc
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageUnavailable(f"Commit failed: {exc}") from exc

    def _thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._state:
                self._prune_dead_connections()
                self._connections[threading.current_thread()] = conn
        return conn

    def _prune_dead_connections(self) -> None:
        # caller holds self._state
        for thread in [t for t in self._connections if not t.is_alive()]:
            self._connections.pop(thread).close()
            logger.debug(f"Closed connection of exited thread {thread.name}")

    def _connect(self) -> sqlite3.Connection:
        try:
            # autocommit mode; transactions are begun explicitly
            conn = sqlite3.connect(
                self.db_path,
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        try:
            conn.executescript(PRAGMAS_SQL)
            conn.executescript(SCHEMA_SQL)
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO meta(key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                logger.info(f"Initialised schema version {SCHEMA_VERSION}")
            elif int(row["value"]) != SCHEMA_VERSION:
                raise StorageUnavailable(
                    f"Unsupported schema version {row['value']} in {self.db_path}"
                )
        except sqlite3.Error as exc:
            conn.close()
            raise StorageUnavailable(
                f"Cannot initialise schema in {self.db_path}: {exc}"
            ) from exc
        except StorageUnavailable:
            conn.close()
            raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")

    def _acquire_directory_lock(self) -> None:
        path = self._directory / LOCK_FILENAME
        try:
            fd = os.open(path, os.O_CREAT | os.O_RDWR)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot open lock file {path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise StorageUnavailable(
                f"Database directory {self._directory} is already in use"
            ) from exc
        self._lock_fd = fd

    def _release_directory_lock(self) -> None:
        if self._lock_fd is None:
            return
        fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        os.close(self._lock_fd)
        self._lock_fd = None
