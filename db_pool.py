"""SQLite connection pool shared by the persistence helpers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe pool of SQLite connections for one database file."""

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 10.0):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._idle: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._opened: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._idle.get(block=False)
        except Empty:
            pass
        with self._lock:
            if len(self._opened) < self.max_connections:
                conn = self._open()
                self._opened.append(conn)
                logger.debug("Opened SQLite connection %d/%d for %s", len(self._opened), self.max_connections, self.database)
                return conn
        return self._idle.get(block=True, timeout=self.timeout)

    def _release(self, conn: sqlite3.Connection) -> None:
        try:
            conn.rollback()
            self._idle.put(conn, block=False)
        except Exception:
            logger.error("Discarding SQLite connection that could not be returned to the pool", exc_info=True)
            with self._lock:
                if conn in self._opened:
                    self._opened.remove(conn)
            conn.close()

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection and commit on success, roll back on error."""
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def close_all(self) -> None:
        with self._lock:
            while True:
                try:
                    self._idle.get(block=False)
                except Empty:
                    break
            for conn in self._opened:
                conn.close()
            self._opened.clear()
