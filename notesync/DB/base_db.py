# base_db.py
# Description: Base class for SQLite-backed stores
#
"""
base_db.py
----------

Base class that provides standardized path and connection handling for the
local SQLite stores:
- Path type handling (str vs Path)
- Memory database special case (':memory:')
- Client ID handling
- Directory creation for file-based databases
- One long-lived connection with nestable transactions
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union
from abc import ABC, abstractmethod

from loguru import logger


class DatabaseError(Exception):
    """Base exception for local store errors."""
    pass


class BaseDB(ABC):
    """
    Base class for all database modules.

    A single connection is kept open for the lifetime of the object so that
    ':memory:' databases keep their contents between calls. ``transaction()``
    may be nested; only the outermost block commits or rolls back.
    """

    def __init__(self, db_path: Union[str, Path], client_id: str = "default"):
        """
        Args:
            db_path: Path to the SQLite database file or ':memory:'
            client_id: Client identifier for multi-client support
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            if self.is_memory_db:
                self.db_path = Path(":memory:")
            else:
                self.db_path = Path(db_path).resolve()

        self.db_path_str = ':memory:' if self.is_memory_db else str(self.db_path)
        self.client_id = client_id
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0
        self._lock = threading.RLock()

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create database directory {self.db_path.parent}: {e}")
                raise

        self._initialize_schema()

        logger.info(f"{self.__class__.__name__} initialized with path: {self.db_path_str} [Client: {self.client_id}]")

    @abstractmethod
    def _initialize_schema(self):
        """Create tables and indexes. Must be implemented by subclasses."""
        pass

    def _get_connection(self) -> sqlite3.Connection:
        """Return the shared connection, opening it on first use."""
        if self._conn is None:
            # Autocommit mode; transactions are issued explicitly by transaction()
            conn = sqlite3.connect(self.db_path_str, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if not self.is_memory_db:
                conn.execute("PRAGMA journal_mode = WAL")
            self._conn = conn
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Yields the connection. Exceptions roll back the outermost transaction
        and are re-raised.
        """
        with self._lock:
            conn = self._get_connection()
            outermost = self._tx_depth == 0
            if outermost:
                conn.execute("BEGIN")
            self._tx_depth += 1
            try:
                yield conn
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._tx_depth -= 1
                if outermost:
                    conn.execute("COMMIT")

    def close(self):
        """Close the shared connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug(f"{self.__class__.__name__} connection closed: {self.db_path_str}")
