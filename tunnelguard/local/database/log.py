import time
import sqlite3
import logging
from pathlib import Path
from contextlib import closing, contextmanager
from collections import namedtuple
from typing import Any, Dict, Generator, List, Tuple

LogEntry = namedtuple('LogEntry', ['id', 'timestamp', 'level', 'module', 'message'])
log = logging.getLogger(__name__)

_SELECT_ENTRY = "SELECT id, timestamp, level, module, message FROM logs"


class LogDBManager:
    """
    Reads and writes the shared log database.

    The console and the background supervisor both append to the same file,
    so every operation opens its own short-lived connection and relies on
    SQLite's WAL mode for concurrent readers.
    """

    def __init__(self, db_path: Path):
        """
        :param db_path: The path to the logging SQLite database file.
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Yields a connection that commits on success and is always closed."""
        with closing(sqlite3.connect(self.db_path, timeout=10)) as conn:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            with conn:
                yield conn

    def initialize_database(self) -> None:
        """
        Ensures the log table exists in the database.
        """
        try:
            with self._connect() as conn:
                # Several processes append concurrently, so rows are ordered by id, not timestamp.
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        timestamp REAL,
                        level TEXT,
                        module TEXT,
                        funcName TEXT,
                        lineno INTEGER,
                        message TEXT
                    )
                ''')
                conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs (timestamp)")
            log.debug("Log database tables created/verified.")
        except sqlite3.Error as e:
            log.critical(f"Could not create log database tables: {e}", exc_info=True)
            raise

    def insert_log_batch(self, log_entries: List[Dict[str, Any]]) -> None:
        """
        Inserts multiple log entries in a single transaction.

        :param log_entries: Dicts with keys timestamp, level, module, funcName, lineno, message.
        :raises sqlite3.Error: If the batch cannot be written.
        """
        if not log_entries:
            return
        with self._connect() as conn:
            conn.executemany(
                '''INSERT INTO logs (timestamp, level, module, funcName, lineno, message)
                   VALUES (:timestamp, :level, :module, :funcName, :lineno, :message)''',
                log_entries
            )

    def fetch_last_entries(self, limit: int, include_debug: bool = False) -> List[LogEntry]:
        """
        Fetches the most recent N log entries from the database.

        :param limit: The maximum number of log entries to retrieve.
        :param include_debug: Whether DEBUG entries are included.
        :return list: A list of LogEntry namedtuples, oldest first.
        """
        level_filter = "" if include_debug else "WHERE level != 'DEBUG'"
        try:
            with self._connect() as conn:
                rows = conn.execute(f"{_SELECT_ENTRY} {level_filter} ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to fetch log entries from database: {e}")
            return []
        return [self._to_entry(row) for row in reversed(rows)]

    def listen_for_updates(self, last_id: int) -> Tuple[List[LogEntry], int]:
        """
        Polls the database for logs written after the last seen row.

        :param last_id: The row id of the last known log entry.
        :return tuple: The new LogEntry objects and the new last row id.
        """
        try:
            with self._connect() as conn:
                rows = conn.execute(f"{_SELECT_ENTRY} WHERE id > ? ORDER BY id ASC", (last_id,)).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to poll log database for updates: {e}")
            return [], last_id

        entries = [self._to_entry(row) for row in rows]
        return entries, (entries[-1].id if entries else last_id)

    def prune_oldest(self, fraction: float = 0.5) -> int:
        """
        Deletes the oldest share of the log rows and compacts the file.

        :param fraction: Share of the rows to delete, between 0 and 1.
        :return: The number of deleted rows.
        :raises sqlite3.Error: If the database cannot be pruned.
        """
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
            to_delete = int(total * fraction)
            if to_delete:
                conn.execute(
                    "DELETE FROM logs WHERE id IN (SELECT id FROM logs ORDER BY id ASC LIMIT ?)", (to_delete,)
                )
        if to_delete:
            # VACUUM cannot run inside a transaction.
            with closing(sqlite3.connect(self.db_path, timeout=10)) as conn:
                conn.execute("VACUUM")
        return to_delete

    @staticmethod
    def _to_entry(row: sqlite3.Row) -> LogEntry:
        dt = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(row['timestamp']))
        return LogEntry(
            id=row['id'], timestamp=row['timestamp'], level=row['level'], module=row['module'],
            message=f"{dt} - {row['level']:<8} - [{row['module']}] - {row['message']}"
        )
