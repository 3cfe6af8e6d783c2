import sys
import time
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List
from tunnelguard.local import app_globals
from tunnelguard.local.database import LogDBManager


class SQLiteHandler(logging.Handler):
    """
    Logging handler that buffers records and writes them to the log database
    from one background writer thread, so logging callers (including the
    health-check loop) never block on SQLite.

    The writer wakes up every LOG_BUFFER_FLUSH_INTERVAL seconds, or early
    once LOG_BUFFER_SIZE records are waiting. It also keeps the database
    file under MAX_LOG_DB_SIZE_MB by pruning the oldest rows.
    """

    def __init__(self, db_path: Path):
        """
        :param db_path: The path to the SQLite database file.
        """
        super().__init__()
        self.db_path = db_path
        self.log_buffer: List[Dict[str, Any]] = []
        self.buffer_lock = threading.Lock()
        self.flush_interval = app_globals.LOG_BUFFER_FLUSH_INTERVAL
        self.batch_size = app_globals.LOG_BUFFER_SIZE
        self.db_size_check_interval = app_globals.LOG_DB_SIZE_CHECK_INTERVAL_SECONDS
        self.max_db_size_mb = app_globals.MAX_LOG_DB_SIZE_MB
        self.logDB = LogDBManager(self.db_path)
        self.logDB.initialize_database()

        self._wakeup = threading.Event()
        self._closing = False
        self._next_size_check = time.monotonic()
        self.writer_thread = threading.Thread(target=self._writer_loop, daemon=True, name="SQLiteLogWriter")
        self.writer_thread.start()

    @staticmethod
    def _to_row(record: logging.LogRecord) -> Dict[str, Any]:
        # Tunnel client lines carry no source location.
        if record.name.startswith('proc.'):
            module = record.name.split('.')[-1]
            func_name = 'stdout' if record.levelno == logging.INFO else 'stderr'
            lineno = 0
        else:
            module, func_name, lineno = record.module, record.funcName, record.lineno
        return {
            "timestamp": record.created,
            "level": record.levelname,
            "module": module,
            "funcName": func_name,
            "lineno": lineno,
            "message": record.getMessage(),
        }

    def emit(self, record: logging.LogRecord) -> None:
        """Queues a record for the writer thread."""
        try:
            row = self._to_row(record)
        except Exception:
            self.handleError(record)
            return
        with self.buffer_lock:
            self.log_buffer.append(row)
            full = len(self.log_buffer) >= self.batch_size
        if full:
            self._wakeup.set()

    def _writer_loop(self) -> None:
        while not self._closing:
            self._wakeup.wait(self.flush_interval)
            self._wakeup.clear()
            self.flush()
            if time.monotonic() >= self._next_size_check:
                self._next_size_check = time.monotonic() + self.db_size_check_interval
                self._enforce_size_limit()
        self.flush()  # Final flush on close

    def flush(self) -> None:
        """Writes everything buffered so far."""
        with self.buffer_lock:
            entries, self.log_buffer = self.log_buffer, []
        if not entries:
            return
        try:
            self.logDB.insert_log_batch(entries)
        except sqlite3.Error as e:
            # Logging the failure would feed it straight back into this handler.
            print(f"Error writing logs to DB: {e}. Dropped {len(entries)} entries.", file=sys.stderr)

    def _enforce_size_limit(self) -> None:
        """Prunes the oldest half of the rows once the file exceeds the configured size."""
        try:
            file_size_mb = self.db_path.stat().st_size / (1024 * 1024)
        except FileNotFoundError:
            return
        if file_size_mb <= self.max_db_size_mb:
            return
        try:
            removed = self.logDB.prune_oldest(0.5)
        except sqlite3.Error as e:
            print(f"Failed to prune log database '{self.db_path}': {e}", file=sys.stderr)
            return
        logging.getLogger(__name__).warning(
            f"Log database reached {file_size_mb:.2f} MB (limit {self.max_db_size_mb} MB); "
            f"pruned {removed} oldest entries."
        )

    def close(self) -> None:
        """Stops the writer thread after a final flush."""
        self._closing = True
        self._wakeup.set()
        if self.writer_thread.is_alive() and self.writer_thread is not threading.current_thread():
            self.writer_thread.join()
        self.flush()
        super().close()
