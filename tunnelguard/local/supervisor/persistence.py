import os
import json
import time
import logging
import threading
from pathlib import Path
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Optional
from .errors import StatsCorrupt

log = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """
    Writes `data` to a temporary sibling, then publishes it with a rename so
    readers only ever see a complete file.

    :raises OSError: If the file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with temp_path.open("w") as f:
            json.dump(data, f, indent=4)
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)


#* --- Active-handle record ---
def write_pid_record(path: Path, supervisor_pid: int, tunnel_pid: Optional[int], state: str,
                     health: Optional[str] = None) -> None:
    """
    Publishes the supervisor's current view: its own PID, the active tunnel PID,
    the state and a summary of the latest health verdict.
    A failed write is logged; the in-memory state stays authoritative.
    """
    record = {
        "supervisor": supervisor_pid,
        "tunnel": tunnel_pid,
        "state": state,
        "health": health,
        "updated_at": time.time(),
    }
    try:
        _atomic_write_json(path, record)
    except OSError as e:
        log.error(f"Failed to write PID record '{path}': {e}", exc_info=True)

def read_pid_record(path: Path) -> Optional[Dict[str, Any]]:
    """
    Reads the PID record from disk.

    :return: The record if the file exists and is valid, else None.
    """
    if not path.exists():
        return None
    try:
        with path.open("r") as f:
            record = json.load(f)
    except (json.JSONDecodeError, IOError):
        log.warning(f"Could not read PID record '{path}', assuming stale.")
        path.unlink(missing_ok=True)
        return None
    if not isinstance(record, dict) or "supervisor" not in record:
        log.error(f"PID record '{path}' is malformed. Deleting.")
        path.unlink(missing_ok=True)
        return None
    return record

def check_for_shutdown_signal(path: Path) -> bool:
    """Checks if the shutdown signal file exists."""
    if path.exists():
        log.info("Shutdown signal file detected.")
        return True
    return False

def cleanup_state_files(*paths: Path) -> None:
    """Removes PID, stats and signal files."""
    for path in paths:
        path.unlink(missing_ok=True)
    log.debug("Cleaned up tunnel state files.")


#* --- Reconnect statistics ---
@dataclass(frozen=True)
class Stats:
    session_start: float
    reconnect_count: int = 0
    last_reconnect: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any, path: Path) -> "Stats":
        """Parses a stats record, raising StatsCorrupt on any malformed field."""
        if not isinstance(data, dict):
            raise StatsCorrupt(path, "not a JSON object")
        try:
            session_start = float(data["session_start"])
            reconnect_count = data["reconnect_count"]
            last_reconnect = data.get("last_reconnect")
        except (KeyError, TypeError, ValueError) as e:
            raise StatsCorrupt(path, f"bad field ({e})")
        if not isinstance(reconnect_count, int) or isinstance(reconnect_count, bool) or reconnect_count < 0:
            raise StatsCorrupt(path, f"bad reconnect_count {reconnect_count!r}")
        if last_reconnect is not None and not isinstance(last_reconnect, (int, float)):
            raise StatsCorrupt(path, f"bad last_reconnect {last_reconnect!r}")
        return cls(session_start, reconnect_count, last_reconnect)

    def uptime(self, now: Optional[float] = None) -> float:
        return max(0.0, (now or time.time()) - self.session_start)


class StatsTracker:
    """
    Cumulative reconnect statistics for one supervision session, persisted
    next to the PID record so they survive a supervisor process restart.

    The in-memory copy is the source of truth while the session is live;
    every update is published to disk atomically.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._stats: Optional[Stats] = None

    def init(self) -> Stats:
        """Starts a fresh session, overwriting any previous counters."""
        with self._lock:
            return self._init_locked()

    def record_reconnect(self) -> Stats:
        """Counts one completed relaunch and stamps its time."""
        with self._lock:
            current = self._stats or self._load_locked() or self._init_locked()
            updated = replace(current, reconnect_count=current.reconnect_count + 1, last_reconnect=time.time())
            self._publish_locked(updated)
            return updated

    def read(self) -> Optional[Stats]:
        """
        Returns the counters as of the last completed write, or None if no
        session exists.
        """
        with self._lock:
            if self._stats is not None:
                return self._stats
            return self._load_locked()

    def clear(self) -> None:
        """Discards the session counters."""
        with self._lock:
            self._stats = None
            self.path.unlink(missing_ok=True)

    def _init_locked(self) -> Stats:
        stats = Stats(session_start=time.time())
        self._publish_locked(stats)
        return stats

    def _publish_locked(self, stats: Stats) -> None:
        self._stats = stats
        try:
            _atomic_write_json(self.path, asdict(stats))
        except OSError as e:
            log.error(f"Failed to write stats record '{self.path}': {e}")

    def _load_locked(self) -> Optional[Stats]:
        if not self.path.exists():
            return None
        try:
            try:
                data = json.loads(self.path.read_text())
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise StatsCorrupt(self.path, str(e))
            except OSError as e:
                raise StatsCorrupt(self.path, f"unreadable ({e})")
            return Stats.from_dict(data, self.path)
        except StatsCorrupt as e:
            log.warning(f"{e} Re-initializing a fresh stats record.")
            return self._init_locked()
