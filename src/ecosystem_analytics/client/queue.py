"""Bounded on-disk queue of undelivered events.

The queue file holds a JSON list of event payloads. Writes go to a sibling temp file
that is then renamed over the queue file, so readers only ever see a complete list.
When the cap is exceeded the oldest events are dropped. Every read-modify-write holds
an exclusive flock on a sibling ".lock" file, so several CLI processes can share one
queue without overwriting each other.
"""
from __future__ import annotations
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List

try:  # pragma: no cover - Windows fallback
    import fcntl
except ImportError:  # pragma: no cover
    fcntl = None

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 100


class DurableEventQueue:
    def __init__(self, path: str | Path, max_events: int = DEFAULT_MAX_EVENTS):
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self.path = Path(path).expanduser()
        self.max_events = max_events
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self, exclusive: bool = True) -> Iterator[None]:
        with self._lock:
            if fcntl is None:
                yield
                return
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def load(self) -> List[Dict[str, Any]]:
        with self._locked(exclusive=False):
            return self._read()

    def append(self, event: Dict[str, Any]) -> int:
        """Add one event, evicting the oldest beyond the cap. Returns the number evicted."""
        with self._locked():
            events = self._read()
            events.append(event)
            evicted = max(0, len(events) - self.max_events)
            if evicted:
                logger.info("analytics queue full, dropping %d oldest event(s)", evicted)
                events = events[evicted:]
            self._write(events)
            return evicted

    def remove(self, event_ids: set[str]) -> None:
        """Drop delivered events; anything appended since the snapshot is kept."""
        with self._locked():
            remaining = [e for e in self._read() if e.get("event_id") not in event_ids]
            if remaining:
                self._write(remaining)
            else:
                self._unlink()

    def clear(self) -> None:
        with self._locked():
            self._unlink()

    def __len__(self) -> int:
        return len(self.load())

    def _read(self) -> List[Dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("analytics queue unreadable (%s); starting empty", e)
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("analytics queue at %s is corrupted; discarding it", self.path)
            return []
        if not isinstance(data, list):
            logger.warning("analytics queue at %s is not a list; discarding it", self.path)
            return []
        return [e for e in data if isinstance(e, dict)]

    def _write(self, events: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".queue-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(events, fh, default=str)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _unlink(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
