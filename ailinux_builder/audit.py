from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ErrorEvent

logger = logging.getLogger(__name__)


class ErrorLog:
    """Append-only record of every ErrorEvent seen during a run.

    Events are kept in memory for the build report and, when a path is
    given, appended to a JSONL file next to the main log.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._events: List[ErrorEvent] = []
        self._lock = threading.Lock()

    @classmethod
    def beside_log(cls, log_path: str) -> "ErrorLog":
        return cls(path=Path(log_path + ".errors.jsonl"))

    @property
    def events(self) -> Tuple[ErrorEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def record(self, event: ErrorEvent) -> None:
        with self._lock:
            self._events.append(event)
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True) + "\n")
        except OSError as e:
            # The in-memory log still feeds the report.
            logger.warning("Cannot append to error log %s: %s", self.path, e)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
