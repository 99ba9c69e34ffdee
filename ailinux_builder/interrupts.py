from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class StopFlag:
    """Records that a stop was requested; the sequencer polls it between phases.

    The handlers never raise and never exit: the running phase finishes,
    then rollback and mount teardown happen before the process returns.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signal_name: Optional[str] = None
        self._previous: Dict[int, Any] = {}

    def is_set(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.signal_name = reason
            logger.warning("Stop %s; the build will stop after the current phase", reason)
        self._event.set()

    def _handle(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if signum == signal.SIGHUP:
            logger.critical("Received %s; the controlling session may have disconnected", name)
        self.request(f"requested by {name}")

    def install(self, signals: Iterable[int] = HANDLED_SIGNALS) -> None:
        # Signal handlers can only be set from the main thread.
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in main thread; interrupt handlers not installed")
            return
        for s in signals:
            self._previous[s] = signal.signal(s, self._handle)

    def uninstall(self) -> None:
        for s, prev in self._previous.items():
            signal.signal(s, prev)
        self._previous.clear()

    def __enter__(self) -> "StopFlag":
        self.install()
        return self

    def __exit__(self, *exc: object) -> None:
        self.uninstall()
