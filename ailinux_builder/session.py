from __future__ import annotations

import errno
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Set

from .errors import SessionCompromised

logger = logging.getLogger(__name__)

DEFAULT_MONITOR_INTERVAL_S = 10.0


class SessionVerdict(str, Enum):
    ALIVE = "alive"
    COMPROMISED = "compromised"


@dataclass(frozen=True)
class SessionState:
    parent_pid: int
    log_writable: bool
    last_check_time: float
    verdict: SessionVerdict


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError as e:
        return e.errno != errno.ESRCH
    return True


def path_writable(path: str) -> bool:
    try:
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        return False
    return True


def _parent_of(pid: int) -> Optional[int]:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except OSError:
        return None
    # comm may contain spaces or parens; fields after the last ')' are fixed.
    fields = stat.rsplit(")", 1)[-1].split()
    try:
        return int(fields[1])
    except (IndexError, ValueError):
        return None


def ancestor_pids(pid: int) -> Set[int]:
    """pid plus every ancestor up to (not including) init."""

    out = {pid}
    cur = pid
    while True:
        parent = _parent_of(cur)
        if parent is None or parent <= 1 or parent in out:
            break
        out.add(parent)
        cur = parent
    return out


def detect_session_type(environ: Mapping[str, str]) -> str:
    if environ.get("SSH_CLIENT") or environ.get("SSH_TTY") or environ.get("SSH_CONNECTION"):
        return "ssh"
    if environ.get("XDG_SESSION_TYPE") in {"x11", "wayland"}:
        return "gui"
    if environ.get("TERM") and environ.get("TERM") != "dumb":
        return "console"
    return "unknown"


class SessionMonitor:
    """Watches the invoking shell/SSH session.

    ``check()`` verifies that the recorded parent pid still exists and that
    the log file can still be opened for append. A compromised verdict is
    sticky: once the session is gone, every later cleanup step stays in its
    least destructive form.

    The background loop started by ``start()`` only calls ``check()``; it owns
    no build state beyond its own verdict and ``alert`` flag.
    """

    def __init__(
        self,
        *,
        log_path: str,
        parent_pid: Optional[int] = None,
        interval_s: float = DEFAULT_MONITOR_INTERVAL_S,
        is_alive: Callable[[int], bool] = pid_alive,
        is_writable: Callable[[str], bool] = path_writable,
        clock: Callable[[], float] = time.time,
    ):
        self.log_path = log_path
        self.parent_pid = os.getppid() if parent_pid is None else parent_pid
        self.interval_s = interval_s
        self._is_alive = is_alive
        self._is_writable = is_writable
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SessionState(
            parent_pid=self.parent_pid,
            log_writable=True,
            last_check_time=0.0,
            verdict=SessionVerdict.ALIVE,
        )
        self._alert = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def alert(self) -> bool:
        return self._alert.is_set()

    @property
    def compromised(self) -> bool:
        return self.state.verdict is SessionVerdict.COMPROMISED

    def check(self) -> SessionVerdict:
        parent_ok = self._is_alive(self.parent_pid)
        log_ok = self._is_writable(self.log_path)

        with self._lock:
            was = self._state.verdict
            verdict = SessionVerdict.ALIVE
            if was is SessionVerdict.COMPROMISED or not parent_ok or not log_ok:
                verdict = SessionVerdict.COMPROMISED
            self._state = SessionState(
                parent_pid=self.parent_pid,
                log_writable=log_ok,
                last_check_time=self._clock(),
                verdict=verdict,
            )

        if verdict is SessionVerdict.COMPROMISED and was is SessionVerdict.ALIVE:
            self._alert.set()
            reasons = []
            if not parent_ok:
                reasons.append(f"parent pid {self.parent_pid} is gone")
            if not log_ok:
                reasons.append(f"log {self.log_path} is not writable")
            logger.critical(
                "SessionCompromised: %s; cleanup downgraded to non-destructive steps",
                ", ".join(reasons),
            )
        return verdict

    def ensure_alive(self, step: str) -> None:
        if self.check() is not SessionVerdict.ALIVE:
            raise SessionCompromised(f"session compromised; refusing destructive step: {step}")

    def allows_destructive(self, step: str) -> bool:
        try:
            self.ensure_alive(step)
        except SessionCompromised:
            logger.warning("SessionCompromised: skipping destructive step %s", step)
            return False
        return True

    def protected_pids(self) -> Set[int]:
        pids = ancestor_pids(os.getpid())
        pids.add(os.getpid())
        pids.add(self.parent_pid)
        return pids

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            verdict = self.check()
            if verdict is SessionVerdict.ALIVE:
                logger.debug("Session integrity verified (parent pid %s)", self.parent_pid)
            else:
                logger.warning("Session integrity alert is set (parent pid %s)", self.parent_pid)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-monitor", daemon=True)
        self._thread.start()
        logger.info("Session monitor started (parent pid %s, every %ss)", self.parent_pid, self.interval_s)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=self.interval_s + 1)
        self._thread = None

    def __enter__(self) -> "SessionMonitor":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
