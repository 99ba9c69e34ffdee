from __future__ import annotations

import glob
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .audit import ErrorLog
from .build_config import BuildConfig, HandlingMode
from .errors import ErrorEvent, ErrorKind
from .lib.chroot import chroot_root_of
from .lib.command import CmdResult, Runner, run_cmd
from .lib.pkg import apt_clean_argv, apt_fix_broken_argv, apt_update_argv
from .mounts import MountManager
from .session import SessionMonitor

logger = logging.getLogger(__name__)

Fallback = Callable[[], Any]


class RecoveryOutcome(str, Enum):
    RECOVERED = "recovered"
    EXHAUSTED_RETRIES = "exhausted_retries"
    NOT_RECOVERABLE = "not_recoverable"


@dataclass(frozen=True)
class RecoveryAttempt:
    error_event: ErrorEvent
    action_taken: str
    attempt_number: int
    outcome: str  # succeeded|failed|not_applicable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt_number,
            "kind": self.error_event.classified_kind.value,
            "action": self.action_taken,
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class RecoveryResult:
    operation: str
    mode: HandlingMode
    outcome: RecoveryOutcome
    attempts: Tuple[RecoveryAttempt, ...] = ()
    events: Tuple[ErrorEvent, ...] = ()
    fatal: bool = False
    force_critical: bool = False
    result: Optional[CmdResult] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "mode": self.mode.value,
            "outcome": self.outcome.value,
            "fatal": self.fatal,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass(frozen=True)
class ActionPlan:
    description: str
    # Command to re-run after the action; None means the failure cannot be retried.
    argv: Optional[List[str]]


class RecoveryEngine:
    """Bounded-retry recovery driven by ErrorKind and handling mode.

    Each attempt runs the kind-specific action and then re-runs the
    operation. A failed re-run is classified again and the next attempt
    uses the new kind's action.

    Mode precedence (one rule for every caller):

    * permissive: one attempt, never fatal.
    * strict: up to ``max_attempts``; anything short of Recovered is fatal
      and forces the owning phase critical.
    * graceful: like strict, but only fatal (and forced critical) when the
      operation or its phase is on the non-continuable list.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        *,
        runner: Runner = run_cmd,
        mounts: Optional[MountManager] = None,
        session: Optional[SessionMonitor] = None,
        error_log: Optional[ErrorLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        is_root: Optional[Callable[[], bool]] = None,
    ):
        self.cfg = cfg
        self._runner = runner
        self.mounts = mounts
        self.session = session
        self.error_log = error_log
        self._sleep = sleep
        self._is_root = is_root or (lambda: os.geteuid() == 0)
        self.history: List[RecoveryResult] = []

        self._actions: Dict[ErrorKind, Callable[[ErrorEvent, Optional[Fallback]], ActionPlan]] = {
            ErrorKind.PERMISSION: self._elevate,
            ErrorKind.DISK_SPACE: self._purge_caches,
            ErrorKind.NETWORK: self._network_backoff,
            ErrorKind.PACKAGE_MANAGER: self._refresh_package_index,
            ErrorKind.MOUNT_BUSY: self._release_busy_mount,
            ErrorKind.INTERRUPTED: self._interrupted,
            ErrorKind.UNKNOWN: self._custom_action,
        }
        missing = set(ErrorKind) - set(self._actions)
        if missing:
            raise TypeError(f"no recovery action for: {sorted(k.value for k in missing)}")

    def _run(self, argv: Sequence[str]) -> CmdResult:
        return self._runner(
            list(argv),
            check=False,
            timeout=self.cfg.recovery_timeout_s,
            dry_run=self.cfg.dry_run,
        )

    def _default_rerun(self, argv: Sequence[str]) -> CmdResult:
        return self._runner(
            list(argv),
            check=False,
            timeout=self.cfg.command_timeout_s,
            dry_run=self.cfg.dry_run,
        )

    def is_non_continuable(self, operation: str, phase: Optional[str] = None) -> bool:
        for name in self.cfg.non_continuable:
            if not name:
                continue
            if name in operation or (phase is not None and name in phase):
                return True
        return False

    def recover(
        self,
        event: ErrorEvent,
        mode: Optional[HandlingMode] = None,
        *,
        phase: Optional[str] = None,
        fallback: Optional[Fallback] = None,
        rerun: Optional[Callable[[Sequence[str]], CmdResult]] = None,
    ) -> RecoveryResult:
        mode = mode or self.cfg.handling_mode
        phase = phase or event.phase
        rerun = rerun or self._default_rerun
        budget = 1 if mode is HandlingMode.PERMISSIVE else max(1, self.cfg.max_attempts)
        op = event.operation_name

        attempts: List[RecoveryAttempt] = []
        events: List[ErrorEvent] = []
        current = event
        recovered: Optional[CmdResult] = None
        outcome = RecoveryOutcome.EXHAUSTED_RETRIES

        for n in range(1, budget + 1):
            plan = self._actions[current.classified_kind](current, fallback)
            if plan.argv is None:
                logger.warning("No recovery for %s (%s): %s", op, current.classified_kind.value, plan.description)
                attempts.append(RecoveryAttempt(current, plan.description, n, "not_applicable"))
                outcome = RecoveryOutcome.NOT_RECOVERABLE
                break

            logger.info(
                "Recovery attempt %s/%s for %s (%s): %s",
                n,
                budget,
                op,
                current.classified_kind.value,
                plan.description,
            )
            r = rerun(plan.argv)
            if r.ok:
                attempts.append(RecoveryAttempt(current, plan.description, n, "succeeded"))
                recovered = r
                outcome = RecoveryOutcome.RECOVERED
                break

            attempts.append(RecoveryAttempt(current, plan.description, n, "failed"))
            current = ErrorEvent.from_result(op, r, phase=phase)
            events.append(current)
            if self.error_log is not None:
                self.error_log.record(current)

        fatal, force_critical = self._verdict(mode, outcome, op, phase)
        result = RecoveryResult(
            operation=op,
            mode=mode,
            outcome=outcome,
            attempts=tuple(attempts),
            events=tuple(events),
            fatal=fatal,
            force_critical=force_critical,
            result=recovered,
        )
        self.history.append(result)
        return result

    def _verdict(
        self,
        mode: HandlingMode,
        outcome: RecoveryOutcome,
        operation: str,
        phase: Optional[str],
    ) -> Tuple[bool, bool]:
        if outcome is RecoveryOutcome.RECOVERED or mode is HandlingMode.PERMISSIVE:
            return False, False
        if mode is HandlingMode.STRICT:
            return True, True
        blocking = self.is_non_continuable(operation, phase)
        return blocking, blocking

    # kind-specific actions

    def _elevate(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        argv = list(event.command)
        if argv[:1] == ["sudo"]:
            return ActionPlan("already elevated", None)
        if self._is_root():
            return ActionPlan("already running as root", None)
        return ActionPlan("re-run with elevated privileges", ["sudo", "-n", *argv])

    def _purge_caches(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        self._run(apt_clean_argv())
        root = chroot_root_of(event.command)
        if root:
            self._run(apt_clean_argv(root))

        removed = 0
        for pattern in self.cfg.purge_globs:
            for match in glob.glob(pattern):
                p = Path(match)
                if self.cfg.dry_run:
                    logger.info("Would remove %s", p)
                    continue
                try:
                    if p.is_dir() and not p.is_symlink():
                        if self.session is not None and not self.session.allows_destructive(f"rm -rf {p}"):
                            continue
                        shutil.rmtree(p)
                    else:
                        p.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning("Cannot remove %s: %s", p, e)
        return ActionPlan(f"purged package caches and {removed} temp path(s)", list(event.command))

    def _network_backoff(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        self._sleep(self.cfg.network_backoff_s)
        return ActionPlan(f"waited {self.cfg.network_backoff_s:g}s for the network", list(event.command))

    def _refresh_package_index(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        root = chroot_root_of(event.command)
        self._run(apt_update_argv(root))
        self._run(apt_fix_broken_argv(root))
        where = f" in {root}" if root else ""
        return ActionPlan(f"refreshed package index{where}", list(event.command))

    def _release_busy_mount(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        # Only paths inside the build tree; never lazy-unmount a host /dev or /proc.
        build_roots = [os.path.abspath(self.cfg.work_dir), os.path.abspath(self.cfg.chroot_dir)]
        released = None
        for tok in event.command[1:]:
            if not tok.startswith("/"):
                continue
            path = os.path.abspath(tok)
            if not any(path == r or path.startswith(r + os.sep) for r in build_roots):
                continue
            if self.mounts is not None:
                ok = self.mounts.lazy_unmount(path)
            else:
                ok = self._run(["umount", "-l", path]).ok
            if ok:
                released = path
                break
        desc = f"lazy-unmounted {released}" if released else "no busy mount found to release"
        return ActionPlan(desc, list(event.command))

    def _interrupted(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        return ActionPlan("interrupted by signal; not retried", None)

    def _custom_action(self, event: ErrorEvent, fallback: Optional[Fallback]) -> ActionPlan:
        if fallback is None:
            return ActionPlan("no recovery action for an unclassified failure", None)
        try:
            if fallback() is False:
                return ActionPlan("custom recovery action reported failure", None)
        except Exception as e:
            logger.error("Custom recovery action for %s raised: %s", event.operation_name, e)
            return ActionPlan(f"custom recovery action raised: {e}", None)
        return ActionPlan("ran custom recovery action", list(event.command))
