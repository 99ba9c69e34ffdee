from __future__ import annotations

import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from .errors import MountFailed
from .lib.command import CmdResult, Runner, run_cmd

logger = logging.getLogger(__name__)

DEFAULT_UNMOUNT_TIMEOUT_S = 30.0
DEFAULT_MOUNT_TIMEOUT_S = 60.0

# Escalation ladder for a single mount point, least destructive first.
TEARDOWN_STEPS: Tuple[str, ...] = ("umount", "lazy", "kill", "force")
DESTRUCTIVE_STEPS = frozenset({"kill", "force"})


class SessionGuard(Protocol):
    def allows_destructive(self, step: str) -> bool:
        ...

    def protected_pids(self) -> Set[int]:
        ...


class MountState(str, Enum):
    MOUNTED = "mounted"
    UNMOUNTED = "unmounted"
    STUCK = "stuck"


@dataclass(frozen=True)
class MountSpec:
    source: str
    path: str
    fstype: Optional[str] = None
    options: Tuple[str, ...] = ()
    bind: bool = False

    def mount_argv(self) -> List[str]:
        if self.bind:
            argv = ["mount", "--bind", self.source, self.path]
        else:
            argv = ["mount"]
            if self.fstype:
                argv += ["-t", self.fstype]
            argv += [self.source, self.path]
        if self.options:
            argv += ["-o", ",".join(self.options)]
        return argv


@dataclass(eq=False)
class MountPoint:
    spec: MountSpec
    state: MountState = MountState.MOUNTED
    owned: bool = True
    teardown_method: Optional[str] = None

    @property
    def path(self) -> str:
        return self.spec.path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.spec.path,
            "source": self.spec.source,
            "fstype": self.spec.fstype,
            "options": list(self.spec.options),
            "state": self.state.value,
            "teardown_method": self.teardown_method,
        }


# A handle is the tracked mount point itself.
MountHandle = MountPoint


@dataclass
class TeardownReport:
    attempted: List[str] = field(default_factory=list)
    torn_down: List[Tuple[str, str]] = field(default_factory=list)
    stuck: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.stuck


def _is_under(path: str, parent: str) -> bool:
    parent = parent.rstrip("/") or "/"
    return path != parent and path.startswith(parent.rstrip("/") + "/")


def _parse_pids(text: str) -> List[int]:
    pids: List[int] = []
    for tok in text.split():
        digits = tok.rstrip("cefFrmn")
        if digits.isdigit():
            pids.append(int(digits))
    return pids


class MountManager:
    """Tracks mounts made into a chroot and tears them down in reverse order.

    Every successful ``mount()`` is pushed on an ordered stack.
    ``unmount_all()`` walks the stack newest-first and escalates per entry:
    plain umount, lazy umount, terminate holders then umount, forced umount.
    A mount that survives all four is reported as stuck and left on the
    stack; teardown moves on to the next entry instead of blocking.
    """

    def __init__(
        self,
        *,
        runner: Runner = run_cmd,
        dry_run: bool = False,
        unmount_timeout_s: float = DEFAULT_UNMOUNT_TIMEOUT_S,
        mount_timeout_s: float = DEFAULT_MOUNT_TIMEOUT_S,
        session: Optional[SessionGuard] = None,
        is_mountpoint: Callable[[str], bool] = os.path.ismount,
        kill: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        kill_grace_s: float = 2.0,
    ):
        self._runner = runner
        self.dry_run = dry_run
        self.unmount_timeout_s = unmount_timeout_s
        self.mount_timeout_s = mount_timeout_s
        self.session = session
        self._is_mountpoint = is_mountpoint
        self._kill = kill
        self._sleep = sleep
        self.kill_grace_s = kill_grace_s
        self._stack: List[MountPoint] = []
        self.stuck: List[str] = []
        # Cumulative record of every teardown pass over this manager.
        self.history = TeardownReport()

    @property
    def stack(self) -> List[MountPoint]:
        return list(self._stack)

    def _tracked(self, path: str) -> Optional[MountPoint]:
        for mp in self._stack:
            if mp.path == path and mp.state is not MountState.UNMOUNTED:
                return mp
        return None

    def mount(self, spec: MountSpec) -> MountHandle:
        path = spec.path

        tracked = self._tracked(path)
        if tracked is not None:
            logger.info("%s already tracked as mounted, skipping", path)
            return tracked

        if not self.dry_run:
            if self._is_mountpoint(path):
                logger.info("%s already mounted, skipping", path)
                return MountPoint(spec=spec, owned=False)
            if not os.path.isdir(path):
                try:
                    os.makedirs(path, exist_ok=True)
                except OSError as e:
                    raise MountFailed(path, f"cannot create mount point: {e}") from e

        r = self._runner(spec.mount_argv(), check=False, timeout=self.mount_timeout_s, dry_run=self.dry_run)
        if not r.ok:
            raise MountFailed(path, r.output.strip() or f"exit code {r.returncode}")

        mp = MountPoint(spec=spec)
        self._stack.append(mp)
        logger.info("Mounted %s (%s)", path, spec.fstype or ("bind" if spec.bind else "auto"))
        return mp

    def _umount(self, argv: Sequence[str]) -> CmdResult:
        return self._runner(list(argv), check=False, timeout=self.unmount_timeout_s, dry_run=self.dry_run)

    def _terminate_holders(self, path: str) -> None:
        r = self._runner(["fuser", "-m", path], check=False, timeout=self.unmount_timeout_s, dry_run=self.dry_run)
        if self.dry_run:
            return
        protected = self.session.protected_pids() if self.session is not None else {os.getpid(), os.getppid()}
        pids = [p for p in _parse_pids(r.stdout) if p not in protected]
        for pid in pids:
            try:
                self._kill(pid, signal.SIGTERM)
                logger.warning("Sent SIGTERM to pid %s holding %s", pid, path)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                logger.warning("Cannot signal pid %s holding %s: %s", pid, path, e)
        if pids:
            self._sleep(self.kill_grace_s)

    def _run_step(self, step: str, path: str) -> bool:
        if step == "umount":
            return self._umount(["umount", path]).ok
        if step == "lazy":
            return self._umount(["umount", "-l", path]).ok
        if step == "kill":
            self._terminate_holders(path)
            return self._umount(["umount", path]).ok
        if step == "force":
            return self._umount(["umount", "-f", path]).ok
        raise ValueError(f"unknown teardown step: {step}")

    def _teardown(self, mp: MountPoint, steps: Sequence[str]) -> Optional[str]:
        for step in steps:
            if step in DESTRUCTIVE_STEPS and self.session is not None:
                if not self.session.allows_destructive(f"{step} {mp.path}"):
                    continue
            ok = self._run_step(step, mp.path)
            if step in DESTRUCTIVE_STEPS and self.session is not None:
                self.session.allows_destructive(f"after {step} {mp.path}")
            if ok:
                return step
            logger.warning("Unmount step %s failed for %s", step, mp.path)
        return None

    def _mark_unmounted(self, mp: MountPoint, method: str) -> None:
        mp.state = MountState.UNMOUNTED
        mp.teardown_method = method
        if mp in self._stack:
            self._stack.remove(mp)
        if mp.path in self.stuck:
            self.stuck.remove(mp.path)

    def unmount_all(self, *, retry_stuck: bool = True) -> TeardownReport:
        """Tear down every tracked mount, newest first.

        With retry_stuck=False, mounts already marked stuck by an earlier pass
        are left alone unless a parent's teardown detaches them.
        """

        report = TeardownReport()
        for mp in reversed(list(self._stack)):
            if mp not in self._stack:
                # Already detached together with a parent in this pass.
                continue
            if not retry_stuck and mp.state is MountState.STUCK:
                continue

            path = mp.path
            report.attempted.append(path)

            if not self.dry_run and not self._is_mountpoint(path):
                logger.info("%s is no longer mounted", path)
                self._mark_unmounted(mp, "already-unmounted")
                report.torn_down.append((path, "already-unmounted"))
                continue

            stuck_children = [
                c for c in self._stack if c.state is MountState.STUCK and _is_under(c.path, path)
            ]
            # A lazy unmount detaches the whole subtree, so stuck children cannot outlive the parent.
            steps = TEARDOWN_STEPS[1:] if stuck_children else TEARDOWN_STEPS

            method = self._teardown(mp, steps)
            if method is None:
                mp.state = MountState.STUCK
                if path not in self.stuck:
                    self.stuck.append(path)
                if path not in report.stuck:
                    report.stuck.append(path)
                logger.error("Mount point %s is stuck; all teardown steps failed", path)
                continue

            self._mark_unmounted(mp, method)
            report.torn_down.append((path, method))
            logger.info("Unmounted %s (%s)", path, method)

            for child in stuck_children:
                self._mark_unmounted(child, "detached-with-parent")
                report.torn_down.append((child.path, "detached-with-parent"))
                if child.path in report.stuck:
                    report.stuck.remove(child.path)

        self.history.attempted.extend(report.attempted)
        self.history.torn_down.extend(report.torn_down)
        self.history.stuck = list(self.stuck)
        return report

    def lazy_unmount(self, path: str) -> bool:
        """Best-effort lazy unmount of one path (tracked or not)."""

        if not self.dry_run and not self._is_mountpoint(path):
            return False
        ok = self._umount(["umount", "-l", path]).ok
        if ok:
            for mp in list(self._stack):
                if mp.path == path or _is_under(mp.path, path):
                    self._mark_unmounted(mp, "lazy")
                    self.history.torn_down.append((mp.path, "lazy"))
            self.history.stuck = list(self.stuck)
            logger.info("Lazy-unmounted %s", path)
        return ok
