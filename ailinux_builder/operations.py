from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .audit import ErrorLog
from .build_config import BuildConfig
from .errors import ErrorEvent, OperationFailed
from .lib.command import CmdResult, Runner, fmt_argv, run_cmd
from .logging_utils import log_success
from .recovery import Fallback, RecoveryEngine, RecoveryOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    name: str
    result: CmdResult
    recovered: bool = False
    tolerated: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return not self.tolerated


class OperationRunner:
    """Runs one named external command: execute, classify, recover.

    Returns an OperationResult for success, recovered and tolerated
    failures; raises OperationFailed only when the recovery policy declares
    the failure unrecoverable for this operation.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        *,
        recovery: RecoveryEngine,
        error_log: ErrorLog,
        runner: Runner = run_cmd,
    ):
        self.cfg = cfg
        self.recovery = recovery
        self.error_log = error_log
        self._runner = runner

    def execute(
        self,
        name: str,
        argv: Sequence[str],
        *,
        phase: Optional[str] = None,
        allow_failure: bool = False,
        fallback: Optional[Fallback] = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> OperationResult:
        timeout = timeout or self.cfg.command_timeout_s

        def rerun(args: Sequence[str]) -> CmdResult:
            return self._runner(list(args), check=False, env=env, cwd=cwd, timeout=timeout, dry_run=self.cfg.dry_run)

        logger.info("Executing %s", name)
        r = rerun(argv)
        if r.ok:
            log_success(logger, "%s completed", name)
            return OperationResult(name=name, result=r)

        event = ErrorEvent.from_result(name, r, phase=phase)
        self.error_log.record(event)
        logger.error(
            "%s failed (exit code %s, %s): %s",
            name,
            r.returncode,
            event.classified_kind.value,
            fmt_argv(r.argv),
        )

        if allow_failure:
            logger.warning("%s failed but failure is allowed, continuing", name)
            return OperationResult(name=name, result=r, tolerated=True)

        rr = self.recovery.recover(event, phase=phase, fallback=fallback, rerun=rerun)
        n = len(rr.attempts)

        if rr.outcome is RecoveryOutcome.RECOVERED and rr.result is not None:
            logger.warning("%s recovered after %s attempt(s)", name, n)
            return OperationResult(name=name, result=rr.result, recovered=True, attempts=n)

        if not rr.fatal:
            logger.warning(
                "%s unresolved (%s after %s attempt(s)); continuing in %s mode",
                name,
                rr.outcome.value,
                n,
                rr.mode.value,
            )
            last = rr.events[-1] if rr.events else event
            return OperationResult(
                name=name,
                result=CmdResult(
                    argv=list(last.command),
                    returncode=last.exit_code,
                    stdout="",
                    stderr=last.captured_output,
                    timed_out=last.timed_out,
                ),
                tolerated=True,
                attempts=n,
            )

        raise OperationFailed(
            name,
            (event, *rr.events),
            outcome=rr.outcome.value,
            force_critical=rr.force_critical,
        )
