from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .context import BuildCtx
from .errors import ErrorEvent, ErrorKind, OperationFailed
from .interrupts import StopFlag
from .logging_utils import log_success
from .mounts import MountState, TeardownReport
from .tracker import RollbackEntry

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    CRITICAL = "critical"
    OPTIONAL = "optional"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Phase:
    name: str
    executor: Callable[[BuildCtx], None]
    description: str = ""
    failure_policy: FailurePolicy = FailurePolicy.CRITICAL
    status: PhaseStatus = PhaseStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "failure_policy": self.failure_policy.value,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class PhaseEvent:
    phase: str
    event: str  # start|end
    status: PhaseStatus
    timestamp: float
    duration_s: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "event": self.event,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "duration_s": self.duration_s,
        }


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class BuildOutcome:
    kind: OutcomeKind
    failed_phase: Optional[str] = None
    error_chain: Tuple[ErrorEvent, ...] = ()

    @classmethod
    def succeeded(cls) -> "BuildOutcome":
        return cls(OutcomeKind.SUCCEEDED)

    @classmethod
    def failed(cls, phase: str, chain: Sequence[ErrorEvent] = ()) -> "BuildOutcome":
        return cls(OutcomeKind.FAILED, failed_phase=phase, error_chain=tuple(chain))

    @classmethod
    def interrupted(cls) -> "BuildOutcome":
        return cls(OutcomeKind.INTERRUPTED)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.kind is OutcomeKind.SUCCEEDED:
            return 0
        if self.kind is OutcomeKind.INTERRUPTED:
            return 130
        return 1

    def __str__(self) -> str:
        if self.kind is OutcomeKind.FAILED:
            return f"Failed({self.failed_phase})"
        return self.kind.value.capitalize()


class PhaseSequencer:
    """Runs phases strictly in order and applies each phase's failure policy.

    - critical failure: rollback + mount teardown, run ends as Failed(phase)
    - optional failure: warning, the phase's own operations are undone, next phase
    - stop requested: checked between phases only; remaining phases are skipped
    Phases are never retried here; retries happen inside operations.
    """

    def __init__(
        self,
        ctx: BuildCtx,
        *,
        stop: Optional[StopFlag] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ctx = ctx
        self.stop = stop or StopFlag()
        self._clock = clock
        self.phases: List[Phase] = []
        self.events: List[PhaseEvent] = []
        self.rolled_back: List[RollbackEntry] = []
        self.outcome: Optional[BuildOutcome] = None

    @property
    def teardown(self) -> TeardownReport:
        """Every unmount made during the run, including those done by phases."""

        return self.ctx.mounts.history

    def _emit(self, phase: Phase, event: str, duration_s: Optional[float] = None) -> None:
        self.events.append(
            PhaseEvent(
                phase=phase.name,
                event=event,
                status=phase.status,
                timestamp=self._clock(),
                duration_s=duration_s,
            )
        )

    def run(self, phases: Sequence[Phase]) -> BuildOutcome:
        self.phases = list(phases)
        outcome = BuildOutcome.succeeded()

        for idx, phase in enumerate(self.phases):
            if self.stop.is_set():
                logger.warning("Stop %s; skipping remaining phases", self.stop.signal_name or "requested")
                for rest in self.phases[idx:]:
                    rest.status = PhaseStatus.SKIPPED
                outcome = BuildOutcome.interrupted()
                self.rollback()
                break

            outcome = self._run_phase(phase)
            if not outcome.ok:
                for rest in self.phases[idx + 1 :]:
                    rest.status = PhaseStatus.SKIPPED
                break

        self._finish()
        self.outcome = outcome
        return outcome

    def _run_phase(self, phase: Phase) -> BuildOutcome:
        logger.info("=== Phase %s: %s ===", phase.name, phase.description or phase.name)
        phase.status = PhaseStatus.RUNNING
        self._emit(phase, "start")
        started = self._clock()
        phase_ctx = dataclasses.replace(self.ctx, phase=phase.name)

        policy = phase.failure_policy
        chain: Tuple[ErrorEvent, ...] = ()
        try:
            phase.executor(phase_ctx)
        except OperationFailed as e:
            chain = e.events
            if e.force_critical:
                policy = FailurePolicy.CRITICAL
            self._phase_failed(phase, e)
        except KeyboardInterrupt:
            self.stop.request("by keyboard interrupt")
            phase.status = PhaseStatus.FAILED
            phase.error = "interrupted"
            self._emit(phase, "end", self._clock() - started)
            self.rollback()
            return BuildOutcome.interrupted()
        except Exception as e:
            self._phase_failed(phase, e)
        else:
            phase.status = PhaseStatus.COMPLETED
            self.ctx.tracker.commit()
            duration = self._clock() - started
            self._emit(phase, "end", duration)
            log_success(logger, "Phase %s completed in %.1fs", phase.name, duration)
            return BuildOutcome.succeeded()

        self._emit(phase, "end", self._clock() - started)

        if self.stop.is_set() or (chain and chain[-1].classified_kind is ErrorKind.INTERRUPTED):
            logger.warning("Phase %s interrupted: %s", phase.name, phase.error)
            self.rollback()
            return BuildOutcome.interrupted()

        if policy is FailurePolicy.CRITICAL:
            logger.critical("Critical phase %s failed: %s", phase.name, phase.error)
            for ev in chain:
                logger.error(
                    "  [%s] %s exit %s: %s",
                    ev.classified_kind.value,
                    ev.operation_name,
                    ev.exit_code,
                    " ".join(ev.command),
                )
            self.rollback()
            return BuildOutcome.failed(phase.name, chain)

        logger.warning("Optional phase %s failed, continuing: %s", phase.name, phase.error)
        self._rollback_operations()
        return BuildOutcome.succeeded()

    def _phase_failed(self, phase: Phase, e: Exception) -> None:
        phase.status = PhaseStatus.FAILED
        phase.error = str(e)
        if not isinstance(e, OperationFailed):
            logger.exception("Phase %s raised", phase.name)

    def _rollback_operations(self) -> None:
        if self.ctx.cfg.skip_cleanup:
            n = self.ctx.tracker.commit()
            if n:
                logger.warning("skip-cleanup: leaving %s operation(s) un-rolled-back", n)
            return
        self.rolled_back.extend(self.ctx.tracker.rollback(guard=self.ctx.session))

    def rollback(self) -> None:
        """Global rollback: tear down all mounts, then undo tracked operations.

        Mounts go first so no undo action can reach into a live /proc or /dev.
        """

        self.ctx.session.check()
        self._teardown_mounts()
        self._rollback_operations()
        self.ctx.session.check()

    def _teardown_mounts(self, retry_stuck: bool = True) -> None:
        if self.ctx.cfg.skip_cleanup:
            if self.ctx.mounts.stack:
                logger.warning("skip-cleanup: leaving %s mount(s) in place", len(self.ctx.mounts.stack))
            return
        report = self.ctx.mounts.unmount_all(retry_stuck=retry_stuck)
        for path in report.stuck:
            logger.error("Stuck mount left behind: %s", path)

    def _finish(self) -> None:
        # Mounts never outlive the run unless the operator asked for it.
        # Mounts already found stuck by a rollback are not laddered again.
        if any(mp.state is not MountState.STUCK for mp in self.ctx.mounts.stack):
            self._teardown_mounts(retry_stuck=False)
