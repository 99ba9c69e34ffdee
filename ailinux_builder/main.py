from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .audit import ErrorLog
from .build_config import BuildConfig, HandlingMode, load_build_config
from .context import BuildCtx
from .errors import ConfigError, LockHeld
from .interrupts import StopFlag
from .lib.command import Runner, run_cmd
from .lib.lock import BuildLock
from .logging_utils import configure_logging, default_log_path
from .mounts import MountManager
from .operations import OperationRunner
from .phases import default_phases
from .recovery import RecoveryEngine
from .report import build_report, render_text, write_report
from .sequencer import BuildOutcome, Phase, PhaseSequencer
from .session import SessionMonitor, detect_session_type
from .tracker import OperationTracker

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def default_report_path(log_path: str) -> str:
    return str(Path(log_path).with_suffix(".report.json"))


def run(
    cfg: BuildConfig,
    *,
    log_path: str,
    report_path: Optional[str] = None,
    phases: Optional[List[Phase]] = None,
    runner: Runner = run_cmd,
    session: Optional[SessionMonitor] = None,
    stop: Optional[StopFlag] = None,
) -> Dict[str, Any]:
    """Run the build and always write a report; returns the report."""

    error_log = ErrorLog.beside_log(log_path)
    session = session or SessionMonitor(log_path=log_path, interval_s=cfg.monitor_interval_s)
    stop = stop or StopFlag()
    session_type = detect_session_type(os.environ)
    logger.info(
        "Build starting (mode=%s, dry_run=%s, session=%s, parent pid %s)",
        cfg.handling_mode.value,
        cfg.dry_run,
        session_type,
        session.parent_pid,
    )

    mounts = MountManager(
        runner=runner,
        dry_run=cfg.dry_run,
        unmount_timeout_s=cfg.unmount_timeout_s,
        mount_timeout_s=cfg.mount_timeout_s,
        session=session,
    )
    recovery = RecoveryEngine(cfg, runner=runner, mounts=mounts, session=session, error_log=error_log)
    ctx = BuildCtx(
        cfg=cfg,
        ops=OperationRunner(cfg, recovery=recovery, error_log=error_log, runner=runner),
        tracker=OperationTracker(),
        mounts=mounts,
        session=session,
        error_log=error_log,
    )
    sequencer = PhaseSequencer(ctx, stop=stop)

    started = time.time()
    outcome: Optional[BuildOutcome] = None
    fatal: Optional[str] = None
    try:
        with BuildLock(str(Path(cfg.work_dir) / ".build_lock")), stop, session:
            outcome = sequencer.run(phases if phases is not None else default_phases())
    except LockHeld as e:
        logger.error("%s", e)
        fatal = str(e)
    except Exception as e:
        logger.exception("Build failed outside of any phase")
        fatal = str(e)
        raise
    finally:
        report = build_report(
            cfg=cfg,
            outcome=outcome,
            sequencer=sequencer,
            error_log=error_log,
            recoveries=recovery.history,
            session=session,
            log_path=log_path,
            session_type=session_type,
            started_at=started,
            fatal_error=fatal,
        )
        for line in render_text(report).splitlines():
            logger.info("%s", line)
        try:
            write_report(report_path or default_report_path(log_path), report)
        except OSError as e:
            logger.error("Cannot write build report: %s", e)

    if outcome is not None:
        if outcome.ok:
            logger.info("Build finished: %s", outcome)
        else:
            logger.error("Build finished: %s", outcome)
    return report


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="ailinux-build")
    p.add_argument("--config", default=None, help="Path to build config (yaml)")
    p.add_argument("--log", default=None, help="Path to build log (default: logs/ailinux-build-<time>.log)")
    p.add_argument("--report", default=None, help="Path to build report (json|yaml)")
    p.add_argument(
        "--mode",
        default=None,
        choices=[m.value for m in HandlingMode],
        help="Error handling mode (default: from config or environment)",
    )
    p.add_argument("--dry-run", action="store_true", help="Log commands without executing them")
    p.add_argument("--skip-cleanup", action="store_true", help="Leave mounts and work files in place")
    p.add_argument(
        "--non-continuable",
        action="append",
        default=[],
        metavar="NAME",
        help="Operation or phase whose unresolved failure stops the build (repeatable)",
    )
    p.add_argument("--list-phases", action="store_true", help="List the build phases and exit")

    args = p.parse_args(argv)

    if args.list_phases:
        for phase in default_phases():
            print(f"{phase.name:<28} {phase.failure_policy.value:<9} {phase.description}")
        return 0

    try:
        cfg = load_build_config(
            args.config,
            mode=args.mode,
            dry_run=args.dry_run,
            skip_cleanup=args.skip_cleanup,
            non_continuable=args.non_continuable,
        )
    except ConfigError as e:
        configure_logging(log_path=args.log)
        logger.error("%s", e)
        return EXIT_CONFIG_ERROR

    actual_log_path = configure_logging(log_path=args.log or default_log_path(cfg.logs_dir))
    report = run(cfg, log_path=actual_log_path, report_path=args.report)
    return int(report["exit_code"])


if __name__ == "__main__":
    raise SystemExit(main())
