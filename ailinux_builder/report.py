from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .audit import ErrorLog
from .build_config import BuildConfig
from .recovery import RecoveryResult
from .sequencer import BuildOutcome, PhaseSequencer
from .session import SessionMonitor

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def build_report(
    *,
    cfg: BuildConfig,
    outcome: Optional[BuildOutcome],
    sequencer: Optional[PhaseSequencer],
    error_log: ErrorLog,
    recoveries: Sequence[RecoveryResult] = (),
    session: Optional[SessionMonitor] = None,
    log_path: Optional[str] = None,
    session_type: Optional[str] = None,
    started_at: Optional[float] = None,
    fatal_error: Optional[str] = None,
) -> Dict[str, Any]:
    """Post-mortem summary of a run; produced for success and failure alike."""

    teardown = sequencer.teardown if sequencer is not None else None
    report: Dict[str, Any] = {
        "outcome": str(outcome) if outcome is not None else "Failed(startup)",
        "exit_code": outcome.exit_code if outcome is not None else 2,
        "failed_phase": outcome.failed_phase if outcome is not None else None,
        "handling_mode": cfg.handling_mode.value,
        "dry_run": cfg.dry_run,
        "skip_cleanup": cfg.skip_cleanup,
        "non_continuable": list(cfg.non_continuable),
        "started_at": started_at,
        "finished_at": time.time(),
        "log_path": log_path,
        "phases": [p.to_dict() for p in sequencer.phases] if sequencer is not None else [],
        "phase_events": [e.to_dict() for e in sequencer.events] if sequencer is not None else [],
        "rolled_back": [r.to_dict() for r in sequencer.rolled_back] if sequencer is not None else [],
        "mounts_torn_down": [
            {"path": path, "method": method} for path, method in (teardown.torn_down if teardown else [])
        ],
        "stuck_mounts": list(teardown.stuck) if teardown else [],
        "recovery": [r.to_dict() for r in recoveries],
        "errors": [e.to_dict() for e in error_log.events],
    }
    if outcome is not None and outcome.error_chain:
        report["error_chain"] = [e.to_dict() for e in outcome.error_chain]
    if fatal_error:
        report["fatal_error"] = fatal_error
    if session is not None:
        st = session.state
        report["session"] = {
            "type": session_type,
            "parent_pid": st.parent_pid,
            "log_writable": st.log_writable,
            "verdict": st.verdict.value,
            "last_check_time": st.last_check_time,
        }
    return report


def render_text(report: Dict[str, Any]) -> str:
    lines: List[str] = [
        "AILinux Build Report",
        "====================",
        f"Outcome: {report['outcome']} (exit code {report['exit_code']})",
        f"Mode: {report['handling_mode']}{' (dry run)' if report.get('dry_run') else ''}",
        "",
        "Phases:",
    ]
    for p in report.get("phases") or []:
        suffix = f" - {p['error']}" if p.get("error") else ""
        lines.append(f"  {p['name']:<30} {p['status']:<10} [{p['failure_policy']}]{suffix}")

    rolled = report.get("rolled_back") or []
    lines.append("")
    lines.append(f"Operations rolled back: {len(rolled)}")
    for r in rolled:
        lines.append(f"  #{r['id']} {r['kind']} {r['description']} ({r['status']})")

    stuck = report.get("stuck_mounts") or []
    lines.append(f"Stuck mounts: {len(stuck)}")
    for path in stuck:
        lines.append(f"  {path}")

    rec = report.get("recovery") or []
    lines.append(f"Recovery cycles: {len(rec)}")
    for r in rec:
        lines.append(f"  {r['operation']}: {r['outcome']} after {len(r['attempts'])} attempt(s)")
        for a in r["attempts"]:
            lines.append(f"    {a['attempt']}. [{a['kind']}] {a['action']} -> {a['outcome']}")

    lines.append(f"Errors recorded: {len(report.get('errors') or [])}")
    session = report.get("session")
    if session:
        lines.append(f"Session: {session['verdict']} (parent pid {session['parent_pid']})")
    return "\n".join(lines) + "\n"


def write_report(path: str, report: Dict[str, Any]) -> str:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    fmt = _detect_format(p)
    if fmt in {"yaml", "yml"}:
        import yaml  # type: ignore

        p.write_text(yaml.safe_dump(report, sort_keys=False) + "\n", encoding="utf-8")
    else:
        p.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    logger.info("Build report written to %s", p)
    return str(p)
