from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

from .audit import ErrorLog
from .build_config import BuildConfig
from .mounts import MountManager
from .operations import OperationResult, OperationRunner
from .session import SessionMonitor
from .tracker import OperationTracker


@dataclass(frozen=True)
class BuildCtx:
    """Everything a phase executor may touch, passed explicitly."""

    cfg: BuildConfig
    ops: OperationRunner
    tracker: OperationTracker
    mounts: MountManager
    session: SessionMonitor
    error_log: ErrorLog
    phase: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.cfg.dry_run

    @property
    def chroot_dir(self) -> Path:
        return Path(self.cfg.chroot_dir)

    @property
    def iso_dir(self) -> Path:
        return Path(self.cfg.iso_dir)

    @property
    def output_iso(self) -> Path:
        return Path(self.cfg.output_iso)

    def execute(self, name: str, argv: Sequence[str], **kwargs: Any) -> OperationResult:
        return self.ops.execute(name, argv, phase=self.phase, **kwargs)
