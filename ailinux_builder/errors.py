from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from .lib.command import CmdResult

INTERRUPTED_EXIT_CODE = 130


class ErrorKind(str, Enum):
    PERMISSION = "permission"
    DISK_SPACE = "disk_space"
    NETWORK = "network"
    PACKAGE_MANAGER = "package_manager"
    MOUNT_BUSY = "mount_busy"
    INTERRUPTED = "interrupted"
    UNKNOWN = "unknown"


# Evaluated top to bottom; the first kind with a matching keyword wins.
CLASSIFICATION_RULES: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.PERMISSION, ("permission denied", "operation not permitted")),
    (ErrorKind.DISK_SPACE, ("no space left", "disk quota exceeded")),
    (
        ErrorKind.NETWORK,
        (
            "network",
            "connection",
            "timeout",
            "timed out",
            "temporary failure resolving",
            "could not resolve",
        ),
    ),
    (ErrorKind.PACKAGE_MANAGER, ("package", "dpkg", "apt-get", "apt-cache", "sources.list")),
    (ErrorKind.MOUNT_BUSY, ("busy", "mount")),
)


def classify(exit_code: int, captured_output: str) -> ErrorKind:
    """Map a failed command to an ErrorKind.

    Exit code 130 (SIGINT) is always Interrupted; the text never decides it.
    Everything else is a case-insensitive substring heuristic.
    """

    if exit_code == INTERRUPTED_EXIT_CODE:
        return ErrorKind.INTERRUPTED

    text = (captured_output or "").lower()
    for kind, keywords in CLASSIFICATION_RULES:
        if any(k in text for k in keywords):
            return kind
    return ErrorKind.UNKNOWN


def classify_result(result: CmdResult) -> ErrorKind:
    # A timeout says nothing about the cause; "timed out" text must not turn it into Network.
    if result.timed_out:
        return ErrorKind.UNKNOWN
    return classify(result.returncode, result.output)


@dataclass(frozen=True)
class ErrorEvent:
    operation_name: str
    command: Tuple[str, ...]
    exit_code: int
    captured_output: str
    classified_kind: ErrorKind
    timestamp: float = field(default_factory=time.time)
    phase: Optional[str] = None
    timed_out: bool = False

    @classmethod
    def from_result(
        cls,
        operation_name: str,
        result: CmdResult,
        *,
        phase: Optional[str] = None,
    ) -> "ErrorEvent":
        return cls(
            operation_name=operation_name,
            command=tuple(result.argv),
            exit_code=result.returncode,
            captured_output=result.output,
            classified_kind=classify_result(result),
            phase=phase,
            timed_out=result.timed_out,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation_name,
            "command": list(self.command),
            "exit_code": self.exit_code,
            "output": self.captured_output,
            "kind": self.classified_kind.value,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "timed_out": self.timed_out,
        }


class BuildError(RuntimeError):
    pass


class ConfigError(BuildError):
    pass


class MountFailed(BuildError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Mount failed for {path}: {reason}")
        self.path = path
        self.reason = reason


class SessionCompromised(BuildError):
    """The invoking session is gone or can no longer be logged to."""


class LockHeld(BuildError):
    pass


class OperationFailed(BuildError):
    """An operation failed and the recovery policy declared it unrecoverable."""

    def __init__(
        self,
        operation: str,
        events: Sequence[ErrorEvent],
        *,
        outcome: str,
        force_critical: bool = False,
    ):
        last = events[-1] if events else None
        detail = f"exit {last.exit_code}, {last.classified_kind.value}" if last else "no events"
        super().__init__(f"Operation {operation} failed ({detail}, recovery: {outcome})")
        self.operation = operation
        self.events = tuple(events)
        self.outcome = outcome
        self.force_critical = force_critical
