from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class DestructiveGuard(Protocol):
    def allows_destructive(self, step: str) -> bool:
        ...


@dataclass(frozen=True)
class OperationRecord:
    op_id: int
    kind: str
    undo: Callable[[], None] = field(repr=False, compare=False)
    description: str = ""
    timestamp: float = field(default_factory=time.time)
    destructive: bool = False


@dataclass(frozen=True)
class RollbackEntry:
    op_id: int
    kind: str
    description: str
    status: str  # undone|failed|skipped
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.op_id,
            "kind": self.kind,
            "description": self.description,
            "status": self.status,
            "error": self.error,
        }


class OperationTracker:
    """Push-down stack of reversible actions.

    Record an operation *before* the risky action it guards. ``rollback()``
    runs the undo closures newest-first and keeps going when one fails.
    """

    def __init__(self) -> None:
        self._stack: List[OperationRecord] = []
        self._ids = itertools.count(1)
        self.history: List[RollbackEntry] = []

    def __len__(self) -> int:
        return len(self._stack)

    @property
    def pending(self) -> List[OperationRecord]:
        return list(self._stack)

    def record(
        self,
        kind: str,
        undo: Callable[[], None],
        *,
        description: str = "",
        destructive: bool = False,
    ) -> OperationRecord:
        rec = OperationRecord(
            op_id=next(self._ids),
            kind=kind,
            undo=undo,
            description=description,
            destructive=destructive,
        )
        self._stack.append(rec)
        logger.debug("Tracked operation #%s %s %s", rec.op_id, kind, description)
        return rec

    def commit(self) -> int:
        """Forget all records without undoing them (their actions are now permanent)."""

        n = len(self._stack)
        self._stack.clear()
        return n

    def rollback(self, guard: Optional[DestructiveGuard] = None) -> List[RollbackEntry]:
        entries: List[RollbackEntry] = []
        if self._stack:
            logger.warning("Rolling back %s operation(s)", len(self._stack))

        while self._stack:
            # Removed before running so a failing or repeated rollback never runs it twice.
            rec = self._stack.pop()
            label = f"#{rec.op_id} {rec.kind} {rec.description}".rstrip()

            if rec.destructive and guard is not None and not guard.allows_destructive(label):
                entry = RollbackEntry(rec.op_id, rec.kind, rec.description, "skipped")
            else:
                try:
                    rec.undo()
                except Exception as e:
                    logger.error("Undo of %s failed: %s", label, e)
                    entry = RollbackEntry(rec.op_id, rec.kind, rec.description, "failed", str(e))
                else:
                    logger.info("Undid %s", label)
                    entry = RollbackEntry(rec.op_id, rec.kind, rec.description, "undone")
                if rec.destructive and guard is not None:
                    guard.allows_destructive(f"after {label}")

            entries.append(entry)

        self.history.extend(entries)
        return entries
