"""
Shared test fixtures: a scripted command runner, a fake mount table and a
session monitor whose parent/log checks are controlled by the test.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest

from ailinux_builder.audit import ErrorLog
from ailinux_builder.build_config import BuildConfig, HandlingMode
from ailinux_builder.context import BuildCtx
from ailinux_builder.lib.command import CmdResult
from ailinux_builder.mounts import MountManager
from ailinux_builder.operations import OperationRunner
from ailinux_builder.recovery import RecoveryEngine
from ailinux_builder.session import SessionMonitor
from ailinux_builder.tracker import OperationTracker

# A scripted response: a bare exit code, or (exit code, text). Text goes to
# stdout on success and to stderr on failure.
Response = Union[int, Tuple[int, str]]


class FakeSystem:
    """Command runner plus mount table; nothing touches the real host."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.mounted: set = set()
        self.killed: List[Tuple[int, int]] = []
        self._rules: List[Tuple[List[str], List[Response]]] = []

    def on(self, prefix: Sequence[str], *responses: Response) -> None:
        """Script responses for argv starting with prefix; the last one repeats."""
        self._rules.insert(0, (list(prefix), list(responses)))

    def _respond(self, argv: List[str]) -> Response:
        for prefix, queue in self._rules:
            if argv[: len(prefix)] == prefix:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return 0

    def __call__(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
        dry_run: bool = False,
    ) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        resp = self._respond(argv)
        rc, text = (resp, "") if isinstance(resp, int) else resp
        result = CmdResult(
            argv=argv,
            returncode=rc,
            stdout=text if rc == 0 else "",
            stderr=text if rc != 0 else "",
        )
        if result.ok and not dry_run:
            self._apply(argv)
        return result

    def _apply(self, argv: List[str]) -> None:
        if argv[0] == "mount":
            path = argv[argv.index("-o") - 1] if "-o" in argv else argv[-1]
            self.mounted.add(path)
        elif argv[0] == "umount":
            self.mounted.discard(argv[-1])

    def is_mountpoint(self, path: str) -> bool:
        return path in self.mounted

    def kill(self, pid: int, sig: int) -> None:
        self.killed.append((pid, sig))

    def commands(self, name: str) -> List[List[str]]:
        return [c for c in self.calls if c and c[0] == name]


class HostState:
    def __init__(self) -> None:
        self.parent_alive = True
        self.log_writable = True


@pytest.fixture
def system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def host() -> HostState:
    return HostState()


@pytest.fixture
def session(tmp_path: Path, host: HostState) -> SessionMonitor:
    return SessionMonitor(
        log_path=str(tmp_path / "build.log"),
        parent_pid=4242,
        is_alive=lambda pid: host.parent_alive,
        is_writable=lambda path: host.log_writable,
    )


@pytest.fixture
def make_cfg(tmp_path: Path):
    """BuildConfig rooted in tmp_path; purge globs never reach the host."""

    def _make(mode: HandlingMode = HandlingMode.GRACEFUL, raw: Optional[dict] = None, **kwargs) -> BuildConfig:
        base = {
            "paths": {"work_dir": str(tmp_path / "work"), "output_dir": str(tmp_path / "out")},
            "error_handling": {
                "network_backoff_s": 0,
                "purge_globs": [str(tmp_path / "cache" / "*")],
            },
        }
        for key, section in (raw or {}).items():
            base.setdefault(key, {}).update(section)
        return BuildConfig(raw=base, handling_mode=mode, **kwargs)

    return _make


@pytest.fixture
def make_mounts(system: FakeSystem, session: SessionMonitor):
    def _make(**kwargs) -> MountManager:
        kwargs.setdefault("session", session)
        return MountManager(
            runner=system,
            is_mountpoint=system.is_mountpoint,
            kill=system.kill,
            sleep=lambda s: None,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_engine(system: FakeSystem, session: SessionMonitor, make_cfg):
    def _make(mode: HandlingMode = HandlingMode.GRACEFUL, raw: Optional[dict] = None, **kwargs) -> RecoveryEngine:
        kwargs.setdefault("session", session)
        kwargs.setdefault("error_log", ErrorLog())
        kwargs.setdefault("is_root", lambda: False)
        return RecoveryEngine(make_cfg(mode, raw), runner=system, sleep=lambda s: None, **kwargs)

    return _make


@pytest.fixture
def make_ctx(system: FakeSystem, session: SessionMonitor, make_cfg, make_mounts):
    def _make(mode: HandlingMode = HandlingMode.GRACEFUL, raw: Optional[dict] = None, **kwargs) -> BuildCtx:
        cfg = make_cfg(mode, raw, **kwargs)
        error_log = ErrorLog()
        mounts = make_mounts(dry_run=cfg.dry_run)
        recovery = RecoveryEngine(
            cfg,
            runner=system,
            mounts=mounts,
            session=session,
            error_log=error_log,
            sleep=lambda s: None,
            is_root=lambda: False,
        )
        return BuildCtx(
            cfg=cfg,
            ops=OperationRunner(cfg, recovery=recovery, error_log=error_log, runner=system),
            tracker=OperationTracker(),
            mounts=mounts,
            session=session,
            error_log=error_log,
        )

    return _make
