"""
Tests for the phase sequencer: failure policies, rollback and stop requests.
"""

from ailinux_builder.build_config import HandlingMode
from ailinux_builder.interrupts import StopFlag
from ailinux_builder.mounts import MountSpec
from ailinux_builder.recovery import RecoveryOutcome
from ailinux_builder.sequencer import (
    BuildOutcome,
    FailurePolicy,
    OutcomeKind,
    Phase,
    PhaseSequencer,
    PhaseStatus,
)

DEBOOTSTRAP = ["debootstrap", "noble", "/w/chroot"]


def _phase(name, fn, policy=FailurePolicy.CRITICAL):
    return Phase(name=name, executor=fn, failure_policy=policy)


def _raise(exc):
    def run(ctx):
        raise exc

    return run


class TestHappyPath:
    def test_runs_in_order_and_commits(self, make_ctx):
        ctx = make_ctx()
        seen = []
        undone = []

        def step(name):
            def run(c):
                seen.append((name, c.phase))
                c.tracker.record("marker", lambda: undone.append(name))

            return run

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("a", step("a")), _phase("b", step("b"))])

        assert outcome.ok and outcome.exit_code == 0
        assert seen == [("a", "a"), ("b", "b")]
        assert len(ctx.tracker) == 0
        assert undone == []
        assert [(e.phase, e.event) for e in seq.events] == [("a", "start"), ("a", "end"), ("b", "start"), ("b", "end")]
        assert seq.events[1].status is PhaseStatus.COMPLETED
        assert seq.events[1].duration_s is not None

    def test_mounts_torn_down_at_end(self, tmp_path, make_ctx, system):
        ctx = make_ctx()

        def mount(c):
            c.mounts.mount(MountSpec(source="proc", path=str(tmp_path / "chroot/proc"), fstype="proc"))

        seq = PhaseSequencer(ctx)
        assert seq.run([_phase("mount", mount)]).ok
        assert ctx.mounts.stack == []
        assert system.mounted == set()


class TestFailurePolicies:
    def test_critical_failure_rolls_back_and_stops(self, tmp_path, make_ctx, system):
        ctx = make_ctx()
        undone = []
        ran = []

        def mount_then_fail(c):
            c.mounts.mount(MountSpec(source="sysfs", path=str(tmp_path / "chroot/sys"), fstype="sysfs"))
            c.tracker.record("artifact", lambda: undone.append("partial"))
            raise RuntimeError("boom")

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("b", mount_then_fail), _phase("c", lambda c: ran.append("c"))])

        assert outcome.kind is OutcomeKind.FAILED
        assert str(outcome) == "Failed(b)"
        assert outcome.exit_code == 1
        assert undone == ["partial"]
        assert ran == []
        assert [p.status for p in seq.phases] == [PhaseStatus.FAILED, PhaseStatus.SKIPPED]
        assert seq.teardown is not None and seq.teardown.clean
        assert system.mounted == set()

    def test_stuck_mount_is_not_retried_after_rollback(self, tmp_path, make_ctx, system):
        ctx = make_ctx()
        path = str(tmp_path / "chroot/dev")
        system.on(["umount"], (32, "target is busy"))

        def mount_then_fail(c):
            c.mounts.mount(MountSpec(source="udev", path=path, fstype="devtmpfs"))
            raise RuntimeError("boom")

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("mount_essential_filesystems", mount_then_fail)])

        assert not outcome.ok
        assert system.calls.count(["umount", "-f", path]) == 1
        assert seq.teardown.attempted == [path]
        assert seq.teardown.stuck == [path]

    def test_teardown_done_inside_a_phase_is_reported(self, tmp_path, make_ctx, system):
        ctx = make_ctx()
        path = str(tmp_path / "chroot/proc")

        def mount_and_release(c):
            c.mounts.mount(MountSpec(source="proc", path=path, fstype="proc"))
            c.mounts.unmount_all()

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("build_squashfs", mount_and_release)])

        assert outcome.ok
        assert seq.teardown.torn_down == [(path, "umount")]
        assert seq.teardown.clean

    def test_optional_failure_continues(self, make_ctx):
        ctx = make_ctx()
        undone = []
        ran = []

        def flaky(c):
            c.tracker.record("artifact", lambda: undone.append("optional"))
            raise RuntimeError("optional step broke")

        seq = PhaseSequencer(ctx)
        outcome = seq.run(
            [
                _phase("a", lambda c: c.tracker.record("x", lambda: undone.append("a"))),
                _phase("opt", flaky, FailurePolicy.OPTIONAL),
                _phase("c", lambda c: ran.append("c")),
            ]
        )

        assert outcome.ok
        assert ran == ["c"]
        assert undone == ["optional"]
        assert seq.phases[1].status is PhaseStatus.FAILED
        assert "optional step broke" in seq.phases[1].error

    def test_permissive_failure_does_not_stop(self, make_ctx, system):
        system.on(["apt-get"], (100, "E: Unable to locate package nope"))
        ctx = make_ctx(HandlingMode.PERMISSIVE)
        ran = []

        seq = PhaseSequencer(ctx)
        outcome = seq.run(
            [
                _phase("install_packages", lambda c: c.execute("install_packages", ["apt-get", "install", "nope"])),
                _phase("next", lambda c: ran.append("next")),
            ]
        )

        assert outcome.ok
        assert ran == ["next"]
        assert len(ctx.error_log) >= 1

    def test_strict_forces_optional_phase_critical(self, make_ctx, system):
        system.on(["false"], (1, "weird failure"))
        ctx = make_ctx(HandlingMode.STRICT)
        ran = []

        seq = PhaseSequencer(ctx)
        outcome = seq.run(
            [
                _phase("customize", lambda c: c.execute("customize_1", ["false"]), FailurePolicy.OPTIONAL),
                _phase("next", lambda c: ran.append("next")),
            ]
        )

        assert str(outcome) == "Failed(customize)"
        assert ran == []
        assert outcome.error_chain[0].operation_name == "customize_1"

    def test_allow_failure_is_tolerated(self, make_ctx, system):
        system.on(["false"], (1, "weird failure"))
        ctx = make_ctx(HandlingMode.STRICT)
        results = []

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("a", lambda c: results.append(c.execute("check_tool", ["false"], allow_failure=True)))])

        assert outcome.ok
        assert results[0].tolerated
        assert ctx.ops.recovery.history == []


class TestBootstrapDiskSpace:
    def _bootstrap(self, undone):
        def run(c):
            c.tracker.record("workdir", lambda: undone.append("workdir"))
            c.execute("debootstrap", DEBOOTSTRAP)

        return _phase("bootstrap", run)

    def test_recovered_phase_completes(self, make_ctx, system):
        system.on(["debootstrap"], (1, "No space left on device"), 0)
        ctx = make_ctx()
        undone = []

        seq = PhaseSequencer(ctx)
        outcome = seq.run([self._bootstrap(undone)])

        assert outcome.ok
        assert seq.phases[0].status is PhaseStatus.COMPLETED
        assert ["apt-get", "clean"] in system.calls
        assert ctx.ops.recovery.history[0].outcome is RecoveryOutcome.RECOVERED
        assert undone == []

    def test_unrecovered_bootstrap_fails_build(self, make_ctx, system):
        system.on(["debootstrap"], (1, "No space left on device"))
        ctx = make_ctx()
        undone = []

        seq = PhaseSequencer(ctx)
        outcome = seq.run([self._bootstrap(undone), _phase("install_packages", lambda c: None)])

        assert outcome == BuildOutcome.failed("bootstrap", outcome.error_chain)
        assert undone == ["workdir"]
        assert seq.phases[1].status is PhaseStatus.SKIPPED
        assert all(e.classified_kind.value == "disk_space" for e in outcome.error_chain)
        assert len(outcome.error_chain) == 1 + ctx.cfg.max_attempts


class TestStop:
    def test_stop_checked_at_phase_boundary(self, make_ctx):
        ctx = make_ctx()
        stop = StopFlag()
        ran = []

        def first(c):
            ran.append("first")
            stop.request("requested by SIGINT")

        seq = PhaseSequencer(ctx, stop=stop)
        outcome = seq.run([_phase("first", first), _phase("second", lambda c: ran.append("second"))])

        assert ran == ["first"]
        assert outcome.kind is OutcomeKind.INTERRUPTED
        assert outcome.exit_code == 130
        assert seq.phases[0].status is PhaseStatus.COMPLETED
        assert seq.phases[1].status is PhaseStatus.SKIPPED

    def test_keyboard_interrupt_in_phase(self, make_ctx):
        ctx = make_ctx()
        undone = []

        def run(c):
            c.tracker.record("x", lambda: undone.append("x"))
            raise KeyboardInterrupt

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("a", run), _phase("b", lambda c: None)])

        assert outcome.kind is OutcomeKind.INTERRUPTED
        assert undone == ["x"]
        assert seq.phases[1].status is PhaseStatus.SKIPPED

    def test_stop_during_failing_phase_is_interrupted(self, make_ctx, system):
        system.on(["xorriso"], 130)
        ctx = make_ctx(HandlingMode.STRICT)
        stop = StopFlag()
        undone = []

        def build_iso(c):
            c.tracker.record("artifact", lambda: undone.append("iso"))
            stop.request("requested by SIGINT")
            c.execute("build_iso", ["xorriso", "-as", "mkisofs", "-o", "/w/out.iso"])

        seq = PhaseSequencer(ctx, stop=stop)
        outcome = seq.run([_phase("build_iso", build_iso), _phase("checksums", lambda c: None)])

        assert outcome.kind is OutcomeKind.INTERRUPTED
        assert outcome.exit_code == 130
        assert undone == ["iso"]
        assert seq.phases[0].status is PhaseStatus.FAILED
        assert seq.phases[1].status is PhaseStatus.SKIPPED

    def test_child_killed_by_sigint_is_interrupted(self, make_ctx, system):
        system.on(["xorriso"], 130)
        ctx = make_ctx(HandlingMode.STRICT)

        seq = PhaseSequencer(ctx)
        outcome = seq.run(
            [
                _phase("build_iso", lambda c: c.execute("build_iso", ["xorriso", "-o", "/w/out.iso"])),
                _phase("checksums", lambda c: None),
            ]
        )

        assert str(outcome) == "Interrupted"
        assert outcome.exit_code == 130
        assert seq.phases[1].status is PhaseStatus.SKIPPED
        assert system.commands("xorriso") == [["xorriso", "-o", "/w/out.iso"]]


class TestSkipCleanup:
    def test_leaves_mounts_and_operations(self, tmp_path, make_ctx, system):
        ctx = make_ctx(skip_cleanup=True)
        undone = []

        def run(c):
            c.mounts.mount(MountSpec(source="proc", path=str(tmp_path / "chroot/proc"), fstype="proc"))
            c.tracker.record("x", lambda: undone.append("x"))
            raise RuntimeError("boom")

        seq = PhaseSequencer(ctx)
        outcome = seq.run([_phase("a", run)])

        assert not outcome.ok
        assert undone == []
        assert len(ctx.mounts.stack) == 1
        assert system.commands("umount") == []
