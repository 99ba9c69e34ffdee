"""
Tests for the mount lifecycle manager: ordering, escalation and stuck mounts.
"""

import signal

import pytest

from ailinux_builder.errors import MountFailed
from ailinux_builder.lib.chroot import essential_mounts, mount_chroot_filesystems
from ailinux_builder.mounts import MountSpec, MountState


def _spec(tmp_path, name, fstype="tmpfs"):
    return MountSpec(source=fstype, path=str(tmp_path / name), fstype=fstype)


class TestMount:
    def test_mount_pushes_and_creates_target(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        h = mm.mount(_spec(tmp_path, "chroot/proc", "proc"))
        assert h.owned
        assert h.state is MountState.MOUNTED
        assert (tmp_path / "chroot" / "proc").is_dir()
        assert system.commands("mount") == [["mount", "-t", "proc", "proc", str(tmp_path / "chroot/proc")]]
        assert [m.path for m in mm.stack] == [h.path]

    def test_already_mounted_is_noop(self, tmp_path, system, make_mounts):
        spec = _spec(tmp_path, "chroot/proc", "proc")
        system.mounted.add(spec.path)
        mm = make_mounts()
        h = mm.mount(spec)
        assert not h.owned
        assert system.commands("mount") == []
        assert mm.stack == []

    def test_mount_failure_raises(self, tmp_path, system, make_mounts):
        system.on(["mount"], (32, "mount: /x: unknown filesystem type 'devtmpfs'"))
        mm = make_mounts()
        with pytest.raises(MountFailed) as exc:
            mm.mount(_spec(tmp_path, "chroot/dev", "devtmpfs"))
        assert "unknown filesystem type" in exc.value.reason
        assert mm.stack == []

    def test_essential_mounts_order_and_options(self, tmp_path, system, make_mounts):
        root = str(tmp_path / "chroot")
        mm = make_mounts()
        mount_chroot_filesystems(mm, root)
        paths = [m.path for m in mm.stack]
        assert paths == [s.path for s in essential_mounts(root)]
        assert paths.index(f"{root}/dev") < paths.index(f"{root}/dev/pts")
        pts = [c for c in system.commands("mount") if c[-3] == f"{root}/dev/pts"][0]
        assert pts[-2:] == ["-o", "gid=5,mode=620"]


class TestTeardown:
    def test_reverse_order(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        specs = [_spec(tmp_path, f"m{i}") for i in range(1, 4)]
        for s in specs:
            mm.mount(s)
        report = mm.unmount_all()
        assert [c[-1] for c in system.commands("umount")] == [s.path for s in reversed(specs)]
        assert report.clean
        assert mm.stack == []

    def test_escalation_to_forced_is_not_stuck(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        proc = mm.mount(_spec(tmp_path, "chroot/proc", "proc"))
        system.on(["umount", proc.path], (32, "target is busy"))
        system.on(["umount", "-l", proc.path], (32, "target is busy"))

        report = mm.unmount_all()

        assert report.torn_down == [(proc.path, "force")]
        assert report.stuck == []
        assert proc.state is MountState.UNMOUNTED
        assert ["umount", "-f", proc.path] in system.calls

    def test_stuck_mount_reported_and_teardown_continues(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        first = mm.mount(_spec(tmp_path, "a"))
        stuck = mm.mount(_spec(tmp_path, "b"))
        system.on(["umount"], (32, "target is busy"))
        system.on(["umount", first.path], 0)

        report = mm.unmount_all()

        assert report.stuck == [stuck.path]
        assert mm.stuck == [stuck.path]
        assert (first.path, "umount") in report.torn_down
        assert stuck.state is MountState.STUCK
        assert [m.path for m in mm.stack] == [stuck.path]

    def test_kill_step_spares_protected_pids(self, tmp_path, system, make_mounts, session):
        mm = make_mounts()
        mp = mm.mount(_spec(tmp_path, "chroot/run"))
        protected = max(session.protected_pids())
        system.on(["umount", mp.path], (32, "target is busy"), 0)
        system.on(["umount", "-l", mp.path], (32, "target is busy"))
        system.on(["fuser", "-m", mp.path], (0, f" 99999c {protected}m"))

        report = mm.unmount_all()

        assert report.torn_down == [(mp.path, "kill")]
        assert system.killed == [(99999, signal.SIGTERM)]

    def test_compromised_session_skips_destructive_steps(self, tmp_path, system, make_mounts, host):
        mm = make_mounts()
        mp = mm.mount(_spec(tmp_path, "chroot/dev"))
        system.on(["umount"], (32, "target is busy"))
        host.parent_alive = False

        report = mm.unmount_all()

        assert report.stuck == [mp.path]
        assert system.commands("fuser") == []
        assert ["umount", "-f", mp.path] not in system.calls
        assert system.killed == []

    def test_stuck_child_detached_with_parent(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        dev = mm.mount(_spec(tmp_path, "chroot/dev", "devtmpfs"))
        pts = mm.mount(_spec(tmp_path, "chroot/dev/pts", "devpts"))
        system.on(["umount"], (32, "target is busy"))
        system.on(["umount", "-l", dev.path], 0)

        report = mm.unmount_all()

        assert (dev.path, "lazy") in report.torn_down
        assert (pts.path, "detached-with-parent") in report.torn_down
        assert report.stuck == []
        assert mm.stack == []

    def test_already_unmounted_entry(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        mp = mm.mount(_spec(tmp_path, "x"))
        system.mounted.discard(mp.path)
        report = mm.unmount_all()
        assert report.torn_down == [(mp.path, "already-unmounted")]
        assert system.commands("umount") == []

    def test_dry_run_creates_nothing(self, tmp_path, system, make_mounts):
        mm = make_mounts(dry_run=True)
        mp = mm.mount(_spec(tmp_path, "chroot/sys", "sysfs"))
        assert not (tmp_path / "chroot").exists()
        report = mm.unmount_all()
        assert report.torn_down == [(mp.path, "umount")]

    def test_lazy_unmount_marks_subtree(self, tmp_path, system, make_mounts):
        mm = make_mounts()
        dev = mm.mount(_spec(tmp_path, "chroot/dev"))
        pts = mm.mount(_spec(tmp_path, "chroot/dev/pts"))
        assert mm.lazy_unmount(dev.path)
        assert dev.state is MountState.UNMOUNTED
        assert pts.state is MountState.UNMOUNTED
        assert mm.stack == []
