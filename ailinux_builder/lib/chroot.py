from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from ..mounts import MountManager, MountPoint, MountSpec

logger = logging.getLogger(__name__)

# Commands inside the chroot start from a clean environment.
CHROOT_ENV = (
    "HOME=/root",
    "PATH=/usr/sbin:/usr/bin:/sbin:/bin:/usr/local/bin",
    "DEBIAN_FRONTEND=noninteractive",
    "LANG=C.UTF-8",
    "LC_ALL=C.UTF-8",
)

ESSENTIAL_DIRS = ("usr", "etc", "bin", "sbin", "var", "tmp")


def chroot_argv(target_root: str, argv: Sequence[str]) -> List[str]:
    """Wrap argv so it runs inside target root."""

    return ["chroot", target_root, "/usr/bin/env", "-i", *CHROOT_ENV, *argv]


def chroot_root_of(argv: Sequence[str]) -> Optional[str]:
    args = list(argv)
    if args[:2] == ["sudo", "-n"]:
        args = args[2:]
    elif args[:1] == ["sudo"]:
        args = args[1:]
    if len(args) > 1 and args[0] == "chroot":
        return args[1]
    return None


def essential_mounts(target_root: str) -> List[MountSpec]:
    # Parents before children: /dev must precede /dev/pts.
    root = target_root.rstrip("/")
    return [
        MountSpec(source="proc", path=f"{root}/proc", fstype="proc"),
        MountSpec(source="sysfs", path=f"{root}/sys", fstype="sysfs"),
        MountSpec(source="udev", path=f"{root}/dev", fstype="devtmpfs"),
        MountSpec(source="devpts", path=f"{root}/dev/pts", fstype="devpts", options=("gid=5", "mode=620")),
        MountSpec(
            source="tmpfs",
            path=f"{root}/run",
            fstype="tmpfs",
            options=("mode=755", "nodev", "nosuid", "strictatime"),
        ),
    ]


def mount_chroot_filesystems(mounts: MountManager, target_root: str) -> List[MountPoint]:
    return [mounts.mount(spec) for spec in essential_mounts(target_root)]


def validate_chroot_dir(target_root: str) -> List[str]:
    """Return the essential top-level directories missing from target root."""

    root = Path(target_root)
    if not root.is_dir():
        raise FileNotFoundError(target_root)

    missing = [d for d in ESSENTIAL_DIRS if not (root / d).is_dir()]
    if len(missing) > 2:
        logger.warning(
            "Chroot %s is missing essential directories: %s; it may not be a bootstrapped system",
            target_root,
            " ".join(missing),
        )
    return missing
