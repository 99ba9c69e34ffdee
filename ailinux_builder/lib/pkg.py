from __future__ import annotations

from typing import List, Optional, Sequence

from .chroot import chroot_argv


def _maybe_chroot(target_root: Optional[str], argv: Sequence[str]) -> List[str]:
    if target_root:
        return chroot_argv(target_root, argv)
    return list(argv)


def debootstrap_argv(
    *,
    target_root: str,
    suite: str = "noble",
    mirror: str = "http://archive.ubuntu.com/ubuntu",
    arch: str | None = None,
    variant: str | None = None,
    components: Sequence[str] = (),
    include: Sequence[str] = (),
) -> List[str]:
    argv = ["debootstrap"]
    if arch:
        argv += ["--arch", arch]
    if variant:
        argv.append(f"--variant={variant}")
    if components:
        argv.append(f"--components={','.join(components)}")
    if include:
        argv.append(f"--include={','.join(include)}")
    argv += [suite, target_root, mirror]
    return argv


def apt_update_argv(target_root: Optional[str] = None) -> List[str]:
    return _maybe_chroot(target_root, ["apt-get", "update"])


def apt_install_argv(
    target_root: Optional[str],
    packages: Sequence[str],
    *,
    with_recommends: bool = False,
) -> List[str]:
    argv = ["apt-get", "install", "-y"]
    if not with_recommends:
        argv.append("--no-install-recommends")
    return _maybe_chroot(target_root, [*argv, *packages])


def apt_fix_broken_argv(target_root: Optional[str] = None) -> List[str]:
    return _maybe_chroot(target_root, ["apt-get", "--fix-broken", "install", "-y"])


def apt_clean_argv(target_root: Optional[str] = None) -> List[str]:
    return _maybe_chroot(target_root, ["apt-get", "clean"])


def dpkg_manifest_argv(target_root: str) -> List[str]:
    return chroot_argv(target_root, ["dpkg-query", "-W", "--showformat=${Package}\t${Version}\n"])
