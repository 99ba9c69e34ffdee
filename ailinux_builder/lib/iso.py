from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

CHECKSUM_SKIP = {"md5sum.txt", "isolinux/boot.cat"}


def mksquashfs_argv(
    rootfs: str,
    out: str,
    *,
    compression: str = "xz",
    excludes: Sequence[str] = ("boot",),
) -> List[str]:
    argv = ["mksquashfs", rootfs, out, "-noappend", "-comp", compression]
    if excludes:
        argv += ["-e", *excludes]
    return argv


def xorriso_argv(iso_dir: str, out: str, *, volume_id: str, isolinux: bool = True) -> List[str]:
    argv = [
        "xorriso",
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-volid",
        volume_id,
        "-J",
        "-l",
        "-r",
    ]
    if isolinux:
        argv += [
            "-b",
            "isolinux/isolinux.bin",
            "-c",
            "isolinux/boot.cat",
            "-no-emul-boot",
            "-boot-load-size",
            "4",
            "-boot-info-table",
        ]
    argv += ["-o", out, iso_dir]
    return argv


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    h = hashlib.new(algorithm)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def tree_size(root: str) -> int:
    """Apparent size in bytes of a tree without crossing filesystems (du -sx)."""

    top = Path(root)
    dev = top.lstat().st_dev
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune mount points (e.g. a still-mounted /proc).
        dirnames[:] = [d for d in dirnames if os.lstat(os.path.join(dirpath, d)).st_dev == dev]
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def write_md5sums(iso_dir: str) -> Path:
    """Write md5sum.txt the way casper's integrity check expects it."""

    root = Path(iso_dir)
    lines = []
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root).as_posix()
        if not p.is_file() or rel in CHECKSUM_SKIP:
            continue
        lines.append(f"{file_digest(p, 'md5')}  ./{rel}")
    out = root / "md5sum.txt"
    out.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.info("Wrote %s (%s files)", out, len(lines))
    return out


def write_image_checksums(image: str) -> List[Path]:
    p = Path(image)
    written = []
    for algorithm in ("sha256", "md5"):
        out = p.with_name(f"{p.name}.{algorithm}")
        out.write_text(f"{file_digest(p, algorithm)}  {p.name}\n", encoding="utf-8")
        written.append(out)
    return written
