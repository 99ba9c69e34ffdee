from __future__ import annotations

import logging

from ..context import BuildCtx
from ..errors import BuildError
from ..lib.assets import file_remover
from ..lib.iso import mksquashfs_argv, tree_size
from ..lib.pkg import dpkg_manifest_argv
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


class BuildSquashfsPhase:
    name = "build_squashfs"
    description = "Compress the chroot into casper/filesystem.squashfs"
    failure_policy = FailurePolicy.CRITICAL

    def run(self, ctx: BuildCtx) -> None:
        root = str(ctx.chroot_dir)
        casper = ctx.iso_dir / "casper"
        if not ctx.dry_run:
            casper.mkdir(parents=True, exist_ok=True)

        r = ctx.execute("package_manifest", dpkg_manifest_argv(root), allow_failure=True)
        if r.ok and not ctx.dry_run:
            (casper / "filesystem.manifest").write_text(r.result.stdout, encoding="utf-8")

        # The image must not capture live pseudo-filesystems.
        report = ctx.mounts.unmount_all()
        if report.stuck:
            raise BuildError(f"cannot build squashfs with stuck mounts: {', '.join(report.stuck)}")

        squashfs = casper / "filesystem.squashfs"
        ctx.tracker.record(
            "artifact",
            file_remover(str(squashfs), dry_run=ctx.dry_run),
            description=f"partial {squashfs}",
        )
        ctx.execute("mksquashfs", mksquashfs_argv(root, str(squashfs), compression=ctx.cfg.squashfs_compression))

        if not ctx.dry_run:
            size = tree_size(root)
            (casper / "filesystem.size").write_text(f"{size}\n", encoding="utf-8")
            logger.info("Squashfs written to %s (rootfs %s bytes)", squashfs, size)
