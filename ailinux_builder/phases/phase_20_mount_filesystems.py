from __future__ import annotations

import logging

from ..context import BuildCtx
from ..lib.chroot import mount_chroot_filesystems, validate_chroot_dir
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


class MountFilesystemsPhase:
    name = "mount_essential_filesystems"
    description = "Mount proc, sys, dev, dev/pts and run into the chroot"
    failure_policy = FailurePolicy.CRITICAL

    def run(self, ctx: BuildCtx) -> None:
        root = str(ctx.chroot_dir)
        if not ctx.dry_run:
            validate_chroot_dir(root)

        handles = mount_chroot_filesystems(ctx.mounts, root)
        owned = [h.path for h in handles if h.owned]
        logger.info("Chroot filesystems ready (%s mounted by this build)", len(owned))
