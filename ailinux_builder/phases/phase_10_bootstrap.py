from __future__ import annotations

import logging

from ..context import BuildCtx
from ..lib.assets import tree_remover
from ..lib.pkg import debootstrap_argv
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


class BootstrapPhase:
    name = "bootstrap"
    description = "Create the base system with debootstrap"
    failure_policy = FailurePolicy.CRITICAL

    def run(self, ctx: BuildCtx) -> None:
        cfg = ctx.cfg
        chroot = ctx.chroot_dir

        if (chroot / "usr" / "bin").is_dir() and (chroot / "etc").is_dir():
            logger.info("Base system already present in %s; reusing it", chroot)
            return

        if not chroot.exists():
            # Only a directory this run created may be removed on rollback.
            ctx.tracker.record(
                "workdir",
                tree_remover(str(chroot), dry_run=ctx.dry_run),
                description=f"create {chroot}",
                destructive=True,
            )
            if not ctx.dry_run:
                chroot.mkdir(parents=True, exist_ok=True)

        ctx.execute(
            "debootstrap",
            debootstrap_argv(
                target_root=str(chroot),
                suite=cfg.suite,
                mirror=cfg.mirror,
                arch=cfg.arch,
                variant=cfg.variant,
                components=cfg.components,
            ),
        )
        logger.info("Base system (%s/%s) bootstrapped into %s", cfg.suite, cfg.arch, chroot)
