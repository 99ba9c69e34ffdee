from __future__ import annotations

import logging

from ..context import BuildCtx
from ..lib.chroot import chroot_argv
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


class CustomizePhase:
    name = "customize"
    description = "Run configured customization commands inside the chroot"
    failure_policy = FailurePolicy.OPTIONAL

    def run(self, ctx: BuildCtx) -> None:
        commands = ctx.cfg.customize_commands
        if not commands:
            logger.info("No customization commands configured")
            return

        root = str(ctx.chroot_dir)
        for idx, argv in enumerate(commands, start=1):
            ctx.execute(f"customize_{idx}", chroot_argv(root, argv))
        logger.info("Applied %s customization command(s)", len(commands))
