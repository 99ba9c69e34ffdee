from __future__ import annotations

import logging

from ..context import BuildCtx
from ..lib.iso import write_image_checksums
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


class ChecksumsPhase:
    name = "checksums"
    description = "Write .sha256 and .md5 files next to the ISO image"
    failure_policy = FailurePolicy.OPTIONAL

    def run(self, ctx: BuildCtx) -> None:
        if ctx.dry_run:
            logger.info("Would write checksums for %s", ctx.output_iso)
            return
        for p in write_image_checksums(str(ctx.output_iso)):
            logger.info("Wrote %s", p)
