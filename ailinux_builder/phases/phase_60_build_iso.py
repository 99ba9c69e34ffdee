from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from ..context import BuildCtx
from ..errors import BuildError
from ..lib.assets import copy_tree, file_remover
from ..lib.iso import write_md5sums, xorriso_argv
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


def newest(boot: Path, pattern: str) -> Optional[Path]:
    found = sorted(boot.glob(pattern))
    return found[-1] if found else None


class BuildIsoPhase:
    name = "build_iso"
    description = "Assemble the ISO tree and write the image with xorriso"
    failure_policy = FailurePolicy.CRITICAL

    def run(self, ctx: BuildCtx) -> None:
        iso_dir = ctx.iso_dir
        casper = iso_dir / "casper"

        if ctx.cfg.boot_assets_dir:
            copy_tree(ctx.cfg.boot_assets_dir, str(iso_dir), dry_run=ctx.dry_run)

        if not ctx.dry_run:
            if not (casper / "filesystem.squashfs").exists():
                raise BuildError(f"missing {casper / 'filesystem.squashfs'}; nothing to put on the ISO")
            self._copy_boot_files(ctx.chroot_dir / "boot", casper)
            # casper verifies the medium against md5sum.txt, so it must be inside the image.
            write_md5sums(str(iso_dir))

        out = ctx.output_iso
        if not ctx.dry_run:
            out.parent.mkdir(parents=True, exist_ok=True)
        ctx.tracker.record("artifact", file_remover(str(out), dry_run=ctx.dry_run), description=f"partial {out}")

        isolinux = (iso_dir / "isolinux" / "isolinux.bin").exists()
        if not isolinux:
            logger.warning("No isolinux/isolinux.bin in %s; the ISO will not be BIOS-bootable", iso_dir)
        ctx.execute(
            "xorriso",
            xorriso_argv(str(iso_dir), str(out), volume_id=ctx.cfg.volume_id, isolinux=isolinux),
        )
        logger.info("ISO image written to %s", out)

    def _copy_boot_files(self, boot: Path, casper: Path) -> None:
        for pattern, target in (("vmlinuz-*", "vmlinuz"), ("initrd.img-*", "initrd")):
            src = newest(boot, pattern)
            if src is None:
                logger.warning("No %s found in %s", pattern, boot)
                continue
            shutil.copy2(src, casper / target)
            logger.info("Copied %s -> %s", src, casper / target)
