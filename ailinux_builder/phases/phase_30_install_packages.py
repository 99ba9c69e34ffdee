from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional

from ..context import BuildCtx
from ..lib.pkg import apt_install_argv, apt_update_argv
from ..sequencer import FailurePolicy

logger = logging.getLogger(__name__)


def sources_list_text(mirror: str, suite: str, components: List[str]) -> str:
    comps = " ".join(components)
    return (
        f"deb {mirror} {suite} {comps}\n"
        f"deb {mirror} {suite}-updates {comps}\n"
        f"deb {mirror} {suite}-security {comps}\n"
    )


def _restore(path: Path, previous: Optional[str], dry_run: bool) -> Callable[[], None]:
    def undo() -> None:
        if dry_run:
            logger.info("Would restore %s", path)
            return
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            path.write_text(previous, encoding="utf-8")
        logger.info("Restored %s", path)

    return undo


def write_sources_list(ctx: BuildCtx) -> None:
    cfg = ctx.cfg
    path = ctx.chroot_dir / "etc" / "apt" / "sources.list"
    text = sources_list_text(cfg.mirror, cfg.suite, cfg.components)

    previous = path.read_text(encoding="utf-8") if path.exists() else None
    if previous == text:
        return

    ctx.tracker.record(
        "package_index",
        _restore(path, previous, ctx.dry_run),
        description=f"rewrite {path}",
    )
    if ctx.dry_run:
        logger.info("Would write %s", path)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class InstallPackagesPhase:
    name = "install_packages"
    description = "Refresh the package index and install required packages"
    failure_policy = FailurePolicy.CRITICAL

    def run(self, ctx: BuildCtx) -> None:
        root = str(ctx.chroot_dir)
        write_sources_list(ctx)
        ctx.execute("apt_update", apt_update_argv(root))

        packages = ctx.cfg.packages
        if not packages:
            logger.info("No required packages configured")
            return
        ctx.execute("install_packages", apt_install_argv(root, packages))
        logger.info("Installed %s required package(s)", len(packages))


class InstallOptionalPackagesPhase:
    name = "install_optional_packages"
    description = "Install optional packages one by one"
    failure_policy = FailurePolicy.OPTIONAL

    def run(self, ctx: BuildCtx) -> None:
        root = str(ctx.chroot_dir)
        missing = []
        for pkg in ctx.cfg.optional_packages:
            r = ctx.execute(f"install_optional:{pkg}", apt_install_argv(root, [pkg]), allow_failure=True)
            if not r.ok:
                missing.append(pkg)
        if missing:
            logger.warning("Optional packages not installed: %s", " ".join(missing))
