from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, List

logger = logging.getLogger(__name__)


def copy_tree(src: str, dst: str, *, dry_run: bool = False) -> None:
    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    if dry_run:
        logger.info("Would copy tree %s -> %s", str(s), str(d))
        return

    d.mkdir(parents=True, exist_ok=True)
    for item in s.rglob("*"):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out)


def mountpoints_under(root: str) -> List[str]:
    found: List[str] = []
    for dirpath, dirnames, _ in os.walk(root):
        keep = []
        for d in dirnames:
            p = os.path.join(dirpath, d)
            if os.path.ismount(p):
                found.append(p)
            else:
                keep.append(d)
        dirnames[:] = keep
    return found


def remove_tree(path: str, *, dry_run: bool = False) -> None:
    """rm -rf that refuses to descend into anything still mounted."""

    p = Path(path)
    if not p.exists():
        return
    if dry_run:
        logger.info("Would remove %s", p)
        return
    live = mountpoints_under(str(p))
    if live:
        raise RuntimeError(f"refusing to remove {p}: still mounted: {', '.join(live)}")
    shutil.rmtree(p)
    logger.info("Removed %s", p)


def remove_file(path: str, *, dry_run: bool = False) -> None:
    p = Path(path)
    if dry_run:
        logger.info("Would remove %s", p)
        return
    try:
        p.unlink()
        logger.info("Removed partial artifact %s", p)
    except FileNotFoundError:
        pass


def tree_remover(path: str, *, dry_run: bool = False) -> Callable[[], None]:
    return lambda: remove_tree(path, dry_run=dry_run)


def file_remover(path: str, *, dry_run: bool = False) -> Callable[[], None]:
    return lambda: remove_file(path, dry_run=dry_run)
