from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError


class HandlingMode(str, Enum):
    GRACEFUL = "graceful"
    STRICT = "strict"
    PERMISSIVE = "permissive"


# Operations/phases whose unresolved failure stops a graceful build.
DEFAULT_NON_CONTINUABLE: Tuple[str, ...] = (
    "bootstrap",
    "debootstrap",
    "create_base_system",
    "mount_essential_filesystems",
)

DEFAULT_PURGE_GLOBS: Tuple[str, ...] = (
    "/tmp/debootstrap*",
    "/var/cache/apt/archives/*.deb",
    "{chroot}/var/cache/apt/archives/*.deb",
    "{chroot}/tmp/*",
)


def mode_from_environment(environ: Mapping[str, str]) -> HandlingMode:
    if environ.get("AILINUX_DEV_MODE"):
        return HandlingMode.PERMISSIVE
    if environ.get("CI") or environ.get("AUTOMATED_BUILD"):
        return HandlingMode.STRICT
    return HandlingMode.GRACEFUL


def parse_mode(value: str) -> HandlingMode:
    try:
        return HandlingMode(str(value).strip().lower())
    except ValueError as e:
        choices = "|".join(m.value for m in HandlingMode)
        raise ConfigError(f"invalid handling mode {value!r} (expected {choices})") from e


@dataclass(frozen=True)
class BuildConfig:
    """Immutable build settings, constructed once and passed to every component."""

    raw: Dict[str, Any] = field(default_factory=dict)
    handling_mode: HandlingMode = HandlingMode.GRACEFUL
    dry_run: bool = False
    skip_cleanup: bool = False
    extra_non_continuable: Tuple[str, ...] = ()

    def _section(self, name: str) -> Dict[str, Any]:
        return dict(self.raw.get(name) or {})

    # error handling

    @property
    def max_attempts(self) -> int:
        return int(self._section("error_handling").get("max_attempts") or 3)

    @property
    def network_backoff_s(self) -> float:
        v = self._section("error_handling").get("network_backoff_s")
        return 5.0 if v is None else float(v)

    @property
    def non_continuable(self) -> Tuple[str, ...]:
        configured = self._section("error_handling").get("non_continuable")
        base = tuple(configured) if configured is not None else DEFAULT_NON_CONTINUABLE
        return tuple(dict.fromkeys([*base, *self.extra_non_continuable]))

    @property
    def purge_globs(self) -> List[str]:
        globs = self._section("error_handling").get("purge_globs")
        if globs is None:
            globs = DEFAULT_PURGE_GLOBS
        return [str(g).format(chroot=self.chroot_dir) for g in globs]

    # timeouts

    @property
    def command_timeout_s(self) -> float:
        return float(self._section("timeouts").get("command_s") or 1800)

    @property
    def mount_timeout_s(self) -> float:
        return float(self._section("timeouts").get("mount_s") or 60)

    @property
    def unmount_timeout_s(self) -> float:
        return float(self._section("timeouts").get("unmount_s") or 30)

    @property
    def recovery_timeout_s(self) -> float:
        return float(self._section("timeouts").get("recovery_s") or 300)

    @property
    def monitor_interval_s(self) -> float:
        return float(self._section("session").get("monitor_interval_s") or 10)

    # paths

    @property
    def work_dir(self) -> str:
        return str(self._section("paths").get("work_dir") or "build/work")

    @property
    def chroot_dir(self) -> str:
        return str(self._section("paths").get("chroot_dir") or str(Path(self.work_dir) / "chroot"))

    @property
    def iso_dir(self) -> str:
        return str(self._section("paths").get("iso_dir") or str(Path(self.work_dir) / "iso"))

    @property
    def output_dir(self) -> str:
        return str(self._section("paths").get("output_dir") or "output")

    @property
    def logs_dir(self) -> str:
        return str(self._section("paths").get("logs_dir") or "logs")

    # base system

    @property
    def suite(self) -> str:
        return str(self._section("base").get("suite") or "noble")

    @property
    def mirror(self) -> str:
        return str(self._section("base").get("mirror") or "http://archive.ubuntu.com/ubuntu")

    @property
    def arch(self) -> str:
        return str(self._section("base").get("arch") or "amd64")

    @property
    def variant(self) -> Optional[str]:
        v = self._section("base").get("variant")
        return str(v) if v else None

    @property
    def components(self) -> List[str]:
        return list(self._section("base").get("components") or ["main", "restricted", "universe"])

    @property
    def packages(self) -> List[str]:
        return list(self._section("packages").get("required") or [])

    @property
    def optional_packages(self) -> List[str]:
        return list(self._section("packages").get("optional") or [])

    @property
    def customize_commands(self) -> List[List[str]]:
        return [list(c) for c in (self._section("customize").get("commands") or [])]

    # iso

    @property
    def volume_id(self) -> str:
        return str(self._section("iso").get("volume_id") or "AILinux")

    @property
    def output_iso(self) -> str:
        name = self._section("iso").get("name") or "ailinux.iso"
        return str(Path(self.output_dir) / str(name))

    @property
    def boot_assets_dir(self) -> Optional[str]:
        v = self._section("iso").get("boot_assets")
        return str(v) if v else None

    @property
    def squashfs_compression(self) -> str:
        return str(self._section("iso").get("compression") or "xz")


def load_build_config(
    path: Optional[str],
    *,
    mode: Optional[str] = None,
    dry_run: bool = False,
    skip_cleanup: bool = False,
    non_continuable: Sequence[str] = (),
    environ: Mapping[str, str] = os.environ,
) -> BuildConfig:
    raw: Dict[str, Any] = {}

    if path:
        p = Path(path)
        if not p.exists():
            raise ConfigError(f"build config not found: {path}")

        if p.suffix.lower() not in {".yaml", ".yml"}:
            raise ConfigError("build config must be YAML")

        try:
            import yaml  # type: ignore
        except Exception as e:
            raise ConfigError("PyYAML is required to read the build config") from e

        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError("build config must contain a mapping/object")

    if mode:
        handling_mode = parse_mode(mode)
    elif (raw.get("error_handling") or {}).get("mode"):
        handling_mode = parse_mode(raw["error_handling"]["mode"])
    else:
        handling_mode = mode_from_environment(environ)

    build = raw.get("build") or {}
    return BuildConfig(
        raw=raw,
        handling_mode=handling_mode,
        dry_run=bool(dry_run or build.get("dry_run", False)),
        skip_cleanup=bool(skip_cleanup or build.get("skip_cleanup", False)),
        extra_non_continuable=tuple(non_continuable),
    )
