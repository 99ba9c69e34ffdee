from __future__ import annotations

from typing import List

from ..sequencer import Phase
from .phase_10_bootstrap import BootstrapPhase
from .phase_20_mount_filesystems import MountFilesystemsPhase
from .phase_30_install_packages import InstallOptionalPackagesPhase, InstallPackagesPhase
from .phase_40_customize import CustomizePhase
from .phase_50_build_squashfs import BuildSquashfsPhase
from .phase_60_build_iso import BuildIsoPhase
from .phase_70_checksums import ChecksumsPhase

PHASE_CLASSES = (
    BootstrapPhase,
    MountFilesystemsPhase,
    InstallPackagesPhase,
    InstallOptionalPackagesPhase,
    CustomizePhase,
    BuildSquashfsPhase,
    BuildIsoPhase,
    ChecksumsPhase,
)


def default_phases() -> List[Phase]:
    phases = []
    for cls in PHASE_CLASSES:
        impl = cls()
        phases.append(
            Phase(
                name=impl.name,
                executor=impl.run,
                description=impl.description,
                failure_policy=impl.failure_policy,
            )
        )
    return phases


__all__ = [
    "BootstrapPhase",
    "MountFilesystemsPhase",
    "InstallPackagesPhase",
    "InstallOptionalPackagesPhase",
    "CustomizePhase",
    "BuildSquashfsPhase",
    "BuildIsoPhase",
    "ChecksumsPhase",
    "default_phases",
]
