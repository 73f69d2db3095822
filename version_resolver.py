"""
version_resolver.py
===================
Picks exactly one Version (and one file of it) to install for the
server's runtime.

Resolution order, first match wins:
  1. An explicitly requested version id (must exist, no fallback)
  2. The first version, in registry order, whose loaders include one the
     runtime accepts and, when the runtime declares a game version,
     whose game versions include it
  3. The first version in registry order
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Sequence, Tuple

from errors import NoInstallableFile, NoVersionsAvailable, RequestedVersionNotFound
from registry_client import Version, VersionFile

logger = logging.getLogger(__name__)

ARTIFACT_EXTENSION = ".jar"

# Which registry loader tags each server software can load.
LOADER_COMPATIBILITY: Dict[str, Tuple[str, ...]] = {
    "paper": ("paper", "spigot", "bukkit"),
    "purpur": ("purpur", "paper", "spigot", "bukkit"),
    "spigot": ("spigot", "bukkit"),
    "bukkit": ("bukkit",),
    "folia": ("folia",),
    "fabric": ("fabric",),
    "quilt": ("quilt", "fabric"),
    "forge": ("forge",),
    "neoforge": ("neoforge",),
    "velocity": ("velocity",),
    "bungeecord": ("bungeecord",),
    "waterfall": ("waterfall", "bungeecord"),
}


@dataclass(frozen=True)
class RuntimeTarget:
    """The server's declared loader and (optional) game version."""

    loader: str
    game_version: Optional[str] = None

    @property
    def accepted_loaders(self) -> FrozenSet[str]:
        loader = self.loader.lower()
        return frozenset(LOADER_COMPATIBILITY.get(loader, (loader,)))

    def matches(self, version: Version) -> bool:
        loaders = {l.lower() for l in version.loaders}
        if not loaders & self.accepted_loaders:
            return False
        if self.game_version and self.game_version not in version.game_versions:
            return False
        return True


def resolve_version(
    versions: Sequence[Version],
    runtime: RuntimeTarget,
    requested_version_id: Optional[str] = None,
) -> Version:
    """Choose the version to install. Pure; see module docstring for the order."""
    if not versions:
        raise NoVersionsAvailable()

    if requested_version_id:
        for version in versions:
            if version.id == requested_version_id:
                return version
        raise RequestedVersionNotFound(
            f"Requested version '{requested_version_id}' not found",
            version_id=requested_version_id,
        )

    for version in versions:
        if runtime.matches(version):
            return version

    logger.warning(
        "No version matches loader=%s game_version=%s, defaulting to %s",
        runtime.loader, runtime.game_version, versions[0].id,
    )
    return versions[0]


def select_file(version: Version, extension: str = ARTIFACT_EXTENSION) -> VersionFile:
    """Prefer the first file with the artifact extension, else the first file."""
    if not version.files:
        raise NoInstallableFile(
            f"Version '{version.id}' has no files", version_id=version.id,
        )
    ext = extension.lower()
    for candidate in version.files:
        if candidate.filename.lower().endswith(ext):
            return candidate
    return version.files[0]


def resolve(
    versions: Sequence[Version],
    runtime: RuntimeTarget,
    requested_version_id: Optional[str] = None,
) -> Tuple[Version, VersionFile]:
    version = resolve_version(versions, runtime, requested_version_id)
    return version, select_file(version)
