"""
plugin_installer.py
===================
Plugin acquisition and installation pipeline.

For one request the installer:
  1. Claims the project (a concurrent request for it is rejected)
  2. Lists the project's versions and resolves one for the server runtime
  3. Claims the target filename and every live file of the project it displaces
  4. Downloads the chosen file into a staging directory, under a timeout
  5. Validates the staged file (the live directory is untouched on failure)
  6. Moves any displaced artifact into ``.backup/<timestamp>/``
  7. Renames the staged file into the plugins directory

Also handles uploaded jars, removal (into a backup), and listings of the
live plugins and their backups.  Backups are never pruned here.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import threading
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import aiohttp

from artifact_validator import ArtifactValidator, extract_plugin_meta
from errors import (
    AlreadyInProgress,
    ArtifactNotFound,
    DownloadFailed,
    InstallationFailed,
    InvalidArtifact,
)
from registry_client import ModrinthClient, Version, VersionFile
from version_resolver import RuntimeTarget, resolve

logger = logging.getLogger(__name__)

BACKUP_DIRNAME = ".backup"


# ──────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────

@dataclass
class InstallationRecord:
    """Outcome of one install/update/upload; returned to the caller, never stored."""

    project_id: str
    version_id: str
    filename: str
    action: str = "install"           # install | update | upload
    success: bool = True
    version_number: str = ""
    backup_path: Optional[Path] = None
    displaced: List[str] = field(default_factory=list)
    size: int = 0
    installed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "versionId": self.version_id,
            "versionNumber": self.version_number,
            "filename": self.filename,
            "action": self.action,
            "success": self.success,
            "backupPath": str(self.backup_path) if self.backup_path else None,
            "displaced": list(self.displaced),
            "size": self.size,
            "installedAt": self.installed_at,
        }


@dataclass
class RemovalRecord:
    filename: str
    backup_path: Path

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "backupPath": str(self.backup_path)}


@dataclass
class InstalledArtifact:
    """A live jar in the plugins directory."""

    filename: str
    size: int
    modified: str
    name: str = ""
    version: str = ""
    plugin_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "name": self.name,
            "version": self.version,
            "type": self.plugin_type,
            "size": self.size,
            "modified": self.modified,
        }


# ──────────────────────────────────────────────
#  Single-flight guard
# ──────────────────────────────────────────────

class InFlightRegistry:
    """
    At most one holder per key.  A second claim on a held key is rejected
    with AlreadyInProgress rather than queued.

    Guarded by a thread lock because HTTP requests run on separate threads,
    each with its own event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Set[str] = set()

    @contextmanager
    def claim(self, key: str) -> Iterator[None]:
        with self._lock:
            if key in self._active:
                subject = key.split(":", 1)[-1]
                raise AlreadyInProgress(
                    f"An installation for '{subject}' is already in progress",
                    key=key,
                )
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    @contextmanager
    def claim_all(self, keys: Sequence[str]) -> Iterator[None]:
        """Claim several keys in sorted order; all are released on exit or on a rejected claim."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.claim(key))
            yield

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active


# ──────────────────────────────────────────────
#  Filesystem helpers
# ──────────────────────────────────────────────

def _sanitize(name: str) -> str:
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    safe = "".join(c if c.isalnum() or c in "-_.+" else "-" for c in base)
    return safe.lstrip(".")


def safe_filename(name: str) -> str:
    """Strip any directory part and unsafe characters from a registry/upload filename."""
    safe = _sanitize(name)
    if not safe:
        raise InvalidArtifact(f"Artifact name '{name}' is not usable", filename=name)
    return safe


def backup_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with ':' swapped out so it is a valid directory name."""
    now = now or datetime.now(tz=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def _atomic_move(src: Path, dst: Path) -> None:
    """Rename src onto dst; across filesystems, copy to a hidden sibling first."""
    try:
        os.replace(src, dst)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    partial = dst.with_name(f".{dst.name}.part")
    try:
        shutil.copy2(src, partial)
        os.replace(partial, dst)
    except OSError:
        try:
            partial.unlink(missing_ok=True)
        except OSError as cleanup_exc:
            logger.warning("Could not remove partial file %s: %s", partial, cleanup_exc)
        raise


# ──────────────────────────────────────────────
#  Installer
# ──────────────────────────────────────────────

class PluginInstaller:
    """
    Owns the plugins directory and its ``.backup`` subdirectory.

    Args:
        plugins_dir:       Live plugin directory of the server
        registry:          Registry client (list_versions / download)
        runtime:           Loader + game version used for resolution
        staging_dir:       Where downloads land before validation; must not
                           be the plugins directory
        validator:         Artifact validator (default settings if None)
        download_timeout:  Upper bound in seconds for one download
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        registry: ModrinthClient,
        runtime: RuntimeTarget,
        *,
        staging_dir: Optional[str | Path] = None,
        validator: Optional[ArtifactValidator] = None,
        download_timeout: float = 60.0,
    ) -> None:
        self.plugins_dir = Path(plugins_dir)
        self.backup_root = self.plugins_dir / BACKUP_DIRNAME
        self.staging_dir = (
            Path(staging_dir) if staging_dir else self.plugins_dir.parent / ".plugin-staging"
        )
        if self.staging_dir.resolve() == self.plugins_dir.resolve():
            raise ValueError("staging_dir must differ from plugins_dir")

        self.registry = registry
        self.runtime = runtime
        self.validator = validator or ArtifactValidator()
        self.download_timeout = download_timeout
        self._inflight = InFlightRegistry()

        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            "PluginInstaller init: dir=%s staging=%s loader=%s mc=%s",
            self.plugins_dir, self.staging_dir, runtime.loader, runtime.game_version,
        )

    # ================================================================
    #  INSTALL / UPDATE
    # ================================================================

    async def install(
        self,
        project_id: str,
        version_id: Optional[str] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        progress_callback: Optional[Callable] = None,
    ) -> InstallationRecord:
        """Install a registry project (latest compatible version unless one is given)."""
        return await self._install_from_registry(
            project_id, version_id, "install", session, progress_callback,
        )

    async def update(
        self,
        project_id: str,
        version_id: Optional[str] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        progress_callback: Optional[Callable] = None,
    ) -> InstallationRecord:
        """Same pipeline as install; expected to displace the current artifact."""
        return await self._install_from_registry(
            project_id, version_id, "update", session, progress_callback,
        )

    async def _install_from_registry(
        self,
        project_id: str,
        version_id: Optional[str],
        action: str,
        session: Optional[aiohttp.ClientSession],
        progress_callback: Optional[Callable],
    ) -> InstallationRecord:
        with self._inflight.claim(f"project:{project_id}"):
            own_session = session is None
            if own_session:
                session = aiohttp.ClientSession()
            try:
                versions = await self.registry.list_versions(project_id, session)
                version, chosen = resolve(versions, self.runtime, version_id)
                filename = safe_filename(chosen.filename)
                siblings = {
                    name for name in self._project_filenames(versions)
                    if name != filename and (self.plugins_dir / name).is_file()
                }

                logger.info(
                    "%s %s: version %s (%s) → %s",
                    action.capitalize(), project_id, version.id,
                    version.version_number or "?", filename,
                )

                # every name the commit may move is held for the whole pipeline
                keys = [f"file:{name.lower()}" for name in {filename} | siblings]
                with self._inflight.claim_all(keys):
                    staged = self._stage_path(filename)
                    try:
                        await self._download(chosen, staged, session, progress_callback)
                        self._validate(staged)
                        backup_dir, displaced, size = self._commit(staged, filename, siblings)
                    finally:
                        self._discard(staged)
            finally:
                if own_session:
                    await session.close()

        if action == "update" and not displaced:
            logger.warning("Update of %s did not replace an existing artifact", project_id)

        record = InstallationRecord(
            project_id=project_id,
            version_id=version.id,
            version_number=version.version_number,
            filename=filename,
            action=action,
            backup_path=backup_dir,
            displaced=displaced,
            size=size,
            installed_at=datetime.now(tz=timezone.utc).isoformat(),
        )
        logger.info(
            "Installed %s v%s as %s (%d bytes, backup=%s)",
            project_id, record.version_number or record.version_id,
            filename, size, backup_dir,
        )
        return record

    # ================================================================
    #  UPLOAD / REMOVE
    # ================================================================

    def install_file(self, source: bytes | str | Path, filename: str) -> InstallationRecord:
        """Install an uploaded jar (raw bytes or a local path) under ``filename``."""
        filename = safe_filename(filename)

        with self._inflight.claim(f"file:{filename.lower()}"):
            staged = self._stage_path(filename)
            try:
                try:
                    if isinstance(source, (bytes, bytearray)):
                        staged.write_bytes(source)
                    else:
                        shutil.copyfile(source, staged)
                except OSError as exc:
                    raise InstallationFailed(f"Could not stage upload: {exc}", filename=filename) from exc
                self._validate(staged)
                backup_dir, displaced, size = self._commit(staged, filename, set())
            finally:
                self._discard(staged)

        logger.info("Installed uploaded plugin %s (%d bytes)", filename, size)
        return InstallationRecord(
            project_id="",
            version_id="",
            filename=filename,
            action="upload",
            backup_path=backup_dir,
            displaced=displaced,
            size=size,
            installed_at=datetime.now(tz=timezone.utc).isoformat(),
        )

    def remove(self, filename: str) -> RemovalRecord:
        """Move a live jar into a fresh backup directory."""
        if _sanitize(filename) != filename:
            raise ArtifactNotFound(f"Plugin '{filename}' not found", filename=filename)

        with self._inflight.claim(f"file:{filename.lower()}"):
            path = self.plugins_dir / filename
            if not path.is_file():
                raise ArtifactNotFound(f"Plugin '{filename}' not found", filename=filename)

            backup_dir = self._create_backup_dir()
            try:
                os.replace(path, backup_dir / filename)
            except OSError as exc:
                self._rollback([], backup_dir)
                raise InstallationFailed(f"Could not remove {filename}: {exc}", filename=filename) from exc

        logger.info("Removed plugin %s (backup in %s)", filename, backup_dir)
        return RemovalRecord(filename=filename, backup_path=backup_dir)

    # ================================================================
    #  LISTINGS
    # ================================================================

    def list_installed(self) -> List[InstalledArtifact]:
        """Live jars, sorted by filename, with descriptor metadata where readable."""
        artifacts: List[InstalledArtifact] = []
        if not self.plugins_dir.exists():
            return artifacts

        for jar in sorted(self.plugins_dir.glob("*.jar")):
            if jar.name.startswith(".") or not jar.is_file():
                continue
            stat = jar.stat()
            meta = extract_plugin_meta(jar)
            artifacts.append(InstalledArtifact(
                filename=jar.name,
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                name=meta.name if meta else jar.stem,
                version=meta.version if meta else "",
                plugin_type=meta.plugin_type if meta else "",
            ))
        return artifacts

    def list_backups(self) -> List[Dict[str, Any]]:
        """Backup directories, newest first."""
        if not self.backup_root.exists():
            return []
        entries = []
        for backup in sorted(self.backup_root.iterdir(), reverse=True):
            if not backup.is_dir():
                continue
            entries.append({
                "name": backup.name,
                "path": str(backup),
                "files": sorted(p.name for p in backup.iterdir() if p.is_file()),
            })
        return entries

    # ================================================================
    #  PIPELINE STEPS
    # ================================================================

    def _stage_path(self, filename: str) -> Path:
        return self.staging_dir / f"{uuid.uuid4().hex}-{filename}"

    async def _download(
        self,
        chosen: VersionFile,
        staged: Path,
        session: aiohttp.ClientSession,
        progress_callback: Optional[Callable],
    ) -> None:
        try:
            await asyncio.wait_for(
                self.registry.download(
                    chosen.url, staged, session,
                    expected_size=chosen.size or None,
                    progress_callback=progress_callback,
                ),
                timeout=self.download_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Download of %s exceeded %ss", chosen.filename, self.download_timeout)
            raise DownloadFailed(
                f"Download exceeded {self.download_timeout:g}s", url=chosen.url,
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise DownloadFailed(f"Download failed: {exc}", url=chosen.url) from exc

    def _validate(self, staged: Path) -> None:
        result = self.validator.check(staged)
        if not result.is_valid:
            reasons = "; ".join(result.errors)
            logger.warning("Rejected %s: %s", staged.name, reasons)
            raise InvalidArtifact(f"Artifact failed validation: {reasons}", issues=result.errors)

    def _commit(
        self, staged: Path, filename: str, siblings: Set[str],
    ) -> Tuple[Optional[Path], List[str], int]:
        """Back up displaced files, then rename the staged file into place."""
        target = self.plugins_dir / filename
        displaced = [
            self.plugins_dir / name
            for name in sorted({filename} | siblings)
            if (self.plugins_dir / name).is_file()
        ]

        backup_dir: Optional[Path] = None
        moved: List[Tuple[Path, Path]] = []
        if displaced:
            backup_dir = self._create_backup_dir()
            try:
                for path in displaced:
                    dest = backup_dir / path.name
                    os.replace(path, dest)
                    moved.append((path, dest))
                    logger.info("Backed up %s → %s", path.name, backup_dir.name)
            except OSError as exc:
                self._rollback(moved, backup_dir)
                raise InstallationFailed(
                    f"Could not back up existing artifact: {exc}", filename=filename,
                ) from exc

        try:
            _atomic_move(staged, target)
        except OSError as exc:
            logger.error("Could not move %s into place: %s", filename, exc)
            self._rollback(moved, backup_dir)
            raise InstallationFailed(f"Could not place {filename}: {exc}", filename=filename) from exc

        return backup_dir, [original.name for original, _ in moved], target.stat().st_size

    def _create_backup_dir(self) -> Path:
        stamp = backup_timestamp()
        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
            for attempt in range(100):
                candidate = self.backup_root / (stamp if attempt == 0 else f"{stamp}-{attempt}")
                try:
                    candidate.mkdir()
                except FileExistsError:
                    continue
                return candidate
        except OSError as exc:
            logger.error("Could not create backup directory: %s", exc)
            raise InstallationFailed(f"Could not create backup directory: {exc}") from exc
        raise InstallationFailed("Could not allocate a unique backup directory")

    def _rollback(self, moved: Sequence[Tuple[Path, Path]], backup_dir: Optional[Path]) -> None:
        """Put displaced files back and drop the backup directory if it ends up empty."""
        for original, backup in reversed(moved):
            try:
                os.replace(backup, original)
                logger.info("Restored %s from backup", original.name)
            except OSError as exc:
                logger.error("Could not restore %s from %s: %s", original.name, backup, exc)
        if backup_dir is not None:
            try:
                backup_dir.rmdir()
            except OSError as exc:
                logger.warning("Keeping backup directory %s: %s", backup_dir, exc)

    def _discard(self, staged: Path) -> None:
        try:
            staged.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete staged file %s: %s", staged, exc)

    @staticmethod
    def _project_filenames(versions: Sequence[Version]) -> Set[str]:
        """Every (sanitized) filename the project has ever published."""
        names = set()
        for version in versions:
            for published in version.files:
                name = _sanitize(published.filename)
                if name:
                    names.add(name)
        return names
