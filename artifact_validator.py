"""
artifact_validator.py
=====================
Structural sanity checks for downloaded plugin artifacts, plus metadata
extraction for the installed-plugin listing.

Checks:
  - File exists and is a regular file
  - Size is above a plausible minimum (rejects empty / truncated downloads)
  - Expected extension (``.jar``)
  - The file is a readable zip archive

A passing result only means the file is shaped like a plugin jar.  It is
NOT an integrity, signature or safety check, and callers must not treat
it as proof that the plugin works or is harmless.
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Anything of 1000 bytes or less is treated as a truncated download.
DEFAULT_MIN_SIZE = 1000


# ──────────────────────────────────────────────
#  Validation Results
# ──────────────────────────────────────────────

@dataclass
class ValidationIssue:
    """A single problem found while checking an artifact."""
    message: str
    field: str = ""


@dataclass
class ValidationResult:
    """Aggregated result of all checks on one artifact."""
    path: Path
    is_valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)

    def add_error(self, message: str, field_name: str = "") -> None:
        self.issues.append(ValidationIssue(message, field_name))
        self.is_valid = False

    @property
    def errors(self) -> list[str]:
        return [i.message for i in self.issues]


# ──────────────────────────────────────────────
#  Validator
# ──────────────────────────────────────────────

class ArtifactValidator:
    """
    Decides whether a staged file is an installable artifact.

    Args:
        min_size:   Files of this many bytes or fewer are rejected
        extension:  Required filename extension
    """

    def __init__(self, min_size: int = DEFAULT_MIN_SIZE, extension: str = ".jar") -> None:
        self.min_size = min_size
        self.extension = extension.lower()

    def validate(self, path: str | Path) -> bool:
        return self.check(path).is_valid

    def check(self, path: str | Path) -> ValidationResult:
        """Run every check and collect the issues; stops at the first fatal one."""
        path = Path(path)
        result = ValidationResult(path=path)

        if not path.exists():
            result.add_error(f"File not found: {path.name}", field_name="path")
            return result

        if not path.is_file():
            result.add_error(f"Not a regular file: {path.name}", field_name="path")
            return result

        size = path.stat().st_size
        if size <= self.min_size:
            result.add_error(
                f"File is too small ({size} bytes, need more than {self.min_size})",
                field_name="size",
            )
            return result

        if not path.name.lower().endswith(self.extension):
            result.add_error(
                f"Expected a {self.extension} file, got {path.name}",
                field_name="extension",
            )
            return result

        if not zipfile.is_zipfile(path):
            result.add_error("File is not a valid JAR/ZIP archive", field_name="archive")

        return result


# ──────────────────────────────────────────────
#  Plugin Metadata Extraction
# ──────────────────────────────────────────────

@dataclass
class PluginMeta:
    """Descriptor metadata read from inside a plugin jar."""
    name: str = "Unknown"
    version: str = "Unknown"
    description: str = ""
    authors: list[str] = field(default_factory=list)
    plugin_type: str = "unknown"  # bukkit, paper, bungeecord, velocity, fabric


def extract_plugin_meta(jar_path: str | Path) -> Optional[PluginMeta]:
    """
    Read plugin metadata from a jar.

    Checks for:
      - ``paper-plugin.yml``      → Paper plugin
      - ``plugin.yml``            → Bukkit/Spigot/Paper plugin
      - ``bungee.yml``            → BungeeCord plugin
      - ``velocity-plugin.json``  → Velocity plugin
      - ``fabric.mod.json``       → Fabric mod

    Returns None when the jar cannot be read or has no known descriptor.
    """
    jar_path = Path(jar_path)
    try:
        with zipfile.ZipFile(jar_path, "r") as zf:
            names = set(zf.namelist())

            for descriptor, plugin_type in (
                ("paper-plugin.yml", "paper"),
                ("plugin.yml", "bukkit"),
                ("bungee.yml", "bungeecord"),
            ):
                if descriptor in names:
                    return _parse_plugin_yml(zf.read(descriptor).decode("utf-8"), plugin_type)

            if "velocity-plugin.json" in names:
                data = json.loads(zf.read("velocity-plugin.json"))
                return PluginMeta(
                    name=data.get("name", data.get("id", "Unknown")),
                    version=str(data.get("version", "Unknown")),
                    description=data.get("description", ""),
                    authors=_ensure_list(data.get("authors", [])),
                    plugin_type="velocity",
                )

            if "fabric.mod.json" in names:
                data = json.loads(zf.read("fabric.mod.json"))
                return PluginMeta(
                    name=data.get("name", data.get("id", "Unknown")),
                    version=str(data.get("version", "Unknown")),
                    description=data.get("description", ""),
                    authors=[a if isinstance(a, str) else a.get("name", "")
                             for a in data.get("authors", [])],
                    plugin_type="fabric",
                )

    except (zipfile.BadZipFile, OSError, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Failed to read metadata from %s: %s", jar_path.name, exc)

    return None


def _parse_plugin_yml(content: str, plugin_type: str) -> PluginMeta:
    """Parse a plugin.yml / bungee.yml string into PluginMeta."""
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        logger.warning("Failed to parse plugin YAML: %s", exc)
        return PluginMeta(plugin_type=plugin_type)

    if not isinstance(data, dict):
        return PluginMeta(plugin_type=plugin_type)

    return PluginMeta(
        name=str(data.get("name", "Unknown")),
        version=str(data.get("version", "Unknown")),
        description=str(data.get("description", "") or ""),
        authors=_ensure_list(data.get("authors", data.get("author", []))),
        plugin_type=plugin_type,
    )


def _ensure_list(value) -> list:
    """Ensure a value is a list."""
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        return [value]
    return []
