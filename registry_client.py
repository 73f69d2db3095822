"""
registry_client.py
==================
Async client for the Modrinth v2 API (the plugin registry).

Exposes:
  - search(query, …)            → SearchPage of Projects
  - get_project(project_id)     → Project
  - list_versions(project_id)   → list of Versions, in registry order
  - download(url, dest)         → streams a file to disk

Raw JSON is parsed straight into the frozen dataclasses below; a payload
that does not have the expected shape raises ``UpstreamPayloadError``
instead of being coerced.  Nothing is cached: every call hits the API.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp

from errors import DownloadFailed, ProjectNotFound, TransportError, UpstreamPayloadError

logger = logging.getLogger(__name__)

RawPayload = Mapping[str, Any]


# ──────────────────────────────────────────────
#  Payload helpers
# ──────────────────────────────────────────────

def _require(raw: RawPayload, key: str, kind: type, where: str) -> Any:
    value = raw.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise UpstreamPayloadError(
            f"Registry {where} payload has invalid '{key}'",
            field=key,
        )
    return value


def _optional(raw: RawPayload, key: str, kind: type, default: Any) -> Any:
    value = raw.get(key, default)
    if value is None:
        return default
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise UpstreamPayloadError(
            f"Registry payload has invalid '{key}'", field=key,
        )
    return value


def _string_list(raw: RawPayload, key: str) -> Tuple[str, ...]:
    values = _optional(raw, key, list, [])
    if not all(isinstance(v, str) for v in values):
        raise UpstreamPayloadError(
            f"Registry payload has non-string entries in '{key}'", field=key,
        )
    return tuple(values)


# ──────────────────────────────────────────────
#  Data Structures
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Project:
    """A registry project (plugin/mod) with display metadata."""

    id: str
    title: str
    description: str = ""
    slug: str = ""
    downloads: int = 0
    follows: int = 0
    categories: Tuple[str, ...] = ()
    icon_url: Optional[str] = None
    project_type: str = ""

    @classmethod
    def from_payload(cls, raw: RawPayload) -> "Project":
        if not isinstance(raw, Mapping):
            raise UpstreamPayloadError("Registry project payload is not an object")
        # /search hits use project_id, /project/{id} uses id
        project_id = raw.get("project_id", raw.get("id"))
        if not isinstance(project_id, str) or not project_id:
            raise UpstreamPayloadError("Registry project payload has no id", field="id")
        return cls(
            id=project_id,
            title=_require(raw, "title", str, "project"),
            description=_optional(raw, "description", str, ""),
            slug=_optional(raw, "slug", str, ""),
            downloads=_optional(raw, "downloads", int, 0),
            follows=_optional(raw, "follows", int, raw.get("followers", 0) or 0),
            categories=_string_list(raw, "categories"),
            icon_url=_optional(raw, "icon_url", str, None),
            project_type=_optional(raw, "project_type", str, ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "slug": self.slug,
            "downloads": self.downloads,
            "follows": self.follows,
            "categories": list(self.categories),
            "icon_url": self.icon_url,
            "project_type": self.project_type,
        }


@dataclass(frozen=True)
class VersionFile:
    """One downloadable file of a Version."""

    url: str
    filename: str
    size: int = 0
    primary: bool = False

    @classmethod
    def from_payload(cls, raw: RawPayload) -> "VersionFile":
        if not isinstance(raw, Mapping):
            raise UpstreamPayloadError("Registry file entry is not an object")
        return cls(
            url=_require(raw, "url", str, "file"),
            filename=_require(raw, "filename", str, "file"),
            size=_optional(raw, "size", int, 0),
            primary=_optional(raw, "primary", bool, False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "filename": self.filename,
            "size": self.size,
            "primary": self.primary,
        }


@dataclass(frozen=True)
class Version:
    """A published version of a Project; files keep registry order."""

    id: str
    project_id: str = ""
    version_number: str = ""
    name: str = ""
    loaders: Tuple[str, ...] = ()
    game_versions: Tuple[str, ...] = ()
    files: Tuple[VersionFile, ...] = field(default_factory=tuple)
    date_published: str = ""

    @classmethod
    def from_payload(cls, raw: RawPayload) -> "Version":
        if not isinstance(raw, Mapping):
            raise UpstreamPayloadError("Registry version payload is not an object")
        files = _optional(raw, "files", list, [])
        return cls(
            id=_require(raw, "id", str, "version"),
            project_id=_optional(raw, "project_id", str, ""),
            version_number=_optional(raw, "version_number", str, ""),
            name=_optional(raw, "name", str, ""),
            loaders=_string_list(raw, "loaders"),
            game_versions=_string_list(raw, "game_versions"),
            files=tuple(VersionFile.from_payload(f) for f in files),
            date_published=_optional(raw, "date_published", str, ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "name": self.name,
            "loaders": list(self.loaders),
            "game_versions": list(self.game_versions),
            "files": [f.to_dict() for f in self.files],
            "date_published": self.date_published,
        }


@dataclass(frozen=True)
class SearchPage:
    """One page of search hits."""

    hits: Tuple[Project, ...]
    total: int
    offset: int = 0
    limit: int = 10

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": [p.to_dict() for p in self.hits],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
        }


# ──────────────────────────────────────────────
#  Modrinth Client
# ──────────────────────────────────────────────

class ModrinthClient:
    """
    Client for the Modrinth API v2.

    Args:
        base_url:         API root (override for mirrors / tests)
        user_agent:       Sent on every request, as Modrinth asks
        timeout:          Seconds allowed for metadata requests
        download_timeout: Seconds allowed for a whole artifact download
    """

    BASE = "https://api.modrinth.com/v2"
    CHUNK_SIZE = 8192

    def __init__(
        self,
        base_url: str = BASE,
        user_agent: str = "MinecraftPanelBridge/1.0",
        timeout: float = 15,
        download_timeout: float = 60,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"User-Agent": user_agent}
        self.timeout = timeout
        self.download_timeout = download_timeout

    async def _get_json(
        self,
        path: str,
        session: aiohttp.ClientSession,
        params: Optional[Dict[str, Any]] = None,
        *,
        not_found: Optional[Exception] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with session.get(
                url, params=params, headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status == 404 and not_found is not None:
                    raise not_found
                if resp.status != 200:
                    logger.warning("Modrinth %s returned %d", path, resp.status)
                    raise TransportError(
                        f"Registry returned HTTP {resp.status}",
                        status=resp.status, path=path,
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Modrinth request %s failed: %s", path, exc)
            raise TransportError(f"Registry request failed: {exc}", path=path) from exc
        except ValueError as exc:
            raise UpstreamPayloadError(f"Registry returned invalid JSON: {exc}") from exc

    async def search(
        self,
        query: str,
        session: aiohttp.ClientSession,
        *,
        limit: int = 10,
        offset: int = 0,
        loaders: Optional[List[str]] = None,
        game_versions: Optional[List[str]] = None,
        categories: Optional[List[str]] = None,
    ) -> SearchPage:
        """Search Modrinth projects, optionally narrowed by loader, game version and category."""
        params: Dict[str, Any] = {"query": query, "limit": limit, "offset": offset}
        facets = self._build_facets(loaders, game_versions, categories)
        if facets:
            params["facets"] = facets

        data = await self._get_json("/search", session, params)
        if not isinstance(data, Mapping) or not isinstance(data.get("hits"), list):
            raise UpstreamPayloadError("Registry search payload has no 'hits' list")

        hits = tuple(Project.from_payload(hit) for hit in data["hits"])
        total = data.get("total_hits", len(hits))
        if not isinstance(total, int) or isinstance(total, bool):
            raise UpstreamPayloadError("Registry search payload has invalid 'total_hits'")
        logger.debug("Modrinth search %r: %d/%d hits", query, len(hits), total)
        return SearchPage(hits=hits, total=total, offset=offset, limit=limit)

    async def get_project(
        self, project_id: str, session: aiohttp.ClientSession,
    ) -> Project:
        data = await self._get_json(
            f"/project/{project_id}", session,
            not_found=ProjectNotFound(f"Project '{project_id}' not found", project_id=project_id),
        )
        return Project.from_payload(data)

    async def list_versions(
        self, project_id: str, session: aiohttp.ClientSession,
    ) -> List[Version]:
        """Return every published version of a project, newest first as Modrinth orders them."""
        data = await self._get_json(
            f"/project/{project_id}/version", session,
            not_found=ProjectNotFound(f"Project '{project_id}' not found", project_id=project_id),
        )
        if not isinstance(data, list):
            raise UpstreamPayloadError("Registry version list is not an array")
        return [Version.from_payload(v) for v in data]

    async def download(
        self,
        url: str,
        dest: str | Path,
        session: aiohttp.ClientSession,
        *,
        expected_size: Optional[int] = None,
        progress_callback: Optional[Callable] = None,
    ) -> int:
        """
        Stream ``url`` into ``dest`` and return the number of bytes written.

        Raises DownloadFailed on any non-200 response, transport error,
        timeout, or when the byte count differs from ``expected_size``.
        """
        dest = Path(dest)
        written = 0
        try:
            async with session.get(
                url, headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.download_timeout),
            ) as resp:
                if resp.status != 200:
                    logger.error("Download failed: HTTP %d from %s", resp.status, url)
                    raise DownloadFailed(
                        f"Download returned HTTP {resp.status}", status=resp.status, url=url,
                    )

                total = int(resp.headers.get("Content-Length", 0) or 0)
                with open(dest, "wb") as fh:
                    async for chunk in resp.content.iter_chunked(self.CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
                        if progress_callback:
                            await progress_callback(written, total)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Download error from %s: %s", url, exc)
            raise DownloadFailed(f"Download interrupted: {exc or type(exc).__name__}", url=url) from exc
        except OSError as exc:
            raise DownloadFailed(f"Could not write download: {exc}", url=url) from exc

        if expected_size and written != expected_size:
            raise DownloadFailed(
                f"Download truncated: got {written} of {expected_size} bytes",
                url=url, expected=expected_size, received=written,
            )

        logger.info("Downloaded %s (%d bytes)", dest.name, written)
        return written

    @staticmethod
    def _build_facets(
        loaders: Optional[List[str]],
        game_versions: Optional[List[str]],
        categories: Optional[List[str]] = None,
    ) -> str:
        """Build Modrinth facet filter string (OR inside a group, AND across groups)."""
        parts: List[str] = []
        if loaders:
            parts.append("[" + ",".join(f'"categories:{l}"' for l in loaders) + "]")
        if game_versions:
            parts.append("[" + ",".join(f'"versions:{v}"' for v in game_versions) + "]")
        if categories:
            parts.append("[" + ",".join(f'"categories:{c}"' for c in categories) + "]")
        if not parts:
            return ""
        return "[" + ",".join(parts) + "]"
