"""
server_manager.py
=================
Facade over the plugin pipeline and the panel, shared by the HTTP API, the
Discord bot (through the API) and the CLI.

Responsibilities:
  - Install / update / upload / remove plugins (PluginInstaller)
  - Search the registry and look up projects and versions
  - Canonical server status from the panel's stats (status_normalizer)
  - Panel server info, logs, console commands
  - Start / stop / restart, immediately or after a delay
  - Process health and request metrics for the service itself
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import psutil

from errors import PanelBridgeError, PanelNotConfigured, RequestError
from panel_client import ACTIONS, CraftyClient
from plugin_installer import InstallationRecord, InstalledArtifact, PluginInstaller, RemovalRecord
from registry_client import ModrinthClient, Project, SearchPage, Version
from settings import Settings
from status_normalizer import CanonicalStatus, normalize_status

logger = logging.getLogger(__name__)

MAX_ACTION_DELAY = 300
MAX_SEARCH_LIMIT = 100


# ──────────────────────────────────────────────
#  Result Object
# ──────────────────────────────────────────────

@dataclass
class Result:
    """Acknowledgement for fire-and-forget operations (scheduled actions)."""

    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **details: Any) -> "Result":
        return cls(success=True, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "message": self.message}
        body.update(self.details)
        return body


# ──────────────────────────────────────────────
#  Server Manager
# ──────────────────────────────────────────────

class ServerManager:
    """
    Wires settings into the registry client, panel client and installer.

    Args:
        settings:   Loaded Settings
        registry:   Override the registry client (tests)
        panel:      Override the panel client (tests)
        installer:  Override the installer (tests)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[ModrinthClient] = None,
        panel: Optional[CraftyClient] = None,
        installer: Optional[PluginInstaller] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or ModrinthClient(
            base_url=settings.modrinth_url,
            download_timeout=settings.download_timeout,
        )
        self.panel = panel or CraftyClient(
            settings.crafty_url,
            settings.crafty_token,
            allow_insecure=settings.crafty_allow_insecure,
        )
        self.installer = installer or PluginInstaller(
            settings.resolved_plugins_dir,
            self.registry,
            settings.runtime,
            staging_dir=settings.resolved_staging_dir,
            download_timeout=settings.download_timeout,
        )

        self._started = time.monotonic()
        self._counter_lock = threading.Lock()
        self.request_count = 0
        self.error_count = 0
        self._timer_lock = threading.Lock()
        self._timers: List[threading.Timer] = []

        logger.info(
            "ServerManager initialised.  plugins=%s  loader=%s  panel=%s",
            self.installer.plugins_dir,
            settings.loader,
            "configured" if self.panel.is_configured() else "not configured",
        )

    # ================================================================
    #  PLUGINS
    # ================================================================

    async def install_plugin(self, project_id: str, version_id: Optional[str] = None) -> InstallationRecord:
        return await self.installer.install(_require_id(project_id), version_id or None)

    async def update_plugin(self, project_id: str, version_id: Optional[str] = None) -> InstallationRecord:
        return await self.installer.update(_require_id(project_id), version_id or None)

    def upload_plugin(self, data: bytes, filename: str) -> InstallationRecord:
        if not filename:
            raise RequestError("Uploaded file has no name", code="MISSING_FILE")
        return self.installer.install_file(data, filename)

    def remove_plugin(self, filename: str) -> RemovalRecord:
        return self.installer.remove(filename)

    def list_plugins(self) -> List[InstalledArtifact]:
        return self.installer.list_installed()

    def list_backups(self) -> List[Dict[str, Any]]:
        return self.installer.list_backups()

    # ================================================================
    #  REGISTRY
    # ================================================================

    async def search_plugins(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        *,
        category: Optional[str] = None,
        compatible: bool = False,
    ) -> SearchPage:
        """
        Registry search.  ``category`` narrows to one Modrinth category
        ("all" or empty means none); ``compatible`` keeps only projects for
        the configured loader family and game version.
        """
        if not query or not query.strip():
            raise RequestError("Query parameter 'q' is required", code="MISSING_QUERY")
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise RequestError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}", code="INVALID_LIMIT")
        if offset < 0:
            raise RequestError("offset must not be negative", code="INVALID_OFFSET")

        categories = None
        if category and category.strip().lower() != "all":
            categories = [category.strip().lower()]
        loaders = game_versions = None
        if compatible:
            runtime = self.settings.runtime
            loaders = sorted(runtime.accepted_loaders)
            game_versions = [runtime.game_version] if runtime.game_version else None

        async with aiohttp.ClientSession() as session:
            return await self.registry.search(
                query.strip(), session, limit=limit, offset=offset,
                loaders=loaders, game_versions=game_versions, categories=categories,
            )

    async def get_project(self, project_id: str) -> Project:
        async with aiohttp.ClientSession() as session:
            return await self.registry.get_project(_require_id(project_id), session)

    async def list_project_versions(self, project_id: str) -> List[Version]:
        async with aiohttp.ClientSession() as session:
            return await self.registry.list_versions(_require_id(project_id), session)

    # ================================================================
    #  PANEL
    # ================================================================

    def _require_panel(self) -> None:
        if not self.panel.is_configured():
            raise PanelNotConfigured("Set CRAFTY_API_URL and CRAFTY_API_TOKEN to use the panel")

    async def _server_id(self, server_id: Optional[str]) -> str:
        """Explicit id, else the configured one, else the panel's first server."""
        if server_id:
            return str(server_id)
        if self.settings.crafty_server_id:
            return self.settings.crafty_server_id

        servers = await self.panel.list_servers()
        for server in servers:
            if isinstance(server, dict) and server.get("server_id") is not None:
                logger.warning(
                    "CRAFTY_SERVER_ID not set, using first panel server %s", server["server_id"],
                )
                return str(server["server_id"])
        raise RequestError("No panel server id configured or discoverable", code="NO_SERVER_ID")

    async def get_canonical_status(self, server_id: Optional[str] = None) -> CanonicalStatus:
        self._require_panel()
        sid = await self._server_id(server_id)
        raw = await self.panel.get_stats(sid)
        return normalize_status(raw)

    async def get_server_info(self, server_id: Optional[str] = None) -> Dict[str, Any]:
        self._require_panel()
        sid = await self._server_id(server_id)
        server = await self.panel.get_server(sid)
        public = await self.panel.get_public_info(sid)
        return {"serverId": sid, "server": server, "public": public}

    async def get_logs(
        self, server_id: Optional[str] = None, params: Optional[Dict[str, str]] = None,
    ) -> Any:
        self._require_panel()
        sid = await self._server_id(server_id)
        return await self.panel.get_logs(sid, params)

    async def send_command(self, command: str, server_id: Optional[str] = None) -> Any:
        if not command or not command.strip():
            raise RequestError("Field 'command' is required", code="MISSING_FIELDS")
        self._require_panel()
        sid = await self._server_id(server_id)
        return await self.panel.send_command(sid, command.strip())

    async def run_action(self, action: str, server_id: Optional[str] = None) -> Any:
        self._require_panel()
        sid = await self._server_id(server_id)
        return await self.panel.run_action(sid, action)

    async def schedule_action(
        self, action: str, delay: int = 0, server_id: Optional[str] = None,
    ) -> Result:
        """
        Run a panel action now (delay 0) or after ``delay`` seconds.

        A delayed action runs on a daemon timer thread; its failure is
        logged there and never reaches the caller, who only gets the ack.
        """
        if action not in ACTIONS:
            raise RequestError(f"Unknown server action '{action}'", code="INVALID_ACTION")
        if isinstance(delay, bool) or not isinstance(delay, int) or not 0 <= delay <= MAX_ACTION_DELAY:
            raise RequestError(
                f"delay must be an integer between 0 and {MAX_ACTION_DELAY}", code="INVALID_DELAY",
            )
        self._require_panel()
        sid = await self._server_id(server_id)

        if delay == 0:
            await self.panel.run_action(sid, action)
            return Result.ok(f"Server {action} initiated", action=action, delay=0,
                             timestamp=_now_iso())

        timer = threading.Timer(delay, self._run_delayed, args=(action, sid))
        timer.daemon = True
        timer.name = f"delayed-{action}"
        with self._timer_lock:
            timer.start()
            self._timers = [t for t in self._timers if t.is_alive()] + [timer]
        logger.info("Server %s scheduled in %ds", action, delay)
        return Result.ok(f"Server {action} initiated in {delay}s", action=action, delay=delay,
                         timestamp=_now_iso())

    def _run_delayed(self, action: str, server_id: str) -> None:
        try:
            asyncio.run(self.panel.run_action(server_id, action))
            logger.info("Delayed %s on server %s completed", action, server_id)
        except PanelBridgeError as exc:
            logger.error("Delayed %s on server %s failed: %s", action, server_id, exc)

    def cancel_scheduled(self) -> int:
        """Cancel pending delayed actions (used on shutdown)."""
        with self._timer_lock:
            pending = [t for t in self._timers if t.is_alive()]
            for timer in pending:
                timer.cancel()
            self._timers = []
        return len(pending)

    # ================================================================
    #  HEALTH / METRICS
    # ================================================================

    @property
    def uptime(self) -> float:
        return time.monotonic() - self._started

    def record_request(self, failed: bool = False) -> None:
        with self._counter_lock:
            self.request_count += 1
            if failed:
                self.error_count += 1

    def get_health(self) -> Dict[str, Any]:
        mem = psutil.Process().memory_info()
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "uptime": round(self.uptime, 1),
            "memory": {"rss": mem.rss, "vms": mem.vms},
        }

    def get_metrics(self) -> Dict[str, Any]:
        proc = psutil.Process()
        mem = proc.memory_info()
        with self._counter_lock:
            requests, errors = self.request_count, self.error_count
        return {
            "uptime": round(self.uptime, 1),
            "memory": {
                "rss": f"{round(mem.rss / 1024 / 1024)} MB",
                "vms": f"{round(mem.vms / 1024 / 1024)} MB",
            },
            "cpuPercent": proc.cpu_percent(interval=None),
            "threads": proc.num_threads(),
            "requests": requests,
            "errors": errors,
            "timestamp": _now_iso(),
        }


def _require_id(project_id: str) -> str:
    if not project_id or not str(project_id).strip():
        raise RequestError("Field 'projectId' is required", code="MISSING_FIELDS")
    return str(project_id).strip()


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
