"""
panel_client.py
===============
Async client for the Crafty Controller API v2 (the game-server panel).

Every request carries the bearer token; self-signed panel certificates are
accepted only when ``allow_insecure`` is set.  Faults are mapped onto the
shared taxonomy:

  - no URL / token configured → PanelNotConfigured
  - connection refused, DNS, timeout → TransportError (PANEL_UNREACHABLE)
  - any non-2xx response or malformed JSON body → TransportError (PANEL_ERROR)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from errors import ErrorCode, PanelNotConfigured, RequestError, TransportError

logger = logging.getLogger(__name__)

# Public action name → Crafty action endpoint
ACTIONS = {
    "start": "start_server",
    "stop": "stop_server",
    "restart": "restart_server",
    "kill": "kill_server",
    "backup": "backup_server",
}


def unwrap(payload: Any) -> Any:
    """Strip Crafty's ``{"status": "ok", "data": …}`` envelope if present."""
    if isinstance(payload, Mapping) and "data" in payload and payload.get("status") == "ok":
        return payload["data"]
    return payload


class CraftyClient:
    """
    Thin wrapper over the panel endpoints the bridge needs.

    Args:
        base_url:        Panel root, e.g. ``https://panel.local:8443``
        token:           API token (sent as ``Authorization: Bearer``)
        allow_insecure:  Skip TLS certificate verification
        timeout:         Seconds allowed per request
    """

    def __init__(
        self,
        base_url: str = "",
        token: str = "",
        *,
        allow_insecure: bool = False,
        timeout: float = 10,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token or ""
        self.allow_insecure = allow_insecure
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.base_url and self.token)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> Any:
        if not self.is_configured():
            raise PanelNotConfigured("Crafty API URL and token are not configured")

        url = f"{self.base_url}/api/v2{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        ssl = False if self.allow_insecure else None
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as session:
                async with session.request(
                    method, url, params=params, json=json, headers=headers, ssl=ssl,
                ) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        logger.warning("Crafty %s %s returned %d: %s", method, path, resp.status, body[:200])
                        raise TransportError(
                            f"Panel returned HTTP {resp.status}",
                            code=ErrorCode.PANEL_ERROR.value,
                            status=resp.status, path=path,
                        )
                    if resp.content_type == "application/json":
                        try:
                            return await resp.json()
                        except ValueError as exc:
                            logger.warning("Crafty %s %s sent malformed JSON: %s", method, path, exc)
                            raise TransportError(
                                "Panel returned malformed JSON",
                                code=ErrorCode.PANEL_ERROR.value,
                                path=path,
                            ) from exc
                    return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Crafty %s %s failed: %s", method, path, exc)
            raise TransportError(
                f"Panel unreachable: {exc or type(exc).__name__}",
                code=ErrorCode.PANEL_UNREACHABLE.value,
                path=path,
            ) from exc

    # ── Servers ──────────────────────────────────

    async def list_servers(self) -> List[Any]:
        servers = unwrap(await self._request("GET", "/servers"))
        return servers if isinstance(servers, list) else []

    async def get_server(self, server_id: str) -> Any:
        return unwrap(await self._request("GET", f"/servers/{server_id}"))

    async def get_public_info(self, server_id: str) -> Any:
        return unwrap(await self._request("GET", f"/servers/{server_id}/public"))

    async def get_stats(self, server_id: str) -> Any:
        """Raw stats payload, envelope included; the normalizer unwraps it."""
        return await self._request("GET", f"/servers/{server_id}/stats")

    async def get_logs(self, server_id: str, params: Optional[Dict[str, str]] = None) -> Any:
        return unwrap(await self._request("GET", f"/servers/{server_id}/logs", params=params))

    # ── Control ──────────────────────────────────

    async def send_command(self, server_id: str, command: str) -> Any:
        logger.info("Sending console command to server %s: %s", server_id, command)
        return unwrap(await self._request(
            "POST", f"/servers/{server_id}/stdin", json={"stdin": command},
        ))

    async def run_action(self, server_id: str, action: str) -> Any:
        endpoint = ACTIONS.get(action)
        if endpoint is None:
            raise RequestError(
                f"Unknown server action '{action}'",
                code="INVALID_ACTION", allowed=sorted(ACTIONS),
            )
        logger.info("Running %s on server %s", endpoint, server_id)
        return unwrap(await self._request("POST", f"/servers/{server_id}/action/{endpoint}"))
