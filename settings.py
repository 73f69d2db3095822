"""
settings.py
===========
Runtime configuration: an optional ``config.json`` with one section per
concern, overridden by environment variables.

config.json layout (every key optional)::

    {
      "api":      {"key": "...", "host": "0.0.0.0", "port": 3000, "environment": "production"},
      "server":   {"loader": "paper", "game_version": "1.20.4"},
      "paths":    {"minecraft_path": "/opt/minecraft", "plugins_dir": "...", "staging_dir": "..."},
      "registry": {"base_url": "https://api.modrinth.com/v2", "download_timeout": 60},
      "panel":    {"url": "https://crafty:8443", "token": "...", "server_id": "1", "allow_insecure": false},
      "bot":      {"token": "...", "guild_id": null, "backend_url": "http://localhost:3000", "backend_api_key": "..."},
      "logging":  {"level": "INFO", "file": null}
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from errors import ConfigError
from version_resolver import RuntimeTarget

logger = logging.getLogger(__name__)

DEV_API_KEY = "dev-key-change-in-production"
TRUTHY = {"1", "true", "yes", "on"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def _mask(secret: str) -> str:
    return f"{secret[:4]}…" if secret else "<unset>"


@dataclass
class Settings:
    # api
    api_key: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "production"

    # server runtime
    loader: str = "paper"
    game_version: Optional[str] = None

    # paths
    minecraft_path: Path = field(default_factory=lambda: Path("/opt/minecraft"))
    plugins_dir: Optional[Path] = None
    staging_dir: Optional[Path] = None

    # registry
    modrinth_url: str = "https://api.modrinth.com/v2"
    download_timeout: float = 60.0

    # panel
    crafty_url: str = ""
    crafty_token: str = ""
    crafty_server_id: str = ""
    crafty_allow_insecure: bool = False

    # bot
    bot_token: str = ""
    guild_id: Optional[int] = None
    backend_url: str = "http://localhost:3000"
    backend_api_key: str = ""

    # logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # ================================================================
    #  LOADING
    # ================================================================

    @classmethod
    def load(
        cls,
        path: Optional[str | Path] = "config.json",
        env: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Read ``path`` (if it exists) and apply environment overrides."""
        env = os.environ if env is None else env
        config = cls._read_file(Path(path)) if path else {}

        api = config.get("api", {})
        server = config.get("server", {})
        paths = config.get("paths", {})
        registry = config.get("registry", {})
        panel = config.get("panel", {})
        bot = config.get("bot", {})
        log_cfg = config.get("logging", {})

        try:
            settings = cls(
                api_key=env.get("API_KEY", api.get("key", "")),
                host=env.get("HOST", api.get("host", "0.0.0.0")),
                port=int(env.get("PORT", api.get("port", 3000))),
                environment=env.get(
                    "NODE_ENV", env.get("ENVIRONMENT", api.get("environment", "production")),
                ),
                loader=env.get("SERVER_LOADER", server.get("loader", "paper")).strip().lower(),
                game_version=env.get("SERVER_GAME_VERSION", server.get("game_version")) or None,
                minecraft_path=Path(env.get(
                    "MINECRAFT_PATH", paths.get("minecraft_path", "/opt/minecraft"),
                )),
                plugins_dir=_optional_path(env.get("PLUGINS_DIR", paths.get("plugins_dir"))),
                staging_dir=_optional_path(env.get("STAGING_DIR", paths.get("staging_dir"))),
                modrinth_url=env.get(
                    "MODRINTH_API_URL", registry.get("base_url", "https://api.modrinth.com/v2"),
                ),
                download_timeout=float(env.get(
                    "DOWNLOAD_TIMEOUT", registry.get("download_timeout", 60),
                )),
                crafty_url=env.get("CRAFTY_API_URL", panel.get("url", "")),
                crafty_token=env.get("CRAFTY_API_TOKEN", panel.get("token", "")),
                crafty_server_id=str(env.get("CRAFTY_SERVER_ID", panel.get("server_id", "")) or ""),
                crafty_allow_insecure=_as_bool(env.get(
                    "CRAFTY_ALLOW_INSECURE", panel.get("allow_insecure", False),
                )),
                bot_token=env.get("DISCORD_BOT_TOKEN", bot.get("token", "")),
                guild_id=_optional_int(env.get("DISCORD_GUILD_ID", bot.get("guild_id"))),
                backend_url=env.get("BACKEND_URL", bot.get("backend_url", "http://localhost:3000")),
                backend_api_key=env.get(
                    "BACKEND_API_KEY", bot.get("backend_api_key") or env.get("API_KEY", api.get("key", "")),
                ),
                log_level=env.get("LOG_LEVEL", log_cfg.get("level", "INFO")).upper(),
                log_file=_optional_path(env.get("LOG_FILE", log_cfg.get("file"))),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration value: {exc}") from exc

        logger.debug(
            "Settings loaded: port=%d loader=%s api_key=%s panel=%s",
            settings.port, settings.loader, _mask(settings.api_key),
            settings.crafty_url or "<unset>",
        )
        return settings

    @staticmethod
    def _read_file(path: Path) -> Dict[str, Any]:
        if not path.exists():
            logger.debug("No config file at %s, using defaults", path)
            return {}
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load config: %s", exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Config %s is not a JSON object, ignoring", path)
            return {}
        logger.debug("Config loaded from %s", path)
        return data

    # ================================================================
    #  DERIVED
    # ================================================================

    @property
    def runtime(self) -> RuntimeTarget:
        return RuntimeTarget(loader=self.loader, game_version=self.game_version)

    @property
    def resolved_plugins_dir(self) -> Path:
        return self.plugins_dir or self.minecraft_path / "plugins"

    @property
    def resolved_staging_dir(self) -> Path:
        return self.staging_dir or self.minecraft_path / ".plugin-staging"

    @property
    def panel_configured(self) -> bool:
        return bool(self.crafty_url and self.crafty_token)

    # ================================================================
    #  VALIDATION
    # ================================================================

    def validate(self) -> None:
        """Checks the HTTP service needs before it may start."""
        if not self.api_key or self.api_key == DEV_API_KEY:
            raise ConfigError(
                "API_KEY is not set. Generate one with: openssl rand -hex 32",
                field="api_key",
            )
        if not 1024 <= self.port <= 65535:
            raise ConfigError(f"PORT must be between 1024 and 65535, got {self.port}", field="port")
        if not self.loader:
            raise ConfigError("SERVER_LOADER must not be empty", field="loader")
        if self.download_timeout <= 0:
            raise ConfigError("DOWNLOAD_TIMEOUT must be positive", field="download_timeout")
        if not self.panel_configured:
            logger.warning("Crafty API not configured; server status and control are unavailable")

    def validate_bot(self) -> None:
        if not self.bot_token:
            raise ConfigError("DISCORD_BOT_TOKEN is not set", field="bot_token")
        if not self.backend_api_key:
            raise ConfigError("BACKEND_API_KEY or API_KEY is not set", field="backend_api_key")


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)
