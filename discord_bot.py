"""
discord_bot.py
==============
Discord bot front-end.  Slash commands call the HTTP API (web_api) with the
shared API key, so the bot never touches the plugin directory or the panel
directly.

Commands:
  /status                    – canonical server status
  /start /stop /restart      – panel actions (restart accepts a delay)
  /search <query> [limit]    – Modrinth search
  /install <project> [ver]   – install a plugin
  /update <project> [ver]    – update a plugin
  /plugins browse [q] [cat]  – paged Modrinth browser with details and install
  /plugins list              – installed plugins
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands

from settings import Settings

logger = logging.getLogger(__name__)

EMBED_FIELD_LIMIT = 25
DESCRIPTION_LIMIT = 200


# ──────────────────────────────────────────────
#  Backend API client
# ──────────────────────────────────────────────

class BackendError(Exception):
    """A non-2xx answer from the API, parsed from its error envelope."""

    def __init__(self, code: str, message: str, status: int) -> None:
        self.code = code
        self.message = message
        self.status = status
        super().__init__(f"{code}: {message}")

    @classmethod
    def from_response(cls, status: int, payload: Any) -> "BackendError":
        error = payload.get("error") if isinstance(payload, Mapping) else None
        if isinstance(error, Mapping):
            return cls(
                str(error.get("code", "UNKNOWN_ERROR")),
                str(error.get("message", "Unknown error")),
                int(error.get("statusCode", status)),
            )
        return cls("HTTP_ERROR", f"Backend returned HTTP {status}", status)


class BackendAPI:
    """
    Async client for the bridge's own HTTP API.

    Args:
        base_url:  e.g. ``http://localhost:3000``
        api_key:   Value for the ``X-API-Key`` header
        timeout:   Seconds per request (installs can take a while)
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 120) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key, "Content-Type": "application/json"}
        self.timeout = timeout

    async def _call(
        self,
        method: str,
        path: str,
        session: aiohttp.ClientSession,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            async with session.request(
                method, f"{self.base_url}{path}",
                params=params, json=json, headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
                if resp.status >= 400:
                    error = BackendError.from_response(resp.status, payload)
                    logger.warning("%s %s → %s", method, path, error)
                    raise error
                return payload if isinstance(payload, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Backend %s %s failed: %s", method, path, exc)
            raise BackendError("BACKEND_UNREACHABLE", str(exc) or "Backend unreachable", 503) from exc

    async def get_status(self, session):
        return await self._call("GET", "/api/status", session)

    async def server_action(self, session, action: str, delay: int = 0):
        return await self._call("POST", f"/api/server/{action}", session, json={"delay": delay})

    async def search(self, session, query: str, limit: int = 5, category: Optional[str] = None):
        params: Dict[str, Any] = {"q": query, "limit": limit}
        if category and category != "all":
            params["category"] = category
        return await self._call("GET", "/api/modrinth/search", session, params=params)

    async def get_plugins(self, session):
        return await self._call("GET", "/api/plugins", session)

    async def install_plugin(self, session, project_id: str, version_id: Optional[str] = None, *, update: bool = False):
        body: Dict[str, Any] = {"projectId": project_id}
        if version_id:
            body["versionId"] = version_id
        path = "/api/plugins/update" if update else "/api/plugins/install"
        return await self._call("POST", path, session, json=body)


# ──────────────────────────────────────────────
#  Embed builders
# ──────────────────────────────────────────────

def _format_uptime(seconds: float) -> str:
    seconds = int(seconds or 0)
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    return f"{hours}h {minutes}m"


def status_embed(payload: Mapping[str, Any]) -> discord.Embed:
    status = payload.get("status", {})
    online = bool(status.get("online"))
    embed = discord.Embed(
        title="🖥️  Server Status",
        color=discord.Color.green() if online else discord.Color.red(),
        timestamp=datetime.now(tz=timezone.utc),
    )
    embed.add_field(name="Status", value="🟢 Online" if online else "🔴 Offline", inline=True)
    embed.add_field(
        name="Players",
        value=f"{status.get('playerCount', 0)}/{status.get('maxPlayers', 0)}",
        inline=True,
    )
    embed.add_field(name="Ping", value=f"{status.get('ping', 0)}ms", inline=True)
    embed.add_field(name="CPU", value=f"{float(status.get('cpuUsage', 0)):.1f}%", inline=True)
    embed.add_field(name="RAM", value=f"{float(status.get('ramUsage', 0)):.1f}%", inline=True)
    embed.add_field(name="Uptime", value=_format_uptime(status.get("uptime", 0)), inline=True)
    return embed


def error_embed(title: str, description: str) -> discord.Embed:
    return discord.Embed(
        title=f"❌ {title}",
        description=description,
        color=discord.Color.red(),
        timestamp=datetime.now(tz=timezone.utc),
    )


def success_embed(title: str, description: str) -> discord.Embed:
    return discord.Embed(
        title=f"✅ {title}",
        description=description,
        color=discord.Color.green(),
        timestamp=datetime.now(tz=timezone.utc),
    )


def list_embed(
    title: str,
    items: Iterable[Tuple[str, str]],
    color: Optional[discord.Color] = None,
) -> discord.Embed:
    """One non-inline field per (name, value); Discord allows at most 25."""
    embed = discord.Embed(
        title=f"📋 {title}",
        color=color or discord.Color.blurple(),
        timestamp=datetime.now(tz=timezone.utc),
    )
    items = list(items)
    for name, value in items[:EMBED_FIELD_LIMIT]:
        embed.add_field(name=name[:256], value=(value or "-")[:1024], inline=False)
    if len(items) > EMBED_FIELD_LIMIT:
        embed.set_footer(text=f"…and {len(items) - EMBED_FIELD_LIMIT} more")
    return embed


def search_embed(query: str, page: Mapping[str, Any]) -> discord.Embed:
    hits = page.get("hits", [])
    items = []
    for hit in hits:
        description = (hit.get("description") or "")[:DESCRIPTION_LIMIT]
        items.append((
            f"{hit.get('title', '?')} ({hit.get('id', '?')})",
            f"{description}\n⬇️ {hit.get('downloads', 0):,} downloads",
        ))
    embed = list_embed(f"Modrinth: {query}", items)
    if not hits:
        embed.description = "No results."
    else:
        embed.description = f"{len(hits)} of {page.get('total', len(hits))} results"
    return embed


def install_embed(payload: Mapping[str, Any]) -> discord.Embed:
    record = payload.get("installation", {})
    action = "Updated" if record.get("action") == "update" else "Installed"
    embed = success_embed(
        f"Plugin {action}",
        f"**{record.get('filename', '?')}** "
        f"(version {record.get('versionNumber') or record.get('versionId', '?')})",
    )
    if record.get("backupPath"):
        embed.add_field(name="Backup", value=f"`{record['backupPath']}`", inline=False)
    if record.get("displaced"):
        embed.add_field(name="Replaced", value=", ".join(record["displaced"]), inline=False)
    embed.set_footer(text="Restart the server to load the plugin")
    return embed


def backend_error_embed(exc: BackendError) -> discord.Embed:
    return error_embed(exc.code.replace("_", " ").title(), exc.message)


# ──────────────────────────────────────────────
#  Plugin browser
# ──────────────────────────────────────────────

BROWSE_CATEGORIES = ("adventure", "economy", "magic", "optimization", "technology", "utility")
BROWSE_PAGE_SIZE = 5
BROWSE_FETCH_LIMIT = 25
BROWSE_TIMEOUT = 300


def page_count(hits: Sequence[Any], page_size: int = BROWSE_PAGE_SIZE) -> int:
    return max(1, -(-len(hits) // page_size))


def page_slice(hits: Sequence[Any], page: int, page_size: int = BROWSE_PAGE_SIZE) -> Sequence[Any]:
    start = page * page_size
    return hits[start:start + page_size]


def browse_page_embed(
    query: str, category: str, hits: Sequence[Mapping[str, Any]], page: int, total: int,
) -> discord.Embed:
    """Numbered list of one page of hits, with page and total in the footer."""
    label = f'"{query}"' if category == "all" else f'"{query}" in {category}'
    embed = discord.Embed(
        title=f"📦 Plugin Browser: {label}",
        description="Browse and install plugins from Modrinth",
        color=discord.Color.blurple(),
    )
    start = page * BROWSE_PAGE_SIZE
    for index, hit in enumerate(page_slice(hits, page), start=start + 1):
        description = hit.get("description") or ""
        if len(description) > 100:
            description = description[:100] + "..."
        embed.add_field(
            name=f"{index}. {hit.get('title', '?')}"[:256],
            value="\n".join((
                f"📝 {description or '-'}",
                f"📥 {hit.get('downloads', 0):,} downloads",
                f"⭐ {hit.get('follows', 0):,} followers",
                f"🆔 `{hit.get('id', '?')}`",
            ))[:1024],
            inline=False,
        )
    embed.set_footer(text=f"Page {page + 1}/{page_count(hits)} • {total:,} total results")
    return embed


def project_detail_embed(hit: Mapping[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title=f"📦 {hit.get('title', '?')}",
        description=(hit.get("description") or "")[:4096],
        color=discord.Color.green(),
        timestamp=datetime.now(tz=timezone.utc),
    )
    embed.add_field(name="Project ID", value=f"`{hit.get('id', '?')}`", inline=True)
    embed.add_field(name="Downloads", value=f"{hit.get('downloads', 0):,}", inline=True)
    embed.add_field(name="Followers", value=f"{hit.get('follows', 0):,}", inline=True)
    embed.add_field(name="Categories", value=", ".join(hit.get("categories") or []) or "None", inline=False)
    if hit.get("icon_url"):
        embed.set_thumbnail(url=hit["icon_url"])
    return embed


def browse_options(hits: Sequence[Mapping[str, Any]], page: int) -> List[discord.SelectOption]:
    return [
        discord.SelectOption(
            label=str(hit.get("title", "?"))[:100],
            description=f"{hit.get('downloads', 0):,} downloads"[:100],
            value=str(hit.get("id", "?")),
        )
        for hit in page_slice(hits, page)
    ]


class PluginBrowser(discord.ui.View):
    """
    Paged search results (5 per page) with a select menu for details and
    an install button for the selected project.  Only the user who opened
    the browser can drive it.
    """

    def __init__(
        self,
        api: BackendAPI,
        session: Callable[[], aiohttp.ClientSession],
        owner_id: int,
        query: str,
        category: str,
        page: Mapping[str, Any],
        *,
        timeout: float = BROWSE_TIMEOUT,
    ) -> None:
        super().__init__(timeout=timeout)
        self.api = api
        self.session = session
        self.owner_id = owner_id
        self.query = query
        self.category = category
        self.hits: List[Mapping[str, Any]] = list(page.get("hits", []))
        self.total = int(page.get("total", len(self.hits)))
        self.page = 0
        self.selected: Optional[Mapping[str, Any]] = None
        self.message: Optional[discord.Message] = None

        self.picker = discord.ui.Select(placeholder="Select a plugin to view details", row=0)
        self.picker.callback = self.on_pick
        self.add_item(self.picker)
        self._sync()

    def current_embed(self) -> discord.Embed:
        if self.selected is not None:
            return project_detail_embed(self.selected)
        return browse_page_embed(self.query, self.category, self.hits, self.page, self.total)

    def show_page(self, page: int) -> discord.Embed:
        self.page = min(max(page, 0), page_count(self.hits) - 1)
        self.selected = None
        self._sync()
        return self.current_embed()

    def _sync(self) -> None:
        last = page_count(self.hits) - 1
        detail = self.selected is not None
        self.picker.options = browse_options(self.hits, self.page)
        self.picker.disabled = not self.picker.options
        self.previous_page.disabled = detail or self.page == 0
        self.next_page.disabled = detail or self.page >= last
        self.back.disabled = not detail
        self.install.disabled = not detail

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.owner_id:
            await interaction.response.send_message("This menu is not for you!", ephemeral=True)
            return False
        return True

    async def on_pick(self, interaction: discord.Interaction) -> None:
        project_id = self.picker.values[0]
        self.selected = next((h for h in self.hits if str(h.get("id")) == project_id), None)
        self._sync()
        await interaction.response.edit_message(embed=self.current_embed(), view=self)

    @discord.ui.button(label="◀ Previous", style=discord.ButtonStyle.primary, row=1)
    async def previous_page(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.edit_message(embed=self.show_page(self.page - 1), view=self)

    @discord.ui.button(label="Next ▶", style=discord.ButtonStyle.primary, row=1)
    async def next_page(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.edit_message(embed=self.show_page(self.page + 1), view=self)

    @discord.ui.button(label="⬅ Back", style=discord.ButtonStyle.secondary, row=1)
    async def back(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.edit_message(embed=self.show_page(self.page), view=self)

    @discord.ui.button(label="🔄 Refresh", style=discord.ButtonStyle.secondary, row=1)
    async def refresh(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        try:
            page = await self.api.search(self.session(), self.query, BROWSE_FETCH_LIMIT, self.category)
        except BackendError as exc:
            await interaction.followup.send(embed=backend_error_embed(exc), ephemeral=True)
            return
        self.hits = list(page.get("hits", []))
        self.total = int(page.get("total", len(self.hits)))
        await interaction.edit_original_response(embed=self.show_page(self.page), view=self)

    @discord.ui.button(label="📥 Install", style=discord.ButtonStyle.success, row=1)
    async def install(self, interaction: discord.Interaction, button: discord.ui.Button):
        if self.selected is None:
            await interaction.response.send_message(
                "Select a plugin from the dropdown menu, then click Install!", ephemeral=True,
            )
            return
        project_id = str(self.selected.get("id"))
        logger.info("Browser install of %s requested by %s", project_id, interaction.user)
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            payload = await self.api.install_plugin(self.session(), project_id)
        except BackendError as exc:
            await interaction.followup.send(embed=backend_error_embed(exc), ephemeral=True)
            return
        await interaction.followup.send(embed=install_embed(payload), ephemeral=True)

    async def on_timeout(self) -> None:
        for item in self.children:
            item.disabled = True
        if self.message is not None:
            try:
                await self.message.edit(view=self)
            except discord.HTTPException as exc:
                logger.debug("Could not disable expired browser: %s", exc)


# ──────────────────────────────────────────────
#  Bot
# ──────────────────────────────────────────────

class PanelBot(commands.Bot):
    """discord.py bot with slash commands bound to the backend API."""

    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.message_content = False
        super().__init__(command_prefix="!", intents=intents)
        self.settings = settings
        self.backend = BackendAPI(settings.backend_url, settings.backend_api_key)
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.guild_obj = discord.Object(id=settings.guild_id) if settings.guild_id else None
        register_commands(self)

    async def setup_hook(self) -> None:
        self.http_session = aiohttp.ClientSession()
        if self.guild_obj is not None:
            self.tree.copy_global_to(guild=self.guild_obj)
            await self.tree.sync(guild=self.guild_obj)
            logger.info("Slash commands synced to guild %s", self.settings.guild_id)
        else:
            await self.tree.sync()
            logger.warning("DISCORD_GUILD_ID not set; commands synced globally (may take up to an hour)")

    async def on_ready(self) -> None:
        logger.info("Bot logged in as %s (id=%s)", self.user, self.user.id if self.user else "?")

    async def close(self) -> None:
        if self.http_session is not None:
            await self.http_session.close()
        await super().close()


async def _respond(interaction: discord.Interaction, call, render) -> None:
    """Defer, call the backend, then send either the rendered embed or an error embed."""
    await interaction.response.defer(thinking=True)
    try:
        payload = await call()
    except BackendError as exc:
        await interaction.followup.send(embed=backend_error_embed(exc))
        return
    await interaction.followup.send(embed=render(payload))


def register_commands(bot: PanelBot) -> None:
    tree = bot.tree
    api = bot.backend

    def session() -> aiohttp.ClientSession:
        return bot.http_session

    @tree.command(name="status", description="Show the Minecraft server status")
    async def status_cmd(interaction: discord.Interaction):
        await _respond(interaction, lambda: api.get_status(session()), status_embed)

    @tree.command(name="restart", description="Restart the Minecraft server")
    @app_commands.describe(delay="Seconds to wait before restarting (0-300)")
    async def restart_cmd(interaction: discord.Interaction, delay: app_commands.Range[int, 0, 300] = 0):
        logger.info("Restart requested by %s (delay=%d)", interaction.user, delay)
        await _respond(
            interaction,
            lambda: api.server_action(session(), "restart", delay),
            lambda p: success_embed("Restart", p.get("message", "Server restart initiated")),
        )

    @tree.command(name="stop", description="Stop the Minecraft server")
    async def stop_cmd(interaction: discord.Interaction):
        logger.info("Stop requested by %s", interaction.user)
        await _respond(
            interaction,
            lambda: api.server_action(session(), "stop"),
            lambda p: success_embed("Stop", p.get("message", "Server stop initiated")),
        )

    @tree.command(name="start", description="Start the Minecraft server")
    async def start_cmd(interaction: discord.Interaction):
        await _respond(
            interaction,
            lambda: api.server_action(session(), "start"),
            lambda p: success_embed("Start", p.get("message", "Server start initiated")),
        )

    @tree.command(name="search", description="Search Modrinth for plugins")
    @app_commands.describe(query="Search terms", limit="Number of results (1-10)")
    async def search_cmd(
        interaction: discord.Interaction, query: str, limit: app_commands.Range[int, 1, 10] = 5,
    ):
        await _respond(
            interaction,
            lambda: api.search(session(), query, limit),
            lambda p: search_embed(query, p),
        )

    @tree.command(name="install", description="Install a plugin from Modrinth")
    @app_commands.describe(project="Modrinth project id or slug", version="Specific version id")
    async def install_cmd(interaction: discord.Interaction, project: str, version: Optional[str] = None):
        logger.info("Install %s (%s) requested by %s", project, version or "latest", interaction.user)
        await _respond(
            interaction,
            lambda: api.install_plugin(session(), project, version),
            install_embed,
        )

    @tree.command(name="update", description="Update an installed plugin from Modrinth")
    @app_commands.describe(project="Modrinth project id or slug", version="Specific version id")
    async def update_cmd(interaction: discord.Interaction, project: str, version: Optional[str] = None):
        logger.info("Update %s (%s) requested by %s", project, version or "latest", interaction.user)
        await _respond(
            interaction,
            lambda: api.install_plugin(session(), project, version, update=True),
            install_embed,
        )

    plugins = app_commands.Group(name="plugins", description="Browse and manage plugins")

    @plugins.command(name="browse", description="Browse Modrinth plugins with an interactive menu")
    @app_commands.describe(query="Search terms (optional)", category="Filter by category")
    @app_commands.choices(category=[app_commands.Choice(name="All", value="all")] + [
        app_commands.Choice(name=c.capitalize(), value=c) for c in BROWSE_CATEGORIES
    ])
    async def plugins_browse(
        interaction: discord.Interaction,
        query: Optional[str] = None,
        category: Optional[app_commands.Choice[str]] = None,
    ):
        query = query or "plugin"
        chosen = category.value if category else "all"
        await interaction.response.defer(thinking=True)
        try:
            page = await api.search(session(), query, BROWSE_FETCH_LIMIT, chosen)
        except BackendError as exc:
            await interaction.followup.send(embed=backend_error_embed(exc))
            return

        if not page.get("hits"):
            embed = list_embed("No Plugins Found", [], color=discord.Color.gold())
            embed.description = f'No plugins found for "{query}"'
            await interaction.followup.send(embed=embed)
            return

        view = PluginBrowser(api, session, interaction.user.id, query, chosen, page)
        view.message = await interaction.followup.send(embed=view.current_embed(), view=view, wait=True)

    @plugins.command(name="list", description="List installed plugins")
    async def plugins_list(interaction: discord.Interaction):
        def render(payload):
            items = [
                (p.get("name") or p.get("filename", "?"),
                 f"`{p.get('filename', '?')}` v{p.get('version') or '?'}")
                for p in payload.get("plugins", [])
            ]
            embed = list_embed(f"Installed Plugins ({payload.get('count', len(items))})", items)
            if not items:
                embed.description = "No plugins installed."
            return embed

        await _respond(interaction, lambda: api.get_plugins(session()), render)

    tree.add_command(plugins)


def run_bot(settings: Settings) -> None:
    settings.validate_bot()
    bot = PanelBot(settings)
    logger.info("Starting Discord bot (backend=%s)", settings.backend_url)
    bot.run(settings.bot_token, log_handler=None)
