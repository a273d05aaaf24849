"""Service orchestrator — BridgeApp.

config → state stores → components → wire handlers → Discord → game
relay → metrics → scheduler → wait for an exit request.

The process exit code is the restart contract with the supervisor:
``0`` means "restart me" (or a clean shutdown), ``1`` means fatal.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import aiohttp

from . import __version__
from .announcer import Announcer
from .booster_tracker import BoosterTracker
from .chat_parser import ChatParser
from .command_bridge import CommandBridge
from .config import BridgeConfig, load_config
from .discord_bot import BridgeBot
from .game_client import GameClient
from .lobby_monitor import EXIT_FATAL, EXIT_RESTART, LobbyMonitor
from .metrics_server import BridgeMetricsServer
from .player_history import PlayerHistory
from .player_list import PlayerListBoard
from .player_store import PlayerDataStore
from .scheduler import Scheduler


class BridgeApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str | None = None, config: BridgeConfig | None = None) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.config: BridgeConfig | None = config
        self.logger = logging.getLogger("pitbridge")

        # Components (initialized in start())
        self.player_store: PlayerDataStore | None = None
        self.boosters: BoosterTracker | None = None
        self.history: PlayerHistory | None = None
        self.announcer: Announcer | None = None
        self.game: GameClient | None = None
        self.command_bridge: CommandBridge | None = None
        self.lobby_monitor: LobbyMonitor | None = None
        self.player_list: PlayerListBoard | None = None
        self.chat_parser: ChatParser | None = None
        self.discord: BridgeBot | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: BridgeMetricsServer | None = None

        # State
        self.running = False
        self._start_time: float | None = None
        self._stopping = False
        self._shutdown = asyncio.Event()
        self.exit_code: int | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def request_exit(self, code: int, reason: str) -> None:
        """Ask the app to shut down and leave with ``code``. The first request wins."""
        if self.exit_code is not None:
            return
        self.exit_code = code
        self.logger.warning("Exit requested (code %d): %s", code, reason)
        self._shutdown.set()

    # ══════════════════════════════════════════════════════════
    #  Construction
    # ══════════════════════════════════════════════════════════

    def build(self) -> None:
        """Create and wire all components. No I/O."""
        config = self.config
        self.player_store = PlayerDataStore(config.players.data_path, self.logger.getChild("players"))
        self.boosters = BoosterTracker(config.boosters, self.logger.getChild("boosters"))
        self.history = PlayerHistory(config.players, self.logger.getChild("history"))
        self.game = GameClient(config.minecraft, self.logger.getChild("game"))
        self.command_bridge = CommandBridge(
            config=config,
            game=self.game,
            discord_client=None,  # Set after Discord client creation
            logger=self.logger.getChild("commands"),
        )
        self.discord = BridgeBot(
            config=config,
            boosters=self.boosters,
            command_bridge=self.command_bridge,
            history=self.history,
            logger=self.logger.getChild("discord"),
        )
        self.command_bridge._discord = self.discord
        self.announcer = Announcer(self.discord, self.logger.getChild("announcer"))
        self.lobby_monitor = LobbyMonitor(
            config=config,
            game=self.game,
            announcer=self.announcer,
            history=self.history,
            request_exit=self.request_exit,
            logger=self.logger.getChild("lobby"),
            state_path=config.minecraft.reconnect_state_path,
        )
        self.player_list = PlayerListBoard(
            config, self.player_store, self.discord, self.logger.getChild("player_list"),
        )
        self.chat_parser = ChatParser(
            config=config,
            announcer=self.announcer,
            boosters=self.boosters,
            player_store=self.player_store,
            history=self.history,
            lobby_monitor=self.lobby_monitor,
            command_bridge=self.command_bridge,
            player_list=self.player_list,
            logger=self.logger.getChild("chat"),
        )
        self.scheduler = Scheduler(
            config=config,
            boosters=self.boosters,
            chat_parser=self.chat_parser,
            command_bridge=self.command_bridge,
            history=self.history,
            lobby_monitor=self.lobby_monitor,
            logger=self.logger.getChild("scheduler"),
        )
        self._register_game_handlers()

    def _register_game_handlers(self) -> None:
        game = self.game

        @game.on("login")
        async def handle_login(username: str) -> None:
            self.logger.info("Logged in to %s as %s", self.config.minecraft.host, username)

        @game.on("spawn")
        async def handle_spawn() -> None:
            await self.lobby_monitor.handle_spawn()

        @game.on("chat")
        async def handle_chat(text: str) -> None:
            await self.chat_parser.handle_message(text)

        @game.on("title")
        async def handle_title(text: str) -> None:
            await self.chat_parser.handle_title(text)

        @game.on("player_joined")
        async def handle_join(username: str) -> None:
            try:
                await self.lobby_monitor.handle_player_join(username)
            except Exception:
                self.logger.exception("player_joined handler error for %s", username)

        @game.on("player_left")
        async def handle_leave(username: str) -> None:
            try:
                await self.lobby_monitor.handle_player_leave(username)
            except Exception:
                self.logger.exception("player_left handler error for %s", username)

        @game.on("kicked")
        async def handle_kicked(reason: str) -> None:
            self.logger.error("Kicked from game: %s", reason)
            await self.lobby_monitor.handle_disconnect("kicked")

        @game.on("error")
        async def handle_error(message: str) -> None:
            self.logger.error("Game client error: %s", message)
            await self.lobby_monitor.handle_disconnect("error")

        @game.on("end")
        async def handle_end(reason: str) -> None:
            if self._stopping:
                return
            self.logger.error("Disconnected from game: %s", reason)
            await self.lobby_monitor.handle_disconnect("end")

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        self.logger.info("Starting pit-bridge...")
        self._start_time = time.time()

        # 1. Config
        if self.config is None:
            self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded (bot account %s)", self.config.minecraft.username)

        # 2. Components
        self.build()

        # 3. Restore persisted state
        await self.player_store.load()
        await self.boosters.load_state()
        await self.history.load()
        await self.lobby_monitor.load_reconnect_state()

        # 4. Outbound queue, then Discord
        await self.announcer.start()
        discord_task = asyncio.create_task(self.discord.start(self.config.discord.token))
        discord_task.add_done_callback(self._on_discord_done)
        self._tasks.append(discord_task)

        # 5. Game relay
        try:
            await self.game.connect()
        except (aiohttp.ClientError, OSError) as exc:
            self.logger.error("Could not connect to game relay: %s", exc)
            await self.lobby_monitor.handle_disconnect(f"connect failed: {exc}")
        else:
            self._tasks.append(asyncio.create_task(self.game.run()))

        # 6. Metrics
        if self.config.metrics.enabled:
            self.metrics_server = BridgeMetricsServer(self, port=self.config.metrics.port)
            await self.metrics_server.start()

        # 7. Periodic tasks
        await self.scheduler.start()

        self.running = True
        self.logger.info("pit-bridge started successfully (v%s)", __version__)

    def _on_discord_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or not self.running:
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Discord client stopped: %s", exc)
            self.request_exit(EXIT_FATAL, "Discord client failed")
        else:
            self.request_exit(EXIT_RESTART, "Discord client closed")

    async def run(self) -> int:
        """Start, block until an exit is requested, stop. Returns the exit code."""
        try:
            await self.start()
            await self._shutdown.wait()
        finally:
            await self.stop()
        return self.exit_code if self.exit_code is not None else EXIT_RESTART

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if self._start_time is None:
            return
        self.logger.info("Shutting down pit-bridge...")
        self.running = False
        self._stopping = True

        if self.scheduler:
            await self.scheduler.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.chat_parser:
            self.chat_parser.stop()
        if self.lobby_monitor:
            self.lobby_monitor.stop()
        if self.game:
            await self.game.close()

        # Final persistence
        if self.boosters:
            await self.boosters.save_state()
        if self.history is not None:
            await self.history.save()
        if self.player_store:
            await self.player_store.save()

        if self.announcer:
            await self.announcer.stop()
        if self.discord and not self.discord.is_closed():
            await self.discord.close()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._start_time = None
        self.logger.info("pit-bridge stopped")
