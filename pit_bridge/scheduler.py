"""Scheduler module — every fixed-period sweep and loop the bridge runs.

Each loop sleeps first, then ticks; a failing tick is logged and the loop
carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from .booster_tracker import BoosterTracker
    from .chat_parser import ChatParser
    from .command_bridge import CommandBridge
    from .config import BridgeConfig
    from .lobby_monitor import LobbyMonitor
    from .player_history import PlayerHistory


class Scheduler:
    """Central owner of the periodic tasks."""

    def __init__(
        self,
        config: BridgeConfig,
        boosters: BoosterTracker,
        chat_parser: ChatParser,
        command_bridge: CommandBridge,
        history: PlayerHistory,
        lobby_monitor: LobbyMonitor,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._boosters = boosters
        self._chat_parser = chat_parser
        self._commands = command_bridge
        self._history = history
        self._lobby = lobby_monitor
        self._logger = logger or logging.getLogger("pitbridge.scheduler")
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        timings = self._config.timings
        loops: list[tuple[str, float, Callable[[], Awaitable[None]]]] = [
            ("booster sweep", self._config.boosters.sweep_interval_seconds, self.booster_tick),
            ("event dedup sweep", self._config.events.dedup_sweep_interval_seconds, self.dedup_tick),
            ("verification cleanup", timings.verification_cleanup_interval, self.verification_tick),
            ("history cleanup", self._config.players.history_cleanup_interval_seconds, self.history_tick),
            ("keep-alive", timings.afk_prevention_interval, self.keepalive_tick),
            ("play command", timings.play_command_interval, self.play_tick),
            ("player scan", timings.player_scan_interval, self.scan_tick),
        ]
        for name, interval, tick in loops:
            self._tasks.append(asyncio.create_task(self._loop(name, interval, tick)))
            self._logger.info("%s task started (interval: %.0fs)", name.capitalize(), interval)

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _loop(self, name: str, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception:
                self._logger.exception("%s tick error", name.capitalize())

    # ══════════════════════════════════════════════════════════
    #  Ticks
    # ══════════════════════════════════════════════════════════

    async def booster_tick(self) -> None:
        self._boosters.sweep_expired()
        await self._boosters.save_state()

    async def dedup_tick(self) -> None:
        removed = self._chat_parser.sweep_events()
        if removed:
            self._logger.debug("Pruned %d event de-duplication entries", removed)

    async def verification_tick(self) -> None:
        self._commands.cleanup_expired_codes()

    async def history_tick(self) -> None:
        self._history.cleanup_old_data()
        await self._history.save()

    async def keepalive_tick(self) -> None:
        await self._lobby.send_keepalive()

    async def play_tick(self) -> None:
        await self._lobby.check_play_command()

    async def scan_tick(self) -> None:
        await self._lobby.scan_players()
