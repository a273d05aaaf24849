"""Lobby monitor — who is in the bot's current Pit lobby, and what to do on disconnect.

Lobby session states:

- ``IDLE``: not in a lobby (startup, or right after ``/play pit``).
- ``TRANSITIONING``: a ``MOVING!`` line arrived; individual join/leave
  notices are suppressed until the player list has settled.
- ``STEADY``: baseline scan done; every change produces a notice.

Recovery from a lost game connection is a process restart: the monitor
asks the app to exit with ``EXIT_RESTART`` after a backoff delay, or with
``EXIT_FATAL`` once the attempt budget is spent. The attempt counter is
kept on disk so the budget spans restarts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Callable

import discord

from .utils import now_utc, read_json, write_json_atomic

if TYPE_CHECKING:
    from .announcer import Announcer
    from .config import BridgeConfig
    from .game_client import GameClient
    from .player_history import PlayerHistory

EXIT_RESTART = 0
EXIT_FATAL = 1

_BOT_NAME_PATTERNS = [
    re.compile(r"^Bot", re.IGNORECASE),
    re.compile(r"^NPC-", re.IGNORECASE),
    re.compile(r"^vnL", re.IGNORECASE),
    re.compile(r"^[A-Z0-9]{8}$"),
    re.compile(r"^Pit(Bot|NPC)", re.IGNORECASE),
    re.compile(r"-[a-f0-9]{12}$"),
]


class LobbyState(enum.Enum):
    IDLE = "idle"
    TRANSITIONING = "transitioning"
    STEADY = "steady"


class LobbyMonitor:
    """Tracks lobby membership and owns the reconnect policy."""

    def __init__(
        self,
        config: BridgeConfig,
        game: GameClient,
        announcer: Announcer,
        history: PlayerHistory | None = None,
        request_exit: Callable[[int, str], None] | None = None,
        logger: logging.Logger | None = None,
        state_path: str | None = None,
    ) -> None:
        self._config = config
        self._timings = config.timings
        self._game = game
        self._announcer = announcer
        self._history = history
        self._request_exit = request_exit
        self._logger = logger or logging.getLogger("pitbridge.lobby")
        self._state_path = state_path
        self._lobby_channel = config.discord.channels.lobby

        self.state = LobbyState.IDLE
        self.current_lobby: str | None = None
        self.players: set[str] = set()
        self._joined_at: dict[str, datetime] = {}
        self._bots_toggled = False
        self._transition_token = 0
        self.last_play_command: datetime | None = None

        # Status debounce
        self._last_status: datetime | None = None
        self._trailing_status: asyncio.TimerHandle | None = None

        # Reconnect policy
        self.reconnect_attempts = 0
        self._exit_scheduled = False

        self._tasks: set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════
    #  Bot filter
    # ══════════════════════════════════════════════════════════

    def is_bot(self, username: str) -> bool:
        """True for names that should never be tracked (NPCs, bots, ourselves)."""
        own = self._game.username or self._config.minecraft.username
        if username == own:
            return True
        if "§" in username or username.startswith("CIT-") or "[NPC]" in username:
            return True
        return any(p.search(username) for p in _BOT_NAME_PATTERNS)

    # ══════════════════════════════════════════════════════════
    #  Lobby lifecycle
    # ══════════════════════════════════════════════════════════

    async def handle_new_lobby(self, lobby_name: str) -> None:
        """Enter ``lobby_name``: clear membership, then baseline after a delay."""
        if lobby_name == self.current_lobby:
            self._logger.debug("Already in lobby %s", lobby_name)
            return

        self._logger.info("Handling new lobby: %s", lobby_name)
        self._drop_players()
        self.current_lobby = lobby_name
        self.state = LobbyState.TRANSITIONING
        self._transition_token += 1
        token = self._transition_token

        if not self._bots_toggled:
            self._bots_toggled = True
            await self._send(self._config.minecraft.toggle_bots_command)
            self._logger.info("Toggled bots off")

        loop = asyncio.get_running_loop()
        loop.call_later(
            self._timings.player_list_delay,
            lambda t=token: self._spawn(self._finish_transition(t)),
        )

    async def _finish_transition(self, token: int) -> None:
        if token != self._transition_token or self.state is not LobbyState.TRANSITIONING:
            return
        try:
            self.scan_baseline()
            self.state = LobbyState.STEADY
            await self.request_status()
        except Exception:
            self._logger.exception("Lobby transition to %s failed", self.current_lobby)

    def scan_baseline(self, now: datetime | None = None) -> None:
        """Take the relay's player list as-is, without notices."""
        now = now or now_utc()
        self.players = {p for p in self._game.players if not self.is_bot(p)}
        self._joined_at = {p: now for p in self.players}
        for name in self.players:
            if self._history is not None:
                self._history.update_player(name, lobby=self.current_lobby, now=now)
        self._logger.info("Scanned players: %d players found", len(self.players))

    async def scan_players(self, now: datetime | None = None) -> int:
        """Diff the relay's player list against the tracked set. Returns changes."""
        if self.state is not LobbyState.STEADY:
            return 0
        current = {p for p in self._game.players if not self.is_bot(p)}
        changes = 0
        for name in sorted(self.players - current):
            await self._player_left(name, now)
            changes += 1
        for name in sorted(current - self.players):
            await self._player_joined(name, now)
            changes += 1
        if changes:
            await self.request_status(now)
        return changes

    async def handle_player_join(self, username: str) -> None:
        if self.state is not LobbyState.STEADY or self.is_bot(username):
            return
        if username in self.players:
            return
        await self._player_joined(username)
        await self.request_status()

    async def handle_player_leave(self, username: str) -> None:
        if self.state is not LobbyState.STEADY or username not in self.players:
            return
        await self._player_left(username)
        await self.request_status()

    async def _player_joined(self, username: str, now: datetime | None = None) -> None:
        now = now or now_utc()
        self.players.add(username)
        self._joined_at[username] = now
        if self._history is not None:
            self._history.update_player(username, lobby=self.current_lobby, now=now)
        self._logger.info("Player joined: %s", username)
        embed = discord.Embed(description=f"🟢 {username} joined the lobby", color=0x00FF00)
        embed.set_author(name="Player Update")
        await self._announcer.post(self._lobby_channel, embed)

    async def _player_left(self, username: str, now: datetime | None = None) -> None:
        now = now or now_utc()
        self.players.discard(username)
        self._credit_time_together(username, now)
        self._logger.info("Player left: %s", username)
        embed = discord.Embed(description=f"🔴 {username} left the lobby", color=0xFF0000)
        embed.set_author(name="Player Update")
        await self._announcer.post(self._lobby_channel, embed)

    def _credit_time_together(self, username: str, now: datetime) -> None:
        joined = self._joined_at.pop(username, None)
        if joined is not None and self._history is not None:
            self._history.add_time_together(username, (now - joined).total_seconds())

    def _drop_players(self, now: datetime | None = None) -> None:
        now = now or now_utc()
        for name in list(self._joined_at):
            self._credit_time_together(name, now)
        self.players.clear()
        self._joined_at.clear()

    # ══════════════════════════════════════════════════════════
    #  Lobby status (debounced)
    # ══════════════════════════════════════════════════════════

    def build_status_embed(self) -> discord.Embed:
        players = sorted(self.players)
        embed = discord.Embed(title="🎮 THE PIT - LOBBY STATUS", color=0x5865F2)
        embed.add_field(name="Lobby", value=self.current_lobby or "Unknown", inline=True)
        embed.add_field(name="Players", value=str(len(players)), inline=True)
        embed.add_field(
            name="Current Players",
            value="\n".join(f"• {p}" for p in players) if players else "No players in lobby",
            inline=False,
        )
        return embed

    async def request_status(self, now: datetime | None = None) -> bool:
        """Send a status notice, or schedule one trailing send inside the debounce window."""
        now = now or now_utc()
        window = self._timings.status_debounce
        if self._last_status is None or (now - self._last_status).total_seconds() >= window:
            await self._send_status(now)
            return True

        if self._trailing_status is None:
            remaining = window - (now - self._last_status).total_seconds()
            loop = asyncio.get_running_loop()
            self._trailing_status = loop.call_later(
                remaining, lambda: self._spawn(self._flush_trailing_status()),
            )
        return False

    async def _flush_trailing_status(self) -> None:
        self._trailing_status = None
        if self.state is LobbyState.STEADY:
            await self._send_status(now_utc())

    async def _send_status(self, now: datetime) -> None:
        self._last_status = now
        await self._announcer.post(self._lobby_channel, self.build_status_embed())
        self._logger.info("Sent lobby status update")

    # ══════════════════════════════════════════════════════════
    #  Session commands
    # ══════════════════════════════════════════════════════════

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, command: str) -> bool:
        try:
            await self._game.send_chat(command)
            return True
        except Exception as exc:
            self._logger.error("Error sending %s: %s", command, exc)
            return False

    async def send_play_command(self, now: datetime | None = None) -> None:
        """Send ``/play pit`` and forget the current lobby."""
        now = now or now_utc()
        if await self._send(self._config.minecraft.play_command):
            self.last_play_command = now
            self._logger.info("Sent play command")
        self._drop_players(now)
        self.current_lobby = None
        self.state = LobbyState.IDLE
        self._transition_token += 1

    async def check_play_command(self, now: datetime | None = None) -> bool:
        """Re-send the play command when idle and the interval has elapsed."""
        now = now or now_utc()
        if self.state is not LobbyState.IDLE or not self._game.connected:
            return False
        if (
            self.last_play_command is not None
            and (now - self.last_play_command).total_seconds() < self._timings.play_command_interval
        ):
            return False
        await self.send_play_command(now)
        return True

    async def send_keepalive(self) -> None:
        if await self._send(self._config.minecraft.keepalive_command):
            self._logger.debug("Sent AFK prevention command")

    async def handle_spawn(self) -> None:
        """Successful spawn: reset the reconnect budget and queue the first ``/play pit``."""
        if self.reconnect_attempts:
            self._logger.info("Spawned; resetting reconnect attempts (%d)", self.reconnect_attempts)
        self.reconnect_attempts = 0
        await self.save_reconnect_state()
        loop = asyncio.get_running_loop()
        loop.call_later(
            self._timings.initial_play_delay,
            lambda: self._spawn(self.send_play_command()),
        )

    # ══════════════════════════════════════════════════════════
    #  Reconnect policy
    # ══════════════════════════════════════════════════════════

    def reconnect_delay(self, attempts: int) -> float:
        return min(
            self._timings.reconnect_backoff_base * (2 ** attempts),
            self._timings.reconnect_backoff_max,
        )

    async def handle_disconnect(self, reason: str) -> None:
        """Count the failure once per session and schedule a process exit."""
        if self._exit_scheduled:
            self._logger.debug("Exit already scheduled, ignoring %s", reason)
            return
        self._exit_scheduled = True
        self.reconnect_attempts += 1
        await self.save_reconnect_state()

        max_attempts = self._timings.max_reconnect_attempts
        if self.reconnect_attempts > max_attempts:
            self._logger.error(
                "Max reconnection attempts (%d) reached after %s. Exiting...", max_attempts, reason,
            )
            self._exit(EXIT_FATAL, f"reconnect budget exhausted ({reason})")
            return

        delay = self.reconnect_delay(self.reconnect_attempts)
        self._logger.info(
            "Disconnected (%s); restarting in %.0fs (attempt %d/%d)",
            reason, delay, self.reconnect_attempts, max_attempts,
        )
        loop = asyncio.get_running_loop()
        loop.call_later(delay, self._exit, EXIT_RESTART, f"reconnect after {reason}")

    def _exit(self, code: int, reason: str) -> None:
        if self._request_exit is None:
            self._logger.error("No exit handler installed (code %d: %s)", code, reason)
            return
        self._request_exit(code, reason)

    async def load_reconnect_state(self) -> None:
        if not self._state_path:
            return
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, read_json, self._state_path)
        except (OSError, ValueError) as exc:
            self._logger.error("Could not read reconnect state: %s", exc)
            return
        if isinstance(raw, dict):
            self.reconnect_attempts = int(raw.get("attempts", 0))

    async def save_reconnect_state(self) -> None:
        if not self._state_path:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, write_json_atomic, self._state_path, {"attempts": self.reconnect_attempts},
            )
        except OSError as exc:
            self._logger.error("Could not save reconnect state: %s", exc)

    def stop(self) -> None:
        if self._trailing_status is not None:
            self._trailing_status.cancel()
            self._trailing_status = None
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
