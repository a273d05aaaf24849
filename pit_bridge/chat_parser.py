"""Chat parser — turns raw Pit chat lines into Discord notices and state changes.

Each line is tested against an ordered list of classifiers; the first one
whose handler reports "handled" wins. Order matters: lobby-scoped chat is
a structural superset of several later patterns and must be consumed
first.

Multi-line sequences correlated here:

- Booster activation: the chat line names player and type, the multiplier
  arrives separately as a title (``2.4x``). The activation waits up to
  ``pending_ttl_seconds`` for the title, then falls back to the default
  multiplier.
- ``/events`` reply: major and minor lines are merged into one embed when
  both arrive within ``events_reply_window_seconds``.
- Event notices are de-duplicated on ``TYPE-NAME-STATUS`` for
  ``dedup_window_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, NamedTuple

import discord

from .player_store import PlayerRecord
from .timestamps import parse_countdown, relative_time, time_and_countdown
from .utils import now_utc

if TYPE_CHECKING:
    from .announcer import Announcer
    from .booster_tracker import BoosterTracker
    from .command_bridge import CommandBridge
    from .config import BridgeConfig
    from .lobby_monitor import LobbyMonitor
    from .player_history import PlayerHistory
    from .player_list import PlayerListBoard
    from .player_store import PlayerDataStore


# ═══════════════════════════════════════════════════════════════
#  Patterns
# ═══════════════════════════════════════════════════════════════

LOBBY_CHAT = re.compile(
    r"^\[([A-Z]+)-(\d+)\] (?:\[([A-Z0-9]{1,4})\] )?(?:\[(VIP\+?|MVP\+{0,2})\] )?(\w+)( ♚)?: (.+)$"
)
GUILD_CHAT = re.compile(r"Guild > \[(\w+)\] (\w+): (.+)")
GUILD_KILL = re.compile(r"\[GKILLS\] \[(\d+)\] (\w+) Killed \[(\d+)\] (\w+)")
VERIFY_WHISPER = re.compile(r"(\w+) -> you: (\d{6})\b")
EVENTS_REPLY = re.compile(r"EVENTS! Next (Major|Minor) Event: ([^!]+?) in (\d+m\d+s|\d+s)")
EVENT_ENDED = re.compile(r"PIT EVENT ENDED: ([^!]+?)!")
BOOSTER_ACTIVATE = re.compile(r"WOAH! \[\d+\] (\w+) (?:just )?activated a (\w+) booster! GG!", re.IGNORECASE)
BOOSTER_EXPIRE = re.compile(r"(\w+)'s (?:([\d.]+)x )?(\w+) boost(?:er)? expired!", re.IGNORECASE)
BOOSTER_TITLE = re.compile(r"(\d+(?:\.\d+)?)x")
MAJOR_STARTING = re.compile(r"MAJOR EVENT! ([^!]+?) starting in (\d+) minutes?")
MAJOR_STARTING_NOW = re.compile(r"MAJOR EVENT! ([^!]+?) starting now")
HARVEST_START = re.compile(r"MINOR EVENT! HARVEST SEASON!")
HARVEST_END = re.compile(r"MINOR EVENT! HARVEST SEASON ended")
AUCTION_START = re.compile(r"MINOR EVENT! AUCTION! Check your chat!")
AUCTION_END = re.compile(r"MINOR EVENT! AUCTION ending now")
PRESTIGE = re.compile(r"PRESTIGE! (\w+) unlocked prestige ([\w ]+), gg!")
LOBBY_CHANGE = re.compile(r"MOVING! Sending you to (\w+)")

MAJOR = "MAJOR"
MINOR = "MINOR"

EVENT_EMOJI = {MAJOR: "🔥", MINOR: "📢"}
EVENT_COLOR = {MAJOR: 0xFF0000, MINOR: 0xFFFF00}
STATUS_STARTING = "⌛"
STATUS_ACTIVE = "▶️"
STATUS_ENDED = "⏹️"


def status_emoji(status: str) -> str:
    if "starting" in status:
        return STATUS_STARTING
    if status in ("ended", "ending now"):
        return STATUS_ENDED
    return STATUS_ACTIVE


class Classifier(NamedTuple):
    name: str
    pattern: re.Pattern[str]
    handler: Callable[[re.Match[str], datetime], Awaitable[bool]]


@dataclass
class PendingBooster:
    """An activation waiting for its multiplier title."""

    player: str
    type: str
    created_at: datetime
    timer: asyncio.TimerHandle | None = None


@dataclass
class PendingEventsReply:
    """Slots of an ``/events`` reply collected so far."""

    created_at: datetime
    major: tuple[str, datetime] | None = None
    minor: tuple[str, datetime] | None = None
    timer: asyncio.TimerHandle | None = None

    @property
    def complete(self) -> bool:
        return self.major is not None and self.minor is not None


class ChatParser:
    """Ordered chat-line dispatcher."""

    def __init__(
        self,
        config: BridgeConfig,
        announcer: Announcer,
        boosters: BoosterTracker,
        player_store: PlayerDataStore | None = None,
        history: PlayerHistory | None = None,
        lobby_monitor: LobbyMonitor | None = None,
        command_bridge: CommandBridge | None = None,
        player_list: PlayerListBoard | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._channels = config.discord.channels
        self._roles = config.discord.roles
        self._boosters_config = config.boosters
        self._events_config = config.events
        self._announcer = announcer
        self._boosters = boosters
        self._store = player_store
        self._history = history
        self._lobby = lobby_monitor
        self._commands = command_bridge
        self._player_list = player_list
        self._logger = logger or logging.getLogger("pitbridge.chat")

        self._ping_types = {t.lower() for t in self._boosters_config.ping_types}
        self._no_multiplier = {t.lower() for t in self._boosters_config.no_multiplier_types}
        self._major_names = {n.upper() for n in self._events_config.major_event_names}

        self._pending_booster: PendingBooster | None = None
        self._last_booster_ping: datetime | None = None
        self._events_reply: PendingEventsReply | None = None
        # "TYPE-NAME-STATUS" -> observation time
        self._active_events: dict[str, datetime] = {}

        # Metrics
        self.lines_processed: int = 0
        self.lines_handled: int = 0
        self.handler_errors: int = 0

        self._tasks: set[asyncio.Task] = set()

        self._classifiers: list[Classifier] = [
            Classifier("lobby_chat", LOBBY_CHAT, self._handle_lobby_chat),
            Classifier("guild_chat", GUILD_CHAT, self._handle_guild_chat),
            Classifier("guild_kill", GUILD_KILL, self._handle_guild_kill),
            Classifier("verification", VERIFY_WHISPER, self._handle_verification),
            Classifier("events_reply", EVENTS_REPLY, self._handle_events_reply),
            Classifier("event_ended", EVENT_ENDED, self._handle_event_ended),
            Classifier("booster_activate", BOOSTER_ACTIVATE, self._handle_booster_activate),
            Classifier("booster_expire", BOOSTER_EXPIRE, self._handle_booster_expire),
            Classifier("major_starting", MAJOR_STARTING, self._handle_major_starting),
            Classifier("major_starting_now", MAJOR_STARTING_NOW, self._handle_major_starting_now),
            Classifier("harvest_start", HARVEST_START, self._minor_handler("HARVEST SEASON", "active")),
            Classifier("harvest_end", HARVEST_END, self._minor_handler("HARVEST SEASON", "ended")),
            Classifier("auction_start", AUCTION_START, self._minor_handler("AUCTION", "starting soon")),
            Classifier("auction_end", AUCTION_END, self._minor_handler("AUCTION", "ending now")),
            Classifier("prestige", PRESTIGE, self._handle_prestige),
            Classifier("lobby_change", LOBBY_CHANGE, self._handle_lobby_change),
        ]

    @property
    def classifier_names(self) -> list[str]:
        return [c.name for c in self._classifiers]

    # ══════════════════════════════════════════════════════════
    #  Entry points
    # ══════════════════════════════════════════════════════════

    async def handle_message(self, line: str, now: datetime | None = None) -> str | None:
        """Dispatch one chat line. Returns the classifier name that handled it."""
        self.lines_processed += 1
        now = now or now_utc()
        self._logger.debug("Processing chat message: %s", line)

        for classifier in self._classifiers:
            match = classifier.pattern.search(line)
            if not match:
                continue
            try:
                handled = await classifier.handler(match, now)
            except Exception:
                self.handler_errors += 1
                self._logger.exception("Error in %s handler for line: %s", classifier.name, line)
                return None
            if handled:
                self.lines_handled += 1
                return classifier.name
        return None

    async def handle_title(self, text: str) -> None:
        """Title text: completes a pending booster when it carries a multiplier."""
        match = BOOSTER_TITLE.search(text)
        if not match or self._pending_booster is None:
            return
        pending = self._take_pending_booster()
        try:
            await self._promote_booster(pending, float(match.group(1)))
        except Exception:
            self.handler_errors += 1
            self._logger.exception("Error promoting booster from title %r", text)

    # ══════════════════════════════════════════════════════════
    #  Chat relays
    # ══════════════════════════════════════════════════════════

    async def _handle_lobby_chat(self, match: re.Match[str], now: datetime) -> bool:
        prestige, level, guild, rank, player, crown, content = match.groups()
        lobby = self._lobby.current_lobby if self._lobby else None

        if self._store is not None:
            changed = self._store.update_player(PlayerRecord(
                name=player + crown if crown else player,
                prestige=prestige,
                level=int(level),
                guild=guild,
                rank=rank,
                lobby=lobby,
                last_seen=now,
            ))
            await self._store.save()
            if changed and self._player_list is not None:
                self._spawn(self._refresh_board_safely(now))

        if self._history is not None:
            self._history.update_player(
                player, clan_tag=guild, prestige=prestige, level=int(level), lobby=lobby, now=now,
            )
            self._history.increment_message_count(player)

        info = f"[{prestige}-{level}] "
        if guild:
            info += f"[{guild}] "
        if rank:
            info += f"[{rank}] "
        info += player + (crown or "")
        embed = discord.Embed(description=f"**{info}:** {content}", color=0x7289DA)
        await self._announcer.post(self._channels.lobby, embed)
        return True

    async def _handle_guild_chat(self, match: re.Match[str], now: datetime) -> bool:
        role, player, content = match.groups()
        embed = discord.Embed(description=f"**[{role}] {player}:** {content}", color=0x7289DA)
        await self._announcer.post(self._channels.guild_chat, embed)
        return True

    async def _handle_guild_kill(self, match: re.Match[str], now: datetime) -> bool:
        killer_level, killer, victim_level, victim = match.groups()
        embed = discord.Embed(title="Guild Kill", color=0xFF0000)
        embed.add_field(name="Killer", value=f"{killer} (Lvl {killer_level})", inline=True)
        embed.add_field(name="Victim", value=f"{victim} (Lvl {victim_level})", inline=True)
        embed.add_field(name="Time", value=relative_time(now), inline=True)
        await self._announcer.post(self._channels.guild_kills, embed)
        return True

    async def _handle_prestige(self, match: re.Match[str], now: datetime) -> bool:
        player, prestige = match.groups()
        embed = discord.Embed(
            title="🏆 PRESTIGE!",
            description=f"{player} unlocked prestige {prestige}, gg!",
            color=0xFFD700,
        )
        await self._announcer.post(self._channels.prestige_alerts, embed)
        return True

    async def _handle_verification(self, match: re.Match[str], now: datetime) -> bool:
        player, code = match.groups()
        self._logger.info("Received verification code %s from player %s", code, player)
        if self._commands is not None:
            self._spawn(self._consume_code_safely(player, code, now))
        return True

    async def _consume_code_safely(self, player: str, code: str, now: datetime) -> None:
        try:
            await self._commands.consume_verification_code(player, code, now=now)
        except Exception:
            self.handler_errors += 1
            self._logger.exception("Error redeeming verification code from %s", player)

    async def _refresh_board_safely(self, now: datetime) -> None:
        try:
            await self._player_list.refresh(now)
        except Exception:
            self.handler_errors += 1
            self._logger.exception("Error refreshing player list")

    def _spawn(self, coro) -> asyncio.Task:
        """Run Discord-bound work off the dispatch path."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle_lobby_change(self, match: re.Match[str], now: datetime) -> bool:
        if self._lobby is not None:
            await self._lobby.handle_new_lobby(match.group(1))
        return True

    # ══════════════════════════════════════════════════════════
    #  Boosters
    # ══════════════════════════════════════════════════════════

    async def _handle_booster_activate(self, match: re.Match[str], now: datetime) -> bool:
        player, booster_type = match.groups()
        # Last write wins: an unresolved activation is discarded, not promoted
        self._clear_pending_booster()

        pending = PendingBooster(player=player.strip(), type=booster_type.strip(), created_at=now)
        loop = asyncio.get_running_loop()
        pending.timer = loop.call_later(
            self._boosters_config.pending_ttl_seconds, self._on_pending_booster_timeout, pending,
        )
        self._pending_booster = pending
        return True

    def _on_pending_booster_timeout(self, pending: PendingBooster) -> None:
        if self._pending_booster is not pending:
            return
        self._take_pending_booster()
        self._spawn(self._promote_booster_safely(pending, self._boosters_config.default_multiplier))

    def _take_pending_booster(self) -> PendingBooster:
        pending = self._pending_booster
        self._pending_booster = None
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        return pending

    def _clear_pending_booster(self) -> None:
        if self._pending_booster is not None:
            self._logger.debug(
                "Discarding unresolved booster from %s (%s)",
                self._pending_booster.player, self._pending_booster.type,
            )
            self._take_pending_booster()

    @property
    def pending_booster(self) -> PendingBooster | None:
        return self._pending_booster

    async def _promote_booster_safely(self, pending: PendingBooster, multiplier: float) -> None:
        try:
            await self._promote_booster(pending, multiplier)
        except Exception:
            self.handler_errors += 1
            self._logger.exception("Error promoting booster for %s", pending.player)

    async def _promote_booster(
        self, pending: PendingBooster, multiplier: float, now: datetime | None = None,
    ) -> None:
        now = now or now_utc()
        btype = pending.type.lower()
        final_multiplier = None if btype in self._no_multiplier else multiplier

        self._boosters.add(
            btype, pending.player, final_multiplier or self._boosters_config.default_multiplier, now=now,
        )

        expiry = now + timedelta(minutes=self._boosters_config.duration_minutes)
        embed = discord.Embed(title="🚀 Booster Activated", color=0x00FF00)
        embed.add_field(name="Player", value=pending.player, inline=True)
        embed.add_field(name="Type", value=pending.type.upper(), inline=True)
        if final_multiplier:
            embed.add_field(name="Multiplier", value=f"{final_multiplier}x", inline=True)
        embed.add_field(name="Expires", value=time_and_countdown(expiry), inline=True)

        content = None
        if self._should_ping_booster(btype, now):
            content = f"<@&{self._roles.boosters}>"

        await self._announcer.post(self._channels.boosters, embed, content=content)
        self._logger.info(
            "Booster activated: %s %s by %s", btype, f"{final_multiplier}x" if final_multiplier else "", pending.player,
        )

    def _should_ping_booster(self, btype: str, now: datetime) -> bool:
        if btype not in self._ping_types or not self._roles.boosters:
            return False
        cooldown = timedelta(seconds=self._boosters_config.ping_cooldown_seconds)
        if self._last_booster_ping is not None and now - self._last_booster_ping < cooldown:
            self._logger.info(
                "Skipping booster ping due to cooldown (%ds elapsed)",
                (now - self._last_booster_ping).total_seconds(),
            )
            return False
        self._last_booster_ping = now
        return True

    async def _handle_booster_expire(self, match: re.Match[str], now: datetime) -> bool:
        player, multiplier, booster_type = match.groups()
        removed = self._boosters.remove(booster_type.lower(), player)
        if not removed:
            self._logger.debug("Expiry for untracked %s booster by %s", booster_type, player)

        embed = discord.Embed(title="⌛ Booster Expired", color=0xFF0000)
        embed.add_field(name="Player", value=player.strip(), inline=True)
        embed.add_field(name="Type", value=booster_type.upper(), inline=True)
        if multiplier:
            embed.add_field(name="Multiplier", value=f"{multiplier}x", inline=True)
        embed.add_field(name="Expired", value=relative_time(now), inline=True)
        await self._announcer.post(self._channels.boosters, embed)
        return True

    # ══════════════════════════════════════════════════════════
    #  Events
    # ══════════════════════════════════════════════════════════

    def _is_duplicate_event(self, key: str, now: datetime) -> bool:
        seen = self._active_events.get(key)
        window = timedelta(seconds=self._events_config.dedup_window_seconds)
        if seen is not None and now - seen < window:
            return True
        self._active_events[key] = now
        return False

    def sweep_events(self, now: datetime | None = None) -> int:
        """Forget de-duplication entries older than the retention period."""
        cutoff = (now or now_utc()) - timedelta(seconds=self._events_config.dedup_retention_seconds)
        stale = [key for key, seen in self._active_events.items() if seen < cutoff]
        for key in stale:
            del self._active_events[key]
        return len(stale)

    async def _send_event_notice(
        self,
        event_type: str,
        name: str,
        status: str,
        now: datetime,
        when: datetime | None = None,
        ping: bool = False,
    ) -> bool:
        key = f"{event_type}-{name}-{status}"
        if self._is_duplicate_event(key, now):
            self._logger.debug("Suppressed duplicate event %s", key)
            return True

        embed = discord.Embed(
            description=(
                f"{EVENT_EMOJI[event_type]} {event_type} EVENT: {name} ({status}) "
                f"{status_emoji(status)} {relative_time(when or now)}"
            ),
            color=EVENT_COLOR[event_type],
        )
        content = f"<@&{self._roles.events}>" if ping and self._roles.events else None
        await self._announcer.post(self._channels.events, embed, content=content)
        self._logger.info("Event detected: %s - %s (%s)", event_type, name, status)
        return True

    def is_major_event(self, name: str) -> bool:
        upper = name.upper()
        return "2X" in upper or upper in self._major_names

    async def _handle_event_ended(self, match: re.Match[str], now: datetime) -> bool:
        name = match.group(1).strip()
        event_type = MAJOR if self.is_major_event(name) else MINOR
        return await self._send_event_notice(event_type, name, "ended", now)

    async def _handle_major_starting(self, match: re.Match[str], now: datetime) -> bool:
        name, minutes = match.group(1).strip(), int(match.group(2))
        if minutes != self._events_config.ping_lead_minutes:
            return False
        return await self._send_event_notice(
            MAJOR, name, f"starting in {minutes}m", now,
            when=now + timedelta(minutes=minutes), ping=True,
        )

    async def _handle_major_starting_now(self, match: re.Match[str], now: datetime) -> bool:
        return await self._send_event_notice(MAJOR, match.group(1).strip(), "starting now", now)

    def _minor_handler(
        self, name: str, status: str,
    ) -> Callable[[re.Match[str], datetime], Awaitable[bool]]:
        async def handler(match: re.Match[str], now: datetime) -> bool:
            return await self._send_event_notice(MINOR, name, status, now)
        return handler

    # ══════════════════════════════════════════════════════════
    #  /events reply assembly
    # ══════════════════════════════════════════════════════════

    async def _handle_events_reply(self, match: re.Match[str], now: datetime) -> bool:
        slot, name, countdown = match.groups()
        delta = parse_countdown(countdown) or timedelta(0)

        reply = self._events_reply
        if reply is None:
            reply = PendingEventsReply(created_at=now)
            loop = asyncio.get_running_loop()
            reply.timer = loop.call_later(
                self._events_config.events_reply_window_seconds, self._on_events_reply_timeout, reply,
            )
            self._events_reply = reply

        entry = (name.strip(), now + delta)
        if slot == "Major":
            reply.major = entry
        else:
            reply.minor = entry

        if reply.complete:
            self._take_events_reply()
            await self._send_events_reply(reply)
        return True

    def _on_events_reply_timeout(self, reply: PendingEventsReply) -> None:
        if self._events_reply is not reply:
            return
        self._take_events_reply()
        self._spawn(self._send_events_reply_safely(reply))

    def _take_events_reply(self) -> PendingEventsReply | None:
        reply = self._events_reply
        self._events_reply = None
        if reply is not None and reply.timer is not None:
            reply.timer.cancel()
            reply.timer = None
        return reply

    async def _send_events_reply_safely(self, reply: PendingEventsReply) -> None:
        try:
            await self._send_events_reply(reply)
        except Exception:
            self.handler_errors += 1
            self._logger.exception("Error sending /events reply")

    async def _send_events_reply(self, reply: PendingEventsReply) -> None:
        embed = discord.Embed(title="📅 Upcoming Events", color=0x00FF00)
        if reply.major is not None:
            name, when = reply.major
            embed.add_field(name="Next Major Event", value=f"{name}\n{time_and_countdown(when)}", inline=False)
        if reply.minor is not None:
            name, when = reply.minor
            embed.add_field(name="Next Minor Event", value=f"{name}\n{time_and_countdown(when)}", inline=False)
        await self._announcer.post(self._channels.bot_commands, embed)
        self._logger.info("Sent events command response to Discord")

    def stop(self) -> None:
        """Cancel outstanding correlation timers and background work."""
        if self._pending_booster is not None:
            self._take_pending_booster()
        self._take_events_reply()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
