"""Player history — sightings, message counts and time spent in the same lobby.

Keyed by exact player name. Every observation appends a sighting; sightings
older than the retention window are dropped on each update and players not
seen within the window are removed by ``cleanup_old_data``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import discord

from .timestamps import format_duration, relative_time
from .utils import now_utc, parse_timestamp, read_json, to_iso, write_json_atomic

if TYPE_CHECKING:
    from .config import PlayersConfig

MAX_EMBED_FIELDS = 25


@dataclass
class HistoryRecord:
    """Everything remembered about one player."""

    name: str
    first_seen: datetime
    last_seen: datetime
    clan_tag: str | None = None
    prestige: str | None = None
    level: int | None = None
    last_lobby: str | None = None
    message_count: int = 0
    time_together: float = 0.0
    sightings: list[datetime] = field(default_factory=list)
    total: int = 0
    last_7_days: int = 0
    last_30_days: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "firstSeen": to_iso(self.first_seen),
            "lastSeen": to_iso(self.last_seen),
            "clanTag": self.clan_tag,
            "prestige": self.prestige,
            "level": self.level,
            "lastLobby": self.last_lobby,
            "messageCount": self.message_count,
            "timeSpentTogether": self.time_together,
            "sightings": [to_iso(ts) for ts in self.sightings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryRecord:
        last_seen = parse_timestamp(data.get("lastSeen")) or now_utc()
        sightings = [
            ts for ts in (parse_timestamp(s) for s in data.get("sightings", [])) if ts
        ]
        return cls(
            name=str(data["name"]),
            first_seen=parse_timestamp(data.get("firstSeen")) or last_seen,
            last_seen=last_seen,
            clan_tag=data.get("clanTag"),
            prestige=data.get("prestige"),
            level=data.get("level"),
            last_lobby=data.get("lastLobby"),
            message_count=int(data.get("messageCount", 0)),
            time_together=float(data.get("timeSpentTogether", 0.0)),
            sightings=sightings,
        )


class PlayerHistory:
    """Aggregates player sightings for the /players board."""

    def __init__(self, config: PlayersConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("pitbridge.history")
        self._retention = timedelta(days=config.history_retention_days)
        self._players: dict[str, HistoryRecord] = {}

    def __len__(self) -> int:
        return len(self._players)

    # ══════════════════════════════════════════════════════════
    #  Updates
    # ══════════════════════════════════════════════════════════

    def update_player(
        self,
        name: str,
        clan_tag: str | None = None,
        prestige: str | None = None,
        level: int | None = None,
        lobby: str | None = None,
        now: datetime | None = None,
    ) -> HistoryRecord | None:
        """Record a sighting. Only the provided attributes are overwritten."""
        if not name:
            self._logger.warning("Attempted to update player history without a name")
            return None

        now = now or now_utc()
        record = self._players.get(name)
        if record is None:
            record = HistoryRecord(name=name, first_seen=now, last_seen=now)
            self._players[name] = record

        if clan_tag:
            record.clan_tag = clan_tag
        if prestige:
            record.prestige = prestige
        if level:
            record.level = level
        if lobby:
            record.last_lobby = lobby

        record.last_seen = now
        record.sightings.append(now)
        self._update_sighting_counters(record, now)
        return record

    def increment_message_count(self, name: str) -> None:
        record = self._players.get(name)
        if record:
            record.message_count += 1

    def add_time_together(self, name: str, seconds: float) -> None:
        record = self._players.get(name)
        if record and seconds > 0:
            record.time_together += seconds

    def _update_sighting_counters(self, record: HistoryRecord, now: datetime) -> None:
        cutoff_30 = now - self._retention
        cutoff_7 = now - timedelta(days=7)
        record.sightings = [ts for ts in record.sightings if ts >= cutoff_30]
        record.total = len(record.sightings)
        record.last_7_days = sum(1 for ts in record.sightings if ts >= cutoff_7)
        record.last_30_days = len(record.sightings)

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def get_player(self, name: str) -> HistoryRecord | None:
        return self._players.get(name)

    def get_all_players(self) -> list[HistoryRecord]:
        """All players, most recently seen first."""
        return sorted(self._players.values(), key=lambda r: r.last_seen, reverse=True)

    def build_embed(self) -> discord.Embed:
        embed = discord.Embed(
            title="🎮 Player List",
            color=0x5865F2,
            timestamp=now_utc(),
        )
        for record in self.get_all_players()[:MAX_EMBED_FIELDS]:
            clan = f"[{record.clan_tag}] " if record.clan_tag else ""
            prestige = (
                f"[{record.prestige}-{record.level}] "
                if record.prestige and record.level else ""
            )
            value = " • ".join([
                f"Last Seen: {relative_time(record.last_seen)}",
                f"Lobby: {record.last_lobby or 'Unknown'}",
                f"Sightings: 7d: {record.last_7_days} | 30d: {record.last_30_days}",
                f"Messages: {record.message_count}",
                f"Time Together: {format_duration(record.time_together)}",
            ])
            embed.add_field(name=f"{clan}{prestige}{record.name}", value=value, inline=False)
        embed.set_footer(text=f"Total Players Tracked: {len(self._players)}")
        return embed

    # ══════════════════════════════════════════════════════════
    #  Maintenance
    # ══════════════════════════════════════════════════════════

    def cleanup_old_data(self, now: datetime | None = None) -> int:
        """Drop players unseen for longer than the retention window."""
        cutoff = (now or now_utc()) - self._retention
        stale = [name for name, r in self._players.items() if r.last_seen < cutoff]
        for name in stale:
            del self._players[name]
        if stale:
            self._logger.info("Cleaned up %d inactive player(s)", len(stale))
        return len(stale)

    async def load(self) -> int:
        if not self._config.history_path:
            return 0
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, read_json, self._config.history_path)
        except (OSError, ValueError) as exc:
            self._logger.error("Could not read player history: %s", exc)
            return 0
        for item in raw or []:
            try:
                record = HistoryRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                self._logger.warning("Skipping malformed history entry: %s", exc)
                continue
            self._update_sighting_counters(record, now_utc())
            self._players[record.name] = record
        return len(self._players)

    async def save(self) -> None:
        if not self._config.history_path:
            return
        data = [r.to_dict() for r in self._players.values()]
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, write_json_atomic, self._config.history_path, data)
        except OSError as exc:
            self._logger.error("Could not save player history: %s", exc)
