"""Player board — one pinned-style message listing recently active players.

The board lives in the player-list channel as a single message carrying an
"online" and a "possibly online" embed, rebuilt from the player data store.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import discord

from .utils import now_utc

if TYPE_CHECKING:
    from .config import BridgeConfig
    from .player_store import PlayerDataStore, PlayerRecord


def format_player_line(player: PlayerRecord) -> str:
    parts = []
    if player.prestige and player.level:
        parts.append(f"[{player.prestige}-{player.level}]")
    if player.guild:
        parts.append(f"[{player.guild}]")
    if player.rank:
        parts.append(f"[{player.rank}]")
    parts.append(player.name)
    return f"{' '.join(parts)} • <t:{int(player.last_seen.timestamp())}:R>"


class PlayerListBoard:
    """Keeps the player-list message current, rate-limited."""

    def __init__(
        self,
        config: BridgeConfig,
        store: PlayerDataStore,
        discord_client: object | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._players_config = config.players
        self._store = store
        self._discord = discord_client
        self._logger = logger or logging.getLogger("pitbridge.player_list")

        self._channel_id = config.discord.channels.player_list
        self._message_id: int | None = None
        self._last_update: datetime | None = None

    def build_embeds(self, now: datetime | None = None) -> list[discord.Embed]:
        now = now or now_utc()
        online_cutoff = timedelta(seconds=self._players_config.online_threshold_seconds)
        possibly_cutoff = timedelta(seconds=self._players_config.possibly_online_threshold_seconds)

        online: list[PlayerRecord] = []
        possibly: list[PlayerRecord] = []
        for player in self._store.get_all_players():
            age = now - player.last_seen
            if age <= online_cutoff:
                online.append(player)
            elif age <= possibly_cutoff:
                possibly.append(player)

        online_embed = discord.Embed(
            title="🎮 Online Players",
            color=0x5865F2,
            description="\n".join(map(format_player_line, online)) or "No players online",
            timestamp=now,
        )
        online_embed.set_footer(text=f"Total Online Players: {len(online)}")

        possibly_embed = discord.Embed(
            title="🕒 Possibly Online Players",
            color=0xF1C40F,
            description="\n".join(map(format_player_line, possibly)) or "No possibly online players",
            timestamp=now,
        )
        possibly_embed.set_footer(text=f"Total Possibly Online Players: {len(possibly)}")
        return [online_embed, possibly_embed]

    async def refresh(self, now: datetime | None = None) -> bool:
        """Publish the board. Skipped when the last publish was under the interval ago."""
        if not self._discord or not self._channel_id:
            return False

        now = now or now_utc()
        interval = timedelta(seconds=self._players_config.list_update_interval_seconds)
        if self._last_update is not None and now - self._last_update < interval:
            self._logger.debug("Skipping player list update (rate limit)")
            return False
        self._last_update = now

        embeds = self.build_embeds(now)
        if self._message_id is not None:
            try:
                await self._discord.edit_message(self._channel_id, self._message_id, embeds=embeds)
                return True
            except Exception as exc:
                self._logger.warning("Player list edit failed, sending a new message: %s", exc)
                self._message_id = None

        try:
            message = await self._discord.send_to_channel(self._channel_id, embeds=embeds)
        except Exception as exc:
            self._logger.error("Error sending player list: %s", exc)
            return False
        if message is not None:
            self._message_id = message.id
        return True
