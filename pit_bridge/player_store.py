"""Player data store — last-known attributes of players seen in lobby chat.

Records are matched by normalized name (the ``♚`` marker stripped). The
change detector only looks at the displayed attributes so a fresh
``last_seen`` alone never triggers a player-board refresh.

Follows the database pattern: blocking file I/O runs through
``run_in_executor`` so the event loop never stalls on disk.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .utils import now_utc, parse_timestamp, read_json, to_iso, write_json_atomic

CROWN = "♚"

_TRACKED_FIELDS = ("prestige", "level", "guild", "rank", "lobby")


def normalize_name(name: str) -> str:
    """Strip the crown marker and surrounding whitespace."""
    return name.replace(CROWN, "").strip()


@dataclass
class PlayerRecord:
    """A single player's last observed attributes."""

    name: str
    prestige: str | None = None
    level: int | None = None
    guild: str | None = None
    rank: str | None = None
    lobby: str | None = None
    last_seen: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "prestige": self.prestige,
            "level": self.level,
            "guild": self.guild,
            "rank": self.rank,
            "lobby": self.lobby,
            "lastSeen": to_iso(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlayerRecord:
        return cls(
            name=str(data["name"]),
            prestige=data.get("prestige"),
            level=data.get("level"),
            guild=data.get("guild"),
            rank=data.get("rank"),
            lobby=data.get("lobby"),
            last_seen=parse_timestamp(data.get("lastSeen")) or now_utc(),
        )


class PlayerDataStore:
    """Persisted key-value store of player records with change detection."""

    def __init__(self, path: str, logger: logging.Logger | None = None) -> None:
        self._path = path
        self._logger = logger or logging.getLogger("pitbridge.players")
        # normalized name -> record
        self._players: dict[str, PlayerRecord] = {}

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def get_player(self, name: str) -> PlayerRecord | None:
        return self._players.get(normalize_name(name))

    def get_all_players(self) -> list[PlayerRecord]:
        return list(self._players.values())

    def has_player_changed(self, record: PlayerRecord) -> bool:
        """True for unknown players or when a displayed attribute differs."""
        existing = self._players.get(normalize_name(record.name))
        if existing is None:
            return True
        return any(
            getattr(record, attr) != getattr(existing, attr) for attr in _TRACKED_FIELDS
        )

    # ══════════════════════════════════════════════════════════
    #  Mutation
    # ══════════════════════════════════════════════════════════

    def update_player(self, record: PlayerRecord) -> bool:
        """Merge ``record`` into the store. Returns the pre-merge change flag."""
        changed = self.has_player_changed(record)

        key = normalize_name(record.name)
        stored_name = f"{key} {CROWN}" if CROWN in record.name else key
        self._players[key] = replace(record, name=stored_name)
        return changed

    # ══════════════════════════════════════════════════════════
    #  Persistence
    # ══════════════════════════════════════════════════════════

    async def load(self) -> int:
        """Load records from disk. A missing or corrupt file yields an empty store."""
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, read_json, self._path)
        except (OSError, ValueError) as exc:
            self._logger.error("Could not read player data %s: %s", self._path, exc)
            return 0
        if not raw:
            return 0
        if not isinstance(raw, list):
            self._logger.error("Player data %s is not a list, ignoring", self._path)
            return 0

        for item in raw:
            try:
                record = PlayerRecord.from_dict(item)
            except (KeyError, TypeError) as exc:
                self._logger.warning("Skipping malformed player entry %r: %s", item, exc)
                continue
            self._players[normalize_name(record.name)] = record
        self._logger.info("Loaded %d player record(s)", len(self._players))
        return len(self._players)

    async def save(self) -> None:
        data = [record.to_dict() for record in self._players.values()]
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, write_json_atomic, self._path, data)
        except OSError as exc:
            self._logger.error("Could not save player data %s: %s", self._path, exc)
