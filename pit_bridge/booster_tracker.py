"""Booster tracker — registry of active timed boosts per category.

At most one live booster per category. A new activation while one is live
is rejected rather than overwriting it; records leave the registry through
an explicit expiry line or the periodic sweep.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .timestamps import relative_time
from .utils import now_utc, parse_timestamp, read_json, to_iso, write_json_atomic

if TYPE_CHECKING:
    from .config import BoostersConfig


@dataclass
class Booster:
    """One active booster."""

    type: str
    player: str
    multiplier: float | None
    start_time: datetime
    expiry_time: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expiry_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "player": self.player,
            "multiplier": self.multiplier,
            "startTime": to_iso(self.start_time),
            "expiryTime": to_iso(self.expiry_time),
        }


@dataclass
class ActiveBooster:
    """Display view of a live booster."""

    type: str
    display_type: str
    player: str
    multiplier: float | None
    expiry_time: datetime
    time_remaining: str


@dataclass
class BoosterStates:
    active: list[ActiveBooster]
    inactive: list[str]


def format_booster_type(booster_type: str) -> str:
    """``mining`` -> ``Mining Boost``."""
    t = booster_type.strip().lower()
    return f"{t[:1].upper()}{t[1:]} Boost"


def normalize_booster_type(booster_type: str) -> str:
    return booster_type.strip().lower()


class BoosterTracker:
    """Owns the booster registry and its on-disk state file."""

    def __init__(self, config: BoostersConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("pitbridge.boosters")
        self._types: list[str] = [normalize_booster_type(t) for t in config.types]
        self._no_multiplier: set[str] = {normalize_booster_type(t) for t in config.no_multiplier_types}
        self._duration = timedelta(minutes=config.duration_minutes)
        # category -> Booster
        self._boosters: dict[str, Booster] = {}

    @property
    def booster_types(self) -> list[str]:
        return list(self._types)

    def get(self, booster_type: str, now: datetime | None = None) -> Booster | None:
        """Return the live booster for a category, if any."""
        booster = self._boosters.get(normalize_booster_type(booster_type))
        if booster and booster.is_live(now or now_utc()):
            return booster
        return None

    def active_count(self, now: datetime | None = None) -> int:
        now = now or now_utc()
        return sum(1 for b in self._boosters.values() if b.is_live(now))

    def _is_valid_multiplier(self, multiplier: float | None) -> bool:
        if multiplier is None:
            return False
        return any(math.isclose(multiplier, v) for v in self._config.valid_multipliers)

    # ══════════════════════════════════════════════════════════
    #  Mutation
    # ══════════════════════════════════════════════════════════

    def add(
        self,
        booster_type: str,
        player: str,
        multiplier: float | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Register a booster. Returns False for unknown types or a live duplicate."""
        btype = normalize_booster_type(booster_type)
        if btype not in self._types:
            self._logger.warning("Invalid booster type: %s", booster_type)
            return False

        if btype in self._no_multiplier:
            multiplier = None
        elif not self._is_valid_multiplier(multiplier):
            self._logger.warning(
                "Invalid multiplier %s for %s, using default %.1fx",
                multiplier, btype, self._config.default_multiplier,
            )
            multiplier = self._config.default_multiplier

        now = now or now_utc()
        existing = self._boosters.get(btype)
        if existing and existing.is_live(now):
            self._logger.warning("Booster of type %s is already active (by %s)", btype, existing.player)
            return False

        self._boosters[btype] = Booster(
            type=btype,
            player=player.strip(),
            multiplier=multiplier,
            start_time=now,
            expiry_time=now + self._duration,
        )
        self._logger.info(
            "Booster added: %s%s by %s",
            btype, f" ({multiplier}x)" if multiplier else "", player.strip(),
        )
        return True

    def remove(self, booster_type: str, player: str) -> bool:
        """Remove a booster. The player must match exactly (after trimming)."""
        btype = normalize_booster_type(booster_type)
        booster = self._boosters.get(btype)
        if booster is None:
            self._logger.warning("No active booster found of type: %s", btype)
            return False

        if booster.player != player.strip():
            self._logger.warning(
                "Player mismatch for booster removal: %s vs %s", player.strip(), booster.player,
            )
            return False

        del self._boosters[btype]
        self._logger.info("Booster removed: %s by %s", btype, booster.player)
        return True

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every booster whose expiry time has passed."""
        now = now or now_utc()
        expired = [t for t, b in self._boosters.items() if b.expiry_time <= now]
        for btype in expired:
            booster = self._boosters.pop(btype)
            self._logger.info("Booster expired: %s by %s", btype, booster.player)
        if expired:
            self._logger.info("Cleaned up %d expired booster(s)", len(expired))
        return len(expired)

    def get_states(self, now: datetime | None = None) -> BoosterStates:
        """Sweep, then split the category list into active and inactive."""
        now = now or now_utc()
        self.sweep_expired(now)

        active: list[ActiveBooster] = []
        inactive: list[str] = []
        for btype in self._types:
            booster = self._boosters.get(btype)
            if booster and booster.is_live(now):
                active.append(ActiveBooster(
                    type=btype,
                    display_type=format_booster_type(btype),
                    player=booster.player,
                    multiplier=booster.multiplier,
                    expiry_time=booster.expiry_time,
                    time_remaining=relative_time(booster.expiry_time),
                ))
            else:
                inactive.append(format_booster_type(btype))
        return BoosterStates(active=active, inactive=inactive)

    # ══════════════════════════════════════════════════════════
    #  Persistence
    # ══════════════════════════════════════════════════════════

    def _load_sync(self) -> int:
        raw = read_json(self._config.state_path)
        if not raw:
            return 0
        if not isinstance(raw, dict):
            raise ValueError("booster state must be a JSON object")

        loaded = 0
        for btype, data in raw.items():
            if not isinstance(data, dict):
                continue
            expiry = parse_timestamp(data.get("expiryTime"))
            if expiry is None:
                continue
            start = parse_timestamp(data.get("startTime")) or (expiry - self._duration)
            self._boosters[btype] = Booster(
                type=btype,
                player=str(data.get("player", "")),
                multiplier=data.get("multiplier"),
                start_time=start,
                expiry_time=expiry,
            )
            loaded += 1
        return loaded

    async def load_state(self) -> int:
        """Restore the registry written by the previous process."""
        loop = asyncio.get_running_loop()
        try:
            loaded = await loop.run_in_executor(None, self._load_sync)
        except (OSError, ValueError) as exc:
            self._logger.error("Error loading booster state: %s", exc)
            return 0
        if loaded:
            self._logger.info("Loaded %d booster(s) from %s", loaded, self._config.state_path)
        return loaded

    async def save_state(self) -> None:
        data = {btype: b.to_dict() for btype, b in self._boosters.items()}
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, write_json_atomic, self._config.state_path, data)
        except OSError as exc:
            self._logger.error("Error saving booster state: %s", exc)
