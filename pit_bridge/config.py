"""Configuration system for pit-bridge.

All Pydantic models are defined here with the defaults the bridge runs with
on harrys.gg. Ids and secrets are normally supplied through ``${VAR}``
expansion in the YAML file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Discord
# ═══════════════════════════════════════════════════════════════

class ChannelsConfig(BaseModel):
    """Discord channel ids. ``0`` means "not configured" and drops notices."""
    boosters: int = 0
    events: int = 0
    lobby: int = 0
    bot_commands: int = 0
    prestige_alerts: int = 0
    guild_chat: int = 0
    guild_kills: int = 0
    private_messenger: int = 0
    player_list: int = 0


class RolesConfig(BaseModel):
    events: int = 0
    boosters: int = 0
    verified: int = 0
    catchpa: int = 0


class DiscordConfig(BaseModel):
    token: str = ""
    guild_id: int = 0
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    roles: RolesConfig = Field(default_factory=RolesConfig)


# ═══════════════════════════════════════════════════════════════
#  Minecraft
# ═══════════════════════════════════════════════════════════════

class MinecraftConfig(BaseModel):
    relay_url: str = "ws://127.0.0.1:25580/relay"
    username: str = "Wadmol"
    host: str = "harrys.gg"
    play_command: str = "/play pit"
    toggle_bots_command: str = "/togglebots"
    keepalive_command: str = "/lobby"
    events_command: str = "/events"
    heartbeat_seconds: float = 20.0
    reconnect_state_path: str = "data/reconnect.json"


# ═══════════════════════════════════════════════════════════════
#  Timings
# ═══════════════════════════════════════════════════════════════

class TimingsConfig(BaseModel):
    initial_play_delay: float = 5.0
    play_command_interval: float = 30.0
    player_list_delay: float = 5.0
    player_scan_interval: float = 30.0
    status_debounce: float = 5.0
    verification_code_ttl: float = 300.0
    verification_cleanup_interval: float = 60.0
    command_cooldown: float = 5.0
    afk_prevention_interval: float = 600.0
    max_reconnect_attempts: int = 10
    reconnect_backoff_base: float = 2.0
    reconnect_backoff_max: float = 60.0


# ═══════════════════════════════════════════════════════════════
#  Boosters
# ═══════════════════════════════════════════════════════════════

class BoostersConfig(BaseModel):
    types: list[str] = Field(
        default=["xp", "coin", "bots", "overflow", "fishing", "mining", "farming"],
    )
    no_multiplier_types: list[str] = Field(default=["overflow"])
    valid_multipliers: list[float] = Field(default=[2.0, 2.2, 2.4, 2.6, 2.8, 3.0])
    default_multiplier: float = 2.0
    duration_minutes: float = 30.0
    ping_types: list[str] = Field(
        default=["bots", "mining", "farming", "fishing", "overflow"],
        description="Boost categories whose activation mentions the boosters role",
    )
    ping_cooldown_seconds: float = 300.0
    pending_ttl_seconds: float = 1.0
    sweep_interval_seconds: float = 60.0
    state_path: str = "data/boosters.json"


# ═══════════════════════════════════════════════════════════════
#  Events
# ═══════════════════════════════════════════════════════════════

class EventsConfig(BaseModel):
    dedup_window_seconds: float = 5.0
    dedup_retention_seconds: float = 300.0
    dedup_sweep_interval_seconds: float = 60.0
    events_reply_window_seconds: float = 0.5
    ping_lead_minutes: int = 3
    major_event_names: list[str] = Field(
        default=["GAMBLE", "BLOOD BATH", "RAGE PIT", "BEAST", "GLADIATOR"],
        description="'Ended' event names classified as major (anything with 2X is too)",
    )


# ═══════════════════════════════════════════════════════════════
#  Players
# ═══════════════════════════════════════════════════════════════

class PlayersConfig(BaseModel):
    data_path: str = "data/players.json"
    history_path: str = "data/player_history.json"
    history_retention_days: int = 30
    history_cleanup_interval_seconds: float = 3600.0
    online_threshold_seconds: float = 150.0
    possibly_online_threshold_seconds: float = 1200.0
    list_update_interval_seconds: float = 10.0


class MetricsConfig(BaseModel):
    enabled: bool = True
    port: int = 28290


# ═══════════════════════════════════════════════════════════════
#  Root config
# ═══════════════════════════════════════════════════════════════

class BridgeConfig(BaseModel):
    """Root configuration for the bridge."""
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    minecraft: MinecraftConfig = Field(default_factory=MinecraftConfig)
    timings: TimingsConfig = Field(default_factory=TimingsConfig)
    boosters: BoostersConfig = Field(default_factory=BoostersConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    players: PlayersConfig = Field(default_factory=PlayersConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> BridgeConfig:
    """Load and validate YAML config file into BridgeConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return BridgeConfig(**raw)
