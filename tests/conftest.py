"""Shared test fixtures for pit-bridge."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from pit_bridge.announcer import Announcer
from pit_bridge.booster_tracker import BoosterTracker
from pit_bridge.chat_parser import ChatParser
from pit_bridge.command_bridge import CommandBridge
from pit_bridge.config import BridgeConfig
from pit_bridge.lobby_monitor import LobbyMonitor
from pit_bridge.player_history import PlayerHistory
from pit_bridge.player_list import PlayerListBoard
from pit_bridge.player_store import PlayerDataStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Minimal config dict matching BridgeConfig schema ────────

def make_config_dict(tmp_dir: Path | str = "data", **overrides) -> dict:
    """Build a valid config dict with short timings and per-test state paths."""
    tmp_dir = Path(tmp_dir)
    base = {
        "discord": {
            "token": "test-token",
            "guild_id": 1000,
            "channels": {
                "boosters": 101,
                "events": 102,
                "lobby": 103,
                "bot_commands": 104,
                "prestige_alerts": 105,
                "guild_chat": 106,
                "guild_kills": 107,
                "private_messenger": 108,
                "player_list": 109,
            },
            "roles": {"events": 201, "boosters": 202, "verified": 203, "catchpa": 204},
        },
        "minecraft": {
            "username": "Wadmol",
            "reconnect_state_path": str(tmp_dir / "reconnect.json"),
        },
        "timings": {
            "initial_play_delay": 0.01,
            "play_command_interval": 30,
            "player_list_delay": 0.01,
            "status_debounce": 5,
            "verification_code_ttl": 300,
            "command_cooldown": 5,
            "max_reconnect_attempts": 3,
            "reconnect_backoff_base": 2,
            "reconnect_backoff_max": 60,
        },
        "boosters": {
            "state_path": str(tmp_dir / "boosters.json"),
            "pending_ttl_seconds": 0.05,
        },
        "events": {"events_reply_window_seconds": 0.05},
        "players": {
            "data_path": str(tmp_dir / "players.json"),
            "history_path": str(tmp_dir / "player_history.json"),
        },
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict(tmp_path)


@pytest.fixture
def sample_config(sample_config_dict: dict) -> BridgeConfig:
    """Return a parsed BridgeConfig."""
    return BridgeConfig(**sample_config_dict)


@pytest.fixture
def mock_discord() -> MagicMock:
    """Return a mock BridgeBot with async channel and guild helpers."""
    client = MagicMock()
    client.send_to_channel = AsyncMock(return_value=MagicMock(id=5555))
    client.edit_message = AsyncMock()
    client.fetch_member = AsyncMock(return_value=None)
    client.fetch_role = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_game() -> MagicMock:
    """Return a mock GameClient that is connected and in an empty lobby."""
    game = MagicMock()
    game.send_chat = AsyncMock()
    game.players = set()
    game.username = "Wadmol"
    game.connected = True
    return game


@pytest.fixture
def mock_announcer() -> MagicMock:
    """Return a mock Announcer recording posts."""
    announcer = MagicMock()
    announcer.post = AsyncMock()
    return announcer


# ── Component fixtures ──────────────────────────────────────

@pytest.fixture
def boosters(sample_config: BridgeConfig) -> BoosterTracker:
    return BoosterTracker(sample_config.boosters, logging.getLogger("test"))


@pytest.fixture
def player_store(sample_config: BridgeConfig) -> PlayerDataStore:
    return PlayerDataStore(sample_config.players.data_path, logging.getLogger("test"))


@pytest.fixture
def history(sample_config: BridgeConfig) -> PlayerHistory:
    return PlayerHistory(sample_config.players, logging.getLogger("test"))


@pytest.fixture
def announcer(mock_discord: MagicMock) -> Announcer:
    return Announcer(mock_discord, logging.getLogger("test"))


@pytest.fixture
def command_bridge(sample_config: BridgeConfig, mock_game: MagicMock, mock_discord: MagicMock) -> CommandBridge:
    return CommandBridge(sample_config, mock_game, mock_discord, logging.getLogger("test"))


@pytest.fixture
def lobby_monitor(
    sample_config: BridgeConfig,
    mock_game: MagicMock,
    mock_announcer: MagicMock,
    history: PlayerHistory,
) -> LobbyMonitor:
    exits = MagicMock()
    monitor = LobbyMonitor(
        config=sample_config,
        game=mock_game,
        announcer=mock_announcer,
        history=history,
        request_exit=exits,
        logger=logging.getLogger("test"),
        state_path=sample_config.minecraft.reconnect_state_path,
    )
    monitor.exits = exits
    return monitor


@pytest.fixture
def player_list(
    sample_config: BridgeConfig, player_store: PlayerDataStore, mock_discord: MagicMock,
) -> PlayerListBoard:
    return PlayerListBoard(sample_config, player_store, mock_discord, logging.getLogger("test"))


@pytest.fixture
def chat_parser(
    sample_config: BridgeConfig,
    mock_announcer: MagicMock,
    boosters: BoosterTracker,
    player_store: PlayerDataStore,
    history: PlayerHistory,
    lobby_monitor: LobbyMonitor,
    command_bridge: CommandBridge,
    player_list: PlayerListBoard,
) -> ChatParser:
    return ChatParser(
        config=sample_config,
        announcer=mock_announcer,
        boosters=boosters,
        player_store=player_store,
        history=history,
        lobby_monitor=lobby_monitor,
        command_bridge=command_bridge,
        player_list=player_list,
        logger=logging.getLogger("test"),
    )


async def drain(component) -> None:
    """Wait for the background tasks a component has spawned."""
    while component._tasks:
        await asyncio.gather(*list(component._tasks), return_exceptions=True)


def posted(mock_announcer: MagicMock) -> list[tuple[int, list, str | None]]:
    """Flatten ``announcer.post`` calls into ``(channel, embeds, content)`` tuples."""
    out = []
    for call in mock_announcer.post.call_args_list:
        args, kwargs = call
        channel = args[0] if args else kwargs.get("channel_id")
        embeds = args[1] if len(args) > 1 else kwargs.get("embeds")
        if embeds is not None and not isinstance(embeds, list):
            embeds = [embeds]
        out.append((channel, embeds or [], kwargs.get("content")))
    return out
