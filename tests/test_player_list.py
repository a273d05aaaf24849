"""Tests for PlayerListBoard."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from pit_bridge.player_list import PlayerListBoard, format_player_line
from pit_bridge.player_store import PlayerDataStore, PlayerRecord
from tests.conftest import T0


def _seed(store: PlayerDataStore) -> None:
    store.update_player(PlayerRecord("Online", "XV", 120, "ABC", "MVP+", "PIT1", T0 - timedelta(seconds=60)))
    store.update_player(PlayerRecord("Maybe", "I", 10, None, None, "PIT1", T0 - timedelta(minutes=10)))
    store.update_player(PlayerRecord("Gone", "I", 10, None, None, "PIT1", T0 - timedelta(hours=2)))


class TestFormatPlayerLine:
    def test_full(self):
        record = PlayerRecord("Steve", "XV", 120, "ABC", "MVP+", "PIT1", T0)
        line = format_player_line(record)
        assert line == f"[XV-120] [ABC] [MVP+] Steve • <t:{int(T0.timestamp())}:R>"

    def test_minimal(self):
        record = PlayerRecord("Steve", last_seen=T0)
        assert format_player_line(record).startswith("Steve • ")


class TestBuildEmbeds:
    def test_online_and_possibly_online(self, player_list: PlayerListBoard, player_store: PlayerDataStore):
        _seed(player_store)
        online, possibly = player_list.build_embeds(T0)
        assert online.title == "🎮 Online Players"
        assert "Online" in online.description
        assert "Maybe" not in online.description
        assert online.footer.text == "Total Online Players: 1"
        assert "Maybe" in possibly.description
        assert "Gone" not in possibly.description
        assert possibly.footer.text == "Total Possibly Online Players: 1"

    def test_empty(self, player_list: PlayerListBoard):
        online, possibly = player_list.build_embeds(T0)
        assert online.description == "No players online"
        assert possibly.description == "No possibly online players"


class TestRefresh:
    async def test_first_refresh_sends_new_message(self, player_list: PlayerListBoard, mock_discord: MagicMock):
        assert await player_list.refresh(T0) is True
        mock_discord.send_to_channel.assert_awaited_once()
        assert mock_discord.send_to_channel.call_args.args[0] == 109

    async def test_second_refresh_edits(self, player_list: PlayerListBoard, mock_discord: MagicMock):
        await player_list.refresh(T0)
        assert await player_list.refresh(T0 + timedelta(seconds=11)) is True
        mock_discord.edit_message.assert_awaited_once()
        assert mock_discord.edit_message.call_args.args[:2] == (109, 5555)

    async def test_rate_limited(self, player_list: PlayerListBoard, mock_discord: MagicMock):
        await player_list.refresh(T0)
        assert await player_list.refresh(T0 + timedelta(seconds=3)) is False
        mock_discord.edit_message.assert_not_awaited()

    async def test_failed_edit_falls_back_to_send(self, player_list: PlayerListBoard, mock_discord: MagicMock):
        await player_list.refresh(T0)
        mock_discord.edit_message = AsyncMock(side_effect=RuntimeError("Unknown Message"))
        mock_discord.send_to_channel = AsyncMock(return_value=MagicMock(id=7777))
        assert await player_list.refresh(T0 + timedelta(seconds=20)) is True
        mock_discord.send_to_channel.assert_awaited_once()
        await player_list.refresh(T0 + timedelta(seconds=40))
        assert mock_discord.edit_message.call_args.args[:2] == (109, 7777)

    async def test_unconfigured_channel(self, sample_config, player_store, mock_discord):
        sample_config.discord.channels.player_list = 0
        board = PlayerListBoard(sample_config, player_store, mock_discord)
        assert await board.refresh(T0) is False
        mock_discord.send_to_channel.assert_not_awaited()
