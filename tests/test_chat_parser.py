"""Tests for ChatParser: classifier order, relays, boosters and events."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pit_bridge.booster_tracker import BoosterTracker
from pit_bridge.chat_parser import ChatParser
from pit_bridge.player_history import PlayerHistory
from pit_bridge.player_store import PlayerDataStore
from tests.conftest import T0, drain, posted

LOBBY_LINE = "[XV-120] [ABC] [MVP+] Steve: anyone want to duel?"


class TestClassifierOrder:
    def test_order(self, chat_parser: ChatParser):
        names = chat_parser.classifier_names
        assert names[0] == "lobby_chat"
        assert names.index("events_reply") < names.index("event_ended") < names.index("booster_activate")
        assert names[-1] == "lobby_change"

    async def test_lobby_chat_wins_over_quoted_booster(self, chat_parser: ChatParser):
        line = "[XV-120] Steve: WOAH! [120] Alex just activated a XP booster! GG!"
        assert await chat_parser.handle_message(line, now=T0) == "lobby_chat"
        assert chat_parser.pending_booster is None

    async def test_unmatched_line(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("You have 3 unread messages", now=T0) is None
        mock_announcer.post.assert_not_awaited()
        assert chat_parser.lines_processed == 1
        assert chat_parser.lines_handled == 0

    async def test_handler_error_isolated(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        mock_announcer.post = AsyncMock(side_effect=RuntimeError("discord down"))
        assert await chat_parser.handle_message("Guild > [Member] Steve: hi", now=T0) is None
        assert chat_parser.handler_errors == 1
        mock_announcer.post = AsyncMock()
        assert await chat_parser.handle_message("Guild > [Member] Steve: hi", now=T0) == "guild_chat"


class TestLobbyChat:
    async def test_updates_stores_and_relays(
        self,
        chat_parser: ChatParser,
        mock_announcer: MagicMock,
        mock_discord: MagicMock,
        player_store: PlayerDataStore,
        history: PlayerHistory,
    ):
        assert await chat_parser.handle_message(LOBBY_LINE, now=T0) == "lobby_chat"

        record = player_store.get_player("Steve")
        assert (record.prestige, record.level, record.guild, record.rank) == ("XV", 120, "ABC", "MVP+")
        assert history.get_player("Steve").message_count == 1
        await drain(chat_parser)
        mock_discord.send_to_channel.assert_awaited_once()  # player board

        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 103
        assert embeds[0].description == "**[XV-120] [ABC] [MVP+] Steve:** anyone want to duel?"

    async def test_minimal_line(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("[I-5] newbie: hello", now=T0) == "lobby_chat"
        [(_, embeds, _)] = posted(mock_announcer)
        assert embeds[0].description == "**[I-5] newbie:** hello"

    async def test_crowned_player(
        self, chat_parser: ChatParser, player_store: PlayerDataStore, mock_announcer: MagicMock,
    ):
        await chat_parser.handle_message("[XX-60] [VIP+] King ♚: bow", now=T0)
        record = player_store.get_player("King")
        assert record.rank == "VIP+"
        assert record.name == "King ♚"
        [(_, embeds, _)] = posted(mock_announcer)
        assert embeds[0].description == "**[XX-60] [VIP+] King ♚:** bow"

    async def test_slow_board_does_not_block_dispatch(
        self, chat_parser: ChatParser, boosters: BoosterTracker, mock_discord: MagicMock,
    ):
        async def slow_send(*args, **kwargs):
            await asyncio.sleep(0.2)
            return MagicMock(id=5555)

        mock_discord.send_to_channel = AsyncMock(side_effect=slow_send)
        await chat_parser.handle_message("WOAH! [120] Steve just activated a XP booster! GG!", now=T0)
        await chat_parser.handle_message("[XV-120] Alex: hi", now=T0)
        await chat_parser.handle_title("2.4x")
        assert boosters.get("xp").multiplier == 2.4
        await drain(chat_parser)
        mock_discord.send_to_channel.assert_awaited()

    async def test_unchanged_player_skips_board(self, chat_parser: ChatParser, mock_discord: MagicMock):
        await chat_parser.handle_message(LOBBY_LINE, now=T0)
        await drain(chat_parser)
        await chat_parser.handle_message(LOBBY_LINE, now=T0 + timedelta(minutes=1))
        await drain(chat_parser)
        assert mock_discord.send_to_channel.await_count == 1


class TestRelays:
    async def test_guild_chat(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("Guild > [Officer] Steve: gg", now=T0) == "guild_chat"
        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 106
        assert embeds[0].description == "**[Officer] Steve:** gg"

    async def test_guild_kill(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        line = "[GKILLS] [120] Steve Killed [80] Alex"
        assert await chat_parser.handle_message(line, now=T0) == "guild_kill"
        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 107
        assert embeds[0].fields[0].value == "Steve (Lvl 120)"
        assert embeds[0].fields[1].value == "Alex (Lvl 80)"

    async def test_prestige(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        line = "PRESTIGE! Steve unlocked prestige XVI, gg!"
        assert await chat_parser.handle_message(line, now=T0) == "prestige"
        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 105
        assert embeds[0].description == "Steve unlocked prestige XVI, gg!"

    async def test_verification_whisper(self, chat_parser: ChatParser, mock_game: MagicMock):
        assert await chat_parser.handle_message("Steve -> you: 123456", now=T0) == "verification"
        await drain(chat_parser)
        whisper = mock_game.send_chat.call_args.args[0]
        assert whisper.startswith("/msg Steve ❌ Invalid verification code")

    async def test_lobby_change(self, chat_parser: ChatParser, lobby_monitor):
        assert await chat_parser.handle_message("MOVING! Sending you to PIT12", now=T0) == "lobby_change"
        assert lobby_monitor.current_lobby == "PIT12"


class TestBoosters:
    async def test_title_supplies_multiplier(
        self, chat_parser: ChatParser, boosters: BoosterTracker, mock_announcer: MagicMock,
    ):
        await chat_parser.handle_message("WOAH! [120] Steve just activated a XP booster! GG!", now=T0)
        assert chat_parser.pending_booster is not None
        mock_announcer.post.assert_not_awaited()

        await chat_parser.handle_title("§a2.4x §7Experience")
        assert chat_parser.pending_booster is None
        assert boosters.get("xp").multiplier == 2.4

        [(channel, embeds, content)] = posted(mock_announcer)
        assert channel == 101
        assert embeds[0].title == "🚀 Booster Activated"
        assert [f.name for f in embeds[0].fields] == ["Player", "Type", "Multiplier", "Expires"]
        assert embeds[0].fields[2].value == "2.4x"
        assert content is None  # xp is not a ping type

    async def test_timeout_uses_default(
        self, chat_parser: ChatParser, boosters: BoosterTracker, mock_announcer: MagicMock,
    ):
        await chat_parser.handle_message("WOAH! [120] Steve activated a COIN booster! GG!", now=T0)
        await asyncio.sleep(0.15)
        assert chat_parser.pending_booster is None
        assert boosters.get("coin").multiplier == 2.0
        [(_, embeds, _)] = posted(mock_announcer)
        assert embeds[0].fields[2].value == "2.0x"

    async def test_overflow_has_no_multiplier_field(
        self, chat_parser: ChatParser, boosters: BoosterTracker, mock_announcer: MagicMock,
    ):
        await chat_parser.handle_message("WOAH! [120] Steve activated a overflow booster! GG!", now=T0)
        await chat_parser.handle_title("2.0x")
        assert boosters.get("overflow").multiplier is None
        [(_, embeds, content)] = posted(mock_announcer)
        assert "Multiplier" not in [f.name for f in embeds[0].fields]
        assert content == "<@&202>"

    async def test_new_activation_replaces_pending(self, chat_parser: ChatParser, boosters: BoosterTracker):
        await chat_parser.handle_message("WOAH! [120] Steve activated a XP booster! GG!", now=T0)
        await chat_parser.handle_message("WOAH! [120] Alex activated a COIN booster! GG!", now=T0)
        await chat_parser.handle_title("3.0x")
        assert boosters.get("xp") is None
        assert boosters.get("coin").player == "Alex"

    async def test_title_without_pending_ignored(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_title("2.4x")
        mock_announcer.post.assert_not_awaited()

    async def test_ping_cooldown(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("WOAH! [120] Steve activated a MINING booster! GG!", now=T0)
        await chat_parser.handle_title("2.0x")
        await chat_parser.handle_message("WOAH! [120] Alex activated a FISHING booster! GG!", now=T0)
        await chat_parser.handle_title("2.0x")
        contents = [content for _, _, content in posted(mock_announcer)]
        assert contents == ["<@&202>", None]

    async def test_expire(self, chat_parser: ChatParser, boosters: BoosterTracker, mock_announcer: MagicMock):
        boosters.add("xp", "Steve", 2.4)
        assert await chat_parser.handle_message("Steve's 2.4x XP booster expired!", now=T0) == "booster_expire"
        assert boosters.get("xp") is None
        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 101
        assert embeds[0].title == "⌛ Booster Expired"
        assert embeds[0].fields[2].value == "2.4x"

    async def test_expire_untracked_still_announced(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("Steve's Mining boost expired!", now=T0)
        assert len(posted(mock_announcer)) == 1


class TestEvents:
    async def test_event_ended_major(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("PIT EVENT ENDED: RAGE PIT!", now=T0) == "event_ended"
        [(channel, embeds, content)] = posted(mock_announcer)
        assert channel == 102
        assert embeds[0].description.startswith("🔥 MAJOR EVENT: RAGE PIT (ended) ⏹️")
        assert content is None

    async def test_event_ended_minor(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("PIT EVENT ENDED: KOTH!", now=T0)
        [(_, embeds, _)] = posted(mock_announcer)
        assert embeds[0].description.startswith("📢 MINOR EVENT: KOTH (ended)")

    def test_is_major_event(self, chat_parser: ChatParser):
        assert chat_parser.is_major_event("2X REWARDS")
        assert chat_parser.is_major_event("Blood Bath")
        assert not chat_parser.is_major_event("KOTH")

    async def test_duplicate_suppressed(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("PIT EVENT ENDED: KOTH!", now=T0)
        await chat_parser.handle_message("PIT EVENT ENDED: KOTH!", now=T0 + timedelta(seconds=2))
        assert mock_announcer.post.await_count == 1
        await chat_parser.handle_message("PIT EVENT ENDED: KOTH!", now=T0 + timedelta(seconds=8))
        assert mock_announcer.post.await_count == 2

    async def test_sweep_events(self, chat_parser: ChatParser):
        await chat_parser.handle_message("PIT EVENT ENDED: KOTH!", now=T0)
        assert chat_parser.sweep_events(T0 + timedelta(seconds=60)) == 0
        assert chat_parser.sweep_events(T0 + timedelta(seconds=301)) == 1

    async def test_major_starting_pings_at_lead_time(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        line = "MAJOR EVENT! RAGE PIT starting in 3 minutes"
        assert await chat_parser.handle_message(line, now=T0) == "major_starting"
        [(channel, embeds, content)] = posted(mock_announcer)
        assert channel == 102
        assert content == "<@&201>"
        expected = int((T0 + timedelta(minutes=3)).timestamp())
        assert f"<t:{expected}:R>" in embeds[0].description
        assert "⌛" in embeds[0].description

    async def test_major_starting_other_lead_ignored(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("MAJOR EVENT! RAGE PIT starting in 5 minutes", now=T0) is None
        mock_announcer.post.assert_not_awaited()

    async def test_major_starting_now(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        assert await chat_parser.handle_message("MAJOR EVENT! BEAST starting now", now=T0) == "major_starting_now"
        [(_, embeds, content)] = posted(mock_announcer)
        assert "(starting now) ⌛" in embeds[0].description
        assert content is None

    @pytest.mark.parametrize("line, name, status", [
        ("MINOR EVENT! HARVEST SEASON! Crops grow faster", "HARVEST SEASON", "active"),
        ("MINOR EVENT! HARVEST SEASON ended", "HARVEST SEASON", "ended"),
        ("MINOR EVENT! AUCTION! Check your chat!", "AUCTION", "starting soon"),
        ("MINOR EVENT! AUCTION ending now", "AUCTION", "ending now"),
    ])
    async def test_minor_events(self, chat_parser: ChatParser, mock_announcer: MagicMock, line, name, status):
        await chat_parser.handle_message(line, now=T0)
        [(_, embeds, _)] = posted(mock_announcer)
        assert f"MINOR EVENT: {name} ({status})" in embeds[0].description


class TestEventsReply:
    async def test_both_slots_post_immediately(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("EVENTS! Next Major Event: RAGE PIT in 38m0s!", now=T0)
        mock_announcer.post.assert_not_awaited()
        await chat_parser.handle_message("EVENTS! Next Minor Event: AUCTION in 10s!", now=T0)

        [(channel, embeds, _)] = posted(mock_announcer)
        assert channel == 104
        embed = embeds[0]
        assert embed.title == "📅 Upcoming Events"
        assert [f.name for f in embed.fields] == ["Next Major Event", "Next Minor Event"]
        major_at = int((T0 + timedelta(minutes=38)).timestamp())
        assert embed.fields[0].value.startswith("RAGE PIT\n")
        assert f"<t:{major_at}:R>" in embed.fields[0].value

    async def test_single_slot_posts_after_window(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("EVENTS! Next Minor Event: AUCTION in 10s!", now=T0)
        await asyncio.sleep(0.15)
        [(_, embeds, _)] = posted(mock_announcer)
        assert [f.name for f in embeds[0].fields] == ["Next Minor Event"]

    async def test_no_late_duplicate(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("EVENTS! Next Major Event: RAGE PIT in 38m0s!", now=T0)
        await chat_parser.handle_message("EVENTS! Next Minor Event: AUCTION in 10s!", now=T0)
        await asyncio.sleep(0.15)
        assert mock_announcer.post.await_count == 1

    async def test_stop_cancels_timers(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("EVENTS! Next Minor Event: AUCTION in 10s!", now=T0)
        await chat_parser.handle_message("WOAH! [120] Steve activated a XP booster! GG!", now=T0)
        chat_parser.stop()
        await asyncio.sleep(0.15)
        mock_announcer.post.assert_not_awaited()

    async def test_late_second_slot_posts_separately(self, chat_parser: ChatParser, mock_announcer: MagicMock):
        await chat_parser.handle_message("EVENTS! Next Major Event: RAGE PIT in 38m0s!", now=T0)
        await asyncio.sleep(0.15)
        await chat_parser.handle_message("EVENTS! Next Minor Event: AUCTION in 10s!", now=T0)
        await asyncio.sleep(0.15)
        fields = [[f.name for f in embeds[0].fields] for _, embeds, _ in posted(mock_announcer)]
        assert fields == [["Next Major Event"], ["Next Minor Event"]]


class TestStop:
    async def test_cancels_background_work(self, chat_parser: ChatParser, command_bridge):
        async def slow_redeem(*args, **kwargs):
            await asyncio.sleep(1)

        command_bridge.consume_verification_code = slow_redeem
        await chat_parser.handle_message("Steve -> you: 123456", now=T0)
        [task] = list(chat_parser._tasks)
        chat_parser.stop()
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()
        assert chat_parser._tasks == set()
