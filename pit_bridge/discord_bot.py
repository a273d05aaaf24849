"""Discord side of the bridge — channel I/O, member/role lookups and slash commands.

Slash commands:

- ``/boosters``: active and inactive boosters (bot-commands channel only)
- ``/events``: asks the game for upcoming events; the answer is posted by
  the chat parser once the game replies
- ``/verify``: DMs a one-time code to whisper to the bot account in game
- ``/players``: tracked player history
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands

from .timestamps import relative_time

if TYPE_CHECKING:
    from .booster_tracker import BoosterStates, BoosterTracker
    from .command_bridge import CommandBridge
    from .config import BridgeConfig
    from .player_history import PlayerHistory

MSG_WRONG_CHANNEL = "Please use this command in <#{channel}>"
MSG_CHECKING_EVENTS = "Checking events..."
MSG_EVENTS_FAILED = "Failed to check events. Please try again later."
MSG_ALREADY_VERIFIED = (
    "❌ Your Discord account is already verified! If you need to change your "
    "linked Minecraft account, please contact an administrator."
)
MSG_CODE_SENT = "I've sent you a DM with your verification code!"
MSG_DMS_CLOSED = "Failed to send verification code. Please enable DMs from server members and try again."
MSG_VERIFY_FAILED = "Failed to generate verification code. Please try again later."


def build_boosters_embed(states: BoosterStates) -> discord.Embed:
    embed = discord.Embed(title="🚀 Booster Status", color=0x00FF00)
    if states.active:
        blocks = []
        for booster in states.active:
            multiplier = f" ({booster.multiplier}x)" if booster.multiplier else ""
            blocks.append("\n".join([
                f"{booster.display_type}{multiplier}",
                f"• Activated by: {booster.player}",
                f"• Expiring: {booster.time_remaining}",
            ]))
        embed.add_field(name="🟢 Active Boosters", value="\n\n".join(blocks), inline=False)
    embed.add_field(
        name="⚫ Inactive Boosters",
        value="\n".join(states.inactive) if states.inactive else "All boosters are currently active.",
        inline=False,
    )
    return embed


def build_verify_instructions(code: str, bot_account: str, host: str, expires_at) -> str:
    return (
        f"Your verification code is: `{code}`\n"
        "To verify your account:\n"
        f"1. Join the Minecraft server ({host})\n"
        f"2. Type this command: `/msg {bot_account} {code}`\n"
        f"This code will expire {relative_time(expires_at)}"
    )


class BridgeBot(discord.Client):
    """discord.py client with the bridge's slash commands."""

    def __init__(
        self,
        config: BridgeConfig,
        boosters: BoosterTracker | None = None,
        command_bridge: CommandBridge | None = None,
        history: PlayerHistory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self._config = config
        self._channels = config.discord.channels
        self._boosters = boosters
        self._commands = command_bridge
        self._history = history
        self._logger = logger or logging.getLogger("pitbridge.discord")
        self.tree = app_commands.CommandTree(self)
        setup_commands(self)

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def setup_hook(self) -> None:
        guild_id = self._config.discord.guild_id
        if guild_id:
            guild = discord.Object(id=guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            self._logger.info("Synced application commands for guild %s", guild_id)
        else:
            await self.tree.sync()
            self._logger.info("Synced global application commands")

    async def on_ready(self) -> None:
        self._logger.info("Logged in to Discord as %s", self.user)

    async def on_message(self, message: discord.Message) -> None:
        """Forward human messages from the private-messenger channel to game chat."""
        if message.author.bot or message.channel.id != self._channels.private_messenger:
            return
        content = (message.content or "").strip()
        if not content:
            self._logger.debug("Ignoring empty private-messenger message %s", message.id)
            return
        if self._commands is None:
            return
        try:
            await self._commands.send_to_game(content)
            self._logger.info("Forwarded message to Minecraft: %s", content)
        except Exception as exc:
            self._logger.error("Error forwarding message to Minecraft: %s", exc)

    # ══════════════════════════════════════════════════════════
    #  Channel / member helpers
    # ══════════════════════════════════════════════════════════

    async def _resolve_channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.get_channel(channel_id)
        if channel is None:
            channel = await self.fetch_channel(channel_id)
        return channel

    async def send_to_channel(
        self,
        channel_id: int,
        content: str | None = None,
        embeds: list[discord.Embed] | None = None,
    ) -> discord.Message | None:
        if not channel_id:
            return None
        channel = await self._resolve_channel(channel_id)
        return await channel.send(content=content, embeds=embeds or None)

    async def edit_message(
        self,
        channel_id: int,
        message_id: int,
        content: str | None = None,
        embeds: list[discord.Embed] | None = None,
    ) -> discord.Message:
        channel = await self._resolve_channel(channel_id)
        message = channel.get_partial_message(message_id)
        return await message.edit(content=content, embeds=embeds or [])

    async def _guild(self) -> discord.Guild:
        guild_id = self._config.discord.guild_id
        guild = self.get_guild(guild_id)
        if guild is None:
            guild = await self.fetch_guild(guild_id)
        return guild

    async def fetch_member(self, user_id: int) -> discord.Member | None:
        guild = await self._guild()
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None

    async def fetch_role(self, role_id: int) -> discord.Role | None:
        guild = await self._guild()
        role = guild.get_role(role_id)
        if role is not None:
            return role
        for candidate in await guild.fetch_roles():
            if candidate.id == role_id:
                return candidate
        return None

    # ══════════════════════════════════════════════════════════
    #  Command bodies
    # ══════════════════════════════════════════════════════════

    async def _require_bot_commands_channel(self, interaction: discord.Interaction) -> bool:
        channel_id = self._channels.bot_commands
        if channel_id and interaction.channel_id != channel_id:
            await interaction.response.send_message(
                MSG_WRONG_CHANNEL.format(channel=channel_id), ephemeral=True,
            )
            return False
        return True

    async def handle_boosters(self, interaction: discord.Interaction) -> None:
        if not await self._require_bot_commands_channel(interaction):
            return
        try:
            embed = build_boosters_embed(self._boosters.get_states())
        except Exception:
            self._logger.exception("Error executing boosters command")
            await interaction.response.send_message(
                "There was an error fetching booster states.", ephemeral=True,
            )
            return
        await interaction.response.send_message(embed=embed)
        self._logger.info("Boosters command executed successfully")

    async def handle_events(self, interaction: discord.Interaction) -> None:
        try:
            await self._commands.execute_command(self._config.minecraft.events_command)
        except Exception as exc:
            self._logger.error("Error executing events command: %s", exc)
            await interaction.response.send_message(MSG_EVENTS_FAILED, ephemeral=True)
            return
        await interaction.response.send_message(MSG_CHECKING_EVENTS)

    async def handle_verify(self, interaction: discord.Interaction) -> None:
        user = interaction.user
        verified_role_id = self._config.discord.roles.verified
        try:
            member = user if isinstance(user, discord.Member) else await self.fetch_member(user.id)
            if (
                verified_role_id
                and member is not None
                and any(role.id == verified_role_id for role in member.roles)
            ):
                await interaction.response.send_message(MSG_ALREADY_VERIFIED, ephemeral=True)
                return

            entry = self._commands.generate_verification_code(user.id)
            await user.send(build_verify_instructions(
                entry.code,
                self._config.minecraft.username,
                self._config.minecraft.host,
                entry.expires_at,
            ))
            await interaction.response.send_message(MSG_CODE_SENT, ephemeral=True)
        except discord.Forbidden:
            self._logger.warning("Could not DM verification code to %s", user)
            await interaction.response.send_message(MSG_DMS_CLOSED, ephemeral=True)
        except Exception:
            self._logger.exception("Error handling verify command")
            await interaction.response.send_message(MSG_VERIFY_FAILED, ephemeral=True)

    async def handle_players(self, interaction: discord.Interaction) -> None:
        if not await self._require_bot_commands_channel(interaction):
            return
        await interaction.response.send_message(embed=self._history.build_embed())


def setup_commands(bot: BridgeBot) -> None:
    tree = bot.tree

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError,
    ) -> None:
        bot._logger.exception("App command error: %s", error)
        message = "Something went wrong running that command. Please try again later."
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except Exception as exc:
            bot._logger.warning("Failed sending error response for command: %s", exc)

    @tree.command(name="boosters", description="Display current booster states")
    async def boosters(interaction: discord.Interaction) -> None:
        await bot.handle_boosters(interaction)

    @tree.command(name="events", description="Check upcoming events")
    async def events(interaction: discord.Interaction) -> None:
        await bot.handle_events(interaction)

    @tree.command(name="verify", description="Link your Minecraft account")
    async def verify(interaction: discord.Interaction) -> None:
        await bot.handle_verify(interaction)

    @tree.command(name="players", description="Show tracked players")
    async def players(interaction: discord.Interaction) -> None:
        await bot.handle_players(interaction)
