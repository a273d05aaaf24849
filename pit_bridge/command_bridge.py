"""Command bridge — Discord-initiated game commands and account verification.

Outbound commands share one cooldown. Verification codes are issued to a
Discord user, whispered back by the player in game (``/msg <bot> 123456``)
and redeemed here: roles are granted, the nickname set, and both sides told.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import discord

from .game_client import BridgeError, GameNotReadyError
from .utils import now_utc

if TYPE_CHECKING:
    from .config import BridgeConfig
    from .game_client import GameClient

MSG_INVALID = "❌ Invalid verification code. Please use /verify in Discord to get a new code."
MSG_EXPIRED = "❌ Verification code has expired. Please use /verify in Discord to get a new code."
MSG_ALREADY = (
    "❌ Your Discord account is already verified! If you need to change your "
    "linked Minecraft account, please contact an administrator."
)
MSG_SUCCESS = "✅ Verification successful! You have been given the {role} role in Discord."
MSG_ERROR = "❌ Error during verification. Please try again or contact an administrator."


class CommandCooldownError(BridgeError):
    """Raised when a command is sent again before the cooldown elapsed."""

    def __init__(self, remaining: float) -> None:
        super().__init__(f"Command on cooldown ({remaining:.1f}s remaining)")
        self.remaining = remaining


@dataclass
class VerificationCode:
    code: str
    discord_user_id: int
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class CommandBridge:
    """Owns the command cooldown and the verification-code table."""

    def __init__(
        self,
        config: BridgeConfig,
        game: GameClient | None = None,
        discord_client: object | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._game = game
        self._discord = discord_client
        self._logger = logger or logging.getLogger("pitbridge.commands")

        self._cooldown = timedelta(seconds=config.timings.command_cooldown)
        self._code_ttl = timedelta(seconds=config.timings.verification_code_ttl)
        self._last_command: datetime | None = None
        # code -> VerificationCode
        self._codes: dict[str, VerificationCode] = {}

        # Metrics
        self.verifications_completed: int = 0

    # ══════════════════════════════════════════════════════════
    #  Game commands
    # ══════════════════════════════════════════════════════════

    async def execute_command(self, command: str, now: datetime | None = None) -> None:
        """Send a command to the game, enforcing the shared cooldown."""
        now = now or now_utc()
        if self._last_command is not None:
            elapsed = now - self._last_command
            if elapsed < self._cooldown:
                raise CommandCooldownError((self._cooldown - elapsed).total_seconds())
        self._last_command = now
        await self.send_to_game(command)
        self._logger.info("Executed command: %s", command)

    async def send_to_game(self, text: str) -> None:
        """Send raw text to game chat."""
        if self._game is None:
            raise GameNotReadyError("Game client not initialized")
        if not text or not isinstance(text, str):
            raise ValueError("Message must be a non-empty string")
        await self._game.send_chat(text)

    async def _whisper(self, username: str, text: str) -> None:
        try:
            await self.send_to_game(f"/msg {username} {text}")
        except Exception as exc:
            self._logger.error("Failed to whisper %s: %s", username, exc)

    # ══════════════════════════════════════════════════════════
    #  Verification codes
    # ══════════════════════════════════════════════════════════

    def generate_verification_code(self, discord_user_id: int, now: datetime | None = None) -> VerificationCode:
        """Issue a fresh code, invalidating the user's previous one."""
        for code, entry in list(self._codes.items()):
            if entry.discord_user_id == discord_user_id:
                del self._codes[code]
                self._logger.info("Invalidated old verification code for user %s", discord_user_id)

        # No collision retry: a clash with another live code is accepted
        code = str(random.randint(100000, 999999))
        entry = VerificationCode(
            code=code,
            discord_user_id=discord_user_id,
            expires_at=(now or now_utc()) + self._code_ttl,
        )
        self._codes[code] = entry
        return entry

    def get_code(self, code: str) -> VerificationCode | None:
        return self._codes.get(code)

    @property
    def pending_codes(self) -> int:
        return len(self._codes)

    async def consume_verification_code(
        self, username: str, code: str, now: datetime | None = None,
    ) -> bool:
        """Redeem a whispered code. Returns True when the account was linked."""
        now = now or now_utc()
        entry = self._codes.get(code)
        if entry is None:
            self._logger.warning("Invalid verification code from %s: %s", username, code)
            await self._whisper(username, MSG_INVALID)
            return False

        if entry.is_expired(now):
            self._logger.warning("Expired verification code from %s", username)
            self._codes.pop(code, None)
            await self._whisper(username, MSG_EXPIRED)
            return False

        # Single use: removed before the first await
        del self._codes[code]

        member = None
        if self._discord is not None:
            try:
                member = await self._discord.fetch_member(entry.discord_user_id)
            except Exception as exc:
                self._logger.error("Could not fetch member %s: %s", entry.discord_user_id, exc)
        if member is None:
            self._logger.error("Could not find Discord member for ID: %s", entry.discord_user_id)
            await self._whisper(username, MSG_ERROR)
            return False

        roles_config = self._config.discord.roles
        verified_role = await self._fetch_role(roles_config.verified)
        catchpa_role = await self._fetch_role(roles_config.catchpa)
        member_role_ids = {r.id for r in member.roles}

        if verified_role is not None and verified_role.id in member_role_ids:
            self._logger.warning("User %s attempted to verify again", member)
            await self._whisper(username, MSG_ALREADY)
            return False

        if verified_role is not None:
            try:
                await member.add_roles(verified_role, reason=f"Verified as {username}")
                self._logger.info("Assigned verified role to %s", member)
            except Exception as exc:
                self._logger.error("Could not add verified role to %s: %s", member, exc)

        if catchpa_role is not None and catchpa_role.id in member_role_ids:
            try:
                await member.remove_roles(catchpa_role, reason="Verified")
                self._logger.info("Removed CATCHPA role from %s", member)
            except Exception as exc:
                self._logger.error("Could not remove CATCHPA role from %s: %s", member, exc)

        role_name = verified_role.name if verified_role is not None else "verified"
        await self._whisper(username, MSG_SUCCESS.format(role=role_name))

        try:
            await member.edit(nick=username)
            self._logger.info("Updated nickname for %s to %s", member, username)
        except Exception as exc:
            self._logger.warning("Could not update nickname for %s: %s", member, exc)

        try:
            await member.send(
                content=(
                    "✅ Successfully verified! Your Discord account is now linked "
                    f"to Minecraft username: {username}"
                ),
                embed=self._build_success_embed(username, verified_role, catchpa_role),
            )
        except Exception as exc:
            self._logger.warning("Could not DM %s: %s", member, exc)

        self.verifications_completed += 1
        self._logger.info("Successfully verified %s with Discord user %s", username, member)
        return True

    async def _fetch_role(self, role_id: int) -> discord.Role | None:
        if not role_id or self._discord is None:
            return None
        try:
            return await self._discord.fetch_role(role_id)
        except Exception as exc:
            self._logger.error("Could not fetch role %s: %s", role_id, exc)
            return None

    @staticmethod
    def _build_success_embed(
        username: str, verified_role: discord.Role | None, catchpa_role: discord.Role | None,
    ) -> discord.Embed:
        embed = discord.Embed(
            title="Verification Successful",
            description="Your account has been verified and the following changes have been made:",
            color=0x00FF00,
            timestamp=now_utc(),
        )
        embed.add_field(name="Minecraft Username", value=username, inline=True)
        embed.add_field(name="Discord Nickname", value=username, inline=True)
        embed.add_field(name="Role Added", value=verified_role.name if verified_role else "N/A", inline=True)
        embed.add_field(name="Role Removed", value=catchpa_role.name if catchpa_role else "N/A", inline=True)
        return embed

    def cleanup_expired_codes(self, now: datetime | None = None) -> int:
        now = now or now_utc()
        expired = [code for code, entry in self._codes.items() if entry.is_expired(now)]
        for code in expired:
            del self._codes[code]
        if expired:
            self._logger.info("Cleaned up %d expired verification code(s)", len(expired))
        return len(expired)
