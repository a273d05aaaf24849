"""Outbound notice queue — every Discord post from the chat side goes through here.

Notices are sent one at a time in the order they were posted so that, for
example, an activation notice never overtakes the expiry that preceded it.
Send failures are logged and the notice is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import discord


@dataclass
class Notice:
    """One outbound Discord message."""

    channel_id: int
    content: str | None = None
    embeds: list[discord.Embed] = field(default_factory=list)


class Announcer:
    """Ordered, fire-and-forget Discord outbox."""

    def __init__(
        self,
        discord_client: object | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._discord = discord_client
        self._logger = logger or logging.getLogger("pitbridge.announcer")
        self._queue: asyncio.Queue[Notice] = asyncio.Queue()
        self._flush_task: asyncio.Task | None = None

        # Metrics
        self.notices_sent: int = 0
        self.notices_failed: int = 0

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        """Stop the flush loop. Anything still queued is discarded."""
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        dropped = self._queue.qsize()
        if dropped:
            self._logger.warning("Dropping %d unsent notice(s) on shutdown", dropped)

    # ── Public API ───────────────────────────────────────────

    async def post(
        self,
        channel_id: int,
        embeds: list[discord.Embed] | discord.Embed | None = None,
        content: str | None = None,
    ) -> None:
        """Queue a notice. Unconfigured channels (id 0) are skipped."""
        if not channel_id:
            self._logger.debug("No channel configured, dropping notice: %s", content or embeds)
            return
        if isinstance(embeds, discord.Embed):
            embeds = [embeds]
        await self._queue.put(Notice(channel_id=channel_id, content=content, embeds=list(embeds or [])))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── Internal ─────────────────────────────────────────────

    async def send_notice(self, notice: Notice) -> bool:
        try:
            await self._discord.send_to_channel(
                notice.channel_id, content=notice.content, embeds=notice.embeds,
            )
        except Exception as exc:
            self.notices_failed += 1
            self._logger.error("Notice send to %s failed: %s", notice.channel_id, exc)
            return False
        self.notices_sent += 1
        return True

    async def _flush_loop(self) -> None:
        while True:
            notice = await self._queue.get()
            try:
                await self.send_notice(notice)
            finally:
                self._queue.task_done()
