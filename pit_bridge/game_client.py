"""Game client — talks to the headless Minecraft relay over a websocket.

The relay owns the Minecraft session itself. This side receives JSON
frames of the form ``{"op": "...", ...}`` and sends chat lines back as
``{"op": "chat", "text": "..."}``.

Inbound ops: ``login``, ``spawn``, ``chat``, ``title``, ``player_joined``,
``player_left``, ``players``, ``kicked``, ``error``. When the socket closes
an ``end`` event is emitted with the close reason.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

if TYPE_CHECKING:
    from .config import MinecraftConfig

Handler = Callable[..., Awaitable[None]]


class BridgeError(Exception):
    """Base class for bridge errors raised at call sites."""


class GameNotReadyError(BridgeError):
    """Raised when sending to the game before the connection is up."""


class GameClient:
    """Websocket adapter for the Minecraft relay."""

    def __init__(
        self,
        config: MinecraftConfig,
        logger: logging.Logger | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("pitbridge.game")
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

        self.username: str | None = None
        self.players: set[str] = set()

    # ── Handler registration ─────────────────────────────────

    def on(self, event: str) -> Callable[[Handler], Handler]:
        """Decorator registering a coroutine for an inbound event."""
        def decorator(func: Handler) -> Handler:
            self._handlers[event].append(func)
            return func
        return decorator

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(*args)
            except Exception:
                self._logger.exception("Handler for %r failed", event)

    # ── Connection ───────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._logger.info("Connecting to game relay at %s", self._config.relay_url)
        self._ws = await self._session.ws_connect(
            self._config.relay_url, heartbeat=self._config.heartbeat_seconds,
        )

    async def run(self) -> None:
        """Read frames until the relay closes the socket, then emit ``end``."""
        if self._ws is None:
            raise GameNotReadyError("connect() must be called before run()")

        reason = "connection closed"
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    self._logger.warning("Bad JSON from relay: %.120s", msg.data)
                    continue
                if isinstance(data, dict):
                    await self.dispatch(data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                reason = f"websocket error: {self._ws.exception()}"
                self._logger.warning("Relay %s", reason)
                break

        if self._ws.close_code is not None and reason == "connection closed":
            reason = f"connection closed ({self._ws.close_code})"
        self.players.clear()
        await self.emit("end", reason)

    async def dispatch(self, data: dict[str, Any]) -> None:
        """Route one decoded relay frame to the registered handlers."""
        op = data.get("op")
        if op == "login":
            self.username = data.get("username") or self._config.username
            await self.emit("login", self.username)
        elif op == "spawn":
            await self.emit("spawn")
        elif op in ("chat", "title"):
            await self.emit(op, str(data.get("text", "")))
        elif op == "player_joined":
            name = str(data.get("username", ""))
            self.players.add(name)
            await self.emit("player_joined", name)
        elif op == "player_left":
            name = str(data.get("username", ""))
            self.players.discard(name)
            await self.emit("player_left", name)
        elif op == "players":
            self.players = {str(u) for u in data.get("usernames", [])}
            await self.emit("players", set(self.players))
        elif op == "kicked":
            await self.emit("kicked", str(data.get("reason", "")))
        elif op == "error":
            await self.emit("error", str(data.get("message", "")))
        else:
            self._logger.debug("Ignoring relay op %r", op)

    async def send_chat(self, text: str) -> None:
        if not self.connected:
            raise GameNotReadyError("Game connection is not ready")
        await self._ws.send_json({"op": "chat", "text": text})
        self._logger.debug("Sent to game: %s", text)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
