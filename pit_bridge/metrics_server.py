"""Prometheus metrics and health endpoint for pit-bridge."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import BridgeApp


class BridgeMetricsServer:
    """Serves ``/health`` (JSON) and ``/metrics`` (Prometheus text)."""

    def __init__(self, app: BridgeApp, port: int = 28290, logger: logging.Logger | None = None) -> None:
        self._app = app
        self._port = port
        self._logger = logger or logging.getLogger("pitbridge.metrics")
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        web_app = web.Application()
        web_app.add_routes([
            web.get("/health", self.handle_health),
            web.get("/metrics", self.handle_metrics),
        ])
        return web_app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        self._logger.info("Metrics server listening on :%d", self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.health_details())

    async def handle_metrics(self, request: web.Request) -> web.Response:
        body = "\n".join(self.collect_metrics()) + "\n"
        return web.Response(text=body, content_type="text/plain")

    # ── Collection ───────────────────────────────────────────

    def health_details(self) -> dict:
        app = self._app
        lobby = app.lobby_monitor
        return {
            "status": "ok" if app.running else "stopping",
            "uptime_seconds": round(app.uptime_seconds, 1),
            "game_connected": bool(app.game and app.game.connected),
            "lobby": lobby.current_lobby if lobby else None,
            "lobby_state": lobby.state.value if lobby else None,
            "lobby_players": len(lobby.players) if lobby else 0,
            "active_boosters": app.boosters.active_count() if app.boosters else 0,
        }

    def collect_metrics(self) -> list[str]:
        app = self._app
        lines: list[str] = [f"pitbridge_uptime_seconds {app.uptime_seconds:.1f}"]

        if app.chat_parser:
            lines.append(f"pitbridge_chat_lines_processed_total {app.chat_parser.lines_processed}")
            lines.append(f"pitbridge_chat_lines_handled_total {app.chat_parser.lines_handled}")
            lines.append(f"pitbridge_handler_errors_total {app.chat_parser.handler_errors}")
        if app.announcer:
            lines.append(f"pitbridge_notices_sent_total {app.announcer.notices_sent}")
            lines.append(f"pitbridge_notices_failed_total {app.announcer.notices_failed}")
            lines.append(f"pitbridge_notices_pending {app.announcer.pending}")
        if app.boosters:
            lines.append(f"pitbridge_active_boosters {app.boosters.active_count()}")
        if app.lobby_monitor:
            lines.append(f"pitbridge_lobby_players {len(app.lobby_monitor.players)}")
            lines.append(f"pitbridge_reconnect_attempts {app.lobby_monitor.reconnect_attempts}")
        if app.history is not None:
            lines.append(f"pitbridge_tracked_players {len(app.history)}")
        if app.command_bridge:
            lines.append(f"pitbridge_pending_verification_codes {app.command_bridge.pending_codes}")
            lines.append(
                f"pitbridge_verifications_completed_total {app.command_bridge.verifications_completed}"
            )
        lines.append(f"pitbridge_game_connected {1 if app.game and app.game.connected else 0}")
        return lines
