#!/usr/bin/env python3
"""
Parley WebSocket Server

Accepts client connections, gives each one its own TurnController, and wires
the shared collaborators (session store, reply cache, router, synthesis
streamer) together from configuration. The optional HTTP sidecar runs on a
background thread in the same process.
"""
from __future__ import annotations

import asyncio
import itertools
import sys
from typing import Any, Optional, Set

import websockets
from websockets.asyncio.server import serve

from . import config as CFG
from .backends import build_backends_from_config
from .cache import ResponseCache
from .channel import ClientChannel
from .clock import Clock, default_clock
from .documents import ingestor_from_config
from .error_handler import ConfigurationError, ErrorSeverity, handle_error
from .http_app import ParleyHttpApp
from .logging_utils import setup_logger
from .recognition import RecognitionListener, bridge_from_config
from .router import ResponseRouter, router_from_config
from .session_store import SessionStore
from .synthesis import SynthesisStreamer, streamer_from_config
from .turn_controller import BridgeFactory, TurnController
from .weather import WeatherService

logger = setup_logger("parley.server", "logs/parley.log")


class VoiceServer:
    def __init__(self, store: SessionStore, cache: ResponseCache, router: ResponseRouter,
                 streamer: SynthesisStreamer, bridge_factory: BridgeFactory,
                 host: str = "0.0.0.0", port: int = 5000, clock: Optional[Clock] = None,
                 settle_sec: float = 0.15, barge_in_min_chars: int = 3,
                 cache_purge_interval: float = 60.0):
        self.store = store
        self.cache = cache
        self.router = router
        self.streamer = streamer
        self.bridge_factory = bridge_factory
        self.host = host
        self.port = port
        self.clock = clock or default_clock()
        self.settle_sec = settle_sec
        self.barge_in_min_chars = barge_in_min_chars
        self.cache_purge_interval = cache_purge_interval

        self.connections: Set[TurnController] = set()
        self._ids = itertools.count(1)
        self._purge_task: Optional[asyncio.Task] = None

    def create_controller(self, channel: Any, label: str) -> TurnController:
        return TurnController(
            channel, self.store, self.router, self.streamer, self.bridge_factory,
            clock=self.clock, barge_in_min_chars=self.barge_in_min_chars,
            settle_sec=self.settle_sec, label=label,
        )

    async def handler(self, websocket: Any) -> None:
        label = f"conn-{next(self._ids)}"
        channel = ClientChannel(websocket, label)
        channel.start()
        controller = self.create_controller(channel, label)
        self.connections.add(controller)
        logger.info(f"Client connected ({label}). connections={len(self.connections)}")
        try:
            async for frame in websocket:
                await controller.handle_frame(frame)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"{label}: connection dropped: {e}")
        except Exception as e:
            handle_error(e, "server", "handler", ErrorSeverity.HIGH,
                         session_id=controller.session.token if controller.session else None)
        finally:
            await controller.close()
            await channel.close()
            self.connections.discard(controller)
            logger.info(f"Client disconnected ({label}). connections={len(self.connections)}")

    def start_background_tasks(self) -> None:
        self.store.start_sweeper()
        if self._purge_task is None:
            self._purge_task = asyncio.get_running_loop().create_task(
                self.cache.run_purge_loop(self.cache_purge_interval))

    async def stop_background_tasks(self) -> None:
        await self.store.stop_sweeper()
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None

    async def serve_forever(self) -> None:
        self.start_background_tasks()
        try:
            async with serve(self.handler, self.host, self.port) as server:
                logger.info(f"Parley listening on ws://{self.host}:{self.port}")
                await server.serve_forever()
        finally:
            for controller in list(self.connections):
                await controller.close()
            await self.stop_background_tasks()
            self.cache.clear()
            logger.info("Parley server stopped")


def build_server(clock: Optional[Clock] = None) -> VoiceServer:
    """Assemble a server from configuration.

    Raises ConfigurationError when required provider credentials are missing.
    """
    CFG.require_credentials()

    store = SessionStore(
        idle_timeout=CFG.get_session_idle_timeout_sec(),
        grace_period=CFG.get_session_grace_sec(),
        sweep_interval=CFG.get_session_sweep_interval_sec(),
        default_voice=CFG.get_default_voice(),
        memory_window=CFG.get_memory_window(),
        clock=clock,
    )
    cache = ResponseCache(CFG.get_cache_max_size(), CFG.get_cache_ttl_sec(), clock=clock)
    weather = WeatherService(
        CFG.get_api_key("weather"),
        url=CFG.get_weather_url(),
        default_location=CFG.get_weather_default_location(),
        timeout=CFG.get_weather_timeout_sec(),
    )
    if not weather.available:
        logger.warning("OPENWEATHER_API_KEY not set; weather questions go to the language model")

    backends = build_backends_from_config()
    if not backends:
        raise ConfigurationError("No generation back-end could be configured",
                                 component="server", operation="build_server")
    logger.info(f"Generation back-ends: {', '.join(backends)}")

    router = router_from_config(backends, cache, weather)
    streamer = streamer_from_config(clock)

    def bridge_factory(listener: RecognitionListener):
        return bridge_from_config(listener, clock=clock)

    host, port = CFG.get_server_host_port()
    return VoiceServer(
        store, cache, router, streamer, bridge_factory,
        host=host, port=port, clock=clock,
        settle_sec=CFG.get_synthesis_settle_sec(),
        barge_in_min_chars=CFG.get_barge_in_min_chars(),
        cache_purge_interval=CFG.get_cache_purge_interval_sec(),
    )


def start_http_sidecar(server: VoiceServer) -> Optional[ParleyHttpApp]:
    if not CFG.http_sidecar_enabled():
        return None
    app = ParleyHttpApp(server.store, server.cache, ingestor_from_config(server.store))
    host, port = CFG.get_http_host_port()
    app.start_in_thread(host, port)
    return app


def main() -> None:
    try:
        server = build_server()
    except ConfigurationError as e:
        logger.critical(f"Refusing to start: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.critical(str(e))
        sys.exit(1)

    start_http_sidecar(server)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
