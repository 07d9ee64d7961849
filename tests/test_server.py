import asyncio
import json
import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import FakeBackend, FakeClock, FakeConnector, FakeSynthesizer
from parley import config as cfg
from parley.cache import ResponseCache
from parley.error_handler import ConfigurationError
from parley.recognition import RecognitionBridge
from parley.router import ResponseRouter
from parley.server import VoiceServer, build_server
from parley.session_store import SessionStore
from parley.synthesis import SynthesisStreamer


class FakeServerSocket:
    def __init__(self, frames):
        self._frames = list(frames)
        self.sent = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._frames:
            raise StopAsyncIteration
        await asyncio.sleep(0)
        return self._frames.pop(0)

    async def send(self, frame):
        self.sent.append(frame)


def _server(clock):
    store = SessionStore(clock=clock)
    cache = ResponseCache(clock=clock)
    router = ResponseRouter({"fast": FakeBackend("fast"), "fallback": FakeBackend("fallback")}, cache)
    streamer = SynthesisStreamer(FakeSynthesizer(), pacing_sec=0, clock=clock)
    connector = FakeConnector()

    def bridge_factory(listener):
        return RecognitionBridge(listener, "k", url="wss://recognizer.test/listen", clock=clock,
                                 connect=connector)

    return VoiceServer(store, cache, router, streamer, bridge_factory, clock=clock, settle_sec=0), connector


def test_handler_runs_one_controller_per_connection():
    clock = FakeClock()
    server, connector = _server(clock)
    sock = FakeServerSocket([
        json.dumps({"type": "attach_session", "session_id": "abc"}),
        json.dumps({"type": "begin_listening"}),
        b"\x00\x00",
    ])

    asyncio.run(server.handler(sock))

    messages = [json.loads(f) for f in sock.sent if isinstance(f, str)]
    assert messages[0] == {"type": "session_ack", "session_id": "abc"}
    assert [m["status"] for m in messages if m["type"] == "status"] == ["Connecting...", "Listening..."]
    assert connector.socket.sent[0] == b"\x00\x00"
    assert connector.socket.close_calls == 1
    assert server.connections == set()
    assert "abc" in server.store
    clock.advance(300)
    assert "abc" not in server.store


def test_build_server_requires_credentials(monkeypatch):
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", True, raising=False)
    for env_name in cfg.CREDENTIAL_ENV.values():
        monkeypatch.delenv(env_name, raising=False)

    with pytest.raises(ConfigurationError) as excinfo:
        build_server()
    assert "DEEPGRAM_API_KEY" in str(excinfo.value)
    assert "MURF_API_KEY" in str(excinfo.value)


def test_build_server_from_defaults(monkeypatch):
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", True, raising=False)
    monkeypatch.delenv("OPENWEATHER_API_KEY", raising=False)
    for name in ("DEEPGRAM_API_KEY", "MURF_API_KEY", "GEMINI_API_KEY", "GROQ_API_KEY"):
        monkeypatch.setenv(name, "test-key")

    server = build_server(FakeClock())
    assert server.port == 5000
    assert set(server.router.backends) == {"fast", "capable", "fallback"}
    assert not server.router.weather.available
