import asyncio
import heapq
import itertools
import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

import websockets

from parley.cache import ResponseCache
from parley.clock import Clock, TimerHandle
from parley.error_handler import GenerationError, SynthesisError
from parley.recognition import CompletionPolicy, RecognitionBridge
from parley.router import ResponseRouter
from parley.session_store import SessionStore
from parley.synthesis import SynthesisProvider, SynthesisStreamer
from parley.turn_controller import TurnController
from parley.weather import WeatherFacts, WeatherReport, format_weather_message


class FakeClock(Clock):
    """Manual clock: timers and sleeps only fire when advance() is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._timers: list = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        self.call_later(delay, lambda: fut.done() or fut.set_result(None))
        await fut

    def call_later(self, delay, callback, *args) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._timers, (self.now + max(0.0, delay), next(self._seq), callback, args, handle))
        return handle

    @property
    def pending_timers(self) -> int:
        return sum(1 for t in self._timers if not t[4].cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._timers and self._timers[0][0] <= target:
            when, _, callback, args, handle = heapq.heappop(self._timers)
            self.now = when
            if not handle.cancelled:
                callback(*args)
        self.now = target


class AutoClock(FakeClock):
    """Sleeping advances time immediately; records every sleep."""

    def __init__(self, start: float = 1000.0):
        super().__init__(start)
        self.sleeps: List[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.advance(max(0.0, delay))
        await asyncio.sleep(0)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class RecordingChannel:
    def __init__(self):
        self.events: List[Any] = []
        self.closed = False

    def send_json(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.events.append(message)
        return True

    def send_audio(self, audio: bytes) -> bool:
        if self.closed:
            return False
        self.events.append(bytes(audio))
        return True

    def kinds(self) -> List[str]:
        return ["audio" if isinstance(e, bytes) else e["type"] for e in self.events]

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if isinstance(e, dict) and e["type"] == msg_type]

    def statuses(self) -> List[str]:
        return [e["status"] for e in self.of_type("status")]

    def audio(self) -> List[bytes]:
        return [e for e in self.events if isinstance(e, bytes)]


_END = object()


class FakeRecognitionSocket:
    """Stands in for the provider websocket: push() results, inspect sent frames."""

    def __init__(self):
        self.sent: List[Any] = []
        self.closed = False
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, transcript: str, is_final: bool = False, speech_final: bool = False,
             confidence: float = 0.95) -> None:
        self._incoming.put_nowait(json.dumps({
            "type": "Results",
            "is_final": is_final,
            "speech_final": speech_final,
            "channel": {"alternatives": [{"transcript": transcript, "confidence": confidence}]},
        }))

    def push_raw(self, raw: Any) -> None:
        self._incoming.put_nowait(raw)

    def drop(self) -> None:
        self._incoming.put_nowait(websockets.exceptions.ConnectionClosedError(None, None))

    async def send(self, data: Any) -> None:
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self._incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sockets: List[FakeRecognitionSocket] = []
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, url: str, additional_headers: Optional[Dict[str, str]] = None):
        self.calls.append({"url": url, "headers": additional_headers})
        if self.fail:
            raise OSError("connection refused")
        sock = FakeRecognitionSocket()
        self.sockets.append(sock)
        return sock

    @property
    def socket(self) -> FakeRecognitionSocket:
        return self.sockets[-1]


class FakeBackend:
    def __init__(self, name: str, replies: Optional[List[Any]] = None, gate: Optional[asyncio.Event] = None):
        self.name = name
        self.model = f"{name}-model"
        self.replies = list(replies or [f"Reply from {name}."])
        self.gate = gate
        self.calls: List[Dict[str, str]] = []

    async def generate(self, prompt: str, system_prompt: str, token) -> str:
        self.calls.append({"prompt": prompt, "system": system_prompt})
        token.raise_if_cancelled()
        if self.gate is not None:
            await self.gate.wait()
        token.raise_if_cancelled()
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if not reply:
            raise GenerationError(f"{self.name} returned an empty response")
        return reply


class FakeSynthesizer(SynthesisProvider):
    """Returns b'audio-<n>' per call; per-call gates let tests control completion order."""

    def __init__(self, fail_all: bool = False):
        self.calls: List[str] = []
        self.gates: Dict[int, asyncio.Event] = {}
        self.fail_all = fail_all
        self.failing: set = set()

    def gate(self, index: int) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[index] = event
        return event

    async def synthesize(self, text, voice, token) -> bytes:
        index = len(self.calls)
        self.calls.append(text)
        token.raise_if_cancelled()
        if index in self.gates:
            await self.gates[index].wait()
        token.raise_if_cancelled()
        if self.fail_all or index in self.failing:
            raise SynthesisError("provider unavailable")
        return f"audio-{index}".encode()


class StubWeather:
    available = True

    def __init__(self):
        self.lookups: List[Optional[str]] = []

    def lookup(self, location=None) -> WeatherReport:
        self.lookups.append(location)
        facts = WeatherFacts(location=location or "Pimpri", country="IN", temperature=28,
                             feels_like=30, description="clear sky", humidity=60, wind_speed=2.0)
        return WeatherReport(ok=True, message=format_weather_message(facts), facts=facts)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def build_controller():
    """Factory assembling a TurnController wired to fakes."""

    def _build(backends=None, synthesizer=None, weather=None, clock=None, connector=None,
               policy=None, cache=None):
        clock = clock or FakeClock()
        channel = RecordingChannel()
        store = SessionStore(clock=clock)
        cache = cache or ResponseCache(clock=clock)
        backends = backends if backends is not None else {
            "fast": FakeBackend("fast"), "capable": FakeBackend("capable"),
            "fallback": FakeBackend("fallback"),
        }
        router = ResponseRouter(backends, cache, weather=weather)
        synthesizer = synthesizer or FakeSynthesizer()
        streamer = SynthesisStreamer(synthesizer, pacing_sec=0, clock=clock)
        connector = connector or FakeConnector()
        policy = policy or CompletionPolicy()

        def bridge_factory(listener):
            return RecognitionBridge(listener, "test-key", url="wss://recognizer.test/listen",
                                     params={"model": "nova-2"}, policy=policy, clock=clock,
                                     keepalive_sec=5.0, connect=connector)

        controller = TurnController(channel, store, router, streamer, bridge_factory,
                                    clock=clock, settle_sec=0)
        return controller, channel, connector, clock

    return _build
