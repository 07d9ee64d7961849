"""
Streaming speech recognition bridge.

Owns one provider websocket per listening conversation, forwards PCM frames
verbatim, keeps the stream alive while the microphone is quiet, and turns the
provider's incremental results into three kinds of listener callbacks:

- on_interim(text): live caption, forwarded immediately
- on_final(text, confidence): a finalized segment (for captions and barge-in)
- on_utterance(text, confidence): the debounced "user has finished" event
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.asyncio.client import connect as ws_connect

from .clock import Clock, Debouncer, default_clock
from .error_handler import RecognitionError
from .logging_utils import setup_logger

logger = setup_logger("parley.recognition", "logs/parley.log")

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_MESSAGE = json.dumps({"type": "CloseStream"})


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    confidence: float
    is_final: bool
    speech_final: bool = False


def parse_provider_message(raw: Any) -> Optional[RecognitionResult]:
    """Extract the first alternative from a provider `Results` message.

    Returns None for metadata, VAD events and anything unparseable.
    """
    if isinstance(raw, (bytes, bytearray)):
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-JSON recognition message")
        return None
    if not isinstance(data, dict) or data.get("type", "Results") != "Results":
        return None
    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    first = alternatives[0] or {}
    try:
        confidence = float(first.get("confidence", 0.0) or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return RecognitionResult(
        transcript=str(first.get("transcript", "") or ""),
        confidence=confidence,
        is_final=bool(data.get("is_final", False)),
        speech_final=bool(data.get("speech_final", False)),
    )


@dataclass
class CompletionPolicy:
    """Tunable thresholds for deciding when an utterance is ready to answer"""
    min_ready_chars: int = 8
    high_confidence: float = 0.9
    terminal_marks: str = "?"
    low_confidence: float = 0.5
    min_fragment_chars: int = 3
    min_final_chars: int = 2
    debounce_sec: float = 0.2
    speech_final_debounce_sec: float = 0.05
    fragment_ttl_sec: float = 3.0

    @classmethod
    def from_config(cls) -> "CompletionPolicy":
        from . import config as CFG

        return cls(**CFG.get_completion_settings())

    def is_noise(self, text: str, confidence: float) -> bool:
        return confidence < self.low_confidence and len(text) < self.min_fragment_chars

    def is_final_usable(self, text: str) -> bool:
        return len(text.strip()) >= self.min_final_chars

    def is_ready(self, text: str, confidence: float, speech_final: bool) -> bool:
        if speech_final:
            return True
        if len(text) > self.min_ready_chars:
            return True
        if any(mark in text for mark in self.terminal_marks):
            return True
        return confidence > self.high_confidence

    def debounce_for(self, speech_final: bool) -> float:
        return self.speech_final_debounce_sec if speech_final else self.debounce_sec


class RecognitionListener:
    """Callbacks fired from the bridge. Default implementations do nothing."""

    def on_interim(self, text: str) -> None:
        pass

    def on_final(self, text: str, confidence: float) -> None:
        pass

    def on_utterance(self, text: str, confidence: float) -> None:
        pass

    def on_recognition_error(self, error: Exception) -> None:
        pass


Connector = Callable[..., Awaitable[Any]]


class RecognitionBridge:
    """One live recognition stream for one conversation"""

    def __init__(self, listener: RecognitionListener, api_key: Optional[str],
                 url: str = "wss://api.deepgram.com/v1/listen",
                 params: Optional[Dict[str, Any]] = None,
                 policy: Optional[CompletionPolicy] = None,
                 clock: Optional[Clock] = None,
                 keepalive_sec: float = 5.0,
                 connect: Optional[Connector] = None):
        self.listener = listener
        self.api_key = api_key
        self.url = url
        self.params = params or {}
        self.policy = policy or CompletionPolicy()
        self.clock = clock or default_clock()
        self.keepalive_sec = keepalive_sec
        self._connect = connect or ws_connect

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None
        self._debouncer = Debouncer(self.clock)
        self._closed = False
        self._failed = False
        self._last_audio = 0.0

        self._fragments: List[str] = []
        self._fragment_confidence = 0.0
        self._last_fragment_at = 0.0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not (self._closed or self._failed)

    @property
    def has_pending_utterance(self) -> bool:
        return self._debouncer.pending

    def stream_url(self) -> str:
        if not self.params:
            return self.url
        return f"{self.url}?{urlencode(self.params)}"

    async def open(self) -> None:
        """Connect to the provider and start the reader and keep-alive tasks"""
        if self._closed:
            raise RecognitionError("recognition stream already closed",
                                   component="recognition", operation="open")
        if self._ws is not None:
            return
        headers = {"Authorization": f"Token {self.api_key}"}
        try:
            self._ws = await self._connect(self.stream_url(), additional_headers=headers)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise RecognitionError(f"could not connect to recognition provider: {e}",
                                   component="recognition", operation="open") from e

        loop = asyncio.get_running_loop()
        self._last_audio = self.clock.monotonic()
        self._reader = loop.create_task(self._read_loop())
        self._keepalive = loop.create_task(self._keepalive_loop())
        logger.info("Recognition stream opened")

    async def feed(self, frame: bytes) -> None:
        """Forward one PCM frame; silently ignored when the stream is not open"""
        if not self.is_open or not frame:
            return
        try:
            await self._ws.send(frame)
            self._last_audio = self.clock.monotonic()
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Dropped audio frame, recognition stream closed: {e}")

    def cancel_pending(self) -> bool:
        """Forget any utterance awaiting its debounce. Returns True if one was pending."""
        self._fragments = []
        return self._debouncer.cancel()

    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.cancel_pending()

        for task in (self._keepalive, self._reader):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.send(CLOSE_MESSAGE)
            except (websockets.exceptions.ConnectionClosed, OSError):
                pass
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                logger.debug(f"Error closing recognition socket: {e}")
        for task in (self._keepalive, self._reader):
            if task is not None and task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("Recognition stream closed")

    async def _keepalive_loop(self) -> None:
        while not self._closed:
            await self.clock.sleep(self.keepalive_sec)
            if self._closed or self._failed or self._ws is None:
                return
            if self.clock.monotonic() - self._last_audio < self.keepalive_sec:
                continue
            try:
                await self._ws.send(KEEPALIVE_MESSAGE)
                logger.debug("Recognition keep-alive sent")
            except websockets.exceptions.ConnectionClosed:
                return

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                result = parse_provider_message(raw)
                if result is not None:
                    self._handle_result(result)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as e:
            if not self._closed:
                self._report(RecognitionError(f"recognition stream dropped: {e}",
                                              component="recognition", operation="read"))
            return
        except Exception as e:
            if not self._closed:
                self._report(RecognitionError(f"recognition stream failed: {e}",
                                              component="recognition", operation="read"))
            return
        if not self._closed:
            self._report(RecognitionError("recognition stream ended unexpectedly",
                                          component="recognition", operation="read"))

    def _report(self, error: RecognitionError) -> None:
        logger.error(str(error))
        self._failed = True
        self.cancel_pending()
        try:
            self.listener.on_recognition_error(error)
        except Exception as e:
            logger.error(f"Recognition error listener failed: {e}")

    def _handle_result(self, result: RecognitionResult) -> None:
        text = result.transcript.strip()
        if not text:
            return
        if self.policy.is_noise(text, result.confidence):
            logger.debug(f"Discarded low-confidence fragment: {text!r}")
            return

        if not result.is_final:
            self.listener.on_interim(text)
            return

        if not self.policy.is_final_usable(text):
            return

        now = self.clock.monotonic()
        if self._fragments and not self._debouncer.pending and \
                now - self._last_fragment_at > self.policy.fragment_ttl_sec:
            logger.debug("Dropping stale unfinished fragment")
            self._fragments = []
        self._fragments.append(text)
        self._fragment_confidence = result.confidence
        self._last_fragment_at = now

        # a new final always restarts evaluation of the whole pending utterance
        self._debouncer.cancel()
        utterance = " ".join(self._fragments)
        if self.policy.is_ready(utterance, result.confidence, result.speech_final):
            self._debouncer.schedule(self.policy.debounce_for(result.speech_final), self._fire)
        # listeners can read has_pending_utterance to tell whether the utterance is now debouncing
        self.listener.on_final(text, result.confidence)

    def _fire(self) -> None:
        if self._closed or self._failed or not self._fragments:
            return
        utterance = " ".join(self._fragments)
        confidence = self._fragment_confidence
        self._fragments = []
        logger.info(f"Utterance complete: {utterance!r} (confidence {confidence:.2f})")
        self.listener.on_utterance(utterance, confidence)


def bridge_from_config(listener: RecognitionListener, clock: Optional[Clock] = None,
                       connect: Optional[Connector] = None) -> RecognitionBridge:
    from . import config as CFG

    return RecognitionBridge(
        listener,
        api_key=CFG.get_api_key("recognition"),
        url=CFG.get_recognition_url(),
        params=CFG.get_recognition_params(),
        policy=CompletionPolicy.from_config(),
        clock=clock,
        keepalive_sec=CFG.get_recognition_keepalive_sec(),
        connect=connect,
    )
