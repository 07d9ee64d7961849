"""
Chunked speech synthesis.

Reply text is sanitised, split into sentence-aligned chunks inside a
min/ideal/max character band, and synthesised chunk by chunk. The first
`pipeline_depth` chunks are requested concurrently to shorten time to first
audio; audio always leaves in chunk order and never after the turn's token
has been revoked.
"""
from __future__ import annotations

import asyncio
import re
import textwrap
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import requests

from .cancellation import CancellationToken
from .clock import Clock, default_clock
from .error_handler import ErrorSeverity, SynthesisError, TurnCancelled, handle_error
from .logging_utils import setup_logger

logger = setup_logger("parley.synthesis", "logs/parley.log")

SYNTHESIS_FAILED_MESSAGE = "Voice synthesis failed. Please try again."


@dataclass(frozen=True)
class VoiceConfig:
    voice_id: str
    style: str = "Conversational"
    speed: int = 0
    pitch: int = 0
    variation: int = 1


VOICE_CONFIGS: Dict[str, VoiceConfig] = {
    v: VoiceConfig(v) for v in (
        "en-US-terrell", "en-US-michael", "en-US-wayne", "en-US-ryan",
        "en-US-natalie", "en-US-lily", "en-US-claire",
        "en-GB-william", "en-GB-emma",
    )
}
DEFAULT_VOICE = "en-US-terrell"


def resolve_voice(voice_id: Optional[str], default: str = DEFAULT_VOICE) -> VoiceConfig:
    """Voice settings for voice_id; unknown ids fall back to the default voice"""
    if voice_id and voice_id in VOICE_CONFIGS:
        return VOICE_CONFIGS[voice_id]
    return VOICE_CONFIGS.get(default, VoiceConfig(default))


_QUOTES = re.compile("[“”«»„]")
_APOSTROPHES = re.compile("[‘’]")
_MARKDOWN = re.compile(r"\*\*|__|`|(?<!\w)\*(?=\S)|(?<=\S)\*(?!\w)")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_for_tts(text: str, assistant_name: str = "Parley") -> str:
    if not text:
        return ""
    text = _QUOTES.sub('"', text)
    text = _APOSTROPHES.sub("'", text)
    text = text.replace("…", "...")
    text = _MARKDOWN.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    text = re.sub(rf"^{re.escape(assistant_name)}:\s*", "", text, flags=re.IGNORECASE)
    return _CONTROL.sub("", text)


_SENTENCE_END = re.compile(r"[.!?]+(?:\s+(?=[A-Z])|$)")


def split_into_sentences(text: str) -> List[str]:
    sentences = []
    last = 0
    for match in _SENTENCE_END.finditer(text):
        sentence = text[last:match.end()].strip()
        if sentence:
            sentences.append(sentence)
        last = match.end()
    remaining = text[last:].strip()
    if remaining:
        sentences.append(remaining)
    return sentences


@dataclass(frozen=True)
class ChunkingPolicy:
    min_chars: int = 80
    ideal_chars: int = 120
    max_chars: int = 160

    @classmethod
    def from_config(cls) -> "ChunkingPolicy":
        from . import config as CFG

        return cls(**CFG.get_chunking_settings())


# Break after commas/semicolons, or before a conjunction (which stays in the text)
_SECONDARY_BREAK = re.compile(r"(?<=[,;])\s+|\s+(?=(?:and|but|or|so)\b)")


def _split_long(sentence: str, max_chars: int) -> List[str]:
    parts: List[str] = []
    current = ""
    for piece in _SECONDARY_BREAK.split(sentence):
        piece = piece.strip()
        if not piece:
            continue
        if len(piece) > max_chars:
            if current:
                parts.append(current)
                current = ""
            parts.extend(textwrap.wrap(piece, max_chars, break_long_words=False, break_on_hyphens=False))
            continue
        candidate = f"{current} {piece}" if current else piece
        if len(candidate) <= max_chars:
            current = candidate
        else:
            parts.append(current)
            current = piece
    if current:
        parts.append(current)
    return parts


def _top_up(current: str, piece: str, policy: ChunkingPolicy) -> Tuple[str, str]:
    """Move leading clauses of `piece` onto a short `current` until it reaches min_chars"""
    clauses = [c for c in (p.strip() for p in _SECONDARY_BREAK.split(piece)) if c]
    taken = 0
    while taken < len(clauses) - 1 and len(current) < policy.min_chars:
        candidate = f"{current} {clauses[taken]}"
        if len(candidate) > policy.max_chars:
            break
        current = candidate
        taken += 1
    return current, " ".join(clauses[taken:])


def split_into_chunks(text: str, policy: Optional[ChunkingPolicy] = None,
                      assistant_name: str = "Parley") -> List[str]:
    """Sentence-aligned chunks no longer than max_chars.

    Short sentences are merged until the ideal size is reached; sentences
    over the limit are broken at commas, semicolons or conjunctions and, as a
    last resort, at word boundaries. A short chunk about to be flushed takes
    leading clauses from the next sentence until it reaches min_chars, and a
    short trailing chunk is folded into its predecessor when that still fits.
    """
    policy = policy or ChunkingPolicy()
    text = sanitize_for_tts(text, assistant_name)
    if not text:
        return []

    chunks: List[str] = []
    current = ""
    for sentence in split_into_sentences(text):
        pieces = [sentence] if len(sentence) <= policy.max_chars else _split_long(sentence, policy.max_chars)
        for piece in pieces:
            candidate = f"{current} {piece}" if current else piece
            if len(candidate) <= policy.max_chars:
                current = candidate
                if len(current) >= policy.ideal_chars:
                    chunks.append(current)
                    current = ""
            else:
                if current and len(current) < policy.min_chars:
                    current, piece = _top_up(current, piece, policy)
                if current:
                    chunks.append(current)
                current = piece
    if current:
        chunks.append(current)

    if len(chunks) > 1 and len(chunks[-1]) < policy.min_chars:
        merged = f"{chunks[-2]} {chunks[-1]}"
        if len(merged) <= policy.max_chars:
            chunks[-2:] = [merged]

    logger.debug(f"Split reply into {len(chunks)} chunk(s): {[len(c) for c in chunks]}")
    return chunks


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str


class SynthesisProvider:
    """Turns one chunk of text into one audio payload"""

    async def synthesize(self, text: str, voice: VoiceConfig, token: CancellationToken) -> bytes:
        raise NotImplementedError


class MurfSynthesizer(SynthesisProvider):
    """Streaming speech endpoint over requests, with a minimum gap between request starts"""

    def __init__(self, api_key: Optional[str], url: str = "https://global.api.murf.ai/v1/speech/stream",
                 timeout: float = 30.0, min_interval: float = 0.1, clock: Optional[Clock] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.min_interval = min_interval
        self.clock = clock or default_clock()
        self.session = session or requests.Session()
        self._last_call = float("-inf")
        self._rate_lock: Optional[asyncio.Lock] = None

    def build_payload(self, text: str, voice: VoiceConfig) -> Dict[str, object]:
        return {
            "voice_id": voice.voice_id,
            "style": voice.style,
            "text": text,
            "model": "FALCON",
            "format": "MP3",
            "sampleRate": 24000,
            "channelType": "MONO",
            "speed": voice.speed,
            "pitch": voice.pitch,
            "variation": voice.variation,
            "pauseSettings": {"sentencePause": 420, "commaPause": 220},
        }

    async def _respect_rate_limit(self) -> None:
        if self._rate_lock is None:
            self._rate_lock = asyncio.Lock()
        async with self._rate_lock:
            wait = self.min_interval - (self.clock.monotonic() - self._last_call)
            if wait > 0:
                await self.clock.sleep(wait)
            self._last_call = self.clock.monotonic()

    def _post(self, text: str, voice: VoiceConfig) -> bytes:
        try:
            resp = self.session.post(
                self.url,
                json=self.build_payload(text, voice),
                headers={"api-key": self.api_key or "", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SynthesisError(f"synthesis request failed: {e}", component="synthesis",
                                 operation="post") from e
        if not resp.content:
            raise SynthesisError("synthesis returned no audio", component="synthesis", operation="post")
        return resp.content

    async def synthesize(self, text: str, voice: VoiceConfig, token: CancellationToken) -> bytes:
        token.raise_if_cancelled()
        await self._respect_rate_limit()
        start = time.monotonic()
        audio = await token.checkpoint(asyncio.to_thread(self._post, text, voice))
        logger.info(f"Synthesised {len(text)} chars as {len(audio) / 1024:.1f}KB "
                    f"in {(time.monotonic() - start) * 1000:.0f}ms ({voice.voice_id})")
        return audio


@dataclass
class StreamOutcome:
    total: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: bool = False
    channel_closed: bool = False

    @property
    def completed(self) -> bool:
        return not self.cancelled and not self.channel_closed and self.total > 0 and self.sent > 0

    @property
    def all_failed(self) -> bool:
        return not self.cancelled and not self.channel_closed and self.total > 0 and self.sent == 0


# emit(audio) enqueues one frame and returns False once the client is gone
Emit = Callable[[bytes], bool]


class SynthesisStreamer:
    def __init__(self, provider: SynthesisProvider, policy: Optional[ChunkingPolicy] = None,
                 pacing_sec: float = 0.12, pipeline_depth: int = 2, clock: Optional[Clock] = None,
                 assistant_name: str = "Parley", default_voice: str = DEFAULT_VOICE):
        self.provider = provider
        self.policy = policy or ChunkingPolicy()
        self.pacing_sec = pacing_sec
        self.pipeline_depth = max(1, pipeline_depth)
        self.clock = clock or default_clock()
        self.assistant_name = assistant_name
        self.default_voice = default_voice

    def plan(self, text: str) -> List[Chunk]:
        return [Chunk(i, t) for i, t in enumerate(split_into_chunks(text, self.policy, self.assistant_name))]

    async def _synthesize(self, chunk: Chunk, voice: VoiceConfig, token: CancellationToken) -> Optional[bytes]:
        """Audio for one chunk, or None if it failed. TurnCancelled propagates."""
        try:
            return await self.provider.synthesize(chunk.text, voice, token)
        except (TurnCancelled, asyncio.CancelledError):
            raise
        except SynthesisError as e:
            logger.warning(f"Chunk {chunk.index + 1} failed: {e}")
        except Exception as e:
            handle_error(e, "synthesis", f"chunk:{chunk.index}", ErrorSeverity.MEDIUM)
        return None

    async def stream(self, text: str, voice_id: Optional[str], token: CancellationToken, emit: Emit) -> StreamOutcome:
        """Synthesise text and emit audio frames in chunk order."""
        chunks = self.plan(text)
        outcome = StreamOutcome(total=len(chunks))
        if not chunks:
            logger.warning("Nothing to synthesise after sanitising reply")
            return outcome

        voice = resolve_voice(voice_id, self.default_voice)
        start = time.monotonic()
        head = chunks[:self.pipeline_depth]
        loop = asyncio.get_running_loop()
        pending = [loop.create_task(self._synthesize(chunk, voice, token)) for chunk in head]

        try:
            for chunk in chunks:
                if token.cancelled:
                    outcome.cancelled = True
                    break
                if chunk.index < len(pending):
                    audio = await pending[chunk.index]
                else:
                    audio = await self._synthesize(chunk, voice, token)

                if audio is None:
                    outcome.failed += 1
                    continue
                # check and enqueue with no suspension in between
                if token.cancelled:
                    outcome.cancelled = True
                    break
                if not emit(audio):
                    outcome.channel_closed = True
                    break
                outcome.sent += 1
                logger.debug(f"Sent chunk {chunk.index + 1}/{len(chunks)} ({len(audio)} bytes)")

                if chunk.index < len(chunks) - 1 and self.pacing_sec > 0:
                    await self.clock.sleep(self.pacing_sec)
        except TurnCancelled:
            outcome.cancelled = True
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()
            for task in pending:
                if task.done() and not task.cancelled():
                    task.exception()

        elapsed = (time.monotonic() - start) * 1000
        state = "interrupted" if outcome.cancelled else "complete"
        logger.info(f"Synthesis {state}: {outcome.sent}/{outcome.total} chunks in {elapsed:.0f}ms "
                    f"({outcome.failed} failed)")
        return outcome


def streamer_from_config(clock: Optional[Clock] = None) -> SynthesisStreamer:
    from . import config as CFG

    provider = MurfSynthesizer(
        CFG.get_api_key("synthesis"),
        url=CFG.get_synthesis_url(),
        timeout=CFG.get_synthesis_timeout_sec(),
        min_interval=CFG.get_synthesis_min_interval_sec(),
        clock=clock,
    )
    return SynthesisStreamer(
        provider,
        policy=ChunkingPolicy.from_config(),
        pacing_sec=CFG.get_synthesis_pacing_sec(),
        pipeline_depth=CFG.get_synthesis_pipeline_depth(),
        clock=clock,
        assistant_name=CFG.get_assistant_name(),
        default_voice=CFG.get_default_voice(),
    )
