"""
Response routing: classify an utterance, pick a generation strategy, consult
the reply cache, and walk the strategy's ordered back-end list until one
produces text.

Both the intent rules and the strategy table are plain data so they can be
tested without touching the network.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .backends import GenerationBackend
from .cache import ResponseCache, cache_key
from .cancellation import CancellationToken
from .error_handler import ErrorSeverity, GenerationError, TurnCancelled, handle_error
from .logging_utils import setup_logger
from .memory import MemorySnapshot, extract_location
from .weather import WeatherService

logger = setup_logger("parley.router", "logs/parley.log")

DEFAULT_APOLOGY = "I'm having trouble processing that right now. Could you try asking again?"


class IntentKind(str, Enum):
    WEATHER = "weather"
    DOCUMENT = "document"
    TASK = "task"
    GREETING = "greeting"
    SIMPLE = "simple"
    COMPLEX = "complex"
    MEDIUM = "medium"


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    complexity: str


@dataclass(frozen=True)
class IntentRule:
    kind: IntentKind
    complexity: str
    matches: Callable[[str, bool], bool]


_WEATHER = re.compile(r"\b(weather|temperature|forecast|raining|humidity)\b", re.IGNORECASE)
_DOCUMENT = re.compile(r"document|pdf|\bfile\b|summari[sz]e|uploaded|analy[sz]e|extract", re.IGNORECASE)
_EMAIL = re.compile(r"send\s+(an?\s+)?email|email\s+to|compose\s+email|mail\s+(my|the)?", re.IGNORECASE)
_CALENDAR = re.compile(r"schedule|calendar|meeting|appointment|book\s+(a\s+)?date|set\s+(a\s+)?reminder",
                       re.IGNORECASE)
_GREETING = re.compile(r"^(hi|hey|hello|what's up|how are you|good morning|good evening|who are you|"
                       r"what is your name|my name is)\b", re.IGNORECASE)
_NEEDS_DEPTH = re.compile(r"explain|compare|analy[sz]e|why|how does|detail", re.IGNORECASE)
_COMPLEX_PATTERNS = [
    re.compile(r"explain.*detail|compare|analy[sz]e|what.*difference|step.*step|detailed|comprehensive|thorough",
               re.IGNORECASE),
    re.compile(r"tell me about|describe|what is|how does", re.IGNORECASE),
    re.compile(r"\b(code|program|algorithm|implement)", re.IGNORECASE),
]


def _is_complex(text: str, _has_document: bool) -> bool:
    return len(text) > 100 or any(p.search(text) for p in _COMPLEX_PATTERNS)


INTENT_RULES: List[IntentRule] = [
    IntentRule(IntentKind.WEATHER, "simple", lambda t, d: bool(_WEATHER.search(t))),
    IntentRule(IntentKind.DOCUMENT, "complex", lambda t, d: d and bool(_DOCUMENT.search(t))),
    IntentRule(IntentKind.TASK, "complex", lambda t, d: bool(_EMAIL.search(t) or _CALENDAR.search(t))),
    IntentRule(IntentKind.GREETING, "simple", lambda t, d: bool(_GREETING.search(t.strip()))),
    IntentRule(IntentKind.SIMPLE, "simple", lambda t, d: len(t) < 50 and not _NEEDS_DEPTH.search(t)),
    IntentRule(IntentKind.COMPLEX, "complex", _is_complex),
]

_DEFAULT_INTENT = Intent(IntentKind.MEDIUM, "medium")


def classify_intent(text: str, has_document: bool = False,
                    rules: Sequence[IntentRule] = INTENT_RULES) -> Intent:
    """First matching rule wins; anything unmatched is a medium query."""
    text = text or ""
    for rule in rules:
        if rule.matches(text, has_document):
            return Intent(rule.kind, rule.complexity)
    return _DEFAULT_INTENT


@dataclass(frozen=True)
class Strategy:
    name: str
    backends: Tuple[str, ...]
    length_hint: str
    guidance: str = ""


_FAST = ("fast", "fallback")
_CAPABLE = ("capable", "fallback")

DEFAULT_STRATEGIES: Dict[IntentKind, Strategy] = {
    IntentKind.GREETING: Strategy(
        "greeting", _FAST,
        "Respond warmly and naturally in 20-40 words (2-3 sentences). Be direct and friendly.",
        "For greetings: keep it brief but warm and welcoming."),
    IntentKind.WEATHER: Strategy(
        "weather", _FAST,
        "Answer clearly and naturally in 40-70 words (3-4 sentences)."),
    IntentKind.SIMPLE: Strategy(
        "simple", _FAST,
        "Answer clearly and naturally in 40-70 words (3-4 sentences). Vary your language."),
    IntentKind.MEDIUM: Strategy(
        "medium", _CAPABLE,
        "Provide a helpful, natural response in 70-110 words (5-7 sentences). Use varied language."),
    IntentKind.COMPLEX: Strategy(
        "complex", _CAPABLE,
        "Provide a thorough, well-structured response in 120-180 words (8-12 sentences). "
        "Use clear transitions and organize information logically.",
        "Complex query detected. Provide a well-structured explanation with clear transitions between points."),
    IntentKind.TASK: Strategy(
        "task", _CAPABLE,
        "Confirm what you understood in 30-60 words and ask for any missing details.",
        "For email or calendar requests: confirm the action clearly and ask for any missing details."),
    IntentKind.DOCUMENT: Strategy(
        "document", _CAPABLE,
        "Provide a clear, structured response (80-120 words) with specific facts and details from the "
        "document above. Be natural and conversational.",
        "DOCUMENT CONTEXT PROVIDED: extract key facts and reference the document naturally."),
}


def strategies_from_config() -> Dict[IntentKind, Strategy]:
    """Default strategy table with back-end lists overridden from config"""
    from . import config as CFG

    table = dict(DEFAULT_STRATEGIES)
    for kind, strategy in DEFAULT_STRATEGIES.items():
        configured = CFG.get_strategy_backends(strategy.name)
        if configured:
            table[kind] = Strategy(strategy.name, tuple(configured), strategy.length_hint, strategy.guidance)
    return table


def strip_name_prefix(reply: str, assistant_name: str) -> str:
    """Remove a leading 'Name:' the model sometimes echoes"""
    pattern = re.compile(rf"^\s*{re.escape(assistant_name)}\s*:\s*", re.IGNORECASE)
    return pattern.sub("", reply or "").strip()


def compact_memory(memory: Optional[MemorySnapshot], limit: int = 250) -> str:
    if memory is None or memory.is_empty:
        return ""
    return memory.render()[:limit]


class ResponseRouter:
    """Turns an utterance into reply text, never raising for provider failures"""

    def __init__(self, backends: Dict[str, GenerationBackend], cache: ResponseCache,
                 weather: Optional[WeatherService] = None,
                 strategies: Optional[Dict[IntentKind, Strategy]] = None,
                 rules: Sequence[IntentRule] = INTENT_RULES,
                 assistant_name: str = "Parley", persona: str = "",
                 apology: str = DEFAULT_APOLOGY, excerpt_chars: int = 3500,
                 memory_chars: int = 250):
        self.backends = backends
        self.cache = cache
        self.weather = weather
        self.strategies = strategies or dict(DEFAULT_STRATEGIES)
        self.rules = rules
        self.assistant_name = assistant_name
        self.persona = persona
        self.apology = apology
        self.excerpt_chars = excerpt_chars
        self.memory_chars = memory_chars

    def build_system_prompt(self, strategy: Strategy) -> str:
        base = (
            f"You are {self.assistant_name}, a voice assistant. Your replies are spoken aloud, so use "
            "short sentences, contractions and a natural conversational tone. Never use markdown, "
            "lists or emoji. Reference earlier conversation naturally when it helps."
        )
        parts = [base]
        if self.persona:
            parts.append(self.persona)
        if strategy.guidance:
            parts.append(strategy.guidance)
        return "\n\n".join(parts)

    def build_prompt(self, utterance: str, strategy: Strategy, memory: Optional[MemorySnapshot],
                     document_text: Optional[str] = None) -> str:
        context = compact_memory(memory, self.memory_chars)
        if document_text:
            prefix = f"Previous conversation context:\n{context}\n\n" if context else ""
            return (f"{prefix}DOCUMENT CONTENT:\n{document_text[:self.excerpt_chars]}\n\n"
                    f"USER REQUEST: {utterance}\n\n{strategy.length_hint}")
        prefix = f"Context: {context}\n\n" if context else ""
        return f"{prefix}User: {utterance}\n\n{strategy.length_hint}"

    async def route(self, utterance: str, memory: Optional[MemorySnapshot], document_text: Optional[str],
                    token: CancellationToken) -> str:
        """Reply text for one utterance.

        Raises TurnCancelled if the token is revoked; every other failure
        degrades to the apology string.
        """
        token.raise_if_cancelled()
        start = time.monotonic()
        has_document = bool(document_text)
        intent = classify_intent(utterance, has_document, self.rules)
        logger.info(f"Intent: {intent.kind.value} ({intent.complexity}) for {utterance[:80]!r}")

        if intent.kind is IntentKind.WEATHER and self.weather is not None and self.weather.available:
            return await self._weather_reply(utterance, memory, token)

        key = cache_key(utterance, has_document)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for {key} in {(time.monotonic() - start) * 1000:.0f}ms")
            return cached

        strategy = self.strategies.get(intent.kind) or self.strategies[IntentKind.MEDIUM]
        grounded = document_text if intent.kind is IntentKind.DOCUMENT else None
        prompt = self.build_prompt(utterance, strategy, memory, grounded)
        system_prompt = self.build_system_prompt(strategy)

        reply = await self._generate(strategy, prompt, system_prompt, token)
        if reply is None:
            logger.error(f"All back-ends failed for strategy {strategy.name}")
            return self.apology

        reply = strip_name_prefix(reply, self.assistant_name)
        token.raise_if_cancelled()
        if reply:
            self.cache.put(key, reply)
        logger.info(f"Routed via {strategy.name} in {(time.monotonic() - start) * 1000:.0f}ms ({len(reply)} chars)")
        return reply or self.apology

    async def _generate(self, strategy: Strategy, prompt: str, system_prompt: str,
                        token: CancellationToken) -> Optional[str]:
        for name in strategy.backends:
            backend = self.backends.get(name)
            if backend is None:
                logger.debug(f"Back-end '{name}' not configured; skipping")
                continue
            token.raise_if_cancelled()
            try:
                return await backend.generate(prompt, system_prompt, token)
            except TurnCancelled:
                raise
            except GenerationError as e:
                logger.warning(f"Back-end '{name}' failed, trying next: {e}")
                handle_error(e, "router", f"generate:{name}", ErrorSeverity.LOW)
            except Exception as e:
                handle_error(e, "router", f"generate:{name}", ErrorSeverity.MEDIUM)
        return None

    async def _weather_reply(self, utterance: str, memory: Optional[MemorySnapshot],
                             token: CancellationToken) -> str:
        location = extract_location(utterance) or (memory.location if memory else None)
        report = await token.checkpoint(asyncio.to_thread(self.weather.lookup, location))
        return report.message


def router_from_config(backends: Dict[str, GenerationBackend], cache: ResponseCache,
                       weather: Optional[WeatherService] = None) -> ResponseRouter:
    from . import config as CFG

    return ResponseRouter(
        backends,
        cache,
        weather=weather,
        strategies=strategies_from_config(),
        assistant_name=CFG.get_assistant_name(),
        persona=CFG.get_assistant_persona(),
        apology=CFG.get_apology_text(),
        excerpt_chars=CFG.get_document_excerpt_chars(),
    )
