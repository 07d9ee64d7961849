"""
Text generation back-ends.

Each back-end issues one blocking HTTP request with requests, run in a worker
thread so the event loop keeps serving other sessions. Cancellation is
cooperative: the token is checked before the request is issued and again when
it returns, and a revoked turn never sees the result.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import requests

from .cancellation import CancellationToken
from .error_handler import GenerationError
from .logging_utils import setup_logger

logger = setup_logger("parley.backends", "logs/parley.log")


class GenerationBackend:
    """Base class: subclasses implement _request() synchronously."""

    def __init__(self, name: str, model: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.name = name
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    async def generate(self, prompt: str, system_prompt: str, token: CancellationToken) -> str:
        token.raise_if_cancelled()
        start = time.monotonic()
        text = await token.checkpoint(asyncio.to_thread(self._call, prompt, system_prompt))
        elapsed_ms = (time.monotonic() - start) * 1000
        if not text or not text.strip():
            raise GenerationError(f"{self.name} returned an empty response",
                                  component="backends", operation=self.name)
        logger.info(f"{self.name} ({self.model}) responded in {elapsed_ms:.0f}ms ({len(text)} chars)")
        return text.strip()

    def _call(self, prompt: str, system_prompt: str) -> str:
        try:
            return self._request(prompt, system_prompt)
        except requests.exceptions.Timeout as e:
            raise GenerationError(f"{self.name} timed out", component="backends", operation=self.name) from e
        except requests.exceptions.ConnectionError as e:
            raise GenerationError(f"{self.name} unreachable", component="backends", operation=self.name) from e
        except requests.RequestException as e:
            raise GenerationError(f"{self.name} request failed: {e}", component="backends",
                                  operation=self.name) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GenerationError(f"{self.name} returned a malformed response: {e}", component="backends",
                                  operation=self.name) from e

    def _request(self, prompt: str, system_prompt: str) -> str:
        raise NotImplementedError


class GeminiBackend(GenerationBackend):
    """Google Generative Language REST API (generateContent)"""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(self, name: str, model: str, api_key: Optional[str], temperature: float = 0.7,
                 top_p: float = 0.9, max_tokens: int = 300, timeout: float = 30.0,
                 url: Optional[str] = None, session: Optional[requests.Session] = None):
        super().__init__(name, model, timeout=timeout, session=session)
        self.api_key = api_key
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.url = url or f"{self.BASE_URL}/{model}:generateContent"

    def _request(self, prompt: str, system_prompt: str) -> str:
        payload = {
            "contents": [
                {"role": "user", "parts": [{"text": f"{system_prompt}\n\n{prompt}"}]},
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "topP": self.top_p,
                "maxOutputTokens": self.max_tokens,
                "candidateCount": 1,
            },
        }
        r = self.session.post(self.url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
        r.raise_for_status()
        data = r.json()
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts)


class OpenAIChatBackend(GenerationBackend):
    """Any OpenAI-compatible /v1/chat/completions endpoint (Groq by default)"""

    def __init__(self, name: str, model: str, api_key: Optional[str],
                 url: str = "https://api.groq.com/openai/v1/chat/completions",
                 temperature: float = 0.75, top_p: float = 0.9, max_tokens: int = 350,
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        super().__init__(name, model, timeout=timeout, session=session)
        self.api_key = api_key
        self.url = url
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens

    def _request(self, prompt: str, system_prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        r = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        r.raise_for_status()
        data = r.json()
        return data["choices"][0]["message"]["content"] or ""


_KINDS = {"gemini": GeminiBackend, "openai": OpenAIChatBackend}
_KEY_PROVIDER = {"gemini": "gemini", "openai": "groq"}


def build_backend(name: str, settings: Dict[str, Any], api_key: Optional[str]) -> GenerationBackend:
    kind = str(settings.get("kind", "openai"))
    cls = _KINDS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown generation backend kind: {kind}")
    kwargs: Dict[str, Any] = {
        "model": str(settings["model"]),
        "api_key": api_key,
        "temperature": float(settings.get("temperature", 0.7)),
        "top_p": float(settings.get("top_p", 0.9)),
        "max_tokens": int(settings.get("max_tokens", 300)),
        "timeout": float(settings.get("timeout", 30.0)),
    }
    if settings.get("url"):
        kwargs["url"] = str(settings["url"])
    return cls(name, **kwargs)


def build_backends_from_config() -> Dict[str, GenerationBackend]:
    from . import config as CFG

    backends: Dict[str, GenerationBackend] = {}
    for name in CFG.get_backend_names():
        settings = CFG.get_backend_settings(name)
        provider = settings.get("api_key_provider") or _KEY_PROVIDER.get(str(settings.get("kind", "openai")), "groq")
        api_key = CFG.get_api_key(str(provider))
        if not api_key:
            logger.warning(f"Generation backend '{name}' has no API key; it will be skipped")
            continue
        backends[name] = build_backend(name, settings, api_key)
    return backends
