import asyncio
import os
import sys
from types import SimpleNamespace

import pytest
import requests

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from parley.backends import GeminiBackend, OpenAIChatBackend, build_backend
from parley.cancellation import CancellationToken
from parley.error_handler import GenerationError, TurnCancelled


def _response(payload, status_error=None):
    def raise_for_status():
        if status_error is not None:
            raise status_error

    return SimpleNamespace(json=lambda: payload, raise_for_status=raise_for_status)


def test_gemini_request_and_parse(monkeypatch):
    backend = GeminiBackend("fast", "gemini-1.5-flash", api_key="g-key", max_tokens=120)
    captured = {}

    def fake_post(url, params=None, json=None, timeout=None):
        captured.update(url=url, params=params, json=json)
        return _response({"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there."}]}}]})

    monkeypatch.setattr(backend.session, "post", fake_post)
    reply = asyncio.run(backend.generate("User: hi", "Be brief.", CancellationToken()))

    assert reply == "Hello there."
    assert captured["url"].endswith("/gemini-1.5-flash:generateContent")
    assert captured["params"] == {"key": "g-key"}
    assert captured["json"]["contents"][0]["parts"][0]["text"] == "Be brief.\n\nUser: hi"
    assert captured["json"]["generationConfig"]["maxOutputTokens"] == 120


def test_openai_request_and_parse(monkeypatch):
    backend = OpenAIChatBackend("fallback", "llama-3.1-8b-instant", api_key="q-key")
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update(json=json, headers=headers)
        return _response({"choices": [{"message": {"content": "  Sure thing.  "}}]})

    monkeypatch.setattr(backend.session, "post", fake_post)
    reply = asyncio.run(backend.generate("User: hi", "Be brief.", CancellationToken()))

    assert reply == "Sure thing."
    assert captured["headers"] == {"Authorization": "Bearer q-key"}
    assert [m["role"] for m in captured["json"]["messages"]] == ["system", "user"]
    assert captured["json"]["model"] == "llama-3.1-8b-instant"


@pytest.mark.parametrize("failure", [
    requests.exceptions.Timeout("slow"),
    requests.exceptions.ConnectionError("refused"),
])
def test_transport_errors_become_generation_errors(monkeypatch, failure):
    backend = OpenAIChatBackend("fallback", "m", api_key="k")

    def fake_post(*args, **kwargs):
        raise failure

    monkeypatch.setattr(backend.session, "post", fake_post)
    with pytest.raises(GenerationError):
        asyncio.run(backend.generate("p", "s", CancellationToken()))


def test_http_error_and_malformed_body(monkeypatch):
    backend = OpenAIChatBackend("fallback", "m", api_key="k")
    monkeypatch.setattr(backend.session, "post",
                        lambda *a, **k: _response({}, status_error=requests.HTTPError("429")))
    with pytest.raises(GenerationError):
        asyncio.run(backend.generate("p", "s", CancellationToken()))

    monkeypatch.setattr(backend.session, "post", lambda *a, **k: _response({"choices": []}))
    with pytest.raises(GenerationError):
        asyncio.run(backend.generate("p", "s", CancellationToken()))


def test_empty_text_is_an_error(monkeypatch):
    backend = OpenAIChatBackend("fallback", "m", api_key="k")
    monkeypatch.setattr(backend.session, "post",
                        lambda *a, **k: _response({"choices": [{"message": {"content": "   "}}]}))
    with pytest.raises(GenerationError):
        asyncio.run(backend.generate("p", "s", CancellationToken()))


def test_revoked_token_skips_request(monkeypatch):
    backend = OpenAIChatBackend("fallback", "m", api_key="k")
    calls = []
    monkeypatch.setattr(backend.session, "post", lambda *a, **k: calls.append(1))
    token = CancellationToken()
    token.cancel("barge-in")

    with pytest.raises(TurnCancelled):
        asyncio.run(backend.generate("p", "s", token))
    assert calls == []


def test_build_backend_kinds():
    gemini = build_backend("capable", {"kind": "gemini", "model": "gemini-1.5-pro", "temperature": 0.4}, "k")
    assert isinstance(gemini, GeminiBackend)
    assert gemini.temperature == 0.4

    custom = build_backend("local", {"kind": "openai", "model": "m", "url": "http://localhost:8080/v1/chat"}, None)
    assert custom.url == "http://localhost:8080/v1/chat"

    with pytest.raises(ValueError):
        build_backend("x", {"kind": "carrier-pigeon", "model": "m"}, None)
