import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from parley import config as cfg
from parley.error_handler import ConfigurationError


def _set_config(monkeypatch: pytest.MonkeyPatch, data: dict) -> None:
    monkeypatch.setattr(cfg, "_CFG", data, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", True, raising=False)


def _clear_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    for env_name in cfg.CREDENTIAL_ENV.values():
        monkeypatch.delenv(env_name, raising=False)


def test_defaults_when_config_is_empty(monkeypatch):
    _set_config(monkeypatch, {})

    assert cfg.get_server_host_port() == ("0.0.0.0", 5000)
    assert cfg.get_http_host_port() == ("0.0.0.0", 5001)
    assert cfg.get_cache_max_size() == 100
    assert cfg.get_cache_ttl_sec() == 300.0
    assert cfg.get_chunking_settings() == {"min_chars": 80, "ideal_chars": 120, "max_chars": 160}
    assert cfg.get_default_voice() == "en-US-terrell"
    assert cfg.get_session_grace_sec() == 300.0
    assert cfg.get_session_idle_timeout_sec() == 1800.0
    assert cfg.get_backend_names() == ["fast", "capable", "fallback"]


def test_completion_settings_override(monkeypatch):
    _set_config(monkeypatch, {"recognition": {"completion": {"debounce_sec": "0.3", "min_ready_chars": 12}}})

    settings = cfg.get_completion_settings()
    assert settings["debounce_sec"] == 0.3
    assert settings["min_ready_chars"] == 12
    assert settings["speech_final_debounce_sec"] == 0.05


def test_recognition_params_carry_audio_format(monkeypatch):
    _set_config(monkeypatch, {"recognition": {"language": "en-US"}})

    params = cfg.get_recognition_params()
    assert params["language"] == "en-US"
    assert params["encoding"] == "linear16"
    assert params["sample_rate"] == 16000
    assert params["endpointing"] == 250


def test_http_sidecar_flag_accepts_string_booleans(monkeypatch):
    _set_config(monkeypatch, {"server": {"http_enabled": " off "}})
    assert cfg.http_sidecar_enabled() is False

    _set_config(monkeypatch, {"server": {"http_enabled": "yes"}})
    assert cfg.http_sidecar_enabled() is True

    _set_config(monkeypatch, {"server": {"http_enabled": "maybe"}})
    assert cfg.http_sidecar_enabled() is True


def test_backend_settings_merge_with_defaults(monkeypatch):
    _set_config(monkeypatch, {"generation": {"timeout_sec": 12,
                                             "backends": {"fast": {"model": "gemini-2.0-flash"}}}})

    fast = cfg.get_backend_settings("fast")
    assert fast["model"] == "gemini-2.0-flash"
    assert fast["kind"] == "gemini"
    assert fast["timeout"] == 12.0
    assert cfg.get_backend_names() == ["fast"]


def test_strategy_backends(monkeypatch):
    _set_config(monkeypatch, {"generation": {"strategies": {"greeting": {"backends": ["fallback"]}}}})

    assert cfg.get_strategy_backends("greeting") == ["fallback"]
    assert cfg.get_strategy_backends("complex") is None


def test_validation_collects_every_error():
    with pytest.raises(ValueError) as excinfo:
        cfg._validate_config({
            "server": {"port": 70000},
            "recognition": {"completion": {"high_confidence": 1.5}},
            "synthesis": {"chunking": {"min_chars": 200, "ideal_chars": 120, "max_chars": 160}},
            "sessions": {"grace_sec": 0},
        })

    message = str(excinfo.value)
    assert "server.port" in message
    assert "recognition.completion.high_confidence" in message
    assert "min_chars <= ideal_chars <= max_chars" in message
    assert "sessions.grace_sec" in message


def test_validate_config_silent_reports_invalid_file(monkeypatch, tmp_path):
    bad = tmp_path / "config.yaml"
    bad.write_text("generation:\n  cache:\n    max_size: 0\n")

    monkeypatch.setattr(cfg, "_CONFIG_PATH", str(bad), raising=False)
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", False, raising=False)

    ok, messages = cfg.validate_config_silent()

    assert not ok
    assert any("generation.cache.max_size" in m for m in messages)


def test_shipped_config_is_valid(monkeypatch):
    shipped = os.path.join(os.path.dirname(__file__), "..", "config", "config.yaml")
    monkeypatch.setattr(cfg, "_CONFIG_PATH", shipped, raising=False)
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", False, raising=False)

    ok, messages = cfg.validate_config_silent()

    assert ok, messages
    assert cfg.get_strategy_backends("document") == ["capable", "fallback"]


def test_require_credentials_names_missing_keys(monkeypatch):
    _clear_credentials(monkeypatch)
    monkeypatch.setenv("DEEPGRAM_API_KEY", "dg")

    with pytest.raises(ConfigurationError) as excinfo:
        cfg.require_credentials()

    message = str(excinfo.value)
    assert "MURF_API_KEY" in message
    assert "GEMINI_API_KEY or GROQ_API_KEY" in message
    assert "DEEPGRAM_API_KEY" not in message


def test_require_credentials_accepts_single_generation_key(monkeypatch):
    _clear_credentials(monkeypatch)
    monkeypatch.setenv("DEEPGRAM_API_KEY", "dg")
    monkeypatch.setenv("MURF_API_KEY", "murf")
    monkeypatch.setenv("GROQ_API_KEY", "  groq  ")

    cfg.require_credentials()
    assert cfg.get_api_key("groq") == "groq"
    assert cfg.get_api_key("weather") is None


def test_reload_config_switches_file(monkeypatch, tmp_path):
    first = tmp_path / "first.yaml"
    first.write_text("server:\n  port: 6000\n")
    second = tmp_path / "second.yaml"
    second.write_text("server:\n  port: 7000\n")

    monkeypatch.setattr(cfg, "_CONFIG_PATH", str(first), raising=False)
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", False, raising=False)
    assert cfg.get_server_host_port()[1] == 6000

    cfg.reload_config(str(second))
    assert cfg.get_server_host_port()[1] == 7000

    second.write_text("server:\n  port: 7100\n")
    assert cfg.get_server_host_port()[1] == 7000
    cfg.reload_config()
    assert cfg.get_server_host_port()[1] == 7100
