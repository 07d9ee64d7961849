"""
Centralized configuration loader and accessors for Parley.

Loads YAML from `config/config.yaml` (or the file named by PARLEY_CONFIG) and
provides typed getters aligned with the documented schema (server.*,
recognition.*, generation.*, synthesis.*, sessions.*, weather.*, documents.*,
assistant.*). Provider credentials are read from the environment only.
"""
from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .error_handler import ConfigurationError


_CONFIG_PATH = os.environ.get(
    "PARLEY_CONFIG",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "config", "config.yaml")),
)
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})

CREDENTIAL_ENV = {
    "recognition": "DEEPGRAM_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "groq": "GROQ_API_KEY",
    "synthesis": "MURF_API_KEY",
    "weather": "OPENWEATHER_API_KEY",
}


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    # Validate configuration after loading
    _validate_config(_CFG)
    _LOADED = True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors = []
    warnings = []

    server_cfg = config.get("server", {}) or {}
    for key in ("port", "http_port"):
        if key in server_cfg:
            port = server_cfg[key]
            if not _is_number(port) or port < 1 or port > 65535:
                errors.append(f"server.{key} must be between 1 and 65535")
    if "host" in server_cfg and not _is_valid_host(server_cfg["host"]):
        errors.append("server.host is not a valid host address")

    rec_cfg = config.get("recognition", {}) or {}
    completion = rec_cfg.get("completion", {}) or {}
    for key in ("high_confidence", "low_confidence"):
        if key in completion:
            val = completion[key]
            if not _is_number(val) or val < 0 or val > 1:
                errors.append(f"recognition.completion.{key} must be between 0 and 1")
    for key in ("debounce_sec", "speech_final_debounce_sec"):
        if key in completion:
            val = completion[key]
            if not _is_number(val) or val < 0:
                errors.append(f"recognition.completion.{key} must be a non-negative number")
            elif val > 1.0:
                warnings.append(f"recognition.completion.{key} above one second will feel sluggish")
    if "keepalive_sec" in rec_cfg:
        val = rec_cfg["keepalive_sec"]
        if not _is_number(val) or val <= 0:
            errors.append("recognition.keepalive_sec must be a positive number")

    gen_cfg = config.get("generation", {}) or {}
    cache_cfg = gen_cfg.get("cache", {}) or {}
    if "max_size" in cache_cfg:
        val = cache_cfg["max_size"]
        if not _is_number(val) or val < 1:
            errors.append("generation.cache.max_size must be a positive number")
    if "ttl_sec" in cache_cfg:
        val = cache_cfg["ttl_sec"]
        if not _is_number(val) or val <= 0:
            errors.append("generation.cache.ttl_sec must be a positive number")
    for name, backend in (gen_cfg.get("backends", {}) or {}).items():
        if not isinstance(backend, dict):
            errors.append(f"generation.backends.{name} must be a mapping")
            continue
        if "temperature" in backend:
            temp = backend["temperature"]
            if not _is_number(temp) or temp < 0 or temp > 2:
                errors.append(f"generation.backends.{name}.temperature must be between 0 and 2")
        if "max_tokens" in backend:
            max_tokens = backend["max_tokens"]
            if not _is_number(max_tokens) or max_tokens <= 0:
                errors.append(f"generation.backends.{name}.max_tokens must be a positive number")
    for name, strategy in (gen_cfg.get("strategies", {}) or {}).items():
        backends = (strategy or {}).get("backends") if isinstance(strategy, dict) else None
        if backends is not None and (not isinstance(backends, list) or not backends):
            errors.append(f"generation.strategies.{name}.backends must be a non-empty list")

    syn_cfg = config.get("synthesis", {}) or {}
    chunk_cfg = syn_cfg.get("chunking", {}) or {}
    if chunk_cfg:
        lo = chunk_cfg.get("min_chars", 80)
        ideal = chunk_cfg.get("ideal_chars", 120)
        hi = chunk_cfg.get("max_chars", 160)
        if not all(_is_number(v) and v > 0 for v in (lo, ideal, hi)):
            errors.append("synthesis.chunking values must be positive numbers")
        elif not lo <= ideal <= hi:
            errors.append("synthesis.chunking must satisfy min_chars <= ideal_chars <= max_chars")
    if "pipeline_depth" in syn_cfg:
        depth = syn_cfg["pipeline_depth"]
        if not _is_number(depth) or depth < 1:
            errors.append("synthesis.pipeline_depth must be at least 1")
        elif depth > 4:
            warnings.append("synthesis.pipeline_depth above 4 may hit provider rate limits")

    sess_cfg = config.get("sessions", {}) or {}
    for key in ("idle_timeout_sec", "grace_sec", "sweep_interval_sec"):
        if key in sess_cfg:
            val = sess_cfg[key]
            if not _is_number(val) or val <= 0:
                errors.append(f"sessions.{key} must be a positive number")

    doc_cfg = config.get("documents", {}) or {}
    if "allowed_extensions" in doc_cfg and not isinstance(doc_cfg["allowed_extensions"], list):
        errors.append("documents.allowed_extensions must be a list")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ValueError(error_msg)

    if warnings:
        for warning in warnings:
            print(f"Config warning: {warning}")


def _is_valid_host(host: Any) -> bool:
    """Validate host address format"""
    if not host or not isinstance(host, str):
        return False

    if host in ["localhost", "127.0.0.1", "0.0.0.0"]:
        return True

    ip_pattern = r'^(\d{1,3}\.){3}\d{1,3}$'
    if re.match(ip_pattern, host):
        parts = host.split('.')
        return all(0 <= int(part) <= 255 for part in parts)

    hostname_pattern = r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$'
    return bool(re.match(hostname_pattern, host))


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("generation.cache.ttl_sec", 300)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback.

    Args:
        path: Dot-separated configuration path
        default: Default value if path not found or casting fails
        cast_type: Type to cast the value to

    Returns:
        The cast value or default
    """
    val = get(path, default)

    if cast_type is bool:
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            normalized = val.strip().lower()
            if normalized in _BOOL_TRUE_VALUES:
                return True
            if normalized in _BOOL_FALSE_VALUES:
                return False
            return default
        try:
            return bool(val)
        except (TypeError, ValueError):
            return default

    if isinstance(val, cast_type):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


# ---- Credentials ----

def get_api_key(provider: str) -> Optional[str]:
    """Return the API key for a provider from the environment, or None."""
    env_name = CREDENTIAL_ENV.get(provider)
    if not env_name:
        return None
    value = os.environ.get(env_name, "").strip()
    return value or None


def missing_credentials() -> List[str]:
    """Names of required environment variables that are not set."""
    missing = []
    for provider in ("recognition", "synthesis"):
        if not get_api_key(provider):
            missing.append(CREDENTIAL_ENV[provider])
    if not (get_api_key("gemini") or get_api_key("groq")):
        missing.append(f"{CREDENTIAL_ENV['gemini']} or {CREDENTIAL_ENV['groq']}")
    return missing


def require_credentials() -> None:
    """Refuse to start without the provider credentials the server needs."""
    missing = missing_credentials()
    if missing:
        raise ConfigurationError(
            "Missing required provider credentials: " + ", ".join(missing),
            component="config",
            operation="require_credentials",
        )


# ---- Server ----

def get_server_host_port() -> Tuple[str, int]:
    host = str(get("server.host", "0.0.0.0"))
    port = get_typed("server.port", 5000, int)
    return host, port


def get_http_host_port() -> Tuple[str, int]:
    host = str(get("server.http_host", get("server.host", "0.0.0.0")))
    port = get_typed("server.http_port", 5001, int)
    return host, port


def http_sidecar_enabled() -> bool:
    return get_typed("server.http_enabled", True, bool)


# ---- Recognition ----

def get_recognition_url() -> str:
    return str(get("recognition.url", "wss://api.deepgram.com/v1/listen"))


def get_recognition_params() -> Dict[str, Any]:
    params = {
        "model": str(get("recognition.model", "nova-2")),
        "language": str(get("recognition.language", "en-IN")),
        "encoding": "linear16",
        "sample_rate": get_typed("recognition.sample_rate", 16000, int),
        "channels": 1,
        "punctuate": "true",
        "interim_results": "true",
        "endpointing": get_typed("recognition.endpointing_ms", 250, int),
        "vad_events": "true",
        "smart_format": "true",
    }
    return params


def get_recognition_keepalive_sec() -> float:
    return get_typed("recognition.keepalive_sec", 5.0, float)


def get_completion_settings() -> Dict[str, Any]:
    """Thresholds for the utterance-completion heuristic."""
    return {
        "min_ready_chars": get_typed("recognition.completion.min_ready_chars", 8, int),
        "high_confidence": get_typed("recognition.completion.high_confidence", 0.9, float),
        "terminal_marks": str(get("recognition.completion.terminal_marks", "?")),
        "low_confidence": get_typed("recognition.completion.low_confidence", 0.5, float),
        "min_fragment_chars": get_typed("recognition.completion.min_fragment_chars", 3, int),
        "min_final_chars": get_typed("recognition.completion.min_final_chars", 2, int),
        "debounce_sec": get_typed("recognition.completion.debounce_sec", 0.2, float),
        "speech_final_debounce_sec": get_typed("recognition.completion.speech_final_debounce_sec", 0.05, float),
        "fragment_ttl_sec": get_typed("recognition.completion.fragment_ttl_sec", 3.0, float),
    }


def get_barge_in_min_chars() -> int:
    return get_typed("recognition.barge_in_min_chars", 3, int)


# ---- Generation ----

def get_backend_settings(name: str) -> Dict[str, Any]:
    defaults: Dict[str, Dict[str, Any]] = {
        "fast": {"kind": "gemini", "model": "gemini-1.5-flash", "temperature": 0.7,
                 "top_p": 0.85, "max_tokens": 300},
        "capable": {"kind": "gemini", "model": "gemini-1.5-pro", "temperature": 0.7,
                    "top_p": 0.9, "max_tokens": 400},
        "fallback": {"kind": "openai", "model": "llama-3.3-70b-versatile", "temperature": 0.75,
                     "top_p": 0.9, "max_tokens": 350,
                     "url": "https://api.groq.com/openai/v1/chat/completions"},
    }
    merged = dict(defaults.get(name, {}))
    merged.update(get(f"generation.backends.{name}", {}) or {})
    merged.setdefault("timeout", get_typed("generation.timeout_sec", 30.0, float))
    return merged


def get_backend_names() -> List[str]:
    configured = get("generation.backends", None)
    if isinstance(configured, dict) and configured:
        return list(configured.keys())
    return ["fast", "capable", "fallback"]


def get_strategy_backends(strategy: str) -> Optional[List[str]]:
    backends = get(f"generation.strategies.{strategy}.backends", None)
    return list(backends) if backends else None


def get_cache_max_size() -> int:
    return get_typed("generation.cache.max_size", 100, int)


def get_cache_ttl_sec() -> float:
    return get_typed("generation.cache.ttl_sec", 300.0, float)


def get_cache_purge_interval_sec() -> float:
    return get_typed("generation.cache.purge_interval_sec", 60.0, float)


def get_document_excerpt_chars() -> int:
    return get_typed("generation.document_excerpt_chars", 3500, int)


def get_apology_text() -> str:
    return str(get("generation.apology",
                   "I'm having trouble processing that right now. Could you try asking again?"))


def get_assistant_name() -> str:
    return str(get("assistant.name", "Parley"))


def get_assistant_persona() -> str:
    return str(get("assistant.persona", ""))


# ---- Synthesis ----

def get_synthesis_url() -> str:
    return str(get("synthesis.url", "https://global.api.murf.ai/v1/speech/stream"))


def get_default_voice() -> str:
    return str(get("synthesis.default_voice", "en-US-terrell"))


def get_chunking_settings() -> Dict[str, int]:
    return {
        "min_chars": get_typed("synthesis.chunking.min_chars", 80, int),
        "ideal_chars": get_typed("synthesis.chunking.ideal_chars", 120, int),
        "max_chars": get_typed("synthesis.chunking.max_chars", 160, int),
    }


def get_synthesis_pacing_sec() -> float:
    return get_typed("synthesis.pacing_sec", 0.12, float)


def get_synthesis_settle_sec() -> float:
    return get_typed("synthesis.settle_sec", 0.15, float)


def get_synthesis_pipeline_depth() -> int:
    return get_typed("synthesis.pipeline_depth", 2, int)


def get_synthesis_min_interval_sec() -> float:
    return get_typed("synthesis.min_interval_sec", 0.1, float)


def get_synthesis_timeout_sec() -> float:
    return get_typed("synthesis.timeout_sec", 30.0, float)


# ---- Sessions ----

def get_session_idle_timeout_sec() -> float:
    return get_typed("sessions.idle_timeout_sec", 1800.0, float)


def get_session_grace_sec() -> float:
    return get_typed("sessions.grace_sec", 300.0, float)


def get_session_sweep_interval_sec() -> float:
    return get_typed("sessions.sweep_interval_sec", 600.0, float)


def get_memory_window() -> int:
    return get_typed("sessions.memory_window", 4, int)


# ---- Weather ----

def get_weather_url() -> str:
    return str(get("weather.url", "https://api.openweathermap.org/data/2.5/weather"))


def get_weather_default_location() -> Dict[str, Any]:
    return {
        "name": str(get("weather.default_location.name", "Pimpri")),
        "lat": get_typed("weather.default_location.lat", 18.6298, float),
        "lon": get_typed("weather.default_location.lon", 73.7997, float),
    }


def get_weather_timeout_sec() -> float:
    return get_typed("weather.timeout_sec", 5.0, float)


# ---- Documents ----

def get_document_max_bytes() -> int:
    return get_typed("documents.max_bytes", 10 * 1024 * 1024, int)


def get_document_allowed_extensions() -> List[str]:
    return [str(ext).lower() for ext in get("documents.allowed_extensions", [".pdf", ".docx", ".txt", ".md"])]


def validate_config_silent() -> Tuple[bool, List[str]]:
    """Validate configuration without raising exceptions

    Returns:
        tuple: (is_valid, list_of_warnings)
    """
    try:
        if not _LOADED:
            _load()
        _validate_config(_CFG)
        return True, []
    except ValueError as e:
        return False, [str(e)]
    except yaml.YAMLError as e:
        return False, [f"Validation error: {e}"]


def reload_config(path: Optional[str] = None) -> None:
    """Forget the loaded configuration, optionally pointing at a new file.

    The file is read again lazily on the next access.
    """
    global _CFG, _LOADED, _CONFIG_PATH
    if path:
        _CONFIG_PATH = os.path.abspath(path)
    _LOADED = False
    _CFG = {}
