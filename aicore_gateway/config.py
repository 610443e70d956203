from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

AICORE_CLIENT_ID_ENV = "AICORE_CLIENT_ID"
AICORE_CLIENT_SECRET_ENV = "AICORE_CLIENT_SECRET"
AICORE_AUTH_URL_ENV = "AICORE_AUTH_URL"
AICORE_BASE_URL_ENV = "AICORE_BASE_URL"
AICORE_RESOURCE_GROUP_ENV = "AICORE_RESOURCE_GROUP"

ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"
GOOGLE_AI_API_KEY_ENV = "GOOGLE_AI_API_KEY"
ANTHROPIC_DIRECT_BASE_URL_ENV = "ANTHROPIC_DIRECT_BASE_URL"
GEMINI_DIRECT_BASE_URL_ENV = "GEMINI_DIRECT_BASE_URL"

DEFAULT_ANTHROPIC_DIRECT_BASE_URL = "https://api.anthropic.com"
DEFAULT_GEMINI_DIRECT_BASE_URL = "https://generativelanguage.googleapis.com"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _read(source: Mapping[str, str], name: str) -> str:
    return str(source.get(name, "") or "").strip()


def _env_float(source: Mapping[str, str], name: str, default: float) -> float:
    raw = _read(source, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return value


def _env_non_negative_float(source: Mapping[str, str], name: str, default: float) -> float:
    raw = _read(source, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if value < 0:
        return default
    return value


def _env_int(source: Mapping[str, str], name: str, default: int) -> int:
    raw = _read(source, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return value


def _env_bool(source: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _read(source, name).lower()
    if not raw:
        return default
    return raw in _TRUE_VALUES


def _env_str(source: Mapping[str, str], name: str, default: str) -> str:
    return _read(source, name) or default


def _env_set(source: Mapping[str, str], name: str) -> FrozenSet[str]:
    raw = _read(source, name)
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class GatewaySettings:
    aicore_client_id: str = ""
    aicore_client_secret: str = ""
    aicore_auth_url: str = ""
    aicore_base_url: str = ""
    resource_group: str = "default"

    token_expiry_buffer_secs: float = 60.0
    default_token_expiry_secs: float = 3600.0

    default_max_tokens: int = 1000
    default_temperature: float = 0.7
    anthropic_default_version: str = "bedrock-2023-05-31"
    anthropic_default_endpoint: str = "/invoke"
    anthropic_default_stream_endpoint: str = "/invoke-with-response-stream"
    gemini_default_endpoint: str = "/models/gemini-2.5-flash:generateContent"
    generic_default_endpoint: str = "/chat/completions?api-version=2023-05-15"

    anthropic_direct_base_url: str = DEFAULT_ANTHROPIC_DIRECT_BASE_URL
    gemini_direct_base_url: str = DEFAULT_GEMINI_DIRECT_BASE_URL

    detection_timeout_secs: float = 5.0
    detection_cache_ttl_secs: float = 300.0
    detection_concurrency: int = 3

    prefer_direct_api: bool = False
    trusted_stream_sources: FrozenSet[str] = field(default_factory=frozenset)

    mock_min_chunk_chars: int = 8
    mock_max_chunk_chars: int = 24
    mock_min_delay_secs: float = 0.01
    mock_max_delay_secs: float = 0.04
    mock_word_boundary: bool = True

    response_log_enabled: bool = False
    response_log_all: bool = False
    response_log_file: str = "logs/response-analysis.jsonl"

    models_config_path: str = "config/models.json"
    log_level: str = "INFO"
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        source = environ if environ is not None else os.environ
        defaults = cls()
        min_chunk = _env_int(source, "MOCK_STREAM_MIN_CHUNK_CHARS", defaults.mock_min_chunk_chars)
        max_chunk = _env_int(source, "MOCK_STREAM_MAX_CHUNK_CHARS", defaults.mock_max_chunk_chars)
        min_delay = _env_non_negative_float(
            source, "MOCK_STREAM_MIN_DELAY_SECS", defaults.mock_min_delay_secs
        )
        max_delay = _env_non_negative_float(
            source, "MOCK_STREAM_MAX_DELAY_SECS", defaults.mock_max_delay_secs
        )
        return cls(
            aicore_client_id=_read(source, AICORE_CLIENT_ID_ENV),
            aicore_client_secret=_read(source, AICORE_CLIENT_SECRET_ENV),
            aicore_auth_url=_read(source, AICORE_AUTH_URL_ENV).rstrip("/"),
            aicore_base_url=_read(source, AICORE_BASE_URL_ENV).rstrip("/"),
            resource_group=_env_str(source, AICORE_RESOURCE_GROUP_ENV, defaults.resource_group),
            token_expiry_buffer_secs=_env_float(
                source, "TOKEN_EXPIRY_BUFFER", defaults.token_expiry_buffer_secs
            ),
            default_token_expiry_secs=_env_float(
                source, "DEFAULT_TOKEN_EXPIRY", defaults.default_token_expiry_secs
            ),
            default_max_tokens=_env_int(source, "DEFAULT_MAX_TOKENS", defaults.default_max_tokens),
            anthropic_default_version=_env_str(
                source, "ANTHROPIC_DEFAULT_VERSION", defaults.anthropic_default_version
            ),
            anthropic_default_endpoint=_env_str(
                source, "ANTHROPIC_DEFAULT_ENDPOINT", defaults.anthropic_default_endpoint
            ),
            anthropic_default_stream_endpoint=_env_str(
                source,
                "ANTHROPIC_DEFAULT_STREAM_ENDPOINT",
                defaults.anthropic_default_stream_endpoint,
            ),
            gemini_default_endpoint=_env_str(
                source, "GEMINI_DEFAULT_ENDPOINT", defaults.gemini_default_endpoint
            ),
            generic_default_endpoint=_env_str(
                source, "GENERIC_DEFAULT_ENDPOINT", defaults.generic_default_endpoint
            ),
            anthropic_direct_base_url=_env_str(
                source, ANTHROPIC_DIRECT_BASE_URL_ENV, defaults.anthropic_direct_base_url
            ).rstrip("/"),
            gemini_direct_base_url=_env_str(
                source, GEMINI_DIRECT_BASE_URL_ENV, defaults.gemini_direct_base_url
            ).rstrip("/"),
            detection_timeout_secs=_env_float(
                source, "STREAMING_DETECTION_TIMEOUT_SECS", defaults.detection_timeout_secs
            ),
            detection_cache_ttl_secs=_env_float(
                source, "STREAMING_DETECTION_CACHE_TTL_SECS", defaults.detection_cache_ttl_secs
            ),
            detection_concurrency=_env_int(
                source, "STREAMING_DETECTION_CONCURRENCY", defaults.detection_concurrency
            ),
            prefer_direct_api=_env_bool(source, "PREFER_DIRECT_API_STREAMING", False),
            trusted_stream_sources=_env_set(source, "STREAM_VALIDATION_TRUSTED_SOURCES"),
            mock_min_chunk_chars=min(min_chunk, max_chunk),
            mock_max_chunk_chars=max(min_chunk, max_chunk),
            mock_min_delay_secs=min(min_delay, max_delay),
            mock_max_delay_secs=max(min_delay, max_delay),
            mock_word_boundary=_env_bool(
                source, "MOCK_STREAM_WORD_BOUNDARY", defaults.mock_word_boundary
            ),
            response_log_enabled=_env_bool(source, "RESPONSE_ANALYSIS_LOGGING", False),
            response_log_all=_env_bool(source, "RESPONSE_ANALYSIS_LOG_ALL", False),
            response_log_file=_env_str(
                source, "RESPONSE_ANALYSIS_LOG_FILE", defaults.response_log_file
            ),
            models_config_path=_env_str(
                source, "MODELS_CONFIG_PATH", defaults.models_config_path
            ),
            log_level=_env_str(source, "LOG_LEVEL", defaults.log_level).upper(),
            server_host=_env_str(source, "GATEWAY_HOST", defaults.server_host),
            server_port=_env_int(source, "GATEWAY_PORT", defaults.server_port),
        )
