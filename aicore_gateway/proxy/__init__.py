"""Upstream-facing building blocks: transport, stream decoding, translators."""

from .errors import (
    ConfigurationError,
    GatewayError,
    ModelNotFoundError,
    StreamLimitError,
    UpstreamTransportError,
)
from .streaming import SSEEvent, SSEParser, StreamChunk, StreamState, Usage
from .transport import ProxyTransport, get_proxy_timeout_secs
from .translator import (
    AnthropicTranslator,
    BaseTranslator,
    GeminiTranslator,
    OpenAITranslator,
    ParsedResponse,
    VendorKind,
    VendorRequest,
    create_translator,
)

__all__ = [
    "ConfigurationError",
    "GatewayError",
    "ModelNotFoundError",
    "StreamLimitError",
    "UpstreamTransportError",
    "SSEEvent",
    "SSEParser",
    "StreamChunk",
    "StreamState",
    "Usage",
    "ProxyTransport",
    "get_proxy_timeout_secs",
    "AnthropicTranslator",
    "BaseTranslator",
    "GeminiTranslator",
    "OpenAITranslator",
    "ParsedResponse",
    "VendorKind",
    "VendorRequest",
    "create_translator",
]
