from __future__ import annotations

import logging
from typing import Dict, Optional

from ...config import GatewaySettings
from .anthropic import AnthropicTranslator
from .base import (
    NO_RESPONSE_TEXT,
    UNSUPPORTED_IMAGE_TEXT,
    BaseTranslator,
    ParsedResponse,
    VendorKind,
    VendorRequest,
)
from .gemini import GeminiTranslator
from .openai import OpenAITranslator

logger = logging.getLogger(__name__)

REQUEST_FORMAT_KINDS: Dict[str, VendorKind] = {
    "anthropic_bedrock": VendorKind.ANTHROPIC,
    "anthropic": VendorKind.ANTHROPIC,
    "anthropic-style": VendorKind.ANTHROPIC,
    "google_ai_studio": VendorKind.GOOGLE,
    "gemini": VendorKind.GOOGLE,
    "google-style": VendorKind.GOOGLE,
    "openai": VendorKind.GENERIC,
    "generic": VendorKind.GENERIC,
    "default": VendorKind.GENERIC,
}

_TRANSLATORS = {
    VendorKind.ANTHROPIC: AnthropicTranslator,
    VendorKind.GOOGLE: GeminiTranslator,
    VendorKind.GENERIC: OpenAITranslator,
}


def vendor_kind_for(request_format: Optional[str]) -> VendorKind:
    key = (request_format or "default").strip().lower()
    kind = REQUEST_FORMAT_KINDS.get(key)
    if kind is None:
        logger.warning("unknown request format %r, using generic translator", request_format)
        return VendorKind.GENERIC
    return kind


def create_translator(
    request_format: Optional[str],
    settings: Optional[GatewaySettings] = None,
) -> BaseTranslator:
    return _TRANSLATORS[vendor_kind_for(request_format)](settings)


__all__ = [
    "NO_RESPONSE_TEXT",
    "UNSUPPORTED_IMAGE_TEXT",
    "REQUEST_FORMAT_KINDS",
    "BaseTranslator",
    "ParsedResponse",
    "VendorKind",
    "VendorRequest",
    "OpenAITranslator",
    "AnthropicTranslator",
    "GeminiTranslator",
    "create_translator",
    "vendor_kind_for",
]
