from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx

from ..config import ANTHROPIC_API_KEY_ENV, GOOGLE_AI_API_KEY_ENV, GatewaySettings
from ..logging_setup import mask_secret
from ..messages import CanonicalMessage, extract_prompt
from .backend import relay_stream
from .errors import ConfigurationError
from .streaming import StreamChunk
from .transport import ProxyTransport, raise_for_upstream_status, read_json
from .translator import (
    AnthropicTranslator,
    BaseTranslator,
    GeminiTranslator,
    ParsedResponse,
    VendorKind,
    VendorRequest,
    vendor_kind_for,
)
from .translator.gemini import gemini_parts
from .validator import ResponseValidator

logger = logging.getLogger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"
DEFAULT_ANTHROPIC_DIRECT_MODEL = "claude-3-sonnet-20240229"
DEFAULT_GEMINI_DIRECT_MODEL = "gemini-1.5-flash"


class DirectApiClient(ABC):
    """A vendor's own public API, used when its key is present in the environment."""

    kind: VendorKind
    api_key_env: str
    default_model: str

    def __init__(
        self,
        transport: ProxyTransport,
        settings: GatewaySettings,
        validator: Optional[ResponseValidator] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._transport = transport
        self.settings = settings
        self.validator = validator
        self._environ = environ if environ is not None else os.environ
        self.translator = self._create_translator()

    @abstractmethod
    def _create_translator(self) -> BaseTranslator:
        raise NotImplementedError

    @abstractmethod
    def build_request(
        self,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        raise NotImplementedError

    @abstractmethod
    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        raise NotImplementedError

    def api_key(self) -> str:
        return str(self._environ.get(self.api_key_env, "") or "").strip()

    def is_available(self) -> bool:
        return bool(self.api_key())

    def model_name(self, model_config: Any) -> str:
        return getattr(model_config, "direct_model", None) or self.default_model

    def _headers(self) -> Dict[str, str]:
        api_key = self.api_key()
        if not api_key:
            raise ConfigurationError(f"{self.api_key_env} is not set")
        return self._auth_headers(api_key)

    async def open_stream(
        self,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> httpx.Response:
        """Send a streaming request; the caller owns (and must close) the response."""
        headers = self._headers()
        request = self.build_request(model_config, messages, stream=True)
        return await self._transport.post_json(request.url, headers, request.body, stream=True)

    async def call(
        self,
        model_key: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> ParsedResponse:
        headers = self._headers()
        request = self.build_request(model_config, messages)
        logger.debug(
            "direct call: vendor=%s model=%s key=%s",
            self.kind.value,
            model_key,
            mask_secret(self.api_key()),
        )

        response = await self._transport.post_json(request.url, headers, request.body, stream=True)
        label = f"{self.kind.value} direct API"
        await raise_for_upstream_status(response, label)
        parsed = self.translator.parse_response(await read_json(response, label))

        if self.validator is None:
            return parsed
        result = self.validator.validate_and_correct_response(
            parsed, model_key, extract_prompt(messages)
        )
        return result.final_response

    async def stream(
        self,
        model_key: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> AsyncIterator[StreamChunk]:
        logger.debug("direct stream: vendor=%s model=%s", self.kind.value, model_key)
        response = await self.open_stream(model_config, messages)
        chunks = relay_stream(response, self.translator, f"{self.kind.value} direct stream")
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()
            await response.aclose()


class AnthropicDirectClient(DirectApiClient):
    kind = VendorKind.ANTHROPIC
    api_key_env = ANTHROPIC_API_KEY_ENV
    default_model = DEFAULT_ANTHROPIC_DIRECT_MODEL

    def _create_translator(self) -> BaseTranslator:
        return AnthropicTranslator(self.settings)

    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_API_VERSION}

    def build_request(
        self,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        system_texts = [message.text() for message in messages if message.role == "system"]
        body: Dict[str, Any] = {
            "model": self.model_name(model_config),
            "max_tokens": self.translator.max_tokens_for(model_config),
            "messages": [
                {"role": message.role, "content": AnthropicTranslator.format_content(message)}
                for message in messages
                if message.role != "system"
            ],
            "stream": stream,
        }
        if system_texts:
            body["system"] = "\n\n".join(system_texts)
        return VendorRequest(url=f"{self.settings.anthropic_direct_base_url}/v1/messages", body=body)


class GeminiDirectClient(DirectApiClient):
    kind = VendorKind.GOOGLE
    api_key_env = GOOGLE_AI_API_KEY_ENV
    default_model = DEFAULT_GEMINI_DIRECT_MODEL

    def _create_translator(self) -> BaseTranslator:
        return GeminiTranslator(self.settings)

    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"x-goog-api-key": api_key}

    def build_request(
        self,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        contents: List[Dict[str, Any]] = []
        system_texts: List[str] = []
        for message in messages:
            if message.role == "system":
                system_texts.append(message.text())
                continue
            contents.append(
                {
                    "role": "model" if message.role == "assistant" else "user",
                    "parts": gemini_parts(message),
                }
            )

        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": self.translator.max_tokens_for(model_config),
                "temperature": self.translator.temperature_for(model_config),
            },
        }
        if system_texts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}

        action = "streamGenerateContent?alt=sse" if stream else "generateContent"
        url = (
            f"{self.settings.gemini_direct_base_url}/v1beta/models/"
            f"{self.model_name(model_config)}:{action}"
        )
        return VendorRequest(url=url, body=body)


def create_direct_clients(
    transport: ProxyTransport,
    settings: GatewaySettings,
    validator: Optional[ResponseValidator] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[VendorKind, DirectApiClient]:
    return {
        VendorKind.ANTHROPIC: AnthropicDirectClient(transport, settings, validator, environ),
        VendorKind.GOOGLE: GeminiDirectClient(transport, settings, validator, environ),
    }


def direct_client_for(
    model_config: Any,
    clients: Mapping[VendorKind, DirectApiClient],
) -> Optional[DirectApiClient]:
    return clients.get(vendor_kind_for(getattr(model_config, "request_format", None)))
