from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx

from ..config import GatewaySettings
from ..messages import CanonicalMessage, extract_prompt
from ..token_manager import TokenManager
from .errors import ConfigurationError, UpstreamTransportError
from .streaming import DONE_MARKER, StreamChunk, StreamState, iter_stream_payloads
from .transport import ProxyTransport, is_streaming_response, raise_for_upstream_status, read_json
from .translator import BaseTranslator, ParsedResponse, create_translator
from .validator import ResponseValidator

logger = logging.getLogger(__name__)


async def relay_stream(
    response: httpx.Response,
    translator: BaseTranslator,
    label: str,
) -> AsyncIterator[StreamChunk]:
    """Decode an upstream stream into chunks; always ends with one terminal chunk."""
    state = StreamState()
    try:
        await raise_for_upstream_status(response, label)

        if not is_streaming_response(response.headers):
            # upstream ignored the stream flag and answered in one piece
            parsed = translator.parse_response(await read_json(response, label))
            if parsed.text:
                yield state.delta(parsed.text)
            state.record_usage(
                parsed.usage.prompt_tokens,
                parsed.usage.completion_tokens,
                parsed.usage.total_tokens,
            )
            yield state.terminal()
            return

        try:
            async for payload in iter_stream_payloads(response):
                if payload == DONE_MARKER:
                    break
                for chunk in translator.parse_stream_event(payload, state):
                    yield chunk
                    if chunk.finished:
                        return
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(
                f"{label} stream interrupted: {type(exc).__name__}",
                timeout=isinstance(exc, httpx.TimeoutException),
            ) from exc

        yield state.terminal()
    finally:
        await response.aclose()


class BackendClient:
    """Calls AI Core deployments: ``{base}/v2/inference/deployments/{id}/...``."""

    def __init__(
        self,
        transport: ProxyTransport,
        token_manager: TokenManager,
        settings: GatewaySettings,
        validator: Optional[ResponseValidator] = None,
    ):
        self._transport = transport
        self._token_manager = token_manager
        self.settings = settings
        self.validator = validator

    def translator_for(self, model_config: Any) -> BaseTranslator:
        return create_translator(getattr(model_config, "request_format", None), self.settings)

    def deployment_url(self, model_config: Any) -> str:
        if not self.settings.aicore_base_url:
            raise ConfigurationError("AICORE_BASE_URL is not configured")
        deployment_id = getattr(model_config, "deployment_id", None)
        if not deployment_id:
            raise ConfigurationError("model has no deploymentId configured or discovered")
        return f"{self.settings.aicore_base_url}/v2/inference/deployments/{deployment_id}"

    async def _headers(self) -> Dict[str, str]:
        token = await self._token_manager.get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "AI-Resource-Group": self.settings.resource_group,
        }

    async def open_stream(
        self,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> httpx.Response:
        """Send a streaming request; the caller owns (and must close) the response."""
        translator = self.translator_for(model_config)
        request = translator.build_request(
            self.deployment_url(model_config), model_config, messages, stream=True
        )
        return await self._transport.post_json(
            request.url, await self._headers(), request.body, stream=True
        )

    async def call(
        self,
        model_key: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> ParsedResponse:
        translator = self.translator_for(model_config)
        request = translator.build_request(self.deployment_url(model_config), model_config, messages)
        logger.debug("backend call: model=%s url=%s", model_key, request.url)

        response = await self._transport.post_json(
            request.url, await self._headers(), request.body, stream=True
        )
        await raise_for_upstream_status(response, "AI Core")
        body = await read_json(response, "AI Core")
        parsed = translator.parse_response(body)

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
        translator = self.translator_for(model_config)
        logger.debug("backend stream: model=%s", model_key)
        response = await self.open_stream(model_config, messages)
        chunks = relay_stream(response, translator, "AI Core stream")
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()
            await response.aclose()
