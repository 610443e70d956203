from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ...messages import CanonicalMessage, ImagePart, TextPart
from ..streaming import StreamChunk, StreamPayload, StreamState, Usage
from .base import (
    NO_RESPONSE_TEXT,
    UNSUPPORTED_IMAGE_TEXT,
    BaseTranslator,
    ParsedResponse,
    VendorKind,
    VendorRequest,
    parse_data_uri,
)

GENERATE_SUFFIX = ":generateContent"
STREAM_GENERATE_SUFFIX = ":streamGenerateContent?alt=sse"

_DIRECT_FIELDS = ("text", "response", "message", "output", "content")


def stream_endpoint_for(endpoint: str) -> str:
    if GENERATE_SUFFIX in endpoint:
        return endpoint.replace(GENERATE_SUFFIX, STREAM_GENERATE_SUFFIX, 1)
    return endpoint


def gemini_parts(message: CanonicalMessage) -> List[Dict[str, Any]]:
    if isinstance(message.content, str):
        return [{"text": message.content}]

    parts: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            decoded = parse_data_uri(part.image_url.url)
            if decoded is None:
                parts.append({"text": UNSUPPORTED_IMAGE_TEXT})
                continue
            mime_type, data = decoded
            parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
    return parts


def usage_from_metadata(metadata: Any) -> Optional[Usage]:
    if not isinstance(metadata, dict):
        return None
    return Usage.from_counts(
        metadata.get("promptTokenCount", 0),
        metadata.get("candidatesTokenCount", 0),
        metadata.get("totalTokenCount", 0),
    )


class GeminiTranslator(BaseTranslator):
    """SAP AI Core flavoured Gemini: every turn is folded into one user content."""

    kind = VendorKind.GOOGLE

    def build_request(
        self,
        base_url: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        endpoint = getattr(model_config, "endpoint", None) or self.settings.gemini_default_endpoint
        if stream:
            endpoint = getattr(model_config, "stream_endpoint", None) or stream_endpoint_for(endpoint)
        endpoint = self._require_endpoint(endpoint, "gemini")

        parts: List[Dict[str, Any]] = []
        for message in messages:
            parts.extend(gemini_parts(message))

        body: Dict[str, Any] = {
            "contents": {"role": "user", "parts": parts},
            "generationConfig": {
                "maxOutputTokens": self.max_tokens_for(model_config),
                "temperature": self.temperature_for(model_config),
            },
        }
        return VendorRequest(url=self._join_url(base_url, endpoint), body=body)

    def parse_response(self, body: Any) -> ParsedResponse:
        text = self._extract_text(body)
        usage = usage_from_metadata(self._get(body, "usageMetadata")) or Usage()
        return ParsedResponse(text=text, usage=usage)

    def _extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            return body if isinstance(body, str) and body else NO_RESPONSE_TEXT

        candidates = body.get("candidates")
        if isinstance(candidates, list) and candidates:
            parts = self._get(candidates, 0, "content", "parts")
            if isinstance(parts, list):
                for part in parts:
                    if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"]:
                        return part["text"]

            for candidate in candidates:
                if not isinstance(candidate, dict):
                    continue
                for key in ("text", "message", "output"):
                    value = candidate.get(key)
                    if isinstance(value, str) and value:
                        return value

        for key in _DIRECT_FIELDS:
            value = body.get(key)
            if isinstance(value, str) and value:
                return value

        error = body.get("error")
        if error:
            return f"Error: {self._error_message(error)}"
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return f"Error: {self._error_message(errors[0])}"
        return NO_RESPONSE_TEXT

    @staticmethod
    def _error_message(error: Any) -> str:
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return str(error)

    def parse_stream_event(self, payload: StreamPayload, state: StreamState) -> List[StreamChunk]:
        if not isinstance(payload, dict):
            return []

        usage = usage_from_metadata(payload.get("usageMetadata"))
        if usage is not None:
            state.record_usage(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)

        chunks: List[StreamChunk] = []
        candidate = self._get(payload, "candidates", 0)
        parts = self._get(candidate, "content", "parts")
        if isinstance(parts, list):
            for part in parts:
                text = part.get("text") if isinstance(part, dict) else None
                if isinstance(text, str) and text:
                    chunks.append(state.delta(text))

        if isinstance(candidate, dict) and candidate.get("finishReason"):
            chunks.append(state.terminal())
        return chunks
