from __future__ import annotations

from typing import Any, Dict, List, Sequence

from ...messages import CanonicalMessage
from ..streaming import DONE_MARKER, StreamChunk, StreamPayload, StreamState, Usage
from .base import NO_RESPONSE_TEXT, BaseTranslator, ParsedResponse, VendorKind, VendorRequest


class OpenAITranslator(BaseTranslator):
    kind = VendorKind.GENERIC

    def build_request(
        self,
        base_url: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        endpoint = getattr(model_config, "endpoint", None) or self.settings.generic_default_endpoint
        if stream and getattr(model_config, "stream_endpoint", None):
            endpoint = model_config.stream_endpoint
        endpoint = self._require_endpoint(endpoint, "generic")

        body: Dict[str, Any] = {
            # chat/completions accepts the canonical shape as-is
            "messages": [message.to_openai() for message in messages],
            "max_completion_tokens": self.max_tokens_for(model_config),
            "temperature": self.temperature_for(model_config),
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return VendorRequest(url=self._join_url(base_url, endpoint), body=body)

    def parse_response(self, body: Any) -> ParsedResponse:
        text = self._first_text(
            [
                self._get(body, "choices", 0, "message", "content"),
                self._get(body, "choices", 0, "text"),
                self._get(body, "text"),
            ]
        )
        usage = Usage.from_mapping(self._get(body, "usage")) or Usage()
        return ParsedResponse(text=text or NO_RESPONSE_TEXT, usage=usage)

    def parse_stream_event(self, payload: StreamPayload, state: StreamState) -> List[StreamChunk]:
        # [DONE] is handled by the caller's stream loop
        if payload == DONE_MARKER or not isinstance(payload, dict):
            return []

        usage = payload.get("usage")
        if isinstance(usage, dict):
            state.record_usage(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            )

        chunks: List[StreamChunk] = []
        choices = payload.get("choices")
        if not isinstance(choices, list):
            return chunks
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            if isinstance(delta, dict):
                content = delta.get("content")
                if isinstance(content, str) and content:
                    chunks.append(state.delta(content))
            text = choice.get("text")
            if isinstance(text, str) and text:
                chunks.append(state.delta(text))
        return chunks
