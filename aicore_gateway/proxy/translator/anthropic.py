from __future__ import annotations

from typing import Any, Dict, List, Sequence, Union

from ...messages import CanonicalMessage, ImagePart, TextPart
from ..errors import UpstreamTransportError
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


class AnthropicTranslator(BaseTranslator):
    kind = VendorKind.ANTHROPIC

    def build_request(
        self,
        base_url: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        if stream:
            endpoint = (
                getattr(model_config, "stream_endpoint", None)
                or self.settings.anthropic_default_stream_endpoint
            )
        else:
            endpoint = getattr(model_config, "endpoint", None) or self.settings.anthropic_default_endpoint
        endpoint = self._require_endpoint(endpoint, "anthropic")

        system_texts = [message.text() for message in messages if message.role == "system"]
        body: Dict[str, Any] = {
            "anthropic_version": getattr(model_config, "anthropic_version", None)
            or self.settings.anthropic_default_version,
            "max_tokens": self.max_tokens_for(model_config),
            "messages": [
                {"role": message.role, "content": self.format_content(message)}
                for message in messages
                if message.role != "system"
            ],
        }
        if system_texts:
            body["system"] = "\n\n".join(system_texts)
        return VendorRequest(url=self._join_url(base_url, endpoint), body=body)

    @staticmethod
    def format_content(message: CanonicalMessage) -> Union[str, List[Dict[str, Any]]]:
        if isinstance(message.content, str):
            return message.content

        blocks: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                decoded = parse_data_uri(part.image_url.url)
                if decoded is None:
                    blocks.append({"type": "text", "text": UNSUPPORTED_IMAGE_TEXT})
                    continue
                media_type, data = decoded
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": data},
                    }
                )
        return blocks

    def parse_response(self, body: Any) -> ParsedResponse:
        first_text = None
        content = self._get(body, "content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]:
                    first_text = block["text"]
                    break

        text = self._first_text(
            [
                first_text,
                self._get(body, "message", "content"),
                self._get(body, "completion"),
            ]
        )
        usage = Usage.from_mapping(self._get(body, "usage")) or Usage()
        return ParsedResponse(text=text or NO_RESPONSE_TEXT, usage=usage)

    def parse_stream_event(self, payload: StreamPayload, state: StreamState) -> List[StreamChunk]:
        if not isinstance(payload, dict):
            return []

        event_type = payload.get("type")
        if event_type == "message_start":
            usage = self._get(payload, "message", "usage")
            if isinstance(usage, dict):
                state.record_usage(
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                )
            return []

        if event_type == "content_block_delta":
            delta = payload.get("delta")
            text = delta.get("text") if isinstance(delta, dict) else None
            if isinstance(text, str) and text:
                return [state.delta(text)]
            return []

        if event_type == "message_delta":
            usage = payload.get("usage")
            if isinstance(usage, dict):
                state.record_usage(completion_tokens=usage.get("output_tokens"))
                if usage.get("input_tokens") is not None:
                    state.record_usage(prompt_tokens=usage.get("input_tokens"))
            return []

        if event_type == "message_stop":
            return [state.terminal()]

        if event_type == "error":
            message = self._get(payload, "error", "message") or "stream error"
            raise UpstreamTransportError(f"anthropic stream error: {message}")

        return []
