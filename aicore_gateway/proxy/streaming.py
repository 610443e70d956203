from __future__ import annotations

import codecs
import json
import logging
import math
import os
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from .errors import StreamLimitError

logger = logging.getLogger(__name__)

MAX_STREAM_CHARS_ENV = "PROXY_MAX_STREAM_CHARS"
DEFAULT_MAX_STREAM_CHARS = 1_000_000

DONE_MARKER = "[DONE]"


def get_max_stream_chars(environ: Optional[Mapping[str, str]] = None) -> int:
    source = environ if environ is not None else os.environ
    raw = source.get(MAX_STREAM_CHARS_ENV, str(DEFAULT_MAX_STREAM_CHARS))
    try:
        value = int(raw)
        if value <= 0:
            return DEFAULT_MAX_STREAM_CHARS
        return value
    except (TypeError, ValueError):
        return DEFAULT_MAX_STREAM_CHARS


def _as_token_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return 0


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt_tokens: int = 0, completion_tokens: int = 0, total_tokens: int = 0) -> "Usage":
        prompt = _as_token_count(prompt_tokens)
        completion = _as_token_count(completion_tokens)
        total = _as_token_count(total_tokens) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    @classmethod
    def from_mapping(cls, raw: Any) -> Optional["Usage"]:
        """Read OpenAI, camelCase or Anthropic usage keys; None when not a mapping."""
        if not isinstance(raw, Mapping):
            return None
        prompt = raw.get("prompt_tokens", raw.get("promptTokens", raw.get("input_tokens", 0)))
        completion = raw.get(
            "completion_tokens", raw.get("completionTokens", raw.get("output_tokens", 0))
        )
        total = raw.get("total_tokens", raw.get("totalTokens", 0))
        return cls.from_counts(prompt, completion, total)

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class StreamChunk:
    delta_text: str = ""
    finished: bool = False
    usage: Optional[Usage] = None

    def without_usage(self) -> "StreamChunk":
        if self.usage is None:
            return self
        return replace(self, usage=None)


@dataclass
class SSEEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


class SSEParser:
    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[SSEEvent]:
        if not chunk:
            return []

        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")

        events: List[SSEEvent] = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary < 0:
                break
            block = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2 :]
            event = self._parse_block(block)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[SSEEvent]:
        if not self._buffer:
            return []

        block = self._buffer
        self._buffer = ""
        event = self._parse_block(block)
        return [event] if event is not None else []

    @staticmethod
    def _parse_block(block: str) -> Optional[SSEEvent]:
        data_lines: List[str] = []
        event_name: Optional[str] = None
        event_id: Optional[str] = None

        for line in block.split("\n"):
            # blank lines and ":" comments (keep-alives) carry nothing
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "data":
                data_lines.append(value)
            elif name == "event":
                event_name = value
            elif name == "id":
                event_id = value

        if not data_lines and event_name is None:
            return None
        return SSEEvent(data="\n".join(data_lines), event=event_name, id=event_id)


class NDJSONParser:
    """Line-delimited JSON, as sent by some backends without SSE framing."""

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.strip() for line in lines if line.strip()]

    def flush(self) -> List[str]:
        tail = self._buffer.strip()
        self._buffer = ""
        return [tail] if tail else []


@dataclass
class StreamState:
    max_chars: int = field(default_factory=get_max_stream_chars)
    total_chars: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    finished: bool = False

    def append(self, text: str) -> None:
        if not text:
            return
        next_total = self.total_chars + len(text)
        if next_total > self.max_chars:
            raise StreamLimitError(
                f"stream length exceeded limit ({self.max_chars}), env={MAX_STREAM_CHARS_ENV}"
            )
        self.total_chars = next_total

    def record_usage(
        self,
        prompt_tokens: Any = None,
        completion_tokens: Any = None,
        total_tokens: Any = None,
    ) -> None:
        if prompt_tokens is not None:
            self.prompt_tokens = _as_token_count(prompt_tokens)
        if completion_tokens is not None:
            self.completion_tokens = _as_token_count(completion_tokens)
        if total_tokens is not None:
            self.total_tokens = _as_token_count(total_tokens)

    def usage(self) -> Usage:
        return Usage.from_counts(self.prompt_tokens, self.completion_tokens, self.total_tokens)

    def delta(self, text: str) -> StreamChunk:
        self.append(text)
        return StreamChunk(delta_text=text, finished=False)

    def terminal(self) -> StreamChunk:
        self.finished = True
        return StreamChunk(delta_text="", finished=True, usage=self.usage())


StreamPayload = Union[Dict[str, Any], str]


def _decode_payload(raw: str) -> Optional[StreamPayload]:
    data = raw.strip()
    if not data:
        return None
    if data == DONE_MARKER:
        return DONE_MARKER
    try:
        payload = json.loads(data)
    except (ValueError, RecursionError):
        logger.debug("skipping undecodable stream payload: %.200s", data)
        return None
    if isinstance(payload, list):
        # Gemini without alt=sse wraps chunks in a JSON array
        payload = payload[0] if payload and isinstance(payload[0], dict) else None
    if not isinstance(payload, dict):
        return None
    return payload


async def iter_stream_payloads(response: Any) -> AsyncIterator[StreamPayload]:
    """Yield decoded JSON payloads (or the ``[DONE]`` marker) from an SSE or NDJSON body."""
    content_type = str(response.headers.get("content-type", "")).lower()
    use_sse = "ndjson" not in content_type and "stream+json" not in content_type
    sse_parser = SSEParser()
    line_parser = NDJSONParser()
    decoder = codecs.getincrementaldecoder("utf-8")("replace")

    def _payloads(text: str, final: bool = False) -> List[StreamPayload]:
        raw_items: List[str] = []
        if use_sse:
            raw_items.extend(event.data for event in sse_parser.feed(text))
            if final:
                raw_items.extend(event.data for event in sse_parser.flush())
        else:
            raw_items.extend(line_parser.feed(text))
            if final:
                raw_items.extend(line_parser.flush())
        decoded = (_decode_payload(item) for item in raw_items)
        return [item for item in decoded if item is not None]

    async for chunk in response.aiter_bytes():
        if not chunk:
            continue
        text = decoder.decode(chunk)
        if not text:
            continue
        for payload in _payloads(text):
            yield payload

    for payload in _payloads(decoder.decode(b"", final=True), final=True):
        yield payload
