from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..config import GatewaySettings
from .streaming import StreamChunk, Usage
from .translator.base import ParsedResponse

logger = logging.getLogger(__name__)

EMPTY_OR_INVALID_TEXT = "empty_or_invalid_text"
WHITESPACE_ONLY = "whitespace_only"
MALFORMED_JSON = "malformed_json"
REASONING_ONLY = "reasoning_only"
MISSING_USAGE = "missing_usage"

INVALID_CHUNK_STRUCTURE = "invalid_chunk_structure"
MISSING_DELTA = "missing_delta"
DELTA_NOT_STRING = "delta_not_string"
INVALID_FINISHED_FLAG = "invalid_finished_flag"
USAGE_ON_NON_TERMINAL = "usage_on_non_terminal"
INVALID_USAGE = "invalid_usage"
INVALID_CHARACTERS = "invalid_characters"

MALFORMED_CONTENT_TEXT = "Response contained malformed content that could not be parsed."
REASONING_REWRITE_TEXT = (
    "I understand your request. Let me help you with that. "
    "Could you please provide more specific details about what you need?"
)
TIMEOUT_TEXT = "The request took too long to process. Please try with a shorter or simpler request."
BUSY_TEXT = "The model is currently busy. Please try again in a moment."
ERROR_TEXT = "I encountered an issue processing your request. Please try again with a different approach."
FAMILY_APOLOGY_TEXT = (
    "I apologize, but I encountered an issue generating a response. "
    "Could you please rephrase your request?"
)

_ALTERNATE_TEXT_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("message",),
    ("content",),
    ("output",),
    ("result",),
    ("data", "content"),
    ("response", "text"),
    ("generated_text",),
    ("completion",),
)
_KNOWN_MODEL_FAMILIES = ("gpt", "claude", "llama", "gemma", "mistral", "phi", "qwen")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_JSON_SHAPED = re.compile(
    r"^\s*(\{.*\}|\[\s*(?:[\[{\"\-\d\]]|true|false|null).*\])\s*$", re.DOTALL
)
_THINKING_ONLY = re.compile(r"^<thinking>(.*)</thinking>\s*$", re.DOTALL)
_REASONING_PREFIXES = re.compile(
    r"^(I need to|Let me|First,|Based on the context|Looking at the|Analyzing the|To answer this)",
    re.IGNORECASE,
)
_TEXT_FIELD_PATTERNS = (
    re.compile(r'"text"\s*:\s*"([^"]*)"'),
    re.compile(r"'text'\s*:\s*'([^']*)'"),
    re.compile(r"text\s*:\s*([^,}]+)"),
)

_LOG_TRUNCATE = 1000


@dataclass
class ValidationResult:
    is_valid: bool
    was_corrected: bool
    issues: List[str]
    correlation_id: str
    response: ParsedResponse
    corrected_response: Optional[ParsedResponse] = None

    @property
    def final_response(self) -> ParsedResponse:
        return self.corrected_response if self.was_corrected and self.corrected_response else self.response


@dataclass
class ChunkValidationResult:
    is_valid: bool
    was_corrected: bool
    issues: List[str]
    correlation_id: str
    chunk: Any
    corrected_chunk: Optional[StreamChunk] = None

    @property
    def final_chunk(self) -> StreamChunk:
        if self.corrected_chunk is not None:
            return self.corrected_chunk
        return self.chunk


@dataclass
class _Normalized:
    text: Any
    usage: Optional[Usage]
    success: bool = True


def _truncate(value: Any, limit: int = _LOG_TRUNCATE) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit] + "...[truncated]"
    return value


def _path(obj: Any, path: Tuple[Any, ...]) -> Any:
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        elif isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def _loggable(raw: Any) -> Any:
    if isinstance(raw, ParsedResponse):
        return raw.to_dict()
    if isinstance(raw, StreamChunk):
        return {
            "delta_text": raw.delta_text,
            "finished": raw.finished,
            "usage": raw.usage.to_dict() if isinstance(raw.usage, Usage) else raw.usage,
        }
    try:
        json.dumps(raw)
    except (TypeError, ValueError, RecursionError):
        return repr(raw)
    return raw


class ResponseLogWriter:
    """Appends JSON lines off the request path; writer failures are dropped."""

    def __init__(self, enabled: bool, log_all: bool, log_file: str):
        self.enabled = enabled
        self.log_all = log_all
        self.log_file = log_file

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "ResponseLogWriter":
        return cls(settings.response_log_enabled, settings.response_log_all, settings.response_log_file)

    def should_log(self, issues: List[str]) -> bool:
        return self.enabled and bool(self.log_file) and (self.log_all or bool(issues))

    def schedule(self, entry: Dict[str, Any]) -> None:
        if not self.should_log(entry.get("issues") or []):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(entry)
            return
        loop.call_soon(self._write, entry)

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            path = Path(self.log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(entry, ensure_ascii=False, default=str)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError, RecursionError) as exc:
            logger.debug("response analysis logging failed: %s", exc)


class ResponseValidator:
    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        log_writer: Optional[ResponseLogWriter] = None,
    ):
        self.settings = settings or GatewaySettings()
        self.log_writer = log_writer or ResponseLogWriter.from_settings(self.settings)

    def validate_and_correct_response(
        self,
        raw: Any,
        model_key: str,
        prompt: Optional[str] = None,
    ) -> ValidationResult:
        correlation_id = str(uuid.uuid4())
        issues: List[str] = []
        normalized = self._normalize(raw)
        text = normalized.text

        if not isinstance(text, str) or not text:
            issues.append(EMPTY_OR_INVALID_TEXT)
            text = self._fallback_text(raw, model_key)

        if not text.strip():
            issues.append(WHITESPACE_ONLY)
            text = self._fallback_text(raw, model_key)

        if self._is_malformed_json(text):
            issues.append(MALFORMED_JSON)
            text = self._repair_json(text)

        if self._is_reasoning_only(text):
            issues.append(REASONING_ONLY)
            text = self._rewrite_reasoning(text)

        usage = normalized.usage
        if usage is None:
            issues.append(MISSING_USAGE)
            usage = Usage()

        original = ParsedResponse(
            text=normalized.text if isinstance(normalized.text, str) else "",
            usage=normalized.usage or Usage(),
            success=normalized.success,
        )
        was_corrected = bool(issues)
        corrected = None
        if was_corrected:
            final_text = text.strip() or self._fallback_text(None, model_key)
            corrected = ParsedResponse(text=final_text, usage=usage, success=normalized.success)
            logger.debug(
                "response validation for %s: issues=%s correlation_id=%s",
                model_key,
                issues,
                correlation_id,
            )

        self.log_writer.schedule(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "correlation_id": correlation_id,
                "model": model_key,
                "request_type": "non-streaming",
                "issues": list(issues),
                "corrected": was_corrected,
                "before": _truncate(_loggable(raw)),
                "after": _truncate((corrected or original).text),
                "prompt": _truncate(prompt or ""),
            }
        )
        return ValidationResult(
            is_valid=not issues,
            was_corrected=was_corrected,
            issues=issues,
            correlation_id=correlation_id,
            response=original,
            corrected_response=corrected,
        )

    def validate_stream_chunk(
        self,
        chunk: Any,
        model_key: str,
        prompt: Optional[str] = None,
    ) -> ChunkValidationResult:
        correlation_id = str(uuid.uuid4())
        issues: List[str] = []

        if isinstance(chunk, StreamChunk):
            delta: Any = chunk.delta_text
            finished: Any = chunk.finished
            usage: Any = chunk.usage
        elif isinstance(chunk, Mapping):
            if "delta_text" in chunk:
                delta = chunk["delta_text"]
            elif "delta" in chunk:
                delta = chunk["delta"]
            else:
                issues.append(MISSING_DELTA)
                delta = ""
            finished = chunk.get("finished")
            usage = chunk.get("usage")
        else:
            issues.append(INVALID_CHUNK_STRUCTURE)
            delta, finished, usage = "", False, None

        if delta is None and MISSING_DELTA not in issues:
            issues.append(MISSING_DELTA)
            delta = ""
        elif not isinstance(delta, str):
            issues.append(DELTA_NOT_STRING)
            delta = str(delta) if delta else ""

        if not isinstance(finished, bool):
            issues.append(INVALID_FINISHED_FLAG)
            finished = False

        if usage is not None and not isinstance(usage, Usage):
            usage = Usage.from_mapping(usage)
            if usage is None:
                issues.append(INVALID_USAGE)
        if usage is not None and not finished:
            issues.append(USAGE_ON_NON_TERMINAL)
            usage = None

        if delta and _CONTROL_CHARS.search(delta):
            issues.append(INVALID_CHARACTERS)
            delta = _CONTROL_CHARS.sub("", delta)

        normalized = StreamChunk(delta_text=delta, finished=finished, usage=usage)
        corrected_chunk = None
        if issues:
            corrected_chunk = normalized
            logger.debug("stream chunk validation for %s: issues=%s", model_key, issues)
            self.log_writer.schedule(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "correlation_id": correlation_id,
                    "model": model_key,
                    "request_type": "streaming",
                    "issues": list(issues),
                    "corrected": True,
                    "before": _truncate(_loggable(chunk)),
                    "after": _truncate(delta),
                    "prompt": _truncate(prompt or ""),
                }
            )

        return ChunkValidationResult(
            is_valid=not issues,
            was_corrected=bool(issues),
            issues=issues,
            correlation_id=correlation_id,
            chunk=chunk if isinstance(chunk, StreamChunk) else normalized,
            corrected_chunk=corrected_chunk,
        )

    def _normalize(self, raw: Any) -> _Normalized:
        if isinstance(raw, ParsedResponse):
            usage = raw.usage if isinstance(raw.usage, Usage) else Usage.from_mapping(raw.usage)
            return _Normalized(text=raw.text, usage=usage, success=bool(raw.success))
        if isinstance(raw, str):
            return _Normalized(text=raw, usage=None)
        if not isinstance(raw, Mapping):
            return _Normalized(text="", usage=None)

        usage = Usage.from_mapping(raw.get("usage"))
        success = raw.get("success")
        success = success if isinstance(success, bool) else True
        for path in (
            ("choices", 0, "message", "content"),
            ("content", 0, "text"),
            ("text",),
            ("message", "content"),
            ("message",),
        ):
            value = _path(raw, path)
            if isinstance(value, str) and value:
                return _Normalized(text=value, usage=usage, success=success)
        text = raw.get("text")
        return _Normalized(text=text if text is not None else "", usage=usage, success=success)

    @staticmethod
    def _fallback_text(raw: Any, model_key: str) -> str:
        if isinstance(raw, Mapping):
            for path in _ALTERNATE_TEXT_PATHS:
                value = _path(raw, path)
                if isinstance(value, str) and value.strip():
                    return value.strip()

            status = str(raw.get("status") or "").lower()
            error = raw.get("error")
            error_message = _path(raw, ("error", "message")) if isinstance(error, Mapping) else error
            signature = " ".join(
                str(item).lower()
                for item in (status, error_message, raw.get("message"))
                if item
            )
            if status == "timeout" or "timeout" in signature or "timed out" in signature:
                return TIMEOUT_TEXT
            if "capacity" in signature or "busy" in signature:
                return BUSY_TEXT
            if error or status == "error":
                return ERROR_TEXT

        model = (model_key or "").lower()
        if any(family in model for family in _KNOWN_MODEL_FAMILIES):
            return FAMILY_APOLOGY_TEXT
        return (
            f"I apologize, but I received an empty response from the {model_key or 'upstream'} "
            "model. Could you please try rephrasing your request?"
        )

    @staticmethod
    def _is_malformed_json(text: str) -> bool:
        if not _JSON_SHAPED.match(text):
            return False
        try:
            json.loads(text)
        except (ValueError, RecursionError):
            return True
        return False

    @staticmethod
    def _repair_json(text: str) -> str:
        fixed = re.sub(r",\s*}", "}", text)
        fixed = re.sub(r",\s*]", "]", fixed)
        fixed = re.sub(r"([{,]\s*)'([^'\"]*)'\s*:", r'\1"\2":', fixed)
        fixed = re.sub(r"([{,]\s*)([A-Za-z_]\w*)\s*:", r'\1"\2":', fixed)
        fixed = re.sub(r":\s*'([^']*)'", r':"\1"', fixed)
        try:
            return json.dumps(json.loads(fixed, strict=False), ensure_ascii=False)
        except (ValueError, RecursionError):
            pass

        for pattern in _TEXT_FIELD_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1).strip():
                return match.group(1).strip()
        return MALFORMED_CONTENT_TEXT

    @staticmethod
    def _is_reasoning_only(text: str) -> bool:
        stripped = text.strip()
        if _THINKING_ONLY.match(stripped):
            return True
        if "\n\n" in stripped:
            return False
        return bool(_REASONING_PREFIXES.match(stripped))

    @staticmethod
    def _rewrite_reasoning(text: str) -> str:
        match = _THINKING_ONLY.match(text.strip())
        if match:
            thinking = match.group(1).strip()
            excerpt = thinking[:200] + ("..." if len(thinking) > 200 else "")
            return f"I understand you're asking about this. Let me help you with that. {excerpt}".strip()
        return REASONING_REWRITE_TEXT

