from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ...config import GatewaySettings
from ...messages import CanonicalMessage
from ..errors import ConfigurationError
from ..streaming import StreamChunk, StreamPayload, StreamState, Usage

NO_RESPONSE_TEXT = "No response"
UNSUPPORTED_IMAGE_TEXT = "[Image content - format not supported]"

_DATA_URI_PATTERN = re.compile(r"^data:image/([^;]+);base64,(.+)$", re.DOTALL)


class VendorKind(str, Enum):
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GENERIC = "generic"


@dataclass
class VendorRequest:
    url: str
    body: Dict[str, Any]


@dataclass
class ParsedResponse:
    text: str
    usage: Usage = field(default_factory=Usage)
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "text": self.text, "usage": self.usage.to_dict()}


def parse_data_uri(url: str) -> Optional[Tuple[str, str]]:
    """``data:image/png;base64,xxx`` -> ``("image/png", "xxx")``."""
    match = _DATA_URI_PATTERN.match(url or "")
    if not match or not match.group(2):
        return None
    return f"image/{match.group(1)}", match.group(2)


class BaseTranslator(ABC):
    kind: VendorKind

    def __init__(self, settings: Optional[GatewaySettings] = None):
        self.settings = settings or GatewaySettings()

    @abstractmethod
    def build_request(
        self,
        base_url: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        stream: bool = False,
    ) -> VendorRequest:
        raise NotImplementedError

    @abstractmethod
    def parse_response(self, body: Any) -> ParsedResponse:
        raise NotImplementedError

    @abstractmethod
    def parse_stream_event(self, payload: StreamPayload, state: StreamState) -> List[StreamChunk]:
        raise NotImplementedError

    @staticmethod
    def _join_url(base_url: str, path: str) -> str:
        if not base_url:
            raise ConfigurationError("no base URL configured for the upstream request")
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{base_url.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _require_endpoint(endpoint: Optional[str], label: str) -> str:
        if not endpoint:
            raise ConfigurationError(f"no endpoint configured for {label} request")
        return endpoint

    def max_tokens_for(self, model_config: Any) -> int:
        return getattr(model_config, "max_tokens", None) or self.settings.default_max_tokens

    def temperature_for(self, model_config: Any) -> float:
        value = getattr(model_config, "temperature", None)
        return self.settings.default_temperature if value is None else value

    @staticmethod
    def _first_text(candidates: Sequence[Any]) -> Optional[str]:
        for value in candidates:
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _get(obj: Any, *path: Any) -> Any:
        current = obj
        for key in path:
            if isinstance(key, int):
                if not isinstance(current, list) or len(current) <= key:
                    return None
                current = current[key]
            else:
                if not isinstance(current, Mapping):
                    return None
                current = current.get(key)
        return current
