from __future__ import annotations

import asyncio
import math
import random
import re
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from ..config import GatewaySettings
from .streaming import StreamChunk, Usage

_TOKEN_PATTERN = re.compile(r"\S+|\s+")
_SENTENCE_END = re.compile(r"[.!?]$")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


def estimate_usage(completion_text: str, prompt_text: str = "") -> Usage:
    return Usage.from_counts(estimate_tokens(prompt_text), estimate_tokens(completion_text))


class MockStreamSynthesizer:
    """Replays a complete response as a paced chunk sequence.

    Chunk sizes and delays are randomized within the configured bounds. The
    last chunk is always terminal and carries usage (the upstream figures when
    it reported any, else a ``ceil(chars / 4)`` estimate).
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or GatewaySettings()
        self._rng = rng or random.Random()
        self._sleep = sleep

    def _target_size(self) -> int:
        low = self.settings.mock_min_chunk_chars
        high = max(low, self.settings.mock_max_chunk_chars)
        return self._rng.randint(low, high)

    def _delay(self) -> float:
        low = self.settings.mock_min_delay_secs
        high = max(low, self.settings.mock_max_delay_secs)
        return self._rng.uniform(low, high)

    def split(self, text: str) -> List[str]:
        """Chunk boundaries for ``text``; joining the result gives ``text`` back."""
        pieces: List[str] = []
        buffer = ""
        target = self._target_size()
        for token in _TOKEN_PATTERN.findall(text):
            buffer += token
            sentence_end = self.settings.mock_word_boundary and bool(_SENTENCE_END.search(token))
            if len(buffer) >= target or sentence_end:
                pieces.append(buffer)
                buffer = ""
                target = self._target_size()
        if buffer:
            pieces.append(buffer)
        return pieces

    async def stream(
        self,
        text: str,
        usage: Optional[Usage] = None,
        prompt: str = "",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        pieces = self.split(text or "")
        for index, piece in enumerate(pieces):
            if cancel_event is not None and cancel_event.is_set():
                return
            yield StreamChunk(delta_text=piece)
            if index < len(pieces) - 1:
                delay = self._delay()
                if delay > 0:
                    await self._sleep(delay)

        if cancel_event is not None and cancel_event.is_set():
            return
        if usage is None or usage.is_empty:
            usage = estimate_usage(text or "", prompt)
        yield StreamChunk(delta_text="", finished=True, usage=usage)
