from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import GatewaySettings
from ..messages import CanonicalMessage, coerce_messages, extract_prompt
from ..model_router import ModelRouter
from .backend import BackendClient
from .detection import StreamingCapability, StreamingDetectionService
from .direct import DirectApiClient, direct_client_for
from .errors import ConfigurationError, GatewayError, UpstreamTransportError
from .streaming import StreamChunk
from .synthesizer import MockStreamSynthesizer, estimate_usage
from .translator import ParsedResponse, VendorKind
from .validator import ResponseValidator

logger = logging.getLogger(__name__)

SOURCE_BACKEND = "backend"
SOURCE_DIRECT = "direct"
SOURCE_SYNTHESIZER = "synthesizer"


class RouteMethod(str, Enum):
    BACKEND_TRUE_STREAM = "backend-true-stream"
    DIRECT_TRUE_STREAM = "direct-true-stream"
    BACKEND_MOCK_STREAM = "backend-mock-stream"
    FALLBACK_MOCK_STREAM = "fallback-mock-stream"


@dataclass(frozen=True)
class StreamingRoute:
    method: RouteMethod
    rationale: str
    cost_tier: str = "low"


@dataclass(frozen=True)
class StreamingPreferences:
    prefer_direct_api: bool = False
    prefer_true_streaming: bool = True
    fallback_to_mock: bool = True
    cost_optimization: bool = False

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "StreamingPreferences":
        return cls(prefer_direct_api=settings.prefer_direct_api)


def select_optimal_route(
    capability: StreamingCapability,
    preferences: StreamingPreferences,
    direct_available: bool,
) -> StreamingRoute:
    direct_allowed = direct_available and not preferences.cost_optimization

    if preferences.prefer_direct_api and capability.direct_api_supports_stream and direct_allowed:
        return StreamingRoute(
            RouteMethod.DIRECT_TRUE_STREAM,
            "direct API streaming preferred and available",
            "medium",
        )

    if capability.backend_supports_stream and preferences.prefer_true_streaming:
        return StreamingRoute(
            RouteMethod.BACKEND_TRUE_STREAM,
            "AI Core native streaming available",
            "low",
        )

    if (
        capability.direct_api_supports_stream
        and preferences.prefer_true_streaming
        and direct_allowed
    ):
        return StreamingRoute(
            RouteMethod.DIRECT_TRUE_STREAM,
            "direct API streaming available, AI Core streaming not supported",
            "medium",
        )

    if preferences.fallback_to_mock:
        return StreamingRoute(
            RouteMethod.BACKEND_MOCK_STREAM,
            "true streaming not available, using AI Core with mock streaming",
            "low",
        )

    return StreamingRoute(RouteMethod.FALLBACK_MOCK_STREAM, "fallback to mock streaming", "low")


class StreamingRouter:
    def __init__(
        self,
        model_router: ModelRouter,
        detection: StreamingDetectionService,
        backend: BackendClient,
        direct_clients: Mapping[VendorKind, DirectApiClient],
        synthesizer: MockStreamSynthesizer,
        validator: ResponseValidator,
        settings: GatewaySettings,
        clock: Callable[[], float] = time.time,
    ):
        self._model_router = model_router
        self._detection = detection
        self._backend = backend
        self._direct_clients = direct_clients
        self._synthesizer = synthesizer
        self._validator = validator
        self.settings = settings
        self.default_preferences = StreamingPreferences.from_settings(settings)
        self._clock = clock
        self._stats: Dict[str, Dict[str, Any]] = {}

    def _direct_client(self, model_config: Any) -> Optional[DirectApiClient]:
        client = direct_client_for(model_config, self._direct_clients)
        if client is None or not client.is_available():
            return None
        return client

    async def _route_for(
        self,
        model_key: str,
        model_config: Any,
        preferences: StreamingPreferences,
    ) -> StreamingRoute:
        capability = await self._detection.detect_streaming_capability(model_key, model_config)
        return select_optimal_route(
            capability, preferences, self._direct_client(model_config) is not None
        )

    async def determine_streaming_route(
        self,
        model_key: str,
        preferences: Optional[StreamingPreferences] = None,
    ) -> StreamingRoute:
        model_config = await self._model_router.resolve(model_key)
        return await self._route_for(model_key, model_config, preferences or self.default_preferences)

    def _record(self, method: RouteMethod) -> None:
        entry = self._stats.setdefault(method.value, {"count": 0, "last_used": None})
        entry["count"] += 1
        entry["last_used"] = datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()

    def get_routing_stats(self) -> Dict[str, Dict[str, Any]]:
        return {method: dict(entry) for method, entry in self._stats.items()}

    async def stream_response(
        self,
        model_key: str,
        messages: Iterable[Any],
        preferences: Optional[StreamingPreferences] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        prefs = preferences or self.default_preferences
        canonical = coerce_messages(messages)
        prompt = extract_prompt(canonical)
        model_config = await self._model_router.resolve(model_key)
        route = await self._route_for(model_key, model_config, prefs)
        self._record(route.method)
        logger.info(
            "streaming route: model=%s method=%s reason=%s",
            model_key,
            route.method.value,
            route.rationale,
        )

        chunks = None
        try:
            chunks = self._deliver(route, model_key, model_config, canonical, prompt, cancel_event)
            async for chunk in chunks:
                yield chunk
            return
        except Exception as exc:
            if not prefs.fallback_to_mock or route.method == RouteMethod.FALLBACK_MOCK_STREAM:
                raise
            logger.warning(
                "streaming route failed, falling back to mock streaming: model=%s method=%s error=%s",
                model_key,
                route.method.value,
                exc,
            )
            original = exc
        finally:
            if chunks is not None:
                await chunks.aclose()

        fallback = StreamingRoute(
            RouteMethod.FALLBACK_MOCK_STREAM, f"recovery after {route.method.value} failure"
        )
        self._record(fallback.method)
        chunks = self._deliver(fallback, model_key, model_config, canonical, prompt, cancel_event)
        try:
            async for chunk in chunks:
                yield chunk
        except Exception as exc:
            logger.error("all streaming routes failed: model=%s error=%s", model_key, exc)
            raise UpstreamTransportError(
                f"all streaming routes failed for {model_key}: {original}"
            ) from original
        finally:
            await chunks.aclose()

    def _deliver(
        self,
        route: StreamingRoute,
        model_key: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
        prompt: str,
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamChunk]:
        if route.method == RouteMethod.BACKEND_TRUE_STREAM:
            source = SOURCE_BACKEND
            chunks = self._backend.stream(model_key, model_config, messages)
        elif route.method == RouteMethod.DIRECT_TRUE_STREAM:
            client = self._direct_client(model_config)
            if client is None:
                raise ConfigurationError(f"no direct API client available for {model_key}")
            source = SOURCE_DIRECT
            chunks = client.stream(model_key, model_config, messages)
        elif route.method == RouteMethod.BACKEND_MOCK_STREAM:
            source = SOURCE_SYNTHESIZER
            chunks = self._mock_stream(
                lambda: self._backend.call(model_key, model_config, messages), prompt, cancel_event
            )
        else:
            source = SOURCE_SYNTHESIZER
            chunks = self._mock_stream(
                lambda: self._fallback_response(model_key, model_config, messages),
                prompt,
                cancel_event,
            )

        return self._guard(chunks, source, model_key, prompt, cancel_event)

    async def _mock_stream(
        self,
        fetch: Callable[[], Awaitable[ParsedResponse]],
        prompt: str,
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamChunk]:
        response = await fetch()
        stream = self._synthesizer.stream(response.text, response.usage, prompt, cancel_event)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def _fallback_response(
        self,
        model_key: str,
        model_config: Any,
        messages: Sequence[CanonicalMessage],
    ) -> ParsedResponse:
        try:
            return await self._backend.call(model_key, model_config, messages)
        except GatewayError as exc:
            client = self._direct_client(model_config)
            if client is None:
                raise
            logger.warning(
                "AI Core call failed, trying direct API: model=%s error=%s", model_key, exc
            )
            return await client.call(model_key, model_config, messages)

    async def _guard(
        self,
        chunks: AsyncIterator[StreamChunk],
        source: str,
        model_key: str,
        prompt: str,
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamChunk]:
        """Validate chunks and close the sequence with exactly one terminal chunk."""
        validate = source not in self.settings.trusted_stream_sources
        delivered: List[str] = []
        try:
            async for chunk in chunks:
                if cancel_event is not None and cancel_event.is_set():
                    return
                if validate:
                    chunk = self._validator.validate_stream_chunk(chunk, model_key, prompt).final_chunk
                if chunk.finished:
                    yield chunk
                    return
                delivered.append(chunk.delta_text)
                yield chunk.without_usage()
        finally:
            await chunks.aclose()

        if cancel_event is not None and cancel_event.is_set():
            return
        yield StreamChunk(
            delta_text="", finished=True, usage=estimate_usage("".join(delivered), prompt)
        )

    async def complete(
        self,
        model_key: str,
        messages: Iterable[Any],
        preferences: Optional[StreamingPreferences] = None,
    ) -> ParsedResponse:
        prefs = preferences or self.default_preferences
        canonical = coerce_messages(messages)
        model_config = await self._model_router.resolve(model_key)
        client = self._direct_client(model_config)

        attempts = [("AI Core non-streaming call", self._backend)]
        if client is not None:
            direct_attempt = ("direct API non-streaming call", client)
            if prefs.prefer_direct_api and not prefs.cost_optimization:
                attempts.insert(0, direct_attempt)
            else:
                attempts.append(direct_attempt)

        for index, (rationale, target) in enumerate(attempts):
            try:
                return await target.call(model_key, model_config, canonical)
            except GatewayError as exc:
                logger.warning("%s failed: model=%s error=%s", rationale, model_key, exc)
                if index < len(attempts) - 1:
                    continue
                if isinstance(exc, UpstreamTransportError):
                    raise UpstreamTransportError(
                        f"{rationale} failed: {exc}",
                        upstream_status=exc.upstream_status,
                        timeout=exc.timeout,
                    ) from exc
                raise
        raise UpstreamTransportError(f"no route available for {model_key}")

    async def refresh_capability(self, model_key: str) -> StreamingCapability:
        model_config = await self._model_router.resolve(model_key)
        return await self._detection.refresh_capability(model_key, model_config)

    async def refresh_all_capabilities(self) -> Dict[str, StreamingCapability]:
        self._detection.clear_cache()
        entries = []
        for model_key in self._model_router.all_models():
            entries.append((model_key, await self._model_router.resolve(model_key)))
        return await self._detection.detect_multiple_capabilities(entries)
