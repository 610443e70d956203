from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..config import GatewaySettings
from ..messages import CanonicalMessage
from .backend import BackendClient
from .direct import DirectApiClient, direct_client_for
from .errors import GatewayError
from .transport import is_streaming_response
from .translator import VendorKind

logger = logging.getLogger(__name__)

PROBE_MESSAGES = (CanonicalMessage(role="user", content="Hi"),)
PROBE_MAX_TOKENS = 1

ProbeOpener = Callable[[], Awaitable[httpx.Response]]


@dataclass(frozen=True)
class StreamingCapability:
    model_key: str
    backend_supports_stream: bool
    direct_api_supports_stream: bool
    probed_at: float
    ttl: float
    probe_error: Optional[str] = None
    checked_at: str = ""

    @property
    def expires_at(self) -> float:
        return self.probed_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_supports_stream,
            "direct_api": self.direct_api_supports_stream,
            "last_checked": self.checked_at,
            "error": self.probe_error,
        }


@dataclass
class DetectionMetrics:
    probe_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_probe_secs: float = 0.0

    def snapshot(self) -> Dict[str, Any]:
        lookups = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / lookups) * 100 if lookups else 0.0
        avg_ms = (self.total_probe_secs / self.probe_count) * 1000 if self.probe_count else 0.0
        return {
            "probe_count": self.probe_count,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(hit_rate, 2),
            "avg_probe_ms": round(avg_ms, 2),
        }


class StreamingDetectionService:
    """Per-model streaming support, probed live and cached for a TTL.

    Concurrent lookups for the same model share one in-flight probe. Probe
    failures of any kind are recorded as "unsupported" with ``probe_error``
    set; they are never raised to the caller.
    """

    def __init__(
        self,
        backend: BackendClient,
        direct_clients: Mapping[VendorKind, DirectApiClient],
        settings: GatewaySettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backend = backend
        self._direct_clients = direct_clients
        self.settings = settings
        self._clock = clock
        self._cache: Dict[str, StreamingCapability] = {}
        self._inflight: Dict[str, "asyncio.Future[StreamingCapability]"] = {}
        self.metrics = DetectionMetrics()

    async def detect_streaming_capability(
        self,
        model_key: str,
        model_config: Any,
    ) -> StreamingCapability:
        cached = self._cache.get(model_key)
        if cached is not None and cached.is_fresh(self._clock()):
            self.metrics.cache_hits += 1
            return cached

        self.metrics.cache_misses += 1
        pending = self._inflight.get(model_key)
        if pending is None:
            pending = asyncio.ensure_future(self._probe_model(model_key, model_config))
            self._inflight[model_key] = pending
            pending.add_done_callback(lambda done, key=model_key: self._forget(key, done))
        # one caller's cancellation must not cancel the probe the others wait on
        return await asyncio.shield(pending)

    def _forget(self, model_key: str, done: "asyncio.Future[StreamingCapability]") -> None:
        if self._inflight.get(model_key) is done:
            del self._inflight[model_key]

    async def refresh_capability(self, model_key: str, model_config: Any) -> StreamingCapability:
        pending = self._inflight.get(model_key)
        if pending is not None:
            await asyncio.shield(pending)
        self._cache.pop(model_key, None)
        logger.info("streaming capability refresh: model=%s", model_key)
        return await self.detect_streaming_capability(model_key, model_config)

    async def _probe_model(self, model_key: str, model_config: Any) -> StreamingCapability:
        started = self._clock()
        self.metrics.probe_count += 1
        probe_config = self._probe_config(model_config)
        errors: List[str] = []

        if getattr(model_config, "supports_streaming", True):
            backend_probe = self._probe(
                lambda: self._backend.open_stream(probe_config, PROBE_MESSAGES), "backend"
            )
        else:
            backend_probe = self._skipped_probe()
        direct_client = direct_client_for(model_config, self._direct_clients)
        if direct_client is not None and direct_client.is_available():
            direct_probe = self._probe(
                lambda: direct_client.open_stream(probe_config, PROBE_MESSAGES), "direct"
            )
        else:
            direct_probe = self._skipped_probe()

        # both probes share one timeout window
        (backend_ok, backend_error), (direct_ok, direct_error) = await asyncio.gather(
            backend_probe, direct_probe
        )
        errors.extend(error for error in (backend_error, direct_error) if error)

        finished = self._clock()
        self.metrics.total_probe_secs += max(0.0, finished - started)
        capability = StreamingCapability(
            model_key=model_key,
            backend_supports_stream=backend_ok,
            direct_api_supports_stream=direct_ok,
            probed_at=finished,
            ttl=self.settings.detection_cache_ttl_secs,
            probe_error="; ".join(errors) or None,
            checked_at=datetime.now(timezone.utc).isoformat(),
        )
        self._cache[model_key] = capability
        logger.info(
            "streaming capability detected: model=%s backend=%s direct=%s elapsed_ms=%.0f",
            model_key,
            backend_ok,
            direct_ok,
            (finished - started) * 1000,
        )
        return capability

    @staticmethod
    def _probe_config(model_config: Any) -> Any:
        if hasattr(model_config, "model_copy"):
            return model_config.model_copy(update={"max_tokens": PROBE_MAX_TOKENS})
        return model_config

    @staticmethod
    async def _skipped_probe() -> Tuple[bool, Optional[str]]:
        return False, None

    async def _probe(self, opener: ProbeOpener, label: str) -> Tuple[bool, Optional[str]]:
        timeout = self.settings.detection_timeout_secs
        try:
            return await asyncio.wait_for(self._read_first_bytes(opener), timeout=timeout)
        except asyncio.TimeoutError:
            return False, f"{label} probe timed out after {timeout:g}s"
        except (GatewayError, httpx.HTTPError, OSError, ValueError) as exc:
            logger.debug("%s streaming probe failed: %s", label, exc)
            return False, f"{label} probe failed: {exc}"

    @staticmethod
    async def _read_first_bytes(opener: ProbeOpener) -> Tuple[bool, Optional[str]]:
        response = await opener()
        try:
            if not 200 <= response.status_code < 300:
                return False, f"status {response.status_code}"
            if not is_streaming_response(response.headers):
                content_type = response.headers.get("content-type", "")
                return False, f"non-streaming content type: {content_type or 'none'}"
            async for chunk in response.aiter_bytes():
                if chunk:
                    return True, None
            return False, "empty stream body"
        finally:
            await response.aclose()

    def get_cached_capability(self, model_key: str) -> Optional[StreamingCapability]:
        cached = self._cache.get(model_key)
        if cached is not None and cached.is_fresh(self._clock()):
            return cached
        return None

    def get_all_capabilities(self) -> Dict[str, StreamingCapability]:
        return dict(self._cache)

    def get_capability_summary(self) -> Dict[str, Dict[str, Any]]:
        return {key: capability.to_dict() for key, capability in self._cache.items()}

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("streaming capability cache cleared")

    def get_performance_metrics(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def reset_performance_metrics(self) -> None:
        self.metrics = DetectionMetrics()

    async def detect_multiple_capabilities(
        self,
        entries: Sequence[Tuple[str, Any]],
    ) -> Dict[str, StreamingCapability]:
        results: Dict[str, StreamingCapability] = {}
        batch_size = max(1, self.settings.detection_concurrency)
        for start in range(0, len(entries), batch_size):
            batch = entries[start : start + batch_size]
            capabilities = await asyncio.gather(
                *(self.detect_streaming_capability(key, config) for key, config in batch)
            )
            for (key, _), capability in zip(batch, capabilities):
                results[key] = capability
        logger.info("batch streaming detection complete: models=%d", len(results))
        return results
