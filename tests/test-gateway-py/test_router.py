import asyncio
import random
from typing import List, Optional

import pytest

from aicore_gateway.config import GatewaySettings
from aicore_gateway.model_router import ModelRouter
from aicore_gateway.proxy.detection import StreamingCapability
from aicore_gateway.proxy.errors import ModelNotFoundError, UpstreamTransportError
from aicore_gateway.proxy.router import (
    RouteMethod,
    StreamingPreferences,
    StreamingRouter,
    select_optimal_route,
)
from aicore_gateway.proxy.streaming import StreamChunk, Usage
from aicore_gateway.proxy.synthesizer import MockStreamSynthesizer
from aicore_gateway.proxy.translator import ParsedResponse, VendorKind
from aicore_gateway.proxy.validator import ResponseValidator

MODELS = {
    "models": {
        "claude": {"provider": "anthropic", "deploymentId": "d1", "requestFormat": "anthropic"},
        "gpt": {"provider": "openai", "deploymentId": "d2", "requestFormat": "openai"},
    }
}
MESSAGES = [{"role": "user", "content": "Tell me something"}]


def _capability(backend: bool, direct: bool) -> StreamingCapability:
    return StreamingCapability("m", backend, direct, probed_at=0.0, ttl=300.0)


class StubDetection:
    def __init__(self, backend: bool = True, direct: bool = False):
        self.capability = _capability(backend, direct)
        self.requests: List[str] = []

    async def detect_streaming_capability(self, model_key, model_config):
        self.requests.append(model_key)
        return self.capability


class StubUpstream:
    def __init__(
        self,
        chunks: Optional[List[StreamChunk]] = None,
        fail_at: Optional[int] = None,
        text: str = "A complete answer from the upstream model.",
        call_error: Optional[Exception] = None,
    ):
        self.chunks = chunks or []
        self.fail_at = fail_at
        self.response = ParsedResponse(text=text, usage=Usage(3, 8, 11))
        self.call_error = call_error
        self.stream_calls = 0
        self.call_calls = 0

    async def stream(self, model_key, model_config, messages):
        self.stream_calls += 1
        for index, chunk in enumerate(self.chunks):
            if self.fail_at is not None and index == self.fail_at:
                raise UpstreamTransportError("connection reset")
            yield chunk
        if self.fail_at is not None and self.fail_at >= len(self.chunks):
            raise UpstreamTransportError("connection reset")

    async def call(self, model_key, model_config, messages):
        self.call_calls += 1
        if self.call_error is not None:
            raise self.call_error
        return self.response


class StubDirect(StubUpstream):
    def __init__(self, available: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.available = available

    def is_available(self) -> bool:
        return self.available


def _router(detection, backend, direct=None, **settings):
    settings = GatewaySettings(mock_min_delay_secs=0.0, mock_max_delay_secs=0.0, **settings)
    clients = {VendorKind.ANTHROPIC: direct} if direct is not None else {}
    return StreamingRouter(
        ModelRouter.from_mapping(MODELS),
        detection,
        backend,
        clients,
        MockStreamSynthesizer(settings, rng=random.Random(3)),
        ResponseValidator(settings),
        settings,
    )


async def _collect(stream):
    return [chunk async for chunk in stream]


def _assert_single_terminal(chunks: List[StreamChunk]) -> None:
    assert chunks[-1].finished is True
    assert sum(1 for chunk in chunks if chunk.finished) == 1
    assert all(chunk.usage is None for chunk in chunks[:-1])


@pytest.mark.parametrize(
    "backend,direct,direct_available,prefs,expected",
    [
        (True, True, True, StreamingPreferences(prefer_direct_api=True), RouteMethod.DIRECT_TRUE_STREAM),
        (True, True, True, StreamingPreferences(), RouteMethod.BACKEND_TRUE_STREAM),
        (False, True, True, StreamingPreferences(), RouteMethod.DIRECT_TRUE_STREAM),
        (False, True, False, StreamingPreferences(), RouteMethod.BACKEND_MOCK_STREAM),
        (False, False, True, StreamingPreferences(), RouteMethod.BACKEND_MOCK_STREAM),
        (True, True, True, StreamingPreferences(prefer_true_streaming=False), RouteMethod.BACKEND_MOCK_STREAM),
        (
            False,
            True,
            True,
            StreamingPreferences(prefer_direct_api=True, cost_optimization=True),
            RouteMethod.BACKEND_MOCK_STREAM,
        ),
        (
            False,
            False,
            False,
            StreamingPreferences(fallback_to_mock=False),
            RouteMethod.FALLBACK_MOCK_STREAM,
        ),
    ],
)
def test_select_optimal_route(backend, direct, direct_available, prefs, expected):
    route = select_optimal_route(_capability(backend, direct), prefs, direct_available)
    assert route.method is expected
    assert route.rationale


@pytest.mark.asyncio
async def test_backend_true_stream_relays_chunks_and_strips_usage():
    backend = StubUpstream(
        chunks=[
            StreamChunk("Hello"),
            StreamChunk(" world", usage=Usage(1, 1, 2)),
            StreamChunk("", finished=True, usage=Usage(2, 2, 4)),
        ]
    )
    router = _router(StubDetection(backend=True), backend)

    chunks = await _collect(router.stream_response("gpt", MESSAGES))

    assert "".join(chunk.delta_text for chunk in chunks) == "Hello world"
    _assert_single_terminal(chunks)
    assert chunks[-1].usage == Usage(2, 2, 4)
    assert router.get_routing_stats()[RouteMethod.BACKEND_TRUE_STREAM.value]["count"] == 1


@pytest.mark.asyncio
async def test_stream_without_terminal_gets_estimated_usage():
    backend = StubUpstream(chunks=[StreamChunk("abcdefgh")])
    router = _router(StubDetection(backend=True), backend)

    chunks = await _collect(router.stream_response("gpt", MESSAGES))

    _assert_single_terminal(chunks)
    assert chunks[-1].usage.completion_tokens == 2
    assert chunks[-1].usage.prompt_tokens > 0


@pytest.mark.asyncio
async def test_chunks_after_terminal_are_dropped():
    backend = StubUpstream(
        chunks=[StreamChunk("one"), StreamChunk("", finished=True), StreamChunk("extra")]
    )
    chunks = await _collect(_router(StubDetection(), backend).stream_response("gpt", MESSAGES))
    assert [chunk.delta_text for chunk in chunks] == ["one", ""]


@pytest.mark.asyncio
async def test_mid_stream_failure_falls_back_to_mock_stream_from_scratch():
    backend = StubUpstream(chunks=[StreamChunk("partial "), StreamChunk("more")], fail_at=1)
    router = _router(StubDetection(backend=True), backend)

    chunks = await _collect(router.stream_response("gpt", MESSAGES))

    _assert_single_terminal(chunks)
    assert chunks[0].delta_text == "partial "
    replay = "".join(chunk.delta_text for chunk in chunks[1:])
    assert replay == backend.response.text
    assert chunks[-1].usage == Usage(3, 8, 11)
    stats = router.get_routing_stats()
    assert stats[RouteMethod.BACKEND_TRUE_STREAM.value]["count"] == 1
    assert stats[RouteMethod.FALLBACK_MOCK_STREAM.value]["count"] == 1


@pytest.mark.asyncio
async def test_fallback_uses_direct_call_when_backend_call_fails():
    backend = StubUpstream(fail_at=0, call_error=UpstreamTransportError("backend down"))
    direct = StubDirect(text="Direct answer.")
    router = _router(StubDetection(backend=True), backend, direct)

    chunks = await _collect(router.stream_response("claude", MESSAGES))

    _assert_single_terminal(chunks)
    assert "".join(chunk.delta_text for chunk in chunks) == "Direct answer."
    assert direct.call_calls == 1


@pytest.mark.asyncio
async def test_all_routes_failing_raises_transport_error():
    backend = StubUpstream(fail_at=0, call_error=UpstreamTransportError("backend down"))
    router = _router(StubDetection(backend=True), backend)

    with pytest.raises(UpstreamTransportError) as excinfo:
        await _collect(router.stream_response("gpt", MESSAGES))
    assert "gpt" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, UpstreamTransportError)


@pytest.mark.asyncio
async def test_failure_without_mock_fallback_propagates():
    backend = StubUpstream(fail_at=0)
    router = _router(StubDetection(backend=True), backend)

    with pytest.raises(UpstreamTransportError):
        await _collect(
            router.stream_response("gpt", MESSAGES, StreamingPreferences(fallback_to_mock=False))
        )
    assert backend.call_calls == 0


@pytest.mark.asyncio
async def test_mock_route_replays_full_response():
    backend = StubUpstream()
    router = _router(StubDetection(backend=False), backend)

    chunks = await _collect(router.stream_response("gpt", MESSAGES))

    _assert_single_terminal(chunks)
    assert "".join(chunk.delta_text for chunk in chunks) == backend.response.text
    assert backend.stream_calls == 0
    assert backend.call_calls == 1


@pytest.mark.asyncio
async def test_direct_true_stream_when_preferred():
    backend = StubUpstream(chunks=[StreamChunk("backend")])
    direct = StubDirect(chunks=[StreamChunk("direct"), StreamChunk("", finished=True)])
    router = _router(StubDetection(backend=True, direct=True), backend, direct, prefer_direct_api=True)

    chunks = await _collect(router.stream_response("claude", MESSAGES))

    assert [chunk.delta_text for chunk in chunks] == ["direct", ""]
    assert backend.stream_calls == 0


@pytest.mark.asyncio
async def test_trusted_source_chunks_skip_validation():
    backend = StubUpstream(chunks=[StreamChunk("a\x00b"), StreamChunk("", finished=True)])
    validated = await _collect(
        _router(StubDetection(), backend).stream_response("gpt", MESSAGES)
    )
    trusted = await _collect(
        _router(StubDetection(), backend, trusted_stream_sources=frozenset({"backend"})).stream_response(
            "gpt", MESSAGES
        )
    )
    assert validated[0].delta_text == "ab"
    assert trusted[0].delta_text == "a\x00b"


@pytest.mark.asyncio
async def test_cancel_event_ends_stream_without_terminal():
    backend = StubUpstream(text="word " * 40)
    router = _router(StubDetection(backend=False), backend)
    cancel = asyncio.Event()

    received = []
    async for chunk in router.stream_response("gpt", MESSAGES, cancel_event=cancel):
        received.append(chunk)
        cancel.set()

    assert len(received) == 1
    assert received[0].finished is False


@pytest.mark.asyncio
async def test_unknown_model_raises_not_found():
    router = _router(StubDetection(), StubUpstream())
    with pytest.raises(ModelNotFoundError):
        await _collect(router.stream_response("missing", MESSAGES))


@pytest.mark.asyncio
async def test_complete_falls_back_to_direct_api():
    backend = StubUpstream(call_error=UpstreamTransportError("backend down", upstream_status=503))
    direct = StubDirect(text="From direct.")
    router = _router(StubDetection(), backend, direct)

    response = await router.complete("claude", MESSAGES)

    assert response.text == "From direct."
    assert backend.call_calls == 1


@pytest.mark.asyncio
async def test_complete_prefers_direct_unless_cost_optimized():
    backend = StubUpstream(text="From backend.")
    direct = StubDirect(text="From direct.")
    router = _router(StubDetection(), backend, direct)

    preferred = await router.complete("claude", MESSAGES, StreamingPreferences(prefer_direct_api=True))
    optimized = await router.complete(
        "claude", MESSAGES, StreamingPreferences(prefer_direct_api=True, cost_optimization=True)
    )

    assert preferred.text == "From direct."
    assert optimized.text == "From backend."


@pytest.mark.asyncio
async def test_complete_reraises_last_failure_with_context():
    backend = StubUpstream(call_error=UpstreamTransportError("backend down", upstream_status=503))
    router = _router(StubDetection(), backend)

    with pytest.raises(UpstreamTransportError) as excinfo:
        await router.complete("gpt", MESSAGES)
    assert "AI Core non-streaming call failed" in str(excinfo.value)
    assert excinfo.value.upstream_status == 503
