from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .config import GatewaySettings
from .logging_setup import setup_logging
from .messages import CanonicalMessage, has_image_content
from .model_router import DeploymentDiscovery, ModelRouter
from .proxy.backend import BackendClient
from .proxy.detection import StreamingDetectionService
from .proxy.direct import DirectApiClient, create_direct_clients
from .proxy.errors import GatewayError
from .proxy.router import StreamingRouter
from .proxy.streaming import DONE_MARKER, SSEEvent, StreamChunk
from .proxy.synthesizer import MockStreamSynthesizer
from .proxy.translator import VendorKind
from .proxy.transport import ProxyTransport
from .proxy.validator import ResponseValidator
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


class ChatCompletionIn(BaseModel):
    model: str
    messages: List[CanonicalMessage]
    stream: bool = False


@dataclass
class GatewayServices:
    settings: GatewaySettings
    transport: ProxyTransport
    token_manager: TokenManager
    model_router: ModelRouter
    validator: ResponseValidator
    backend: BackendClient
    direct_clients: Mapping[VendorKind, DirectApiClient]
    detection: StreamingDetectionService
    synthesizer: MockStreamSynthesizer
    router: StreamingRouter

    async def aclose(self) -> None:
        await self.transport.aclose()


def build_services(
    settings: Optional[GatewaySettings] = None,
    transport: Optional[ProxyTransport] = None,
    model_router: Optional[ModelRouter] = None,
) -> GatewayServices:
    settings = settings or GatewaySettings.from_env()
    transport = transport or ProxyTransport()
    token_manager = TokenManager(transport, settings)
    if model_router is None:
        discovery = DeploymentDiscovery(transport, token_manager, settings)
        model_router = ModelRouter.from_file(settings.models_config_path, discovery=discovery)
    validator = ResponseValidator(settings)
    backend = BackendClient(transport, token_manager, settings, validator)
    direct_clients = create_direct_clients(transport, settings, validator)
    detection = StreamingDetectionService(backend, direct_clients, settings)
    synthesizer = MockStreamSynthesizer(settings)
    router = StreamingRouter(
        model_router, detection, backend, direct_clients, synthesizer, validator, settings
    )
    return GatewayServices(
        settings=settings,
        transport=transport,
        token_manager=token_manager,
        model_router=model_router,
        validator=validator,
        backend=backend,
        direct_clients=direct_clients,
        detection=detection,
        synthesizer=synthesizer,
        router=router,
    )


def _error_payload(message: str, error_type: str) -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}


def _encode_sse_event(event: SSEEvent) -> bytes:
    lines: List[str] = []
    if event.event is not None:
        lines.append(f"event: {event.event}")
    if event.id is not None:
        lines.append(f"id: {event.id}")
    for line in (event.data or "").split("\n"):
        lines.append(f"data: {line}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


def _encode_json_event(payload: Dict[str, Any]) -> bytes:
    return _encode_sse_event(SSEEvent(data=json.dumps(payload, ensure_ascii=False)))


def _chunk_payload(
    chunk: StreamChunk,
    completion_id: str,
    created: int,
    model: str,
    first: bool,
) -> Dict[str, Any]:
    delta: Dict[str, Any] = {}
    if first:
        delta["role"] = "assistant"
    if chunk.delta_text:
        delta["content"] = chunk.delta_text
    payload: Dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": "stop" if chunk.finished else None,
            }
        ],
    }
    if chunk.finished and chunk.usage is not None:
        payload["usage"] = chunk.usage.to_dict()
    return payload


async def _iter_chat_stream(
    router: StreamingRouter,
    model: str,
    messages: List[CanonicalMessage],
) -> AsyncIterator[bytes]:
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())
    cancel_event = asyncio.Event()
    chunks = router.stream_response(model, messages, cancel_event=cancel_event)
    first = True
    try:
        async for chunk in chunks:
            yield _encode_json_event(_chunk_payload(chunk, completion_id, created, model, first))
            first = False
        yield _encode_sse_event(SSEEvent(data=DONE_MARKER))
    except GatewayError as exc:
        logger.exception("chat stream failed: model=%s", model)
        yield _encode_json_event(_error_payload(str(exc), "upstream_error"))
        yield _encode_sse_event(SSEEvent(data=DONE_MARKER))
    except Exception:
        logger.exception("chat stream failed unexpectedly: model=%s", model)
        yield _encode_json_event(_error_payload("stream processing failed", "proxy_error"))
        yield _encode_sse_event(SSEEvent(data=DONE_MARKER))
    finally:
        cancel_event.set()
        await chunks.aclose()


def create_app(
    settings: Optional[GatewaySettings] = None,
    services: Optional[GatewayServices] = None,
) -> FastAPI:
    if services is None:
        services = build_services(settings)
    setup_logging(services.settings.log_level)

    app = FastAPI(title="AI Core Gateway", version=__version__)
    app.state.gateway = services

    @app.on_event("shutdown")
    async def _shutdown_transport():
        await app.state.gateway.aclose()

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        logger.warning("request failed: path=%s error=%s", request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(str(exc), type(exc).__name__),
        )

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/v1/models")
    async def list_models():
        model_router = app.state.gateway.model_router
        data = []
        for name in model_router.all_models():
            model_config = model_router.get_model_config(name)
            data.append(
                {
                    "id": name,
                    "object": "model",
                    "owned_by": model_config.provider or "sap-ai-core",
                    "description": model_config.description,
                }
            )
        return {"object": "list", "data": data}

    @app.post("/v1/chat/completions")
    async def chat_completions(inp: ChatCompletionIn):
        gateway: GatewayServices = app.state.gateway
        await gateway.model_router.resolve(inp.model)

        if has_image_content(inp.messages) and not gateway.model_router.supports_vision(inp.model):
            return JSONResponse(
                status_code=400,
                content=_error_payload(
                    f"model '{inp.model}' does not support image input", "invalid_request_error"
                ),
            )

        if inp.stream:
            return StreamingResponse(
                _iter_chat_stream(gateway.router, inp.model, inp.messages),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )

        parsed = await gateway.router.complete(inp.model, inp.messages)
        return {
            "id": f"chatcmpl-{uuid.uuid4().hex}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": inp.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": parsed.text},
                    "finish_reason": "stop",
                }
            ],
            "usage": parsed.usage.to_dict(),
        }

    @app.get("/api/streaming/capabilities")
    async def streaming_capabilities():
        gateway: GatewayServices = app.state.gateway
        return {
            "capabilities": gateway.detection.get_capability_summary(),
            "metrics": gateway.detection.get_performance_metrics(),
            "routing": gateway.router.get_routing_stats(),
        }

    @app.post("/api/streaming/refresh/{model}")
    async def refresh_model_capability(model: str):
        capability = await app.state.gateway.router.refresh_capability(model)
        return {"model": model, "capability": capability.to_dict()}

    @app.post("/api/streaming/refresh")
    async def refresh_all_capabilities():
        capabilities = await app.state.gateway.router.refresh_all_capabilities()
        return {
            "capabilities": {key: value.to_dict() for key, value in capabilities.items()},
        }

    return app


def run() -> None:
    import uvicorn

    settings = GatewaySettings.from_env()
    uvicorn.run(create_app(settings), host=settings.server_host, port=settings.server_port)
