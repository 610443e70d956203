"""Fake AI Core and vendor endpoints for local runs and tests.

One app serves the OAuth token endpoint, deployment listing, the three
AI Core inference shapes (OpenAI, Anthropic Bedrock, Gemini) and the two
public vendor APIs. Behaviour is steered through ``app.state``:

- ``reply_text``: fixed reply; ``None`` echoes the last user message
- ``stream_supported``: when false, streaming requests get plain JSON
- ``fail_paths``: path prefixes answered with HTTP 500
- ``deployments``: entries returned by ``/v2/lm/deployments``
- ``calls``: every request seen, as ``{"method", "path", "headers", "body"}``
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

FAKE_TOKEN_TTL = 3600


def _split_chunks(text: str) -> List[str]:
    if not text:
        return []
    if len(text) <= 12:
        return [text]
    chunk_size = max(1, len(text) // 3)
    return [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)]


def _sse(payload: Any, event: Optional[str] = None) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {data}\n\n"


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("text")
        )
    parts = message.get("parts")
    if isinstance(parts, list):
        return " ".join(str(part.get("text", "")) for part in parts if isinstance(part, dict) and part.get("text"))
    return ""


def _last_user_text(body: Dict[str, Any]) -> str:
    messages = body.get("messages")
    if not isinstance(messages, list):
        contents = body.get("contents")
        messages = contents if isinstance(contents, list) else [contents] if isinstance(contents, dict) else []
    last = ""
    for message in messages:
        if isinstance(message, dict) and message.get("role") in ("user", None):
            last = _message_text(message)
    return last


def _iter_openai_sse(text: str, model: str) -> Iterator[str]:
    resp_id = f"chatcmpl-{uuid.uuid4().hex[:12]}"
    now = int(time.time())
    for piece in _split_chunks(text):
        yield _sse(
            {
                "id": resp_id,
                "object": "chat.completion.chunk",
                "created": now,
                "model": model,
                "choices": [{"index": 0, "delta": {"content": piece}, "finish_reason": None}],
            }
        )
    yield _sse(
        {
            "id": resp_id,
            "object": "chat.completion.chunk",
            "created": now,
            "model": model,
            "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
        }
    )
    yield _sse("[DONE]")


def _iter_anthropic_sse(text: str) -> Iterator[str]:
    yield _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 5, "output_tokens": 1}}},
        "message_start",
    )
    for piece in _split_chunks(text):
        yield _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": piece}},
            "content_block_delta",
        )
    yield _sse({"type": "message_delta", "usage": {"output_tokens": 7}}, "message_delta")
    yield _sse({"type": "message_stop"}, "message_stop")


def _iter_gemini_sse(text: str) -> Iterator[str]:
    for piece in _split_chunks(text):
        yield _sse({"candidates": [{"content": {"role": "model", "parts": [{"text": piece}]}}]})
    yield _sse(
        {
            "candidates": [{"content": {"role": "model", "parts": []}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 7, "totalTokenCount": 12},
        }
    )


def _openai_body(text: str, model: str) -> Dict[str, Any]:
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex[:12]}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
    }


def _anthropic_body(text: str) -> Dict[str, Any]:
    return {
        "id": f"msg_{uuid.uuid4().hex[:12]}",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 5, "output_tokens": 7},
    }


def _gemini_body(text: str) -> Dict[str, Any]:
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": "STOP"}
        ],
        "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 7, "totalTokenCount": 12},
    }


def create_app() -> FastAPI:
    app = FastAPI(title="Fake AI Core upstream", version="0.1.0")
    app.state.reply_text = None
    app.state.stream_supported = True
    app.state.fail_paths = set()
    app.state.deployments = []
    app.state.calls = []
    app.state.token_count = 0

    async def _record(request: Request) -> Dict[str, Any]:
        raw = await request.body()
        try:
            body = json.loads(raw) if raw else {}
        except ValueError:
            body = {}
        app.state.calls.append(
            {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query),
                "headers": dict(request.headers),
                "body": body,
            }
        )
        return body if isinstance(body, dict) else {}

    def _failure(request: Request) -> Optional[JSONResponse]:
        path = request.url.path
        if any(path.startswith(prefix) for prefix in app.state.fail_paths):
            return JSONResponse(status_code=500, content={"error": {"message": "injected failure"}})
        return None

    def _reply(body: Dict[str, Any]) -> str:
        if app.state.reply_text is not None:
            return app.state.reply_text
        return _last_user_text(body) or "hello from fake upstream"

    def _respond(stream: bool, body: Dict[str, Any], iterator, full_body):
        text = _reply(body)
        if stream and app.state.stream_supported:
            return StreamingResponse(iterator(text), media_type="text/event-stream")
        return JSONResponse(content=full_body(text))

    @app.post("/oauth/token")
    async def oauth_token(request: Request):
        await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        app.state.token_count += 1
        return {"access_token": f"fake-token-{app.state.token_count}", "expires_in": FAKE_TOKEN_TTL}

    @app.get("/v2/lm/deployments")
    async def list_deployments(request: Request):
        await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return {"count": len(app.state.deployments), "resources": list(app.state.deployments)}

    @app.post("/v2/inference/deployments/{deployment_id}/chat/completions")
    async def aicore_chat(deployment_id: str, request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return _respond(
            bool(body.get("stream")),
            body,
            lambda text: _iter_openai_sse(text, deployment_id),
            lambda text: _openai_body(text, deployment_id),
        )

    @app.post("/v2/inference/deployments/{deployment_id}/invoke")
    async def aicore_invoke(deployment_id: str, request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return JSONResponse(content=_anthropic_body(_reply(body)))

    @app.post("/v2/inference/deployments/{deployment_id}/invoke-with-response-stream")
    async def aicore_invoke_stream(deployment_id: str, request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return _respond(True, body, _iter_anthropic_sse, _anthropic_body)

    @app.post("/v2/inference/deployments/{deployment_id}/models/{model_action}")
    async def aicore_gemini(deployment_id: str, model_action: str, request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return _respond(
            model_action.endswith(":streamGenerateContent"), body, _iter_gemini_sse, _gemini_body
        )

    @app.post("/v1/messages")
    async def anthropic_messages(request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return _respond(bool(body.get("stream")), body, _iter_anthropic_sse, _anthropic_body)

    @app.post("/v1beta/models/{model_action}")
    async def gemini_generate(model_action: str, request: Request):
        body = await _record(request)
        failure = _failure(request)
        if failure is not None:
            return failure
        return _respond(
            model_action.endswith(":streamGenerateContent"), body, _iter_gemini_sse, _gemini_body
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
