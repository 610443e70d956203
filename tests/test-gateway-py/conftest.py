import importlib
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient


def _ensure_repo_root_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_path()

FAKE_UPSTREAM_URL = "http://fake-upstream"

TEST_MODELS: Dict[str, Any] = {
    "models": {
        "anthropic--claude-4-sonnet": {
            "provider": "anthropic",
            "apiType": "direct",
            "deploymentId": "dclaude01",
            "requestFormat": "anthropic_bedrock",
            "supportsVision": True,
            "maxTokens": 256,
        },
        "gemini-2.5-flash": {
            "provider": "google",
            "apiType": "direct",
            "deploymentId": "dgemini01",
            "requestFormat": "google_ai_studio",
            "endpoint": "/models/gemini-2.5-flash:generateContent",
        },
        "gpt-4o": {
            "provider": "azure-openai",
            "apiType": "provider",
            "deploymentId": "dgpt01",
            "requestFormat": "openai",
            "endpoint": "/chat/completions",
        },
    }
}


def load_modules():
    main = importlib.import_module("aicore_gateway.main")
    upstream = importlib.import_module("aicore_gateway.fake_llm.upstream")
    return main, upstream


class RecordingASGITransport(httpx.AsyncBaseTransport):
    """ASGI transport that records all requests for inspection."""

    def __init__(self, app: Any):
        self._transport = ASGITransport(app=app)
        self.requests: List[Dict[str, Any]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        self.requests.append({
            "method": request.method,
            "url": str(request.url),
            "path": request.url.path,
            "headers": dict(request.headers),
            "body": body,
        })
        forwarded_request = httpx.Request(
            method=request.method,
            url=request.url,
            headers=request.headers,
            content=body,
        )
        return await self._transport.handle_async_request(forwarded_request)

    async def aclose(self) -> None:
        await self._transport.aclose()

    def paths(self) -> List[str]:
        return [item["path"] for item in self.requests]


@pytest.fixture
def fake_upstream():
    _, upstream = load_modules()
    return upstream.create_app()


@pytest.fixture
def upstream_recorder(fake_upstream) -> RecordingASGITransport:
    return RecordingASGITransport(fake_upstream)


@pytest.fixture
def patched_transport(monkeypatch: pytest.MonkeyPatch, upstream_recorder: RecordingASGITransport):
    from aicore_gateway.proxy import transport as transport_module

    async def _patched_get_client(self):
        if self._client is None:
            self._client = AsyncClient(
                transport=upstream_recorder,
                base_url=FAKE_UPSTREAM_URL,
                timeout=self._timeout_secs,
                follow_redirects=False,
            )
        return self._client

    monkeypatch.setattr(transport_module.ProxyTransport, "_get_client", _patched_get_client)
    return upstream_recorder


@pytest.fixture
def no_direct_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)


@pytest.fixture
def models_path(tmp_path: Path) -> Path:
    path = tmp_path / "models.json"
    path.write_text(json.dumps(TEST_MODELS), encoding="utf-8")
    return path


@pytest.fixture
def settings(models_path: Path):
    from aicore_gateway.config import GatewaySettings

    return GatewaySettings(
        aicore_client_id="client-id",
        aicore_client_secret="client-secret",
        aicore_auth_url=FAKE_UPSTREAM_URL,
        aicore_base_url=FAKE_UPSTREAM_URL,
        anthropic_direct_base_url=FAKE_UPSTREAM_URL,
        gemini_direct_base_url=FAKE_UPSTREAM_URL,
        detection_timeout_secs=2.0,
        mock_min_delay_secs=0.0,
        mock_max_delay_secs=0.0,
        models_config_path=str(models_path),
    )


@pytest.fixture
def services(settings, patched_transport, no_direct_keys):
    main, _ = load_modules()
    return main.build_services(settings)


@pytest.fixture
def gateway_client(services):
    main, _ = load_modules()
    app = main.create_app(services=services)
    with TestClient(app) as client:
        yield client
