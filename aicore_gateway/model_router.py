from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import GatewaySettings
from .proxy.errors import ConfigurationError, ModelNotFoundError, UpstreamTransportError
from .proxy.transport import ProxyTransport, raise_for_upstream_status, read_json
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

DISCOVERY_CACHE_SECS = 300.0
_DEPLOYMENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]+$")
_MODEL_NAME_PATHS = (
    ("details", "resources", "backendDetails", "model", "name"),
    ("details", "resources", "backend_details", "model", "name"),
    ("details", "resources", "model", "name"),
    ("modelName",),
)


class ModelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: str = ""
    api_type: Literal["provider", "direct"] = Field(default="direct", alias="apiType")
    deployment_id: Optional[str] = Field(default=None, alias="deploymentId")
    endpoint: Optional[str] = None
    stream_endpoint: Optional[str] = Field(default=None, alias="streamEndpoint")
    request_format: Optional[str] = Field(default=None, alias="requestFormat")
    supports_streaming: bool = Field(default=True, alias="supportsStreaming")
    supports_vision: bool = Field(default=False, alias="supportsVision")
    anthropic_version: Optional[str] = Field(default=None, alias="anthropicVersion")
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    temperature: Optional[float] = None
    direct_model: Optional[str] = Field(default=None, alias="directModel")
    description: str = ""


@dataclass(frozen=True)
class ModelValidation:
    is_valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class DeploymentInfo:
    id: str
    model_name: str
    status: str
    deployment_url: Optional[str] = None
    configuration_name: Optional[str] = None


@dataclass
class DiscoveryResult:
    success: bool
    deployments: List[DeploymentInfo] = field(default_factory=list)
    error: Optional[str] = None


def deployment_env_name(model_name: str) -> str:
    """``anthropic--claude-4-sonnet`` -> ``ANTHROPIC_CLAUDE_4_SONNET_DEPLOYMENT_ID``."""
    name = re.sub(r"[^A-Z0-9]", "_", model_name.upper())
    name = re.sub(r"_+", "_", name).strip("_")
    return f"{name}_DEPLOYMENT_ID"


def _nested(obj: Any, path: tuple) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


class DeploymentDiscovery:
    def __init__(
        self,
        transport: ProxyTransport,
        token_manager: TokenManager,
        settings: GatewaySettings,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._token_manager = token_manager
        self._settings = settings
        self._environ = environ if environ is not None else os.environ
        self._clock = clock
        self._cache: Dict[str, str] = {}
        self._cache_expiry = 0.0

    async def discover_deployments(self) -> DiscoveryResult:
        if not self._settings.aicore_base_url:
            return DiscoveryResult(success=False, error="AICORE_BASE_URL is not configured")
        url = f"{self._settings.aicore_base_url}/v2/lm/deployments?scenarioId=foundation-models"
        try:
            token = await self._token_manager.get_access_token()
            response = await self._transport.request(
                "GET",
                url,
                {
                    "Authorization": f"Bearer {token}",
                    "AI-Resource-Group": self._settings.resource_group,
                },
                stream=True,
            )
            await raise_for_upstream_status(response, "Deployment listing")
            data = await read_json(response, "Deployment listing")
        except (ConfigurationError, UpstreamTransportError, httpx.HTTPError) as exc:
            logger.warning("deployment discovery failed: %s", exc)
            return DiscoveryResult(success=False, error=str(exc))

        deployments: List[DeploymentInfo] = []
        resources = data.get("resources") if isinstance(data, dict) else None
        for item in resources if isinstance(resources, list) else []:
            if not isinstance(item, dict):
                continue
            model_name = self._extract_model_name(item)
            if not model_name or not item.get("id"):
                continue
            deployments.append(
                DeploymentInfo(
                    id=str(item["id"]),
                    model_name=model_name,
                    status=str(item.get("status", "")),
                    deployment_url=item.get("deploymentUrl"),
                    configuration_name=item.get("configurationName"),
                )
            )

        self._cache = {d.model_name: d.id for d in deployments if d.status == "RUNNING"}
        self._cache_expiry = self._clock() + DISCOVERY_CACHE_SECS
        return DiscoveryResult(success=True, deployments=deployments)

    @staticmethod
    def _extract_model_name(deployment: Mapping[str, Any]) -> Optional[str]:
        for path in _MODEL_NAME_PATHS:
            value = _nested(deployment, path)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    async def get_deployment_id(self, model_name: str) -> Optional[str]:
        override = str(self._environ.get(deployment_env_name(model_name), "")).strip()
        if override:
            return override

        if self._clock() < self._cache_expiry:
            return self._cache.get(model_name)

        result = await self.discover_deployments()
        if not result.success:
            return None
        return self._cache.get(model_name)


class ModelRouter:
    def __init__(
        self,
        models: Mapping[str, ModelConfig],
        discovery: Optional[DeploymentDiscovery] = None,
    ):
        self._models: Dict[str, ModelConfig] = dict(models)
        self._discovery = discovery

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        discovery: Optional[DeploymentDiscovery] = None,
    ) -> "ModelRouter":
        raw_models = data.get("models", data)
        if not isinstance(raw_models, Mapping):
            raise ConfigurationError("model configuration must contain a 'models' object")
        models: Dict[str, ModelConfig] = {}
        for name, raw in raw_models.items():
            try:
                models[str(name)] = ModelConfig.model_validate(raw)
            except ValidationError as exc:
                raise ConfigurationError(f"invalid configuration for model '{name}': {exc}") from exc
        return cls(models, discovery=discovery)

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        discovery: Optional[DeploymentDiscovery] = None,
    ) -> "ModelRouter":
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                f"failed to load model configuration from {config_path}: {exc}"
            ) from exc
        return cls.from_mapping(data, discovery=discovery)

    def get_model_config(self, model_name: str) -> Optional[ModelConfig]:
        return self._models.get(model_name)

    def all_models(self) -> List[str]:
        return list(self._models)

    def supports_vision(self, model_name: str) -> bool:
        model_config = self.get_model_config(model_name)
        return bool(model_config and model_config.supports_vision)

    async def resolve(self, model_name: str) -> ModelConfig:
        model_config = self.get_model_config(model_name)
        if model_config is None:
            raise ModelNotFoundError(
                model_name,
                f"Model '{model_name}' not found in configuration. "
                f"Available models: {', '.join(self.all_models())}",
            )
        if model_config.deployment_id or self._discovery is None:
            return model_config

        deployment_id = await self._discovery.get_deployment_id(model_name)
        if not deployment_id:
            return model_config
        resolved = model_config.model_copy(update={"deployment_id": deployment_id})
        self._models[model_name] = resolved
        logger.info("deployment discovered: model=%s deployment=%s", model_name, deployment_id)
        return resolved

    def validate_model(self, model_name: str) -> ModelValidation:
        model_config = self.get_model_config(model_name)
        if model_config is None:
            return ModelValidation(
                False,
                f"Model '{model_name}' not found in configuration. "
                f"Available models: {', '.join(self.all_models())}",
            )
        if not model_config.deployment_id:
            return ModelValidation(False, f"Model '{model_name}' is missing deploymentId in configuration")
        if not model_config.provider:
            return ModelValidation(False, f"Model '{model_name}' is missing provider in configuration")
        if not _DEPLOYMENT_ID_PATTERN.match(model_config.deployment_id):
            return ModelValidation(
                False,
                f"Model '{model_name}' has invalid deploymentId format. Should be alphanumeric.",
            )
        if model_config.api_type == "direct" and not model_config.endpoint:
            if model_config.request_format not in (None, "", "openai", "default", "generic"):
                return ModelValidation(
                    False,
                    f"Direct API model '{model_name}' is missing endpoint configuration",
                )
        return ModelValidation(True)

    def validate_all_models(self) -> List[str]:
        errors = []
        for model_name in self.all_models():
            validation = self.validate_model(model_name)
            if not validation.is_valid and validation.error:
                errors.append(validation.error)
        return errors
