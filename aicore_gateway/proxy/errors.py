from __future__ import annotations

from typing import Optional


class GatewayError(RuntimeError):
    status_code = 500


class ConfigurationError(GatewayError):
    status_code = 500


class ModelNotFoundError(ConfigurationError):
    status_code = 404

    def __init__(self, model_name: str, detail: Optional[str] = None):
        super().__init__(detail or f"model not found in configuration: {model_name}")
        self.model_name = model_name


class UpstreamTransportError(GatewayError):
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        timeout: bool = False,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.timeout = timeout
        if timeout:
            self.status_code = 504


class StreamLimitError(UpstreamTransportError):
    pass
