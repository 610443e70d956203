"""OpenAI-compatible gateway in front of SAP AI Core deployments and vendor APIs."""

__version__ = "0.1.0"
