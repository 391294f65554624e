"""Extension protocol: envelopes and the domain-service client."""

from __future__ import annotations

from cogworks.extension.client import ExtensionClient, ServiceEndpoint, services_from_config
from cogworks.extension.envelope import (
    HEALTH_CHECK_OPERATION,
    ExtensionArtifact,
    ExtensionRequest,
    ExtensionResponse,
    HealthState,
    HealthStatus,
    RepositoryRef,
    ResponseStatus,
    parse_response,
)

__all__ = [
    "HEALTH_CHECK_OPERATION",
    "ExtensionArtifact",
    "ExtensionClient",
    "ExtensionRequest",
    "ExtensionResponse",
    "HealthState",
    "HealthStatus",
    "RepositoryRef",
    "ResponseStatus",
    "ServiceEndpoint",
    "parse_response",
    "services_from_config",
]
