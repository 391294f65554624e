"""
cogworks — extension client

File: src/cogworks/extension/client.py

Purpose
- Invoke domain-service operations over JSON/HTTP, on a Unix domain socket
  (default) or a network URL.

Endpoints
- ``POST /invoke`` with the request envelope -> response envelope. Health is
  the ``health_check`` operation with an empty payload; ``ok`` means healthy and
  ``error`` carries the reason in its diagnostics.

Functional requirements
- A domain is health-checked, with the short health timeout, before its first
  operation in each run. Unhealthy domains raise ``DomainServiceUnavailable``.
- Operation deadlines raise ``DomainServiceTimeout``; transport failures and
  non-2xx replies raise ``DomainServiceUnavailable``; malformed bodies raise
  ``SchemaValidationError``. The client never retries on its own; retries are
  a budget decision made by the orchestrator.
- Network URLs must use ``https`` unless the host is loopback.
- Credentials come from the environment variable named by ``token_env`` and
  are registered for redaction.
"""

from __future__ import annotations

import ipaddress
import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import urlsplit

import httpx
import structlog

from cogworks.constants import DEFAULT_HEALTH_TIMEOUT_SECONDS, DEFAULT_OPERATION_TIMEOUT_SECONDS
from cogworks.domain.errors import DomainServiceTimeout, DomainServiceUnavailable, SchemaValidationError
from cogworks.domain.ids import generate_trace_id
from cogworks.domain.models import JSONValue
from cogworks.extension.envelope import (
    HEALTH_CHECK_OPERATION,
    ExtensionRequest,
    ExtensionResponse,
    HealthState,
    HealthStatus,
    RepositoryRef,
    parse_response,
)
from cogworks.security.redaction import redact_text, register_secret_values

_UDS_BASE_URL = "http://cogworks.local"
_LOOPBACK_NAMES = frozenset({"localhost", "localhost.localdomain"})

TransportFactory = Callable[["ServiceEndpoint"], httpx.AsyncBaseTransport]


@dataclass(frozen=True, slots=True)
class ServiceEndpoint:
    domain: str
    transport: Literal["unix", "http"] = "unix"
    socket_path: str | None = None
    url: str | None = None
    token_env: str | None = None

    def __post_init__(self) -> None:
        if self.transport == "unix":
            if not self.socket_path:
                raise ValueError(f"service {self.domain!r}: unix transport requires socket_path")
        elif self.transport == "http":
            if not self.url:
                raise ValueError(f"service {self.domain!r}: http transport requires url")
            _require_secure_url(self.domain, self.url)
        else:
            raise ValueError(f"service {self.domain!r}: unknown transport {self.transport!r}")

    @property
    def base_url(self) -> str:
        if self.transport == "unix":
            return _UDS_BASE_URL
        assert self.url is not None
        return self.url.rstrip("/")


def services_from_config(config: Mapping[str, Any]) -> dict[str, ServiceEndpoint]:
    """Build the per-domain service registry from the ``[extension.services]`` table."""

    services = config["extension"]["services"]
    return {
        domain: ServiceEndpoint(
            domain=domain,
            transport=entry.get("transport", "unix"),
            socket_path=entry.get("socket_path"),
            url=entry.get("url"),
            token_env=entry.get("token_env"),
        )
        for domain, entry in sorted(services.items())
    }


def default_transport(endpoint: ServiceEndpoint) -> httpx.AsyncBaseTransport:
    if endpoint.transport == "unix":
        return httpx.AsyncHTTPTransport(uds=endpoint.socket_path)
    return httpx.AsyncHTTPTransport()


class ExtensionClient:
    """Client for every configured domain service."""

    def __init__(
        self,
        services: Mapping[str, ServiceEndpoint],
        *,
        repository: RepositoryRef | None = None,
        health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        transport_factory: TransportFactory = default_transport,
        environ: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        if health_timeout_seconds <= 0 or operation_timeout_seconds <= 0:
            raise ValueError("extension timeouts must be > 0")
        self._services = dict(services)
        self._repository = repository if repository is not None else RepositoryRef(path=os.getcwd())
        self._health_timeout = health_timeout_seconds
        self._operation_timeout = operation_timeout_seconds
        self._transport_factory = transport_factory
        self._environ = os.environ if environ is None else environ
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._run_id: str | None = None
        self._healthy: set[str] = set()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> ExtensionClient:
        section = config["extension"]
        return cls(
            services_from_config(config),
            health_timeout_seconds=float(section["health_timeout_seconds"]),
            operation_timeout_seconds=float(section["operation_timeout_seconds"]),
            **kwargs,
        )

    @property
    def domains(self) -> tuple[str, ...]:
        return tuple(sorted(self._services))

    def begin_run(self, run_id: str | None) -> None:
        """Scope health checks to ``run_id``; a new run re-checks every domain."""
        if run_id != self._run_id:
            self._run_id = run_id
            self._healthy.clear()

    async def health_check(self, domain: str) -> HealthStatus:
        """Send the ``health_check`` operation; an ``ok`` envelope means healthy."""
        request = ExtensionRequest(
            repository=self._repository,
            domain=domain,
            operation=HEALTH_CHECK_OPERATION,
            payload={},
            trace_id=generate_trace_id(),
        )
        client = self._client(domain)
        try:
            response = await client.post("/invoke", json=request.to_dict(), timeout=self._health_timeout)
        except httpx.TimeoutException:
            return self._unhealthy(domain, f"health check timed out after {self._health_timeout:g}s")
        except httpx.HTTPError as exc:
            return self._unhealthy(domain, f"health check failed: {type(exc).__name__}")
        if response.status_code != httpx.codes.OK:
            return self._unhealthy(domain, f"health check returned HTTP {response.status_code}")
        try:
            parsed = parse_response(response.json())
        except json.JSONDecodeError:
            return self._unhealthy(domain, "health check returned non-JSON body")
        except SchemaValidationError as exc:
            return self._unhealthy(domain, f"health check returned a malformed envelope: {exc.detail}")
        if not parsed.ok:
            reason = "; ".join(diagnostic.message for diagnostic in parsed.diagnostics)
            return self._unhealthy(domain, reason or "service reported error")
        self._healthy.add(domain)
        self._logger.info("extension_health", domain=domain, state=HealthState.HEALTHY.value, trace_id=request.trace_id)
        return HealthStatus(domain=domain, state=HealthState.HEALTHY)

    async def invoke(
        self,
        domain: str,
        operation: str,
        payload: Mapping[str, JSONValue] | None = None,
        *,
        timeout_seconds: float | None = None,
        trace_id: str | None = None,
    ) -> ExtensionResponse:
        if domain not in self._healthy:
            health = await self.health_check(domain)
            if not health.healthy:
                raise DomainServiceUnavailable(domain, health.reason or "unhealthy")

        deadline = self._operation_timeout if timeout_seconds is None else timeout_seconds
        request = ExtensionRequest(
            repository=self._repository,
            domain=domain,
            operation=operation,
            payload=payload or {},
            trace_id=trace_id or generate_trace_id(),
        )
        self._logger.info("extension_invoke", domain=domain, operation=operation, trace_id=request.trace_id)
        client = self._client(domain)
        try:
            response = await client.post("/invoke", json=request.to_dict(), timeout=deadline)
        except httpx.TimeoutException as exc:
            raise DomainServiceTimeout(domain, operation, deadline) from exc
        except httpx.HTTPError as exc:
            raise DomainServiceUnavailable(domain, f"{operation}: {type(exc).__name__}: {redact_text(str(exc))}") from exc

        if response.status_code >= 400:
            raise DomainServiceUnavailable(domain, f"{operation} returned HTTP {response.status_code}")
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise SchemaValidationError(f"{domain}.{operation} returned non-JSON body") from exc
        parsed = parse_response(body)
        self._logger.info(
            "extension_result",
            domain=domain,
            operation=operation,
            trace_id=request.trace_id,
            status=parsed.status.value,
            diagnostics=len(parsed.diagnostics),
            artifacts=[artifact.type for artifact in parsed.artifacts],
        )
        return parsed

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> ExtensionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _client(self, domain: str) -> httpx.AsyncClient:
        existing = self._clients.get(domain)
        if existing is not None:
            return existing
        endpoint = self._services.get(domain)
        if endpoint is None:
            raise DomainServiceUnavailable(domain, "no service configured for this domain")
        headers = {"Accept": "application/json"}
        if endpoint.token_env:
            token = self._environ.get(endpoint.token_env)
            if token:
                register_secret_values([token])
                headers["Authorization"] = f"Bearer {token}"
        client = httpx.AsyncClient(
            base_url=endpoint.base_url,
            transport=self._transport_factory(endpoint),
            headers=headers,
        )
        self._clients[domain] = client
        return client

    def _unhealthy(self, domain: str, reason: str) -> HealthStatus:
        self._healthy.discard(domain)
        self._logger.warning("extension_health", domain=domain, state=HealthState.UNHEALTHY.value, reason=reason)
        return HealthStatus(domain=domain, state=HealthState.UNHEALTHY, reason=reason)


def _require_secure_url(domain: str, url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"service {domain!r}: invalid url {url!r}")
    if parts.scheme == "https" or _is_loopback(parts.hostname):
        return
    raise ValueError(f"service {domain!r}: network services must use https unless on loopback")


def _is_loopback(host: str) -> bool:
    if host.lower() in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


__all__ = [
    "ExtensionClient",
    "ServiceEndpoint",
    "TransportFactory",
    "default_transport",
    "services_from_config",
]
