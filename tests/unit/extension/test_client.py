"""
cogworks — unit tests for the extension client

File: tests/unit/extension/test_client.py

Purpose
- Exercise health checks, invocation and failure mapping against
  ``httpx.MockTransport`` services.
- Network endpoints must be https unless loopback; tokens are sent as bearer
  credentials and registered for redaction.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from cogworks.domain.errors import DomainServiceTimeout, DomainServiceUnavailable, SchemaValidationError
from cogworks.extension import ExtensionClient, RepositoryRef, ServiceEndpoint, services_from_config
from cogworks.security.redaction import redact_text

Handler = Callable[[httpx.Request], httpx.Response]


@dataclass
class FakeService:
    """Records requests and answers ``health_check`` and other operations on ``/invoke``."""

    health: dict[str, Any] = field(default_factory=lambda: {"status": "ok"})
    reply: dict[str, Any] = field(default_factory=lambda: {"status": "ok", "artifacts": []})
    invoke_error: Exception | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if _operation(request) == "health_check":
            return httpx.Response(200, json=self.health)
        if self.invoke_error is not None:
            raise self.invoke_error
        return httpx.Response(200, json=self.reply)

    @property
    def operations(self) -> list[str]:
        return [_operation(request) for request in self.requests]


def _operation(request: httpx.Request) -> str:
    assert request.url.path == "/invoke"
    return str(json.loads(request.content)["operation"])


def _client(service: Handler, **kwargs: Any) -> ExtensionClient:
    endpoint = ServiceEndpoint(domain="build", socket_path="/tmp/build.sock")
    return ExtensionClient(
        {"build": endpoint},
        repository=RepositoryRef(path="/repo"),
        transport_factory=lambda _: httpx.MockTransport(service),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_invoke_health_checks_once_per_run() -> None:
    service = FakeService(reply={"status": "ok", "artifacts": [{"type": "report", "content": {"ok": True}}]})
    async with _client(service) as client:
        client.begin_run("run-1")
        first = await client.invoke("build", "verify_patch", {"patch": "diff"}, trace_id="trc-1")
        await client.invoke("build", "verify_patch")
        client.begin_run("run-2")
        await client.invoke("build", "verify_patch")

    assert first.outputs() == {"report": {"ok": True}}
    assert service.operations == ["health_check", "verify_patch", "verify_patch", "health_check", "verify_patch"]
    sent = json.loads(service.requests[1].content)
    assert sent["trace_id"] == "trc-1"
    assert sent["repository"] == {"path": "/repo", "ref": "HEAD"}
    assert sent["payload"] == {"patch": "diff"}


@pytest.mark.asyncio
async def test_unhealthy_domain_is_unavailable() -> None:
    service = FakeService(
        health={"status": "error", "diagnostics": [{"message": "disk full", "artifact": "", "location": ""}]}
    )
    async with _client(service) as client:
        with pytest.raises(DomainServiceUnavailable, match="build: disk full"):
            await client.invoke("build", "verify_patch")

    assert service.operations == ["health_check"]


@pytest.mark.asyncio
async def test_health_check_failures_are_reported_not_raised() -> None:
    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    async with _client(broken) as client:
        status = await client.health_check("build")

    assert not status.healthy
    assert status.reason == "health check returned HTTP 503"


@pytest.mark.asyncio
async def test_health_check_is_an_envelope_operation_with_empty_payload() -> None:
    service = FakeService()
    async with _client(service, health_timeout_seconds=1.5) as client:
        status = await client.health_check("build")

    assert status.healthy
    assert status.reason is None
    sent = json.loads(service.requests[0].content)
    assert sent["operation"] == "health_check"
    assert sent["domain"] == "build"
    assert sent["payload"] == {}
    assert sent["repository"] == {"path": "/repo", "ref": "HEAD"}
    assert service.requests[0].extensions["timeout"]["read"] == 1.5


@pytest.mark.asyncio
async def test_malformed_health_envelope_is_unhealthy() -> None:
    async with _client(FakeService(health={"status": "healthy"})) as client:
        status = await client.health_check("build")

    assert not status.healthy
    assert status.reason is not None
    assert status.reason.startswith("health check returned a malformed envelope")


@pytest.mark.asyncio
async def test_timeouts_and_transport_errors_map_to_domain_errors() -> None:
    service = FakeService(invoke_error=httpx.ReadTimeout("slow"))
    async with _client(service, operation_timeout_seconds=2.5) as client:
        with pytest.raises(DomainServiceTimeout, match="build.verify_patch timed out after 2.5s"):
            await client.invoke("build", "verify_patch")
        service.invoke_error = httpx.ConnectError("refused")
        with pytest.raises(DomainServiceUnavailable, match="ConnectError"):
            await client.invoke("build", "verify_patch")


@pytest.mark.asyncio
async def test_http_errors_and_malformed_bodies() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if _operation(request) == "health_check":
            return httpx.Response(200, json={"status": "ok"})
        if _operation(request) == "boom":
            return httpx.Response(500, text="oops")
        if _operation(request) == "text":
            return httpx.Response(200, text="not json")
        return httpx.Response(200, json={"status": "ok", "surprise": 1})

    async with _client(handler) as client:
        with pytest.raises(DomainServiceUnavailable, match="boom returned HTTP 500"):
            await client.invoke("build", "boom")
        with pytest.raises(SchemaValidationError, match="non-JSON body"):
            await client.invoke("build", "text")
        with pytest.raises(SchemaValidationError, match="unknown key 'surprise'"):
            await client.invoke("build", "shape")


@pytest.mark.asyncio
async def test_unknown_domain_is_unavailable() -> None:
    async with _client(FakeService()) as client:
        with pytest.raises(DomainServiceUnavailable, match="no service configured"):
            await client.invoke("deploy", "ship")


@pytest.mark.asyncio
async def test_token_is_sent_and_registered_for_redaction() -> None:
    service = FakeService()
    endpoint = ServiceEndpoint(domain="build", transport="http", url="https://build.example.com/", token_env="BUILD_TOKEN")
    client = ExtensionClient(
        {"build": endpoint},
        repository=RepositoryRef(path="/repo"),
        transport_factory=lambda _: httpx.MockTransport(service),
        environ={"BUILD_TOKEN": "s3cr3t-value-123"},
    )
    async with client:
        await client.invoke("build", "verify_patch")

    assert service.requests[0].headers["Authorization"] == "Bearer s3cr3t-value-123"
    assert service.requests[0].url.host == "build.example.com"
    assert "s3cr3t-value-123" not in redact_text("token leaked: s3cr3t-value-123")


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"transport": "http", "url": "http://build.example.com"}, "must use https unless on loopback"),
        ({"transport": "http", "url": "ftp://build"}, "invalid url"),
        ({"transport": "http"}, "requires url"),
        ({"transport": "unix"}, "requires socket_path"),
        ({"transport": "pigeon"}, "unknown transport"),
    ],
)
def test_endpoint_validation(kwargs: dict[str, Any], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ServiceEndpoint(domain="build", **kwargs)


@pytest.mark.parametrize("url", ["http://127.0.0.1:8080", "http://localhost:9000", "http://[::1]:80"])
def test_loopback_http_is_allowed(url: str) -> None:
    assert ServiceEndpoint(domain="build", transport="http", url=url).base_url == url


def test_services_from_config() -> None:
    services = services_from_config(
        {
            "extension": {
                "services": {
                    "verify": {"transport": "http", "url": "https://verify.example.com", "token_env": "VERIFY_TOKEN"},
                    "build": {"socket_path": "/run/build.sock"},
                }
            }
        }
    )

    assert list(services) == ["build", "verify"]
    assert services["build"].transport == "unix"
    assert services["verify"].token_env == "VERIFY_TOKEN"


def test_timeouts_must_be_positive() -> None:
    with pytest.raises(ValueError, match="timeouts must be > 0"):
        ExtensionClient({}, health_timeout_seconds=0)
