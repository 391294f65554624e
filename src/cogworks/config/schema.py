"""
cogworks — runtime configuration schema and validation.

File: src/cogworks/config/schema.py

Purpose
- Define authoritative runtime defaults and strict validation rules for
  ``cogworks.toml``.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secrets: credentials are referenced by environment variable
  name through ``*_env`` keys, never stored in the file.
- Provide deterministic deep-merge and redacted dump helpers.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict, cast

from cogworks.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_APPROVE_PREFIX,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    DEFAULT_LOCK_LABEL,
    DEFAULT_LOCK_TIMEOUT_MINUTES,
    DEFAULT_MAX_WAVES_PER_INVOCATION,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_PIPELINE_LABEL_PREFIX,
    DEFAULT_RECLASSIFY_LABEL,
    DEFAULT_REJECT_PREFIX,
    DEFAULT_SAFETY_LABEL,
    DEFAULT_TRIGGER_LABEL,
)

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_DOMAIN_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_FACTORY_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("engine", "pipelines_file"),
    ("store", "root"),
    ("observability", "log_dir"),
)

TransportName = Literal["unix", "http"]


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    pipelines_file: str
    max_waves_per_invocation: int
    default_parallelism: int


class LockConfig(TypedDict):
    timeout_minutes: int
    label: str


class BudgetsConfig(TypedDict):
    max_cost_per_run_usd: float
    max_retries_per_run: int
    max_retries_per_node: int
    default_node_cost_usd: float


class LabelsConfig(TypedDict):
    trigger: str
    safety_critical: str
    approve_prefix: str
    reject_prefix: str
    reclassify: str
    pipeline_prefix: str


class ServiceConfig(TypedDict, total=False):
    transport: TransportName
    socket_path: str
    url: str
    token_env: str


class ExtensionConfig(TypedDict):
    health_timeout_seconds: float
    operation_timeout_seconds: float
    services: dict[str, ServiceConfig]


class ReasoningConfig(TypedDict):
    client_factory: str
    timeout_seconds: float
    api_key_env: str


class StoreConfig(TypedDict):
    backend: Literal["filesystem", "memory"]
    root: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    redact_secrets: bool


class CogWorksConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    lock: LockConfig
    budgets: BudgetsConfig
    labels: LabelsConfig
    extension: ExtensionConfig
    reasoning: ReasoningConfig
    store: StoreConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[CogWorksConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "engine": {
        "pipelines_file": "pipelines.yaml",
        "max_waves_per_invocation": DEFAULT_MAX_WAVES_PER_INVOCATION,
        "default_parallelism": 4,
    },
    "lock": {
        "timeout_minutes": DEFAULT_LOCK_TIMEOUT_MINUTES,
        "label": DEFAULT_LOCK_LABEL,
    },
    "budgets": {
        "max_cost_per_run_usd": 25.0,
        "max_retries_per_run": 10,
        "max_retries_per_node": 3,
        "default_node_cost_usd": 0.0,
    },
    "labels": {
        "trigger": DEFAULT_TRIGGER_LABEL,
        "safety_critical": DEFAULT_SAFETY_LABEL,
        "approve_prefix": DEFAULT_APPROVE_PREFIX,
        "reject_prefix": DEFAULT_REJECT_PREFIX,
        "reclassify": DEFAULT_RECLASSIFY_LABEL,
        "pipeline_prefix": DEFAULT_PIPELINE_LABEL_PREFIX,
    },
    "extension": {
        "health_timeout_seconds": DEFAULT_HEALTH_TIMEOUT_SECONDS,
        "operation_timeout_seconds": DEFAULT_OPERATION_TIMEOUT_SECONDS,
        "services": {},
    },
    "reasoning": {
        "client_factory": "cogworks.reasoning.offline:create_client",
        "timeout_seconds": 120.0,
        "api_key_env": "COGWORKS_REASONING_API_KEY",
    },
    "store": {
        "backend": "filesystem",
        "root": ".cogworks/store",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".cogworks/logs",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)


def default_config() -> CogWorksConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> tuple[ConfigValidationIssue, ...]:
    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return issues.items()

    _reject_unknown_keys(config, set(DEFAULT_CONFIG), "", issues)
    for section in sorted(DEFAULT_CONFIG):
        payload = config.get(section)
        if not isinstance(payload, Mapping):
            issues.add(section, "missing or not an object")
            continue
        validator = _SECTION_VALIDATORS[section]
        validator(payload, section, issues)
    return issues.items()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    return dict(cast("Mapping[str, object]", config))


def dump_redacted(config: Mapping[str, object]) -> dict[str, Any]:
    """Return a deterministic representation with ``*_env`` references masked."""

    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    version = _as_int(payload.get("schema_version"), _join(path, "schema_version"), issues, minimum=1)
    if version is not None and version != CONFIG_SCHEMA_VERSION:
        issues.add(
            _join(path, "schema_version"),
            f"unsupported schema version {version}; expected {CONFIG_SCHEMA_VERSION}",
        )


def _validate_engine(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(
        payload, {"pipelines_file", "max_waves_per_invocation", "default_parallelism"}, path, issues
    )
    _as_str(payload.get("pipelines_file"), _join(path, "pipelines_file"), issues)
    _as_int(
        payload.get("max_waves_per_invocation"),
        _join(path, "max_waves_per_invocation"),
        issues,
        minimum=1,
    )
    _as_int(payload.get("default_parallelism"), _join(path, "default_parallelism"), issues, minimum=1)


def _validate_lock(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"timeout_minutes", "label"}, path, issues)
    _as_int(payload.get("timeout_minutes"), _join(path, "timeout_minutes"), issues, minimum=1)
    _as_str(payload.get("label"), _join(path, "label"), issues)


def _validate_budgets(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(
        payload,
        {
            "max_cost_per_run_usd",
            "max_retries_per_run",
            "max_retries_per_node",
            "default_node_cost_usd",
        },
        path,
        issues,
    )
    _as_float(payload.get("max_cost_per_run_usd"), _join(path, "max_cost_per_run_usd"), issues, minimum=0.0)
    _as_int(payload.get("max_retries_per_run"), _join(path, "max_retries_per_run"), issues, minimum=0)
    _as_int(payload.get("max_retries_per_node"), _join(path, "max_retries_per_node"), issues, minimum=0)
    _as_float(
        payload.get("default_node_cost_usd"), _join(path, "default_node_cost_usd"), issues, minimum=0.0
    )


def _validate_labels(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    allowed = set(DEFAULT_CONFIG["labels"])
    _reject_unknown_keys(payload, allowed, path, issues)
    for key in sorted(allowed):
        _as_str(payload.get(key), _join(path, key), issues)


def _validate_extension(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(
        payload, {"health_timeout_seconds", "operation_timeout_seconds", "services"}, path, issues
    )
    health = _as_float(
        payload.get("health_timeout_seconds"), _join(path, "health_timeout_seconds"), issues, minimum=0.0
    )
    if health is not None and health <= 0:
        issues.add(_join(path, "health_timeout_seconds"), "must be > 0")
    operation = _as_float(
        payload.get("operation_timeout_seconds"),
        _join(path, "operation_timeout_seconds"),
        issues,
        minimum=0.0,
    )
    if operation is not None and operation <= 0:
        issues.add(_join(path, "operation_timeout_seconds"), "must be > 0")

    services = payload.get("services")
    services_path = _join(path, "services")
    if not isinstance(services, Mapping):
        issues.add(services_path, "expected object")
        return
    for domain in sorted(services):
        service_path = _join(services_path, domain)
        if not _DOMAIN_NAME_PATTERN.fullmatch(domain):
            issues.add(service_path, "domain names must be lowercase identifiers")
        service = services[domain]
        if not isinstance(service, Mapping):
            issues.add(service_path, "expected object")
            continue
        _validate_service(service, service_path, issues)


def _validate_service(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"transport", "socket_path", "url", "token_env"}, path, issues)
    transport = _as_enum(payload.get("transport", "unix"), _join(path, "transport"), issues, ("unix", "http"))
    if transport == "unix":
        _as_str(payload.get("socket_path"), _join(path, "socket_path"), issues)
    elif transport == "http":
        url = _as_str(payload.get("url"), _join(path, "url"), issues)
        if url is not None and not url.startswith(("http://", "https://")):
            issues.add(_join(path, "url"), "must be an http(s) URL")
    if "token_env" in payload:
        _as_env_name(payload["token_env"], _join(path, "token_env"), issues)


def _validate_reasoning(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"client_factory", "timeout_seconds", "api_key_env"}, path, issues)
    factory = _as_str(payload.get("client_factory"), _join(path, "client_factory"), issues)
    if factory is not None and not _FACTORY_PATTERN.fullmatch(factory):
        issues.add(_join(path, "client_factory"), "must be 'package.module:callable'")
    timeout = _as_float(payload.get("timeout_seconds"), _join(path, "timeout_seconds"), issues, minimum=0.0)
    if timeout is not None and timeout <= 0:
        issues.add(_join(path, "timeout_seconds"), "must be > 0")
    _as_env_name(payload.get("api_key_env"), _join(path, "api_key_env"), issues)


def _validate_store(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"backend", "root"}, path, issues)
    _as_enum(payload.get("backend"), _join(path, "backend"), issues, ("filesystem", "memory"))
    _as_str(payload.get("root"), _join(path, "root"), issues)


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> None:
    _reject_unknown_keys(payload, {"log_level", "log_dir", "redact_secrets"}, path, issues)
    _as_enum(
        payload.get("log_level"),
        _join(path, "log_level"),
        issues,
        ("CRITICAL", "DEBUG", "ERROR", "INFO", "WARNING"),
    )
    _as_str(payload.get("log_dir"), _join(path, "log_dir"), issues)
    if not isinstance(payload.get("redact_secrets"), bool):
        issues.add(_join(path, "redact_secrets"), "expected boolean")


_SECTION_VALIDATORS = {
    "meta": _validate_meta,
    "engine": _validate_engine,
    "lock": _validate_lock,
    "budgets": _validate_budgets,
    "labels": _validate_labels,
    "extension": _validate_extension,
    "reasoning": _validate_reasoning,
    "store": _validate_store,
    "observability": _validate_observability,
}


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: COGWORKS_GITHUB_TOKEN)")
        return None
    return parsed


def _as_int(
    value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object, path: str, issues: _IssueCollector, *, minimum: float | None = None
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object, path: str, issues: _IssueCollector, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        elif isinstance(value, Mapping):
            nested: dict[str, Any] = {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _normalize_key(key).endswith("_env") or _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "CogWorksConfig",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "validate_config",
]
