"""Runtime configuration: TOML file, environment and CLI overrides."""

from __future__ import annotations

from cogworks.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    read_secret,
)
from cogworks.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    assert_valid_config,
    default_config,
    dump_redacted,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "dump_redacted",
    "load_config",
    "read_secret",
]
