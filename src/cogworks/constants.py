"""Stable constants shared across the engine."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
PIPELINE_SCHEMA_VERSION: Final[int] = 1
ARTIFACT_SCHEMA_VERSION: Final[int] = 1

# Artifact comments carry a machine-readable header followed by a human summary.
ARTIFACT_HEADER_PREFIX: Final[str] = "<!-- cogworks:artifact "
ARTIFACT_HEADER_SUFFIX: Final[str] = " -->"

# Built-in artifact types available to every pipeline run.
WORK_ITEM_ARTIFACT: Final[str] = "work_item"
SUB_WORK_ITEM_ARTIFACT: Final[str] = "sub_work_item"
BUILTIN_ARTIFACT_TYPES: Final[frozenset[str]] = frozenset(
    {WORK_ITEM_ARTIFACT, SUB_WORK_ITEM_ARTIFACT}
)

# Labels.
DEFAULT_TRIGGER_LABEL: Final[str] = "cogworks:run"
DEFAULT_LOCK_LABEL: Final[str] = "cogworks:processing"
DEFAULT_SAFETY_LABEL: Final[str] = "safety-critical"
DEFAULT_APPROVE_PREFIX: Final[str] = "cogworks:approve:"
DEFAULT_REJECT_PREFIX: Final[str] = "cogworks:reject:"
DEFAULT_RECLASSIFY_LABEL: Final[str] = "cogworks:reclassify"
DEFAULT_PIPELINE_LABEL_PREFIX: Final[str] = "cogworks:pipeline:"

# Timing and bounds.
DEFAULT_LOCK_TIMEOUT_MINUTES: Final[int] = 30
DEFAULT_HEALTH_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_OPERATION_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_REWORK_MAX_TRAVERSALS: Final[int] = 5
DEFAULT_MAX_WAVES_PER_INVOCATION: Final[int] = 16
DEFAULT_PARALLELISM: Final[int] = 4

__all__ = [
    "ARTIFACT_HEADER_PREFIX",
    "ARTIFACT_HEADER_SUFFIX",
    "ARTIFACT_SCHEMA_VERSION",
    "BUILTIN_ARTIFACT_TYPES",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_APPROVE_PREFIX",
    "DEFAULT_HEALTH_TIMEOUT_SECONDS",
    "DEFAULT_LOCK_LABEL",
    "DEFAULT_LOCK_TIMEOUT_MINUTES",
    "DEFAULT_MAX_WAVES_PER_INVOCATION",
    "DEFAULT_OPERATION_TIMEOUT_SECONDS",
    "DEFAULT_PARALLELISM",
    "DEFAULT_PIPELINE_LABEL_PREFIX",
    "DEFAULT_RECLASSIFY_LABEL",
    "DEFAULT_REJECT_PREFIX",
    "DEFAULT_REWORK_MAX_TRAVERSALS",
    "DEFAULT_SAFETY_LABEL",
    "DEFAULT_TRIGGER_LABEL",
    "PIPELINE_SCHEMA_VERSION",
    "SUB_WORK_ITEM_ARTIFACT",
    "WORK_ITEM_ARTIFACT",
]
