"""Pipeline definitions, structural validation and ready-set planning."""

from __future__ import annotations

from cogworks.pipeline.conditions import (
    ALWAYS,
    Condition,
    ConditionEvaluation,
    ConditionKind,
    evaluate_condition,
    parse_condition,
)
from cogworks.pipeline.definition import (
    SELECT_LATEST,
    Edge,
    Node,
    OutputSchema,
    PipelineCatalog,
    PipelineDefinition,
)
from cogworks.pipeline.graph import Frontier, GraphModel, PendingPredicate, ReworkFiring
from cogworks.pipeline.loader import (
    PipelineYamlLoader,
    load_pipeline_catalog,
    load_pipeline_yaml,
    parse_pipeline_definition,
    parse_pipeline_document,
)
from cogworks.pipeline.task_graph import CycleError, TaskGraph

__all__ = [
    "ALWAYS",
    "Condition",
    "ConditionEvaluation",
    "ConditionKind",
    "CycleError",
    "Edge",
    "Frontier",
    "GraphModel",
    "Node",
    "OutputSchema",
    "PendingPredicate",
    "PipelineCatalog",
    "PipelineDefinition",
    "PipelineYamlLoader",
    "ReworkFiring",
    "SELECT_LATEST",
    "TaskGraph",
    "evaluate_condition",
    "load_pipeline_catalog",
    "load_pipeline_yaml",
    "parse_condition",
    "parse_pipeline_definition",
    "parse_pipeline_document",
]
