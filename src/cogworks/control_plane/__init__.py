"""Control plane: state reconstruction, locking, budgets, node execution and the step function."""

from __future__ import annotations

from cogworks.control_plane.budgets import (
    BudgetAction,
    BudgetDecision,
    BudgetLimits,
    BudgetTracker,
    BudgetUsage,
)
from cogworks.control_plane.executors import (
    EXECUTORS,
    ExecutionContext,
    NodeOutcome,
    OutcomeKind,
    check_children,
    execute_node,
    parse_spawn_plan,
)
from cogworks.control_plane.locks import DEFAULT_LOCK_TIMEOUT, LockAttempt, LockManager, LockOutcome
from cogworks.control_plane.orchestrator import LabelPolicy, Orchestrator
from cogworks.control_plane.run_state import NodeState, RunState, load_run_state, reconstruct

__all__ = [
    "DEFAULT_LOCK_TIMEOUT",
    "EXECUTORS",
    "BudgetAction",
    "BudgetDecision",
    "BudgetLimits",
    "BudgetTracker",
    "BudgetUsage",
    "ExecutionContext",
    "LabelPolicy",
    "LockAttempt",
    "LockManager",
    "LockOutcome",
    "NodeOutcome",
    "NodeState",
    "Orchestrator",
    "OutcomeKind",
    "RunState",
    "check_children",
    "execute_node",
    "load_run_state",
    "parse_spawn_plan",
    "reconstruct",
]
