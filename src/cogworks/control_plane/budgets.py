"""
Budget tracking and deterministic control-plane decisions.

This module enforces the budget envelope of one pipeline run:
- a cost ceiling per run, checked before each node executes
- retry ceilings per node and per run (failure retries plus rework traversals)

Accumulated totals always come from the reconstructed ``RunState`` (that is,
from artifacts). The tracker itself only holds reservations for siblings that
are executing concurrently in the current invocation, plus actual costs that
have been reported but not yet observed through a fresh reconstruction.

Decisions are logged with ``structlog`` as ``control_plane_budget_decision``.
"""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from cogworks.domain.errors import BudgetExceeded, CogWorksError, RetryLimitExceeded

if TYPE_CHECKING:
    from cogworks.control_plane.run_state import RunState


class BudgetAction(StrEnum):
    ALLOWED = "allowed"
    BUDGET_EXCEEDED = "budget_exceeded"
    RETRY_LIMIT_EXCEEDED = "retry_limit_exceeded"


@dataclass(frozen=True, slots=True)
class BudgetLimits:
    """Ceilings for one run. ``None`` disables a ceiling."""

    max_cost_per_run_usd: float | None = None
    max_retries_per_run: int | None = None
    max_retries_per_node: int | None = None
    default_node_cost_usd: float = 0.0

    def __post_init__(self) -> None:
        if self.max_cost_per_run_usd is not None and self.max_cost_per_run_usd < 0:
            raise ValueError("max_cost_per_run_usd must be >= 0")
        if self.max_retries_per_run is not None and self.max_retries_per_run < 0:
            raise ValueError("max_retries_per_run must be >= 0")
        if self.max_retries_per_node is not None and self.max_retries_per_node < 0:
            raise ValueError("max_retries_per_node must be >= 0")
        if self.default_node_cost_usd < 0:
            raise ValueError("default_node_cost_usd must be >= 0")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BudgetLimits:
        section = config["budgets"]
        return cls(
            max_cost_per_run_usd=float(section["max_cost_per_run_usd"]),
            max_retries_per_run=int(section["max_retries_per_run"]),
            max_retries_per_node=int(section["max_retries_per_node"]),
            default_node_cost_usd=float(section["default_node_cost_usd"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "max_cost_per_run_usd": self.max_cost_per_run_usd,
            "max_retries_per_run": self.max_retries_per_run,
            "max_retries_per_node": self.max_retries_per_node,
            "default_node_cost_usd": self.default_node_cost_usd,
        }


@dataclass(frozen=True, slots=True)
class BudgetUsage:
    """Usage snapshot at decision time."""

    cost_total_usd: float
    reserved_usd: float
    unobserved_usd: float
    retries_total: int
    node_retries: int | None = None

    @property
    def committed_usd(self) -> float:
        return _round_cost(self.cost_total_usd + self.reserved_usd + self.unobserved_usd)

    def to_dict(self) -> dict[str, object]:
        return {
            "cost_total_usd": self.cost_total_usd,
            "reserved_usd": self.reserved_usd,
            "unobserved_usd": self.unobserved_usd,
            "committed_usd": self.committed_usd,
            "retries_total": self.retries_total,
            "node_retries": self.node_retries,
        }


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Deterministic budget decision for a pending node execution or retry."""

    action: BudgetAction
    reason_codes: tuple[str, ...]
    run_id: str
    node_id: str | None
    usage: BudgetUsage
    limits: BudgetLimits
    requested_cost_usd: float = 0.0
    reservation_id: str | None = None

    @property
    def allowed(self) -> bool:
        return self.action is BudgetAction.ALLOWED

    def to_error(self) -> CogWorksError | None:
        if self.action is BudgetAction.BUDGET_EXCEEDED:
            limit = self.limits.max_cost_per_run_usd
            return BudgetExceeded(
                accumulated=self.usage.committed_usd + self.requested_cost_usd,
                limit=limit if limit is not None else 0.0,
            )
        if self.action is BudgetAction.RETRY_LIMIT_EXCEEDED:
            detail = ", ".join(self.reason_codes)
            return RetryLimitExceeded(detail, node_id=self.node_id)
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason_codes": list(self.reason_codes),
            "run_id": self.run_id,
            "node_id": self.node_id,
            "requested_cost_usd": self.requested_cost_usd,
            "reservation_id": self.reservation_id,
            "usage": self.usage.to_dict(),
            "limits": self.limits.to_dict(),
        }


class BudgetTracker:
    """
    Enforce cost and retry ceilings for pipeline runs.

    Action semantics:
    - `allowed`: proceed; for cost checks the estimate is now reserved
    - `budget_exceeded`: the run must halt and escalate
    - `retry_limit_exceeded`: the run must halt and escalate
    """

    def __init__(self, limits: BudgetLimits | None = None, *, logger: Any | None = None) -> None:
        self._limits = limits if limits is not None else BudgetLimits()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._reservations: dict[str, dict[str, float]] = {}
        self._unobserved: dict[str, float] = {}
        self._ids = itertools.count(1)

    @property
    def limits(self) -> BudgetLimits:
        return self._limits

    def reserved(self, run_id: str) -> float:
        return _round_cost(sum(self._reservations.get(run_id, {}).values()))

    def observe(self, run: RunState) -> None:
        """Forget reported actuals once a fresh reconstruction includes them."""
        if run.run_id is not None:
            self._unobserved.pop(run.run_id, None)

    def check_and_reserve(
        self,
        run: RunState,
        estimated_cost: float | None = None,
        *,
        node_id: str | None = None,
    ) -> BudgetDecision:
        run_id = _require_run(run)
        estimate = self._limits.default_node_cost_usd if estimated_cost is None else float(estimated_cost)
        if estimate < 0:
            raise ValueError("estimated_cost must be >= 0")

        usage = self._usage(run)
        ceiling = self._limits.max_cost_per_run_usd
        reasons: list[str] = []
        reservation_id: str | None = None
        if ceiling is not None and usage.committed_usd >= ceiling:
            _append_reason(reasons, "run_cost_cap_reached")
        elif ceiling is not None and usage.committed_usd + estimate > ceiling:
            _append_reason(reasons, "estimate_exceeds_remaining_budget")

        if reasons:
            action = BudgetAction.BUDGET_EXCEEDED
        else:
            action = BudgetAction.ALLOWED
            _append_reason(reasons, "within_budget")
            reservation_id = f"rsv-{next(self._ids)}"
            self._reservations.setdefault(run_id, {})[reservation_id] = estimate

        decision = BudgetDecision(
            action=action,
            reason_codes=tuple(reasons),
            run_id=run_id,
            node_id=node_id,
            usage=usage,
            limits=self._limits,
            requested_cost_usd=_round_cost(estimate),
            reservation_id=reservation_id,
        )
        self._log_decision("check_and_reserve", decision)
        return decision

    def record_actual(self, run: RunState, cost: float, *, reservation_id: str | None = None) -> None:
        """Settle ``reservation_id`` (when given) and account the actual ``cost``."""
        run_id = _require_run(run)
        if cost < 0:
            raise ValueError("cost must be >= 0")
        if reservation_id is not None:
            self._reservations.get(run_id, {}).pop(reservation_id, None)
        self._unobserved[run_id] = _round_cost(self._unobserved.get(run_id, 0.0) + cost)
        self._logger.info(
            "control_plane_budget_actual",
            run_id=run_id,
            cost_usd=_round_cost(cost),
            reservation_id=reservation_id,
            reserved_usd=self.reserved(run_id),
        )

    def release(self, run: RunState, reservation_id: str) -> None:
        """Drop a reservation whose node never ran (cancelled or deferred)."""
        self._reservations.get(_require_run(run), {}).pop(reservation_id, None)

    def check_retry(
        self,
        run: RunState,
        node_id: str | None,
        *,
        max_node_retries: int | None = None,
    ) -> BudgetDecision:
        """Whether one more retry (of ``node_id``, or a rework traversal when ``None``) is allowed."""
        run_id = _require_run(run)
        node_retries = run.node(node_id).retries if node_id is not None else None
        usage = self._usage(run, node_retries=node_retries)
        node_limit = max_node_retries if max_node_retries is not None else self._limits.max_retries_per_node

        reasons: list[str] = []
        if node_retries is not None and node_limit is not None and node_retries + 1 > node_limit:
            _append_reason(reasons, "node_retry_limit_reached")
        run_limit = self._limits.max_retries_per_run
        if run_limit is not None and run.retries_total + 1 > run_limit:
            _append_reason(reasons, "run_retry_limit_reached")

        if reasons:
            action = BudgetAction.RETRY_LIMIT_EXCEEDED
        else:
            action = BudgetAction.ALLOWED
            _append_reason(reasons, "within_budget")
        decision = BudgetDecision(
            action=action,
            reason_codes=tuple(reasons),
            run_id=run_id,
            node_id=node_id,
            usage=usage,
            limits=self._limits,
        )
        self._log_decision("check_retry", decision)
        return decision

    def exhausted(self, run: RunState) -> BudgetDecision | None:
        """The decision that halts ``run`` once an artifact-derived total went past a ceiling.

        Spending exactly the cost ceiling is not exhaustion; ``check_and_reserve``
        still refuses new work at that point.
        """
        run_id = _require_run(run)
        usage = self._usage(run)
        reasons: list[str] = []
        action = BudgetAction.ALLOWED
        ceiling = self._limits.max_cost_per_run_usd
        if ceiling is not None and usage.committed_usd > ceiling:
            _append_reason(reasons, "run_cost_cap_reached")
            action = BudgetAction.BUDGET_EXCEEDED
        elif self._limits.max_retries_per_run is not None and run.retries_total > self._limits.max_retries_per_run:
            _append_reason(reasons, "run_retry_limit_exceeded")
            action = BudgetAction.RETRY_LIMIT_EXCEEDED
        if action is BudgetAction.ALLOWED:
            return None
        decision = BudgetDecision(
            action=action,
            reason_codes=tuple(reasons),
            run_id=run_id,
            node_id=None,
            usage=usage,
            limits=self._limits,
        )
        self._log_decision("exhausted", decision)
        return decision

    def _usage(self, run: RunState, *, node_retries: int | None = None) -> BudgetUsage:
        run_id = _require_run(run)
        return BudgetUsage(
            cost_total_usd=_round_cost(run.cost_total_usd),
            reserved_usd=self.reserved(run_id),
            unobserved_usd=_round_cost(self._unobserved.get(run_id, 0.0)),
            retries_total=run.retries_total,
            node_retries=node_retries,
        )

    def _log_decision(self, check: str, decision: BudgetDecision) -> None:
        self._logger.info(
            "control_plane_budget_decision",
            check=check,
            action=decision.action.value,
            reason_codes=list(decision.reason_codes),
            run_id=decision.run_id,
            node_id=decision.node_id,
            requested_cost_usd=decision.requested_cost_usd,
            usage=decision.usage.to_dict(),
            limits=decision.limits.to_dict(),
        )


def _require_run(run: RunState) -> str:
    if run.run_id is None:
        raise ValueError("budget checks require a started run")
    return run.run_id


def _append_reason(reason_codes: list[str], reason_code: str) -> None:
    if reason_code not in reason_codes:
        reason_codes.append(reason_code)


def _round_cost(value: float) -> float:
    return float(round(value, 12))


__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "BudgetLimits",
    "BudgetTracker",
    "BudgetUsage",
]
