"""
cogworks — edge conditions

File: src/cogworks/pipeline/conditions.py

Purpose
- Parse and evaluate the conditions attached to pipeline edges.

Functional requirements
- Deterministic expressions use a restricted Python expression grammar checked
  at load time: boolean operators, comparisons, membership, literals, names,
  attribute and subscript access. Calls, lambdas and comprehensions are rejected.
- Reasoning predicates are never evaluated here. Their results are supplied by
  the caller (cached per run); an unresolved predicate makes the evaluation
  ``pending`` and names the predicate to resolve.
- Composite conditions short-circuit left to right, so a predicate to the
  right of a decisive operand is never requested.
"""

from __future__ import annotations

import ast
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from cogworks.domain.errors import StructuralIssue

CONTEXT_NAMES: Final[frozenset[str]] = frozenset(
    {
        "classification",
        "diagnostics",
        "error",
        "outputs",
        "safety_critical",
        "status",
        "traversals",
    }
)

_ALLOWED_NODES: Final[tuple[type[ast.AST], ...]] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
)


class ConditionKind(StrEnum):
    NONE = "none"
    EXPRESSION = "expression"
    REASONING = "reasoning"
    ALL = "all"
    ANY = "any"
    NOT = "not"


@dataclass(frozen=True, slots=True)
class Condition:
    """Parsed condition tree. Reasoning leaves carry a stable pre-order index."""

    kind: ConditionKind
    expression: str | None = None
    prompt: str | None = None
    predicate_index: int | None = None
    children: tuple[Condition, ...] = ()

    @property
    def is_trivial(self) -> bool:
        return self.kind is ConditionKind.NONE

    def reasoning_predicates(self) -> tuple[tuple[int, str], ...]:
        """All reasoning predicates in left-to-right order as ``(index, prompt)``."""
        if self.kind is ConditionKind.REASONING:
            assert self.predicate_index is not None and self.prompt is not None
            return ((self.predicate_index, self.prompt),)
        found: list[tuple[int, str]] = []
        for child in self.children:
            found.extend(child.reasoning_predicates())
        return tuple(found)


ALWAYS: Final[Condition] = Condition(kind=ConditionKind.NONE)


@dataclass(frozen=True, slots=True)
class ConditionEvaluation:
    """Outcome of evaluating a condition: a value, or the predicate still needed."""

    value: bool | None
    pending: tuple[int, str] | None = None

    @property
    def resolved(self) -> bool:
        return self.value is not None


class ExpressionError(ValueError):
    """Raised when an expression cannot be evaluated against its context."""


def parse_condition(raw: object, path: str, issues: list[StructuralIssue]) -> Condition:
    """Parse a YAML condition; problems are appended to ``issues``."""

    counter = [0]
    return _parse(raw, path, issues, counter)


def evaluate_condition(
    condition: Condition,
    context: Mapping[str, object],
    predicate_results: Mapping[int, bool],
) -> ConditionEvaluation:
    kind = condition.kind
    if kind is ConditionKind.NONE:
        return ConditionEvaluation(True)
    if kind is ConditionKind.EXPRESSION:
        assert condition.expression is not None
        return ConditionEvaluation(evaluate_expression(condition.expression, context))
    if kind is ConditionKind.REASONING:
        assert condition.predicate_index is not None and condition.prompt is not None
        cached = predicate_results.get(condition.predicate_index)
        if cached is None:
            return ConditionEvaluation(None, pending=(condition.predicate_index, condition.prompt))
        return ConditionEvaluation(bool(cached))
    if kind is ConditionKind.NOT:
        inner = evaluate_condition(condition.children[0], context, predicate_results)
        if not inner.resolved:
            return inner
        return ConditionEvaluation(not inner.value)

    decisive = kind is ConditionKind.ANY
    for child in condition.children:
        result = evaluate_condition(child, context, predicate_results)
        if not result.resolved:
            return result
        if result.value is decisive:
            return ConditionEvaluation(decisive)
    return ConditionEvaluation(not decisive)


def evaluate_expression(expression: str, context: Mapping[str, object]) -> bool:
    tree = ast.parse(expression, mode="eval")
    return bool(_eval(tree.body, context))


def _parse(raw: object, path: str, issues: list[StructuralIssue], counter: list[int]) -> Condition:
    if raw is None:
        return ALWAYS
    if isinstance(raw, str):
        return _parse_expression(raw, path, issues)
    if not isinstance(raw, Mapping) or len(raw) != 1:
        issues.append(
            StructuralIssue(path, "condition must be an expression string or a single-key mapping")
        )
        return ALWAYS

    ((key, value),) = raw.items()
    if key == "expression":
        if not isinstance(value, str):
            issues.append(StructuralIssue(f"{path}.expression", "expected string"))
            return ALWAYS
        return _parse_expression(value, f"{path}.expression", issues)
    if key == "reasoning":
        if not isinstance(value, str) or not value.strip():
            issues.append(StructuralIssue(f"{path}.reasoning", "expected non-empty question"))
            return ALWAYS
        index = counter[0]
        counter[0] += 1
        return Condition(ConditionKind.REASONING, prompt=value.strip(), predicate_index=index)
    if key == "not":
        return Condition(ConditionKind.NOT, children=(_parse(value, f"{path}.not", issues, counter),))
    if key in ("all", "any"):
        if not isinstance(value, Sequence) or isinstance(value, str) or not value:
            issues.append(StructuralIssue(f"{path}.{key}", "expected non-empty list of conditions"))
            return ALWAYS
        children = tuple(
            _parse(item, f"{path}.{key}[{index}]", issues, counter) for index, item in enumerate(value)
        )
        return Condition(ConditionKind(key), children=children)

    issues.append(StructuralIssue(path, f"unknown condition operator {key!r}"))
    return ALWAYS


def _parse_expression(source: str, path: str, issues: list[StructuralIssue]) -> Condition:
    text = source.strip()
    if not text:
        issues.append(StructuralIssue(path, "expression must not be empty"))
        return ALWAYS
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        issues.append(StructuralIssue(path, f"invalid expression: {exc.msg}"))
        return ALWAYS

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            issues.append(StructuralIssue(path, f"unsupported syntax {type(node).__name__}"))
            return ALWAYS
        if isinstance(node, ast.Name) and node.id not in CONTEXT_NAMES:
            expected = ", ".join(sorted(CONTEXT_NAMES))
            issues.append(StructuralIssue(path, f"unknown name {node.id!r}; expected one of: {expected}"))
            return ALWAYS
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            issues.append(StructuralIssue(path, "private attribute access is not allowed"))
            return ALWAYS
    return Condition(ConditionKind.EXPRESSION, expression=text)


def _eval(node: ast.AST, context: Mapping[str, object]) -> object:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return context.get(node.id)
    if isinstance(node, ast.Attribute):
        return _lookup(_eval(node.value, context), node.attr)
    if isinstance(node, ast.Subscript):
        return _lookup(_eval(node.value, context), _eval(node.slice, context))
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(item, context) for item in node.elts]
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(value, context) for value in node.values)
        return any(_eval(value, context) for value in node.values)
    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise ExpressionError("unary minus requires a number")
        return -operand
    if isinstance(node, ast.Compare):
        left = _eval(node.left, context)
        for operator, comparator in zip(node.ops, node.comparators, strict=True):
            right = _eval(comparator, context)
            if not _compare(operator, left, right):
                return False
            left = right
        return True
    raise ExpressionError(f"unsupported syntax {type(node).__name__}")


def _lookup(container: object, key: object) -> object:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple)) and isinstance(key, int) and not isinstance(key, bool):
        return container[key] if -len(container) <= key < len(container) else None
    return None


def _compare(operator: ast.cmpop, left: object, right: object) -> bool:
    try:
        if isinstance(operator, ast.Eq):
            return left == right
        if isinstance(operator, ast.NotEq):
            return left != right
        if isinstance(operator, ast.Is):
            return left is right
        if isinstance(operator, ast.IsNot):
            return left is not right
        if isinstance(operator, ast.In):
            return right is not None and left in right  # type: ignore[operator]
        if isinstance(operator, ast.NotIn):
            return right is None or left not in right  # type: ignore[operator]
        if left is None or right is None:
            return False
        if isinstance(operator, ast.Lt):
            return left < right  # type: ignore[operator]
        if isinstance(operator, ast.LtE):
            return left <= right  # type: ignore[operator]
        if isinstance(operator, ast.Gt):
            return left > right  # type: ignore[operator]
        if isinstance(operator, ast.GtE):
            return left >= right  # type: ignore[operator]
    except TypeError as exc:
        raise ExpressionError(f"incomparable operands: {exc}") from exc
    raise ExpressionError(f"unsupported comparison {type(operator).__name__}")


__all__ = [
    "ALWAYS",
    "CONTEXT_NAMES",
    "Condition",
    "ConditionEvaluation",
    "ConditionKind",
    "ExpressionError",
    "evaluate_condition",
    "evaluate_expression",
    "parse_condition",
]
