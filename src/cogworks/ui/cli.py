"""Command-line interface router for cogworks."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cogworks.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_redacted,
    load_config,
)
from cogworks.control_plane import LabelPolicy, Orchestrator, load_run_state
from cogworks.domain.errors import StructuralConfigError, WorkItemNotFoundError
from cogworks.domain.ids import validate_work_item_ref
from cogworks.domain.models import StepResult
from cogworks.extension import ExtensionClient, RepositoryRef
from cogworks.main import ExitCode, exit_code_for
from cogworks.observability import LoggingConfig, configure_logging, shutdown_logging
from cogworks.pipeline import GraphModel, PipelineCatalog, load_pipeline_catalog
from cogworks.reasoning import OfflineReasoningClient, create_reasoning_client
from cogworks.store import ArtifactStore, build_store, decode_log, summarize

if TYPE_CHECKING:
    from cogworks.control_plane import RunState


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.FAILED)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="cogworks",
        description=(
            "cogworks — stateless pipeline execution engine.\n\n"
            "Common workflows:\n"
            "  cogworks process item-1        Advance one work item's pipeline run\n"
            "  cogworks approve item-1 review Approve a gated node\n"
            "  cogworks status item-1         Show reconstructed run state\n"
            "  cogworks validate              Check the pipeline definitions\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to cogworks TOML config (default: ./cogworks.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Also write structured logs to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process",
        parents=[common],
        help="Advance a work item's pipeline run as far as possible",
    )
    process_parser.add_argument("ref", help="Work item reference.")
    process_parser.add_argument(
        "--offline",
        action="store_true",
        default=False,
        help="Use the deterministic offline reasoning client.",
    )
    process_parser.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    process_parser.set_defaults(handler=_cmd_process)

    for name, verb in (("approve", "Approve"), ("reject", "Reject")):
        signal_parser = subparsers.add_parser(
            name,
            parents=[common],
            help=f"{verb} a node waiting at a human gate",
        )
        signal_parser.add_argument("ref", help="Work item reference.")
        signal_parser.add_argument("node", help="Gated node id.")
        signal_parser.set_defaults(handler=_cmd_signal, approve=name == "approve")

    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the reconstructed state of a work item's latest run",
    )
    status_parser.add_argument("ref", help="Work item reference.")
    status_parser.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    status_parser.set_defaults(handler=_cmd_status)

    log_parser = subparsers.add_parser(
        "log",
        parents=[common],
        help="List the artifacts recorded on a work item",
    )
    log_parser.add_argument("ref", help="Work item reference.")
    log_parser.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    log_parser.set_defaults(handler=_cmd_log)

    create_parser = subparsers.add_parser(
        "create",
        parents=[common],
        help="Create a work item in the configured store",
    )
    create_parser.add_argument("--title", required=True, help="Work item title.")
    create_parser.add_argument("--body", default="", help="Work item body.")
    create_parser.add_argument(
        "--label",
        dest="labels",
        action="append",
        default=[],
        help="Label to attach (repeatable).",
    )
    create_parser.add_argument(
        "--trigger",
        action="store_true",
        default=False,
        help="Also attach the trigger label.",
    )
    create_parser.set_defaults(handler=_cmd_create)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Structurally validate a pipeline definitions file",
    )
    validate_parser.add_argument(
        "file",
        nargs="?",
        default=None,
        help="Pipeline definitions file (default: engine.pipelines_file).",
    )
    validate_parser.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    validate_parser.set_defaults(handler=_cmd_validate)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration with secrets redacted",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_process(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _configure_logging(config, args)
    store = build_store(config)
    catalog = _load_catalog(config, None)
    reasoning = OfflineReasoningClient() if args.offline else create_reasoning_client(config)
    extension: ExtensionClient | None = None
    if config["extension"]["services"]:
        extension = ExtensionClient.from_config(config, repository=RepositoryRef(path=str(Path.cwd())))

    orchestrator = Orchestrator.from_config(
        config,
        store=store,
        catalog=catalog,
        reasoning=reasoning,
        extension=extension,
    )
    try:
        result = orchestrator.advance_sync(_ref(args))
    except StructuralConfigError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc
    except WorkItemNotFoundError as exc:
        raise CLIError(exc.detail, exit_code=int(ExitCode.CONFIG_ERROR)) from exc

    if args.json:
        _emit_json({"command": "process", "result": result.to_dict()})
    else:
        _render_step(result)
    return int(exit_code_for(result.status))


def _cmd_signal(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    labels = LabelPolicy.from_config(config)
    store = build_store(config)
    ref = _ref(args)
    state = _load_state(store, ref, labels)
    if state.definition is not None and not state.definition.has_node(args.node):
        raise CLIError(
            f"pipeline {state.pipeline} has no node {args.node!r}",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )

    label = labels.approve(args.node) if args.approve else labels.reject(args.node)
    store.add_label(ref, label)
    store.add_label(ref, labels.trigger)
    print(f"{ref}: added {label}")
    return int(ExitCode.SUCCESS)


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    labels = LabelPolicy.from_config(config)
    store = build_store(config)
    state = _load_state(store, _ref(args), labels)

    frontier = None
    if state.definition is not None and not state.terminal:
        frontier = GraphModel(state.definition).plan(state)

    if args.json:
        _emit_json(
            {
                "command": "status",
                "run": state.to_dict(),
                "frontier": frontier.to_dict() if frontier is not None else None,
            }
        )
        return int(ExitCode.SUCCESS)

    if not state.started:
        print(f"{state.work_item.ref}: no run started")
        return int(ExitCode.SUCCESS)

    _kv("Work item", state.work_item.ref)
    _kv("Run", state.run_id)
    _kv("Pipeline", state.pipeline)
    _kv("Classification", state.classification or "(none)")
    _kv("Safety critical", "yes" if state.safety_critical else "no")
    if state.completed:
        _kv("State", "completed")
    elif state.escalated:
        _kv("State", f"escalated: {state.escalation_reason}")
    else:
        _kv("State", "in progress")
    _kv("Cost (USD)", f"{state.cost_total_usd:.6f}")
    _kv("Retries", state.retries_total)
    print("Nodes:")
    order = state.definition.topological_order if state.definition is not None else tuple(sorted(state.nodes))
    for node_id in order:
        node_state = state.node(node_id)
        print(f"- {node_id}: {node_state.status.value} (epoch {node_state.epoch}, executions {node_state.executions})")
    if frontier is not None and frontier.actionable:
        print(f"Ready: {', '.join(frontier.ready) or '-'}")
    return int(ExitCode.SUCCESS)


def _cmd_log(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = build_store(config)
    ref = _ref(args)
    try:
        comments = store.list_comments(ref)
    except WorkItemNotFoundError as exc:
        raise CLIError(exc.detail, exit_code=int(ExitCode.CONFIG_ERROR)) from exc
    decoded = decode_log(comments)

    if args.json:
        _emit_json(
            {
                "command": "log",
                "ref": ref,
                "artifacts": [artifact.to_dict() for artifact in decoded.artifacts],
                "rejected": [{"comment_id": comment_id, "reason": reason} for comment_id, reason in decoded.rejected],
            }
        )
        return int(ExitCode.SUCCESS)

    for artifact in decoded.artifacts:
        print(f"[{artifact.sequence}] {artifact.created_at} {artifact.kind.value}: {summarize(artifact)}")
    for comment_id, reason in decoded.rejected:
        print(f"[rejected {comment_id}] {reason}")
    return int(ExitCode.SUCCESS)


def _cmd_create(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = build_store(config)
    labels = list(args.labels)
    if args.trigger:
        labels.append(config["labels"]["trigger"])
    item = store.create_work_item(title=args.title, body=args.body, labels=labels)
    print(item.ref)
    return int(ExitCode.SUCCESS)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        catalog = _load_catalog(config, args.file)
    except CLIError as exc:
        if args.json:
            _emit_json({"command": "validate", "valid": False, "error": exc.message})
        raise

    summary = {
        name: {
            "nodes": len(definition.nodes),
            "edges": len(definition.edges),
            "parallelism": definition.parallelism,
            "digest": definition.digest,
        }
        for name, definition in sorted(catalog.pipelines.items())
    }
    if args.json:
        _emit_json(
            {
                "command": "validate",
                "valid": True,
                "default_pipeline": catalog.default_pipeline,
                "selection": dict(catalog.selection),
                "pipelines": summary,
            }
        )
        return int(ExitCode.SUCCESS)

    print(f"default pipeline: {catalog.default_pipeline}")
    for name, entry in summary.items():
        print(f"- {name}: {entry['nodes']} nodes, {entry['edges']} edges, parallelism {entry['parallelism']}")
    for classification, pipeline in sorted(catalog.selection.items()):
        print(f"  {classification} -> {pipeline}")
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    print(json.dumps(dump_redacted(config), indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _kv(key: str, value: object) -> None:
    print(f"{key + ':':<17} {value}")


def _render_step(result: StepResult) -> None:
    _kv("Work item", result.ref)
    _kv("Status", result.status.value)
    if result.run_id:
        _kv("Run", result.run_id)
        _kv("Pipeline", result.pipeline)
    for label, values in (
        ("Executed", result.executed),
        ("Failed", result.failed),
        ("Gated", result.gated),
        ("Waiting", result.waiting),
    ):
        if values:
            _kv(label, ", ".join(values))
    if result.escalation_reason:
        _kv("Escalation", result.escalation_reason)
    if result.detail:
        _kv("Detail", result.detail)
    _kv("Cost (USD)", f"{result.cost_total_usd:.6f}")
    if result.run_completed:
        _kv("Run", "completed")
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(getattr(args, "config_path", None))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _configure_logging(config: Mapping[str, Any], args: argparse.Namespace) -> None:
    section = config["observability"]
    configure_logging(
        LoggingConfig(
            level=section["log_level"],
            log_dir=section["log_dir"],
            log_to_stderr=bool(getattr(args, "verbose", False)),
            redact_secrets=section["redact_secrets"],
        )
    )


def _load_catalog(config: Mapping[str, Any], path: str | None) -> PipelineCatalog:
    target = path if path is not None else config["engine"]["pipelines_file"]
    try:
        return load_pipeline_catalog(target, default_parallelism=config["engine"]["default_parallelism"])
    except StructuralConfigError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _load_state(store: ArtifactStore, ref: str, labels: LabelPolicy) -> RunState:
    try:
        return load_run_state(store, ref, safety_label=labels.safety_critical)
    except WorkItemNotFoundError as exc:
        raise CLIError(exc.detail, exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _ref(args: argparse.Namespace) -> str:
    try:
        return validate_work_item_ref(args.ref)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


__all__ = ["CLIError", "build_parser", "run_cli"]
