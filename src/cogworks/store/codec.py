"""Artifact <-> comment encoding.

An artifact comment starts with a single-line machine-readable header::

    <!-- cogworks:artifact {"digest":"...","kind":"node_output",...} -->

followed by a short human-readable summary. ``>`` is escaped inside the JSON
header so payload text can never terminate the HTML comment early.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass

from cogworks.constants import ARTIFACT_HEADER_PREFIX, ARTIFACT_HEADER_SUFFIX
from cogworks.domain.models import Artifact, ArtifactKind, Comment
from cogworks.utils.hashing import canonical_json

_SUMMARY_LIMIT = 280


class ArtifactDecodeError(ValueError):
    """Comment carries an artifact header that cannot be trusted."""


@dataclass(frozen=True, slots=True)
class DecodedLog:
    """Artifacts recovered from a comment log, plus the comments that were rejected."""

    artifacts: tuple[Artifact, ...]
    rejected: tuple[tuple[str, str], ...] = ()


def encode_artifact(artifact: Artifact) -> str:
    header_json = canonical_json(artifact.to_dict()).replace(">", "\\u003e")
    return f"{ARTIFACT_HEADER_PREFIX}{header_json}{ARTIFACT_HEADER_SUFFIX}\n{summarize(artifact)}"


def is_artifact_comment(body: str) -> bool:
    return body.startswith(ARTIFACT_HEADER_PREFIX)


def decode_comment(comment: Comment, *, sequence: int = 0) -> Artifact | None:
    """Return the artifact in ``comment``; ``None`` for ordinary comments."""

    body = comment.body
    if not is_artifact_comment(body):
        return None
    first_line = body.split("\n", 1)[0]
    if not first_line.endswith(ARTIFACT_HEADER_SUFFIX):
        raise ArtifactDecodeError(f"comment {comment.comment_id}: unterminated artifact header")
    raw = first_line[len(ARTIFACT_HEADER_PREFIX) : -len(ARTIFACT_HEADER_SUFFIX)]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArtifactDecodeError(f"comment {comment.comment_id}: invalid header JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ArtifactDecodeError(f"comment {comment.comment_id}: header must be an object")
    if "digest" not in data:
        raise ArtifactDecodeError(f"comment {comment.comment_id}: header has no digest")
    try:
        artifact = Artifact.from_dict(data, sequence=sequence)
    except (TypeError, ValueError) as exc:
        raise ArtifactDecodeError(f"comment {comment.comment_id}: {exc}") from exc
    if not artifact.created_at:
        artifact = Artifact(
            kind=artifact.kind,
            run_id=artifact.run_id,
            payload=artifact.payload,
            node_id=artifact.node_id,
            created_at=comment.created_at,
            sequence=sequence,
        )
    return artifact


def decode_log(comments: Iterable[Comment]) -> DecodedLog:
    """Decode every artifact comment in order; corrupt headers are collected, not raised."""

    artifacts: list[Artifact] = []
    rejected: list[tuple[str, str]] = []
    for index, comment in enumerate(comments):
        try:
            artifact = decode_comment(comment, sequence=index)
        except ArtifactDecodeError as exc:
            rejected.append((comment.comment_id, str(exc)))
            continue
        if artifact is not None:
            artifacts.append(artifact)
    return DecodedLog(artifacts=tuple(artifacts), rejected=tuple(rejected))


def summarize(artifact: Artifact) -> str:
    """One human-readable line describing ``artifact``."""

    payload = artifact.payload
    node = f" `{artifact.node_id}`" if artifact.node_id else ""
    kind = artifact.kind
    if kind is ArtifactKind.CLASSIFICATION:
        text = f"Classified as **{payload.get('classification')}**."
    elif kind is ArtifactKind.RUN_STARTED:
        text = f"Started run `{artifact.run_id}` of pipeline **{payload.get('pipeline')}**."
    elif kind is ArtifactKind.NODE_OUTPUT:
        text = f"Node{node} completed."
    elif kind is ArtifactKind.NODE_FAILURE:
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        text = f"Node{node} failed: {message}" if message else f"Node{node} failed."
    elif kind is ArtifactKind.PENDING_APPROVAL:
        text = f"Node{node} is waiting for human approval."
    elif kind is ArtifactKind.APPROVAL:
        text = f"Node{node} approved via {payload.get('signal')}."
    elif kind is ArtifactKind.REJECTION:
        text = f"Node{node} rejected via {payload.get('signal')}."
    elif kind is ArtifactKind.CONDITION_RESULT:
        text = f"Condition on `{payload.get('edge')}` evaluated to {payload.get('value')}."
    elif kind is ArtifactKind.EDGE_TRAVERSAL:
        text = f"Rework edge `{payload.get('edge')}` traversal {payload.get('traversal')}."
    elif kind is ArtifactKind.SPAWNED:
        children = payload.get("children")
        count = len(children) if isinstance(children, list) else 0
        text = f"Node{node} spawned {count} sub-work-item(s)."
    elif kind is ArtifactKind.ESCALATION:
        text = f"Run escalated: {payload.get('reason')}"
    else:
        text = f"Run `{artifact.run_id}` completed."
    if len(text) > _SUMMARY_LIMIT:
        text = text[: _SUMMARY_LIMIT - 3] + "..."
    return text


__all__ = [
    "ArtifactDecodeError",
    "DecodedLog",
    "decode_comment",
    "decode_log",
    "encode_artifact",
    "is_artifact_comment",
    "summarize",
]
