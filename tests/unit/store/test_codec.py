"""Unit tests for encoding artifacts into store comments and reading them back."""

from __future__ import annotations

import pytest

from cogworks.domain.models import Artifact, ArtifactKind, Comment
from cogworks.store.codec import (
    ArtifactDecodeError,
    decode_comment,
    decode_log,
    encode_artifact,
    is_artifact_comment,
    summarize,
)

OUTPUT = Artifact(
    kind=ArtifactKind.NODE_OUTPUT,
    run_id="run-1",
    node_id="draft",
    payload={"epoch": 0, "outputs": {"draft": {"text": "closing --> tag"}}},
    created_at="2026-03-02T09:00:00.000000Z",
)


def _comment(body: str, comment_id: str = "item-1:c1") -> Comment:
    return Comment(comment_id=comment_id, body=body, created_at="2026-03-02T10:00:00.000000Z")


def test_header_is_a_single_escaped_line() -> None:
    body = encode_artifact(OUTPUT)
    header, summary = body.split("\n", 1)

    assert is_artifact_comment(body)
    assert header.endswith(" -->")
    assert "-->" not in header[: -len(" -->")]
    assert summary == "Node `draft` completed."


def test_decode_restores_the_artifact() -> None:
    decoded = decode_comment(_comment(encode_artifact(OUTPUT)), sequence=3)

    assert decoded is not None
    assert decoded.digest == OUTPUT.digest
    assert decoded.payload == OUTPUT.payload
    assert decoded.sequence == 3
    assert decoded.created_at == OUTPUT.created_at


def test_missing_timestamp_falls_back_to_comment_time() -> None:
    undated = Artifact(kind=ArtifactKind.RUN_COMPLETED, run_id="run-1")

    decoded = decode_comment(_comment(encode_artifact(undated)))

    assert decoded is not None
    assert decoded.created_at == "2026-03-02T10:00:00.000000Z"


def test_ordinary_comments_are_not_artifacts() -> None:
    assert decode_comment(_comment("Looks good to me!")) is None


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("<!-- cogworks:artifact {\"kind\":", "unterminated artifact header"),
        ("<!-- cogworks:artifact {not json} -->", "invalid header JSON"),
        ("<!-- cogworks:artifact [] -->", "header must be an object"),
        ('<!-- cogworks:artifact {"kind":"approval","run_id":"r"} -->', "header has no digest"),
    ],
)
def test_corrupt_headers_raise(body: str, message: str) -> None:
    with pytest.raises(ArtifactDecodeError, match=message):
        decode_comment(_comment(body))


def test_tampered_payload_is_rejected() -> None:
    body = encode_artifact(OUTPUT).replace("closing", "opening")

    with pytest.raises(ArtifactDecodeError, match="content digest mismatch"):
        decode_comment(_comment(body))


def test_decode_log_keeps_order_and_collects_rejections() -> None:
    approval = Artifact(kind=ArtifactKind.APPROVAL, run_id="run-1", node_id="review", payload={"signal": "label"})
    comments = [
        _comment(encode_artifact(OUTPUT), "c1"),
        _comment("human chatter", "c2"),
        _comment("<!-- cogworks:artifact {oops} -->", "c3"),
        _comment(encode_artifact(approval), "c4"),
    ]

    log = decode_log(comments)

    assert [artifact.kind for artifact in log.artifacts] == [ArtifactKind.NODE_OUTPUT, ArtifactKind.APPROVAL]
    assert [artifact.sequence for artifact in log.artifacts] == [0, 3]
    assert [comment_id for comment_id, _ in log.rejected] == ["c3"]


def test_summaries_are_bounded() -> None:
    escalation = Artifact(kind=ArtifactKind.ESCALATION, run_id="run-1", payload={"reason": "x" * 500})

    text = summarize(escalation)

    assert len(text) == 280
    assert text.endswith("...")
