"""
cogworks — external artifact store contract

File: src/cogworks/store/base.py

Purpose
- Define the only shared mutable resource the engine touches: a ticket-tracker
  style store of work items, comments, labels, markers and review requests.

Functional requirements
- Comments are returned in append order; the engine never edits or deletes them.
- ``compare_and_swap_marker`` is atomic: it replaces the marker only when the
  current marker equals ``expected`` (``None`` meaning "absent"). A set marker
  is also visible as a label of the same name.
- Review request states feed human gate decisions back into the engine.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from cogworks.domain.models import Comment, JSONValue, Marker, ReviewState, WorkItem


@runtime_checkable
class ArtifactStore(Protocol):
    """Work-item source and artifact sink used by the orchestrator."""

    def get_work_item(self, ref: str) -> WorkItem:
        """Return the work item or raise ``WorkItemNotFoundError``."""

    def create_work_item(
        self,
        *,
        title: str,
        body: str = "",
        labels: Sequence[str] = (),
        parent_ref: str | None = None,
        metadata: Mapping[str, JSONValue] | None = None,
    ) -> WorkItem: ...

    def list_children(self, ref: str) -> tuple[WorkItem, ...]:
        """Sub-work-items whose ``parent_ref`` is ``ref``, in creation order."""

    def list_comments(self, ref: str) -> tuple[Comment, ...]: ...

    def add_comment(self, ref: str, body: str) -> Comment: ...

    def add_label(self, ref: str, label: str) -> None: ...

    def remove_label(self, ref: str, label: str) -> None: ...

    def read_marker(self, ref: str, name: str) -> Marker | None: ...

    def compare_and_swap_marker(
        self,
        ref: str,
        name: str,
        *,
        expected: Marker | None,
        new: Marker | None,
    ) -> bool: ...

    def open_review_request(self, ref: str, *, title: str, body: str) -> str:
        """Open a review request for ``ref`` and return its reference."""

    def review_request_state(self, ref: str, review_ref: str) -> ReviewState: ...


__all__ = ["ArtifactStore"]
