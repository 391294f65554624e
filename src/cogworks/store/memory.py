"""In-memory artifact store used by tests and embedders."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

from cogworks.domain.errors import StoreError, WorkItemNotFoundError
from cogworks.domain.ids import validate_work_item_ref
from cogworks.domain.models import Comment, JSONValue, Marker, ReviewState, WorkItem
from cogworks.utils.clock import Clock, format_timestamp, utc_now


@dataclass
class _Record:
    item: WorkItem
    comments: list[Comment] = field(default_factory=list)
    markers: dict[str, Marker] = field(default_factory=dict)
    reviews: dict[str, ReviewState] = field(default_factory=dict)


class MemoryArtifactStore:
    """Thread-safe store holding everything in process memory.

    Every public method takes the store lock, so compare-and-swap on markers is
    atomic across threads.
    """

    def __init__(self, *, clock: Clock = utc_now, ref_prefix: str = "item") -> None:
        self._clock = clock
        self._ref_prefix = ref_prefix
        self._lock = threading.RLock()
        self._records: dict[str, _Record] = {}
        self._sequence = 0

    def add_work_item(self, item: WorkItem) -> WorkItem:
        """Register an externally created work item (fixtures, imports)."""
        ref = validate_work_item_ref(item.ref)
        with self._lock:
            if ref in self._records:
                raise StoreError(f"work item {ref!r} already exists")
            self._records[ref] = _Record(item=item)
        return item

    def get_work_item(self, ref: str) -> WorkItem:
        with self._lock:
            return self._record(ref).item

    def create_work_item(
        self,
        *,
        title: str,
        body: str = "",
        labels: Sequence[str] = (),
        parent_ref: str | None = None,
        metadata: Mapping[str, JSONValue] | None = None,
    ) -> WorkItem:
        with self._lock:
            if parent_ref is not None:
                self._record(parent_ref)
            self._sequence += 1
            ref = f"{self._ref_prefix}-{self._sequence}"
            while ref in self._records:
                self._sequence += 1
                ref = f"{self._ref_prefix}-{self._sequence}"
            item = WorkItem(
                ref=ref,
                title=title,
                body=body,
                labels=tuple(labels),
                parent_ref=parent_ref,
                metadata=dict(metadata or {}),
            )
            self._records[ref] = _Record(item=item)
            return item

    def list_children(self, ref: str) -> tuple[WorkItem, ...]:
        with self._lock:
            self._record(ref)
            return tuple(record.item for record in self._records.values() if record.item.parent_ref == ref)

    def list_comments(self, ref: str) -> tuple[Comment, ...]:
        with self._lock:
            return tuple(self._record(ref).comments)

    def add_comment(self, ref: str, body: str) -> Comment:
        with self._lock:
            record = self._record(ref)
            comment = Comment(
                comment_id=f"{ref}:c{len(record.comments) + 1}",
                body=body,
                created_at=format_timestamp(self._clock()),
            )
            record.comments.append(comment)
            return comment

    def add_label(self, ref: str, label: str) -> None:
        with self._lock:
            record = self._record(ref)
            if label not in record.item.labels:
                record.item = replace(record.item, labels=(*record.item.labels, label))

    def remove_label(self, ref: str, label: str) -> None:
        with self._lock:
            record = self._record(ref)
            if label in record.item.labels:
                labels = tuple(existing for existing in record.item.labels if existing != label)
                record.item = replace(record.item, labels=labels)

    def read_marker(self, ref: str, name: str) -> Marker | None:
        with self._lock:
            return self._record(ref).markers.get(name)

    def compare_and_swap_marker(
        self,
        ref: str,
        name: str,
        *,
        expected: Marker | None,
        new: Marker | None,
    ) -> bool:
        with self._lock:
            record = self._record(ref)
            if record.markers.get(name) != expected:
                return False
            if new is None:
                record.markers.pop(name, None)
                self.remove_label(ref, name)
            else:
                record.markers[name] = new
                self.add_label(ref, name)
            return True

    def open_review_request(self, ref: str, *, title: str, body: str) -> str:
        with self._lock:
            record = self._record(ref)
            review_ref = f"{ref}:review-{len(record.reviews) + 1}"
            record.reviews[review_ref] = ReviewState.OPEN
            return review_ref

    def review_request_state(self, ref: str, review_ref: str) -> ReviewState:
        with self._lock:
            try:
                return self._record(ref).reviews[review_ref]
            except KeyError:
                raise StoreError(f"unknown review request {review_ref!r} on {ref!r}") from None

    def set_review_state(self, ref: str, review_ref: str, state: ReviewState) -> None:
        """Simulate a reviewer acting on a review request."""
        with self._lock:
            record = self._record(ref)
            if review_ref not in record.reviews:
                raise StoreError(f"unknown review request {review_ref!r} on {ref!r}")
            record.reviews[review_ref] = state

    def _record(self, ref: str) -> _Record:
        try:
            return self._records[ref]
        except KeyError:
            raise WorkItemNotFoundError(ref) from None


__all__ = ["MemoryArtifactStore"]
