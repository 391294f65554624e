"""
cogworks — filesystem artifact store

File: src/cogworks/store/filesystem.py

Purpose
- Durable local stand-in for a ticket tracker: one directory per work item.

Layout
- ``<root>/items/<quoted ref>/item.json``      work item, markers, review requests
- ``<root>/items/<quoted ref>/comments.json``  append-only comment log
- ``<root>/items/<quoted ref>/.lock``          ``flock`` sidecar guarding both files
- ``<root>/.sequence``                        counter for generated refs

Functional requirements
- Every mutation is a read-modify-write under an exclusive ``flock`` followed
  by an atomic replace, so concurrent processes observe either the old or the
  new state and marker compare-and-swap is atomic across processes.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any
from urllib.parse import quote

from cogworks.domain.errors import StoreError, WorkItemNotFoundError
from cogworks.domain.ids import validate_work_item_ref
from cogworks.domain.models import Comment, JSONValue, Marker, ReviewState, WorkItem
from cogworks.utils.clock import Clock, format_timestamp, utc_now
from cogworks.utils.fs import atomic_write, exclusive_lock, read_text_if_exists

_ITEM_FILE = "item.json"
_COMMENTS_FILE = "comments.json"
_LOCK_FILE = ".lock"


class FilesystemArtifactStore:
    def __init__(self, root: str | Path, *, clock: Clock = utc_now, ref_prefix: str = "item") -> None:
        self._root = Path(root)
        self._items = self._root / "items"
        self._items.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._ref_prefix = ref_prefix

    @property
    def root(self) -> Path:
        return self._root

    def add_work_item(self, item: WorkItem) -> WorkItem:
        ref = validate_work_item_ref(item.ref)
        directory = self._dir(ref)
        directory.mkdir(parents=True, exist_ok=True)
        with exclusive_lock(directory / _LOCK_FILE):
            if (directory / _ITEM_FILE).exists():
                raise StoreError(f"work item {ref!r} already exists")
            self._write_state(directory, {"item": item.to_dict(), "markers": {}, "reviews": {}})
            atomic_write(directory / _COMMENTS_FILE, "[]")
        return item

    def get_work_item(self, ref: str) -> WorkItem:
        return WorkItem.from_dict(self._read_state(self._existing_dir(ref))["item"])

    def create_work_item(
        self,
        *,
        title: str,
        body: str = "",
        labels: Sequence[str] = (),
        parent_ref: str | None = None,
        metadata: Mapping[str, JSONValue] | None = None,
    ) -> WorkItem:
        if parent_ref is not None:
            self._existing_dir(parent_ref)
        with exclusive_lock(self._root / ".sequence.lock"):
            current = read_text_if_exists(self._root / ".sequence")
            sequence = int(current) if current and current.strip().isdigit() else 0
            while True:
                sequence += 1
                ref = f"{self._ref_prefix}-{sequence}"
                if not (self._dir(ref) / _ITEM_FILE).exists():
                    break
            atomic_write(self._root / ".sequence", str(sequence))
        item = WorkItem(
            ref=ref,
            title=title,
            body=body,
            labels=tuple(labels),
            parent_ref=parent_ref,
            metadata=dict(metadata or {}),
        )
        return self.add_work_item(item)

    def list_children(self, ref: str) -> tuple[WorkItem, ...]:
        self._existing_dir(ref)
        children: list[tuple[int, WorkItem]] = []
        for item_file in sorted(self._items.glob(f"*/{_ITEM_FILE}")):
            state = json.loads(item_file.read_text(encoding="utf-8"))
            item = WorkItem.from_dict(state["item"])
            if item.parent_ref == ref:
                children.append((_ref_order(item.ref), item))
        children.sort(key=lambda pair: (pair[0], pair[1].ref))
        return tuple(item for _, item in children)

    def list_comments(self, ref: str) -> tuple[Comment, ...]:
        directory = self._existing_dir(ref)
        return tuple(
            Comment(comment_id=entry["comment_id"], body=entry["body"], created_at=entry["created_at"])
            for entry in self._read_comments(directory)
        )

    def add_comment(self, ref: str, body: str) -> Comment:
        directory = self._existing_dir(ref)
        with exclusive_lock(directory / _LOCK_FILE):
            entries = self._read_comments(directory)
            comment = Comment(
                comment_id=f"{ref}:c{len(entries) + 1}",
                body=body,
                created_at=format_timestamp(self._clock()),
            )
            entries.append(
                {"comment_id": comment.comment_id, "body": comment.body, "created_at": comment.created_at}
            )
            atomic_write(directory / _COMMENTS_FILE, json.dumps(entries, ensure_ascii=False))
        return comment

    def add_label(self, ref: str, label: str) -> None:
        self._update_labels(ref, add=label)

    def remove_label(self, ref: str, label: str) -> None:
        self._update_labels(ref, remove=label)

    def read_marker(self, ref: str, name: str) -> Marker | None:
        markers = self._read_state(self._existing_dir(ref)).get("markers", {})
        raw = markers.get(name)
        return Marker.from_dict(raw) if isinstance(raw, dict) else None

    def compare_and_swap_marker(
        self,
        ref: str,
        name: str,
        *,
        expected: Marker | None,
        new: Marker | None,
    ) -> bool:
        directory = self._existing_dir(ref)
        with exclusive_lock(directory / _LOCK_FILE):
            state = self._read_state(directory)
            markers: dict[str, Any] = state.setdefault("markers", {})
            raw = markers.get(name)
            current = Marker.from_dict(raw) if isinstance(raw, dict) else None
            if current != expected:
                return False
            labels = [label for label in state["item"]["labels"] if label != name]
            if new is None:
                markers.pop(name, None)
            else:
                markers[name] = new.to_dict()
                labels.append(name)
            state["item"]["labels"] = sorted(labels)
            self._write_state(directory, state)
            return True

    def open_review_request(self, ref: str, *, title: str, body: str) -> str:
        directory = self._existing_dir(ref)
        with exclusive_lock(directory / _LOCK_FILE):
            state = self._read_state(directory)
            reviews: dict[str, Any] = state.setdefault("reviews", {})
            review_ref = f"{ref}:review-{len(reviews) + 1}"
            reviews[review_ref] = {"state": ReviewState.OPEN.value, "title": title, "body": body}
            self._write_state(directory, state)
        return review_ref

    def review_request_state(self, ref: str, review_ref: str) -> ReviewState:
        reviews = self._read_state(self._existing_dir(ref)).get("reviews", {})
        entry = reviews.get(review_ref)
        if not isinstance(entry, dict):
            raise StoreError(f"unknown review request {review_ref!r} on {ref!r}")
        return ReviewState(entry["state"])

    def set_review_state(self, ref: str, review_ref: str, state: ReviewState) -> None:
        directory = self._existing_dir(ref)
        with exclusive_lock(directory / _LOCK_FILE):
            payload = self._read_state(directory)
            entry = payload.get("reviews", {}).get(review_ref)
            if not isinstance(entry, dict):
                raise StoreError(f"unknown review request {review_ref!r} on {ref!r}")
            entry["state"] = ReviewState(state).value
            self._write_state(directory, payload)

    def _update_labels(self, ref: str, *, add: str | None = None, remove: str | None = None) -> None:
        directory = self._existing_dir(ref)
        with exclusive_lock(directory / _LOCK_FILE):
            state = self._read_state(directory)
            labels = set(state["item"]["labels"])
            if add is not None:
                labels.add(add)
            if remove is not None:
                labels.discard(remove)
            state["item"]["labels"] = sorted(labels)
            self._write_state(directory, state)

    def _dir(self, ref: str) -> Path:
        return self._items / f"wi-{quote(ref, safe='')}"

    def _existing_dir(self, ref: str) -> Path:
        directory = self._dir(ref)
        if not (directory / _ITEM_FILE).exists():
            raise WorkItemNotFoundError(ref)
        return directory

    @staticmethod
    def _read_state(directory: Path) -> dict[str, Any]:
        text = read_text_if_exists(directory / _ITEM_FILE)
        if text is None:
            raise StoreError(f"missing {_ITEM_FILE} in {directory}")
        try:
            state = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreError(f"corrupt {_ITEM_FILE} in {directory}: {exc.msg}") from exc
        if not isinstance(state, dict) or not isinstance(state.get("item"), dict):
            raise StoreError(f"corrupt {_ITEM_FILE} in {directory}")
        return state

    @staticmethod
    def _write_state(directory: Path, state: Mapping[str, object]) -> None:
        atomic_write(directory / _ITEM_FILE, json.dumps(state, sort_keys=True, ensure_ascii=False, indent=2))

    @staticmethod
    def _read_comments(directory: Path) -> list[dict[str, str]]:
        text = read_text_if_exists(directory / _COMMENTS_FILE)
        if text is None:
            return []
        try:
            entries = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreError(f"corrupt {_COMMENTS_FILE} in {directory}: {exc.msg}") from exc
        if not isinstance(entries, list):
            raise StoreError(f"corrupt {_COMMENTS_FILE} in {directory}")
        return entries


def _ref_order(ref: str) -> int:
    _, _, suffix = ref.rpartition("-")
    return int(suffix) if suffix.isdigit() else 0


__all__ = ["FilesystemArtifactStore"]
