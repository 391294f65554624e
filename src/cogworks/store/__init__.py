"""External artifact store: protocol, comment codec and implementations."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from cogworks.store.base import ArtifactStore
from cogworks.store.codec import (
    ArtifactDecodeError,
    DecodedLog,
    decode_comment,
    decode_log,
    encode_artifact,
    summarize,
)
from cogworks.store.filesystem import FilesystemArtifactStore
from cogworks.store.memory import MemoryArtifactStore


def build_store(config: Mapping[str, Any]) -> ArtifactStore:
    """Create the store selected by the ``[store]`` config section."""

    section = config["store"]
    if section["backend"] == "memory":
        return MemoryArtifactStore()
    return FilesystemArtifactStore(section["root"])


__all__ = [
    "ArtifactDecodeError",
    "ArtifactStore",
    "DecodedLog",
    "FilesystemArtifactStore",
    "MemoryArtifactStore",
    "build_store",
    "decode_comment",
    "decode_log",
    "encode_artifact",
    "summarize",
]
