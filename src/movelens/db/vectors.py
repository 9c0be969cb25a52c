"""Embedding serialization for sqlite-vec float32 blobs."""

from __future__ import annotations

from collections.abc import Sequence

import sqlite_vec


def serialize_embedding(embedding: Sequence[float], dimensions: int | None = None) -> bytes:
    """Pack *embedding* into the compact float32 blob sqlite-vec expects.

    Args:
        embedding: Embedding vector.
        dimensions: Expected vector length. Checked when given.

    Raises:
        ValueError: If the vector is empty or has the wrong length.
    """
    if not embedding:
        raise ValueError("embedding must contain at least one value")
    if dimensions is not None and len(embedding) != dimensions:
        raise ValueError(
            f"embedding has {len(embedding)} dimensions, expected {dimensions}"
        )
    return sqlite_vec.serialize_float32(list(embedding))
