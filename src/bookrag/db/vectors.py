"""Vector encoding and normalisation helpers.

Vectors are stored as little-endian float32 blobs in the sqlite-vec
format, so the extension's SQL functions (vec_length, vec_distance_cosine)
work directly on the ``embeddings.embedding`` column.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import sqlite_vec


def serialize_vector(vector: Sequence[float]) -> bytes:
    """Pack *vector* into a float32 blob."""
    if len(vector) == 0:
        raise ValueError("Cannot store an empty embedding vector.")
    return sqlite_vec.serialize_float32([float(x) for x in vector])


def deserialize_vector(blob: bytes) -> np.ndarray:
    """Unpack a float32 blob written by serialize_vector()."""
    if not blob or len(blob) % 4:
        raise ValueError(f"Corrupt embedding blob ({len(blob or b'')} bytes).")
    return np.frombuffer(blob, dtype=np.float32)


def l2_normalize(vector: Sequence[float]) -> list[float]:
    """Return *vector* scaled to unit length.

    Raises:
        ValueError: If the vector is empty, has a non-finite component,
            or has zero length.
    """
    arr = np.asarray(vector, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Embedding vector is empty.")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Embedding vector contains non-finite values.")
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not math.isfinite(norm):
        raise ValueError("Embedding vector has zero length.")
    return (arr / norm).tolist()


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two unit vectors.

    Raises:
        ValueError: On a length mismatch. Vectors from different providers
            must never be compared.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions don't match: {len(a)} vs {len(b)}")
    return float(np.dot(np.asarray(a, dtype=np.float32), np.asarray(b, dtype=np.float32)))
