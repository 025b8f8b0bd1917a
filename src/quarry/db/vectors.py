"""Embedding encoding helpers for sqlite-vec.

Embeddings live in a plain BLOB column (float32, sqlite-vec layout) next to
the chunk text, so similarity search is an ordinary SELECT that can join and
filter on ownership. Similarity is ``1 - vec_distance_cosine(a, b)``.
"""

from __future__ import annotations

import struct

import sqlite_vec

SIMILARITY_SQL = "1 - vec_distance_cosine(c.embedding, ?)"


def encode(embedding: list[float]) -> bytes:
    """Serialize *embedding* to the compact float32 blob sqlite-vec reads."""
    if not embedding:
        raise ValueError("embedding must not be empty")
    return sqlite_vec.serialize_float32(embedding)


def decode(blob: bytes) -> list[float]:
    """Inverse of :func:`encode`."""
    count = len(blob) // 4
    return list(struct.unpack(f"{count}f", blob))
