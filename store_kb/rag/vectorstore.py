"""Vector store contract and an in-process cosine-similarity index."""

import threading
from typing import Any, Protocol, runtime_checkable

import numpy as np


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, list):
        return actual in expected
    return actual == expected


@runtime_checkable
class VectorStore(Protocol):
    """Protocol for vector similarity stores.

    ``filter`` is matched against the metadata given to :meth:`upsert`. A
    list value matches any of its elements (e.g. ``{"language": ["en", None]}``);
    keys the pipeline does not know about (e.g. a tenant scope) are passed
    through unchanged.
    """

    def upsert(self, chunk_id: str, vector: list[float], metadata: dict[str, Any]) -> None: ...

    def search(
        self, vector: list[float], k: int, filter: dict[str, Any] | None = None
    ) -> list[tuple[str, float]]: ...

    def delete(self, chunk_ids: list[str]) -> None: ...


class InMemoryVectorIndex:
    """Exact cosine-similarity search over vectors held in memory."""

    def __init__(self):
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def upsert(self, chunk_id: str, vector: list[float], metadata: dict[str, Any]):
        array = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(array))
        if norm > 0:
            array = array / norm
        with self._lock:
            self._vectors[chunk_id] = array
            self._metadata[chunk_id] = dict(metadata)

    def delete(self, chunk_ids: list[str]):
        with self._lock:
            for chunk_id in chunk_ids:
                self._vectors.pop(chunk_id, None)
                self._metadata.pop(chunk_id, None)

    def search(self, vector: list[float], k: int, filter: dict[str, Any] | None = None) -> list[tuple[str, float]]:
        """Return up to ``k`` ``(chunk_id, cosine similarity)`` pairs, best first."""
        query = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(query))
        if norm == 0:
            return []
        query = query / norm

        with self._lock:
            ids = [
                chunk_id
                for chunk_id, metadata in self._metadata.items()
                if not filter or all(_matches(metadata.get(key), value) for key, value in filter.items())
            ]
            if not ids:
                return []
            matrix = np.stack([self._vectors[chunk_id] for chunk_id in ids])

        if matrix.shape[1] != query.shape[0]:
            raise ValueError(f"Query dimension {query.shape[0]} does not match index dimension {matrix.shape[1]}")

        scores = matrix @ query
        order = np.argsort(-scores)[:k]
        return [(ids[i], float(scores[i])) for i in order]
