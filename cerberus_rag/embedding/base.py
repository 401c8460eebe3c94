"""
Similarity index contract.

The retrieval pipeline only consumes this capability; concrete engines
(FAISS + BM25, in-memory numpy) are adapters chosen by configuration in
cerberus_rag.embedding.factory.
"""
from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

import numpy as np

from cerberus_rag.chunking.schemas import Passage
from cerberus_rag.retrieval.schemas import ScoredCandidate


@runtime_checkable
class SimilarityIndex(Protocol):

    def lexical_search(self, query: str, top_k: int = 10) -> list[ScoredCandidate]:
        """Keyword relevance in [0, 1], monotonic in match frequency, at most top_k."""
        ...

    def vector_search(
        self, query_vector: np.ndarray, top_k: int = 20, min_score: float = 0.5
    ) -> list[ScoredCandidate]:
        """Cosine similarity >= min_score, at most top_k, descending."""
        ...

    def count(self) -> int:
        ...

    def upsert(self, passages: Sequence[Passage], vectors: np.ndarray) -> None:
        """Insert or replace, keyed by Passage.id."""
        ...

    def get_passages(self, source_id: str) -> list[Passage]:
        ...

    def save(self) -> None:
        ...

    def delete_collection(self) -> None:
        ...


def normalise_rows(vectors: np.ndarray) -> np.ndarray:
    """L2-normalise so cosine similarity == inner product."""
    matrix = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


def check_upsert_args(passages: Sequence[Passage], vectors: np.ndarray) -> np.ndarray:
    matrix = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    if len(passages) != matrix.shape[0]:
        raise ValueError(
            f"Mismatch: {len(passages)} passages vs {matrix.shape[0]} vectors"
        )
    return matrix
