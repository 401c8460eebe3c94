"""
In-memory Similarity Index
---------------------------
Small-scale SimilarityIndex adapter for local development and tests:
numpy cosine similarity for the vector path and plain substring matching
for the lexical path.  Persisted as a single JSON file.

Lexical score for a passage containing the (lower-cased) query:
    occurrences * (1 - first_position / len(text)), capped at 1.0
so more occurrences, and earlier ones, score higher.
"""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Sequence

import numpy as np
from loguru import logger

from cerberus_rag.chunking.schemas import Passage
from cerberus_rag.embedding.base import check_upsert_args, normalise_rows
from cerberus_rag.retrieval.schemas import RetrievalPhase, ScoredCandidate
from cerberus_rag.utils.helpers import load_json, save_json

_LEXICAL = frozenset({RetrievalPhase.LEXICAL})
_VECTOR = frozenset({RetrievalPhase.VECTOR})


def substring_score(text: str, query: str) -> float:
    haystack = text.lower()
    needle = query.lower().strip()
    if not needle or not haystack:
        return 0.0
    position = haystack.find(needle)
    if position < 0:
        return 0.0
    occurrences = haystack.count(needle)
    return min(1.0, occurrences * (1 - position / len(haystack)))


class InMemoryIndex:
    """Dict of passages plus a parallel dict of unit vectors."""

    def __init__(self, index_dir: str | Path = "data/index/tickets") -> None:
        self.index_dir = Path(index_dir)
        self.passages: dict[str, Passage] = {}
        self.vectors: dict[str, np.ndarray] = {}

    @property
    def path(self) -> Path:
        return self.index_dir / "memory_index.json"

    def upsert(self, passages: Sequence[Passage], vectors: np.ndarray) -> None:
        if not passages:
            return
        matrix = normalise_rows(check_upsert_args(passages, vectors))
        for passage, vector in zip(passages, matrix):
            self.passages[passage.id] = passage
            self.vectors[passage.id] = vector

    def lexical_search(self, query: str, top_k: int = 10) -> list[ScoredCandidate]:
        matches = []
        for passage in self.passages.values():
            score = substring_score(passage.text, query)
            if score > 0:
                matches.append(ScoredCandidate(passage=passage, score=score, phases=_LEXICAL))
        matches.sort(key=lambda c: (-c.score, c.id))
        return matches[:top_k]

    def vector_search(
        self, query_vector: np.ndarray, top_k: int = 20, min_score: float = 0.5
    ) -> list[ScoredCandidate]:
        if not self.passages:
            return []
        ids = list(self.vectors.keys())
        matrix = np.stack([self.vectors[pid] for pid in ids])
        query = normalise_rows(query_vector)[0]
        if query.shape[0] != matrix.shape[1]:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match index dimension {matrix.shape[1]}"
            )
        similarities = np.clip(matrix @ query, 0.0, 1.0)

        results = [
            ScoredCandidate(passage=self.passages[pid], score=float(score), phases=_VECTOR)
            for pid, score in zip(ids, similarities)
            if score >= min_score
        ]
        results.sort(key=lambda c: (-c.score, c.id))
        return results[:top_k]

    def count(self) -> int:
        return len(self.passages)

    def get_passages(self, source_id: str) -> list[Passage]:
        return [p for p in self.passages.values() if p.source_id == source_id]

    def save(self) -> None:
        save_json(
            [
                {"passage": self.passages[pid].model_dump(mode="json"), "vector": self.vectors[pid]}
                for pid in self.passages
            ],
            self.path,
        )
        logger.info(f"[InMemoryIndex] {self.count()} passages saved -> {self.path}")

    @classmethod
    def load(cls, index_dir: str | Path = "data/index/tickets") -> "InMemoryIndex":
        instance = cls(index_dir=index_dir)
        if not instance.path.exists():
            logger.info(f"[InMemoryIndex] No index at {instance.path}; starting empty")
            return instance
        for record in load_json(instance.path):
            passage = Passage(**record["passage"])
            instance.passages[passage.id] = passage
            instance.vectors[passage.id] = np.asarray(record["vector"], dtype=np.float32)
        logger.info(f"[InMemoryIndex] Loaded {instance.count()} passages")
        return instance

    def delete_collection(self) -> None:
        if self.index_dir.exists():
            shutil.rmtree(self.index_dir)
        self.passages = {}
        self.vectors = {}
