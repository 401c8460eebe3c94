"""
FAISS + BM25 Similarity Index
------------------------------
Default SimilarityIndex adapter.

The index stores:
  - A FAISS IndexIDMap2(IndexFlatIP) for vector search (inner product ==
    cosine similarity after L2 normalisation).  Row ids are a stable 63-bit
    hash of Passage.id so upserts can replace rows in place.
  - The Passage objects keyed by that row id
  - A BM25+ keyword index (rank_bm25) for the lexical path.  Tokens are
    cached per row id; the BM25 model is rebuilt lazily on the first
    lexical search after an upsert

Persistence (inside index_dir):
  - faiss.index       FAISS index
  - passages.json     passage records with their row ids
  - index_manifest.json
"""
from __future__ import annotations

import hashlib
import re
import shutil
from pathlib import Path
from typing import Optional, Sequence

import faiss
import numpy as np
from loguru import logger
from rank_bm25 import BM25Plus

from cerberus_rag.chunking.schemas import Passage
from cerberus_rag.embedding.base import check_upsert_args, normalise_rows
from cerberus_rag.retrieval.schemas import RetrievalPhase, ScoredCandidate
from cerberus_rag.utils.helpers import ensure_dirs, load_json, save_json

INDEX_DIR = Path("data/index/tickets")

_LEXICAL = frozenset({RetrievalPhase.LEXICAL})
_VECTOR = frozenset({RetrievalPhase.VECTOR})


def _bm25_tokens(text: str) -> list[str]:
    """Normalise text for BM25: lowercase, strip punctuation, split on whitespace.

    Stripping non-alphanumerics first makes "login's" and "login:" both
    tokenise to "login" so keyword queries match ticket prose.
    """
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def _passage_tokens(passage: Passage) -> list[str]:
    # Title included so masks and subjects are always searchable
    return _bm25_tokens(f"{passage.title} {passage.text}")


def _row_id(passage_id: str) -> int:
    digest = hashlib.blake2b(passage_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


class FAISSIndex:
    """
    Dual index: FAISS (dense) + BM25 (sparse).

    Usage:
        index = FAISSIndex.load(Path("data/index/tickets"))
        index.upsert(passages, embeddings)
        index.save()
    """

    def __init__(self, index_dir: str | Path = INDEX_DIR, dimensions: Optional[int] = None) -> None:
        self.index_dir = Path(index_dir)
        self.dimensions = dimensions
        self.faiss_index: Optional[faiss.IndexIDMap2] = None
        if dimensions is not None:
            self.faiss_index = self._new_faiss_index(dimensions)
        self.passages: dict[int, Passage] = {}
        self.bm25: Optional[BM25Plus] = None
        self._bm25_row_ids: list[int] = []
        self._tokens: dict[int, list[str]] = {}
        self._bm25_stale = False

    @staticmethod
    def _new_faiss_index(dimensions: int) -> faiss.IndexIDMap2:
        return faiss.IndexIDMap2(faiss.IndexFlatIP(dimensions))

    # --- Write ----------------------------------------------------------------

    def upsert(self, passages: Sequence[Passage], vectors: np.ndarray) -> None:
        """Insert or replace passages and their vectors, keyed by Passage.id."""
        if not passages:
            return
        matrix = normalise_rows(check_upsert_args(passages, vectors))

        if self.faiss_index is None:
            self.dimensions = matrix.shape[1]
            self.faiss_index = self._new_faiss_index(self.dimensions)
        elif matrix.shape[1] != self.dimensions:
            raise ValueError(
                f"Vector dimension {matrix.shape[1]} does not match index dimension {self.dimensions}"
            )

        # Last occurrence wins when a batch repeats an id
        latest: dict[int, int] = {}
        for row, passage in enumerate(passages):
            latest[_row_id(passage.id)] = row

        row_ids = np.array(list(latest.keys()), dtype=np.int64)
        existing = np.array([rid for rid in latest if rid in self.passages], dtype=np.int64)
        if existing.size:
            self.faiss_index.remove_ids(existing)

        rows = np.ascontiguousarray(matrix[list(latest.values())], dtype=np.float32)
        self.faiss_index.add_with_ids(rows, row_ids)
        for rid, row in latest.items():
            self.passages[rid] = passages[row]
            self._tokens[rid] = _passage_tokens(passages[row])
        self._bm25_stale = True

        logger.debug(
            f"[FAISSIndex] Upserted {len(latest)} passages "
            f"({existing.size} replaced) | total={self.count()}"
        )

    def _ensure_bm25(self) -> None:
        if not self._bm25_stale:
            return
        self._bm25_row_ids = list(self._tokens.keys())
        corpus = [self._tokens[rid] for rid in self._bm25_row_ids]
        self.bm25 = BM25Plus(corpus) if corpus else None
        self._bm25_stale = False

    # --- Search ---------------------------------------------------------------

    def lexical_search(self, query: str, top_k: int = 10) -> list[ScoredCandidate]:
        """
        BM25 keyword search.

        Scores are divided by the best score of the query so they fall in
        (0, 1]; passages without any matching term are not returned.
        """
        tokens = _bm25_tokens(query)
        self._ensure_bm25()
        if self.bm25 is None or not tokens:
            return []

        wanted = set(tokens)
        scores = self.bm25.get_scores(tokens)
        matched = [
            i
            for i in np.argsort(-scores, kind="stable")
            if not wanted.isdisjoint(self._tokens[self._bm25_row_ids[i]])
        ][:top_k]
        if not matched:
            return []

        best = float(scores[matched[0]])
        return [
            ScoredCandidate(
                passage=self.passages[self._bm25_row_ids[i]],
                score=float(scores[i]) / best,
                phases=_LEXICAL,
            )
            for i in matched
        ]

    def vector_search(
        self, query_vector: np.ndarray, top_k: int = 20, min_score: float = 0.5
    ) -> list[ScoredCandidate]:
        """Dense (cosine) search; scores are clamped to [0, 1]."""
        if self.faiss_index is None or self.faiss_index.ntotal == 0:
            return []

        qv = normalise_rows(query_vector)
        if qv.shape[1] != self.dimensions:
            raise ValueError(
                f"Query dimension {qv.shape[1]} does not match index dimension {self.dimensions}"
            )

        k = min(top_k, self.faiss_index.ntotal)
        scores, row_ids = self.faiss_index.search(qv, k)

        results: list[ScoredCandidate] = []
        for score, rid in zip(scores[0], row_ids[0]):
            if rid < 0:
                continue
            similarity = min(1.0, max(0.0, float(score)))
            if similarity < min_score:
                continue
            results.append(
                ScoredCandidate(passage=self.passages[int(rid)], score=similarity, phases=_VECTOR)
            )
        return results

    # --- Read -----------------------------------------------------------------

    def count(self) -> int:
        return len(self.passages)

    def get_passages(self, source_id: str) -> list[Passage]:
        return [p for p in self.passages.values() if p.source_id == source_id]

    # --- Persistence ----------------------------------------------------------

    def save(self) -> None:
        """Persist FAISS index + passage records to index_dir."""
        ensure_dirs(self.index_dir)
        if self.faiss_index is not None:
            faiss.write_index(self.faiss_index, str(self.index_dir / "faiss.index"))

        save_json(
            [
                {"row_id": rid, "passage": passage.model_dump(mode="json")}
                for rid, passage in self.passages.items()
            ],
            self.index_dir / "passages.json",
        )
        save_json(
            {
                "engine": "faiss",
                "dimensions": self.dimensions,
                "total_passages": self.count(),
                "total_tickets": len({p.source_id for p in self.passages.values()}),
            },
            self.index_dir / "index_manifest.json",
        )
        logger.info(f"[FAISSIndex] {self.count()} passages saved -> {self.index_dir}")

    @classmethod
    def load(cls, index_dir: str | Path = INDEX_DIR) -> "FAISSIndex":
        """Load a persisted index; an absent directory yields an empty index."""
        index_dir = Path(index_dir)
        instance = cls(index_dir=index_dir)

        faiss_path = index_dir / "faiss.index"
        passages_path = index_dir / "passages.json"
        if not faiss_path.exists() or not passages_path.exists():
            logger.info(f"[FAISSIndex] No index at {index_dir}; starting empty")
            return instance

        instance.faiss_index = faiss.read_index(str(faiss_path))
        instance.dimensions = instance.faiss_index.d
        for record in load_json(passages_path):
            rid = int(record["row_id"])
            instance.passages[rid] = Passage(**record["passage"])
            instance._tokens[rid] = _passage_tokens(instance.passages[rid])
        instance._bm25_stale = True

        logger.info(
            f"[FAISSIndex] Loaded: {instance.faiss_index.ntotal} vectors, "
            f"{instance.count()} passages"
        )
        return instance

    def delete_collection(self) -> None:
        """Drop every passage and remove the on-disk collection."""
        if self.index_dir.exists():
            shutil.rmtree(self.index_dir)
        self.faiss_index = None
        self.dimensions = None
        self.passages = {}
        self.bm25 = None
        self._bm25_row_ids = []
        self._tokens = {}
        self._bm25_stale = False
        logger.info(f"[FAISSIndex] Collection deleted: {self.index_dir}")
