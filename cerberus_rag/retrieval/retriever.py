"""
Hybrid Retriever
-----------------
Runs one lexical and one vector query against the SimilarityIndex and
fuses the two ranked lists into a single deduplicated candidate list.

Fusion rule (keyed by Passage.id):
  lexical only : lexical_score * boost_factor
  vector only  : vector_score
  both         : (lexical_score * boost_factor + vector_score) / 2

Output order: score descending, ties broken by passage id ascending.
No score floor is applied here. The pipeline filters after fusion.

The retriever holds no per-query state.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from cerberus_rag.embedding.base import SimilarityIndex
from cerberus_rag.exceptions import CollaboratorError
from cerberus_rag.retrieval.schemas import RetrievalPhase, ScoredCandidate

BOOST_FACTOR = 1.2

_LEXICAL = frozenset({RetrievalPhase.LEXICAL})
_VECTOR = frozenset({RetrievalPhase.VECTOR})
_BOTH = _LEXICAL | _VECTOR


def fuse_results(
    lexical: list[ScoredCandidate],
    vector: list[ScoredCandidate],
    boost_factor: float = BOOST_FACTOR,
) -> list[ScoredCandidate]:
    """Merge lexical and vector results into one list (see module docstring)."""
    by_lexical = _best_by_id(lexical)
    by_vector = _best_by_id(vector)

    fused: list[ScoredCandidate] = []
    for pid in by_lexical.keys() | by_vector.keys():
        lex = by_lexical.get(pid)
        vec = by_vector.get(pid)
        if lex is not None and vec is not None:
            fused.append(vec.rescored((lex.score * boost_factor + vec.score) / 2, _BOTH))
        elif lex is not None:
            fused.append(lex.rescored(lex.score * boost_factor, _LEXICAL))
        else:
            fused.append(vec.rescored(vec.score, _VECTOR))

    return sorted(fused, key=lambda c: (-c.score, c.id))


def _best_by_id(candidates: list[ScoredCandidate]) -> dict[str, ScoredCandidate]:
    # A single phase should not repeat ids; keep the best if it does
    best: dict[str, ScoredCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.id)
        if current is None or candidate.score > current.score:
            best[candidate.id] = candidate
    return best


class HybridRetriever:
    """
    Lexical + vector search over a SimilarityIndex, fused into one ranking.

    By default both searches run on a two-worker thread pool and are
    joined before fusion.
    """

    def __init__(
        self,
        index: SimilarityIndex,
        lexical_top_k: int = 10,
        vector_top_k: int = 20,
        boost_factor: float = BOOST_FACTOR,
        parallel: bool = True,
    ) -> None:
        self.index = index
        self.lexical_top_k = lexical_top_k
        self.vector_top_k = vector_top_k
        self.boost_factor = boost_factor
        self.parallel = parallel

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        query_vector: np.ndarray,
        lexical_top_k: Optional[int] = None,
        vector_top_k: Optional[int] = None,
    ) -> list[ScoredCandidate]:
        """
        Args:
            query:         Raw user query string (lexical path).
            query_vector:  Query embedding (vector path).
            lexical_top_k: Override for the lexical result count.
            vector_top_k:  Override for the vector result count.

        Returns:
            Fused candidates sorted by score descending, id ascending.

        Raises:
            CollaboratorError: either index search failed.
        """
        lexical_k = self.lexical_top_k if lexical_top_k is None else lexical_top_k
        vector_k = self.vector_top_k if vector_top_k is None else vector_top_k
        logger.debug(f"[Retriever] Query: {query[:80]!r}")

        if self.parallel:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="hybrid-search") as pool:
                lexical_future = pool.submit(self.lexical_search, query, lexical_k)
                vector_future = pool.submit(self.vector_search, query_vector, vector_k)
                lexical = lexical_future.result()
                vector = vector_future.result()
        else:
            lexical = self.lexical_search(query, lexical_k)
            vector = self.vector_search(query_vector, vector_k)

        results = fuse_results(lexical, vector, self.boost_factor)

        logger.info(
            f"[Retriever] lexical={len(lexical)} vector={len(vector)} -> "
            f"{len(results)} fused candidates"
            + (f" (top score: {results[0].score:.4f})" if results else "")
        )
        return results

    # --- Index access -----------------------------------------------------------

    def lexical_search(self, query: str, top_k: int) -> list[ScoredCandidate]:
        try:
            return self.index.lexical_search(query, top_k)
        except CollaboratorError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"Lexical search failed: {exc}") from exc

    def vector_search(
        self, query_vector: np.ndarray, top_k: int, min_score: float = 0.0
    ) -> list[ScoredCandidate]:
        """Vector search with no floor unless one is given."""
        try:
            return self.index.vector_search(query_vector, top_k, min_score)
        except CollaboratorError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"Vector search failed: {exc}") from exc
