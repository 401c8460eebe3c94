"""
Ticket RAG Serving Pipeline
----------------------------
Orchestrates the query lifecycle:

    user query
        |
        v
    Embedder (query vector)
        |
        v
    HybridRetriever (lexical + vector -> fused, deduplicated)
        |
        v
    min_similarity_score cutoff (after fusion)
        |
        v
    RelevanceReranker (diversity-aware top_k by default)
        |
        v
    AnswerCandidates  ->  ChatSession / generator

Collaborators are passed in explicitly; build_pipeline() is the one place
that wires them from Settings.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

from langsmith import traceable
from loguru import logger

from cerberus_rag.config import RerankConfig, RetrievalConfig, Settings
from cerberus_rag.cost_tracker import CostSink, CostTracker
from cerberus_rag.embedding.base import SimilarityIndex
from cerberus_rag.embedding.embedder import Embedder
from cerberus_rag.exceptions import CollaboratorError
from cerberus_rag.generation.generator import RAGResponse
from cerberus_rag.generation.memory import ConversationMemory
from cerberus_rag.generation.prompts import NO_CONTEXT_RESPONSE
from cerberus_rag.retrieval.reranker import RelevanceReranker
from cerberus_rag.retrieval.retriever import HybridRetriever
from cerberus_rag.retrieval.schemas import AnswerCandidate, RerankedResult, ScoredCandidate


# ---------------------------------------------------------------------------
# Retrieval facade
# ---------------------------------------------------------------------------

class RetrievalPipeline:
    """
    Query text -> ranked, deduplicated, diverse answer candidates.

    Usage:
        pipeline = build_pipeline(load_settings())
        candidates = pipeline.answer_candidates("How do I reset a locked login?")
        if not candidates:
            ...  # "no relevant information" is a normal outcome, not an error
    """

    def __init__(
        self,
        index: SimilarityIndex,
        embedder: Embedder,
        reranker: RelevanceReranker,
        retrieval: Optional[RetrievalConfig] = None,
        rerank_mode: str = "diversity",
    ) -> None:
        self.retrieval_config = retrieval or RetrievalConfig()
        self.index = index
        self.embedder = embedder
        self.reranker = reranker
        self.rerank_mode = rerank_mode
        self.retriever = HybridRetriever(
            index=index,
            lexical_top_k=self.retrieval_config.keyword_top_k,
            vector_top_k=self.retrieval_config.semantic_top_k,
            boost_factor=self.retrieval_config.boost_factor,
            parallel=self.retrieval_config.parallel_search,
        )

    @property
    def min_similarity_score(self) -> float:
        return self.retrieval_config.min_similarity_score

    # --- Retrieval ------------------------------------------------------------

    def retrieve(self, query: str, cost_sink: Optional[CostSink] = None) -> list[ScoredCandidate]:
        """Hybrid retrieval followed by the minimum-score cutoff."""
        query_vector = self.embedder.embed(query, cost_sink)
        results = self.retriever.retrieve(query, query_vector)
        filtered = [c for c in results if c.score >= self.min_similarity_score]
        logger.info(
            f"[Pipeline] {len(filtered)}/{len(results)} candidates at or above "
            f"min score {self.min_similarity_score}"
        )
        return filtered

    def retrieve_semantic(
        self, query: str, cost_sink: Optional[CostSink] = None, top_k: Optional[int] = None
    ) -> list[ScoredCandidate]:
        """Vector search only; the index applies the score floor."""
        query_vector = self.embedder.embed(query, cost_sink)
        k = self.retrieval_config.semantic_top_k if top_k is None else top_k
        return self.retriever.vector_search(query_vector, k, self.min_similarity_score)

    def retrieve_keyword(self, query: str, top_k: Optional[int] = None) -> list[ScoredCandidate]:
        """Lexical search only (no embedding call)."""
        k = self.retrieval_config.keyword_top_k if top_k is None else top_k
        return self.retriever.lexical_search(query, k)

    def retrieve_with_filter(
        self,
        query: str,
        cost_sink: Optional[CostSink] = None,
        group_id: Optional[int] = None,
        bucket_id: Optional[int] = None,
        ticket_mask: Optional[str] = None,
    ) -> list[ScoredCandidate]:
        """retrieve() restricted to passages whose ticket attributes match."""
        candidates = self.retrieve(query, cost_sink)

        def matches(candidate: ScoredCandidate) -> bool:
            attrs = candidate.passage.attributes
            if group_id is not None and attrs.get("group_id") != group_id:
                return False
            if bucket_id is not None and attrs.get("bucket_id") != bucket_id:
                return False
            if ticket_mask and ticket_mask not in (attrs.get("ticket_mask") or ""):
                return False
            return True

        return [c for c in candidates if matches(c)]

    def find_similar_tickets(
        self, ticket_uid: str, cost_sink: Optional[CostSink] = None, top_k: int = 5
    ) -> list[ScoredCandidate]:
        """
        Tickets that read like `ticket_uid`: one best passage per ticket.

        The ticket's own first passages form the query; results from the
        same ticket are dropped and the rest grouped by ticket.
        """
        try:
            own = self.index.get_passages(ticket_uid)
        except Exception as exc:
            raise CollaboratorError(f"Passage lookup failed: {exc}") from exc
        if not own:
            logger.warning(f"[Pipeline] Ticket {ticket_uid} has no indexed passages")
            return []

        query_text = " ".join(p.text for p in own[:3])
        query_vector = self.embedder.embed(query_text, cost_sink)
        results = self.retriever.vector_search(query_vector, top_k * 3, self.min_similarity_score)

        best_per_ticket: dict[str, ScoredCandidate] = {}
        for candidate in results:
            if candidate.source_id == ticket_uid:
                continue
            current = best_per_ticket.get(candidate.source_id)
            if current is None or candidate.score > current.score:
                best_per_ticket[candidate.source_id] = candidate

        ranked = sorted(best_per_ticket.values(), key=lambda c: (-c.score, c.source_id))
        return ranked[:top_k]

    # --- Reranking ------------------------------------------------------------

    def rerank(
        self,
        query: str,
        candidates: list[ScoredCandidate],
        cost_sink: Optional[CostSink] = None,
    ) -> list[RerankedResult]:
        mode = self.rerank_mode
        if mode == "diversity":
            return self.reranker.rerank_with_diversity(query, candidates, cost_sink)
        if mode == "combined":
            return self.reranker.rerank_with_combined_scoring(query, candidates, cost_sink)
        if mode == "relevance":
            return self.reranker.rerank(query, candidates, cost_sink)
        return self.reranker.rerank_by_score(candidates)

    # --- Public surface -------------------------------------------------------

    @traceable(name="answer_candidates", run_type="chain")
    def answer_candidates(
        self, query: str, cost_sink: Optional[CostSink] = None
    ) -> list[AnswerCandidate]:
        """
        Run retrieve -> cutoff -> rerank for one query.

        Returns:
            Ordered AnswerCandidates; an empty list means no passage was
            relevant enough.

        Raises:
            CollaboratorError: embedding or index failure (not retried here).
        """
        logger.info(f"[Pipeline] Query: {query[:100]!r}")

        t0 = time.perf_counter()
        candidates = self.retrieve(query, cost_sink)
        retrieval_ms = (time.perf_counter() - t0) * 1000

        if not candidates:
            logger.info(f"[Pipeline] No relevant passages | retrieve={retrieval_ms:.0f}ms")
            return []

        t1 = time.perf_counter()
        reranked = self.rerank(query, candidates, cost_sink)
        rerank_ms = (time.perf_counter() - t1) * 1000

        logger.info(
            f"[Pipeline] Complete | {len(reranked)} passages | "
            f"retrieve={retrieval_ms:.0f}ms rerank={rerank_ms:.0f}ms | mode={self.rerank_mode}"
        )
        return [AnswerCandidate.from_result(r) for r in reranked]


# ---------------------------------------------------------------------------
# Chat on top of the facade
# ---------------------------------------------------------------------------

@dataclass
class ChatResponse:
    answer: str
    sources: list[AnswerCandidate] = field(default_factory=list)
    tokens_used: int = 0

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "tokens_used": self.tokens_used,
        }


class ChatSession:
    """
    Multi-turn Q&A: retrieval per question, bounded history across questions.

    A question with no relevant passages returns NO_CONTEXT_RESPONSE and
    leaves the history untouched.
    """

    def __init__(
        self,
        pipeline: RetrievalPipeline,
        generator,
        cost: Optional[CostTracker] = None,
        memory: Optional[ConversationMemory] = None,
    ) -> None:
        self.pipeline = pipeline
        self.generator = generator
        self.cost = cost if cost is not None else CostTracker()
        self.memory = memory if memory is not None else ConversationMemory()

    def ask(self, query: str) -> ChatResponse:
        start_tokens = self.cost.token_count

        candidates = self.pipeline.answer_candidates(query, self.cost)
        if not candidates:
            return ChatResponse(
                answer=NO_CONTEXT_RESPONSE,
                sources=[],
                tokens_used=self.cost.token_count - start_tokens,
            )

        response: RAGResponse = self.generator.generate(
            query, candidates, self.memory.history(), self.cost
        )
        self.memory.add_exchange(response.prompt, response.answer)

        return ChatResponse(
            answer=response.answer,
            sources=candidates,
            tokens_used=self.cost.token_count - start_tokens,
        )

    def reset(self) -> None:
        self.memory.reset()
        self.cost.reset()

    def stats(self) -> dict:
        return {
            "tokens_used": self.cost.token_count,
            "messages_in_history": len(self.memory),
            "collection_size": self.pipeline.index.count(),
        }


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_reranker(config: RerankConfig, scorer) -> RelevanceReranker:
    return RelevanceReranker(
        scorer=scorer,
        top_k=config.top_k,
        original_weight=config.original_weight,
        rerank_weight=config.rerank_weight,
        same_source_fraction=config.same_source_fraction,
        neutral_score=config.neutral_score,
    )


def build_pipeline(settings: Settings, openai_client=None, index: Optional[SimilarityIndex] = None) -> RetrievalPipeline:
    """Construct every collaborator from Settings and return the facade."""
    from openai import OpenAI

    from cerberus_rag.embedding.factory import create_index
    from cerberus_rag.retrieval.reranker import OpenAIRelevanceScorer

    client = openai_client if openai_client is not None else OpenAI(api_key=settings.openai.api_key)
    index = index if index is not None else create_index(settings.storage)

    embedder = Embedder(client=client, model=settings.openai.embedding_model)
    scorer = OpenAIRelevanceScorer(
        client=client,
        model=settings.openai.rerank_model,
        batch_size=settings.rerank.batch_size,
    )
    pipeline = RetrievalPipeline(
        index=index,
        embedder=embedder,
        reranker=build_reranker(settings.rerank, scorer),
        retrieval=settings.retrieval,
        rerank_mode=settings.rerank.mode,
    )
    logger.info(
        f"[Pipeline] Ready | {index.count():,} passages | "
        f"store={settings.storage.vector_store_type} | rerank={settings.rerank.mode}"
    )
    return pipeline
