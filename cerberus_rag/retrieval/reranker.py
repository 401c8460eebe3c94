"""
Relevance Reranker
-------------------
Re-scores fused candidates against the query with an external relevance
scorer, then selects the final top-k.

Scoring (OpenAIRelevanceScorer) uses a single chat call for all candidates
(listwise): each passage gets a 0-10 score, normalised to [0, 1].
`batch_size=1` gives the per-candidate mode.

If scoring fails for any reason the reranker gives every candidate the
neutral score 0.5 and logs a warning. The query still returns results
in fused order.

Selection modes:
  rerank                        relevance score only, top_k
  rerank_with_combined_scoring  original_weight * fused + rerank_weight * relevance
  rerank_with_diversity         relevance order, but an already-represented
                                ticket may only add passages while fewer than
                                top_k * same_source_fraction are accepted
  rerank_by_score               fused score only, no external call
"""
from __future__ import annotations

import json
from typing import Optional, Protocol, Sequence, runtime_checkable

from langsmith import traceable
from loguru import logger
from openai import OpenAI

from cerberus_rag.cost_tracker import CostSink, record_usage
from cerberus_rag.exceptions import ConfigurationError, RelevanceScoringError
from cerberus_rag.retrieval.schemas import RerankedResult, ScoredCandidate

RERANK_TOP_K = 5
NEUTRAL_SCORE = 0.5
SAME_SOURCE_FRACTION = 0.5

_RERANK_SYSTEM = (
    "You are a relevance scoring engine for a support-ticket search system. "
    "Your only job is to output valid JSON -- no prose, no markdown fences."
)

_RERANK_USER = """\
Given the user query and a list of text chunks from support tickets, score each
chunk for its relevance to answering the query on a scale of 0 to 10.

Rubric:
  9-10: Directly answers the query (same problem, same fix)
  6-8 : Relevant, contains useful partial information
  3-5 : Tangentially related
  0-2 : Irrelevant or off-topic

Query: {query}

Chunks:
{chunks_block}

Return ONLY a JSON object with a "scores" key containing one entry per chunk, in order:
{{"scores": [{{"index": 1, "score": <0-10>}}, {{"index": 2, "score": <0-10>}}, ...]}}
"""


@runtime_checkable
class RelevanceScorer(Protocol):
    def score(
        self, query: str, texts: Sequence[str], cost_sink: Optional[CostSink] = None
    ) -> list[float]:
        """One relevance score in [0, 1] per text; raises on failure."""
        ...


class OpenAIRelevanceScorer:
    """
    Listwise LLM scorer.

    Args:
        client:     OpenAI client (created from the environment when omitted).
        model:      Chat model used for scoring.
        batch_size: Texts per call; None sends every text in one call.
        max_chars:  Per-passage truncation inside the prompt.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = "gpt-4o-mini",
        batch_size: Optional[int] = None,
        max_chars: int = 800,
    ) -> None:
        self.model = model
        self.batch_size = batch_size
        self.max_chars = max_chars
        self._client = client if client is not None else OpenAI()

    def score(
        self, query: str, texts: Sequence[str], cost_sink: Optional[CostSink] = None
    ) -> list[float]:
        if not texts:
            return []
        size = self.batch_size or len(texts)
        scores: list[float] = []
        for i in range(0, len(texts), size):
            scores.extend(self._score_batch(query, list(texts[i: i + size]), cost_sink))
        return scores

    def _score_batch(
        self, query: str, texts: list[str], cost_sink: Optional[CostSink]
    ) -> list[float]:
        chunks_block = "\n\n".join(
            f"[{i}] {text[: self.max_chars]}" for i, text in enumerate(texts, start=1)
        )
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _RERANK_SYSTEM},
                    {
                        "role": "user",
                        "content": _RERANK_USER.format(query=query, chunks_block=chunks_block),
                    },
                ],
                max_tokens=32 + 16 * len(texts),
                temperature=0,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise RelevanceScoringError(f"Relevance scoring call failed: {exc}") from exc

        record_usage(cost_sink, response.usage)
        raw = response.choices[0].message.content or ""
        return _parse_scores(raw, len(texts))


def _parse_scores(raw: str, expected: int) -> list[float]:
    """Parse {"scores": [...]} (or a bare array) into `expected` scores in [0, 1]."""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RelevanceScoringError(f"Scorer returned invalid JSON: {raw[:80]!r}") from exc

    # Unwrap {"scores": [...]} envelope
    if isinstance(parsed, dict):
        for key in ("scores", "results", "chunks"):
            if isinstance(parsed.get(key), list):
                parsed = parsed[key]
                break
    if not isinstance(parsed, list):
        raise RelevanceScoringError(f"Unexpected JSON shape: {type(parsed).__name__}")

    try:
        if all(isinstance(item, dict) for item in parsed):
            by_index = {int(item["index"]): float(item["score"]) for item in parsed}
            values = [by_index.get(i, 0.0) for i in range(1, expected + 1)]
        else:
            values = [float(item) for item in parsed]
    except (KeyError, TypeError, ValueError) as exc:
        raise RelevanceScoringError(f"Malformed score entries: {exc}") from exc

    if len(values) != expected:
        raise RelevanceScoringError(f"Expected {expected} scores, got {len(values)}")
    return [min(1.0, max(0.0, v / 10)) for v in values]


class RelevanceReranker:
    """Reranks per-query candidates; holds configuration only, no per-query state."""

    def __init__(
        self,
        scorer: RelevanceScorer,
        top_k: int = RERANK_TOP_K,
        original_weight: float = 0.3,
        rerank_weight: float = 0.7,
        same_source_fraction: float = SAME_SOURCE_FRACTION,
        neutral_score: float = NEUTRAL_SCORE,
    ) -> None:
        _check_weights(original_weight, rerank_weight)
        if not 0 < same_source_fraction <= 1:
            raise ConfigurationError(
                f"same_source_fraction must be in (0, 1], got {same_source_fraction}"
            )
        self.scorer = scorer
        self.top_k = top_k
        self.original_weight = original_weight
        self.rerank_weight = rerank_weight
        self.same_source_fraction = same_source_fraction
        self.neutral_score = neutral_score

    # --- Scoring --------------------------------------------------------------

    def _relevance_scores(
        self,
        query: str,
        candidates: Sequence[ScoredCandidate],
        cost_sink: Optional[CostSink],
    ) -> list[float]:
        try:
            scores = self.scorer.score(query, [c.text for c in candidates], cost_sink)
            if len(scores) != len(candidates):
                raise RelevanceScoringError(
                    f"Expected {len(candidates)} scores, got {len(scores)}"
                )
            return [float(s) for s in scores]
        except Exception as exc:
            logger.warning(
                f"[Reranker] Scoring failed, using neutral score {self.neutral_score} "
                f"for {len(candidates)} candidates: {exc}"
            )
            return [self.neutral_score] * len(candidates)

    @staticmethod
    def _ranked(
        candidates: Sequence[ScoredCandidate], scores: Sequence[float]
    ) -> list[RerankedResult]:
        results = [
            RerankedResult(
                passage=candidate.passage,
                score=score,
                original_rank=rank,
                phases=candidate.phases,
            )
            for rank, (candidate, score) in enumerate(zip(candidates, scores))
        ]
        # Stable: equal scores keep their fused order
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    # --- Modes ----------------------------------------------------------------

    @traceable(name="rerank", run_type="chain")
    def rerank(
        self,
        query: str,
        candidates: Sequence[ScoredCandidate],
        cost_sink: Optional[CostSink] = None,
        top_k: Optional[int] = None,
    ) -> list[RerankedResult]:
        """
        Score every candidate for relevance and keep the best top_k.

        Args:
            query:      The user's question.
            candidates: Fused candidates from the retriever.
            cost_sink:  Receives scorer token usage.
            top_k:      Results to keep (defaults to self.top_k).

        Returns:
            RerankedResults sorted by relevance descending; original_rank is
            the candidate's index in `candidates`.
        """
        if not candidates:
            return []

        logger.debug(f"[Reranker] Reranking {len(candidates)} candidates")
        scores = self._relevance_scores(query, candidates, cost_sink)
        top = self._ranked(candidates, scores)[: self.top_k if top_k is None else top_k]
        logger.info(f"[Reranker] {len(candidates)} -> {len(top)} results")
        return top

    def rerank_with_combined_scoring(
        self,
        query: str,
        candidates: Sequence[ScoredCandidate],
        cost_sink: Optional[CostSink] = None,
        top_k: Optional[int] = None,
        original_weight: Optional[float] = None,
        rerank_weight: Optional[float] = None,
    ) -> list[RerankedResult]:
        """Blend the fused score with the relevance score instead of discarding it."""
        if not candidates:
            return []

        ow = self.original_weight if original_weight is None else original_weight
        rw = self.rerank_weight if rerank_weight is None else rerank_weight
        _check_weights(ow, rw)

        relevance = self._relevance_scores(query, candidates, cost_sink)
        combined = [ow * c.score + rw * r for c, r in zip(candidates, relevance)]
        top = self._ranked(candidates, combined)[: self.top_k if top_k is None else top_k]
        logger.info(
            f"[Reranker] combined ({ow}/{rw}) {len(candidates)} -> {len(top)} results"
        )
        return top

    def rerank_with_diversity(
        self,
        query: str,
        candidates: Sequence[ScoredCandidate],
        cost_sink: Optional[CostSink] = None,
        top_k: Optional[int] = None,
        diversity_threshold: float = 0.8,
    ) -> list[RerankedResult]:
        """
        Relevance rerank that stops one ticket from monopolising the context.

        A passage from a ticket that is already represented is accepted only
        while fewer than top_k * same_source_fraction passages have been
        accepted; passages from new tickets are always accepted.  With the
        default fraction no ticket contributes more than ceil(top_k / 2).

        `diversity_threshold` is accepted for interface compatibility; the
        cap above is the only diversity rule applied.
        """
        k = self.top_k if top_k is None else top_k
        if not candidates or k <= 0:
            return []

        ranked = self.rerank(query, candidates, cost_sink, top_k=len(candidates))
        repeat_budget = k * self.same_source_fraction

        diverse: list[RerankedResult] = []
        seen_sources: set[str] = set()
        for result in ranked:
            if result.source_id in seen_sources:
                if len(diverse) < repeat_budget:
                    diverse.append(result)
            else:
                diverse.append(result)
                seen_sources.add(result.source_id)

            if len(diverse) >= k:
                break

        logger.info(
            f"[Reranker] Diversity filter: {len(diverse)} results "
            f"from {len(seen_sources)} tickets"
        )
        return diverse

    def rerank_by_score(
        self, candidates: Sequence[ScoredCandidate], top_k: Optional[int] = None
    ) -> list[RerankedResult]:
        """Sort by fused score and truncate; original_rank is the post-sort position."""
        k = self.top_k if top_k is None else top_k
        ordered = sorted(candidates, key=lambda c: (-c.score, c.id))[:k]
        return [
            RerankedResult(
                passage=c.passage, score=c.score, original_rank=rank, phases=c.phases
            )
            for rank, c in enumerate(ordered)
        ]


def _check_weights(original_weight: float, rerank_weight: float) -> None:
    if original_weight + rerank_weight <= 0:
        raise ConfigurationError(
            f"Rerank weights must sum to a positive value "
            f"(got {original_weight} + {rerank_weight})"
        )
