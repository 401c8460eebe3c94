from __future__ import annotations

import math
from unittest.mock import MagicMock

import pytest

from cerberus_rag.cost_tracker import CostTracker
from cerberus_rag.exceptions import ConfigurationError, RelevanceScoringError
from cerberus_rag.retrieval.reranker import OpenAIRelevanceScorer, RelevanceReranker, _parse_scores
from cerberus_rag.retrieval.schemas import ScoredCandidate
from tests.fakes import FakeScorer, chat_completion, make_passage, vector


def _candidates(*specs: tuple[str, str, float]) -> list[ScoredCandidate]:
    return [vector(make_passage(pid, source_id=src), score) for pid, src, score in specs]


# --- Empty input ------------------------------------------------------------------

@pytest.mark.parametrize("method", ["rerank", "rerank_with_combined_scoring", "rerank_with_diversity"])
def test_empty_candidates_return_empty_without_scoring(method):
    scorer = FakeScorer(scores=[])
    reranker = RelevanceReranker(scorer)

    assert getattr(reranker, method)("any query", []) == []
    assert scorer.calls == 0


# --- Relevance mode ---------------------------------------------------------------

def test_rerank_orders_by_relevance_and_records_original_rank():
    candidates = _candidates(("a", "T1", 0.9), ("b", "T2", 0.8), ("c", "T3", 0.7))
    reranker = RelevanceReranker(FakeScorer(scores=[0.1, 0.9, 0.5]), top_k=5)

    results = reranker.rerank("q", candidates)

    assert [r.id for r in results] == ["b", "c", "a"]
    assert [r.original_rank for r in results] == [1, 2, 0]
    assert [r.score for r in results] == [0.9, 0.5, 0.1]


def test_rerank_truncates_to_top_k():
    candidates = _candidates(*[(f"p{i}", f"T{i}", 0.5) for i in range(8)])
    reranker = RelevanceReranker(FakeScorer(scores=[0.5] * 8), top_k=3)
    assert len(reranker.rerank("q", candidates)) == 3
    assert len(reranker.rerank("q", candidates, top_k=6)) == 6


@pytest.mark.parametrize(
    "method", ["rerank", "rerank_with_combined_scoring", "rerank_with_diversity", "rerank_by_score"]
)
def test_explicit_zero_top_k_returns_nothing(method):
    candidates = _candidates(("a", "T1", 0.9), ("b", "T2", 0.8), ("c", "T3", 0.7))
    reranker = RelevanceReranker(FakeScorer(scores=[0.5, 0.5, 0.5]), top_k=5)

    if method == "rerank_by_score":
        assert reranker.rerank_by_score(candidates, top_k=0) == []
    else:
        assert getattr(reranker, method)("q", candidates, top_k=0) == []


def test_scorer_failure_falls_back_to_neutral_scores(log_messages):
    candidates = _candidates(("a", "T1", 0.9), ("b", "T2", 0.8), ("c", "T3", 0.7))
    reranker = RelevanceReranker(FakeScorer(error=RuntimeError("rate limited")))

    results = reranker.rerank("q", candidates)

    assert [r.score for r in results] == [0.5, 0.5, 0.5]
    # stable sort keeps the fused order
    assert [r.id for r in results] == ["a", "b", "c"]
    assert any(m.startswith("WARNING") and "rate limited" in m for m in log_messages)


def test_wrong_number_of_scores_falls_back_to_neutral():
    candidates = _candidates(("a", "T1", 0.9), ("b", "T2", 0.8))
    results = RelevanceReranker(FakeScorer(scores=[0.9])).rerank("q", candidates)
    assert [r.score for r in results] == [0.5, 0.5]


def test_neutral_score_is_configurable():
    candidates = _candidates(("a", "T1", 0.9))
    reranker = RelevanceReranker(FakeScorer(error=ValueError("bad json")), neutral_score=0.25)
    assert reranker.rerank("q", candidates)[0].score == 0.25


# --- Combined mode ----------------------------------------------------------------

def test_combined_scoring_blends_fused_and_relevance_scores():
    candidates = _candidates(("a", "T1", 0.9), ("b", "T2", 0.2))
    reranker = RelevanceReranker(FakeScorer(scores=[0.1, 0.9]))

    results = reranker.rerank_with_combined_scoring("q", candidates)

    assert [r.id for r in results] == ["b", "a"]
    assert results[0].score == pytest.approx(0.3 * 0.2 + 0.7 * 0.9)
    assert results[1].score == pytest.approx(0.3 * 0.9 + 0.7 * 0.1)


def test_combined_scoring_accepts_weights_that_do_not_sum_to_one():
    candidates = _candidates(("a", "T1", 1.0))
    reranker = RelevanceReranker(FakeScorer(scores=[1.0]))
    results = reranker.rerank_with_combined_scoring("q", candidates, original_weight=1.0, rerank_weight=1.0)
    assert results[0].score == pytest.approx(2.0)


def test_non_positive_weights_are_rejected():
    with pytest.raises(ConfigurationError):
        RelevanceReranker(FakeScorer(scores=[]), original_weight=0.0, rerank_weight=0.0)
    reranker = RelevanceReranker(FakeScorer(scores=[0.5]))
    with pytest.raises(ConfigurationError):
        reranker.rerank_with_combined_scoring(
            "q", _candidates(("a", "T1", 0.5)), original_weight=-1.0, rerank_weight=0.5
        )


# --- Diversity mode ---------------------------------------------------------------

def _one_ticket_dominates():
    candidates = _candidates(
        ("a1", "A", 0.9), ("a2", "A", 0.8), ("a3", "A", 0.7), ("a4", "A", 0.6), ("b1", "B", 0.5)
    )
    relevance = {"text of a1": 0.9, "text of a2": 0.8, "text of a3": 0.7, "text of a4": 0.6, "text of b1": 0.1}
    return candidates, FakeScorer(by_text=relevance)


@pytest.mark.parametrize("top_k", [2, 3, 4, 5, 6])
def test_no_ticket_exceeds_half_the_results(top_k):
    candidates, scorer = _one_ticket_dominates()
    results = RelevanceReranker(scorer).rerank_with_diversity("q", candidates, top_k=top_k)

    from_a = [r for r in results if r.source_id == "A"]
    assert len(from_a) <= math.ceil(top_k / 2)
    assert len(results) <= top_k
    assert "b1" in [r.id for r in results]


def test_diversity_keeps_relevance_order():
    candidates, scorer = _one_ticket_dominates()
    results = RelevanceReranker(scorer, top_k=4).rerank_with_diversity("q", candidates)
    assert [r.id for r in results] == ["a1", "a2", "b1"]


def test_diversity_fills_from_distinct_tickets():
    candidates = _candidates(*[(f"p{i}", f"T{i}", 0.5) for i in range(10)])
    reranker = RelevanceReranker(FakeScorer(scores=[0.5] * 10), top_k=5)
    results = reranker.rerank_with_diversity("q", candidates)
    assert [r.id for r in results] == ["p0", "p1", "p2", "p3", "p4"]


def test_diversity_threshold_does_not_change_selection():
    candidates, scorer = _one_ticket_dominates()
    reranker = RelevanceReranker(scorer, top_k=4)
    loose = reranker.rerank_with_diversity("q", candidates, diversity_threshold=0.1)
    strict = reranker.rerank_with_diversity("q", candidates, diversity_threshold=0.99)
    assert [r.id for r in loose] == [r.id for r in strict]


def test_invalid_same_source_fraction_is_rejected():
    with pytest.raises(ConfigurationError):
        RelevanceReranker(FakeScorer(scores=[]), same_source_fraction=0.0)


# --- Score-only mode --------------------------------------------------------------

def test_rerank_by_score_never_calls_the_scorer():
    scorer = FakeScorer(scores=[])
    candidates = _candidates(("b", "T1", 0.4), ("a", "T2", 0.9), ("c", "T3", 0.4))

    results = RelevanceReranker(scorer, top_k=2).rerank_by_score(candidates)

    assert [r.id for r in results] == ["a", "b"]
    assert [r.original_rank for r in results] == [0, 1]
    assert scorer.calls == 0


# --- Score parsing ----------------------------------------------------------------

def test_parse_scores_from_indexed_envelope():
    raw = '{"scores": [{"index": 2, "score": 3}, {"index": 1, "score": 8}]}'
    assert _parse_scores(raw, 2) == pytest.approx([0.8, 0.3])


def test_parse_scores_from_bare_array_is_clamped():
    assert _parse_scores("[10, 0, 15, -2]", 4) == [1.0, 0.0, 1.0, 0.0]


@pytest.mark.parametrize("raw", ["not json", '{"scores": "high"}', "[1, 2]", '[{"score": 1}]'])
def test_parse_scores_rejects_bad_payloads(raw):
    with pytest.raises(RelevanceScoringError):
        _parse_scores(raw, 3)


# --- OpenAI scorer ----------------------------------------------------------------

def test_openai_scorer_batches_and_records_usage():
    client = MagicMock()
    client.chat.completions.create.side_effect = [
        chat_completion('{"scores": [{"index": 1, "score": 9}, {"index": 2, "score": 1}]}', 20, 6),
        chat_completion('{"scores": [{"index": 1, "score": 5}]}', 10, 4),
    ]
    cost = CostTracker()
    scorer = OpenAIRelevanceScorer(client=client, batch_size=2)

    scores = scorer.score("q", ["one", "two", "three"], cost)

    assert scores == pytest.approx([0.9, 0.1, 0.5])
    assert client.chat.completions.create.call_count == 2
    assert cost.token_count == 40


def test_openai_scorer_wraps_api_errors():
    client = MagicMock()
    client.chat.completions.create.side_effect = RuntimeError("503")
    with pytest.raises(RelevanceScoringError):
        OpenAIRelevanceScorer(client=client).score("q", ["one"])


def test_openai_scorer_failure_is_recovered_by_reranker():
    client = MagicMock()
    client.chat.completions.create.return_value = chat_completion("garbage")
    reranker = RelevanceReranker(OpenAIRelevanceScorer(client=client))

    results = reranker.rerank("q", _candidates(("a", "T1", 0.9), ("b", "T2", 0.8)))

    assert [r.score for r in results] == [0.5, 0.5]
