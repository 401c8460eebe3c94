"""
Per-query retrieval values.

ScoredCandidate / RerankedResult are created fresh for every query and
never mutated: fusion and reranking build new instances with
dataclasses.replace().
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from cerberus_rag.chunking.schemas import Passage


class RetrievalPhase(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"


@dataclass(frozen=True)
class ScoredCandidate:
    """A passage plus its similarity (or fused relevance) score."""

    passage: Passage
    score: float
    phases: frozenset[RetrievalPhase] = field(default_factory=frozenset)

    @property
    def id(self) -> str:
        return self.passage.id

    @property
    def text(self) -> str:
        return self.passage.text

    @property
    def source_id(self) -> str:
        return self.passage.source_id

    def rescored(self, score: float, phases: frozenset[RetrievalPhase] | None = None) -> "ScoredCandidate":
        return replace(self, score=score, phases=self.phases if phases is None else phases)


@dataclass(frozen=True)
class RerankedResult:
    """A reranked candidate; original_rank is kept for auditing only."""

    passage: Passage
    score: float
    original_rank: int
    phases: frozenset[RetrievalPhase] = field(default_factory=frozenset)

    @property
    def id(self) -> str:
        return self.passage.id

    @property
    def text(self) -> str:
        return self.passage.text

    @property
    def source_id(self) -> str:
        return self.passage.source_id


@dataclass(frozen=True)
class AnswerCandidate:
    """What the pipeline hands to the generation step."""

    text: str
    score: float
    source_id: str
    display_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: RerankedResult | ScoredCandidate) -> "AnswerCandidate":
        passage = result.passage
        return cls(
            text=passage.text,
            score=result.score,
            source_id=passage.source_id,
            display_metadata={
                "passage_id": passage.id,
                "title": passage.title,
                "message_uid": passage.sub_unit_id,
                "position": passage.position,
                "total_chunks": passage.total_chunks,
                **passage.attributes,
            },
        )

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "score": round(self.score, 4),
            "source_id": self.source_id,
            "display_metadata": self.display_metadata,
        }
