"""
Answer Generator
-----------------
Two generator implementations with an identical generate() interface:

  RAGGenerator       -- OpenAI chat models
  AnthropicGenerator -- Anthropic Claude models

Both accept (query, answer_candidates, history) and return a RAGResponse.
The candidates are numbered into the prompt as
"[Source N - Ticket MASK]" blocks; an empty candidate list short-circuits
to NO_CONTEXT_RESPONSE without any model call.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from langsmith import traceable
from loguru import logger

from cerberus_rag.cost_tracker import CostSink
from cerberus_rag.cost_tracker import cost_usd as _cost_usd
from cerberus_rag.generation.prompts import (
    ANSWER_PROMPT,
    NO_CONTEXT_RESPONSE,
    SOURCE_TEMPLATE,
    SYSTEM_PROMPT,
)
from cerberus_rag.retrieval.schemas import AnswerCandidate


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------

@dataclass
class RAGResponse:
    """Structured result from a single generation call (provider-agnostic)."""

    answer: str
    prompt: str
    model: str
    sources: list[AnswerCandidate] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def estimated_cost_usd(self) -> float:
        return _cost_usd(self.model, self.prompt_tokens, self.completion_tokens)


# ---------------------------------------------------------------------------
# Shared prompt builder
# ---------------------------------------------------------------------------

def build_context(candidates: Sequence[AnswerCandidate]) -> str:
    """Number each passage [1]..[N] and join them for the answer prompt."""
    return "\n\n---\n\n".join(
        SOURCE_TEMPLATE.format(
            index=i,
            mask=c.display_metadata.get("ticket_mask") or c.source_id,
            text=c.text,
        )
        for i, c in enumerate(candidates, start=1)
    )


def build_prompt(query: str, candidates: Sequence[AnswerCandidate]) -> str:
    return ANSWER_PROMPT.format(context=build_context(candidates), question=query)


# ---------------------------------------------------------------------------
# OpenAI Generator
# ---------------------------------------------------------------------------

class RAGGenerator:
    """Grounded answer synthesis using OpenAI chat models."""

    def __init__(
        self,
        client=None,
        model: str = "gpt-4o-mini",
        max_tokens: int = 2000,
        temperature: float = 0.7,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        if client is None:
            from openai import OpenAI  # lazy import keeps import graph clean
            client = OpenAI()
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self._client = client

    @traceable(name="generate_openai", run_type="llm")
    def generate(
        self,
        query: str,
        candidates: Sequence[AnswerCandidate],
        history: Sequence[dict[str, str]] = (),
        cost_sink: Optional[CostSink] = None,
    ) -> RAGResponse:
        if not candidates:
            return RAGResponse(answer=NO_CONTEXT_RESPONSE, prompt=query, model=self.model)

        prompt = build_prompt(query, candidates)
        logger.debug(
            f"[OpenAIGenerator] {self.model} | {len(candidates)} sources | "
            f"history={len(history)} | query={query[:60]!r}"
        )

        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.system_prompt},
                *history,
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        answer = response.choices[0].message.content or ""
        usage = response.usage
        if cost_sink is not None:
            cost_sink.add(usage.prompt_tokens + usage.completion_tokens)

        logger.info(
            f"[OpenAIGenerator] Done | prompt={usage.prompt_tokens} "
            f"completion={usage.completion_tokens} | "
            f"cost=${_cost_usd(self.model, usage.prompt_tokens, usage.completion_tokens):.5f}"
        )

        return RAGResponse(
            answer=answer,
            prompt=prompt,
            model=self.model,
            sources=list(candidates),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )


# ---------------------------------------------------------------------------
# Anthropic Generator
# ---------------------------------------------------------------------------

class AnthropicGenerator:
    """
    Grounded answer synthesis using Anthropic Claude models.

    The Anthropic SDK passes the system prompt as a separate `system`
    parameter (not inside the messages list) -- handled here transparently.
    """

    def __init__(
        self,
        client=None,
        model: str = "claude-haiku-4-5-20251001",
        max_tokens: int = 2000,
        temperature: float = 0.7,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        if client is None:
            from anthropic import Anthropic  # lazy import
            client = Anthropic()
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self._client = client

    @traceable(name="generate_anthropic", run_type="llm")
    def generate(
        self,
        query: str,
        candidates: Sequence[AnswerCandidate],
        history: Sequence[dict[str, str]] = (),
        cost_sink: Optional[CostSink] = None,
    ) -> RAGResponse:
        if not candidates:
            return RAGResponse(answer=NO_CONTEXT_RESPONSE, prompt=query, model=self.model)

        prompt = build_prompt(query, candidates)
        logger.debug(
            f"[AnthropicGenerator] {self.model} | {len(candidates)} sources | "
            f"query={query[:60]!r}"
        )

        response = self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=self.system_prompt,
            messages=[*history, {"role": "user", "content": prompt}],
        )

        answer = response.content[0].text if response.content else ""
        # Anthropic usage: input_tokens / output_tokens
        prompt_tok = response.usage.input_tokens
        comp_tok = response.usage.output_tokens
        if cost_sink is not None:
            cost_sink.add(prompt_tok + comp_tok)

        logger.info(
            f"[AnthropicGenerator] Done | input={prompt_tok} "
            f"output={comp_tok} | "
            f"cost=${_cost_usd(self.model, prompt_tok, comp_tok):.5f}"
        )

        return RAGResponse(
            answer=answer,
            prompt=prompt,
            model=self.model,
            sources=list(candidates),
            prompt_tokens=prompt_tok,
            completion_tokens=comp_tok,
        )
