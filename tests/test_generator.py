from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from cerberus_rag.cost_tracker import CostTracker, cost_usd
from cerberus_rag.generation.generator import AnthropicGenerator, RAGGenerator, build_context, build_prompt
from cerberus_rag.generation.memory import ConversationMemory
from cerberus_rag.generation.prompts import NO_CONTEXT_RESPONSE, SYSTEM_PROMPT
from cerberus_rag.retrieval.schemas import AnswerCandidate
from tests.fakes import chat_completion

CANDIDATES = [
    AnswerCandidate(text="Reset it from the admin panel.", score=0.9, source_id="T1", display_metadata={"ticket_mask": "AAA-1"}),
    AnswerCandidate(text="Clear the browser cache.", score=0.7, source_id="T2", display_metadata={}),
]
HISTORY = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}]


def test_context_numbers_sources_and_separates_them():
    context = build_context(CANDIDATES)
    assert context == (
        "[Source 1 - Ticket AAA-1]\nReset it from the admin panel."
        "\n\n---\n\n"
        "[Source 2 - Ticket T2]\nClear the browser cache."
    )


def test_prompt_contains_question_and_context():
    prompt = build_prompt("How do I reset?", CANDIDATES)
    assert "How do I reset?" in prompt
    assert "[Source 1 - Ticket AAA-1]" in prompt


def test_openai_generator_sends_system_history_and_prompt():
    client = MagicMock()
    client.chat.completions.create.return_value = chat_completion("Use the admin panel [1].", 100, 20)
    cost = CostTracker()

    response = RAGGenerator(client=client).generate("How do I reset?", CANDIDATES, HISTORY, cost)

    messages = client.chat.completions.create.call_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert messages[1:3] == HISTORY
    assert messages[3]["role"] == "user"
    assert "[Source 2 - Ticket T2]" in messages[3]["content"]
    assert response.answer == "Use the admin panel [1]."
    assert response.total_tokens == 120
    assert cost.token_count == 120
    assert response.estimated_cost_usd == pytest.approx(cost_usd("gpt-4o-mini", 100, 20))


def test_generators_short_circuit_without_candidates():
    openai_client, anthropic_client = MagicMock(), MagicMock()

    assert RAGGenerator(client=openai_client).generate("q", []).answer == NO_CONTEXT_RESPONSE
    assert AnthropicGenerator(client=anthropic_client).generate("q", []).answer == NO_CONTEXT_RESPONSE
    openai_client.chat.completions.create.assert_not_called()
    anthropic_client.messages.create.assert_not_called()


def test_anthropic_generator_passes_system_separately():
    client = MagicMock()
    client.messages.create.return_value = SimpleNamespace(
        content=[SimpleNamespace(text="Clear the cache [2].")],
        usage=SimpleNamespace(input_tokens=50, output_tokens=10),
    )
    cost = CostTracker()

    response = AnthropicGenerator(client=client).generate("q", CANDIDATES, HISTORY, cost)

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["system"] == SYSTEM_PROMPT
    assert kwargs["messages"][:2] == HISTORY
    assert all(m["role"] != "system" for m in kwargs["messages"])
    assert response.answer == "Clear the cache [2]."
    assert cost.token_count == 60


# --- Memory -----------------------------------------------------------------------

def test_memory_evicts_oldest_exchanges():
    memory = ConversationMemory(max_exchanges=2)
    for i in range(3):
        memory.add_exchange(f"q{i}", f"a{i}")

    assert len(memory) == 4
    assert [m["content"] for m in memory.history()] == ["q1", "a1", "q2", "a2"]
    assert [m["role"] for m in memory.history()] == ["user", "assistant", "user", "assistant"]


def test_memory_reset_clears_history():
    memory = ConversationMemory()
    memory.add_exchange("q", "a")
    memory.reset()
    assert memory.history() == []
    assert len(memory) == 0


def test_memory_requires_positive_size():
    with pytest.raises(ValueError):
        ConversationMemory(max_exchanges=0)


# --- Cost tracking ----------------------------------------------------------------

def test_cost_tracker_counts_and_prices_tokens():
    cost = CostTracker()
    cost.add(1_000_000)
    assert cost.token_count == 1_000_000
    assert cost.estimated_cost_usd("text-embedding-3-small") == pytest.approx(0.02)
    cost.reset()
    assert cost.token_count == 0
