from __future__ import annotations

import pytest
from loguru import logger

from cerberus_rag.retrieval.reranker import RelevanceReranker
from tests.fakes import FakeEmbedder, FakeScorer, StubIndex


@pytest.fixture(autouse=True)
def _no_langsmith(monkeypatch):
    # @traceable stays a pass-through without tracing credentials
    monkeypatch.setenv("LANGSMITH_TRACING", "false")
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")


@pytest.fixture
def log_messages():
    """Capture loguru output as a list of formatted records."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(str(m)), level="DEBUG", format="{level} {message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def stub_index():
    return StubIndex()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def neutral_reranker():
    # Every candidate scores the same, so ordering falls back to fused order
    return RelevanceReranker(scorer=FakeScorer(error=RuntimeError("offline")))
