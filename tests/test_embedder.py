from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from cerberus_rag.cost_tracker import CostTracker
from cerberus_rag.embedding.embedder import Embedder
from cerberus_rag.exceptions import CollaboratorError
from tests.fakes import embedding_response


def test_embed_texts_normalises_and_keeps_input_order():
    client = MagicMock()
    client.embeddings.create.return_value = embedding_response([[3.0, 4.0], [0.0, 2.0]], total_tokens=9)
    cost = CostTracker()

    vectors = Embedder(client=client).embed_texts(["first", "second"], cost)

    assert vectors.shape == (2, 2)
    assert vectors.dtype == np.float32
    np.testing.assert_allclose(vectors[0], [0.6, 0.8], rtol=1e-6)
    np.testing.assert_allclose(vectors[1], [0.0, 1.0], rtol=1e-6)
    assert cost.token_count == 9


def test_embed_texts_batches_requests():
    client = MagicMock()
    client.embeddings.create.side_effect = [
        embedding_response([[1.0, 0.0], [0.0, 1.0]]),
        embedding_response([[1.0, 1.0]]),
    ]
    embedder = Embedder(client=client, batch_size=2)

    vectors = embedder.embed_texts(["a", "b", "c"])

    assert vectors.shape == (3, 2)
    assert client.embeddings.create.call_count == 2
    assert embedder.total_api_calls == 2


def test_blank_texts_are_sent_as_a_space():
    client = MagicMock()
    client.embeddings.create.return_value = embedding_response([[1.0, 0.0]])
    Embedder(client=client).embed_texts(["   "])
    assert client.embeddings.create.call_args.kwargs["input"] == [" "]


def test_embed_returns_one_dimensional_vector():
    client = MagicMock()
    client.embeddings.create.return_value = embedding_response([[0.0, 5.0, 0.0]])
    vector = Embedder(client=client).embed("query")
    assert vector.shape == (3,)


def test_empty_input_makes_no_call():
    client = MagicMock()
    assert Embedder(client=client).embed_texts([]).shape == (0, 0)
    client.embeddings.create.assert_not_called()


def test_api_failure_raises_collaborator_error(monkeypatch):
    embedder = Embedder(client=MagicMock())

    def fail(texts):
        raise RuntimeError("quota exceeded")

    # bypass tenacity back-off
    monkeypatch.setattr(embedder, "_embed_batch", fail)
    with pytest.raises(CollaboratorError, match="quota exceeded"):
        embedder.embed("query")
