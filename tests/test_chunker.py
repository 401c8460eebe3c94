from __future__ import annotations

import pytest

from cerberus_rag.chunking.chunker import TicketChunker, chunk_text
from cerberus_rag.config import ChunkingConfig
from cerberus_rag.exceptions import ConfigurationError
from cerberus_rag.schemas import MessageRecord, TicketRecord
from tests.fakes import word_count


def _words(n: int, prefix: str = "w") -> str:
    return " ".join(f"{prefix}{i}" for i in range(n))


@pytest.fixture
def ticket():
    return TicketRecord(uid="T1", mask="ABC-12345-678", subject="Login locked", group_id=3, bucket_id=7)


@pytest.fixture
def chunker():
    return TicketChunker(token_counter=word_count)


# --- chunk_text -----------------------------------------------------------------

def test_thousand_words_make_two_windows_with_overlap():
    chunks = chunk_text(_words(1000), chunk_size=500, overlap=128, min_chunk_size=50)

    assert len(chunks) == 2
    first, second = (c.split() for c in chunks)
    assert first == [f"w{i}" for i in range(0, 500)]
    assert second == [f"w{i}" for i in range(372, 1000)]
    # the two windows share exactly `overlap` words
    assert len(set(first) & set(second)) == 128


def test_empty_and_whitespace_text_yield_nothing():
    assert chunk_text("") == []
    assert chunk_text("   \n\t  ") == []


def test_short_text_below_floor_is_dropped():
    assert chunk_text("hello world", min_chunk_size=50) == []


def test_short_text_above_floor_is_one_chunk():
    text = "My account is locked after the password reset this morning"
    assert chunk_text(text, min_chunk_size=10) == [text]


def test_whitespace_runs_are_collapsed():
    assert chunk_text("a   b\n\nc\td", chunk_size=10, overlap=2, min_chunk_size=0) == ["a b c d"]


@pytest.mark.parametrize("n_words,size,overlap", [(1234, 100, 20), (301, 50, 0), (77, 10, 9), (500, 500, 128)])
def test_every_word_is_covered(n_words, size, overlap):
    chunks = chunk_text(_words(n_words), chunk_size=size, overlap=overlap, min_chunk_size=0)

    covered = {w for c in chunks for w in c.split()}
    assert covered == {f"w{i}" for i in range(n_words)}
    assert all(len(c.split()) <= size + overlap for c in chunks)


@pytest.mark.parametrize("n_words,size,overlap", [(1000, 500, 128), (1234, 100, 20), (77, 10, 9)])
def test_only_the_last_window_can_exceed_chunk_size(n_words, size, overlap):
    lengths = [len(c.split()) for c in chunk_text(_words(n_words), chunk_size=size, overlap=overlap, min_chunk_size=0)]

    assert all(n <= size for n in lengths[:-1])
    assert size < lengths[-1] <= size + overlap


def test_windows_advance_by_size_minus_overlap():
    chunks = chunk_text(_words(1000), chunk_size=100, overlap=25, min_chunk_size=0)
    starts = [int(c.split()[0][1:]) for c in chunks]
    assert starts[:4] == [0, 75, 150, 225]


def test_dropping_a_short_window_does_not_shift_later_windows():
    long_word = "x" * 20
    words = [long_word] * 3 + ["y"] * 3 + ["z" * 20] * 3
    chunks = chunk_text(" ".join(words), chunk_size=3, overlap=0, min_chunk_size=10)

    assert len(chunks) == 2
    assert chunks[0].split() == [long_word] * 3
    assert chunks[1].split() == ["z" * 20] * 3


def test_chunking_is_deterministic():
    text = _words(2000)
    assert chunk_text(text, 300, 50, 10) == chunk_text(text, 300, 50, 10)


@pytest.mark.parametrize(
    "size,overlap,floor",
    [(0, 0, 0), (-5, 0, 0), (100, 100, 0), (100, 150, 0), (100, -1, 0), (100, 10, -1)],
)
def test_invalid_window_parameters_raise(size, overlap, floor):
    with pytest.raises(ConfigurationError):
        chunk_text("some text", chunk_size=size, overlap=overlap, min_chunk_size=floor)


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        TicketChunker(chunk_size=10, overlap=10)


# --- TicketChunker ----------------------------------------------------------------

def test_passages_carry_ids_positions_and_ticket_attributes(chunker, ticket):
    passages = chunker.create_passages(_words(1000), ticket, message_uid="M9", is_outgoing=True)

    assert [p.id for p in passages] == ["T1_M9_chunk_0", "T1_M9_chunk_1"]
    assert [p.position for p in passages] == [0, 1]
    assert all(p.total_chunks == 2 for p in passages)
    assert all(p.source_id == "T1" and p.sub_unit_id == "M9" for p in passages)

    attrs = passages[0].attributes
    assert attrs["ticket_mask"] == "ABC-12345-678"
    assert attrs["ticket_subject"] == "Login locked"
    assert attrs["group_id"] == 3
    assert attrs["bucket_id"] == 7
    assert attrs["message_uid"] == "M9"
    assert attrs["is_outgoing"] is True
    assert passages[0].token_count == 500
    assert passages[0].title == "ABC-12345-678: Login locked"


def test_passage_ids_without_message(chunker, ticket):
    passages = chunker.create_passages(_words(20), ticket)
    assert [p.id for p in passages] == ["T1_chunk_0"]
    assert "message_uid" not in passages[0].attributes


def test_chunks_never_cross_message_boundaries(ticket):
    chunker = TicketChunker(chunk_size=50, overlap=10, min_chunk_size=0, token_counter=word_count)
    messages = [
        MessageRecord(uid="M1", ticket_id="T1", is_outgoing=0, content=_words(30, "a")),
        MessageRecord(uid="M2", ticket_id="T1", is_outgoing=1, content=_words(30, "b")),
    ]

    passages = chunker.chunk_by_messages(messages, ticket)

    assert [p.sub_unit_id for p in passages] == ["M1", "M2"]
    for p in passages:
        prefixes = {w[0] for w in p.text.split()}
        assert len(prefixes) == 1
    assert passages[0].attributes["is_outgoing"] is False
    assert passages[1].attributes["is_outgoing"] is True


def test_control_characters_are_stripped_from_messages(ticket):
    chunker = TicketChunker(min_chunk_size=0, token_counter=word_count)
    message = MessageRecord(uid="M1", content="printer\x00 jammed\x07 again")
    passages = chunker.chunk_by_messages([message], ticket)
    assert passages[0].text == "printer jammed again"


def test_from_config_uses_configured_window(ticket):
    chunker = TicketChunker.from_config(
        ChunkingConfig(chunk_size=10, overlap=2, min_chunk_size=0), token_counter=word_count
    )
    passages = chunker.create_passages(_words(30), ticket)
    assert len(passages[0].text.split()) == 10
    assert passages[1].text.split()[0] == "w8"


def test_passages_are_frozen(chunker, ticket):
    passage = chunker.create_passages(_words(20), ticket)[0]
    with pytest.raises(Exception):
        passage.text = "changed"
