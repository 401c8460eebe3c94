"""
Ticket Chunker
---------------
Splits ticket message text into overlapping word windows.

Support tickets are conversations: each message is written by a different
party at a different time, so chunk boundaries must never merge two
messages.  `TicketChunker.chunk_by_messages` therefore chunks every message
independently and concatenates the results.

Window rules (`chunk_text`):
  - text is split on whitespace runs into words
  - a window of `chunk_size` words advances by `chunk_size - overlap` words
  - windows whose joined text is shorter than `min_chunk_size` characters are
    dropped; dropping never changes how the window advances
  - the window that reaches the end of the text is the last one
  - a trailing remainder of at most `overlap` words is folded into the
    preceding window instead of producing a window that is mostly repeat,
    so the last window can hold up to `chunk_size + overlap` words
"""
from __future__ import annotations

from functools import lru_cache
from typing import Callable, Iterable, Optional

import tiktoken
from loguru import logger

from cerberus_rag.chunking.schemas import Passage, passage_id
from cerberus_rag.config import ChunkingConfig
from cerberus_rag.exceptions import ConfigurationError
from cerberus_rag.schemas import MessageRecord, TicketRecord
from cerberus_rag.utils.helpers import clean_text

CHUNK_SIZE = 500        # words
OVERLAP = 128           # words
MIN_CHUNK_SIZE = 50     # characters


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count BPE tokens using the cl100k_base encoder (text-embedding-3-*)."""
    return len(_encoding().encode(text))


def _validate(chunk_size: int, overlap: int, min_chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ConfigurationError(f"overlap must be >= 0, got {overlap}")
    if overlap >= chunk_size:
        raise ConfigurationError(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )
    if min_chunk_size < 0:
        raise ConfigurationError(f"min_chunk_size must be >= 0, got {min_chunk_size}")


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = OVERLAP,
    min_chunk_size: int = MIN_CHUNK_SIZE,
) -> list[str]:
    """
    Split text into overlapping word windows.

    Args:
        text:           Raw text; empty or whitespace-only text yields [].
        chunk_size:     Words per window (> 0).
        overlap:        Words shared by consecutive windows (0 <= overlap < chunk_size).
        min_chunk_size: Minimum character length of an emitted chunk.

    Returns:
        Chunk strings, each the window's words joined by single spaces.
        Every chunk but the last has at most `chunk_size` words; the last
        has at most `chunk_size + overlap`.

    Raises:
        ConfigurationError: on invalid window parameters.
    """
    _validate(chunk_size, overlap, min_chunk_size)

    words = text.split()
    chunks: list[str] = []
    if not words:
        return chunks

    total = len(words)
    step = max(1, chunk_size - overlap)
    start = 0
    while start < total:
        end = min(start + chunk_size, total)
        if total - end <= overlap:
            end = total

        chunk = " ".join(words[start:end])
        if len(chunk) >= min_chunk_size:
            chunks.append(chunk)

        if end == total:
            break
        start += step

    return chunks


class TicketChunker:
    """
    Turns ticket messages into Passages.

    A passage holds at most `chunk_size + overlap` words (the folded tail
    of a message); size embedding inputs for that bound.

    Usage:
        chunker = TicketChunker.from_config(settings.chunking)
        passages = chunker.chunk_by_messages(package.messages, package.ticket)
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        overlap: int = OVERLAP,
        min_chunk_size: int = MIN_CHUNK_SIZE,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        _validate(chunk_size, overlap, min_chunk_size)
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_size = min_chunk_size
        self.token_counter = token_counter

    @classmethod
    def from_config(cls, config: ChunkingConfig, **kwargs) -> "TicketChunker":
        return cls(
            chunk_size=config.chunk_size,
            overlap=config.overlap,
            min_chunk_size=config.min_chunk_size,
            **kwargs,
        )

    def create_passages(
        self,
        text: str,
        ticket: TicketRecord,
        message_uid: Optional[str] = None,
        is_outgoing: Optional[bool] = None,
    ) -> list[Passage]:
        """Chunk one block of text and wrap every window as a Passage."""
        texts = chunk_text(text, self.chunk_size, self.overlap, self.min_chunk_size)

        attributes = ticket.attributes()
        if message_uid is not None:
            attributes["message_uid"] = message_uid
        if is_outgoing is not None:
            attributes["is_outgoing"] = is_outgoing

        return [
            Passage(
                id=passage_id(ticket.uid, index, message_uid),
                source_id=ticket.uid,
                sub_unit_id=message_uid,
                text=chunk,
                token_count=self.token_counter(chunk),
                position=index,
                total_chunks=len(texts),
                attributes=dict(attributes),
            )
            for index, chunk in enumerate(texts)
        ]

    def chunk_by_messages(
        self,
        messages: Iterable[MessageRecord],
        ticket: TicketRecord,
    ) -> list[Passage]:
        """Chunk each message on its own so no passage spans two messages."""
        passages: list[Passage] = []
        message_count = 0
        for message in messages:
            message_count += 1
            passages.extend(
                self.create_passages(
                    clean_text(message.content),
                    ticket,
                    message_uid=message.uid,
                    is_outgoing=message.outgoing,
                )
            )

        logger.debug(
            f"[Chunker] ticket {ticket.uid} | {message_count} message(s) "
            f"-> {len(passages)} passage(s)"
        )
        return passages
