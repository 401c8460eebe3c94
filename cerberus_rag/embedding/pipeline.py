"""
Ticket Ingestion - Chunk, Embed, Index
---------------------------------------
Reads Cerb ticket package files from a directory tree,
chunks each ticket message-by-message with TicketChunker,
embeds the passages with the OpenAI embedder,
and upserts them into the configured SimilarityIndex.

A bad file never stops the run: it is logged, skipped and counted.
The index is saved once, after the last file.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from cerberus_rag.chunking.chunker import TicketChunker
from cerberus_rag.cost_tracker import CostTracker
from cerberus_rag.embedding.base import SimilarityIndex
from cerberus_rag.embedding.embedder import Embedder
from cerberus_rag.schemas import find_ticket_files, load_ticket_package

EMBED_BATCH_SIZE = 50


@dataclass
class IngestSummary:
    files_total: int = 0
    files_processed: int = 0
    files_skipped: list[str] = field(default_factory=list)
    chunks_embedded: int = 0
    tokens_used: int = 0
    collection_size: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def ingest_file(
    path: Path,
    index: SimilarityIndex,
    embedder: Embedder,
    chunker: TicketChunker,
    cost: CostTracker,
    batch_size: int = EMBED_BATCH_SIZE,
) -> int:
    """
    Chunk, embed and upsert one ticket package.

    Returns:
        Number of passages upserted (0 when the file was skipped).
    """
    package = load_ticket_package(path)
    ticket = package.ticket
    if ticket is None:
        logger.warning(f"[Ingest] {path.name}: no ticket record, skipping")
        return 0

    passages = chunker.chunk_by_messages(package.messages, ticket)
    if not passages:
        logger.warning(f"[Ingest] {path.name}: ticket {ticket.uid} produced no chunks, skipping")
        return 0

    for i in range(0, len(passages), batch_size):
        batch = passages[i: i + batch_size]
        vectors = embedder.embed_texts([p.text for p in batch], cost)
        index.upsert(batch, vectors)

    logger.debug(f"[Ingest] {path.name}: {len(passages)} passages for ticket {ticket.mask or ticket.uid}")
    return len(passages)


def embed_directory(
    directory: str | Path,
    index: SimilarityIndex,
    embedder: Embedder,
    chunker: TicketChunker,
    cost: Optional[CostTracker] = None,
    batch_size: int = EMBED_BATCH_SIZE,
    console: Optional[Console] = None,
) -> IngestSummary:
    """
    Ingest every *.json ticket package under `directory`.

    Raises:
        FileNotFoundError: `directory` does not exist.
    """
    cost = cost if cost is not None else CostTracker()
    console = console or Console(stderr=True)
    files = find_ticket_files(directory)
    summary = IngestSummary(files_total=len(files))
    start_tokens = cost.token_count

    logger.info(f"[Ingest] {len(files)} ticket file(s) found under {directory}")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Embedding tickets...[/cyan]", total=len(files))
        for path in files:
            try:
                count = ingest_file(path, index, embedder, chunker, cost, batch_size)
            except Exception as exc:
                logger.error(f"[Ingest] {path.name}: {exc}")
                count = 0

            if count:
                summary.files_processed += 1
                summary.chunks_embedded += count
            else:
                summary.files_skipped.append(str(path))
            progress.advance(task)

    index.save()
    summary.tokens_used = cost.token_count - start_tokens
    summary.collection_size = index.count()

    logger.info(
        f"[Ingest] Complete | {summary.files_processed}/{summary.files_total} files | "
        f"{summary.chunks_embedded} chunks | {summary.tokens_used:,} tokens | "
        f"collection={summary.collection_size:,}"
    )
    return summary
