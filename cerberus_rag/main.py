"""
Cerberus Ticket RAG - CLI Entry Point
--------------------------------------
Exposes Typer commands for ingestion, chat and inspection.

Usage:
    python -m cerberus_rag.main embed data/tickets         # Chunk, embed, index
    python -m cerberus_rag.main chat                       # Interactive Q&A
    python -m cerberus_rag.main chat --query "..."         # Single-shot query
    python -m cerberus_rag.main chat --query "..." --json  # Machine-readable
    python -m cerberus_rag.main status                     # Collection + settings
"""
from __future__ import annotations

from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from cerberus_rag.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from cerberus_rag.exceptions import CerberusError, ConfigurationError
from cerberus_rag.utils.helpers import truncate_text
from cerberus_rag.utils.logger import setup_logger

app = typer.Typer(
    name="cerberus-rag",
    help="Cerberus Ticket RAG - hybrid retrieval and chat over support tickets",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config: str) -> Settings:
    try:
        settings = load_settings(config)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(2)
    setup_logger(log_level=settings.logging.level, log_file=settings.logging.file)
    return settings


def _openai_client(settings: Settings):
    from openai import OpenAI
    return OpenAI(api_key=settings.openai.api_key)


ConfigOption = typer.Option(
    DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to pipeline config YAML"
)


# --- Commands -----------------------------------------------------------------

@app.command()
def embed(
    path: str = typer.Argument(..., help="Directory of ticket package JSON files"),
    config: str = ConfigOption,
    batch_size: int = typer.Option(50, "--batch-size", help="Passages per embedding call"),
) -> None:
    """
    Chunk, embed and index every ticket package under PATH.

    \b
    Steps:
      1. Find *.json ticket packages (recursive)
      2. Chunk each message into overlapping word windows
      3. OpenAI embeddings in batches
      4. Upsert into the configured index and save it
    """
    settings = _bootstrap(config)

    from cerberus_rag.chunking.chunker import TicketChunker
    from cerberus_rag.cost_tracker import CostTracker
    from cerberus_rag.embedding.embedder import Embedder
    from cerberus_rag.embedding.factory import create_index
    from cerberus_rag.embedding.pipeline import embed_directory

    console.print()
    console.print(
        Panel(
            "[bold cyan]Cerberus Ticket RAG[/bold cyan]\n"
            "[white]Chunking, Embedding, Indexing[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )

    index = create_index(settings.storage)
    embedder = Embedder(
        client=_openai_client(settings),
        model=settings.openai.embedding_model,
        batch_size=batch_size,
    )
    chunker = TicketChunker.from_config(settings.chunking)
    cost = CostTracker()

    try:
        summary = embed_directory(path, index, embedder, chunker, cost, batch_size=batch_size)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    console.print()
    console.print(
        Panel(
            "[bold green]Embedding Complete[/bold green]\n\n"
            f"  Files       : {summary.files_processed:,} / {summary.files_total:,}\n"
            f"  Skipped     : {len(summary.files_skipped):,}\n"
            f"  Chunks      : {summary.chunks_embedded:,}\n"
            f"  Tokens used : {summary.tokens_used:,}\n"
            f"  Cost        : ${cost.estimated_cost_usd(settings.openai.embedding_model):.4f} USD\n"
            f"  Collection  : {summary.collection_size:,} passages\n\n"
            "Run: [bold]python -m cerberus_rag.main chat[/bold]",
            box=box.DOUBLE_EDGE,
            border_style="green",
            expand=False,
        )
    )


@app.command()
def chat(
    query: Optional[str] = typer.Option(
        None, "--query", "-q", help="Single query (omit for interactive loop)"
    ),
    json_out: bool = typer.Option(
        False, "--json", help="Print result as JSON (single-query mode only)"
    ),
    config: str = ConfigOption,
) -> None:
    """
    Ask questions against the indexed tickets.

    \b
    Steps per query:
      1. Hybrid retrieval  (BM25 lexical + FAISS vector -> boosted fusion)
      2. Minimum-score cutoff
      3. LLM reranking with a per-ticket diversity cap
      4. Answer generation grounded in the selected passages
    """
    settings = _bootstrap(config)

    from cerberus_rag.generation.generator import RAGGenerator
    from cerberus_rag.serving.pipeline import ChatSession, build_pipeline

    client = _openai_client(settings)
    with console.status("[cyan]Loading ticket index...[/cyan]"):
        pipeline = build_pipeline(settings, openai_client=client)

    if pipeline.index.count() == 0:
        console.print(
            "[yellow]The ticket collection is empty.[/yellow]\n"
            "Run first: [bold]python -m cerberus_rag.main embed <path>[/bold]"
        )
        raise typer.Exit(1)

    generator = RAGGenerator(
        client=client,
        model=settings.openai.chat_model,
        max_tokens=settings.openai.max_tokens,
        temperature=settings.openai.temperature,
    )
    session = ChatSession(pipeline, generator)

    # --- Single-shot mode -----------------------------------------------------
    if query:
        try:
            response = session.ask(query)
        except CerberusError as exc:
            console.print(f"[red]Query failed:[/red] {exc}")
            raise typer.Exit(1)
        if json_out:
            console.print_json(data=response.to_dict())
        else:
            _print_response(response)
        return

    # --- Interactive loop -----------------------------------------------------
    console.print(
        f"[green][OK] Index loaded[/green] | {pipeline.index.count():,} passages "
        f"| rerank={settings.rerank.mode} | model={settings.openai.chat_model}"
    )
    console.print()
    console.print("[bold]Ask anything about your support tickets.[/bold]")
    console.print("[dim]Commands: 'reset' clears history, 'stats' shows usage, 'exit' or 'quit' leaves.[/dim]\n")

    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        command = raw.lower()
        if command in {"exit", "quit"}:
            console.print("[dim]Goodbye.[/dim]")
            break
        if command == "reset":
            session.reset()
            console.print("[dim]Conversation history cleared.[/dim]\n")
            continue
        if command == "stats":
            _print_stats(session.stats(), settings)
            continue

        try:
            with console.status("[cyan]Thinking...[/cyan]"):
                response = session.ask(raw)
        except CerberusError as exc:
            logger.error(f"[CLI] Query failed: {exc}")
            console.print(f"[red]Query failed:[/red] {exc}\n")
            continue

        _print_response(response)


def _print_response(response) -> None:
    """Render a ChatResponse to the terminal using Rich."""
    console.print()
    console.print(
        Panel(
            Markdown(response.answer),
            title="[bold green]Answer[/bold green]",
            border_style="green",
            expand=True,
        )
    )

    if response.sources:
        table = Table(
            "No.", "Ticket", "Subject", "Score",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for i, source in enumerate(response.sources, start=1):
            meta = source.display_metadata
            subject = meta.get("ticket_subject") or ""
            table.add_row(
                str(i),
                meta.get("ticket_mask") or source.source_id,
                truncate_text(subject, 55),
                f"{source.score:.2f}",
            )
        console.print(table)

    console.print(f"[dim]tokens={response.tokens_used:,}[/dim]\n")


def _print_stats(stats: dict, settings: Settings) -> None:
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_row("Tokens used", f"{stats['tokens_used']:,}")
    table.add_row("Messages in history", str(stats["messages_in_history"]))
    table.add_row("Collection size", f"{stats['collection_size']:,}")
    table.add_row("Chat model", settings.openai.chat_model)
    console.print(table)


@app.command()
def status(config: str = ConfigOption) -> None:
    """Show collection size and the effective retrieval settings."""
    settings = _bootstrap(config)

    from cerberus_rag.embedding.factory import create_index

    index = create_index(settings.storage)

    table = Table(title="Cerberus Ticket RAG", box=box.SIMPLE, show_header=False)
    table.add_row("Vector store", settings.storage.vector_store_type)
    table.add_row("Collection", str(settings.storage.index_dir))
    table.add_row("Passages", f"{index.count():,}")
    table.add_row("Embedding model", settings.openai.embedding_model)
    table.add_row("Chat model", settings.openai.chat_model)
    table.add_row(
        "Chunking",
        f"{settings.chunking.chunk_size} words / {settings.chunking.overlap} overlap "
        f"/ min {settings.chunking.min_chunk_size} chars",
    )
    table.add_row(
        "Retrieval",
        f"semantic={settings.retrieval.semantic_top_k} keyword={settings.retrieval.keyword_top_k} "
        f"min_score={settings.retrieval.min_similarity_score} boost={settings.retrieval.boost_factor}",
    )
    table.add_row("Rerank", f"{settings.rerank.mode} top_k={settings.rerank.top_k}")
    console.print()
    console.print(table)

    if index.count() == 0:
        console.print("[yellow]Collection is empty. Run: python -m cerberus_rag.main embed <path>[/yellow]")


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
