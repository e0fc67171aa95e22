"""
Agentic RAG - CLI Entry Point
------------------------------
Typer commands over the same components the HTTP server uses.

Usage:
    python -m agentic_rag.main ingest docs/               # Ingest a folder of text files
    python -m agentic_rag.main ingest notes.md --source wiki
    python -m agentic_rag.main ask                        # Interactive Q&A
    python -m agentic_rag.main ask -q "..." --json        # Single-shot query
    python -m agentic_rag.main reembed --scope all        # Recompute embeddings
    python -m agentic_rag.main status                     # Corpus statistics
    python -m agentic_rag.main serve --port 8000          # Start the API server
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import NoReturn, Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from agentic_rag.bootstrap import Components, build_components
from agentic_rag.config import load_settings
from agentic_rag.errors import AgenticRagError, ParseFailure
from agentic_rag.ingestion.service import TEXT_SUFFIXES, read_text_file
from agentic_rag.schemas import FinalAnswer
from agentic_rag.utils.helpers import to_json
from agentic_rag.utils.logger import setup_logger

app = typer.Typer(
    name="agentic-rag",
    help="Agentic RAG - versioned corpus and grounded question answering",
    add_completion=False,
)
console = Console()

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config YAML")


# --- Helpers ------------------------------------------------------------------

def _build(config: Optional[str]) -> Components:
    settings = load_settings(config)
    setup_logger(settings.logging.level, settings.logging.file)
    return build_components(settings)


def _collect_files(path: Path) -> list[Path]:
    if path.is_file():
        return [path]
    return sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in TEXT_SUFFIXES)


def _fail(exc: Exception) -> NoReturn:
    console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, help="Text file or folder of text files"),
    source: str = typer.Option("file", "--source", "-s", help="Source label stored on each document"),
    no_upsert: bool = typer.Option(
        False, "--no-upsert", help="Always create a new logical document instead of versioning by source+title"
    ),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """
    Chunk, embed and store text files as document versions.

    \b
    Re-ingesting a file with the same source and title creates version N+1
    and demotes the previous version (unless --no-upsert).
    """
    files = _collect_files(path)
    if not files:
        console.print(f"[yellow]No text files found under {path}[/yellow]")
        raise typer.Exit(1)

    comps = _build(config)
    table = Table("File", "Document", "Logical ID", "Version", box=box.SIMPLE, header_style="bold dim")
    stored = skipped = 0

    for file in files:
        try:
            text = read_text_file(file)
        except (OSError, ParseFailure) as exc:
            logger.warning(f"[CLI] Skipping {file}: {exc}")
            skipped += 1
            continue
        if not text.strip():
            logger.warning(f"[CLI] Skipping empty file {file}")
            skipped += 1
            continue

        try:
            with console.status(f"[cyan]Ingesting {file.name}...[/cyan]"):
                result = comps.ingest.ingest_text(
                    source, file.name, text, upsert_by_source_title=not no_upsert
                )
        except AgenticRagError as exc:
            _fail(exc)
        table.add_row(file.name, str(result.document_id), result.logical_id, str(result.version))
        stored += 1

    console.print(table)
    console.print(f"[green][OK] {stored} stored[/green]  [yellow]{skipped} skipped[/yellow]")


@app.command()
def ask(
    question: Optional[str] = typer.Option(
        None, "--question", "-q", help="Single question (omit for interactive loop)"
    ),
    json_out: bool = typer.Option(
        False, "--json", help="Print result as JSON (single-question mode only)"
    ),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """
    Answer questions with the agentic retrieval pipeline.

    \b
    Steps per question:
      1. Route       (greeting on an empty corpus skips retrieval)
      2. Retrieve    (3 parallel retrievers, k = 6 / 10 / 14)
      3. Aggregate   (dedupe by chunk, keep top 3)
      4. Synthesize  (grounded answer with [chunk:<id>] citations)
      5. Judge       (reject -> rewrite query and retry, max 2 retries)
    """
    comps = _build(config)

    # --- Single-shot mode -----------------------------------------------------
    if question:
        try:
            result = comps.pipeline.answer(question)
        except (AgenticRagError, ValueError) as exc:
            _fail(exc)
        if json_out:
            console.print_json(to_json(result))
        else:
            _print_result(result)
        return

    # --- Interactive loop -----------------------------------------------------
    console.print()
    console.print(
        Panel(
            "[bold cyan]Agentic RAG[/bold cyan]\n"
            "[white]Ask anything about the ingested documents.[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )
    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break

        try:
            with console.status("[cyan]Thinking...[/cyan]"):
                result = comps.pipeline.answer(raw)
        except AgenticRagError as exc:
            console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
            continue
        _print_result(result)


def _print_result(result: FinalAnswer) -> None:
    """Render a FinalAnswer to the terminal using Rich."""
    border = "green" if result.grounded else "yellow"
    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title=f"[bold {border}]Answer[/bold {border}]",
            border_style=border,
            expand=True,
        )
    )

    if result.citations:
        table = Table("Chunk", "Title", "Index", "Score", box=box.SIMPLE, header_style="bold dim")
        for cit in result.citations:
            table.add_row(
                str(cit.chunk_id),
                cit.title[:55] + ("..." if len(cit.title) > 55 else ""),
                str(cit.chunk_index),
                f"{cit.score:.3f}",
            )
        console.print(table)

    console.print(
        f"[dim]grounded={'yes' if result.grounded else 'no'}  attempts={result.attempts}[/dim]\n"
    )


@app.command()
def reembed(
    scope: str = typer.Option("latest", "--scope", help="'latest' or 'all' document versions"),
    model: Optional[str] = typer.Option(None, "--model", help="Model tag to store (default: configured model)"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Recompute embeddings for stored chunks, e.g. after changing the embedding model."""
    comps = _build(config)
    try:
        with console.status("[cyan]Re-embedding chunks...[/cyan]"):
            updated = comps.ingest.reembed(scope, model)
    except (AgenticRagError, ValueError) as exc:
        _fail(exc)
    console.print(f"[green][OK] Re-embedded {updated} chunk(s)[/green]")


@app.command()
def status(config: Optional[str] = _CONFIG_OPTION) -> None:
    """Show corpus statistics."""
    comps = _build(config)
    try:
        stats = comps.store.stats()
    except AgenticRagError as exc:
        _fail(exc)

    console.print()
    console.print("[bold]Corpus[/bold]")
    console.print(f"  Latest documents : [green]{stats.latest_documents}[/green]")
    console.print(f"  All versions     : {stats.total_documents}")
    console.print(f"  Chunks           : {stats.chunks}")
    console.print(f"  Embedding model  : [cyan]{stats.embedding_model}[/cyan]")
    console.print()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Start the FastAPI server (app.server:app) with uvicorn."""
    import uvicorn

    if config:
        os.environ["AGENTIC_RAG_CONFIG"] = config
    uvicorn.run("app.server:app", host=host, port=port, reload=reload)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
