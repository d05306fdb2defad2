"""
Vector Search - CLI Entry Point
--------------------------------
Exposes Typer commands for document management and question answering.

Usage:
    python -m vectorsearch.main import docs/italy.pdf            # Import a file
    python -m vectorsearch.main import notes.md --id <uuid>      # Replace a document
    python -m vectorsearch.main ask "What is the capital of Italy?"
    python -m vectorsearch.main ask "..." --stream --conversation-id <uuid>
    python -m vectorsearch.main chat                             # Interactive loop
    python -m vectorsearch.main documents                        # List documents
    python -m vectorsearch.main chunks <document-id>             # List chunks
    python -m vectorsearch.main delete <document-id> [<id> ...]  # Delete documents
"""
from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from vectorsearch.decoding.decoders import guess_content_type
from vectorsearch.errors import VectorSearchError
from vectorsearch.schemas import Citation, Question, QuestionResponse, StreamState
from vectorsearch.serving.pipeline import VectorSearchService
from vectorsearch.settings import DEFAULT_CONFIG_PATH, Settings, load_settings
from vectorsearch.utils.logger import setup_logger

app = typer.Typer(
    name="vectorsearch",
    help="Vector Search - retrieval-augmented question answering over your documents",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML")


# --- Helpers ------------------------------------------------------------------

def truncate_text(text: str, max_chars: int = 500) -> str:
    """Truncate text to max_chars, appending ellipsis if truncated."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rsplit(" ", 1)[0] + "..."


def _init(config: str, console_level: Optional[str] = None) -> tuple[Settings, VectorSearchService]:
    settings = load_settings(config)
    setup_logger(settings.logging, console_level=console_level)
    return settings, VectorSearchService.from_settings(settings)


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Not a valid id: {value}[/red]")
        raise typer.Exit(1)


def _print_citations(citations: list[Citation]) -> None:
    if not citations:
        return
    table = Table(
        "No.", "File", "Page", "Quote",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold dim",
    )
    for number, citation in enumerate(citations, start=1):
        table.add_row(
            str(number),
            truncate_text(citation.file_name, 40),
            str(citation.page_number) if citation.page_number is not None else "-",
            truncate_text(citation.quote, 80),
        )
    console.print(table)


def _print_usage(response: QuestionResponse) -> None:
    usage = response.token_usage
    if usage is None:
        return
    parts = []
    if usage.reformulation is not None:
        parts.append(f"reformulation={usage.reformulation.total_token_count}")
    if usage.embedding_token_count is not None:
        parts.append(f"embedding={usage.embedding_token_count}")
    if usage.question is not None:
        parts.append(
            f"question={usage.question.input_token_count}+{usage.question.output_token_count}"
        )
    console.print(f"[dim]tokens: {'  '.join(parts)}[/dim]\n")


def _print_response(response: QuestionResponse) -> None:
    """Render a QuestionResponse to the terminal using Rich."""
    if response.reformulated_question and response.reformulated_question != response.original_question:
        console.print(f"[dim]Searching for: {response.reformulated_question}[/dim]")

    console.print()
    console.print(
        Panel(
            Markdown(response.answer or ""),
            title="[bold green]Answer[/bold green]",
            border_style="green",
            expand=True,
        )
    )
    _print_citations(response.citations or [])
    _print_usage(response)


async def _stream_answer(service: VectorSearchService, question: Question, reformulate: bool) -> None:
    """Print APPEND fragments as they arrive, then citations and usage."""
    start: Optional[QuestionResponse] = None
    async for message in service.ask_streaming(question, reformulate=reformulate):
        if message.stream_state == StreamState.START:
            start = message
            if message.reformulated_question != message.original_question:
                console.print(f"[dim]Searching for: {message.reformulated_question}[/dim]")
            console.print()
        elif message.stream_state == StreamState.APPEND:
            console.print(message.answer, end="", markup=False, highlight=False, soft_wrap=True)
        else:
            console.print("\n")
            _print_citations(message.citations or [])
            # START carries reformulation/embedding usage, END the answer usage
            if start is not None and start.token_usage and message.token_usage:
                message.token_usage.reformulation = start.token_usage.reformulation
                message.token_usage.embedding_token_count = start.token_usage.embedding_token_count
            _print_usage(message)


# --- Commands -----------------------------------------------------------------

@app.command("import")
def import_document(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to import"),
    document_id: Optional[str] = typer.Option(
        None, "--id", help="Replace the document with this id instead of creating a new one"
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Document name (default: file name)"),
    content_type: Optional[str] = typer.Option(
        None, "--content-type", help="Override the content type guessed from the file name"
    ),
    config: str = ConfigOption,
) -> None:
    """
    Import a document: decode, chunk, embed, and store it.

    \b
    Supported formats: .txt, .md, .pdf, .docx
    """
    _, service = _init(config)
    doc_id = _parse_uuid(document_id) if document_id else None
    resolved_type = content_type or guess_content_type(path.name)

    try:
        with console.status(f"[cyan]Importing {path.name}...[/cyan]"):
            with open(path, "rb") as stream:
                result = asyncio.run(
                    service.import_document(stream, name or path.name, resolved_type, doc_id)
                )
    except VectorSearchError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[green][OK] Imported[/green] {name or path.name} "
        f"| id [bold]{result.document_id}[/bold] "
        f"| {result.embedding_token_count:,} embedding tokens"
    )


@app.command()
def ask(
    question: str = typer.Argument(..., help="The question to ask"),
    conversation_id: Optional[str] = typer.Option(
        None, "--conversation-id", help="Continue an existing conversation"
    ),
    stream: bool = typer.Option(False, "--stream", help="Print the answer while it is generated"),
    no_reformulate: bool = typer.Option(
        False, "--no-reformulate", help="Search with the question as typed"
    ),
    json_out: bool = typer.Option(False, "--json", help="Print the response as JSON"),
    config: str = ConfigOption,
) -> None:
    """Ask a single question against the imported documents."""
    _, service = _init(config, console_level="WARNING" if stream or json_out else None)
    cid = _parse_uuid(conversation_id) if conversation_id else uuid.uuid4()
    request = Question(conversation_id=cid, text=question)

    if stream and not json_out:
        asyncio.run(_stream_answer(service, request, reformulate=not no_reformulate))
    else:
        response = asyncio.run(service.ask_question(request, reformulate=not no_reformulate))
        if json_out:
            console.print_json(response.model_dump_json(exclude_none=True))
        else:
            _print_response(response)
    if not json_out:
        console.print(f"[dim]conversation id: {cid}[/dim]")


@app.command()
def chat(
    no_reformulate: bool = typer.Option(
        False, "--no-reformulate", help="Search with the questions as typed"
    ),
    config: str = ConfigOption,
) -> None:
    """Interactive conversation with streamed answers."""
    _, service = _init(config, console_level="WARNING")
    asyncio.run(_chat_loop(service, reformulate=not no_reformulate))


async def _chat_loop(service: VectorSearchService, reformulate: bool) -> None:
    cid = uuid.uuid4()
    console.print()
    console.print(
        Panel(
            "[bold cyan]Vector Search[/bold cyan]\n"
            f"[white]{len(await service.get_documents())} document(s) loaded[/white]",
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
        if len(raw) > 4096:
            console.print("[yellow]Questions are limited to 4096 characters.[/yellow]")
            continue

        await _stream_answer(service, Question(conversation_id=cid, text=raw), reformulate)


@app.command()
def documents(config: str = ConfigOption) -> None:
    """List imported documents."""
    _, service = _init(config, console_level="WARNING")
    docs = asyncio.run(service.get_documents())
    if not docs:
        console.print("[yellow]No documents imported yet.  Run: vectorsearch import <file>[/yellow]")
        return

    table = Table("Id", "Name", "Chunks", "Created", box=box.SIMPLE, header_style="bold dim")
    for doc in docs:
        table.add_row(
            str(doc.id),
            doc.name,
            str(doc.chunk_count),
            doc.creation_date.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def chunks(
    document_id: str = typer.Argument(..., help="Document id"),
    full: bool = typer.Option(False, "--full", help="Show complete chunk text"),
    config: str = ConfigOption,
) -> None:
    """List the chunks of a document."""
    _, service = _init(config, console_level="WARNING")
    doc_chunks = asyncio.run(service.get_document_chunks(_parse_uuid(document_id)))
    if not doc_chunks:
        console.print(f"[yellow]No chunks found for document {document_id}[/yellow]")
        raise typer.Exit(1)

    table = Table("#", "Page", "Idx", "Content", box=box.SIMPLE, header_style="bold dim")
    for chunk in doc_chunks:
        table.add_row(
            str(chunk.index),
            str(chunk.page_number) if chunk.page_number is not None else "-",
            str(chunk.index_on_page),
            chunk.content if full else truncate_text(chunk.content, 120),
        )
    console.print(table)


@app.command()
def delete(
    document_ids: list[str] = typer.Argument(..., help="One or more document ids"),
    config: str = ConfigOption,
) -> None:
    """Delete documents and all their chunks."""
    _, service = _init(config, console_level="WARNING")
    ids = [_parse_uuid(value) for value in document_ids]
    removed = asyncio.run(service.delete_documents(ids))
    if removed == 0:
        console.print("[yellow]No matching documents.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green][OK] Deleted {removed} document(s)[/green]")


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
