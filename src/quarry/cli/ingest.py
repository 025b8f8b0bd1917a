"""quarry ingest — add files to a project.

File type dispatch (by extension):
  .csv .xlsx .xls  → tabular service (structured questions)
  .pdf             → PdfChunker
  anything else    → PlainTextChunker

Each file is also uploaded to the provider file store for project threads.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from quarry.cli.errors import err_file_not_found, message_for
from quarry.cli.session import ProjectDirOption, UserOption, load_or_exit, open_engine, require_api_key
from quarry.errors import QuarryError
from quarry.ingest.pipeline import IngestResult

console = Console()


def ingest_cmd(
    files: Annotated[
        list[Path],
        typer.Argument(help="Files to ingest."),
    ],
    project: Annotated[
        str,
        typer.Option("--project", "-p", help="Project name (created if missing)."),
    ] = "default",
    user: UserOption = "local",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Ingest one or more files into a project."""
    missing = [f for f in files if not f.is_file()]
    for path in missing:
        console.print(err_file_not_found(str(path)))
    if missing:
        raise typer.Exit(1)

    cfg = load_or_exit(console, project_dir)
    require_api_key(console, cfg.embedding.model)

    failures = 0
    with open_engine(console, cfg, project_dir) as engine:
        target = engine.repo.get_or_create_project(project, user)
        console.print(f"[bold]Project:[/] {target.name} ({target.id})")

        for path in files:
            console.print(f"\n[bold]→ {path.name}[/]")
            try:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    transient=True,
                    console=console,
                ) as prog:
                    prog.add_task("Ingesting…", total=None)
                    document = engine.add_document(target, path.name, path.read_bytes())
                    result = engine.ingest(document.id, document.storage_path)
            except QuarryError as exc:
                failures += 1
                console.print(message_for(exc))
                continue
            _report(result)

    if failures:
        raise typer.Exit(1)


def _report(result: IngestResult) -> None:
    if result.route == "structured":
        summary = f"{result.row_count:,} rows, {len(result.columns)} columns"
    else:
        summary = f"{result.char_count:,} chars, {result.chunk_count} chunks"
    console.print(f"  [green]✓[/] {result.route}: {summary}")
    console.print(f"  Document id: [bold]{result.document_id}[/]")
    if result.provider_file_id is None:
        console.print("  [yellow]⚠[/] Provider upload pending; project threads won't see this file yet.")
