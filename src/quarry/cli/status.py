"""quarry status — projects, documents and what each document is ready for."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from quarry.cli.errors import err_no_db
from quarry.cli.session import ProjectDirOption, UserOption, load_or_exit
from quarry.config import QuarryConfig
from quarry.db.connection import Database
from quarry.db.models import Project
from quarry.db.repository import Repository
from quarry.db.schema import initialize

console = Console()


def status_cmd(
    user: UserOption = "local",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Show the user's projects and their documents."""
    cfg = load_or_exit(console, project_dir)
    db_path = project_dir / cfg.storage.db
    if not db_path.exists():
        console.print(err_no_db(cfg.storage.db))
        raise typer.Exit(1)

    _show_config_panel(cfg, db_path)

    conn = Database(db_path).connect()
    try:
        initialize(conn)
        repo = Repository(conn)
        projects = repo.list_projects(user)
        if not projects:
            console.print(
                Panel(
                    f"[yellow]No projects for user '{user}'.[/]\n"
                    "  Run:  quarry ingest <file> --project <name>",
                    title="[bold]Projects[/]",
                    expand=False,
                )
            )
            return
        for project in projects:
            _show_project(repo, project)
    finally:
        conn.close()


def _show_config_panel(cfg: QuarryConfig, db_path: Path) -> None:
    size_mb = db_path.stat().st_size / (1024 * 1024)
    assistant = cfg.assistant.id or "[yellow]not configured[/]"
    lines = [
        f"Database:   {db_path} ({size_mb:.1f} MB)",
        f"Model:      {cfg.generation.model}",
        f"Embeddings: {cfg.embedding.model}",
        f"Tabular:    {cfg.tabular.url}",
        f"Assistant:  {assistant}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Quarry[/]", expand=False))


def _show_project(repo: Repository, project: Project) -> None:
    stats = repo.project_stats(project.id, project.user_id)
    header = f"[bold]{project.name}[/]  ({project.id})"
    if stats is not None:
        header += f"  |  Documents: {stats.document_count}  |  Chunks: {stats.chunk_count:,}"
    if project.thread_id:
        header += f"  |  Thread: {project.thread_id}"

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Document")
    table.add_column("Id", style="dim")
    table.add_column("Type")
    table.add_column("Ready for")
    table.add_column("Provider file")

    for doc in repo.list_documents(project.id, project.user_id):
        handle = repo.get_dataframe_handle(doc.id)
        if handle is not None:
            ready = f"[green]structured[/] ({handle.row_count:,} rows)"
        elif repo.count_chunks(doc.id):
            ready = f"[green]text[/] ({repo.count_chunks(doc.id)} chunks)"
        else:
            ready = "[yellow]nothing indexed[/]"
        table.add_row(
            doc.filename,
            doc.id,
            doc.file_type,
            ready,
            doc.provider_file_id or "[yellow]pending[/]",
        )

    console.print(Panel(table, title=header, expand=False))
