"""quarry link / quarry fetch — expiring read links for stored documents.

Links are signed with QUARRY_STORAGE_SECRET and stay valid for
``storage.url_ttl`` seconds (quarry.yaml).
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from quarry.cli.errors import message_for
from quarry.cli.session import ProjectDirOption, UserOption, load_or_exit, open_engine
from quarry.errors import QuarryError

console = Console()


def link_cmd(
    document: Annotated[str, typer.Argument(help="Document id (see quarry status).")],
    user: UserOption = "local",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Print a signed, expiring read link for a document."""
    cfg = load_or_exit(console, project_dir)
    with open_engine(console, cfg, project_dir) as engine:
        try:
            url = engine.document_link(document, user)
        except QuarryError as exc:
            console.print(message_for(exc))
            raise typer.Exit(1)
    console.print(url, markup=False, soft_wrap=True)
    console.print(f"[dim]Valid for {cfg.storage.url_ttl}s.[/]")


def fetch_cmd(
    url: Annotated[str, typer.Argument(help="A link printed by quarry link.")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Where to save the file (default: its own name)."),
    ] = None,
    user: UserOption = "local",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Download the document behind a signed link."""
    cfg = load_or_exit(console, project_dir)
    with open_engine(console, cfg, project_dir) as engine:
        try:
            filename, data = engine.open_link(url, user)
        except QuarryError as exc:
            console.print(message_for(exc))
            raise typer.Exit(1)
    target = output or Path(filename)
    target.write_bytes(data)
    console.print(f"[green]✓[/] Saved {target} ({len(data):,} bytes)")
