"""quarry init — scaffold a project directory.

Creates:
  quarry.yaml        — project config (models, tabular service, assistant)
  .quarry.db         — empty database with schema
  .quarry-objects/   — local object store for uploaded files
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from quarry.cli.errors import message_for
from quarry.config import ConfigError, load_config, write_project_config
from quarry.db.connection import Database
from quarry.db.schema import initialize

console = Console()


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing quarry.yaml."),
    ] = False,
) -> None:
    """Initialize a Quarry project: config, database and object store."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    cfg_existed = (project_dir / "quarry.yaml").exists()
    cfg_path = write_project_config(project_dir, overwrite=force)
    if cfg_existed and not force:
        console.print(f"  [yellow]⚠[/] {cfg_path.name} exists, left unchanged (use --force)")
    else:
        console.print(f"  [green]✓[/] {cfg_path.name}")

    try:
        cfg = load_config(project_dir)
    except ConfigError as exc:
        console.print(message_for(exc))
        raise typer.Exit(1)

    db_path = project_dir / cfg.storage.db
    conn = Database(db_path).connect()
    try:
        initialize(conn)
    finally:
        conn.close()
    console.print(f"  [green]✓[/] {cfg.storage.db}")

    (project_dir / cfg.storage.root).mkdir(parents=True, exist_ok=True)
    console.print(f"  [green]✓[/] {cfg.storage.root}/")

    console.print(f"\n[bold green]✓ Quarry project initialized in {project_dir}.[/]")
    console.print("\nNext steps:")
    console.print("  1. quarry ingest <file> --project <name>     (add documents)")
    console.print("  2. quarry ask \"question\" --document <id>    (ask about one file)")
    console.print("  3. quarry assistant create                   (enable project-wide threads)")
