"""Shared setup for commands that need a configured Engine."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from quarry.cli.errors import err_no_api_key, err_no_db, message_for
from quarry.config import ConfigError, QuarryConfig, load_config
from quarry.engine import Engine
from quarry.rag.llm_client import provider_of, validate_api_key

UserOption = Annotated[
    str,
    typer.Option("--user", "-u", envvar="QUARRY_USER", help="User id that owns the data."),
]

ProjectDirOption = Annotated[
    Path,
    typer.Option("--dir", help="Project directory holding quarry.yaml.", hidden=True),
]


def load_or_exit(console: Console, project_dir: Path) -> QuarryConfig:
    try:
        return load_config(project_dir)
    except ConfigError as exc:
        console.print(message_for(exc))
        raise typer.Exit(1)


def require_api_key(console: Console, model: str) -> None:
    try:
        validate_api_key(model)
    except EnvironmentError:
        console.print(err_no_api_key(provider_of(model)))
        raise typer.Exit(1)


def open_engine(console: Console, cfg: QuarryConfig, project_dir: Path) -> Engine:
    """Build the Engine; the database must already exist (see ``quarry init``)."""
    if cfg.storage.db != ":memory:":
        db_path = Path(cfg.storage.db).expanduser()
        if not db_path.is_absolute():
            db_path = project_dir / db_path
        if not db_path.exists():
            console.print(err_no_db(cfg.storage.db))
            raise typer.Exit(1)
    return Engine.from_config(cfg, project_dir)
