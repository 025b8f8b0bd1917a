"""Quarry CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from quarry import log
from quarry.cli.ask import ask_cmd
from quarry.cli.assistant import assistant_app
from quarry.cli.ingest import ingest_cmd
from quarry.cli.init import init_cmd
from quarry.cli.link import fetch_cmd, link_cmd
from quarry.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("quarry")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"quarry {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="quarry",
    help=(
        "Quarry — ask questions about your documents and spreadsheets.\n\n"
        "  quarry ingest  Add files to a project.\n"
        "  quarry ask     Ask about one document or a whole project."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging."),
    ] = False,
) -> None:
    """Quarry — document question answering."""
    log.configure(verbose=verbose)


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("ask")(ask_cmd)
app.command("status")(status_cmd)
app.command("link")(link_cmd)
app.command("fetch")(fetch_cmd)
app.add_typer(assistant_app, name="assistant")


@app.command("version")
def version_cmd() -> None:
    """Show the installed Quarry version."""
    typer.echo(f"quarry {_installed_version()}")


if __name__ == "__main__":
    app()
