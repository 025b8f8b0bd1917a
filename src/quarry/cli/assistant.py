"""quarry assistant — provision the provider-side data-analyst assistant."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from quarry.cli.errors import message_for
from quarry.cli.session import ProjectDirOption, load_or_exit, require_api_key
from quarry.errors import UpstreamUnavailable
from quarry.rag.provider import ProviderClient
from quarry.rag.threads import create_assistant

console = Console()

assistant_app = typer.Typer(help="Manage the assistant used for project-wide questions.")


@assistant_app.command("create")
def create_cmd(
    model: Annotated[
        str | None,
        typer.Option("--model", help="Model for the assistant (default: assistant.model)."),
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Create the assistant and print its id."""
    cfg = load_or_exit(console, project_dir)
    chosen = model or cfg.assistant.model
    require_api_key(console, "openai/" + chosen.split("/")[-1])

    try:
        assistant_id = create_assistant(ProviderClient(), chosen.split("/")[-1])
    except UpstreamUnavailable as exc:
        console.print(message_for(exc))
        raise typer.Exit(1)

    console.print(f"[green]✓[/] Assistant created: [bold]{assistant_id}[/]")
    console.print("\nAdd it to quarry.yaml:")
    console.print(f"  assistant:\n    id: {assistant_id}")
    console.print("or export QUARRY_ASSISTANT_ID=" + assistant_id)
