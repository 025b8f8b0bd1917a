"""quarry ask — ask a question about one document or a whole project."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown

from quarry.cli.errors import err_no_assistant, err_no_scope, err_project_not_found, message_for
from quarry.cli.session import ProjectDirOption, UserOption, load_or_exit, open_engine, require_api_key
from quarry.engine import AskRequest
from quarry.errors import QuarryError

console = Console()


def ask_cmd(
    message: Annotated[str, typer.Argument(help="The question.")],
    document: Annotated[
        str | None,
        typer.Option("--document", "-d", help="Ask about this document id."),
    ] = None,
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Ask across this project (by name)."),
    ] = None,
    conversation: Annotated[
        str | None,
        typer.Option("--conversation", help="Continue this conversation id."),
    ] = None,
    sources: Annotated[
        bool,
        typer.Option("--sources", help="List the files the answer drew on."),
    ] = False,
    user: UserOption = "local",
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Answer a question from your ingested documents."""
    if bool(document) == bool(project):
        console.print(err_no_scope())
        raise typer.Exit(1)

    cfg = load_or_exit(console, project_dir)
    require_api_key(console, cfg.generation.model)

    with open_engine(console, cfg, project_dir) as engine:
        project_id = None
        if project:
            owned = engine.repo.list_projects(user)
            match = next((p for p in owned if p.name == project), None)
            if match is None:
                console.print(err_project_not_found(project, [p.name for p in owned]))
                raise typer.Exit(1)
            project_id = match.id
            if engine.threads is None:
                console.print(err_no_assistant())

        request = AskRequest(
            message=message,
            user_id=user,
            document_id=document,
            project_id=project_id,
            conversation_id=conversation,
        )
        try:
            response = engine.ask(request)
        except QuarryError as exc:
            console.print(message_for(exc))
            raise typer.Exit(1)

    console.print(Markdown(response.answer))
    if sources and response.citations:
        names = sorted({c.filename for c in response.citations})
        console.print("\n[dim]Sources: " + ", ".join(names) + "[/]")
