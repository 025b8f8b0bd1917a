"""Quarry rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

No stack traces, generated code or routing details are ever printed.

Usage:
    from quarry.cli.errors import message_for
    console.print(message_for(exc))
    raise typer.Exit(1)
"""

from __future__ import annotations

from quarry.config import ConfigError
from quarry.errors import (
    AuthError,
    NotFoundError,
    PollTimeout,
    QuarryError,
    RunFailed,
    UpstreamUnavailable,
    ValidationError,
)

_ENV_MAP = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "azure": "AZURE_API_KEY",
}


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_var = _ENV_MAP.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".quarry.db") -> str:
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  quarry init"
    )


def err_config(detail: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration: {detail}\n"
        "  Fix quarry.yaml (or ~/.quarry/config.yaml) and try again."
    )


def err_no_scope() -> str:
    return (
        "[red]Error:[/] Say what to ask about.\n"
        "  Use exactly one of:  --document <id>  or  --project <name>"
    )


def err_project_not_found(name: str, known: list[str]) -> str:
    known_list = ", ".join(known) if known else "(none)"
    return (
        f"[red]Error:[/] Project '{name}' not found.\n"
        f"  Your projects: {known_list}\n"
        "  Run:  quarry ingest <file> --project <name>"
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def err_no_assistant() -> str:
    return (
        "[yellow]Note:[/] No assistant configured; project questions use document search.\n"
        "  Create one:  quarry assistant create"
    )


def message_for(exc: Exception) -> str:
    """Map an engine error to a short user-facing message."""
    if isinstance(exc, ValidationError):
        return f"[red]Error:[/] {exc}\n  Check the command arguments and try again."
    if isinstance(exc, AuthError):
        return (
            "[red]Error:[/] No user identity for this request.\n"
            "  Pass --user <id> or set QUARRY_USER."
        )
    if isinstance(exc, NotFoundError):
        return f"[red]Error:[/] {exc}.\n  Run:  quarry status  to list projects and documents."
    if isinstance(exc, RunFailed):
        detail = f" ({exc.last_error})" if exc.last_error else ""
        return (
            f"[red]Error:[/] The assistant could not finish ('{exc.status}'){detail}.\n"
            "  Try again, or ask about a single document with --document <id>."
        )
    if isinstance(exc, PollTimeout):
        return "[red]Error:[/] Timed out waiting for a response.\n  Try again in a moment."
    if isinstance(exc, UpstreamUnavailable):
        return (
            f"[red]Error:[/] The {exc.service} is not reachable right now.\n"
            "  Check your network and settings, then try again."
        )
    if isinstance(exc, ConfigError):
        return err_config(str(exc))
    if isinstance(exc, QuarryError):
        return f"[red]Error:[/] {exc}"
    return f"[red]Error:[/] {exc}"
