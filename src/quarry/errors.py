"""Exception taxonomy shared by the ingestion, retrieval and thread layers.

Validation, auth and not-found errors surface to the caller immediately.
Upstream and execution failures on the structured path are absorbed by the
fallback prompt; run failures surface with the provider's last-error payload.
"""

from __future__ import annotations

from typing import Any


class QuarryError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(QuarryError):
    """A required input is missing or malformed. Raised before any external call."""


class AuthError(QuarryError):
    """The request carries no authenticated principal."""


class NotFoundError(QuarryError):
    """The scope references a document or project the principal cannot see."""


class UpstreamUnavailable(QuarryError):
    """An external service was unreachable or answered with a non-2xx status."""

    def __init__(self, service: str, detail: str) -> None:
        super().__init__(f"{service} unavailable: {detail}")
        self.service = service
        self.detail = detail


class CodeSafetyViolation(QuarryError):
    """Generated code failed the static safety gate and was never dispatched."""

    def __init__(self, reason: str, snippet: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.snippet = snippet


class ExecutionError(QuarryError):
    """Remote execution failed or returned ``success=false``."""


class HandleMissing(ExecutionError):
    """The execution service has no dataframe loaded for the document."""


class RunFailed(QuarryError):
    """A thread run ended in a non-completed terminal state (or timed out)."""

    def __init__(self, status: str, last_error: Any = None) -> None:
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Assistant run ended with status '{status}'{detail}")
        self.status = status
        self.last_error = last_error


class PollTimeout(QuarryError):
    """A bounded poll loop hit its deadline before the terminal condition held."""

    def __init__(self, timeout: float, last: Any = None) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s")
        self.timeout = timeout
        self.last = last
