"""Structured query engine: generate code, gate it, run it remotely, format it.

    GENERATING → EXECUTING → INTERPRETING → DONE
    GENERATING | EXECUTING → FALLBACK → DONE

Numbers in the final answer come from the execution service, never from the
model: the interpretation prompt only formats the computed ``result``, and a
scalar result the formatter drops is rendered deterministically instead.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from quarry.db.models import DataFrameHandle
from quarry.errors import (
    CodeSafetyViolation,
    ExecutionError,
    HandleMissing,
    UpstreamUnavailable,
)
from quarry.rag import columns as colinfo
from quarry.rag import prompts
from quarry.rag.llm_client import LLMClient
from quarry.rag.safety import check_code, find_rule_violations, strip_code_fences
from quarry.tabular.client import TabularClient

logger = logging.getLogger(__name__)

UNAVAILABLE_ANSWER = (
    "I couldn't analyze this dataset right now. Please try again in a moment."
)

_NON_DIGIT_RE = re.compile(r"[^\d]")


class Phase(str, Enum):
    GENERATING = "generating"
    EXECUTING = "executing"
    INTERPRETING = "interpreting"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass
class StructuredAnswer:
    """Answer plus diagnostics. Only ``answer`` is ever shown to the user."""

    answer: str
    states: list[Phase] = field(default_factory=list)
    code: str | None = None
    result: Any = None
    confidence: str = "high"
    fallback_reason: str | None = None


class _Fallback(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StructuredQueryEngine:
    """Answer questions over a dataset held by the tabular service.

    Args:
        llm: Completion client (temperature and seed taken from it).
        tabular: Execution service client.
        reload: Called with a document id when the service has lost the
            dataframe; returns the new handle or None. Without it a missing
            handle goes straight to the fallback.
    """

    def __init__(
        self,
        llm: LLMClient,
        tabular: TabularClient,
        *,
        reload: Callable[[str], DataFrameHandle | None] | None = None,
    ) -> None:
        self._llm = llm
        self._tabular = tabular
        self._reload = reload

    def answer(self, question: str, handle: DataFrameHandle) -> StructuredAnswer:
        states = [Phase.GENERATING]
        code: str | None = None
        try:
            code = self._generate(question, handle)
            states.append(Phase.EXECUTING)
            result = self._execute(handle.document_id, code)
        except _Fallback as fb:
            states.append(Phase.FALLBACK)
            text = self._fallback(question, handle)
            states.append(Phase.DONE)
            return StructuredAnswer(
                answer=text,
                states=states,
                code=code,
                confidence="low",
                fallback_reason=fb.reason,
            )

        states.append(Phase.INTERPRETING)
        text = self._interpret(question, result)
        states.append(Phase.DONE)
        return StructuredAnswer(answer=text, states=states, code=code, result=result)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _generate(self, question: str, handle: DataFrameHandle) -> str:
        """Generate code, gate it, and regenerate once if it breaks a data rule."""
        periods = colinfo.period_columns(handle.columns)
        candidates = colinfo.total_candidates(handle.columns)
        total = colinfo.preferred_total_column(handle.columns)

        corrections: list[str] | None = None
        for attempt in (1, 2):
            messages = prompts.build_codegen_messages(
                question,
                handle,
                total_column=total,
                period_columns=periods,
                total_candidates=candidates,
                corrections=corrections,
            )
            try:
                code = strip_code_fences(self._llm.complete(messages))
            except UpstreamUnavailable as exc:
                logger.warning("Code generation failed: %s", exc)
                raise _Fallback("generation_failed") from exc

            try:
                check_code(code)
            except CodeSafetyViolation as exc:
                logger.warning("Generated code rejected (%s): %s", exc.reason, exc.snippet)
                raise _Fallback("unsafe_code") from exc

            violations = find_rule_violations(
                code,
                total_column=total,
                period_columns=periods,
                total_candidates=candidates,
            )
            if not violations:
                return code
            logger.info("Attempt %d broke %d data rule(s); %s", attempt, len(violations), violations)
            corrections = violations

        raise _Fallback("rule_violation")

    def _execute(self, document_id: str, code: str) -> Any:
        try:
            try:
                result = self._tabular.execute(document_id, code)
            except HandleMissing:
                if self._reload is None or self._reload(document_id) is None:
                    raise
                logger.info("Dataframe for %s reloaded; retrying execution", document_id)
                result = self._tabular.execute(document_id, code)
        except ExecutionError as exc:
            logger.warning("Execution failed for %s: %s", document_id, exc)
            raise _Fallback("execution_failed") from exc
        except UpstreamUnavailable as exc:
            logger.warning("Execution service unavailable: %s", exc)
            raise _Fallback("service_unavailable") from exc

        if result is None or result == "" or result == [] or result == {}:
            raise _Fallback("empty_result")
        if isinstance(result, float) and not math.isfinite(result):
            logger.warning("Execution for %s returned %r", document_id, result)
            raise _Fallback("non_finite_result")
        return result

    def _interpret(self, question: str, result: Any) -> str:
        try:
            text = self._llm.complete(prompts.build_interpretation_messages(question, result))
        except UpstreamUnavailable as exc:
            logger.warning("Interpretation failed, rendering result directly: %s", exc)
            return prompts.render_result(result)

        text = text.strip()
        if not text or not _keeps_number(text, result):
            return prompts.render_result(result)
        return text

    def _fallback(self, question: str, handle: DataFrameHandle) -> str:
        try:
            text = self._llm.complete(prompts.build_fallback_messages(question, handle))
        except UpstreamUnavailable as exc:
            logger.warning("Fallback analysis failed: %s", exc)
            return UNAVAILABLE_ANSWER
        return text.strip() or UNAVAILABLE_ANSWER


def _keeps_number(text: str, result: Any) -> bool:
    """For scalar numeric results, True only if the formatted text still shows it."""
    if isinstance(result, bool) or not isinstance(result, (int, float)):
        return True
    if not math.isfinite(result):
        return True
    whole = str(int(abs(result)))
    return whole in _NON_DIGIT_RE.sub("", text)
