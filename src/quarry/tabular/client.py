"""HTTP client for the external tabular execution service.

The service keeps one in-memory dataframe per document id and runs submitted
code against it. Two endpoints:

  POST /load-dataframe   {document_id, file_content (base64), file_type}
      → {success, row_count, columns, schema_stats, sample_rows}
  POST /execute-pandas   {document_id, operation}
      → {success: true, result} | {success: false, error}

This engine never runs generated code itself.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from quarry.db.models import DataFrameHandle
from quarry.errors import ExecutionError, HandleMissing, UpstreamUnavailable

logger = logging.getLogger(__name__)

_SERVICE = "tabular service"
_MISSING_HINTS = ("not loaded", "no dataframe", "not found")


class TabularClient:
    """Thin synchronous client; one instance per process, shared by requests."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TabularClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load(self, document_id: str, content: bytes, file_type: str) -> DataFrameHandle:
        """Load *content* as the dataframe for *document_id*.

        Raises:
            UpstreamUnavailable: Service unreachable, non-2xx, or ``success=false``.
        """
        payload = {
            "document_id": document_id,
            "file_content": base64.b64encode(content).decode("ascii"),
            "file_type": file_type,
        }
        body = self._post("/load-dataframe", payload)
        if not body.get("success", False):
            raise UpstreamUnavailable(_SERVICE, str(body.get("error") or "load failed"))
        return _handle_from_body(document_id, body)

    def execute(self, document_id: str, code: str) -> Any:
        """Run *code* against the loaded dataframe and return its ``result``.

        Raises:
            HandleMissing: The service holds no dataframe for *document_id*.
            ExecutionError: The code raised, or the response carried no result.
            UpstreamUnavailable: Service unreachable or non-2xx.
        """
        body = self._post(
            "/execute-pandas",
            {"document_id": document_id, "operation": code},
            missing_ok=True,
        )
        if body.get("_missing"):
            raise HandleMissing(f"No dataframe loaded for document {document_id}")
        if not body.get("success", False):
            error = str(body.get("error") or "execution failed")
            if any(hint in error.lower() for hint in _MISSING_HINTS):
                raise HandleMissing(error)
            raise ExecutionError(error)
        if "result" not in body:
            raise ExecutionError("Execution response has no 'result'")
        return body["result"]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _post(self, path: str, payload: dict, *, missing_ok: bool = False) -> dict:
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(_SERVICE, str(exc)) from exc

        if missing_ok and response.status_code == 404:
            return {"_missing": True}
        if response.status_code >= 400:
            # 4xx/5xx bodies may still carry a structured execution error.
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("success") is False and response.status_code < 500:
                return body
            raise UpstreamUnavailable(_SERVICE, f"{path} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(_SERVICE, f"{path} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamUnavailable(_SERVICE, f"{path} returned {type(body).__name__}")
        return body


def _handle_from_body(document_id: str, body: dict) -> DataFrameHandle:
    columns = [str(c) for c in body.get("columns") or []]
    stats = body.get("schema_stats") or {}
    if not stats and isinstance(body.get("dtypes"), dict):
        stats = {col: {"dtype": str(dtype)} for col, dtype in body["dtypes"].items()}
    sample_rows = body.get("sample_rows") or body.get("sample_data") or []
    return DataFrameHandle(
        document_id=document_id,
        row_count=int(body.get("row_count") or 0),
        columns=columns,
        schema_stats=stats,
        sample_rows=sample_rows,
    )
