"""Managed search backend contract and the Azure AI Search adapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from agentic_rag.errors import SearchBackendError

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(slots=True)
class SearchHit:
    id: str
    title: str
    content: str
    score: float


class SearchBackend(Protocol):
    """Narrow contract for an optional managed search service."""

    def query(self, query: str, index_name: str, top_k: int, *, mode: str = "semantic") -> list[SearchHit]:
        """Return ranked hits; raise `SearchBackendError` on failure."""


def is_transient_error(exc: BaseException) -> bool:
    """Rate limits, 5xx responses and transport errors are worth retrying."""
    if isinstance(exc, SearchBackendError):
        return exc.status_code in TRANSIENT_HTTP_CODES
    return isinstance(exc, httpx.TransportError)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "search backend retry attempt %s",
        retry_state.attempt_number,
        extra={
            "attempt": retry_state.attempt_number,
            "error": str(exc) if exc else None,
            "error_type": type(exc).__name__ if exc else None,
        },
    )


class AzureSearchBackend:
    """Azure AI Search REST adapter.

    Transient failures (429, 5xx, connection errors, timeouts) are retried with
    exponential backoff and jitter. Permanent failures raise immediately. Every
    failure that escapes is a `SearchBackendError`.
    """

    api_version = "2023-11-01"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        retry_initial_seconds: float = 0.5,
        retry_max_seconds: float = 4.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not endpoint or not api_key:
            raise ValueError("endpoint and api_key are required for AzureSearchBackend")
        self.endpoint = endpoint.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._headers = {"Content-Type": "application/json", "api-key": api_key}
        self._retrying = retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=retry_initial_seconds,
                max=retry_max_seconds,
                jitter=retry_initial_seconds,
            ),
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry,
            reraise=True,
        )

    def query(self, query: str, index_name: str, top_k: int, *, mode: str = "semantic") -> list[SearchHit]:
        body: dict[str, Any] = {
            "search": query,
            "top": top_k,
            "select": "id,title,content",
        }
        if mode in ("semantic", "hybrid"):
            body["queryType"] = "semantic"
            body["semanticConfiguration"] = "default"
        else:
            body["queryType"] = "simple"

        try:
            payload = self._retrying(self._post)(f"/indexes/{index_name}/docs/search", body)
        except httpx.HTTPError as exc:
            raise SearchBackendError(f"Azure Search request failed: {exc}") from exc

        try:
            return [
                SearchHit(
                    id=str(item["id"]),
                    title=str(item.get("title") or ""),
                    content=str(item.get("content") or ""),
                    score=float(item.get("@search.score") or 0.0),
                )
                for item in payload.get("value", [])
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise SearchBackendError(f"Malformed Azure Search response: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        response = self._client.post(
            f"{self.endpoint}{path}",
            params={"api-version": self.api_version},
            headers=self._headers,
            json=body,
        )
        if response.status_code >= 400:
            raise SearchBackendError(
                f"Azure Search API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise SearchBackendError("Azure Search returned a non-JSON body") from exc
