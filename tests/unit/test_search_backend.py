import json

import httpx
import pytest

from agentic_rag.errors import SearchBackendError
from agentic_rag.retrieval.search_backend import AzureSearchBackend


def _backend(handler) -> AzureSearchBackend:
    return AzureSearchBackend(
        "https://search.example.net/",
        "secret-key",
        max_attempts=3,
        retry_initial_seconds=0,
        retry_max_seconds=0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_query_posts_search_body_and_maps_hits() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "value": [
                    {"id": "refund", "title": "Refund Policy", "content": "Refunds...", "@search.score": 2.5},
                    {"id": "shipping", "title": None, "@search.score": 1.0},
                ]
            },
        )

    hits = _backend(handler).query("refund policy", "handbook", 3, mode="keyword")

    assert [(hit.id, hit.title, hit.score) for hit in hits] == [
        ("refund", "Refund Policy", 2.5),
        ("shipping", "", 1.0),
    ]
    (request,) = seen
    assert request.url.path == "/indexes/handbook/docs/search"
    assert request.url.params["api-version"] == AzureSearchBackend.api_version
    assert request.headers["api-key"] == "secret-key"
    body = json.loads(request.content)
    assert body == {"search": "refund policy", "top": 3, "select": "id,title,content", "queryType": "simple"}


def test_semantic_mode_requests_semantic_ranking() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"value": []})

    assert _backend(handler).query("refund", "handbook", 5) == []
    assert bodies[0]["queryType"] == "semantic"
    assert bodies[0]["semanticConfiguration"] == "default"


def test_transient_status_is_retried() -> None:
    statuses = iter([503, 429, 200])
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        status = next(statuses)
        if status != 200:
            return httpx.Response(status, text="busy")
        return httpx.Response(200, json={"value": [{"id": "refund", "@search.score": 1.0}]})

    hits = _backend(handler).query("refund", "handbook", 5)

    assert calls == 3
    assert hits[0].id == "refund"


def test_permanent_status_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400, text="bad request")

    with pytest.raises(SearchBackendError) as exc_info:
        _backend(handler).query("refund", "handbook", 5)

    assert calls == 1
    assert exc_info.value.status_code == 400


def test_exhausted_retries_and_transport_errors_raise_backend_error() -> None:
    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SearchBackendError) as exc_info:
        _backend(unavailable).query("refund", "handbook", 5)
    assert exc_info.value.status_code == 503

    with pytest.raises(SearchBackendError):
        _backend(unreachable).query("refund", "handbook", 5)


def test_malformed_payload_raises_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"value": [{"title": "missing id"}]})

    with pytest.raises(SearchBackendError):
        _backend(handler).query("refund", "handbook", 5)


def test_endpoint_and_key_are_required() -> None:
    with pytest.raises(ValueError):
        AzureSearchBackend("", "key")
