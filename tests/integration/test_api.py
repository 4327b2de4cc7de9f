import pytest
from fastapi.testclient import TestClient


def test_api_documents_query_feedback_and_learning(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "AGENTIC_RAG_DB", "AZURE_SEARCH_ENDPOINT", "AZURE_SEARCH_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    # Import after environment setup so the extractive generator and in-memory store are used.
    from agentic_rag.api.main import app

    with TestClient(app) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["generator_mode"] == "extractive"

        created = client.post(
            "/documents",
            json={
                "title": "Refund Policy",
                "content": (
                    "Our refund policy allows customers to request a refund within 30 days of purchase. "
                    "Refunds are issued to the original payment method."
                ),
                "doc_id": "api-refund",
                "metadata": {"source": "handbook"},
            },
        )
        assert created.status_code == 200
        assert created.json()["chunks_created"] >= 1

        duplicate = client.post("/documents", json={"title": "Refund Policy", "content": "x", "doc_id": "api-refund"})
        assert duplicate.status_code == 400

        missing = client.put("/documents/not-there", json={"content": "new text"})
        assert missing.status_code == 404

        edited = client.put("/documents/api-refund", json={"metadata": {"reviewed": True}})
        assert edited.status_code == 200
        assert edited.json()["metadata"]["reviewed"] is True

        chunked = client.post(
            "/chunks",
            json={"content": "First paragraph.\n\nSecond paragraph.", "strategy": "paragraph", "project_2d": True},
        )
        assert chunked.status_code == 200
        assert len(chunked.json()["items"]) == len(chunked.json()["points"]) == 2

        answered = client.post("/query", json={"question": "What is the refund policy?"})
        assert answered.status_code == 200
        payload = answered.json()
        assert payload["sources"] == ["Refund Policy"]
        assert payload["retrieval"]["documents"] == [{"id": "api-refund", "title": "Refund Policy"}]
        assert payload["routing"]["intent"] == "factual"
        assert payload["evaluation"]["confidence"] >= 0.6
        assert payload["progress"][-1]["progress"] == 100

        rejected = client.post("/query", json={"question": "What is the refund policy?", "max_iterations": 0})
        assert rejected.status_code == 400

        recorded = client.post("/feedback", json={"run_id": payload["run_id"], "feedback": "negative"})
        assert recorded.status_code == 200
        assert client.post("/feedback", json={"run_id": "run-unknown", "feedback": "positive"}).status_code == 404
        assert client.post("/feedback", json={"run_id": payload["run_id"], "feedback": "meh"}).status_code == 422

        metrics = client.get("/metrics", params={"intent": "factual"})
        assert metrics.status_code == 200
        assert metrics.json()["items"][0]["total_queries"] == 1
        assert metrics.json()["items"][0]["success_rate"] == 0.0
        assert metrics.json()["recommendation"]["based_on_history"] is False

        history = client.get("/history", params={"limit": 1})
        assert history.status_code == 200
        assert history.json()["items"][0]["user_feedback"] == "negative"

        assert client.get("/insights").status_code == 200
