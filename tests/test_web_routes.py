"""Tests for the JSON API routes.

Tests the FastAPI application routes using httpx AsyncClient. The app
state is wired with real services over a temporary database; the
inference server is an httpx.MockTransport.
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from notetriage.classifier.taxonomy import InferenceResult
from notetriage.config_schema import AppConfig
from notetriage.db import Note
from notetriage.services import Services, build_services
from notetriage.web.app import _STATE_ATTRS, create_app

DECISION_TEXT = "We decided to adopt SQLite because it is simpler than Postgres."

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeOllama:
    """Answers /api/tags and /api/generate with a configurable classification."""

    def __init__(self) -> None:
        self.models = ["qwen2.5:3b"]
        self.classification: dict[str, Any] = {
            "type": "learning",
            "intent": "implementation",
            "confidence": 0.5,
            "reasoning": "Explains a concept",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in self.models]})
        return httpx.Response(
            200,
            json={
                "response": json.dumps(self.classification),
                "prompt_eval_count": 200,
                "eval_count": 40,
            },
        )


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
async def services(
    data_dir: Path, sample_config_dict: dict[str, Any], fake_ollama: FakeOllama
) -> Services:
    """Build the real service graph against a temporary database."""
    config = AppConfig(**{**sample_config_dict, "database": {"path": str(data_dir / "web.db")}})
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_ollama))
    built = await build_services(config, http_client=http_client)
    yield built
    await built.aclose()
    await http_client.aclose()


@pytest.fixture
def app(services: Services) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()
    for name in _STATE_ATTRS:
        setattr(test_app.state, name, getattr(services, name))
    test_app.state.scheduler = None
    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    # Override lifespan to avoid real initialization
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


async def _seed_note(services: Services, note_id: str = "n1", title: str = "Threads") -> None:
    await services.store.save_note(Note(id=note_id, title=title, content="A thread is ..."))


async def _run(client: AsyncClient, note_ids: list[str]) -> dict[str, Any]:
    response = await client.post("/api/llm-inference/run", json={"note_ids": note_ids})
    assert response.status_code == 200
    return response.json()


# ---------------------------------------------------------------------------
# Tests: Health
# ---------------------------------------------------------------------------


async def test_health_healthy(client: AsyncClient):
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["inference"]["model_loaded"] is True
    assert data["pending_results"] == 0
    assert data["last_reclassify_run"] is None


async def test_health_degraded_when_model_missing(client: AsyncClient, fake_ollama: FakeOllama):
    fake_ollama.models = ["llama3:latest"]
    data = (await client.get("/api/health")).json()
    assert data["status"] == "degraded"
    assert "ollama pull" in data["inference"]["message"]


async def test_health_unconfigured():
    app = create_app()
    app.router.lifespan_context = _noop_lifespan
    for name in _STATE_ATTRS:
        setattr(app.state, name, None)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        health = await c.get("/api/health")
        pending = await c.get("/api/llm-inference/pending")

    assert health.json()["status"] == "unconfigured"
    assert pending.status_code == 503


# ---------------------------------------------------------------------------
# Tests: Re-classification
# ---------------------------------------------------------------------------


async def test_candidates_and_estimate(client: AsyncClient, services: Services):
    await _seed_note(services, "n1")
    await _seed_note(services, "n2")

    candidates = (await client.get("/api/llm-inference/candidates")).json()
    assert candidates["count"] == 2
    assert {c["reason"] for c in candidates["candidates"]} == {"no_llm_result"}

    estimate = (await client.get("/api/llm-inference/estimate", params={"limit": 1})).json()
    assert estimate["count"] == 1
    assert estimate["estimated_cost"] == 0


async def test_run_and_pending(client: AsyncClient, services: Services):
    await _seed_note(services)

    data = await _run(client, ["n1"])

    assert data["executed"] == 1
    assert data["results"][0]["status"] == "pending"
    assert data["results"][0]["type"] == "learning"

    pending = (await client.get("/api/llm-inference/pending")).json()
    assert pending["count"] == 1
    assert pending["items"][0]["title"] == "Threads"
    assert pending["items"][0]["suggested_type"] == "learning"


async def test_run_rejects_invalid_limit(client: AsyncClient):
    response = await client.post("/api/llm-inference/run", json={"limit": 0})
    assert response.status_code == 422


async def test_run_stale_notes(client: AsyncClient, services: Services):
    await _seed_note(services, "weak")
    await _seed_note(services, "strong")
    await _seed_note(services, "fresh")
    await services.store.insert_inference(
        "weak", InferenceResult(note_type="log", intent="unknown", confidence=0.3), "rule-v1"
    )
    await services.store.insert_inference(
        "strong", InferenceResult(note_type="log", intent="unknown", confidence=0.9), "rule-v1"
    )

    response = await client.post("/api/llm-inference/run", json={"stale": True})

    assert response.status_code == 200
    assert [r["note_id"] for r in response.json()["results"]] == ["weak"]


async def test_run_stale_with_note_ids_rejected(client: AsyncClient):
    response = await client.post(
        "/api/llm-inference/run", json={"stale": True, "note_ids": ["n1"]}
    )
    assert response.status_code == 422


async def test_notified_listing(client: AsyncClient, services: Services, fake_ollama: FakeOllama):
    await _seed_note(services)
    fake_ollama.classification = {"type": "decision", "confidence": 0.75}

    await _run(client, ["n1"])

    notified = (await client.get("/api/llm-inference/notified")).json()
    assert notified["count"] == 1
    assert notified["items"][0]["current_type"] == "decision"


async def test_pending_pagination_validation(client: AsyncClient):
    response = await client.get("/api/llm-inference/pending", params={"limit": 101})
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Tests: Review actions
# ---------------------------------------------------------------------------


async def test_approve(client: AsyncClient, services: Services):
    await _seed_note(services)
    result_id = (await _run(client, ["n1"]))["results"][0]["result_id"]

    response = await client.post(f"/api/llm-inference/results/{result_id}/approve")

    assert response.status_code == 200
    assert response.json() == {
        "status": "approved",
        "result_id": result_id,
        "note_id": "n1",
        "type": "learning",
    }
    latest = await services.store.get_latest_inference("n1")
    assert latest.model == "llm-qwen2.5:3b"


async def test_approve_twice_conflicts(client: AsyncClient, services: Services):
    await _seed_note(services)
    result_id = (await _run(client, ["n1"]))["results"][0]["result_id"]

    await client.post(f"/api/llm-inference/results/{result_id}/approve")
    response = await client.post(f"/api/llm-inference/results/{result_id}/approve")

    assert response.status_code == 409


async def test_approve_unknown_result(client: AsyncClient):
    response = await client.post("/api/llm-inference/results/9999/approve")
    assert response.status_code == 404


async def test_override(client: AsyncClient, services: Services):
    await _seed_note(services)
    result_id = (await _run(client, ["n1"]))["results"][0]["result_id"]

    response = await client.post(
        f"/api/llm-inference/results/{result_id}/override",
        json={"type": "decision", "reason": "It records a choice"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "overridden"
    assert data["type"] == "decision"
    assert data["previous_type"] == "learning"

    latest = await services.store.get_latest_inference("n1")
    assert latest.model == "user-override"
    assert latest.result.confidence == 1.0


async def test_override_invalid_type(client: AsyncClient, services: Services):
    await _seed_note(services)
    result_id = (await _run(client, ["n1"]))["results"][0]["result_id"]

    response = await client.post(
        f"/api/llm-inference/results/{result_id}/override", json={"type": "idea"}
    )

    assert response.status_code == 422
    assert (await services.store.get_llm_result(result_id)).status == "pending"


async def test_weekly_summary(client: AsyncClient, services: Services):
    await _seed_note(services)
    await _run(client, ["n1"])

    data = (await client.get("/api/llm-inference/weekly-summary")).json()

    assert data["stats"]["pending"] == 1
    assert len(data["pending_items"]) == 1


# ---------------------------------------------------------------------------
# Tests: Notes
# ---------------------------------------------------------------------------


async def test_infer_and_get_classification(client: AsyncClient):
    response = await client.post(
        "/api/notes/n1/infer", json={"title": "Storage", "content": DECISION_TEXT}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["inference"]["type"] == "decision"
    assert data["classification"]["primary_type"] == "decision"

    classification = (await client.get("/api/notes/n1/classification")).json()
    assert classification["model"] == "rule-v1"
    assert classification["inference"]["type"] == "decision"
    assert "needs_reinference" in classification


async def test_classification_missing(client: AsyncClient):
    response = await client.get("/api/notes/unknown/classification")
    assert response.status_code == 404


async def test_infer_requires_content(client: AsyncClient):
    response = await client.post("/api/notes/n1/infer", json={"title": "No body"})
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Tests: Promotions
# ---------------------------------------------------------------------------


async def _seed_promotion(services: Services) -> int:
    await _seed_note(services)
    return await services.detector.detect(
        "n1",
        InferenceResult(note_type="scratch", intent="design", confidence=0.6),
        InferenceResult(note_type="scratch", intent="unknown", confidence=0.3),
    )


async def test_list_promotions(client: AsyncClient, services: Services):
    notification_id = await _seed_promotion(services)

    data = (await client.get("/api/promotions")).json()

    assert data["count"] == 1
    item = data["items"][0]
    assert item["id"] == notification_id
    assert item["suggested_type"] == "decision"
    assert item["note_title"] == "Threads"


async def test_dismiss_promotion(client: AsyncClient, services: Services):
    notification_id = await _seed_promotion(services)

    response = await client.post(f"/api/promotions/{notification_id}/dismiss")
    assert response.status_code == 200
    assert response.json() == {"status": "dismissed", "notification_id": notification_id}

    again = await client.post(f"/api/promotions/{notification_id}/dismiss")
    assert again.status_code == 409


async def test_accept_promotion(client: AsyncClient, services: Services):
    notification_id = await _seed_promotion(services)

    response = await client.post(f"/api/promotions/{notification_id}/accept")

    assert response.status_code == 200
    assert response.json()["suggested_type"] == "decision"
    assert response.json()["note_id"] == "n1"


async def test_promotion_not_found(client: AsyncClient):
    response = await client.post("/api/promotions/9999/accept")
    assert response.status_code == 404


async def test_scan_promotions(client: AsyncClient, services: Services):
    await _seed_note(services)
    await services.store.insert_inference(
        "n1", InferenceResult(note_type="scratch", intent="design", confidence=0.6), "rule-v1"
    )

    response = await client.post("/api/promotions/scan")

    assert response.status_code == 200
    assert response.json()["created"] == 1
    again = (await client.post("/api/promotions/scan")).json()
    assert again == {"created": 0, "notification_ids": []}
