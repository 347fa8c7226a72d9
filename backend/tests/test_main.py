"""
Tests for main FastAPI application endpoints
"""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import main
from services import gemini
from services.errors import QuotaExceeded


@pytest.fixture(autouse=True)
def reset_rate_limits():
    main._rate_buckets.clear()
    yield
    main._rate_buckets.clear()


@pytest.fixture
def fake_gemini(monkeypatch, make_image):
    """Stub the four Gemini operations: every attempt is accepted."""
    state = {"quota": False, "keys": [], "style_calls": 0}

    async def analyze_color(item, api_key=None):
        state["keys"].append(api_key)
        if state["quota"] and api_key != "my-own-key":
            raise QuotaExceeded("429 RESOURCE_EXHAUSTED: quota")
        return "bright red cotton"

    async def style_image(collage, description, refinement_feedback="", api_key=None):
        state["style_calls"] += 1
        image = make_image((600, 600), (10, 200, 10))
        return [gemini.ResponsePart(mime_type=image.mime_type, data=image.base64)]

    async def judge_image(original_item, generated_cropped, description, api_key=None):
        return gemini.JudgeVerdict(decision="accept", feedback="Looks right.")

    async def filter_changed_images(original_model, candidates, api_key=None):
        return list(candidates)

    monkeypatch.setattr(gemini, "analyze_color", analyze_color)
    monkeypatch.setattr(gemini, "style_image", style_image)
    monkeypatch.setattr(gemini, "judge_image", judge_image)
    monkeypatch.setattr(gemini, "filter_changed_images", filter_changed_images)
    return state


def upload_files(sample_image_bytes):
    return {
        "fashion_item_image": ("item.png", sample_image_bytes, "image/png"),
        "model_image": ("model.png", sample_image_bytes, "image/png"),
    }


def test_root_endpoint(client: TestClient):
    """Test the root endpoint returns a valid response"""
    response = client.get("/")
    assert response.status_code == 200
    assert "Virtual Stylist API" in response.json()["message"]


def test_style_missing_images(client: TestClient, sample_image_bytes):
    response = client.post("/api/style")
    assert response.status_code == 400

    files = {"model_image": ("model.png", sample_image_bytes, "image/png")}
    response = client.post("/api/style", files=files)
    assert response.status_code == 400
    assert "both" in response.json()["detail"].lower()


def test_style_rejects_non_image_upload(client: TestClient, sample_image_bytes):
    files = {
        "fashion_item_image": ("item.txt", b"hello", "text/plain"),
        "model_image": ("model.png", sample_image_bytes, "image/png"),
    }
    response = client.post("/api/style", files=files)
    assert response.status_code == 400
    assert "Invalid file type" in response.json()["detail"]


def test_style_rejects_undecodable_image(client: TestClient, sample_image_bytes):
    files = {
        "fashion_item_image": ("item.png", b"not really a png", "image/png"),
        "model_image": ("model.png", sample_image_bytes, "image/png"),
    }
    response = client.post("/api/style", files=files)
    assert response.status_code == 422


def test_style_returns_final_image(client: TestClient, sample_image_bytes, fake_gemini):
    response = client.post("/api/style", files=upload_files(sample_image_bytes))

    assert response.status_code == 200
    payload = response.json()
    assert payload["final_image"].startswith("data:image/jpeg;base64,")
    assert payload["fallback_images"] is None
    assert payload["error"] is None
    assert payload["needs_api_key"] is False
    assert payload["state"] == "accepted"
    assert payload["attempts"] == 1
    assert [s["status"] for s in payload["steps"]] == ["complete"] * 4
    assert payload["steps"][1]["image_url"].startswith("data:image/jpeg;base64,")
    assert payload["session_id"]


def test_quota_error_then_api_key_reruns_same_inputs(client: TestClient, sample_image_bytes, fake_gemini):
    fake_gemini["quota"] = True

    response = client.post("/api/style", files=upload_files(sample_image_bytes))
    assert response.status_code == 200
    payload = response.json()
    assert payload["needs_api_key"] is True
    assert payload["final_image"] is None
    assert payload["steps"][-1]["status"] == "error"
    session_id = payload["session_id"]

    # No re-upload: the session still holds the inputs
    response = client.post(f"/api/sessions/{session_id}/api-key", data={"api_key": "  my-own-key  "})
    assert response.status_code == 200
    payload = response.json()
    assert payload["rerun"] is True
    assert payload["final_image"].startswith("data:image/")
    assert payload["needs_api_key"] is False
    assert fake_gemini["keys"][-1] == "my-own-key"


def test_api_key_survives_reset(client: TestClient, sample_image_bytes, fake_gemini):
    session_id = client.post("/api/sessions").json()["session_id"]

    response = client.post(f"/api/sessions/{session_id}/api-key", data={"api_key": "my-own-key"})
    assert response.json() == {"session_id": session_id, "rerun": False}

    response = client.post(f"/api/sessions/{session_id}/reset")
    assert response.status_code == 200
    assert response.json()["has_api_key"] is True

    files = upload_files(sample_image_bytes)
    response = client.post("/api/style", files=files, data={"session_id": session_id})
    assert response.json()["session_id"] == session_id
    assert fake_gemini["keys"][-1] == "my-own-key"


def test_api_key_validation(client: TestClient):
    response = client.post("/api/sessions/unknown/api-key", data={"api_key": "x"})
    assert response.status_code == 404

    session_id = client.post("/api/sessions").json()["session_id"]
    response = client.post(f"/api/sessions/{session_id}/api-key", data={"api_key": "   "})
    assert response.status_code == 400


def test_concurrent_run_on_same_session_is_refused(client: TestClient, sample_image_bytes, fake_gemini):
    session_id = client.post("/api/sessions").json()["session_id"]
    main.sessions.get(session_id).running = True

    response = client.post("/api/style", files=upload_files(sample_image_bytes), data={"session_id": session_id})
    assert response.status_code == 409


def test_style_stream_emits_steps_then_result(client: TestClient, sample_image_bytes, fake_gemini):
    response = client.post("/api/style/stream", files=upload_files(sample_image_bytes))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["type"] == "complete"
    assert events[-1]["result"]["final_image"].startswith("data:image/")
    step_events = [e for e in events if e["type"] == "steps"]
    assert step_events
    lengths = [len(e["steps"]) for e in step_events]
    assert lengths == sorted(lengths)
    assert step_events[-1]["steps"][-1]["title"] == "Quality Check Passed"


def test_rate_limit(client: TestClient, sample_image_bytes, fake_gemini):
    statuses = [client.post("/api/style", files=upload_files(sample_image_bytes)).status_code for _ in range(11)]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429


def test_sessions_without_an_id_are_bounded(client: TestClient, sample_image_bytes, fake_gemini, monkeypatch):
    from services.sessions import SessionStore

    store = SessionStore(ttl_seconds=3600, max_sessions=2)
    monkeypatch.setattr(main, "sessions", store)

    for _ in range(5):
        assert client.post("/api/style", files=upload_files(sample_image_bytes)).status_code == 200

    assert len(store) == 2


@pytest.mark.asyncio
async def test_closing_stream_early_cancels_the_run(monkeypatch, make_image):
    from services.sessions import SessionStore

    cancelled = asyncio.Event()

    async def slow_analyze_color(item, api_key=None):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    monkeypatch.setattr(gemini, "analyze_color", slow_analyze_color)
    session = SessionStore(ttl_seconds=3600, max_sessions=5).create()
    session.model_image = make_image((300, 600), (200, 30, 30))
    session.item_image = make_image((400, 400), (30, 30, 200))

    stream = main.style_stream(session)
    first = json.loads((await stream.__anext__())[len("data: "):])
    assert first["type"] == "steps"
    assert session.running is True

    await stream.aclose()

    assert cancelled.is_set()
    assert session.running is False
    assert session.last_result is None
