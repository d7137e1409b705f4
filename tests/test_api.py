import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from composer.api.composition import router
from tests.fakes import FakeChatModel, tool_call, tool_request


def parse_sse(body: str) -> list:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def api_client(make_session):
    """Provide a FastAPI test client around a session built from fakes."""
    app = FastAPI()
    app.include_router(router)
    app.state.composition = make_session(FakeChatModel(fragments=["Sounds good, ", "I'm in!"]))
    with TestClient(app) as client:
        yield client


def start_stream(client, **params):
    query = {"thread_id": "t1", "user_prompt": "reply that I'm in", **params}
    response = client.get("/composition/stream", params=query, headers={"X-User-Id": "u1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    return parse_sse(response.text)


def test_stream_delivers_event_vocabulary(api_client):
    events = start_stream(api_client)

    assert [e["type"] for e in events] == [
        "start",
        "activity",
        "draft_stream_started",
        "draft_chunk",
        "draft_chunk",
        "draft_stream_finished",
        "final",
    ]
    assert events[-1]["data"]["draft"] == "Sounds good, I'm in!"
    assert len({e["conversation_id"] for e in events}) == 1


def test_stream_rejects_missing_fields(api_client):
    response = api_client.get("/composition/stream", params={"thread_id": "t1", "user_prompt": "hi"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_request"


def test_stream_reports_context_failure_as_error_event(api_client):
    events = start_stream(api_client, thread_id="t-missing")

    assert [e["type"] for e in events] == ["start", "error"]
    assert events[-1]["data"]["code"] == "context_unavailable"


def test_resume_and_state(api_client):
    conversation_id = start_stream(api_client)[0]["conversation_id"]

    response = api_client.post(f"/composition/{conversation_id}/resume", json={"user_response": "make it shorter"})
    assert response.status_code == 200
    body = response.json()
    assert body["conversation_id"] == conversation_id
    assert body["status"] == "completed"
    assert [m["role"] for m in body["dialogue_history"]] == ["user", "assistant", "user", "assistant"]

    state = api_client.get(f"/composition/{conversation_id}/state").json()
    assert state["exists"] is True
    assert len(state["messages"]) == 4


def test_resume_unknown_conversation(api_client):
    response = api_client.post("/composition/nope/resume", json={"user_response": "hello"})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "conversation_not_found"


def test_resume_requires_instruction(api_client):
    conversation_id = start_stream(api_client)[0]["conversation_id"]

    response = api_client.post(f"/composition/{conversation_id}/resume", json={"user_response": ""})
    assert response.status_code == 400


def test_state_of_unknown_conversation(api_client):
    response = api_client.get("/composition/nope/state")

    assert response.status_code == 200
    assert response.json() == {"conversation_id": "nope", "exists": False, "messages": [], "pending_question": None}


def test_cancel_without_active_run(api_client):
    response = api_client.post("/composition/nope/cancel")

    assert response.json() == {"conversation_id": "nope", "cancelled": False}


def test_uninitialized_service_returns_503():
    app = FastAPI()
    app.include_router(router)

    with TestClient(app) as client:
        response = client.get("/composition/nope/state")

    assert response.status_code == 503


def test_health_check():
    from composer.main import app

    response = TestClient(app).get("/")
    assert response.json() == {"message": "Draft Composer is running"}


def test_app_serves_only_composition_routes():
    from composer.core.config import settings
    from composer.main import app

    paths = {route.path for route in app.routes}
    assert "/composition/{conversation_id}/resume/stream" in paths
    assert not any(path.startswith("/admin") for path in paths)
    assert not hasattr(settings, "ADMIN_API_KEY")


def test_resume_stream_reuses_event_vocabulary(api_client):
    conversation_id = start_stream(api_client)[0]["conversation_id"]

    response = api_client.post(
        f"/composition/{conversation_id}/resume/stream", json={"user_response": "make it shorter"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    assert events[0]["type"] == "start"
    assert events[0]["data"]["resumed"] is True
    assert events[-1]["type"] == "final"
    assert [e["type"] for e in events].count("draft_chunk") == 2
    assert {e["conversation_id"] for e in events} == {conversation_id}


def test_resume_stream_unknown_conversation(api_client):
    response = api_client.post("/composition/nope/resume/stream", json={"user_response": "hello"})

    assert response.status_code == 200
    (event,) = parse_sse(response.text)
    assert event["type"] == "error"
    assert event["data"] == {"message": "Conversation 'nope' was not found.", "code": "conversation_not_found"}


def test_clarification_over_http(make_session):
    model = FakeChatModel(
        reasoning=[tool_request(tool_call("ask_user_for_clarification", {"question": "Which Friday?"}))],
        fragments=["See you ", "on the 7th."],
    )
    app = FastAPI()
    app.include_router(router)
    app.state.composition = make_session(model)

    with TestClient(app) as client:
        events = start_stream(client)
        assert events[-1]["type"] == "needs_input"
        assert events[-1]["data"]["question"] == "Which Friday?"
        conversation_id = events[-1]["conversation_id"]

        state = client.get(f"/composition/{conversation_id}/state").json()
        assert state["pending_question"] == "Which Friday?"

        response = client.post(f"/composition/{conversation_id}/resume/stream", json={"user_response": "June 7th"})
        resumed = parse_sse(response.text)

    assert resumed[-1]["type"] == "final"
    assert resumed[-1]["data"]["draft"] == "See you on the 7th."
