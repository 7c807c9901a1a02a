from __future__ import annotations

import pydantic
from fakes import ScriptedDispatcher, reply
from fastapi.testclient import TestClient

from agent_runtime.agent.agent import Agent
from agent_runtime.agent.errors import ModelError
from agent_runtime.agent.runner import AgentRunner
from agent_runtime.agent.types import Message
from agent_runtime.app import create_app
from agent_runtime.infra.config import AppSettings


class Answer(pydantic.BaseModel):
    value: int


def _client(*responses: Message | Exception, agent: Agent | None = None) -> TestClient:
    runner = AgentRunner(dispatcher=ScriptedDispatcher(list(responses)))
    settings = AppSettings(service_name="test-runtime")
    return TestClient(create_app(settings, runner=runner, agent=agent or Agent(model="openai:gpt-4o-mini")))


def test_healthcheck_and_ping() -> None:
    with _client() as client:
        assert client.get("/").json() == {"status": "ok"}
        assert client.get("/v1/ping").json() == {"message": "pong", "service": "test-runtime"}


def test_query_returns_output_and_usage() -> None:
    with _client(reply("hello there", input_tokens=5)) as client:
        response = client.post("/v1/query", json={"user_input": "hi"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "hello there"
    assert body["iterations"] == 0
    assert body["usage"]["requests"] == 1
    assert body["usage"]["input_tokens"] == 5


def test_query_serializes_structured_output() -> None:
    agent = Agent(model="openai:gpt-4o-mini", output_type=Answer)

    with _client(reply('{"value": 42}'), agent=agent) as client:
        response = client.post("/v1/query", json={"user_input": "answer?"})

    assert response.json()["response"] == {"value": 42}


def test_query_rejects_empty_input() -> None:
    with _client() as client:
        assert client.post("/v1/query", json={"user_input": ""}).status_code == 422


def test_rate_limit_maps_to_429() -> None:
    error = ModelError("slow down", backend="openai", details={"status_code": 429, "retry_after": 8})

    with _client(error) as client:
        response = client.post("/v1/query", json={"user_input": "hi"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "8"
    assert "Retry after 8 seconds" in response.json()["detail"]


def test_model_failure_maps_to_502() -> None:
    with _client(ModelError("boom", backend="openai")) as client:
        response = client.post("/v1/query", json={"user_input": "hi"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Model request failed"


def test_empty_model_response_maps_to_502() -> None:
    with _client(reply("")) as client:
        response = client.post("/v1/query", json={"user_input": "hi"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Model response empty"


def test_session_conversation_and_history() -> None:
    with _client(reply("first answer"), reply("second answer")) as client:
        first = client.post("/v1/sessions/abc/messages", json={"content": "one"})
        second = client.post("/v1/sessions/abc/messages", json={"content": "two"})
        history = client.get("/v1/sessions/abc/history").json()
        cancel = client.post("/v1/sessions/abc/cancel").json()

    assert first.json()["response"] == "first answer"
    assert second.json()["response"] == "second answer"
    assert history["session_id"] == "abc"
    assert [(m["role"], m["content"]) for m in history["messages"]] == [
        ("user", "one"),
        ("assistant", "first answer"),
        ("user", "two"),
        ("assistant", "second answer"),
    ]
    assert cancel == {"session_id": "abc", "cancelled": False}


def test_unknown_session_is_404() -> None:
    with _client() as client:
        assert client.get("/v1/sessions/missing/history").status_code == 404
        assert client.post("/v1/sessions/missing/cancel").status_code == 404
