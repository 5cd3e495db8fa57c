import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedModel, completion, native_call, registry_transport
from toolchat.api.routes import app, get_transports


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def use_transports(model=None, *servers):
    transports = {"registry_transport": registry_transport(*servers)}
    if model is not None:
        transports["llm_transport"] = model.transport
    app.dependency_overrides[get_transports] = lambda: transports


def chat_body(**overrides):
    body = {
        "credential": {"provider": "openai", "api_key": "sk-test"},
        "input": "What is 2 + 3?",
        "servers": ["http://math.local"],
    }
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_providers(client):
    providers = {p["provider"]: p for p in client.get("/providers").json()["providers"]}

    assert providers["openai"]["native_tools"] is True
    assert providers["llama_cpp"]["native_tools"] is False
    assert providers["ollama"]["default_model"] == "llama3.2"


def test_chat_success(client, math_server):
    model = ScriptedModel([
        completion(None, tool_calls=[native_call("c1", "add", {"a": 2, "b": 3})]),
        completion("5"),
    ])
    use_transports(model, math_server)

    response = client.post("/chat", json=chat_body(system_prompt="You are a calculator."))

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "5"
    assert data["turns"] == 2
    assert [m["role"] for m in data["messages"]] == ["system", "user", "assistant", "tool", "assistant"]


@pytest.mark.parametrize("body, message", [
    (chat_body(credential={"api_key": "x"}), "Missing credential provider"),
    (chat_body(credential=None), "Missing credential provider"),
    (chat_body(input="   "), "Missing body request"),
    (chat_body(servers=[]), "No MCP servers provided"),
    (chat_body(servers=["", " "]), "No MCP servers provided"),
])
def test_chat_validation_errors(client, body, message):
    response = client.post("/chat", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": message, "error_code": "VALIDATION_ERROR"}


def test_unknown_credential_setting_is_rejected(client):
    body = chat_body(credential={"provider": "openai", "api_key": "x", "set": {"mood": "cheerful"}})

    response = client.post("/chat", json=body)

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"
    assert "mood" in response.json()["error"]


def test_local_provider_without_url(client):
    response = client.post("/chat", json=chat_body(credential={"provider": "llama_cpp"}))

    assert response.status_code == 400
    assert response.json()["error"] == "Llama.cpp URL is required"


def test_missing_api_key(client):
    response = client.post("/chat", json=chat_body(credential={"provider": "claude"}))

    assert response.status_code == 401
    assert response.json() == {"error": "Claude API key is required", "error_code": "CREDENTIAL_ERROR"}


def test_unsupported_provider(client):
    response = client.post("/chat", json=chat_body(credential={"provider": "gemini", "api_key": "x"}))

    assert response.status_code == 404
    assert response.json()["error_code"] == "UNSUPPORTED_PROVIDER"


def test_no_tool_servers_available(client):
    use_transports(ScriptedModel([completion("unused")]))

    response = client.post("/chat", json=chat_body(servers=["http://down.local"]))

    assert response.status_code == 503
    assert response.json()["error_code"] == "NO_TOOL_SERVERS"


def test_unknown_tool(client, math_server):
    use_transports(ScriptedModel([completion(None, tool_calls=[native_call("c1", "rm", {})])]), math_server)

    response = client.post("/chat", json=chat_body())

    assert response.status_code == 404
    assert response.json() == {"error": "Tool not found: rm", "error_code": "TOOL_NOT_FOUND"}


def test_max_turns_exceeded(client, math_server, monkeypatch):
    monkeypatch.setenv("AGENT_MAX_TURNS", "2")
    model = ScriptedModel(
        [completion(None, tool_calls=[native_call("c1", "add", {"a": 1, "b": 1})])],
        repeat_last=True,
    )
    use_transports(model, math_server)

    response = client.post("/chat", json=chat_body())

    assert response.status_code == 500
    assert response.json()["error_code"] == "MAX_TURNS_EXCEEDED"
    assert response.json()["error"].startswith("Max turns exceeded")
    assert len(model.requests) == 2


def test_upstream_model_error(client, math_server):
    use_transports(ScriptedModel([httpx.Response(400, json={"error": {"message": "bad model"}})]), math_server)

    response = client.post("/chat", json=chat_body())

    assert response.status_code == 502
    assert response.json()["error_code"] == "LLM_ERROR_400"


def test_client_disconnect_cancels_the_run(client, math_server, monkeypatch):
    state = {"started": False, "cancelled": False}

    async def is_disconnected(self):
        return state["started"]

    async def hanging_model(request):
        state["started"] = True
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        return httpx.Response(200, json=completion("too late"))

    monkeypatch.setattr("starlette.requests.Request.is_disconnected", is_disconnected)
    monkeypatch.setattr("toolchat.api.routes.DISCONNECT_POLL_INTERVAL", 0.01)
    app.dependency_overrides[get_transports] = lambda: {
        "registry_transport": registry_transport(math_server),
        "llm_transport": httpx.MockTransport(hanging_model),
    }

    response = client.post("/chat", json=chat_body())

    assert response.status_code == 499
    assert response.json()["error_code"] == "CANCELLED"
    assert state["cancelled"] is True
    assert math_server.invocations == []
