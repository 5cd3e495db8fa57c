import json
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
import pytest

from toolchat.core import config as providers_config
from toolchat.core.tool_calling import ToolDescriptor


class FakeToolServer:
    """In-memory tool server answering /health, /tools and /invoke."""

    def __init__(self, base_url: str, tools: Dict[str, Callable[..., Any]], healthy: bool = True,
                 schemas: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.base_url = base_url
        self.tools = tools
        self.healthy = healthy
        self.schemas = schemas or {}
        self.invocations: List[Dict[str, Any]] = []

    def descriptors(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "description": f"{name} tool",
                "parameters": self.schemas.get(name, {"type": "object", "properties": {}}),
            }
            for name in self.tools
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/health"):
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})
        if path.endswith("/tools"):
            return httpx.Response(200, json=self.descriptors())
        if path.endswith("/invoke"):
            payload = json.loads(request.content)
            self.invocations.append(payload)
            handler = self.tools[payload["name"]]
            return httpx.Response(200, json=handler(**payload["arguments"]))
        return httpx.Response(404)


def registry_transport(*servers: FakeToolServer) -> httpx.MockTransport:
    """Route requests to fake servers by scheme://host:port; unknown hosts refuse to connect."""
    by_origin = {}
    for server in servers:
        parts = urlsplit(server.base_url)
        by_origin[(parts.scheme, parts.netloc)] = server

    def handler(request: httpx.Request) -> httpx.Response:
        origin = (request.url.scheme, request.url.netloc.decode())
        server = by_origin.get(origin)
        if server is None:
            raise httpx.ConnectError("connection refused", request=request)
        return server.handle(request)

    return httpx.MockTransport(handler)


def completion(content: Optional[str] = "", tool_calls: Optional[List[Dict[str, Any]]] = None,
               usage: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """Build an OpenAI-style chat completion body."""
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def native_call(call_id: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


class ScriptedModel:
    """Chat-completions backend that replays scripted responses and records request bodies."""

    def __init__(self, responses: List[Any], repeat_last: bool = False) -> None:
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        if len(self.responses) > 1 or not self.repeat_last:
            response = self.responses.pop(0)
        else:
            response = self.responses[0]
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep process settings deterministic regardless of the developer's .env."""
    for name in (
        "AGENT_MAX_TURNS",
        "TOOL_CALL_TIMEOUT",
        "REGISTRY_TIMEOUT",
        "REGISTRY_HEALTH_TIMEOUT",
        "REGISTRY_HEALTH_CHECK",
        "LLM_TIMEOUT",
        "LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    for provider in ("OPENAI", "CLAUDE", "OPENROUTER", "OLLAMA", "LLAMA_CPP", "VLLM"):
        monkeypatch.delenv(f"LLM_MODEL_{provider}", raising=False)
    providers_config.load_providers_config.cache_clear()
    yield
    providers_config.load_providers_config.cache_clear()


@pytest.fixture
def math_server() -> FakeToolServer:
    return FakeToolServer(
        "http://math.local",
        {"add": lambda a, b: {"result": a + b}},
        schemas={"add": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        }},
    )


@pytest.fixture
def weather_server() -> FakeToolServer:
    return FakeToolServer(
        "http://weather.local",
        {"getWeather": lambda city: {"city": city, "temperature": 31}},
        schemas={"getWeather": {
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        }},
    )


@pytest.fixture
def sample_tools() -> List[ToolDescriptor]:
    return [
        ToolDescriptor(
            name="add",
            description="Add two numbers",
            parameters={
                "type": "object",
                "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
                "required": ["a", "b"],
            },
            endpoint="http://math.local",
        ),
        ToolDescriptor(
            name="getWeather",
            description="Weather by city",
            parameters={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
            endpoint="http://weather.local",
        ),
    ]
