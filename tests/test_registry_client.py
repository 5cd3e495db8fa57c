import httpx
import pytest

from conftest import FakeToolServer, registry_transport
from toolchat.core.error_handling import ToolExecutionError
from toolchat.core.registry_client import ToolRegistryClient, normalize_endpoint
from toolchat.core.tool_calling import ToolDescriptor


def test_normalize_endpoint():
    assert normalize_endpoint(" http://math.local/ ") == "http://math.local"


@pytest.mark.asyncio
async def test_catalog_merges_servers(math_server, weather_server):
    async with ToolRegistryClient(transport=registry_transport(math_server, weather_server)) as registry:
        catalog = await registry.load_catalog(["http://math.local/", "http://weather.local"])

    assert sorted(t.name for t in catalog.list()) == ["add", "getWeather"]
    assert catalog.get("add").endpoint == "http://math.local"
    assert catalog.available_servers == ["http://math.local", "http://weather.local"]
    assert catalog.failed_servers == {}


@pytest.mark.asyncio
async def test_later_server_wins_on_name_collision():
    first = FakeToolServer("http://a.local", {"ping": lambda: "a"})
    second = FakeToolServer("http://b.local", {"ping": lambda: "b"})

    async with ToolRegistryClient(transport=registry_transport(first, second)) as registry:
        catalog = await registry.load_catalog(["http://a.local", "http://b.local"])

    assert len(catalog) == 1
    assert catalog.get("ping").endpoint == "http://b.local"


@pytest.mark.asyncio
async def test_unreachable_server_is_skipped(math_server):
    async with ToolRegistryClient(transport=registry_transport(math_server)) as registry:
        catalog = await registry.load_catalog(["http://down.local", "http://math.local"])

    assert "add" in catalog
    assert catalog.available_servers == ["http://math.local"]
    assert "http://down.local" in catalog.failed_servers


@pytest.mark.asyncio
async def test_unhealthy_server_is_skipped(math_server):
    sick = FakeToolServer("http://sick.local", {"ping": lambda: "pong"}, healthy=False)

    async with ToolRegistryClient(transport=registry_transport(math_server, sick)) as registry:
        catalog = await registry.load_catalog(["http://math.local", "http://sick.local"])

    assert "ping" not in catalog
    assert catalog.failed_servers == {"http://sick.local": "health check failed"}


@pytest.mark.asyncio
async def test_health_check_can_be_disabled():
    sick = FakeToolServer("http://sick.local", {"ping": lambda: "pong"}, healthy=False)

    async with ToolRegistryClient(health_check=False, transport=registry_transport(sick)) as registry:
        catalog = await registry.load_catalog(["http://sick.local"])

    assert "ping" in catalog


@pytest.mark.asyncio
async def test_server_with_no_tools_is_still_available():
    empty = FakeToolServer("http://empty.local", {})

    async with ToolRegistryClient(transport=registry_transport(empty)) as registry:
        catalog = await registry.load_catalog(["http://empty.local"])

    assert len(catalog) == 0
    assert catalog.available_servers == ["http://empty.local"]


@pytest.mark.asyncio
async def test_tools_wrapped_in_object():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200)
        return httpx.Response(200, json={"tools": [{"name": "echo", "description": "Echo text"}]})

    async with ToolRegistryClient(transport=httpx.MockTransport(handler)) as registry:
        catalog = await registry.load_catalog(["http://echo.local"])

    assert catalog.get("echo").description == "Echo text"


@pytest.mark.asyncio
async def test_malformed_tools_payload_skips_server():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200)
        return httpx.Response(200, json="not a list")

    async with ToolRegistryClient(transport=httpx.MockTransport(handler)) as registry:
        catalog = await registry.load_catalog(["http://odd.local"])

    assert catalog.available_servers == []
    assert "http://odd.local" in catalog.failed_servers


@pytest.mark.asyncio
async def test_invoke_posts_name_and_arguments(math_server):
    async with ToolRegistryClient(transport=registry_transport(math_server)) as registry:
        catalog = await registry.load_catalog(["http://math.local"])
        result = await registry.invoke(catalog.get("add"), {"a": 2, "b": 3})

    assert result == {"result": 5}
    assert math_server.invocations == [{"name": "add", "arguments": {"a": 2, "b": 3}}]


@pytest.mark.asyncio
async def test_invoke_returns_text_for_non_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="plain result")

    tool = ToolDescriptor(name="echo", description="", parameters={}, endpoint="http://echo.local")
    async with ToolRegistryClient(transport=httpx.MockTransport(handler)) as registry:
        assert await registry.invoke(tool, {}) == "plain result"


@pytest.mark.asyncio
async def test_invoke_error_status_raises_tool_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    tool = ToolDescriptor(name="echo", description="", parameters={}, endpoint="http://echo.local")
    async with ToolRegistryClient(transport=httpx.MockTransport(handler)) as registry:
        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.invoke(tool, {})

    assert exc_info.value.tool_name == "echo"
    assert "HTTP 500" in exc_info.value.message


@pytest.mark.asyncio
async def test_client_requires_context():
    with pytest.raises(RuntimeError):
        await ToolRegistryClient().check_server("http://math.local")
