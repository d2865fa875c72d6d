"""MCP protocol tests for the analyze_image tool, using an in-memory client."""

import httpx
import pytest
from fastmcp import Client
from fastmcp.client import FastMCPTransport
from mcp.types import TextContent

from kimi_vision.adapters.kimi import KimiVisionClient
from kimi_vision.server import create_server

# Use anyio for better async handling - but only with asyncio backend
pytestmark = [
    pytest.mark.anyio,
    pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True),
]


@pytest.fixture
def api_requests():
    return []


@pytest.fixture
def mcp_server(settings, api_requests):
    """Server whose Kimi client talks to an in-process mock endpoint."""

    def handler(request: httpx.Request) -> httpx.Response:
        api_requests.append(request)
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "A settings page."}}]}
        )

    client = KimiVisionClient.from_settings(
        settings, transport=httpx.MockTransport(handler)
    )
    return create_server(settings, client=client)


class TestAnalyzeImageMCP:
    async def test_tool_is_listed_with_schema(self, mcp_server):
        async with Client(FastMCPTransport(mcp_server)) as client:
            tools = await client.list_tools()

        tool = next(t for t in tools if t.name == "analyze_image")
        assert tool.inputSchema["required"] == ["image_path"]
        assert set(tool.inputSchema["properties"]) == {"image_path", "prompt", "model"}
        assert tool.inputSchema["properties"]["model"]["default"] == "kimi-k2.5"

    async def test_successful_call_returns_text(self, mcp_server, png_file, api_requests):
        async with Client(FastMCPTransport(mcp_server)) as client:
            result = await client.call_tool(
                "analyze_image", {"image_path": str(png_file)}, raise_on_error=False
            )

        assert not result.is_error
        assert len(result.content) == 1
        assert isinstance(result.content[0], TextContent)
        assert result.content[0].text == "A settings page."
        assert len(api_requests) == 1
        assert api_requests[0].headers["Authorization"] == "Bearer test-kimi-key"

    async def test_failure_is_reported_as_error_result(
        self, mcp_server, tmp_path, api_requests
    ):
        missing = tmp_path / "missing.jpg"

        async with Client(FastMCPTransport(mcp_server)) as client:
            result = await client.call_tool(
                "analyze_image", {"image_path": str(missing)}, raise_on_error=False
            )

        assert result.is_error
        assert isinstance(result.content[0], TextContent)
        assert result.content[0].text.startswith("分析图片时出错: ")
        assert "File not found" in result.content[0].text
        assert api_requests == []

    async def test_server_keeps_serving_after_a_failure(self, mcp_server, png_file):
        async with Client(FastMCPTransport(mcp_server)) as client:
            failed = await client.call_tool(
                "analyze_image",
                {"image_path": "http://127.0.0.1/secret.png"},
                raise_on_error=False,
            )
            succeeded = await client.call_tool(
                "analyze_image", {"image_path": str(png_file)}, raise_on_error=False
            )

        assert failed.is_error
        assert not succeeded.is_error

    async def test_omitted_image_path_gets_prefixed_error(self, mcp_server, api_requests):
        async with Client(FastMCPTransport(mcp_server)) as client:
            result = await client.call_tool(
                "analyze_image", {"prompt": "What is this?"}, raise_on_error=False
            )

        assert result.is_error
        assert result.content[0].text == "分析图片时出错: image_path is required"
        assert api_requests == []
