"""The analyze_image tool."""

import logging
from typing import Annotated, Optional

import fastmcp.exceptions
from fastmcp import FastMCP
from fastmcp.server.middleware import Middleware, MiddlewareContext
from pydantic import Field

from ..adapters.kimi import KimiVisionClient
from ..config import DownloadLimits, Settings
from ..errors import KimiVisionError, MissingInputError
from ..utils.image_loader import acquire_image

logger = logging.getLogger(__name__)

TOOL_NAME = "analyze_image"
ERROR_PREFIX = "分析图片时出错"


def build_description(limits: DownloadLimits, model: str) -> str:
    formats = ", ".join(
        ext.lstrip(".").upper().replace("WEBP", "WebP")
        for ext in limits.allowed_extensions
    )
    return (
        f"使用 {model} 分析图片内容,支持本地文件路径或图片 URL。"
        f"支持格式: {formats}。最大文件大小: {limits.max_megabytes:g}MB。"
    )


async def analyze_image(
    image_path: str,
    prompt: Optional[str],
    model: Optional[str],
    *,
    settings: Settings,
    client: KimiVisionClient,
) -> str:
    """Acquire the image and return the model's description.

    Every failure becomes a ToolError so the MCP response carries
    ``isError`` and the long-lived server keeps running.
    """
    try:
        image = await acquire_image(image_path, settings.download)

        logger.info(f"Calling Kimi API: {client.api_url}")
        content = await client.describe_image(image, prompt=prompt, model=model)

        logger.info("Image analysis complete")
        return content
    except KimiVisionError as e:
        logger.error(f"Error details [{e.kind.name}]: {e}")
        raise fastmcp.exceptions.ToolError(f"{ERROR_PREFIX}: {e}") from e
    except Exception as e:
        logger.exception(f"Unexpected error analyzing '{image_path}': {e}")
        raise fastmcp.exceptions.ToolError(f"{ERROR_PREFIX}: {e}") from e


class RequireImagePath(Middleware):
    """Report a missing image_path the same way as any other tool failure.

    Without this the caller gets the raw argument validation error instead
    of the prefixed message.
    """

    async def on_call_tool(self, context: MiddlewareContext, call_next):
        if context.message.name == TOOL_NAME:
            arguments = context.message.arguments or {}
            if arguments.get("image_path") is None:
                error = MissingInputError("image_path is required")
                logger.error(f"Error details [{error.kind.name}]: {error}")
                raise fastmcp.exceptions.ToolError(f"{ERROR_PREFIX}: {error}")
        return await call_next(context)


def register_analyze_image(
    mcp: FastMCP, settings: Settings, client: KimiVisionClient
) -> None:
    """Register analyze_image on ``mcp`` bound to this settings/client pair."""
    default_model = settings.kimi.default_model
    mcp.add_middleware(RequireImagePath())

    @mcp.tool(
        name=TOOL_NAME,
        description=build_description(settings.download, default_model),
    )
    async def analyze_image_tool(
        image_path: Annotated[str, Field(description="图片文件路径或 URL")],
        prompt: Annotated[
            Optional[str], Field(description="对图片的具体问题或要求(可选)")
        ] = None,
        model: Annotated[
            str, Field(description=f"使用的模型名称(可选,默认: {default_model})")
        ] = default_model,
    ) -> str:
        return await analyze_image(
            image_path, prompt, model, settings=settings, client=client
        )
