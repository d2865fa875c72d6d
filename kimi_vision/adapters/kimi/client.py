"""HTTP client for the Kimi chat-completions endpoint."""

import base64
import json
import logging
from typing import Any, Dict, Optional

import httpx

from ...config import DEFAULT_API_URL, DEFAULT_MODEL, Settings
from ...errors import RemoteAPIError
from ...utils.image_loader import AcquiredImage

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "请详细描述这张图片的内容,特别关注UI设计、布局、颜色、文字等细节"

# Keep error messages readable when the API echoes large payloads
_MAX_ERROR_BODY_CHARS = 2000


class KimiVisionClient:
    """Sends one image plus a prompt to the Kimi API and returns the text."""

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        default_model: str = DEFAULT_MODEL,
        timeout: float = 120.0,
        temperature: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self.api_url = api_url
        self.default_model = default_model
        self.timeout = timeout
        self.temperature = temperature
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "KimiVisionClient":
        return cls(
            api_key=settings.require_api_key(),
            api_url=settings.kimi.api_url,
            default_model=settings.kimi.default_model,
            timeout=settings.kimi.request_timeout,
            temperature=settings.kimi.temperature,
            transport=transport,
        )

    def build_payload(
        self,
        image: AcquiredImage,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        encoded = base64.b64encode(image.data).decode("ascii")
        return {
            "model": model or self.default_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{image.mime_type};base64,{encoded}"
                            },
                        },
                        {"type": "text", "text": prompt or DEFAULT_PROMPT},
                    ],
                }
            ],
            "temperature": self.temperature,
        }

    async def describe_image(
        self,
        image: AcquiredImage,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Ask the model to describe ``image``.

        Raises:
            RemoteAPIError: On transport failure, non-2xx status, or a
                response without ``choices[0].message.content``
        """
        payload = self.build_payload(image, prompt, model)
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise RemoteAPIError(f"Kimi API request timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise RemoteAPIError(f"Kimi API request failed: {e}")

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            logger.error(f"API error response: {body}")
            raise RemoteAPIError(
                f"Kimi API error: {response.status_code} - {body}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError:
            raise RemoteAPIError(
                f"API returned unexpected shape: {response.text[:_MAX_ERROR_BODY_CHARS]}",
                status_code=response.status_code,
            )

        content = _extract_content(result)
        if not content:
            raise RemoteAPIError(
                "API returned unexpected shape: "
                + json.dumps(result, ensure_ascii=False)[:_MAX_ERROR_BODY_CHARS],
                status_code=response.status_code,
            )
        return content


def _extract_content(result: Any) -> Optional[str]:
    """Return ``choices[0].message.content`` or None if any step is missing."""
    if not isinstance(result, dict):
        return None
    choices = result.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
